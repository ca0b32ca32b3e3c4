"""
Activity stream merger.

The transition log and the free-form activity log are written by different
people through different paths. Neither is ordered against the other, so the
timeline shown to users is a read-side projection rebuilt from both sources
every time either one changes. It holds no authoritative state and can be
thrown away and rebuilt at any moment.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Literal, TypedDict

from docstore.db import DocumentStore, Filter
from presencebook.services.presence import TRANSITION_LOGS
from presencebook.services.resilience import call_remote

logger = logging.getLogger(__name__)

ACTIVITIES = "childActivities"

Stream = Literal["transition", "activity"]

# Lower sorts first among entries sharing a timestamp.
STREAM_PRIORITY: dict[str, int] = {"transition": 0, "activity": 1}


class TimelineEntry(TypedDict):
    id: str
    stream: Stream
    child_id: str | None
    actor_id: str | None
    kind: str
    notes: str
    timestamp: str | None


def _as_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        stamp = value
    else:
        try:
            stamp = datetime.fromisoformat(str(value))
        except ValueError:
            logger.warning("Unparseable timestamp %r; sorting entry with pending ones", value)
            return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


def _stamp_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def transition_entry(doc: dict) -> TimelineEntry:
    return {
        "id": str(doc.get("id")),
        "stream": "transition",
        "child_id": doc.get("childId"),
        "actor_id": doc.get("actorId"),
        "kind": str(doc.get("action") or ""),
        "notes": str(doc.get("notes") or ""),
        "timestamp": _stamp_text(doc.get("timestamp")),
    }


def activity_entry(doc: dict) -> TimelineEntry:
    return {
        "id": str(doc.get("id")),
        "stream": "activity",
        "child_id": doc.get("childId"),
        "actor_id": doc.get("actorId"),
        "kind": str(doc.get("activityType") or ""),
        "notes": str(doc.get("notes") or ""),
        "timestamp": _stamp_text(doc.get("timestamp")),
    }


def merge_timeline(log_entries: Iterable[dict], activity_entries: Iterable[dict]) -> list[TimelineEntry]:
    """
    Merge both logs newest first.

    Entries still waiting for a server timestamp go last. On equal
    timestamps transition entries come before activity entries, then ids
    decide, so the order is stable across recomputations.
    """
    entries = [transition_entry(d) for d in log_entries] + [activity_entry(d) for d in activity_entries]

    resolved: list[tuple[datetime, TimelineEntry]] = []
    pending: list[TimelineEntry] = []
    for entry in entries:
        stamp = _as_datetime(entry["timestamp"])
        if stamp is None:
            pending.append(entry)
        else:
            resolved.append((stamp, entry))

    resolved.sort(key=lambda pair: (pair[0], -STREAM_PRIORITY[pair[1]["stream"]], pair[1]["id"]), reverse=True)
    pending.sort(key=lambda e: (STREAM_PRIORITY[e["stream"]], e["id"]))
    return [entry for _, entry in resolved] + pending


def _child_filter(child_id: str | None) -> list[Filter]:
    return [("childId", "==", child_id)] if child_id else []


async def load_timeline(
    store: DocumentStore,
    child_id: str | None = None,
    *,
    limit: int | None = None,
) -> list[TimelineEntry]:
    where = _child_filter(child_id)
    logs = await call_remote("timeline.read", lambda: store.query(TRANSITION_LOGS, where))
    activities = await call_remote("timeline.read", lambda: store.query(ACTIVITIES, where))
    merged = merge_timeline(logs, activities)
    return merged[:limit] if limit is not None else merged


class TimelineSubscription:
    """
    Live merged timeline for one child, or the whole facility.

    Two independent store subscriptions feed a single recompute; consumers
    iterate with `async for` and stop with `unsubscribe()`. A consumer that
    falls behind only sees the newest timeline, not every intermediate one.
    """

    def __init__(self, store: DocumentStore, child_id: str | None = None):
        self.store = store
        self.child_id = child_id
        self.latest: list[TimelineEntry] = []
        self._logs: list[dict] = []
        self._activities: list[dict] = []
        self._queue: asyncio.Queue[list[TimelineEntry] | None] = asyncio.Queue()
        self._unsubscribers: list[Callable[[], None]] = []
        self._started = False
        self._closed = False

    @property
    def source_count(self) -> int:
        return len(self._unsubscribers)

    async def start(self) -> "TimelineSubscription":
        where = _child_filter(self.child_id)
        sources = ((TRANSITION_LOGS, self._on_logs), (ACTIVITIES, self._on_activities))
        for collection, callback in sources:
            unsubscribe = await call_remote(
                "timeline.subscribe",
                lambda c=collection, cb=callback: self.store.subscribe(c, cb, where),
            )
            if unsubscribe is None:
                logger.warning("Timeline source %s unavailable; continuing without it", collection)
                continue
            self._unsubscribers.append(unsubscribe)
        self._started = True
        self._recompute()
        return self

    def _on_logs(self, snapshot: list[dict]) -> None:
        self._logs = snapshot
        if self._started:
            self._recompute()

    def _on_activities(self, snapshot: list[dict]) -> None:
        self._activities = snapshot
        if self._started:
            self._recompute()

    def _recompute(self) -> None:
        if self._closed:
            return
        self.latest = merge_timeline(self._logs, self._activities)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(self.latest)

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> list[TimelineEntry]:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "TimelineSubscription":
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        self.unsubscribe()


async def subscribe_timeline(store: DocumentStore, child_id: str | None = None) -> TimelineSubscription:
    return await TimelineSubscription(store, child_id).start()

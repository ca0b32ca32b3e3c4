import asyncio
import logging
import uuid
from collections import defaultdict
from enum import Enum
from typing import Any, Iterable, TypedDict

from docstore.db import SERVER_TIMESTAMP, DocumentStore
from presencebook.errors import (
    ActorNotPermittedError,
    ChildNotFoundError,
    InvalidTransitionError,
    RemoteUnavailableError,
    StatusProjectionError,
)
from presencebook.services.resilience import FailureKind, call_remote
from presencebook.services.session import Role, SessionPrincipal

logger = logging.getLogger(__name__)

CHILDREN = "children"
TRANSITION_LOGS = "checkInOutLogs"


class ChildStatus(str, Enum):
    NOT_CHECKED_IN = "not_checked_in"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    SICK = "sick"


class TransitionAction(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    MARKED_SICK = "marked_sick"
    SICK_CLEARED = "sick_cleared"
    ABSENCE_REPORTED = "absence_reported"


S = ChildStatus
A = TransitionAction

# (current status, action) -> next status. Anything missing is rejected.
TRANSITIONS: dict[tuple[ChildStatus, TransitionAction], ChildStatus] = {
    (S.NOT_CHECKED_IN, A.CHECK_IN): S.CHECKED_IN,
    (S.NOT_CHECKED_IN, A.MARKED_SICK): S.SICK,
    (S.NOT_CHECKED_IN, A.ABSENCE_REPORTED): S.SICK,
    (S.CHECKED_IN, A.CHECK_OUT): S.CHECKED_OUT,
    (S.CHECKED_IN, A.MARKED_SICK): S.SICK,
    (S.CHECKED_IN, A.ABSENCE_REPORTED): S.SICK,
    (S.CHECKED_OUT, A.CHECK_IN): S.CHECKED_IN,
    (S.CHECKED_OUT, A.MARKED_SICK): S.SICK,
    (S.CHECKED_OUT, A.ABSENCE_REPORTED): S.SICK,
    (S.SICK, A.SICK_CLEARED): S.NOT_CHECKED_IN,
}

# Status each action leaves behind, regardless of where it started.
ACTION_TARGETS: dict[TransitionAction, ChildStatus] = {
    A.CHECK_IN: S.CHECKED_IN,
    A.CHECK_OUT: S.CHECKED_OUT,
    A.MARKED_SICK: S.SICK,
    A.ABSENCE_REPORTED: S.SICK,
    A.SICK_CLEARED: S.NOT_CHECKED_IN,
}

PARENT_ACTIONS = frozenset({A.ABSENCE_REPORTED, A.SICK_CLEARED})


class TransitionResult(TypedDict):
    child_id: str
    action: str
    previous_status: str
    status: str
    log_entry_id: str
    absence_reason: str | None


def parse_action(action: str | TransitionAction) -> TransitionAction:
    try:
        return TransitionAction(action)
    except ValueError:
        raise InvalidTransitionError(f"Unknown action: {action!r}.", action=str(action)) from None


def coerce_status(value: Any) -> ChildStatus:
    if value is None:
        return ChildStatus.NOT_CHECKED_IN
    try:
        return ChildStatus(value)
    except ValueError:
        logger.warning("Stored status %r is not a known status; treating as %s", value, S.NOT_CHECKED_IN.value)
        return ChildStatus.NOT_CHECKED_IN


def next_status(current: ChildStatus, action: TransitionAction) -> ChildStatus:
    target = TRANSITIONS.get((current, action))
    if target is None:
        raise InvalidTransitionError(
            f"Cannot apply {action.value} while child is {current.value}.",
            current_status=current.value,
            action=action.value,
        )
    return target


def authorize_transition(principal: SessionPrincipal, action: TransitionAction, child: dict | None = None) -> None:
    """
    Staff may apply every action. Parents may only report an absence or
    clear sickness, and only for their own children. Pass `child=None` for
    the role check alone (before the child has been read).
    """
    if principal.role in (Role.ADMIN, Role.EMPLOYEE):
        return
    if principal.role is not Role.PARENT or action not in PARENT_ACTIONS:
        raise ActorNotPermittedError(f"Role {principal.role.value} may not apply {action.value}.")
    if child is not None and principal.id not in (child.get("guardianIds") or []):
        raise ActorNotPermittedError("Parents may only update their own children.")


def _state_fields(action: TransitionAction, status: ChildStatus, absence_reason: str | None) -> dict[str, Any]:
    fields: dict[str, Any] = {"status": status.value, "updatedAt": SERVER_TIMESTAMP}
    if action is A.CHECK_IN:
        fields["lastCheckIn"] = SERVER_TIMESTAMP
    elif action is A.CHECK_OUT:
        fields["lastCheckOut"] = SERVER_TIMESTAMP
    elif action is A.ABSENCE_REPORTED:
        fields["absenceReason"] = absence_reason
        fields["absenceReportedAt"] = SERVER_TIMESTAMP
    elif action is A.SICK_CLEARED:
        fields["absenceReason"] = None
        fields["absenceReportedAt"] = None
    return fields


def replay_status(entries: Iterable[dict]) -> ChildStatus:
    """Status a transition log leads to under last-writer-wins."""
    entries = list(entries)
    resolved = [e for e in entries if e.get("timestamp") is not None]
    pending = [e for e in entries if e.get("timestamp") is None]
    resolved.sort(key=lambda e: (e["timestamp"], e.get("id", "")))

    status = ChildStatus.NOT_CHECKED_IN
    for entry in resolved + pending:
        try:
            action = TransitionAction(entry.get("action"))
        except ValueError:
            logger.warning("Skipping log entry %s with unknown action %r", entry.get("id"), entry.get("action"))
            continue
        status = ACTION_TARGETS[action]
    return status


class PresenceService:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_child(self, child_id: str) -> dict:
        child = await call_remote("presence.read_child", lambda: self.store.get(CHILDREN, child_id))
        if child is None:
            raise ChildNotFoundError(child_id)
        return child

    async def apply_transition(
        self,
        child_id: str,
        action: str | TransitionAction,
        principal: SessionPrincipal,
        *,
        absence_reason: str | None = None,
    ) -> TransitionResult:
        """
        Validate and execute one presence transition.

        Appends exactly one log entry and then updates the child's status.
        No lock is taken: concurrent sessions race and the last status write
        wins, but every accepted call keeps its own log entry. If the status
        update fails after the log append, `StatusProjectionError` is raised
        and the stored status lags the log until the next transition.
        """
        parsed = parse_action(action)
        authorize_transition(principal, parsed)

        child = await self.get_child(child_id)
        authorize_transition(principal, parsed, child)

        current = coerce_status(child.get("status"))
        target = next_status(current, parsed)

        reason = (absence_reason or "").strip() or None
        if parsed is not A.ABSENCE_REPORTED:
            reason = None

        log_entry_id = await self._append_log(
            {
                "childId": child_id,
                "actorId": principal.id,
                "action": parsed.value,
                "notes": reason or "",
                "timestamp": SERVER_TIMESTAMP,
            }
        )

        try:
            await call_remote(
                "presence.update_status",
                lambda: self.store.update(CHILDREN, child_id, _state_fields(parsed, target, reason)),
            )
        except RemoteUnavailableError as exc:
            logger.error(
                "Child %s status not updated after log entry %s (%s); stored status now lags the log",
                child_id,
                log_entry_id,
                exc.kind,
            )
            raise StatusProjectionError(
                exc.site,
                exc.kind,
                child_id=child_id,
                log_entry_id=str(log_entry_id),
            ) from exc

        logger.info(
            "Child %s: %s -> %s by %s (%s)",
            child_id,
            current.value,
            target.value,
            principal.id,
            parsed.value,
        )
        return {
            "child_id": child_id,
            "action": parsed.value,
            "previous_status": current.value,
            "status": target.value,
            "log_entry_id": str(log_entry_id),
            "absence_reason": reason,
        }

    async def _append_log(self, entry: dict[str, Any]) -> str:
        """
        Write one transition log entry under a pre-assigned id.

        A timed-out write keeps running in the background and may still
        commit, so on timeout the pending write is awaited and the entry read
        back. A committed entry counts as appended; the caller carries on
        as if the write had been fast.
        """
        log_entry_id = uuid.uuid4().hex
        write = asyncio.ensure_future(self.store.set(TRANSITION_LOGS, log_entry_id, entry))
        try:
            await call_remote("presence.append_log", lambda: asyncio.shield(write))
        except RemoteUnavailableError as exc:
            if exc.kind != FailureKind.TIMEOUT.value:
                raise
            if not await self._confirm_log_entry(write, log_entry_id):
                raise
            logger.warning("Log entry %s committed after the append timed out", log_entry_id)
        return log_entry_id

    async def _confirm_log_entry(self, write: asyncio.Future, log_entry_id: str) -> bool:
        async def _settled() -> bool:
            await asyncio.shield(write)
            return await self.store.get(TRANSITION_LOGS, log_entry_id) is not None

        return bool(await call_remote("presence.confirm_log", _settled, fallback=lambda kind: False))

    async def list_transitions(self, child_id: str, *, limit: int | None = None) -> list[dict]:
        return await call_remote(
            "presence.read_log",
            lambda: self.store.query(
                TRANSITION_LOGS,
                [("childId", "==", child_id)],
                order_by="timestamp",
                descending=True,
                limit=limit,
            ),
        )

    async def find_status_drift(self) -> list[dict]:
        """
        Children whose stored status disagrees with their replayed log.

        Read-only: reports the lag left behind by a failed status update,
        it does not repair either side.
        """
        children = await call_remote("children.read", lambda: self.store.query(CHILDREN))
        entries = await call_remote("presence.read_log", lambda: self.store.query(TRANSITION_LOGS))

        by_child: dict[str, list[dict]] = defaultdict(list)
        for entry in entries:
            by_child[str(entry.get("childId"))].append(entry)

        drift: list[dict] = []
        for child in children:
            child_entries = by_child.get(child["id"], [])
            stored = coerce_status(child.get("status"))
            replayed = replay_status(child_entries)
            if stored is replayed:
                continue
            drift.append(
                {
                    "child_id": child["id"],
                    "name": child.get("name"),
                    "stored_status": stored.value,
                    "replayed_status": replayed.value,
                    "log_entries": len(child_entries),
                }
            )
        return drift

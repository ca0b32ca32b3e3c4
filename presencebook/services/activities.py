import logging
from typing import Literal, TypedDict

from docstore.db import SERVER_TIMESTAMP, DocumentStore
from presencebook import config
from presencebook.errors import ActivityNotFoundError, ActorNotPermittedError, ValidationFailedError
from presencebook.services.presence import PresenceService
from presencebook.services.resilience import call_remote
from presencebook.services.session import Role, SessionPrincipal
from presencebook.services.timeline import ACTIVITIES

logger = logging.getLogger(__name__)

KNOWN_ACTIVITY_TYPES = ("diaper_change", "special_event", "nap", "meal")

ActivityDecision = Literal["ACTIVITY_LOGGED", "DUPLICATE_CONFIRMATION_REQUIRED"]


class ActivityWriteResult(TypedDict):
    decision_code: ActivityDecision
    logged: bool
    activity_id: str | None
    child_id: str
    activity_type: str
    notes: str
    guard_checked: bool
    repeat_count: int


class ActivityService:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.presence = PresenceService(store)

    async def recent_by_actor(self, actor_id: str, limit: int) -> list[dict] | None:
        """Latest entries by `actor_id` across all children, or None when unavailable."""
        return await call_remote(
            "activity.duplicate_lookup",
            lambda: self.store.query(
                ACTIVITIES,
                [("actorId", "==", actor_id)],
                order_by="timestamp",
                descending=True,
                limit=limit,
            ),
        )

    async def log_activity(
        self,
        child_id: str,
        activity_type: str,
        note: str,
        principal: SessionPrincipal,
        *,
        confirm_duplicate: bool = False,
    ) -> ActivityWriteResult:
        """
        Append a free-form activity entry for a child.

        If the actor's last entries are all the same (type, note) as this
        one, nothing is written until the caller resubmits with
        `confirm_duplicate=True`. The check is skipped whenever the lookup
        fails; it must never stop legitimate logging.
        """
        if not principal.is_staff:
            raise ActorNotPermittedError("Only staff may log activities.")

        clean_type = activity_type.strip()
        clean_note = (note or "").strip()
        if not clean_type:
            raise ValidationFailedError("Activity type is required.")

        await self.presence.get_child(child_id)

        window = config.DUPLICATE_GUARD_WINDOW
        guard_checked = False
        repeat_count = 0
        if not confirm_duplicate:
            recent = await self.recent_by_actor(principal.id, window)
            if recent is None:
                logger.info("Duplicate check skipped for %s; logging unguarded", principal.id)
            else:
                guard_checked = True
                for entry in recent:
                    if entry.get("activityType") != clean_type or (entry.get("notes") or "") != clean_note:
                        break
                    repeat_count += 1
                if len(recent) >= window and repeat_count >= window:
                    logger.info(
                        "Activity %r by %s repeats the last %d entries; asking for confirmation",
                        clean_type,
                        principal.id,
                        repeat_count,
                    )
                    return {
                        "decision_code": "DUPLICATE_CONFIRMATION_REQUIRED",
                        "logged": False,
                        "activity_id": None,
                        "child_id": child_id,
                        "activity_type": clean_type,
                        "notes": clean_note,
                        "guard_checked": True,
                        "repeat_count": repeat_count,
                    }

        activity_id = await call_remote(
            "activity.append",
            lambda: self.store.add(
                ACTIVITIES,
                {
                    "childId": child_id,
                    "actorId": principal.id,
                    "activityType": clean_type,
                    "notes": clean_note,
                    "timestamp": SERVER_TIMESTAMP,
                },
            ),
        )
        if clean_type not in KNOWN_ACTIVITY_TYPES:
            logger.debug("Logged activity with custom type %r", clean_type)
        return {
            "decision_code": "ACTIVITY_LOGGED",
            "logged": True,
            "activity_id": str(activity_id),
            "child_id": child_id,
            "activity_type": clean_type,
            "notes": clean_note,
            "guard_checked": guard_checked,
            "repeat_count": repeat_count,
        }

    async def delete_activity(self, activity_id: str, principal: SessionPrincipal) -> None:
        if principal.role is not Role.ADMIN:
            raise ActorNotPermittedError("Only administrators may delete activities.")
        deleted = await call_remote("activity.delete", lambda: self.store.delete(ACTIVITIES, activity_id))
        if not deleted:
            raise ActivityNotFoundError(activity_id)
        logger.info("Activity %s deleted by %s", activity_id, principal.id)

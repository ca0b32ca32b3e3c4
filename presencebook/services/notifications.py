import logging

from docstore.db import SERVER_TIMESTAMP, DocumentStore
from presencebook.services.resilience import call_remote
from presencebook.services.session import USERS

logger = logging.getLogger(__name__)


async def register_push_token(store: DocumentStore, principal_id: str, token: str) -> bool:
    """Fire-and-forget: push delivery is optional, failures never reach the user."""
    clean_token = (token or "").strip()
    if not clean_token:
        return False

    async def _write() -> bool:
        await store.set(
            USERS,
            principal_id,
            {"pushToken": clean_token, "pushTokenUpdatedAt": SERVER_TIMESTAMP},
            merge=True,
        )
        return True

    registered = await call_remote("notifications.register_token", _write, fallback=lambda kind: False)
    if registered:
        logger.info("Push token registered for %s", principal_id)
    return bool(registered)


async def unregister_push_token(store: DocumentStore, principal_id: str) -> bool:
    if not principal_id:
        return False

    async def _clear() -> bool:
        await store.set(
            USERS,
            principal_id,
            {"pushToken": None, "pushTokenUpdatedAt": None},
            merge=True,
        )
        return True

    cleared = await call_remote("notifications.unregister_token", _clear, fallback=lambda kind: False)
    if not cleared:
        logger.info("Push token removal skipped for %s; logout continues", principal_id)
    return bool(cleared)

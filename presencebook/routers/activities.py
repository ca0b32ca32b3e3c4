import asyncio
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from docstore.db import DocumentStore
from presencebook.dependencies import get_store
from presencebook.errors import ActorNotPermittedError, ChildNotFoundError
from presencebook.security import principal_from_token, require_roles, require_session
from presencebook.services.activities import ActivityService
from presencebook.services.children import ChildRegistry
from presencebook.services.session import Role, SessionPrincipal
from presencebook.services.timeline import TimelineSubscription, load_timeline

logger = logging.getLogger(__name__)

router = APIRouter()


class ActivityCreate(BaseModel):
    activity_type: str
    notes: str = ""
    confirm_duplicate: bool = False


@router.post("/children/{child_id}/activities")
async def log_activity(
    child_id: str,
    payload: ActivityCreate,
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    return await ActivityService(store).log_activity(
        child_id,
        payload.activity_type,
        payload.notes,
        principal,
        confirm_duplicate=payload.confirm_duplicate,
    )


@router.delete("/activities/{activity_id}")
async def delete_activity(
    activity_id: str,
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    await ActivityService(store).delete_activity(activity_id, principal)
    return {"ok": True}


@router.get("/children/{child_id}/timeline")
async def child_timeline(
    child_id: str,
    limit: int = Query(default=200, ge=1, le=1000),
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    await ChildRegistry(store).get_child(principal, child_id)
    entries = await load_timeline(store, child_id, limit=limit)
    return {"child_id": child_id, "entries": entries}


@router.get("/timeline")
async def facility_timeline(
    limit: int = Query(default=200, ge=1, le=1000),
    principal: SessionPrincipal = Depends(require_roles(Role.ADMIN, Role.EMPLOYEE)),
    store: DocumentStore = Depends(get_store),
):
    entries = await load_timeline(store)
    if principal.role is Role.EMPLOYEE:
        children = await ChildRegistry(store).list_children(principal)
        visible = {c["id"] for c in children}
        entries = [e for e in entries if e["child_id"] in visible]
    return {"child_id": None, "entries": entries[:limit]}


async def _unsubscribe_on_disconnect(websocket: WebSocket, subscription: TimelineSubscription) -> None:
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        subscription.unsubscribe()


@router.websocket("/ws/timeline")
async def timeline_feed(websocket: WebSocket, token: str = "", child_id: str | None = None):
    principal = principal_from_token(token) if token else None
    if principal is None:
        await websocket.close(code=4401)
        return

    store: DocumentStore = websocket.app.state.store
    registry = ChildRegistry(store)
    visible: set[str] | None = None
    try:
        if child_id:
            await registry.get_child(principal, child_id)
        elif not principal.is_staff:
            raise ActorNotPermittedError("Facility feed is for staff only.")
        elif principal.role is Role.EMPLOYEE:
            visible = {c["id"] for c in await registry.list_children(principal)}
    except ChildNotFoundError:
        await websocket.close(code=4404)
        return
    except ActorNotPermittedError:
        await websocket.close(code=4403)
        return

    await websocket.accept()
    async with TimelineSubscription(store, child_id) as subscription:
        watcher = asyncio.create_task(_unsubscribe_on_disconnect(websocket, subscription))
        try:
            async for entries in subscription:
                if visible is not None:
                    entries = [e for e in entries if e["child_id"] in visible]
                await websocket.send_json({"child_id": child_id, "entries": entries})
        except WebSocketDisconnect:
            logger.debug("Timeline client for %s went away", child_id or "facility")
        finally:
            watcher.cancel()

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from docstore.db import DocumentStore
from presencebook.dependencies import get_store
from presencebook.security import require_session
from presencebook.services.children import ChildRegistry
from presencebook.services.presence import PresenceService, TransitionAction
from presencebook.services.session import SessionPrincipal

router = APIRouter()


class TransitionRequest(BaseModel):
    action: TransitionAction
    absence_reason: str | None = None


@router.post("/children/{child_id}/transitions")
async def apply_transition(
    child_id: str,
    payload: TransitionRequest,
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    return await PresenceService(store).apply_transition(
        child_id,
        payload.action,
        principal,
        absence_reason=payload.absence_reason,
    )


@router.get("/children/{child_id}/transitions")
async def list_transitions(
    child_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    await ChildRegistry(store).get_child(principal, child_id)
    rows = await PresenceService(store).list_transitions(child_id, limit=limit)
    return [
        {
            "id": r["id"],
            "child_id": r.get("childId"),
            "actor_id": r.get("actorId"),
            "action": r.get("action"),
            "notes": r.get("notes") or "",
            "timestamp": r.get("timestamp"),
        }
        for r in rows
    ]

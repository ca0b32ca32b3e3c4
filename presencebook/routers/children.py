from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field

from docstore.db import DocumentStore
from presencebook import config
from presencebook.dependencies import get_blob_store, get_store
from presencebook.security import require_roles, require_session
from presencebook.services.children import ChildRegistry
from presencebook.services.media import ALLOWED_IMAGE_TYPES, LocalBlobStore, attach_child_image
from presencebook.services.session import Role, SessionPrincipal

router = APIRouter()


class ChildCreate(BaseModel):
    name: str
    department: str
    guardian_ids: list[str] = Field(default_factory=list)
    allergies: str = ""
    notes: str = ""


class ChildUpdate(BaseModel):
    name: str | None = None
    department: str | None = None
    guardian_ids: list[str] | None = None
    allergies: str | None = None
    notes: str | None = None


def _child_out(doc: dict) -> dict:
    return {
        "id": doc["id"],
        "name": doc.get("name"),
        "department": doc.get("department"),
        "status": doc.get("status"),
        "absence_reason": doc.get("absenceReason"),
        "absence_reported_at": doc.get("absenceReportedAt"),
        "guardian_ids": doc.get("guardianIds") or [],
        "allergies": doc.get("allergies") or "",
        "notes": doc.get("notes") or "",
        "image_ref": doc.get("imageRef"),
        "last_check_in": doc.get("lastCheckIn"),
        "last_check_out": doc.get("lastCheckOut"),
        "updated_at": doc.get("updatedAt"),
    }


@router.get("/children")
async def list_children(
    department: str | None = None,
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    rows = await ChildRegistry(store).list_children(principal, department=department)
    return [_child_out(r) for r in rows]


@router.post("/children")
async def create_child(
    payload: ChildCreate,
    principal: SessionPrincipal = Depends(require_roles(Role.ADMIN)),
    store: DocumentStore = Depends(get_store),
):
    if not payload.name.strip() or not payload.department.strip():
        raise HTTPException(status_code=400, detail="Name and department are required.")
    child = await ChildRegistry(store).create_child(
        principal,
        name=payload.name,
        department=payload.department,
        guardian_ids=payload.guardian_ids,
        allergies=payload.allergies,
        notes=payload.notes,
    )
    return _child_out(child)


@router.get("/children/{child_id}")
async def child_detail(
    child_id: str,
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    return _child_out(await ChildRegistry(store).get_child(principal, child_id))


@router.patch("/children/{child_id}")
async def update_child(
    child_id: str,
    payload: ChildUpdate,
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    changes = {
        "name": payload.name,
        "department": payload.department,
        "guardianIds": payload.guardian_ids,
        "allergies": payload.allergies,
        "notes": payload.notes,
    }
    child = await ChildRegistry(store).update_child(principal, child_id, changes)
    return _child_out(child)


@router.delete("/children/{child_id}")
async def delete_child(
    child_id: str,
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    await ChildRegistry(store).delete_child(principal, child_id)
    return {"ok": True}


@router.post("/children/{child_id}/image")
async def upload_child_image(
    child_id: str,
    principal: SessionPrincipal = Depends(require_roles(Role.ADMIN, Role.EMPLOYEE)),
    store: DocumentStore = Depends(get_store),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    file: UploadFile = File(...),
):
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    await ChildRegistry(store).get_child(principal, child_id)

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload.")
    if len(data) > config.UPLOAD_MAX_BYTES:
        raise HTTPException(status_code=413, detail="Upload exceeds the maximum file size.")

    reference = await attach_child_image(store, blob_store, child_id, data, file.content_type)
    return {
        "child_id": child_id,
        "storage": reference.kind,
        "image_ref": reference.ref,
        "size": reference.size,
    }


class GuardianLink(BaseModel):
    email: str


@router.post("/children/{child_id}/guardians")
async def link_guardian(
    child_id: str,
    payload: GuardianLink,
    principal: SessionPrincipal = Depends(require_roles(Role.ADMIN, Role.EMPLOYEE)),
    store: DocumentStore = Depends(get_store),
):
    child = await ChildRegistry(store).link_guardian(principal, child_id, payload.email)
    return _child_out(child)


@router.delete("/children/{child_id}/guardians")
async def unlink_guardian(
    child_id: str,
    email: str,
    principal: SessionPrincipal = Depends(require_roles(Role.ADMIN, Role.EMPLOYEE)),
    store: DocumentStore = Depends(get_store),
):
    child = await ChildRegistry(store).unlink_guardian(principal, child_id, email)
    return _child_out(child)

import asyncio
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from docstore.db import DocumentStore, create_account
from presencebook.dependencies import get_store
from presencebook.security import require_roles
from presencebook.services.children import save_user_profile
from presencebook.services.presence import PresenceService
from presencebook.services.session import Role

router = APIRouter(dependencies=[Depends(require_roles(Role.ADMIN))])


class AccountCreate(BaseModel):
    email: str
    password: str
    role: Role
    name: str | None = None
    department: str | None = None


@router.post("/admin/accounts")
async def create_user_account(payload: AccountCreate, store: DocumentStore = Depends(get_store)):
    email = payload.email.strip().lower()
    password = payload.password.strip()
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required.")
    if payload.role is Role.EMPLOYEE and not (payload.department or "").strip():
        raise HTTPException(status_code=400, detail="Employees need a department.")

    try:
        uid = await asyncio.to_thread(create_account, email, password)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="An account with this email already exists.")

    return await save_user_profile(
        store,
        uid,
        email=email,
        role=payload.role,
        name=(payload.name or "").strip() or None,
        department=(payload.department or "").strip() or None,
    )


@router.get("/admin/presence/drift")
async def presence_drift(store: DocumentStore = Depends(get_store)):
    rows = await PresenceService(store).find_status_drift()
    return {"rows": rows, "total": len(rows)}

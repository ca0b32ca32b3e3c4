import asyncio
import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from docstore.db import DocumentStore, create_tables, verify_account_credentials
from presencebook.dependencies import get_store
from presencebook.security import issue_session_token, require_session
from presencebook.services.notifications import register_push_token, unregister_push_token
from presencebook.services.session import SessionPrincipal, resolve_principal

router = APIRouter()


class LoginRequest(BaseModel):
    email: str
    password: str
    push_token: str | None = None


class PushTokenRequest(BaseModel):
    token: str


async def _verify_credentials(email: str, password: str) -> dict | None:
    try:
        return await asyncio.to_thread(verify_account_credentials, email, password)
    except sqlite3.OperationalError:
        # Self-heal when the schema is missing (e.g. lifespan skipped).
        try:
            await asyncio.to_thread(create_tables)
            return await asyncio.to_thread(verify_account_credentials, email, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )


@router.post("/auth/login")
async def login(payload: LoginRequest, store: DocumentStore = Depends(get_store)):
    email = payload.email.strip().lower()
    password = payload.password.strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    account = await _verify_credentials(email, password)
    if not account:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    principal = await resolve_principal(store, account["uid"], account["email"])
    token, claims = issue_session_token(principal)

    push_registered = False
    if payload.push_token:
        push_registered = await register_push_token(store, principal.id, payload.push_token)

    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "uid": principal.id,
        "email": principal.email,
        "role": principal.role.value,
        "role_source": principal.source.value,
        "department": principal.department,
        "push_registered": push_registered,
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.get("/auth/me")
def auth_me(principal: SessionPrincipal = Depends(require_session)):
    return {
        "uid": principal.id,
        "email": principal.email,
        "role": principal.role.value,
        "role_source": principal.source.value,
        "department": principal.department,
    }


@router.post("/auth/push-token")
async def push_token(
    payload: PushTokenRequest,
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    registered = await register_push_token(store, principal.id, payload.token)
    return {"ok": True, "registered": registered}


@router.post("/auth/logout")
async def logout(
    principal: SessionPrincipal = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    # Cleanup is best effort; logout itself always succeeds.
    token_cleared = await unregister_push_token(store, principal.id)
    return {"ok": True, "push_token_cleared": token_cleared}

import asyncio

import pytest

import presencebook.config as config
from docstore.db import StoreError
from presencebook.services.session import (
    Role,
    RoleSource,
    principal_from_claims,
    resolve_principal,
    role_from_email,
)


def _blocked_get(message="net::ERR_BLOCKED_BY_CLIENT", code="unavailable"):
    async def _get(collection, doc_id):
        raise StoreError(message, code=code)

    return _get


@pytest.mark.parametrize(
    "email, role",
    [
        ("admin@example.com", Role.ADMIN),
        ("Site.Admin@kindergarten.no", Role.ADMIN),
        ("ansatt.blue@example.com", Role.EMPLOYEE),
        ("employee7@example.com", Role.EMPLOYEE),
        ("parent@example.com", Role.PARENT),
        ("", Role.PARENT),
    ],
)
def test_role_from_email(email, role):
    assert role_from_email(email) is role


def test_role_lookup_timeout_falls_back_to_email(store, monkeypatch):
    monkeypatch.setattr(config, "READ_TIMEOUT_SECONDS", 0.01)

    async def slow_get(collection, doc_id):
        await asyncio.sleep(1)

    monkeypatch.setattr(store, "get", slow_get)

    admin = asyncio.run(resolve_principal(store, "u-1", "admin@example.com"))
    parent = asyncio.run(resolve_principal(store, "u-2", "parent@example.com"))

    assert admin.role is Role.ADMIN
    assert admin.source is RoleSource.EMAIL_HEURISTIC
    assert parent.role is Role.PARENT
    assert parent.source is RoleSource.EMAIL_HEURISTIC


def test_blocked_lookup_uses_email_heuristic(store, monkeypatch):
    monkeypatch.setattr(store, "get", _blocked_get())

    principal = asyncio.run(resolve_principal(store, "u-3", "ansatt@example.com"))

    assert principal.role is Role.EMPLOYEE
    assert principal.source is RoleSource.EMAIL_HEURISTIC
    assert principal.department is None


def test_permission_denied_lookup_uses_email_heuristic(store, monkeypatch):
    monkeypatch.setattr(store, "get", _blocked_get("Missing or insufficient permissions.", code="permission-denied"))
    principal = asyncio.run(resolve_principal(store, "u-4", "someone@example.com"))
    assert principal.role is Role.PARENT
    assert principal.source is RoleSource.EMAIL_HEURISTIC


def test_missing_profile_is_provisioned_as_parent(store):
    principal = asyncio.run(resolve_principal(store, "u-5", "admin.lookalike@example.com", display_name="Per"))

    assert principal.role is Role.PARENT
    assert principal.source is RoleSource.PROFILE_LOOKUP

    profile = asyncio.run(store.get("users", "u-5"))
    assert profile["role"] == "parent"
    assert profile["name"] == "Per"
    assert profile["email"] == "admin.lookalike@example.com"


def test_failed_provisioning_does_not_block_login(store, monkeypatch):
    async def denied_set(collection, doc_id, data, *, merge=False):
        raise StoreError("denied", code="permission-denied")

    monkeypatch.setattr(store, "set", denied_set)

    principal = asyncio.run(resolve_principal(store, "u-6", "new@example.com"))
    assert principal.role is Role.PARENT


def test_profile_role_and_department_win_over_email(store):
    asyncio.run(store.set("users", "u-7", {"email": "parent@example.com", "role": "employee", "department": "Blue"}))

    principal = asyncio.run(resolve_principal(store, "u-7", "parent@example.com"))

    assert principal.role is Role.EMPLOYEE
    assert principal.department == "Blue"
    assert principal.source is RoleSource.PROFILE_LOOKUP
    assert principal.is_staff


def test_unknown_profile_role_defaults_to_parent(store):
    asyncio.run(store.set("users", "u-8", {"email": "x@example.com", "role": "superuser"}))
    principal = asyncio.run(resolve_principal(store, "u-8", "x@example.com"))
    assert principal.role is Role.PARENT


def test_principal_from_claims():
    principal = principal_from_claims(
        {"sub": "u-9", "email": "a@example.com", "role": "admin", "role_source": "email-heuristic", "department": ""}
    )
    assert principal.id == "u-9"
    assert principal.role is Role.ADMIN
    assert principal.source is RoleSource.EMAIL_HEURISTIC
    assert principal.department is None

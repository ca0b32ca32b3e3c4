import logging
from typing import Any

from docstore.db import SERVER_TIMESTAMP, DocumentStore
from presencebook.errors import (
    ActorNotPermittedError,
    ChildNotFoundError,
    GuardianAlreadyLinkedError,
    GuardianNotLinkedError,
    UserNotFoundError,
    ValidationFailedError,
)
from presencebook.services.presence import CHILDREN, ChildStatus
from presencebook.services.resilience import call_remote
from presencebook.services.session import USERS, Role, SessionPrincipal

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "department", "allergies", "notes", "guardianIds")


def _clean_guardians(guardian_ids: list[str] | None) -> list[str]:
    # Order is irrelevant; keep a stable sorted set.
    return sorted({g.strip() for g in (guardian_ids or []) if g and g.strip()})


def can_view(principal: SessionPrincipal, child: dict) -> bool:
    if principal.role is Role.ADMIN:
        return True
    if principal.role is Role.EMPLOYEE:
        return bool(principal.department) and child.get("department") == principal.department
    return principal.id in (child.get("guardianIds") or [])


class ChildRegistry:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_child(
        self,
        principal: SessionPrincipal,
        *,
        name: str,
        department: str,
        guardian_ids: list[str] | None = None,
        allergies: str = "",
        notes: str = "",
    ) -> dict:
        if principal.role is not Role.ADMIN:
            raise ActorNotPermittedError("Only administrators may register children.")
        clean_name = name.strip()
        if not clean_name:
            raise ValidationFailedError("Name is required.")

        data = {
            "name": clean_name,
            "department": department.strip(),
            "status": ChildStatus.NOT_CHECKED_IN.value,
            "absenceReason": None,
            "absenceReportedAt": None,
            "guardianIds": _clean_guardians(guardian_ids),
            "allergies": allergies.strip(),
            "notes": notes.strip(),
            "imageRef": None,
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        child_id = await call_remote("children.write", lambda: self.store.add(CHILDREN, data))
        logger.info("Child %s registered by %s", child_id, principal.id)
        return await self.get_child(principal, str(child_id))

    async def get_child(self, principal: SessionPrincipal, child_id: str) -> dict:
        child = await call_remote("children.read", lambda: self.store.get(CHILDREN, child_id))
        if child is None:
            raise ChildNotFoundError(child_id)
        if not can_view(principal, child):
            raise ActorNotPermittedError("Child is not visible to this session.")
        return child

    async def list_children(self, principal: SessionPrincipal, *, department: str | None = None) -> list[dict]:
        if principal.role is Role.ADMIN:
            where = [("department", "==", department)] if department else []
        elif principal.role is Role.EMPLOYEE:
            if not principal.department:
                logger.warning("Employee %s has no department assigned", principal.id)
                return []
            where = [("department", "==", principal.department)]
        else:
            where = [("guardianIds", "array-contains", principal.id)]
        return await call_remote(
            "children.read",
            lambda: self.store.query(CHILDREN, where, order_by="name"),
        )

    async def update_child(self, principal: SessionPrincipal, child_id: str, changes: dict[str, Any]) -> dict:
        if not principal.is_staff:
            raise ActorNotPermittedError("Only staff may edit child profiles.")
        await self.get_child(principal, child_id)

        fields: dict[str, Any] = {}
        for key in EDITABLE_FIELDS:
            if key not in changes or changes[key] is None:
                continue
            value = changes[key]
            fields[key] = _clean_guardians(value) if key == "guardianIds" else str(value).strip()
        if "name" in fields and not fields["name"]:
            raise ValidationFailedError("Name cannot be empty.")
        if not fields:
            return await self.get_child(principal, child_id)

        fields["updatedAt"] = SERVER_TIMESTAMP
        await call_remote("children.write", lambda: self.store.update(CHILDREN, child_id, fields))
        return await self.get_child(principal, child_id)

    async def delete_child(self, principal: SessionPrincipal, child_id: str) -> None:
        if principal.role is not Role.ADMIN:
            raise ActorNotPermittedError("Only administrators may delete children.")
        deleted = await call_remote("children.write", lambda: self.store.delete(CHILDREN, child_id))
        if not deleted:
            raise ChildNotFoundError(child_id)
        logger.info("Child %s deleted by %s", child_id, principal.id)

    async def _user_id_for_email(self, email: str) -> tuple[str, str]:
        clean_email = (email or "").strip().lower()
        if not clean_email:
            raise ValidationFailedError("Email is required.")
        users = await call_remote(
            "users.read",
            lambda: self.store.query(USERS, [("email", "==", clean_email)], limit=1),
        )
        if not users:
            raise UserNotFoundError(clean_email)
        return users[0]["id"], clean_email

    async def link_guardian(self, principal: SessionPrincipal, child_id: str, email: str) -> dict:
        """Add the user registered under `email` to the child's guardians."""
        if not principal.is_staff:
            raise ActorNotPermittedError("Only staff may change guardians.")
        child = await self.get_child(principal, child_id)
        user_id, clean_email = await self._user_id_for_email(email)

        guardians = list(child.get("guardianIds") or [])
        if user_id in guardians:
            raise GuardianAlreadyLinkedError(child_id, clean_email)

        fields = {"guardianIds": _clean_guardians(guardians + [user_id]), "updatedAt": SERVER_TIMESTAMP}
        await call_remote("children.write", lambda: self.store.update(CHILDREN, child_id, fields))
        logger.info("Guardian %s linked to child %s by %s", user_id, child_id, principal.id)
        return await self.get_child(principal, child_id)

    async def unlink_guardian(self, principal: SessionPrincipal, child_id: str, email: str) -> dict:
        if not principal.is_staff:
            raise ActorNotPermittedError("Only staff may change guardians.")
        child = await self.get_child(principal, child_id)
        user_id, clean_email = await self._user_id_for_email(email)

        guardians = list(child.get("guardianIds") or [])
        if user_id not in guardians:
            raise GuardianNotLinkedError(child_id, clean_email)

        fields = {"guardianIds": _clean_guardians([g for g in guardians if g != user_id]), "updatedAt": SERVER_TIMESTAMP}
        await call_remote("children.write", lambda: self.store.update(CHILDREN, child_id, fields))
        logger.info("Guardian %s unlinked from child %s by %s", user_id, child_id, principal.id)
        return await self.get_child(principal, child_id)


async def save_user_profile(
    store: DocumentStore,
    uid: str,
    *,
    email: str,
    role: Role,
    name: str | None = None,
    department: str | None = None,
) -> dict:
    profile = {
        "email": email,
        "name": name or email,
        "role": role.value,
        "department": department or None,
        "createdAt": SERVER_TIMESTAMP,
        "updatedAt": SERVER_TIMESTAMP,
    }
    await call_remote("users.write", lambda: store.set(USERS, uid, profile))
    return {
        "uid": uid,
        "email": profile["email"],
        "name": profile["name"],
        "role": profile["role"],
        "department": profile["department"],
    }

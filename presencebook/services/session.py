import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from docstore.db import SERVER_TIMESTAMP, DocumentStore
from presencebook import config
from presencebook.services.resilience import FailureKind, call_remote

logger = logging.getLogger(__name__)

USERS = "users"


class Role(str, Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"
    PARENT = "parent"


class RoleSource(str, Enum):
    PROFILE_LOOKUP = "profile-lookup"
    EMAIL_HEURISTIC = "email-heuristic"


# Role given to principals whose profile document is missing.
DEFAULT_ROLE = Role.PARENT


@dataclass(frozen=True)
class SessionPrincipal:
    id: str
    email: str
    role: Role
    source: RoleSource
    department: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.ADMIN, Role.EMPLOYEE)


def role_from_email(email: str) -> Role:
    address = (email or "").strip().lower()
    if any(keyword in address for keyword in config.ADMIN_EMAIL_KEYWORDS):
        return Role.ADMIN
    if any(keyword in address for keyword in config.EMPLOYEE_EMAIL_KEYWORDS):
        return Role.EMPLOYEE
    return Role.PARENT


def _coerce_role(value: Any, principal_id: str) -> Role:
    try:
        return Role(str(value))
    except ValueError:
        logger.warning("Profile %s has unknown role %r; using %s", principal_id, value, DEFAULT_ROLE.value)
        return DEFAULT_ROLE


class _Unavailable:
    def __init__(self, kind: FailureKind):
        self.kind = kind


async def resolve_principal(
    store: DocumentStore,
    principal_id: str,
    email: str,
    *,
    display_name: str | None = None,
) -> SessionPrincipal:
    """
    Work out the role for a freshly signed-in principal.

    The profile document decides when it can be read. When the lookup is
    blocked, denied or times out the role comes from the email address
    instead, so login still completes. A principal without a profile gets
    one provisioned with the default role (best effort).
    """
    profile = await call_remote(
        "session.role_lookup",
        lambda: store.get(USERS, principal_id),
        fallback=_Unavailable,
    )

    if isinstance(profile, _Unavailable):
        role = role_from_email(email)
        logger.warning(
            "Role lookup for %s unavailable (%s); email heuristic gave %s",
            principal_id,
            profile.kind.value,
            role.value,
        )
        return SessionPrincipal(
            id=principal_id,
            email=email,
            role=role,
            source=RoleSource.EMAIL_HEURISTIC,
        )

    if profile is None:
        logger.info("Profile for %s missing; provisioning with role %s", principal_id, DEFAULT_ROLE.value)
        await call_remote(
            "session.profile_provision",
            lambda: store.set(
                USERS,
                principal_id,
                {
                    "email": email,
                    "name": display_name or email or "User",
                    "role": DEFAULT_ROLE.value,
                    "department": None,
                    "createdAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            ),
        )
        return SessionPrincipal(
            id=principal_id,
            email=email,
            role=DEFAULT_ROLE,
            source=RoleSource.PROFILE_LOOKUP,
        )

    department = profile.get("department")
    return SessionPrincipal(
        id=principal_id,
        email=email,
        role=_coerce_role(profile.get("role"), principal_id),
        source=RoleSource.PROFILE_LOOKUP,
        department=str(department) if department else None,
    )


def principal_from_claims(claims: dict[str, Any]) -> SessionPrincipal:
    return SessionPrincipal(
        id=str(claims["sub"]),
        email=str(claims.get("email") or ""),
        role=Role(str(claims.get("role"))),
        source=RoleSource(str(claims.get("role_source", RoleSource.PROFILE_LOOKUP.value))),
        department=claims.get("department") or None,
    )

"""
Degraded-mode resolver.

Every call the services make against the document store, blob store or
token registry goes through `call_remote`, which bounds it with a timeout,
classifies any failure and then applies the policy registered for the call
site in `CALL_SITES`:

- critical:     surface a retryable `RemoteUnavailableError`
- best_effort:  log and return the fallback value
- auth_gating:  log a warning and return the fallback value (which must be
                provided, login must never block on it)
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from presencebook import config
from presencebook.errors import RemoteUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureKind(str, Enum):
    BLOCKED = "blocked"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    OTHER = "other"


class CallPolicy(str, Enum):
    CRITICAL = "critical"
    BEST_EFFORT = "best_effort"
    AUTH_GATING = "auth_gating"


@dataclass(frozen=True)
class CallSite:
    name: str
    policy: CallPolicy
    timeout_setting: str

    @property
    def timeout_seconds(self) -> float:
        # Read at call time so runtime overrides of config apply.
        return float(getattr(config, self.timeout_setting))


def _site(name: str, policy: CallPolicy, timeout_setting: str) -> tuple[str, CallSite]:
    return name, CallSite(name=name, policy=policy, timeout_setting=timeout_setting)


CALL_SITES: dict[str, CallSite] = dict([
    # auth gating
    _site("session.role_lookup", CallPolicy.AUTH_GATING, "READ_TIMEOUT_SECONDS"),
    # critical
    _site("presence.read_child", CallPolicy.CRITICAL, "READ_TIMEOUT_SECONDS"),
    _site("presence.append_log", CallPolicy.CRITICAL, "CRITICAL_WRITE_TIMEOUT_SECONDS"),
    _site("presence.update_status", CallPolicy.CRITICAL, "CRITICAL_WRITE_TIMEOUT_SECONDS"),
    _site("presence.read_log", CallPolicy.CRITICAL, "READ_TIMEOUT_SECONDS"),
    _site("activity.append", CallPolicy.CRITICAL, "CRITICAL_WRITE_TIMEOUT_SECONDS"),
    _site("activity.read", CallPolicy.CRITICAL, "READ_TIMEOUT_SECONDS"),
    _site("activity.delete", CallPolicy.CRITICAL, "CRITICAL_WRITE_TIMEOUT_SECONDS"),
    _site("children.read", CallPolicy.CRITICAL, "READ_TIMEOUT_SECONDS"),
    _site("children.write", CallPolicy.CRITICAL, "CRITICAL_WRITE_TIMEOUT_SECONDS"),
    _site("users.read", CallPolicy.CRITICAL, "READ_TIMEOUT_SECONDS"),
    _site("users.write", CallPolicy.CRITICAL, "CRITICAL_WRITE_TIMEOUT_SECONDS"),
    _site("timeline.read", CallPolicy.CRITICAL, "READ_TIMEOUT_SECONDS"),
    _site("media.attach", CallPolicy.CRITICAL, "CRITICAL_WRITE_TIMEOUT_SECONDS"),
    # best effort
    _site("session.profile_provision", CallPolicy.BEST_EFFORT, "BACKGROUND_WRITE_TIMEOUT_SECONDS"),
    _site("presence.confirm_log", CallPolicy.BEST_EFFORT, "BACKGROUND_WRITE_TIMEOUT_SECONDS"),
    _site("activity.duplicate_lookup", CallPolicy.BEST_EFFORT, "READ_TIMEOUT_SECONDS"),
    _site("timeline.subscribe", CallPolicy.BEST_EFFORT, "READ_TIMEOUT_SECONDS"),
    _site("media.upload", CallPolicy.BEST_EFFORT, "UPLOAD_TIMEOUT_SECONDS"),
    _site("notifications.register_token", CallPolicy.BEST_EFFORT, "BACKGROUND_WRITE_TIMEOUT_SECONDS"),
    _site("notifications.unregister_token", CallPolicy.BEST_EFFORT, "READ_TIMEOUT_SECONDS"),
])

_BLOCKED_MARKERS = ("err_blocked_by_client", "blocked", "unavailable", "network", "unable to open")
_PERMISSION_MARKERS = ("permission-denied", "permission_denied", "insufficient permissions", "unauthorized", "unauthenticated")
_TIMEOUT_MARKERS = ("timeout", "timed out", "deadline-exceeded", "deadline exceeded")


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, PermissionError):
        return FailureKind.PERMISSION_DENIED
    if isinstance(exc, ConnectionError):
        return FailureKind.BLOCKED

    code = str(getattr(exc, "code", "") or "").lower()
    message = str(exc).lower()

    if code in {"permission-denied", "unauthenticated", "unauthorized"}:
        return FailureKind.PERMISSION_DENIED
    if code == "deadline-exceeded":
        return FailureKind.TIMEOUT
    if code == "unavailable" or "blocked" in code:
        return FailureKind.BLOCKED

    if any(marker in message for marker in _PERMISSION_MARKERS):
        return FailureKind.PERMISSION_DENIED
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        return FailureKind.TIMEOUT
    if any(marker in message for marker in _BLOCKED_MARKERS):
        return FailureKind.BLOCKED
    return FailureKind.OTHER


async def call_remote(
    site_name: str,
    operation: Callable[[], Awaitable[T]],
    *,
    fallback: Callable[[FailureKind], T] | None = None,
) -> T | None:
    """
    Run `operation()` under the policy registered for `site_name`.

    `fallback(kind)` produces the degraded value for best-effort and
    auth-gating sites; best-effort sites without one return None.
    """
    site = CALL_SITES[site_name]
    if site.policy is CallPolicy.AUTH_GATING and fallback is None:
        raise ValueError(f"Call site {site_name} needs a fallback.")

    try:
        return await asyncio.wait_for(operation(), timeout=site.timeout_seconds)
    except Exception as exc:
        kind = classify_failure(exc)
        return _apply_policy(site, kind, exc, fallback)


def _apply_policy(
    site: CallSite,
    kind: FailureKind,
    exc: Exception,
    fallback: Callable[[FailureKind], Any] | None,
) -> Any:
    if site.policy is CallPolicy.CRITICAL:
        logger.error("%s failed (%s): %s", site.name, kind.value, exc)
        raise RemoteUnavailableError(site.name, kind.value) from exc

    if site.policy is CallPolicy.AUTH_GATING:
        logger.warning("%s degraded (%s): %s", site.name, kind.value, exc)
    elif kind is FailureKind.OTHER:
        logger.warning("%s skipped (%s): %s", site.name, kind.value, exc)
    else:
        logger.info("%s skipped (%s)", site.name, kind.value)

    return fallback(kind) if fallback is not None else None


def describe_call_sites() -> list[dict[str, Any]]:
    return [
        {
            "site": site.name,
            "policy": site.policy.value,
            "timeout_seconds": site.timeout_seconds,
        }
        for site in CALL_SITES.values()
    ]

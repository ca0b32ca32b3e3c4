"""Domain errors raised by the presence engine.

Routers never catch these one by one; `main.py` maps each class to a
status code so the same failure always looks the same to clients.
"""


class ActorNotPermittedError(PermissionError):
    """The session's role (or guardianship) does not allow the action."""


class InvalidTransitionError(ValueError):
    """The requested action is not valid from the child's current status."""

    def __init__(self, message: str, *, current_status: str | None = None, action: str | None = None):
        super().__init__(message)
        self.current_status = current_status
        self.action = action


class ChildNotFoundError(LookupError):
    def __init__(self, child_id: str):
        super().__init__(f"Child {child_id} not found.")
        self.child_id = child_id


class ActivityNotFoundError(LookupError):
    def __init__(self, activity_id: str):
        super().__init__(f"Activity {activity_id} not found.")
        self.activity_id = activity_id


class PayloadTooLargeError(ValueError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Inline image payload is {size} bytes; the limit is {limit} bytes.")
        self.size = size
        self.limit = limit


class RemoteUnavailableError(RuntimeError):
    """A critical remote call failed; the caller may retry."""

    retryable = True

    def __init__(self, site: str, kind: str, message: str | None = None):
        super().__init__(message or f"{site} failed ({kind}).")
        self.site = site
        self.kind = kind


class StatusProjectionError(RemoteUnavailableError):
    """The transition was logged but the child's status could not be updated.

    The audit log already holds the entry, so the stored status lags behind
    it until the next accepted transition for the child.
    """

    def __init__(self, site: str, kind: str, *, child_id: str, log_entry_id: str):
        super().__init__(
            site,
            kind,
            f"Transition logged as {log_entry_id} but status of child {child_id} was not updated ({kind}).",
        )
        self.child_id = child_id
        self.log_entry_id = log_entry_id


class ValidationFailedError(ValueError):
    """Client input failed validation."""


class UserNotFoundError(LookupError):
    def __init__(self, email: str):
        super().__init__(f"No user with email {email}.")
        self.email = email


class GuardianNotLinkedError(LookupError):
    def __init__(self, child_id: str, email: str):
        super().__init__(f"{email} is not a guardian of child {child_id}.")
        self.child_id = child_id
        self.email = email


class GuardianAlreadyLinkedError(Exception):
    def __init__(self, child_id: str, email: str):
        super().__init__(f"{email} is already a guardian of child {child_id}.")
        self.child_id = child_id
        self.email = email

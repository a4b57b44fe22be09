"""
Claim workflow errors.

Every failure in the core is a business-rule violation, raised where it
is detected and passed to the caller unchanged. Nothing here is retried.
"""


class ClaimError(Exception):
    """Base exception for claim workflow errors."""
    pass


class NotFound(ClaimError):
    """A claim, document, target or user does not exist."""
    pass


class ActorNotFound(NotFound):
    """The acting user could not be resolved in the directory."""
    pass


class InvalidTransition(ClaimError):
    """The requested status is not reachable from the current one."""

    def __init__(self, from_status, to_status):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid state transition: cannot change status from "
            f"{_name(from_status)} to {_name(to_status)}"
        )


class Forbidden(ClaimError):
    """The actor has no rights over this claim or operation."""
    pass


class InvalidState(ClaimError):
    """The operation is not permitted in the claim's current status."""
    pass


class InvalidRequest(ClaimError):
    """The payload is malformed or breaks a structural invariant."""
    pass


class Conflict(ClaimError):
    """The operation collides with an existing record."""
    pass


class OwnershipConflict(Conflict):
    """The target is already claimed by a different user."""
    pass


def _name(status) -> str:
    return getattr(status, "value", status)

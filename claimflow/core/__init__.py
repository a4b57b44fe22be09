# Core claim lifecycle services
from .hasher import Hasher, CanonicalSerializationError
from .errors import (
    ClaimError,
    NotFound,
    ActorNotFound,
    InvalidTransition,
    Forbidden,
    InvalidState,
    InvalidRequest,
    Conflict,
    OwnershipConflict,
)
from .state_machine import (
    VALID_TRANSITIONS,
    CLOSED_STATUSES,
    allowed_targets,
    can_transition,
    validate_transition,
    is_terminal,
)
from .audit import append_entry, new_entry, verify_chain, first_broken_index
from .documents import AggregateOutcome, aggregate
from .service import ClaimService

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "ClaimError",
    "NotFound",
    "ActorNotFound",
    "InvalidTransition",
    "Forbidden",
    "InvalidState",
    "InvalidRequest",
    "Conflict",
    "OwnershipConflict",
    "VALID_TRANSITIONS",
    "CLOSED_STATUSES",
    "allowed_targets",
    "can_transition",
    "validate_transition",
    "is_terminal",
    "append_entry",
    "new_entry",
    "verify_chain",
    "first_broken_index",
    "AggregateOutcome",
    "aggregate",
    "ClaimService",
]

"""
Claim State Machine

The whole transition graph is this one table. Adding a state means
editing VALID_TRANSITIONS and nothing else.

Moves are asymmetric on purpose: a claim can be sent back for more
information, but VERIFIED and REJECTED only lead to ARCHIVED, and
ARCHIVED leads nowhere.
"""

from ..schemas import ClaimStatus
from .errors import InvalidTransition


VALID_TRANSITIONS: dict[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.PENDING: frozenset({
        ClaimStatus.UNDER_REVIEW,
        ClaimStatus.REJECTED,
        ClaimStatus.ARCHIVED,
    }),
    ClaimStatus.APPROVED: frozenset({
        ClaimStatus.VERIFIED,
        ClaimStatus.ARCHIVED,
    }),
    ClaimStatus.UNDER_REVIEW: frozenset({
        ClaimStatus.ACTION_REQUIRED,
        ClaimStatus.VERIFIED,
        ClaimStatus.REJECTED,
        ClaimStatus.ARCHIVED,
        ClaimStatus.APPROVED,
    }),
    ClaimStatus.ACTION_REQUIRED: frozenset({
        ClaimStatus.UNDER_REVIEW,
        ClaimStatus.REJECTED,
        ClaimStatus.ARCHIVED,
    }),
    ClaimStatus.PENDING_DOCUMENTS: frozenset({
        ClaimStatus.UNDER_REVIEW,
        ClaimStatus.ACTION_REQUIRED,
        ClaimStatus.REJECTED,
        ClaimStatus.ARCHIVED,
    }),
    ClaimStatus.VERIFIED: frozenset({ClaimStatus.ARCHIVED}),
    ClaimStatus.REJECTED: frozenset({ClaimStatus.ARCHIVED}),
    ClaimStatus.ARCHIVED: frozenset(),
}

# Statuses from which the requester can no longer contribute anything
CLOSED_STATUSES = frozenset({
    ClaimStatus.VERIFIED,
    ClaimStatus.REJECTED,
    ClaimStatus.ARCHIVED,
})


def allowed_targets(current: ClaimStatus) -> frozenset[ClaimStatus]:
    return VALID_TRANSITIONS[ClaimStatus(current)]


def can_transition(current: ClaimStatus, target: ClaimStatus) -> bool:
    return ClaimStatus(target) in allowed_targets(current)


def validate_transition(current: ClaimStatus, target: ClaimStatus) -> None:
    """Raise InvalidTransition unless current → target is an edge of the table."""
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def is_terminal(status: ClaimStatus) -> bool:
    return not allowed_targets(status)

"""
Claim status values.

Kept apart from the Claim model so the audit schema can refer to
statuses without importing the claim itself.
"""

from enum import Enum


class ClaimStatus(str, Enum):
    """
    Review lifecycle of a claim.

    Allowed moves between these live in core.state_machine, not here.
    """
    PENDING = "PENDING"                     # Submitted, nobody has looked yet
    APPROVED = "APPROVED"                   # Legacy alias, only leads to VERIFIED
    UNDER_REVIEW = "UNDER_REVIEW"           # An admin is working on it
    ACTION_REQUIRED = "ACTION_REQUIRED"     # Waiting on the requester
    PENDING_DOCUMENTS = "PENDING_DOCUMENTS" # Legacy, kept for stored rows
    VERIFIED = "VERIFIED"                   # Ownership granted
    REJECTED = "REJECTED"
    ARCHIVED = "ARCHIVED"                   # Nothing happens after this


# A user may hold at most one claim per target in these states
ACTIVE_STATUSES = frozenset({
    ClaimStatus.PENDING,
    ClaimStatus.UNDER_REVIEW,
    ClaimStatus.ACTION_REQUIRED,
})

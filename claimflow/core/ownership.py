"""
Ownership Grant

The one side effect a claim has outside itself: marking the targeted
institution or group as claimed by the requester.

The grant is one-way. Archiving or rejecting a claim later never
clears claimed_by.
"""

from datetime import datetime

from ..schemas import Claim, ClaimableEntity
from ..observability import get_logger, get_metrics
from .errors import NotFound, OwnershipConflict


logger = get_logger(__name__)


def _load_target(store, claim: Claim) -> ClaimableEntity:
    target = claim.target
    entity = store.get_target(target.kind, target.id)
    if entity is None:
        raise NotFound(f"{target.kind.value.capitalize()} {target.id} not found")
    return entity


def check_grantable(store, claim: Claim) -> ClaimableEntity:
    """
    Raise OwnershipConflict if the target belongs to someone else.

    Lets a doomed VERIFIED move fail before anything else is decided.
    grant() repeats the check atomically when it writes.
    """
    entity = _load_target(store, claim)
    if entity.claimed_by is not None and entity.claimed_by != claim.user_id:
        raise OwnershipConflict(
            f"{entity.kind.value.capitalize()} {entity.id} is already claimed "
            f"by another user"
        )
    return entity


def grant(store, claim: Claim, at: datetime) -> ClaimableEntity:
    """
    Persist the VERIFIED `claim` and record its requester as owner of the target.

    The store writes both in one step with a compare-and-set on the
    target, so a rival verified in the meantime makes this raise
    OwnershipConflict with nothing written. Granting again to the same
    user keeps the original claimed_at.
    """
    entity = check_grantable(store, claim)

    granted = store.grant_and_save_claim(claim, at)
    if granted is None:
        raise OwnershipConflict(
            f"{entity.kind.value.capitalize()} {entity.id} was claimed "
            f"by another user"
        )
    if entity.claimed_by is not None:
        return granted

    logger.info(
        "Ownership granted",
        target_kind=entity.kind.value,
        target_id=str(entity.id),
        user_id=str(claim.user_id),
        claim_id=str(claim.id),
    )
    get_metrics().record_ownership_grant()
    return granted

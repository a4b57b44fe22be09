"""
Tests for the ownership grant that follows verification.
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from claimflow.core import OwnershipConflict
from claimflow.core import ownership
from claimflow.db import InMemoryClaimStore, StoreError
from claimflow.observability import get_metrics
from claimflow.schemas import ClaimStatus, DocumentStatus, TargetKind


class TestOwnershipGrant:
    """VERIFIED hands the target to the requester, once."""

    @pytest.fixture
    def verified(self, service, reviewing_claim, admin):
        return service.update_status(reviewing_claim.id, "VERIFIED", admin.id, "confirmed with HR")

    @pytest.fixture
    def rival_claim(self, service, other_user, admin, claim_request):
        """Another user's claim on the same institution, under review."""
        claim = service.create_claim(other_user.id, claim_request)
        return service.update_status(claim.id, "UNDER_REVIEW", admin.id, "starting review")

    def test_verification_grants(self, store, verified, requester, institution):
        target = store.get_target(TargetKind.INSTITUTION, institution.id)
        assert target.is_claimed
        assert target.claimed_by == requester.id
        assert target.claimed_via == verified.id
        assert target.claimed_at == verified.updated_at

    def test_grant_is_counted(self, verified):
        assert get_metrics().ownership_grants == 1

    def test_group_grant(self, service, store, requester, admin, group, claim_request):
        claim_request.pop("institution_id")
        claim_request["group_id"] = str(group.id)
        claim = service.create_claim(requester.id, claim_request)
        service.update_status(claim.id, "UNDER_REVIEW", admin.id, "start")
        service.update_status(claim.id, "VERIFIED", admin.id, "confirmed")

        assert store.get_target(TargetKind.GROUP, group.id).claimed_by == requester.id

    def test_archiving_keeps_grant(self, service, store, verified, admin, requester, institution):
        """The grant is never taken back."""
        service.update_status(verified.id, "ARCHIVED", admin.id, "housekeeping")
        assert store.get_target(TargetKind.INSTITUTION, institution.id).claimed_by == requester.id

    def test_regrant_to_same_user_is_noop(self, store, verified, institution):
        before = store.get_target(TargetKind.INSTITUTION, institution.id)
        later = datetime(2030, 1, 1, tzinfo=timezone.utc)

        again = ownership.grant(store, verified, later)

        assert again.claimed_at == before.claimed_at
        assert get_metrics().ownership_grants == 1

    def test_rival_cannot_be_verified(self, service, verified, rival_claim, admin):
        """A second user's claim on a taken target stays where it was."""
        with pytest.raises(OwnershipConflict):
            service.update_status(rival_claim.id, "VERIFIED", admin.id, "also confirmed")

        stored = service.get_claim_details(rival_claim.id)
        assert stored.status == ClaimStatus.UNDER_REVIEW
        assert len(stored.audit_log) == 2

    def test_rival_document_verdict_not_stored(self, service, store, verified, rival_claim, admin):
        doc = service.get_claim_documents(rival_claim.id)[0]

        with pytest.raises(OwnershipConflict):
            service.review_document(doc.id, "APPROVED", admin.id)

        assert store.get_document(doc.id).status == DocumentStatus.PENDING
        assert service.get_claim_details(rival_claim.id).status == ClaimStatus.UNDER_REVIEW

    def test_rival_can_still_be_rejected(self, service, verified, rival_claim, admin):
        rejected = service.update_status(rival_claim.id, "REJECTED", admin.id, "already claimed")
        assert rejected.status == ClaimStatus.REJECTED


class TestClaimTargetStore:
    """The store's compare-and-set write."""

    def test_first_writer_wins(self, store, institution):
        first, second = uuid4(), uuid4()
        now = datetime(2024, 3, 16, tzinfo=timezone.utc)

        granted = store.claim_target(
            TargetKind.INSTITUTION, institution.id, user_id=first, claim_id=uuid4(), at=now
        )
        lost = store.claim_target(
            TargetKind.INSTITUTION, institution.id, user_id=second, claim_id=uuid4(), at=now
        )

        assert granted.claimed_by == first
        assert lost is None
        assert store.get_target(TargetKind.INSTITUTION, institution.id).claimed_by == first

    def test_same_user_gets_existing_grant(self, store, institution):
        user = uuid4()
        now = datetime(2024, 3, 16, tzinfo=timezone.utc)
        store.claim_target(TargetKind.INSTITUTION, institution.id, user_id=user, claim_id=uuid4(), at=now)

        again = store.claim_target(
            TargetKind.INSTITUTION, institution.id, user_id=user, claim_id=uuid4(),
            at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
        assert again.claimed_at == now

    def test_unknown_target(self, store):
        with pytest.raises(StoreError):
            store.claim_target(
                TargetKind.GROUP, uuid4(), user_id=uuid4(), claim_id=uuid4(),
                at=datetime(2024, 3, 16, tzinfo=timezone.utc),
            )


class InterleavingStore(InMemoryClaimStore):
    """Runs `before_grant` once, right before the first grant is written."""

    def __init__(self):
        super().__init__()
        self.before_grant = None

    def grant_and_save_claim(self, claim, at):
        hook, self.before_grant = self.before_grant, None
        if hook is not None:
            hook()
        return super().grant_and_save_claim(claim, at)


class TestGrantRace:
    """A rival verified after the pre-check still wins cleanly."""

    @pytest.fixture
    def store(self):
        return InterleavingStore()

    @pytest.fixture
    def rival(self, service, other_user, admin, claim_request):
        claim = service.create_claim(other_user.id, claim_request)
        return service.update_status(claim.id, "UNDER_REVIEW", admin.id, "starting review")

    def test_losing_verification_writes_nothing(
        self, service, store, reviewing_claim, rival, other_user, admin, institution
    ):
        store.before_grant = lambda: service.update_status(
            rival.id, "VERIFIED", admin.id, "confirmed first"
        )

        with pytest.raises(OwnershipConflict):
            service.update_status(reviewing_claim.id, "VERIFIED", admin.id, "confirmed")

        loser = service.get_claim_details(reviewing_claim.id)
        assert loser.status == ClaimStatus.UNDER_REVIEW
        assert len(loser.audit_log) == 2

        target = store.get_target(TargetKind.INSTITUTION, institution.id)
        assert target.claimed_by == other_user.id
        assert target.claimed_via == rival.id
        assert get_metrics().ownership_grants == 1
        assert get_metrics().transitions["VERIFIED"] == 1

    def test_losing_document_verdict_not_stored(
        self, service, store, reviewing_claim, rival, admin
    ):
        doc = service.get_claim_documents(reviewing_claim.id)[0]
        store.before_grant = lambda: service.update_status(
            rival.id, "VERIFIED", admin.id, "confirmed first"
        )

        with pytest.raises(OwnershipConflict):
            service.review_document(doc.id, "APPROVED", admin.id)

        assert store.get_document(doc.id).status == DocumentStatus.PENDING
        assert service.get_claim_details(reviewing_claim.id).status == ClaimStatus.UNDER_REVIEW


class TestGrantAndSave:
    """The store's combined grant-and-write."""

    def test_writes_both(self, store, reviewing_claim, requester, institution):
        now = datetime(2024, 3, 16, tzinfo=timezone.utc)
        verified = reviewing_claim.model_copy(update={"status": ClaimStatus.VERIFIED})

        granted = store.grant_and_save_claim(verified, now)

        assert granted.claimed_by == requester.id
        assert store.get_claim(reviewing_claim.id).status == ClaimStatus.VERIFIED

    def test_held_target_writes_neither(self, store, reviewing_claim, institution):
        now = datetime(2024, 3, 16, tzinfo=timezone.utc)
        holder = uuid4()
        store.claim_target(
            TargetKind.INSTITUTION, institution.id, user_id=holder, claim_id=uuid4(), at=now
        )
        verified = reviewing_claim.model_copy(update={"status": ClaimStatus.VERIFIED})

        assert store.grant_and_save_claim(verified, now) is None
        assert store.get_claim(reviewing_claim.id).status == ClaimStatus.UNDER_REVIEW
        assert store.get_target(TargetKind.INSTITUTION, institution.id).claimed_by == holder

"""
Tests for per-claim and per-target serialization.

Slow store subclasses widen the gap between a read and the write that
depends on it, so anything the locks fail to serialize shows up here.
"""

import gc
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

import pytest

from claimflow.core import Conflict, InvalidTransition, verify_chain
from claimflow.db import DuplicateClaimError, InMemoryClaimStore
from claimflow.schemas import ACTIVE_STATUSES, ClaimStatus


def run_together(fn, args):
    """Call fn once per arg, all threads released at the same moment."""
    start = threading.Barrier(len(args))

    def call(arg):
        start.wait(timeout=5)
        try:
            return fn(arg)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=len(args)) as pool:
        return list(pool.map(call, args))


class SlowLookupStore(InMemoryClaimStore):
    """Pauses after every claim read and duplicate check."""

    def get_claim(self, claim_id):
        claim = super().get_claim(claim_id)
        time.sleep(0.02)
        return claim

    def find_active_claim(self, user_id, target):
        found = super().find_active_claim(user_id, target)
        time.sleep(0.05)
        return found


class TestConcurrentCreate:
    """Two requests for the same target by the same user."""

    @pytest.fixture
    def store(self):
        return SlowLookupStore()

    def test_only_one_open_claim(self, service, store, requester, claim_request):
        results = run_together(
            lambda _: service.create_claim(requester.id, claim_request), [1, 2]
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], Conflict)

        open_claims = [
            c for c in store.list_claims_for_user(requester.id) if c.status in ACTIVE_STATUSES
        ]
        assert len(open_claims) == 1

    def test_different_users_both_open(self, service, store, requester, other_user, claim_request):
        results = run_together(
            lambda user: service.create_claim(user.id, claim_request), [requester, other_user]
        )
        assert not any(isinstance(r, Exception) for r in results)
        assert store.count_claims() == 2

    def test_store_refuses_second_open_claim(self, store, claim):
        """The store itself backs up the check."""
        with pytest.raises(DuplicateClaimError):
            store.insert_claim(claim.model_copy(update={"id": uuid4()}))

    def test_store_accepts_closed_duplicate(self, store, claim):
        closed = claim.model_copy(update={"id": uuid4(), "status": ClaimStatus.REJECTED})
        store.insert_claim(closed)
        assert store.count_claims() == 2


class TestConcurrentAppends:
    """Audit entries on one claim never interleave or get lost."""

    @pytest.fixture
    def store(self):
        return SlowLookupStore()

    def test_parallel_edits_all_recorded(self, service, claim, requester):
        notes = [f"Covering desk {n}" for n in range(5)]

        results = run_together(
            lambda note: service.update_claim(claim.id, requester.id, {"comments": note}), notes
        )

        assert not any(isinstance(r, Exception) for r in results)
        stored = service.get_claim_details(claim.id)
        assert len(stored.audit_log) == 1 + len(notes)
        assert verify_chain(stored.audit_log)
        assert stored.comments in notes

    def test_racing_moves_apply_once(self, service, reviewing_claim, admin):
        """Four requests send the claim back at once; one move lands."""
        results = run_together(
            lambda _: service.update_status(
                reviewing_claim.id, "ACTION_REQUIRED", admin.id, "need staff number"
            ),
            range(4),
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 3
        assert all(isinstance(e, InvalidTransition) for e in errors)

        stored = service.get_claim_details(reviewing_claim.id)
        assert stored.status == ClaimStatus.ACTION_REQUIRED
        assert len(stored.audit_log) == 3
        assert verify_chain(stored.audit_log)


class TestLockRegistry:
    """Per-claim and per-target locks do not outlive their users."""

    def test_claim_lock_dropped_after_use(self, service, store, claim, admin):
        service.update_status(claim.id, "UNDER_REVIEW", admin.id, "starting review")
        gc.collect()
        assert claim.id not in store._claim_locks

    def test_withdrawn_claim_leaves_no_lock(self, service, store, claim, requester):
        service.delete_claim(claim.id, requester.id)
        gc.collect()
        assert len(store._claim_locks) == 0
        assert len(store._target_locks) == 0

    def test_lock_shared_while_held(self, store):
        claim_id = uuid4()
        with store.claim_lock(claim_id):
            assert claim_id in store._claim_locks
            assert store._claim_locks[claim_id].locked()

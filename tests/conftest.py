"""
Shared fixtures: an in-memory world with one requester, one admin and
a couple of claimable targets.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from claimflow.core import ClaimService
from claimflow.db import InMemoryClaimStore
from claimflow.observability import get_metrics
from claimflow.schemas import ClaimableEntity, TargetKind, UserRecord, UserRole


class TickingClock:
    """Deterministic clock: every reading is one second after the last."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield


@pytest.fixture
def clock():
    return TickingClock(datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryClaimStore()


@pytest.fixture
def service(store, clock):
    return ClaimService(store, clock=clock)


@pytest.fixture
def requester(store):
    return store.save_user(UserRecord(
        id=uuid4(), email="dana@example.com", first_name="Dana", last_name="Reyes",
    ))


@pytest.fixture
def other_user(store):
    return store.save_user(UserRecord(
        id=uuid4(), email="sam@example.com", first_name="Sam", last_name="Ortiz",
    ))


@pytest.fixture
def admin(store):
    return store.save_user(UserRecord(
        id=uuid4(), email="alex@claimflow.dev", first_name="Alex", last_name="Kim",
        role=UserRole.ADMIN,
    ))


@pytest.fixture
def institution(store):
    return store.save_target(ClaimableEntity(
        id=uuid4(), kind=TargetKind.INSTITUTION, name="State University",
    ))


@pytest.fixture
def group(store):
    return store.save_target(ClaimableEntity(
        id=uuid4(), kind=TargetKind.GROUP, name="State University System",
    ))


@pytest.fixture
def claim_request(institution):
    """A valid create-claim payload for the institution."""
    return {
        "institution_id": str(institution.id),
        "requester_name": "Dana Reyes",
        "requester_email": "dana@example.com",
        "institutional_email": "dreyes@state.edu",
        "position": "Registrar",
        "verification_documents": ["https://files.example.com/badge.pdf"],
    }


@pytest.fixture
def claim(service, requester, claim_request):
    """A fresh PENDING claim by the requester."""
    return service.create_claim(requester.id, claim_request)


@pytest.fixture
def reviewing_claim(service, claim, admin):
    """The claim moved to UNDER_REVIEW."""
    return service.update_status(claim.id, "UNDER_REVIEW", admin.id, "starting review")


@pytest.fixture
def document_request():
    """An admin form asking for a staff number (required) and an office."""
    return {
        "type": "DOCUMENT_REQUEST",
        "message": "Please confirm your staff number.",
        "data_request_schema": {
            "title": "Staff verification",
            "fields": [
                {"field_name": "staff_number", "label": "Staff number", "required": True},
                {"field_name": "office", "label": "Office", "type": "text"},
            ],
        },
    }

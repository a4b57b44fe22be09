"""
Canonical Claim Schema

A Claim is one person's assertion that they represent an institution
(or an institution group) and should be granted control of its record.

A claim targets exactly one thing. Never both. Never neither.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from .audit import AuditLogEntry
from .status import ACTIVE_STATUSES, ClaimStatus


# Claims lapse if nobody acts on them
CLAIM_EXPIRY_DAYS = 30


class ClaimType(str, Enum):
    """What relationship the requester has with the institution."""
    ACADEMIC_STAFF = "ACADEMIC_STAFF"
    ALUMNI = "ALUMNI"
    STUDENT = "STUDENT"
    ADMINISTRATIVE_STAFF = "ADMINISTRATIVE_STAFF"


class TargetKind(str, Enum):
    """The two kinds of record a claim can point at."""
    INSTITUTION = "institution"
    GROUP = "group"


class ClaimTarget(BaseModel):
    """Resolved (kind, id) pair of a claim's target."""
    kind: TargetKind
    id: UUID

    class Config:
        frozen = True


def _check_single_target(institution_id: Optional[UUID], group_id: Optional[UUID]) -> None:
    if institution_id is None and group_id is None:
        raise ValueError("Either institution_id or group_id must be provided")
    if institution_id is not None and group_id is not None:
        raise ValueError("A claim targets an institution or a group, not both")


class CreateClaimInput(BaseModel):
    """
    What a requester submits to open a claim.

    Shape checks live here; business rules (duplicates, target existence)
    are enforced by the service.
    """
    institution_id: Optional[UUID] = None
    group_id: Optional[UUID] = None

    claim_type: ClaimType = ClaimType.ACADEMIC_STAFF
    requester_name: str = Field(..., min_length=1)
    requester_email: str = Field(..., min_length=3)
    institutional_email: str = Field(..., min_length=3)
    position: str = Field(..., min_length=1)
    department: Optional[str] = None
    verification_documents: list[str] = Field(
        ...,
        min_length=1,
        description="URLs of uploaded evidence. At least one is required."
    )
    comments: Optional[str] = None

    @field_validator("requester_email", "institutional_email")
    @classmethod
    def looks_like_email(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("must be an email address")
        return v

    @model_validator(mode="after")
    def exactly_one_target(self) -> "CreateClaimInput":
        _check_single_target(self.institution_id, self.group_id)
        return self


class ClaimUpdate(BaseModel):
    """
    Fields a requester may change while their claim is still PENDING.

    Target, requester identity and status are deliberately absent.
    """
    claim_type: Optional[ClaimType] = None
    institutional_email: Optional[str] = None
    position: Optional[str] = Field(default=None, min_length=1)
    department: Optional[str] = None
    comments: Optional[str] = None
    verification_documents: Optional[list[str]] = Field(default=None, min_length=1)

    class Config:
        extra = "forbid"


class Claim(BaseModel):
    """
    The unit of review.

    Rules:
    - exactly one of institution_id / group_id, for the whole lifetime
    - audit_log only ever grows
    - admin_notes are internal and never shown to the requester
    """
    id: UUID
    user_id: UUID = Field(..., description="Requesting user")

    # Target (exactly one)
    institution_id: Optional[UUID] = None
    group_id: Optional[UUID] = None

    # Requester-supplied details
    claim_type: ClaimType = ClaimType.ACADEMIC_STAFF
    requester_name: str
    requester_email: str
    institutional_email: str
    position: str
    department: Optional[str] = None
    comments: Optional[str] = None
    verification_documents: list[str] = Field(default_factory=list)

    # Review state
    status: ClaimStatus = ClaimStatus.PENDING
    admin_notes: Optional[str] = None
    reviewed_by_id: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    audit_log: tuple[AuditLogEntry, ...] = ()

    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    @model_validator(mode="after")
    def exactly_one_target(self) -> "Claim":
        _check_single_target(self.institution_id, self.group_id)
        return self

    @property
    def target(self) -> ClaimTarget:
        if self.institution_id is not None:
            return ClaimTarget(kind=TargetKind.INSTITUTION, id=self.institution_id)
        return ClaimTarget(kind=TargetKind.GROUP, id=self.group_id)

    @staticmethod
    def expiry_for(created_at: datetime) -> datetime:
        return created_at + timedelta(days=CLAIM_EXPIRY_DAYS)

    def is_expired(self, now: datetime) -> bool:
        return self.status in ACTIVE_STATUSES and now >= self.expires_at

    class Config:
        json_schema_extra = {
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "user_id": "660e8400-e29b-41d4-a716-446655440001",
                "institution_id": "770e8400-e29b-41d4-a716-446655440002",
                "claim_type": "ACADEMIC_STAFF",
                "requester_name": "Dana Reyes",
                "requester_email": "dana@example.com",
                "institutional_email": "dreyes@state.edu",
                "position": "Registrar",
                "verification_documents": ["https://files.example.com/badge.pdf"],
                "status": "PENDING",
                "created_at": "2024-03-15T14:30:00Z",
                "updated_at": "2024-03-15T14:30:00Z",
                "expires_at": "2024-04-14T14:30:00Z",
            }
        }

"""
Identity and claimable-record schemas.

Identity itself lives in the external provider. What reaches this
system is a resolved principal (user id + role) and a directory
record used for display names.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .claim import TargetKind


class UserRole(str, Enum):
    """Binary role model. There is nothing between these two."""
    ADMIN = "ADMIN"
    USER = "USER"


class Principal(BaseModel):
    """The caller of an operation, as resolved by the identity layer."""
    user_id: UUID
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    class Config:
        frozen = True


class UserRecord(BaseModel):
    """Directory entry for a user."""
    id: UUID
    email: str
    first_name: str = ""
    last_name: str = ""
    role: UserRole = UserRole.USER

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email


class ClaimableEntity(BaseModel):
    """
    An institution or an institution group.

    claimed_by is written once, by the ownership grant, and never
    cleared by later status changes on the claim.
    """
    id: UUID
    kind: TargetKind
    name: str = Field(..., min_length=1)
    claimed_by: Optional[UUID] = None
    claimed_at: Optional[datetime] = None
    claimed_via: Optional[UUID] = Field(
        default=None,
        description="Claim that produced the grant"
    )

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None

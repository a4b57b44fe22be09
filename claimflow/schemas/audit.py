"""
Canonical Audit Entry Schema

The audit log is not a changelog. It is testimony.

Each entry:
- Is immutable once written
- Names who acted and what changed
- Is hash-chained to the entry before it
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .status import ClaimStatus


class AuditLogEntry(BaseModel):
    """
    One immutable record on a claim's audit trail.

    Rules:
    - No UPDATE
    - No DELETE
    - Every status transition produces exactly one entry

    previous_hash is None only for the first entry of a claim.
    """
    timestamp: datetime
    user_id: UUID = Field(..., description="Who acted")
    user_name: str = Field(..., description="Display name at the time of acting")
    action: str = Field(..., min_length=1)

    from_status: Optional[ClaimStatus] = None
    to_status: Optional[ClaimStatus] = None
    note: Optional[str] = None

    # Chain linkage (see core.hasher)
    previous_hash: Optional[str] = None
    entry_hash: str

    @property
    def is_transition(self) -> bool:
        return self.to_status is not None and self.from_status is not None

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "timestamp": "2024-03-16T09:00:00Z",
                "user_id": "880e8400-e29b-41d4-a716-446655440003",
                "user_name": "Alex Kim",
                "action": "Status changed from PENDING to UNDER_REVIEW",
                "from_status": "PENDING",
                "to_status": "UNDER_REVIEW",
                "note": "starting review",
                "previous_hash": "abc123...",
                "entry_hash": "def456...",
            }
        }

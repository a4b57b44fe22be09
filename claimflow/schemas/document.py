"""
Canonical Document Approval Schema

Evidence is reviewed one document at a time.
The claim-level verdict is derived from all of them together.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class DocumentStatus(str, Enum):
    """
    Review state of one piece of evidence.

    PENDING is left exactly once, by an admin verdict.
    REPLACED means the requester superseded it; it no longer counts.
    """
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REPLACED = "REPLACED"


# Verdicts an admin may hand out
REVIEW_VERDICTS = frozenset({DocumentStatus.APPROVED, DocumentStatus.REJECTED})


class DocumentKind(str, Enum):
    """Inferred from the URL, nothing more."""
    PDF = "pdf"
    IMAGE = "image"

    @classmethod
    def from_url(cls, url: str) -> "DocumentKind":
        return cls.PDF if url.lower().endswith(".pdf") else cls.IMAGE


class DocumentApproval(BaseModel):
    """
    Review record for one evidence URL on a claim.

    Created lazily, one per URL, the first time documents are looked at.
    """
    id: UUID
    claim_id: UUID
    document_url: str
    document_type: DocumentKind
    document_name: str
    status: DocumentStatus = DocumentStatus.PENDING
    admin_notes: Optional[str] = None
    reviewed_by_id: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    can_resubmit: bool = Field(
        default=False,
        description="True only while the document stands rejected"
    )
    created_at: datetime

    @property
    def is_active(self) -> bool:
        """Whether this record still counts toward the claim verdict."""
        return self.status != DocumentStatus.REPLACED

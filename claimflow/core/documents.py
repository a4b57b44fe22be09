"""
Document Approval Ledger

Per-document verdicts, and the one rule that turns them into a
claim-level outcome. This module decides; ClaimService applies.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID, uuid4

from ..schemas import (
    ClaimStatus,
    DocumentApproval,
    DocumentKind,
    DocumentStatus,
    REVIEW_VERDICTS,
)
from .errors import InvalidRequest, InvalidState


ALL_APPROVED_NOTE = "All documents approved"
SOME_REJECTED_NOTE = "Some documents rejected; resubmission required"


@dataclass(frozen=True)
class AggregateOutcome:
    """Claim status the ledger calls for, with the audit note to use."""
    status: ClaimStatus
    note: str


def new_record(claim_id: UUID, url: str, position: int, now: datetime) -> DocumentApproval:
    """A fresh PENDING record. `position` is 1-based and only names it."""
    return DocumentApproval(
        id=uuid4(),
        claim_id=claim_id,
        document_url=url,
        document_type=DocumentKind.from_url(url),
        document_name=f"Document {position}",
        status=DocumentStatus.PENDING,
        created_at=now,
    )


def materialize(claim_id: UUID, urls: list[str], now: datetime) -> list[DocumentApproval]:
    """One PENDING record per evidence URL, in evidence order."""
    return [new_record(claim_id, url, i + 1, now) for i, url in enumerate(urls)]


def apply_verdict(
    document: DocumentApproval,
    verdict: DocumentStatus,
    admin_id: UUID,
    admin_notes: Optional[str],
    now: datetime,
) -> DocumentApproval:
    """
    Return the reviewed copy of `document`.

    A document leaves PENDING once. Re-reviewing is refused rather than
    silently overwriting an earlier verdict.
    """
    try:
        verdict = DocumentStatus(verdict)
    except ValueError:
        raise InvalidRequest(f"Unknown document status: {verdict}")
    if verdict not in REVIEW_VERDICTS:
        raise InvalidRequest(
            f"Documents can only be APPROVED or REJECTED, not {verdict.value}"
        )
    if document.status != DocumentStatus.PENDING:
        raise InvalidState(
            f"Document {document.id} was already reviewed ({document.status.value})"
        )
    return document.model_copy(update={
        "status": verdict,
        "admin_notes": admin_notes,
        "reviewed_by_id": admin_id,
        "reviewed_at": now,
        "can_resubmit": verdict == DocumentStatus.REJECTED,
    })


def aggregate(documents: Iterable[DocumentApproval]) -> Optional[AggregateOutcome]:
    """
    Claim-level outcome of a set of document records.

    - all APPROVED                      → VERIFIED
    - none PENDING, at least one REJECTED → ACTION_REQUIRED
    - anything still PENDING            → no outcome yet

    REPLACED records no longer count.
    """
    active = [d for d in documents if d.is_active]
    if not active:
        return None
    if any(d.status == DocumentStatus.PENDING for d in active):
        return None
    if all(d.status == DocumentStatus.APPROVED for d in active):
        return AggregateOutcome(ClaimStatus.VERIFIED, ALL_APPROVED_NOTE)
    if any(d.status == DocumentStatus.REJECTED for d in active):
        return AggregateOutcome(ClaimStatus.ACTION_REQUIRED, SOME_REJECTED_NOTE)
    return None


def supersede_rejected(documents: Iterable[DocumentApproval]) -> list[DocumentApproval]:
    """Rejected records the requester is now replacing, marked REPLACED."""
    return [
        d.model_copy(update={"status": DocumentStatus.REPLACED, "can_resubmit": False})
        for d in documents
        if d.status == DocumentStatus.REJECTED and d.can_resubmit
    ]


@dataclass
class Reconciliation:
    """What to do to a materialized ledger after the evidence list changed."""
    drop: list[DocumentApproval]
    replace: list[DocumentApproval]
    create: list[DocumentApproval]


def reconcile(
    claim_id: UUID,
    existing: list[DocumentApproval],
    urls: list[str],
    now: datetime,
) -> Reconciliation:
    """
    Bring a materialized ledger in line with a new evidence list.

    Records for removed URLs are dropped while still PENDING and marked
    REPLACED once reviewed. New URLs get PENDING records.
    """
    wanted = set(urls)
    known = {d.document_url for d in existing if d.is_active}

    drop, replace = [], []
    for d in existing:
        if not d.is_active or d.document_url in wanted:
            continue
        if d.status == DocumentStatus.PENDING:
            drop.append(d)
        else:
            replace.append(d.model_copy(update={
                "status": DocumentStatus.REPLACED,
                "can_resubmit": False,
            }))

    offset = len(existing)
    new_urls = [u for u in urls if u not in known]
    create = [new_record(claim_id, url, offset + i + 1, now) for i, url in enumerate(new_urls)]
    return Reconciliation(drop=drop, replace=replace, create=create)

"""
Claim API Routes

Thin HTTP adapter over ClaimService. Routes parse ids, resolve the
caller and shape responses; every rule lives in the service, and its
errors are mapped to status codes in main.py.

Handlers are plain `def` so blocking store calls run in the threadpool.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import BaseModel, Field

from claimflow.api.deps import get_principal, get_service, parse_id, require_admin
from claimflow.schemas import (
    Claim,
    ClaimStatus,
    ClaimUpdate,
    CreateClaimInput,
    Principal,
    SubmitDataInput,
)


router = APIRouter(prefix="/api", tags=["Claims"])


# ============================================================
# Request Models
# ============================================================

class StatusUpdateRequest(BaseModel):
    status: ClaimStatus
    audit_note: str = Field(..., description="Required for every status change")
    admin_notes: Optional[str] = None


class ReviewClaimRequest(BaseModel):
    status: ClaimStatus = Field(..., description="APPROVED, VERIFIED or REJECTED")
    admin_notes: Optional[str] = None


class ReviewDocumentRequest(BaseModel):
    status: str = Field(..., description="APPROVED or REJECTED")
    admin_notes: Optional[str] = None


# ============================================================
# Helper Functions
# ============================================================

def claim_view(claim: Claim, viewer: Principal) -> dict[str, Any]:
    """Serialize a claim for `viewer`. Admin notes stay with admins."""
    exclude = None if viewer.is_admin else {"admin_notes"}
    return claim.model_dump(mode="json", exclude=exclude)


def load_visible_claim(request: Request, claim_id: str, viewer: Principal) -> Claim:
    """The claim, if `viewer` owns it or is an admin; 403 otherwise."""
    claim = get_service(request).get_claim_details(parse_id(claim_id))
    if not viewer.is_admin and claim.user_id != viewer.user_id:
        raise HTTPException(status_code=403, detail="Not your claim")
    return claim


# ============================================================
# Requester Endpoints
# ============================================================

@router.post("/claims/request", status_code=201)
def request_claim(request: Request, body: CreateClaimInput):
    """Open a claim on an institution or group."""
    principal = get_principal(request)
    claim = get_service(request).create_claim(principal.user_id, body)
    return claim_view(claim, principal)


@router.get("/claims/my-requests")
def my_requests(request: Request):
    """The caller's claims, newest first."""
    principal = get_principal(request)
    claims = get_service(request).get_user_claims(principal.user_id)
    return [claim_view(c, principal) for c in claims]


@router.get("/claims/{claim_id}")
def get_claim(request: Request, claim_id: str):
    principal = get_principal(request)
    return claim_view(load_visible_claim(request, claim_id, principal), principal)


@router.get("/claims/{claim_id}/messages")
def get_messages(request: Request, claim_id: str):
    """The claim's thread. Internal notes are shown to admins only."""
    principal = get_principal(request)
    claim = load_visible_claim(request, claim_id, principal)
    messages = get_service(request).get_claim_messages(claim.id, principal)
    return [m.model_dump(mode="json") for m in messages]


@router.post("/claims/{claim_id}/message", status_code=201)
def post_message(request: Request, claim_id: str, body: dict[str, Any] = Body(...)):
    """
    Post to the thread.

    The body is validated by the service so a missing `type` can default
    to CHAT.
    """
    principal = get_principal(request)
    message = get_service(request).post_message(parse_id(claim_id), principal.user_id, body)
    return message.model_dump(mode="json")


@router.post("/claims/{claim_id}/submit-data", status_code=201)
def submit_data(request: Request, claim_id: str, body: SubmitDataInput):
    """Answer a document request."""
    principal = get_principal(request)
    message = get_service(request).submit_data(parse_id(claim_id), principal.user_id, body)
    return message.model_dump(mode="json")


@router.patch("/claims/{claim_id}")
def update_claim(request: Request, claim_id: str, body: ClaimUpdate):
    principal = get_principal(request)
    patch = body.model_dump(exclude_unset=True)
    claim = get_service(request).update_claim(parse_id(claim_id), principal.user_id, patch)
    return claim_view(claim, principal)


@router.delete("/claims/{claim_id}")
def delete_claim(request: Request, claim_id: str):
    principal = get_principal(request)
    return get_service(request).delete_claim(parse_id(claim_id), principal.user_id)


# ============================================================
# Admin Endpoints
# ============================================================

@router.patch("/claims/{claim_id}/status")
def update_status(request: Request, claim_id: str, body: StatusUpdateRequest):
    """Move a claim along the state machine."""
    principal = require_admin(request)
    claim = get_service(request).update_status(
        parse_id(claim_id),
        body.status,
        principal.user_id,
        body.audit_note,
        body.admin_notes,
    )
    return claim_view(claim, principal)


@router.get("/admin/claims")
def list_claims(request: Request, status: Optional[str] = None):
    """Every claim, optionally filtered by status."""
    principal = require_admin(request)
    claims = get_service(request).get_all_claims(status)
    return [claim_view(c, principal) for c in claims]


@router.patch("/admin/claims/{claim_id}/review")
def review_claim(request: Request, claim_id: str, body: ReviewClaimRequest):
    """Legacy one-step approve/reject."""
    principal = require_admin(request)
    claim = get_service(request).review_claim(
        parse_id(claim_id),
        body.status,
        principal.user_id,
        body.admin_notes,
    )
    return claim_view(claim, principal)


@router.get("/admin/claims/{claim_id}/documents")
def claim_documents(request: Request, claim_id: str):
    require_admin(request)
    docs = get_service(request).get_claim_documents(parse_id(claim_id))
    return [d.model_dump(mode="json") for d in docs]


@router.patch("/admin/documents/{document_id}/review")
def review_document(request: Request, document_id: str, body: ReviewDocumentRequest):
    principal = require_admin(request)
    doc = get_service(request).review_document(
        parse_id(document_id, "document"),
        body.status,
        principal.user_id,
        body.admin_notes,
    )
    return doc.model_dump(mode="json")

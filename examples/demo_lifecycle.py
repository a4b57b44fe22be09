"""
Demonstration: Complete Claim Lifecycle

A registrar claims her university's record, an admin asks for proof,
she sends it, the document is approved and the university is hers.

Run with: python -m examples.demo_lifecycle
"""

from uuid import uuid4

from claimflow.core import ClaimService, verify_chain
from claimflow.db import InMemoryClaimStore
from claimflow.schemas import ClaimableEntity, TargetKind, UserRecord, UserRole


def banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


def main():
    banner("claimflow - Claim Lifecycle Demonstration")
    print()

    store = InMemoryClaimStore()
    service = ClaimService(store)

    requester = store.save_user(UserRecord(
        id=uuid4(), email="dana@example.com",
        first_name="Dana", last_name="Reyes",
    ))
    admin = store.save_user(UserRecord(
        id=uuid4(), email="alex@claimflow.dev",
        first_name="Alex", last_name="Kim", role=UserRole.ADMIN,
    ))
    university = store.save_target(ClaimableEntity(
        id=uuid4(), kind=TargetKind.INSTITUTION, name="State University",
    ))

    print(f"Requester: {requester.display_name} ({requester.id})")
    print(f"Admin:     {admin.display_name} ({admin.id})")
    print(f"Target:    {university.name} ({university.id})")
    print()

    # ================================================================
    # STEP 1: CLAIM REQUESTED
    # ================================================================
    banner("STEP 1: CLAIM REQUESTED")

    claim = service.create_claim(requester.id, {
        "institution_id": str(university.id),
        "requester_name": requester.display_name,
        "requester_email": requester.email,
        "institutional_email": "dreyes@state.edu",
        "position": "Registrar",
        "verification_documents": ["https://files.example.com/staff-badge.pdf"],
    })
    print(f"[OK] Claim {claim.id} is {claim.status.value}")
    print(f"   Expires: {claim.expires_at:%Y-%m-%d}")
    print()

    # ================================================================
    # STEP 2: REVIEW STARTED
    # ================================================================
    banner("STEP 2: REVIEW STARTED")

    claim = service.update_status(claim.id, "UNDER_REVIEW", admin.id, "starting review")
    print(f"[OK] Claim is {claim.status.value}")
    print()

    # ================================================================
    # STEP 3: DOCUMENT REQUEST
    # ================================================================
    banner("STEP 3: DOCUMENT REQUEST")

    request = service.post_message(claim.id, admin.id, {
        "type": "DOCUMENT_REQUEST",
        "message": "Please confirm your staff number.",
        "data_request_schema": {
            "title": "Staff verification",
            "fields": [
                {"field_name": "staff_number", "label": "Staff number", "required": True},
            ],
        },
    })
    claim = service.get_claim_details(claim.id)
    print(f"[OK] Request {request.id} posted")
    print(f"   Claim is now {claim.status.value}")
    print()

    # ================================================================
    # STEP 4: DATA SUBMITTED
    # ================================================================
    banner("STEP 4: DATA SUBMITTED")

    service.submit_data(claim.id, requester.id, {
        "request_message_id": str(request.id),
        "submitted_data": {"staff_number": "SU-40213"},
    })
    claim = service.get_claim_details(claim.id)
    print(f"[OK] Claim is back {claim.status.value}")
    print()

    # ================================================================
    # STEP 5: DOCUMENT APPROVED
    # ================================================================
    banner("STEP 5: DOCUMENT APPROVED")

    for doc in service.get_claim_documents(claim.id):
        reviewed = service.review_document(doc.id, "APPROVED", admin.id, "badge matches")
        print(f"[OK] {reviewed.document_name} ({reviewed.document_type.value}) {reviewed.status.value}")

    claim = service.get_claim_details(claim.id)
    university = store.get_target(TargetKind.INSTITUTION, university.id)
    print(f"   Claim is {claim.status.value}")
    print(f"   {university.name} claimed by {university.claimed_by}")
    print()

    # ================================================================
    # AUDIT TRAIL
    # ================================================================
    banner("AUDIT TRAIL")

    for i, entry in enumerate(claim.audit_log):
        moved = ""
        if entry.to_status is not None:
            before = entry.from_status.value if entry.from_status else "-"
            moved = f" [{before} -> {entry.to_status.value}]"
        print(f"  #{i} | {entry.timestamp:%Y-%m-%d %H:%M} | {entry.user_name} | {entry.action}{moved}")

    print()
    print(f"Chain Integrity: {'[VALID]' if verify_chain(claim.audit_log) else '[COMPROMISED]'}")
    print(f"Head: {claim.audit_log[-1].entry_hash[:32]}...")
    print()
    banner("DEMONSTRATION COMPLETE")


if __name__ == "__main__":
    main()

"""
Claim Service - The Heart of the System

A claim is one person saying "this institution is mine". The service
walks that assertion through review and records every decision.

The service:
- Opens, edits and withdraws claims
- Moves claims through the state machine
- Carries the message thread and its document requests
- Reviews evidence one document at a time
- Grants ownership when a claim is verified

Rules (enforced in code):
- Status only moves along VALID_TRANSITIONS edges
- Every status change appends exactly one audit entry
- Only admins change status or review documents
- Only the requester edits or withdraws, and only while PENDING
- A target is granted to one user, once, and never taken back

CONCURRENCY:
Every mutation runs under store.claim_lock(claim_id). Helpers named
_apply_* assume the lock is already held and never take it again.
Opening a claim runs under store.target_lock(target) instead, so the
duplicate check and the insert cannot interleave.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Union, TYPE_CHECKING
from uuid import UUID, uuid4

from pydantic import BaseModel, ValidationError

from ..schemas import (
    Claim,
    ClaimMessage,
    ClaimStatus,
    ClaimUpdate,
    CreateClaimInput,
    DocumentApproval,
    MessageType,
    Principal,
    SubmitDataInput,
    UserRecord,
    UserRole,
    post_message_adapter,
)
from ..db.store import DuplicateClaimError
from ..observability import get_logger, get_metrics
from . import audit, documents, ownership
from .errors import (
    ActorNotFound,
    Conflict,
    Forbidden,
    InvalidRequest,
    InvalidState,
    NotFound,
)
from .state_machine import CLOSED_STATUSES, validate_transition

if TYPE_CHECKING:
    from ..db.store import ClaimStore


logger = get_logger(__name__)


DOCUMENT_REQUEST_ACTION = "Document request sent to user"
DOCUMENT_REQUEST_NOTE = "Document request sent to user; awaiting response"
SUBMISSION_ACTION = "User submitted requested data"
SUBMISSION_NOTE = "Data submitted, awaiting review"
SUBMISSION_CONTENT = "Data submission"

# Legacy review decisions and what they mean today
_REVIEW_DECISIONS = {
    ClaimStatus.APPROVED: ClaimStatus.VERIFIED,
    ClaimStatus.VERIFIED: ClaimStatus.VERIFIED,
    ClaimStatus.REJECTED: ClaimStatus.REJECTED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse(model, data, what: str):
    """Validate `data` into `model` (a model class or TypeAdapter)."""
    try:
        if hasattr(model, "validate_python"):
            return model.validate_python(data)
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidRequest(f"Invalid {what}: {e.errors(include_url=False)}") from e


def _status_action(from_status: ClaimStatus, to_status: ClaimStatus) -> str:
    return f"Status changed from {from_status.value} to {to_status.value}"


class ClaimService:
    """
    The claim lifecycle engine.

    Business rules live here; persistence and locking are delegated to a
    ClaimStore implementation.
    """

    def __init__(
        self,
        store: Optional["ClaimStore"] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            store: ClaimStore implementation for persistence.
                   If None, creates an InMemoryClaimStore.
            clock: Returns the current timezone-aware time. Defaults to UTC now.
        """
        # Import here to avoid circular imports
        if store is None:
            from ..db.store import InMemoryClaimStore
            store = InMemoryClaimStore()

        self._store = store
        self._clock = clock or _utcnow

    @property
    def store(self) -> "ClaimStore":
        return self._store

    # ================================================================
    # LOOKUPS
    # ================================================================

    def _require_claim(self, claim_id: UUID) -> Claim:
        claim = self._store.get_claim(claim_id)
        if claim is None:
            raise NotFound(f"Claim {claim_id} not found")
        return claim

    def _require_user(self, user_id: UUID) -> UserRecord:
        user = self._store.get_user(user_id)
        if user is None:
            raise ActorNotFound(f"User {user_id} not found")
        return user

    def _require_admin(self, admin_id: UUID) -> UserRecord:
        admin = self._require_user(admin_id)
        if admin.role != UserRole.ADMIN:
            raise Forbidden(f"User {admin_id} is not an admin")
        return admin

    # ================================================================
    # INTERNAL TRANSITION PATH (lock held)
    # ================================================================

    def _apply_transition(
        self,
        claim: Claim,
        new_status: ClaimStatus,
        actor: UserRecord,
        action: str,
        note: Optional[str],
        review: Optional[dict[str, Any]] = None,
    ) -> Claim:
        """
        Move `claim` to `new_status` and persist it with one new audit entry.

        Everything that can refuse the move runs before anything is written.
        A move into VERIFIED is stored together with the ownership grant,
        so a lost grant leaves the claim untouched.
        """
        validate_transition(claim.status, new_status)
        if new_status == ClaimStatus.VERIFIED:
            ownership.check_grantable(self._store, claim)

        now = self._clock()
        log = audit.record(
            claim.audit_log,
            user_id=actor.id,
            user_name=actor.display_name,
            action=action,
            from_status=claim.status,
            to_status=new_status,
            note=note,
            at=now,
        )
        updates = {"status": new_status, "audit_log": log, "updated_at": now}
        if review:
            updates.update(review)

        updated = claim.model_copy(update=updates)
        if new_status == ClaimStatus.VERIFIED:
            ownership.grant(self._store, updated, now)
        else:
            self._store.save_claim(updated)

        get_metrics().record_transition(new_status.value)
        logger.info(
            "Claim status changed",
            claim_id=str(claim.id),
            from_status=claim.status.value,
            to_status=new_status.value,
            actor_id=str(actor.id),
        )

        return updated

    # ================================================================
    # CLAIM RECORD LIFECYCLE
    # ================================================================

    def create_claim(
        self,
        user_id: UUID,
        data: Union[CreateClaimInput, Mapping[str, Any]],
    ) -> Claim:
        """
        Open a claim on an institution or a group.

        The claim starts PENDING, expires after CLAIM_EXPIRY_DAYS and
        carries one "Claim created" audit entry.
        """
        data = _parse(CreateClaimInput, data, "claim request")
        user = self._require_user(user_id)

        now = self._clock()
        claim = Claim(
            id=uuid4(),
            user_id=user.id,
            institution_id=data.institution_id,
            group_id=data.group_id,
            claim_type=data.claim_type,
            requester_name=data.requester_name,
            requester_email=data.requester_email,
            institutional_email=data.institutional_email,
            position=data.position,
            department=data.department,
            comments=data.comments,
            verification_documents=list(data.verification_documents),
            status=ClaimStatus.PENDING,
            audit_log=audit.record(
                (),
                user_id=user.id,
                user_name=user.display_name,
                action="Claim created",
                to_status=ClaimStatus.PENDING,
                note="Initial claim submission",
                at=now,
            ),
            created_at=now,
            updated_at=now,
            expires_at=Claim.expiry_for(now),
        )

        target = claim.target
        if self._store.get_target(target.kind, target.id) is None:
            raise NotFound(f"{target.kind.value.capitalize()} {target.id} not found")

        with self._store.target_lock(target):
            existing = self._store.find_active_claim(user.id, target)
            if existing is not None:
                raise Conflict(
                    f"You already have a {existing.status.value} claim for this "
                    f"{target.kind.value} ({existing.id})"
                )
            try:
                self._store.insert_claim(claim)
            except DuplicateClaimError as e:
                raise Conflict(f"You already have an open claim for this {target.kind.value}") from e

        get_metrics().record_claim_created()
        logger.info(
            "Claim created",
            claim_id=str(claim.id),
            user_id=str(user.id),
            target_kind=target.kind.value,
            target_id=str(target.id),
        )
        return claim

    def get_user_claims(self, user_id: UUID) -> list[Claim]:
        """A user's claims, newest first."""
        return self._store.list_claims_for_user(user_id)

    def get_all_claims(self, status: Optional[ClaimStatus] = None) -> list[Claim]:
        """Every claim, optionally one status, ordered by status then newest first."""
        if status is not None:
            try:
                status = ClaimStatus(status)
            except ValueError:
                raise InvalidRequest(f"Unknown claim status: {status}")
        return self._store.list_claims(status)

    def get_claim_details(self, claim_id: UUID) -> Claim:
        return self._require_claim(claim_id)

    def _check_editable(self, claim: Claim, user_id: UUID) -> None:
        if claim.status != ClaimStatus.PENDING:
            raise InvalidState(
                f"Only PENDING claims can be changed; this claim is {claim.status.value}"
            )
        if claim.user_id != user_id:
            raise Forbidden("Only the requester can change this claim")

    def update_claim(
        self,
        claim_id: UUID,
        user_id: UUID,
        patch: Union[ClaimUpdate, Mapping[str, Any]],
    ) -> Claim:
        """
        Edit a PENDING claim's details.

        Appends one "Claim details updated" entry. If documents were
        already materialized, the ledger follows the new evidence list.
        """
        with self._store.claim_lock(claim_id):
            claim = self._require_claim(claim_id)
            self._check_editable(claim, user_id)

            patch = _parse(ClaimUpdate, patch, "claim update")
            changes = patch.model_dump(exclude_unset=True)
            user = self._require_user(user_id)

            now = self._clock()
            log = audit.record(
                claim.audit_log,
                user_id=user.id,
                user_name=user.display_name,
                action="Claim details updated",
                note=", ".join(sorted(changes)) or None,
                at=now,
            )
            updated = _parse(
                Claim,
                {**claim.model_dump(), **changes, "audit_log": log, "updated_at": now},
                "claim update",
            )

            if "verification_documents" in changes:
                self._sync_documents(updated, now)

            self._store.save_claim(updated)

        logger.info("Claim updated", claim_id=str(claim_id), fields=sorted(changes))
        return updated

    def _sync_documents(self, claim: Claim, now: datetime) -> None:
        existing = self._store.list_documents(claim.id)
        if not existing:
            # Not materialized yet; first read will pick up the new list
            return
        plan = documents.reconcile(claim.id, existing, claim.verification_documents, now)
        self._store.delete_documents(d.id for d in plan.drop)
        for doc in plan.replace:
            self._store.save_document(doc)
        self._store.add_documents(plan.create)

    def delete_claim(self, claim_id: UUID, user_id: UUID) -> dict[str, bool]:
        """Withdraw a PENDING claim, with its thread and document records."""
        with self._store.claim_lock(claim_id):
            claim = self._require_claim(claim_id)
            self._check_editable(claim, user_id)
            self._store.delete_claim(claim_id)

        logger.info("Claim deleted", claim_id=str(claim_id), user_id=str(user_id))
        return {"success": True}

    # ================================================================
    # STATE MACHINE
    # ================================================================

    def update_status(
        self,
        claim_id: UUID,
        new_status: ClaimStatus,
        admin_id: UUID,
        audit_note: str,
        admin_notes: Optional[str] = None,
    ) -> Claim:
        """
        Move a claim to `new_status` on behalf of an admin.

        Nothing changes unless the edge exists, the actor is an admin
        and the audit note is non-blank. A move into VERIFIED also grants
        the claim's target to the requester.
        """
        try:
            new_status = ClaimStatus(new_status)
        except ValueError:
            raise InvalidRequest(f"Unknown claim status: {new_status}")

        with self._store.claim_lock(claim_id):
            claim = self._require_claim(claim_id)
            validate_transition(claim.status, new_status)
            admin = self._require_admin(admin_id)
            if not audit_note or not audit_note.strip():
                raise InvalidRequest("An audit note is required for every status change")

            now = self._clock()
            review = {
                "reviewed_by_id": admin.id,
                "reviewed_at": now,
                "admin_notes": admin_notes if admin_notes is not None else claim.admin_notes,
            }
            return self._apply_transition(
                claim,
                new_status,
                admin,
                _status_action(claim.status, new_status),
                audit_note.strip(),
                review=review,
            )

    def review_claim(
        self,
        claim_id: UUID,
        decision: ClaimStatus,
        admin_id: UUID,
        admin_notes: Optional[str] = None,
    ) -> Claim:
        """
        Legacy one-step review: APPROVED (or VERIFIED) means VERIFIED, REJECTED means REJECTED.

        Goes through update_status, so the transition table still decides.
        """
        try:
            decision = ClaimStatus(decision)
        except ValueError:
            raise InvalidRequest(f"Unknown review decision: {decision}")
        if decision not in _REVIEW_DECISIONS:
            raise InvalidRequest("A review decision must be APPROVED, VERIFIED or REJECTED")

        verb = "rejected" if decision == ClaimStatus.REJECTED else "approved"
        return self.update_status(
            claim_id,
            _REVIEW_DECISIONS[decision],
            admin_id,
            f"Claim {verb} by admin",
            admin_notes,
        )

    # ================================================================
    # MESSAGING
    # ================================================================

    def post_message(
        self,
        claim_id: UUID,
        sender_id: UUID,
        message: Union[BaseModel, Mapping[str, Any]],
    ) -> ClaimMessage:
        """
        Post to a claim's thread.

        A DOCUMENT_REQUEST also moves the claim to ACTION_REQUIRED. That
        edge is checked before the message is stored, so a request that
        cannot move the claim is refused outright.
        """
        if isinstance(message, Mapping) and "type" not in message:
            message = {**message, "type": MessageType.CHAT.value}
        payload = _parse(post_message_adapter, message, "message")
        message_type = MessageType(payload.type)

        with self._store.claim_lock(claim_id):
            claim = self._require_claim(claim_id)
            sender = self._require_user(sender_id)
            is_admin = sender.role == UserRole.ADMIN

            if not is_admin and claim.user_id != sender.id:
                raise Forbidden("Only the requester or an admin can post on this claim")
            if message_type != MessageType.CHAT and not is_admin:
                raise Forbidden(f"Only admins can post {message_type.value} messages")

            moves_claim = (
                message_type == MessageType.DOCUMENT_REQUEST
                and claim.status != ClaimStatus.ACTION_REQUIRED
            )
            if moves_claim:
                validate_transition(claim.status, ClaimStatus.ACTION_REQUIRED)

            stored = ClaimMessage(
                id=uuid4(),
                claim_id=claim.id,
                sender_id=sender.id,
                sender_role=sender.role,
                content=payload.message,
                attachments=list(payload.attachments),
                type=message_type,
                data_request_schema=getattr(payload, "data_request_schema", None),
                created_at=self._clock(),
            )
            self._store.add_message(stored)

            if moves_claim:
                self._apply_transition(
                    claim,
                    ClaimStatus.ACTION_REQUIRED,
                    sender,
                    DOCUMENT_REQUEST_ACTION,
                    DOCUMENT_REQUEST_NOTE,
                )

        get_metrics().record_message()
        logger.info(
            "Message posted",
            claim_id=str(claim_id),
            message_id=str(stored.id),
            message_type=message_type.value,
            sender_role=sender.role.value,
        )
        return stored

    def submit_data(
        self,
        claim_id: UUID,
        user_id: UUID,
        payload: Union[SubmitDataInput, Mapping[str, Any]],
    ) -> ClaimMessage:
        """
        Answer a document request.

        Stored as a CHAT message. New documents join the claim's evidence,
        and a claim waiting in ACTION_REQUIRED goes back to UNDER_REVIEW.
        """
        payload = _parse(SubmitDataInput, payload, "submission")

        with self._store.claim_lock(claim_id):
            claim = self._require_claim(claim_id)
            if claim.user_id != user_id:
                raise Forbidden("Only the requester can submit data for this claim")
            if claim.status in CLOSED_STATUSES:
                raise InvalidState(
                    f"Claim is {claim.status.value}; it no longer accepts submissions"
                )
            user = self._require_user(user_id)

            if payload.request_message_id is not None:
                self._check_answers_request(claim, payload)

            now = self._clock()
            stored = ClaimMessage(
                id=uuid4(),
                claim_id=claim.id,
                sender_id=user.id,
                sender_role=UserRole.USER,
                content=SUBMISSION_CONTENT,
                attachments=list(payload.documents),
                type=MessageType.CHAT,
                submitted_data=payload.submitted_data,
                request_message_id=payload.request_message_id,
                created_at=now,
            )
            self._store.add_message(stored)

            if payload.documents:
                claim = self._apply_resubmission(claim, payload.documents, now)

            if claim.status == ClaimStatus.ACTION_REQUIRED:
                self._apply_transition(
                    claim,
                    ClaimStatus.UNDER_REVIEW,
                    user,
                    SUBMISSION_ACTION,
                    SUBMISSION_NOTE,
                )

        get_metrics().record_message()
        logger.info(
            "Data submitted",
            claim_id=str(claim_id),
            message_id=str(stored.id),
            documents=len(payload.documents),
        )
        return stored

    def _check_answers_request(self, claim: Claim, payload: SubmitDataInput) -> None:
        request = self._store.get_message(payload.request_message_id)
        if (
            request is None
            or request.claim_id != claim.id
            or request.type != MessageType.DOCUMENT_REQUEST
        ):
            raise InvalidRequest(
                f"Message {payload.request_message_id} is not a document request on this claim"
            )
        missing = request.data_request_schema.missing_required(payload.submitted_data)
        if missing:
            raise InvalidRequest(f"Missing required fields: {', '.join(missing)}")

    def _apply_resubmission(self, claim: Claim, submitted: list[str], now: datetime) -> Claim:
        """
        Add submitted documents to the evidence list and the document ledger.

        Rejected records the requester may resubmit become REPLACED, and
        every submitted URL without a live record gets a PENDING one.
        """
        submitted = list(dict.fromkeys(submitted))
        existing = self._store.list_documents(claim.id)
        if existing:
            replaced = documents.supersede_rejected(existing)
            for doc in replaced:
                self._store.save_document(doc)
            replaced_ids = {d.id for d in replaced}
            live = {
                d.document_url for d in existing
                if d.is_active and d.id not in replaced_ids
            }
            fresh = [u for u in submitted if u not in live]
            self._store.add_documents(
                documents.new_record(claim.id, url, len(existing) + i + 1, now)
                for i, url in enumerate(fresh)
            )

        new_urls = [u for u in submitted if u not in claim.verification_documents]
        if not new_urls:
            return claim
        updated = claim.model_copy(update={
            "verification_documents": [*claim.verification_documents, *new_urls],
            "updated_at": now,
        })
        self._store.save_claim(updated)
        return updated

    def get_claim_messages(
        self,
        claim_id: UUID,
        viewer: Optional[Principal] = None,
    ) -> list[ClaimMessage]:
        """
        A claim's thread in posting order.

        Internal notes are left out unless the viewer is an admin.
        """
        self._require_claim(claim_id)
        messages = self._store.list_messages(claim_id)
        if viewer is not None and viewer.is_admin:
            return messages
        return [m for m in messages if m.type != MessageType.INTERNAL_NOTE]

    # ================================================================
    # DOCUMENT APPROVAL LEDGER
    # ================================================================

    def get_claim_documents(self, claim_id: UUID) -> list[DocumentApproval]:
        """
        A claim's document records, creating them on first look.

        One PENDING record per evidence URL, made once.
        """
        with self._store.claim_lock(claim_id):
            claim = self._require_claim(claim_id)
            records = self._store.list_documents(claim_id)
            if records or not claim.verification_documents:
                return records

            records = documents.materialize(
                claim.id, claim.verification_documents, self._clock()
            )
            self._store.add_documents(records)

        logger.info("Document records created", claim_id=str(claim_id), count=len(records))
        return records

    def review_document(
        self,
        document_id: UUID,
        status: str,
        admin_id: UUID,
        admin_notes: Optional[str] = None,
    ) -> DocumentApproval:
        """
        Hand down a verdict on one document.

        When this verdict settles the claim's documents, the claim moves:
        all approved to VERIFIED, any rejected to ACTION_REQUIRED. That
        move is checked before the verdict is stored.
        """
        document = self._store.get_document(document_id)
        if document is None:
            raise NotFound(f"Document {document_id} not found")

        with self._store.claim_lock(document.claim_id):
            # Re-read under the lock
            document = self._store.get_document(document_id)
            if document is None:
                raise NotFound(f"Document {document_id} not found")
            now = self._clock()
            reviewed = documents.apply_verdict(document, status, admin_id, admin_notes, now)
            admin = self._require_admin(admin_id)

            claim = self._require_claim(document.claim_id)
            ledger = [
                reviewed if d.id == reviewed.id else d
                for d in self._store.list_documents(claim.id)
            ]
            outcome = documents.aggregate(ledger)
            if outcome is not None and outcome.status == claim.status:
                outcome = None
            if outcome is not None:
                validate_transition(claim.status, outcome.status)
                if outcome.status == ClaimStatus.VERIFIED:
                    ownership.check_grantable(self._store, claim)

            # The claim moves first: a grant lost to a rival leaves the verdict unsaved
            if outcome is not None:
                self._apply_transition(
                    claim,
                    outcome.status,
                    admin,
                    _status_action(claim.status, outcome.status),
                    outcome.note,
                    review={"reviewed_by_id": admin.id, "reviewed_at": now},
                )

            self._store.save_document(reviewed)

        get_metrics().record_document_review()
        logger.info(
            "Document reviewed",
            document_id=str(document_id),
            claim_id=str(reviewed.claim_id),
            status=reviewed.status.value,
            claim_status=outcome.status.value if outcome else None,
        )
        return reviewed

    # ================================================================
    # MAINTENANCE
    # ================================================================

    def verify_audit_logs(self) -> dict[UUID, Optional[int]]:
        """
        Check every claim's audit chain.

        Returns claim id → index of the first broken entry (None if intact).
        """
        return {
            claim.id: audit.first_broken_index(claim.audit_log)
            for claim in self._store.list_claims()
        }


"""
Tests for claim messaging: the thread, document requests and data
submissions.
"""

from uuid import uuid4

import pytest

from claimflow.core import (
    ActorNotFound,
    Forbidden,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from claimflow.observability import get_metrics
from claimflow.schemas import ClaimStatus, MessageType, Principal, UserRole


class TestPostMessage:
    """Posting to a claim's thread."""

    def test_requester_chat(self, service, claim, requester):
        """A message without a type is a CHAT."""
        message = service.post_message(claim.id, requester.id, {"message": "Any news?"})

        assert message.type == MessageType.CHAT
        assert message.content == "Any news?"
        assert message.sender_role == UserRole.USER
        assert message.data_request_schema is None

    def test_chat_does_not_move_claim(self, service, claim, requester, admin):
        service.post_message(claim.id, requester.id, {"message": "Hello"})
        service.post_message(claim.id, admin.id, {"message": "Looking now", "type": "CHAT"})

        stored = service.get_claim_details(claim.id)
        assert stored.status == ClaimStatus.PENDING
        assert len(stored.audit_log) == 1

    def test_attachments_kept(self, service, claim, requester):
        message = service.post_message(claim.id, requester.id, {
            "message": "Extra proof",
            "attachments": ["https://files.example.com/letter.pdf"],
        })
        assert message.attachments == ["https://files.example.com/letter.pdf"]

    def test_stranger_forbidden(self, service, claim, other_user):
        with pytest.raises(Forbidden):
            service.post_message(claim.id, other_user.id, {"message": "hi"})
        assert service.get_claim_messages(claim.id) == []

    def test_unknown_sender(self, service, claim):
        with pytest.raises(ActorNotFound):
            service.post_message(claim.id, uuid4(), {"message": "hi"})

    def test_missing_claim(self, service, requester):
        with pytest.raises(NotFound):
            service.post_message(uuid4(), requester.id, {"message": "hi"})

    def test_empty_message_refused(self, service, claim, requester):
        with pytest.raises(InvalidRequest):
            service.post_message(claim.id, requester.id, {"message": ""})

    def test_unknown_type_refused(self, service, claim, requester):
        with pytest.raises(InvalidRequest):
            service.post_message(claim.id, requester.id, {"message": "hi", "type": "SHOUT"})

    @pytest.mark.parametrize("kind", ["INTERNAL_NOTE", "DOCUMENT_REQUEST"])
    def test_requester_cannot_post_admin_types(self, service, claim, requester, document_request, kind):
        body = {**document_request, "type": kind}
        if kind == "INTERNAL_NOTE":
            body.pop("data_request_schema")
        with pytest.raises(Forbidden):
            service.post_message(claim.id, requester.id, body)

    def test_messages_are_counted(self, service, claim, requester):
        service.post_message(claim.id, requester.id, {"message": "one"})
        service.post_message(claim.id, requester.id, {"message": "two"})
        assert get_metrics().messages_posted == 2


class TestDocumentRequest:
    """A DOCUMENT_REQUEST asks for data and moves the claim."""

    def test_request_moves_claim_to_action_required(self, service, reviewing_claim, admin, document_request):
        message = service.post_message(reviewing_claim.id, admin.id, document_request)

        assert message.type == MessageType.DOCUMENT_REQUEST
        assert message.sender_role == UserRole.ADMIN
        assert message.data_request_schema.title == "Staff verification"

        claim = service.get_claim_details(reviewing_claim.id)
        assert claim.status == ClaimStatus.ACTION_REQUIRED
        entry = claim.audit_log[-1]
        assert entry.action == "Document request sent to user"
        assert entry.from_status == ClaimStatus.UNDER_REVIEW
        assert entry.to_status == ClaimStatus.ACTION_REQUIRED

    def test_request_without_schema_refused(self, service, reviewing_claim, admin, document_request):
        document_request.pop("data_request_schema")
        with pytest.raises(InvalidRequest):
            service.post_message(reviewing_claim.id, admin.id, document_request)

    def test_request_on_pending_claim_stores_nothing(self, service, claim, admin, document_request):
        """PENDING has no edge to ACTION_REQUIRED, so the request is refused whole."""
        with pytest.raises(InvalidTransition):
            service.post_message(claim.id, admin.id, document_request)

        assert service.get_claim_messages(claim.id) == []
        stored = service.get_claim_details(claim.id)
        assert stored.status == ClaimStatus.PENDING
        assert len(stored.audit_log) == 1

    def test_second_request_while_waiting(self, service, reviewing_claim, admin, document_request):
        """Asking again while ACTION_REQUIRED adds a message but no transition."""
        service.post_message(reviewing_claim.id, admin.id, document_request)
        service.post_message(reviewing_claim.id, admin.id, document_request)

        claim = service.get_claim_details(reviewing_claim.id)
        assert claim.status == ClaimStatus.ACTION_REQUIRED
        assert len(claim.audit_log) == 3
        assert len(service.get_claim_messages(claim.id)) == 2

    def test_select_field_needs_options(self, service, reviewing_claim, admin, document_request):
        document_request["data_request_schema"]["fields"].append(
            {"field_name": "campus", "label": "Campus", "type": "select"}
        )
        with pytest.raises(InvalidRequest):
            service.post_message(reviewing_claim.id, admin.id, document_request)

    def test_duplicate_field_names_refused(self, service, reviewing_claim, admin, document_request):
        document_request["data_request_schema"]["fields"].append(
            {"field_name": "office", "label": "Office again"}
        )
        with pytest.raises(InvalidRequest):
            service.post_message(reviewing_claim.id, admin.id, document_request)


class TestInternalNotes:
    """Admin-only notes stay with admins."""

    @pytest.fixture
    def thread(self, service, claim, requester, admin):
        service.post_message(claim.id, requester.id, {"message": "Here is my badge"})
        service.post_message(claim.id, admin.id, {"type": "INTERNAL_NOTE", "message": "Photo looks edited"})
        service.post_message(claim.id, admin.id, {"message": "Thanks, reviewing"})
        return claim

    def test_hidden_from_requester(self, service, thread, requester):
        viewer = Principal(user_id=requester.id, role=UserRole.USER)
        messages = service.get_claim_messages(thread.id, viewer)
        assert [m.content for m in messages] == ["Here is my badge", "Thanks, reviewing"]

    def test_hidden_without_viewer(self, service, thread):
        assert all(m.type != MessageType.INTERNAL_NOTE for m in service.get_claim_messages(thread.id))

    def test_visible_to_admin(self, service, thread, admin):
        viewer = Principal(user_id=admin.id, role=UserRole.ADMIN)
        messages = service.get_claim_messages(thread.id, viewer)
        assert [m.type for m in messages] == [
            MessageType.CHAT,
            MessageType.INTERNAL_NOTE,
            MessageType.CHAT,
        ]

    def test_note_does_not_move_claim(self, service, thread):
        assert service.get_claim_details(thread.id).status == ClaimStatus.PENDING

    def test_thread_of_missing_claim(self, service):
        with pytest.raises(NotFound):
            service.get_claim_messages(uuid4())


class TestSubmitData:
    """Requesters answer document requests."""

    @pytest.fixture
    def request_message(self, service, reviewing_claim, admin, document_request):
        return service.post_message(reviewing_claim.id, admin.id, document_request)

    def test_submission_returns_claim_to_review(self, service, reviewing_claim, requester, request_message):
        message = service.submit_data(reviewing_claim.id, requester.id, {
            "request_message_id": str(request_message.id),
            "submitted_data": {"staff_number": "SU-40213", "office": "B12"},
        })

        assert message.type == MessageType.CHAT
        assert message.content == "Data submission"
        assert message.submitted_data == {"staff_number": "SU-40213", "office": "B12"}
        assert message.request_message_id == request_message.id

        claim = service.get_claim_details(reviewing_claim.id)
        assert claim.status == ClaimStatus.UNDER_REVIEW
        entry = claim.audit_log[-1]
        assert entry.action == "User submitted requested data"
        assert entry.note == "Data submitted, awaiting review"
        assert entry.from_status == ClaimStatus.ACTION_REQUIRED
        assert entry.user_name == "Dana Reyes"

    def test_missing_required_field(self, service, reviewing_claim, requester, request_message):
        with pytest.raises(InvalidRequest, match="staff_number"):
            service.submit_data(reviewing_claim.id, requester.id, {
                "request_message_id": str(request_message.id),
                "submitted_data": {"office": "B12"},
            })
        claim = service.get_claim_details(reviewing_claim.id)
        assert claim.status == ClaimStatus.ACTION_REQUIRED

    def test_blank_required_field(self, service, reviewing_claim, requester, request_message):
        with pytest.raises(InvalidRequest):
            service.submit_data(reviewing_claim.id, requester.id, {
                "request_message_id": str(request_message.id),
                "submitted_data": {"staff_number": "  "},
            })

    def test_reference_must_be_a_request(self, service, reviewing_claim, requester, request_message):
        chat = service.post_message(reviewing_claim.id, requester.id, {"message": "hi"})
        with pytest.raises(InvalidRequest):
            service.submit_data(reviewing_claim.id, requester.id, {
                "request_message_id": str(chat.id),
                "submitted_data": {"staff_number": "SU-40213"},
            })

    def test_submission_without_reference(self, service, reviewing_claim, requester, request_message):
        service.submit_data(reviewing_claim.id, requester.id, {"submitted_data": {"note": "see attached"}})
        assert service.get_claim_details(reviewing_claim.id).status == ClaimStatus.UNDER_REVIEW

    def test_submission_while_pending_keeps_status(self, service, claim, requester):
        service.submit_data(claim.id, requester.id, {"submitted_data": {"staff_number": "1"}})
        stored = service.get_claim_details(claim.id)
        assert stored.status == ClaimStatus.PENDING
        assert len(stored.audit_log) == 1

    def test_documents_join_evidence(self, service, reviewing_claim, requester, request_message):
        service.submit_data(reviewing_claim.id, requester.id, {
            "request_message_id": str(request_message.id),
            "submitted_data": {"staff_number": "SU-40213"},
            "documents": [
                "https://files.example.com/contract.pdf",
                "https://files.example.com/badge.pdf",
            ],
        })
        claim = service.get_claim_details(reviewing_claim.id)
        assert claim.verification_documents == [
            "https://files.example.com/badge.pdf",
            "https://files.example.com/contract.pdf",
        ]

    def test_only_requester_submits(self, service, reviewing_claim, other_user, admin, request_message):
        for user in (other_user, admin):
            with pytest.raises(Forbidden):
                service.submit_data(reviewing_claim.id, user.id, {"submitted_data": {"staff_number": "1"}})

    def test_closed_claim_refuses_submissions(self, service, reviewing_claim, requester, admin):
        service.update_status(reviewing_claim.id, "REJECTED", admin.id, "no match")
        with pytest.raises(InvalidState):
            service.submit_data(reviewing_claim.id, requester.id, {"submitted_data": {"staff_number": "1"}})
        assert service.get_claim_messages(reviewing_claim.id) == []

    def test_missing_claim(self, service, requester):
        with pytest.raises(NotFound):
            service.submit_data(uuid4(), requester.id, {"submitted_data": {}})

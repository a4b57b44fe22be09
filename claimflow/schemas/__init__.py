# Canonical schemas for the claim lifecycle engine.
# These define the contract every stored record must satisfy.

from .status import ClaimStatus, ACTIVE_STATUSES
from .audit import AuditLogEntry
from .claim import (
    Claim,
    ClaimTarget,
    ClaimType,
    ClaimUpdate,
    CreateClaimInput,
    TargetKind,
    CLAIM_EXPIRY_DAYS,
)
from .user import ClaimableEntity, Principal, UserRecord, UserRole
from .message import (
    ChatMessageInput,
    ClaimMessage,
    DataRequestField,
    DataRequestSchema,
    DocumentRequestInput,
    FieldKind,
    InternalNoteInput,
    MessageType,
    PostMessageInput,
    SubmitDataInput,
    post_message_adapter,
)
from .document import (
    DocumentApproval,
    DocumentKind,
    DocumentStatus,
    REVIEW_VERDICTS,
)

__all__ = [
    # Status
    "ClaimStatus",
    "ACTIVE_STATUSES",
    # Audit
    "AuditLogEntry",
    # Claim
    "Claim",
    "ClaimTarget",
    "ClaimType",
    "ClaimUpdate",
    "CreateClaimInput",
    "TargetKind",
    "CLAIM_EXPIRY_DAYS",
    # Identity / targets
    "ClaimableEntity",
    "Principal",
    "UserRecord",
    "UserRole",
    # Messages
    "ChatMessageInput",
    "ClaimMessage",
    "DataRequestField",
    "DataRequestSchema",
    "DocumentRequestInput",
    "FieldKind",
    "InternalNoteInput",
    "MessageType",
    "PostMessageInput",
    "SubmitDataInput",
    "post_message_adapter",
    # Documents
    "DocumentApproval",
    "DocumentKind",
    "DocumentStatus",
    "REVIEW_VERDICTS",
]

"""
Canonical Claim Message Schema

Every claim carries a thread. Most of it is conversation.
Some of it is a form: "please provide these fields".

A DOCUMENT_REQUEST without a form is not a request. The input union
below makes that unrepresentable: only the document-request variant
has a schema field, and there it is required.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from .user import UserRole


class MessageType(str, Enum):
    """Thread message discriminator."""
    CHAT = "CHAT"
    DOCUMENT_REQUEST = "DOCUMENT_REQUEST"   # Moves the claim to ACTION_REQUIRED
    INTERNAL_NOTE = "INTERNAL_NOTE"         # Admins only, never shown to requester


class FieldKind(str, Enum):
    """Input widget for one requested field."""
    TEXT = "text"
    NUMBER = "number"
    FILE = "file"
    DATE = "date"
    SELECT = "select"
    TEXTAREA = "textarea"


class DataRequestField(BaseModel):
    """One field the requester is asked to fill in."""
    field_name: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: FieldKind = FieldKind.TEXT
    required: bool = False
    options: Optional[list[str]] = Field(
        default=None,
        description="Choices, only meaningful for select fields"
    )
    description: Optional[str] = None

    @model_validator(mode="after")
    def select_needs_options(self) -> "DataRequestField":
        if self.type == FieldKind.SELECT and not self.options:
            raise ValueError(f"select field '{self.field_name}' needs at least one option")
        return self


class DataRequestSchema(BaseModel):
    """
    The form embedded in a DOCUMENT_REQUEST.

    Field order is display order.
    """
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    fields: list[DataRequestField] = Field(..., min_length=1)

    @field_validator("fields")
    @classmethod
    def unique_field_names(cls, v: list[DataRequestField]) -> list[DataRequestField]:
        names = [f.field_name for f in v]
        if len(names) != len(set(names)):
            raise ValueError("field names must be unique within a request")
        return v

    def missing_required(self, submitted: dict[str, Any]) -> list[str]:
        """Names of required fields absent or blank in a submission."""
        missing = []
        for f in self.fields:
            if not f.required:
                continue
            value = submitted.get(f.field_name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(f.field_name)
        return missing


# ------------------------------------------------------------
# Inputs
# ------------------------------------------------------------

class _MessageInputBase(BaseModel):
    message: str = Field(..., min_length=1)
    attachments: list[str] = Field(default_factory=list)


class ChatMessageInput(_MessageInputBase):
    type: Literal["CHAT"] = "CHAT"


class InternalNoteInput(_MessageInputBase):
    type: Literal["INTERNAL_NOTE"] = "INTERNAL_NOTE"


class DocumentRequestInput(_MessageInputBase):
    type: Literal["DOCUMENT_REQUEST"] = "DOCUMENT_REQUEST"
    data_request_schema: DataRequestSchema


PostMessageInput = Annotated[
    Union[ChatMessageInput, DocumentRequestInput, InternalNoteInput],
    Field(discriminator="type"),
]

post_message_adapter = TypeAdapter(PostMessageInput)


class SubmitDataInput(BaseModel):
    """A requester's answer to a document request."""
    request_message_id: Optional[UUID] = Field(
        default=None,
        description="The DOCUMENT_REQUEST being answered, if known"
    )
    submitted_data: dict[str, Any]
    documents: list[str] = Field(default_factory=list)


# ------------------------------------------------------------
# Stored message
# ------------------------------------------------------------

class ClaimMessage(BaseModel):
    """
    One message on a claim's thread.

    Messages are never edited once posted.
    """
    id: UUID
    claim_id: UUID
    sender_id: UUID
    sender_role: UserRole = Field(..., description="Role at the time of sending")
    content: str
    attachments: list[str] = Field(default_factory=list)
    type: MessageType = MessageType.CHAT
    data_request_schema: Optional[DataRequestSchema] = None
    submitted_data: Optional[dict[str, Any]] = None
    request_message_id: Optional[UUID] = None
    created_at: datetime

    @model_validator(mode="after")
    def schema_only_on_requests(self) -> "ClaimMessage":
        if self.type == MessageType.DOCUMENT_REQUEST and self.data_request_schema is None:
            raise ValueError("DOCUMENT_REQUEST messages must carry a data_request_schema")
        if self.type != MessageType.DOCUMENT_REQUEST and self.data_request_schema is not None:
            raise ValueError("only DOCUMENT_REQUEST messages carry a data_request_schema")
        return self

    class Config:
        frozen = True

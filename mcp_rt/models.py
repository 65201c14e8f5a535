"""Pydantic models and input types for RT entities."""

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

# ==================== INPUT TYPES ====================

TicketId = Annotated[int, Field(gt=0, description="Numeric RT ticket ID")]
AttachmentId = Annotated[int, Field(gt=0, description="Numeric RT attachment ID")]
SearchQuery = Annotated[
    str,
    Field(min_length=5, description="Simple search text, e.g. 'login bug' or a ticket subject fragment"),
]
ResultLimit = Annotated[int, Field(ge=1, le=100, description="Maximum number of tickets to return (1-100)")]
Priority = Annotated[int, Field(ge=0, le=100, description="Ticket priority (0-100)")]
Subject = Annotated[str, Field(min_length=1, description="Ticket subject")]
MessageContent = Annotated[str, Field(min_length=1, description="Message body (plain text)")]


class CommentType(str, Enum):
    """Kind of message added to a ticket.

    Attributes:
        COMMENT: Internal comment, not sent to requestors
        CORRESPOND: Correspondence, sent to requestors
    """

    COMMENT = "comment"
    CORRESPOND = "correspond"


# ==================== REFERENCES ====================


class Reference(BaseModel):
    """An expanded RT object reference such as ``{"type": "queue", "id": 1, "Name": "General"}``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int | str | None = None
    name: str | None = Field(None, alias="Name")

    @property
    def display(self) -> int | str | None:
        """Identifier shown to callers: the id, or the name when the id is empty."""
        return self.id or self.name


def _to_display_ref(value: Any) -> Any:
    """Collapse a scalar-or-object reference into its display identifier."""
    if isinstance(value, dict):
        return Reference.model_validate(value).display
    return value


DisplayRef = Annotated[int | str | None, BeforeValidator(_to_display_ref)]


def _empty_if_none(value: Any) -> Any:
    return [] if value is None else value


RefList = Annotated[list[DisplayRef], BeforeValidator(_empty_if_none)]


# ==================== TICKETS ====================


class TicketSummary(BaseModel):
    """One row of a ticket search."""

    id: int | str | None = None
    subject: str | None = None
    status: str | None = None
    queue: DisplayRef = None
    owner: DisplayRef = None
    priority: int | str | None = None
    created: str | None = None


class TicketDetail(BaseModel):
    """Full ticket record."""

    id: int | str | None = None
    type: str | None = None
    subject: str | None = None
    status: str | None = None
    priority: int | str | None = None
    initial_priority: int | str | None = None
    final_priority: int | str | None = None
    queue: DisplayRef = None
    owner: DisplayRef = None
    creator: DisplayRef = None
    requestors: RefList = Field(default_factory=list)
    cc: RefList = Field(default_factory=list)
    admin_cc: RefList = Field(default_factory=list)
    created: str | None = None
    starts: str | None = None
    started: str | None = None
    due: str | None = None
    resolved: str | None = None
    told: str | None = None
    last_updated: str | None = None
    time_estimated: int | str | None = None
    time_worked: int | str | None = None
    time_left: int | str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    """One transaction in a ticket's timeline."""

    id: int | str | None = None
    type: str | None = None
    creator: DisplayRef = None
    created: str | None = None
    description: str | None = None
    field: str | None = None
    old_value: Any = None
    new_value: Any = None
    content: Any = None
    attachments: RefList = Field(default_factory=list)


class TicketLinks(BaseModel):
    """Relationships of one ticket, each an ordered list of ticket ids or URIs."""

    ticket_id: int
    depends_on: RefList = Field(default_factory=list)
    depended_on_by: RefList = Field(default_factory=list)
    refers_to: RefList = Field(default_factory=list)
    referred_to_by: RefList = Field(default_factory=list)
    members: RefList = Field(default_factory=list)
    member_of: RefList = Field(default_factory=list)


# ==================== QUEUES & USERS ====================


class Queue(BaseModel):
    """Ticket queue."""

    id: int | str | None = None
    name: str | None = None
    description: str | None = None


class User(BaseModel):
    """RT user account."""

    id: int | str | None = None
    name: str | None = None
    email: str | None = None
    real_name: str | None = None


# ==================== ATTACHMENTS ====================


class AttachmentSummary(BaseModel):
    """Attachment metadata."""

    id: int | str | None = None
    filename: str | None = None
    content_type: str | None = None
    size: int | str | None = None
    created: str | None = None
    creator: DisplayRef = None
    transaction_id: DisplayRef = None


class AttachmentDetail(AttachmentSummary):
    """Attachment metadata with headers and the inline content as sent by RT (not decoded)."""

    ticket_id: int
    headers: Any = None
    content: Any = None


class AttachmentContent(BaseModel):
    """Downloaded attachment payload."""

    ticket_id: int
    attachment_id: int
    filename: str | None = None
    content_type: str | None = None
    size: int = Field(description="Length of the decoded content in bytes")
    content_base64: str

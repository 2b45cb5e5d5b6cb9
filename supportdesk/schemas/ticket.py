from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from supportdesk.utils.time import parse_timestamp


class TicketStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

    @classmethod
    def parse(cls, value: str | TicketStatus | None) -> TicketStatus:
        normalized = str(value.value if isinstance(value, TicketStatus) else value or "")
        normalized = normalized.strip().upper()
        try:
            return cls(normalized)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in cls)
            raise ValueError(f"Invalid status '{value}'. Use one of: {allowed}") from exc


CLOSED_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


class SenderType(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class MessageState(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    @field_validator("created_at", "updated_at", mode="before", check_fields=False)
    @classmethod
    def _coerce_timestamp(cls, value):
        parsed = parse_timestamp(value)
        return parsed if parsed is not None else value

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Ticket(WireModel):
    ticket_id: str
    title: str = ""
    status: TicketStatus | str = Field(
        default=TicketStatus.OPEN, union_mode="left_to_right"
    )
    last_message_snippet: str | None = None
    updated_at: datetime | None = None
    created_at: datetime | None = None
    email: str | None = None
    username: str | None = None
    avatar: str | None = None


class TicketPage(WireModel):
    items: list[Ticket] = Field(default_factory=list)
    next_cursor: str | None = Field(default=None, alias="nextToken")


class Message(WireModel):
    """A message the server has accepted."""

    kind: Literal["confirmed"] = "confirmed"
    id: str | None = None
    ticket_id: str | None = Field(default=None, alias="ticketRef")
    sender: str = ""
    sender_type: SenderType = SenderType.USER
    text: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    attachments: Any = None
    state: MessageState | None = None


class ProvisionalMessage(WireModel):
    """A locally authored message the server has not confirmed yet."""

    kind: Literal["provisional"] = "provisional"
    id: str
    sender: str
    sender_type: SenderType
    text: str
    created_at: datetime
    state: MessageState = MessageState.SENDING


MessageRecord = Annotated[
    Union[Message, ProvisionalMessage], Field(discriminator="kind")
]


class MessageSearchHit(WireModel):
    ticket_id: str
    ticket_subject: str | None = None
    snippet: str | None = None
    created_at: datetime | None = None

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from supportdesk.schemas.ticket import MessageRecord, Ticket, TicketStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PanelEvent:
    ticket_id: str | None = None


@dataclass(frozen=True)
class TicketListLoaded(PanelEvent):
    count: int = 0
    has_more: bool = False


@dataclass(frozen=True)
class TicketListFailed(PanelEvent):
    error: str = ""


@dataclass(frozen=True)
class TicketDetailLoaded(PanelEvent):
    from_cache: bool = False


@dataclass(frozen=True)
class TicketDetailFailed(PanelEvent):
    error: str = ""


@dataclass(frozen=True)
class TicketCreated(PanelEvent):
    ticket: Ticket | None = None


@dataclass(frozen=True)
class MessageAdded(PanelEvent):
    message: MessageRecord | None = None


@dataclass(frozen=True)
class MessageConfirmed(PanelEvent):
    message: MessageRecord | None = None


@dataclass(frozen=True)
class MessageSendFailed(PanelEvent):
    message: MessageRecord | None = None
    error: str = ""


@dataclass(frozen=True)
class TicketStatusChanged(PanelEvent):
    status: TicketStatus | str | None = None
    previous: TicketStatus | str | None = None
    confirmed: bool = False


@dataclass(frozen=True)
class TicketStatusChangeFailed(PanelEvent):
    status: TicketStatus | str | None = None
    error: str = ""

    @property
    def summary(self) -> str:
        status = getattr(self.status, "value", self.status)
        return f"Failed to update ticket {self.ticket_id} to {status}: {self.error}"


Handler = Callable[[Any], None]


@dataclass
class EventBus:
    """Synchronous in-process pub/sub owned by one panel."""

    _handlers: dict[type, list[Handler]] = field(default_factory=lambda: defaultdict(list))

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: PanelEvent) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "event_handler_failed",
                        event=type(event).__name__,
                        ticket_id=event.ticket_id,
                    )

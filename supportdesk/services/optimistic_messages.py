from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from supportdesk.core.config import settings
from supportdesk.schemas.ticket import (
    Message,
    MessageRecord,
    MessageState,
    ProvisionalMessage,
    SenderType,
)
from supportdesk.services.events import (
    EventBus,
    MessageAdded,
    MessageConfirmed,
    MessageSendFailed,
)
from supportdesk.services.ticket_api import Scope, TicketApi, TicketValidationError
from supportdesk.services.ticket_store import TicketStore, is_same_message
from supportdesk.utils.time import epoch_millis, utc_now

logger = structlog.get_logger(__name__)


def clean_message_text(text: str | None, max_chars: int | None = None) -> str:
    limit = settings.MESSAGE_MAX_CHARS if max_chars is None else max_chars
    cleaned = (text or "").strip()
    if not cleaned:
        raise TicketValidationError("Message text is required")
    if len(cleaned) > limit:
        raise TicketValidationError(f"Message text exceeds {limit} characters")
    return cleaned


def _find(messages: tuple[MessageRecord, ...], message_id: str) -> MessageRecord | None:
    for record in messages:
        if record.id == message_id:
            return record
    return None


class OptimisticMessageController:
    """Shows outgoing messages before the server confirms them.

    Each message goes ``sending -> sent`` or ``sending -> failed``; a failed
    message can be retried any number of times. The local id survives
    confirmation, since the server assigns none.
    """

    def __init__(
        self,
        api: TicketApi,
        store: TicketStore,
        *,
        scope: Scope,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.api = api
        self.store = store
        self.scope = scope
        self.events = events or EventBus()
        self.clock = clock
        self._last_temp_millis = 0

    def _temp_id(self, now: datetime) -> str:
        millis = epoch_millis(now)
        if millis <= self._last_temp_millis:
            millis = self._last_temp_millis + 1
        self._last_temp_millis = millis
        return f"temp-{millis}"

    async def send_message(
        self,
        ticket_id: str,
        text: str,
        sender: str,
        sender_type: SenderType = SenderType.USER,
    ) -> MessageRecord:
        text = clean_message_text(text)
        now = self.clock()
        provisional = ProvisionalMessage(
            id=self._temp_id(now),
            sender=sender,
            sender_type=sender_type,
            text=text,
            created_at=now,
            state=MessageState.SENDING,
        )
        self.store.update_messages(ticket_id, lambda messages: (*messages, provisional))
        self.events.publish(MessageAdded(ticket_id=ticket_id, message=provisional))
        return await self._deliver(ticket_id, provisional)

    async def retry(self, ticket_id: str, message_id: str) -> MessageRecord | None:
        entry = self.store.get(ticket_id)
        if entry is None:
            return None
        record = _find(entry.messages, message_id)
        if not isinstance(record, ProvisionalMessage) or record.state != MessageState.FAILED:
            return None
        sending = record.model_copy(update={"state": MessageState.SENDING})
        self._swap(ticket_id, message_id, sending)
        logger.info("message_retry", ticket_id=ticket_id, message_id=message_id)
        return await self._deliver(ticket_id, sending)

    async def _deliver(
        self, ticket_id: str, provisional: ProvisionalMessage
    ) -> MessageRecord:
        try:
            sent = await self.api.add_message(self.scope, ticket_id, provisional.text)
        except Exception as exc:
            logger.error(
                "errors",
                stage="send_message",
                ticket_id=ticket_id,
                message_id=provisional.id,
                error=str(exc),
            )
            failed = provisional.model_copy(update={"state": MessageState.FAILED})
            self._swap(ticket_id, provisional.id, failed)
            self.events.publish(
                MessageSendFailed(ticket_id=ticket_id, message=failed, error=str(exc))
            )
            return failed

        confirmed = Message(
            id=provisional.id,
            ticket_id=sent.ticket_id or ticket_id,
            sender=sent.sender or provisional.sender,
            sender_type=provisional.sender_type,
            text=sent.text or provisional.text,
            created_at=sent.created_at or provisional.created_at,
            updated_at=sent.updated_at,
            state=MessageState.SENT,
        )
        self._swap(ticket_id, provisional.id, confirmed)
        self.events.publish(MessageConfirmed(ticket_id=ticket_id, message=confirmed))
        return confirmed

    def _swap(self, ticket_id: str, message_id: str, record: MessageRecord) -> None:
        def replace_in_place(messages: tuple[MessageRecord, ...]) -> list[MessageRecord]:
            result: list[MessageRecord] = []
            for item in messages:
                if item.id == message_id:
                    result.append(record)
                elif (
                    isinstance(record, Message)
                    and isinstance(item, Message)
                    and item.state is None
                    and is_same_message(item, record)
                ):
                    # A refresh already brought in the server copy.
                    continue
                else:
                    result.append(item)
            return result

        self.store.update_messages(ticket_id, replace_in_place)

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Iterable

import structlog

from supportdesk.schemas.ticket import (
    CLOSED_STATUSES,
    Message,
    MessageRecord,
    SenderType,
    Ticket,
    TicketStatus,
)
from supportdesk.services.events import (
    EventBus,
    TicketStatusChanged,
    TicketStatusChangeFailed,
)
from supportdesk.services.ticket_api import Scope, TicketApi, TicketValidationError
from supportdesk.services.ticket_store import TicketStore

logger = structlog.get_logger(__name__)

STAFF_STATUS_OPTIONS = (TicketStatus.RESOLVED, TicketStatus.CLOSED)


def has_admin_reply(messages: Iterable[MessageRecord]) -> bool:
    return any(
        isinstance(message, Message) and message.sender_type == SenderType.ADMIN
        for message in messages
    )


def evaluate_auto_transition(
    ticket: Ticket | None,
    messages: Iterable[MessageRecord],
    triggering_sender_type: SenderType | None = None,
) -> TicketStatus | None:
    """Status a ticket should move to after a reply, or on open when
    ``triggering_sender_type`` is None. Only confirmed messages count as
    history.
    """
    if ticket is None:
        return None
    status = ticket.status
    if triggering_sender_type is None:
        if status == TicketStatus.OPEN and has_admin_reply(messages):
            return TicketStatus.IN_PROGRESS
        return None
    if status in CLOSED_STATUSES:
        return TicketStatus.IN_PROGRESS
    if (
        triggering_sender_type == SenderType.ADMIN
        and status == TicketStatus.OPEN
        and not has_admin_reply(messages)
    ):
        return TicketStatus.IN_PROGRESS
    return None


class TicketStatusController:
    """Applies explicit and automatic status changes with optimistic rollback.

    Status writes for one ticket are serialized, so the change issued last
    is also the one that completes last.
    """

    def __init__(
        self,
        api: TicketApi,
        store: TicketStore,
        *,
        scope: Scope,
        events: EventBus | None = None,
    ) -> None:
        self.api = api
        self.store = store
        self.scope = scope
        self.events = events or EventBus()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def apply_status_change(
        self, ticket_id: str, new_status: TicketStatus | str
    ) -> bool:
        try:
            target = TicketStatus.parse(new_status)
        except ValueError as exc:
            raise TicketValidationError(str(exc)) from exc

        async with self._locks[ticket_id]:
            entry = self.store.get(ticket_id)
            original = entry.ticket_detail if entry is not None else None
            if original is not None and original.status == target:
                return True

            previous_status = original.status if original is not None else None
            if original is not None:
                self.store.update_detail(
                    ticket_id, lambda detail: detail.model_copy(update={"status": target})
                )
                self.events.publish(
                    TicketStatusChanged(
                        ticket_id=ticket_id, status=target, previous=previous_status
                    )
                )

            try:
                updated = await self.api.update_ticket_status(self.scope, ticket_id, target)
            except Exception as exc:
                logger.error(
                    "errors",
                    stage="update_status",
                    ticket_id=ticket_id,
                    status=target.value,
                    error=str(exc),
                )
                if original is not None:
                    self.store.update_detail(
                        ticket_id,
                        lambda detail: (detail or original).model_copy(
                            update={"status": previous_status}
                        ),
                    )
                    self.events.publish(
                        TicketStatusChanged(
                            ticket_id=ticket_id, status=previous_status, previous=target
                        )
                    )
                self.events.publish(
                    TicketStatusChangeFailed(ticket_id=ticket_id, status=target, error=str(exc))
                )
                return False

            def merge(detail: Ticket | None) -> Ticket:
                if detail is None:
                    return updated
                changes = updated.model_dump(exclude_unset=True, exclude_none=True)
                return detail.model_copy(update=changes)

            self.store.update_detail(ticket_id, merge)
            logger.info("ticket_status_updated", ticket_id=ticket_id, status=target.value)
            self.events.publish(
                TicketStatusChanged(
                    ticket_id=ticket_id,
                    status=updated.status or target,
                    previous=previous_status,
                    confirmed=True,
                )
            )
            return True

    async def apply_auto_transition(
        self,
        ticket_id: str,
        sender_type: SenderType | None,
        history: Iterable[MessageRecord] | None = None,
    ) -> TicketStatus | None:
        entry = self.store.get(ticket_id)
        if entry is None:
            return None
        messages = entry.messages if history is None else history
        target = evaluate_auto_transition(entry.ticket_detail, messages, sender_type)
        if target is None:
            return None
        logger.info(
            "ticket_status_auto_transition",
            ticket_id=ticket_id,
            previous=getattr(entry.ticket_detail.status, "value", entry.ticket_detail.status),
            status=target.value,
        )
        if not await self.apply_status_change(ticket_id, target):
            logger.warning("ticket_status_auto_transition_failed", ticket_id=ticket_id)
            return None
        return target

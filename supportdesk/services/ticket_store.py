from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Sequence

from supportdesk.core.config import settings
from supportdesk.schemas.ticket import (
    Message,
    MessageRecord,
    MessageState,
    ProvisionalMessage,
    Ticket,
)
from supportdesk.utils.time import epoch_millis, utc_now


def fetched_message_id(ticket_id: str, message: Message, index: int) -> str:
    """Local id for a server message; the thread queries return none."""
    stamp = epoch_millis(message.created_at) if message.created_at else "na"
    return f"{ticket_id}:{stamp}:{index}"


def is_same_message(record: MessageRecord, other: MessageRecord) -> bool:
    return (
        record.text == other.text
        and record.created_at is not None
        and record.created_at == other.created_at
    )


def _find_server_copy(fetched: list[MessageRecord], record: Message) -> int | None:
    for index, item in enumerate(fetched):
        if isinstance(item, Message) and item.state is None and is_same_message(item, record):
            return index
    return None


@dataclass(frozen=True)
class CacheEntry:
    messages: tuple[MessageRecord, ...] = ()
    ticket_detail: Ticket | None = None
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def is_complete(self) -> bool:
        return self.ticket_detail is not None


class TicketStore:
    """Per-panel cache of ticket detail and messages, keyed by ticket id.

    Entries are immutable; every write swaps in a new ``CacheEntry`` so no
    half-applied edit is visible across an await.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        ttl = settings.TICKET_CACHE_TTL_SEC if ttl_seconds is None else ttl_seconds
        self.ttl = timedelta(seconds=ttl)
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __contains__(self, ticket_id: object) -> bool:
        return ticket_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def has(self, ticket_id: str) -> bool:
        return ticket_id in self._entries

    def get(self, ticket_id: str) -> CacheEntry | None:
        return self._entries.get(ticket_id)

    def put(
        self,
        ticket_id: str,
        entry: CacheEntry,
        *,
        preserve_timestamp: bool = False,
    ) -> CacheEntry:
        if not preserve_timestamp:
            entry = replace(entry, timestamp=self.clock())
        self._entries[ticket_id] = entry
        return entry

    def is_stale(self, entry: CacheEntry) -> bool:
        return self.clock() - entry.timestamp > self.ttl

    def clear(self) -> None:
        self._entries.clear()

    def store_fetched(
        self,
        ticket_id: str,
        ticket: Ticket | None,
        messages: Sequence[Message],
    ) -> CacheEntry:
        fetched: list[MessageRecord] = [
            message if message.id else message.model_copy(
                update={"id": fetched_message_id(ticket_id, message, index)}
            )
            for index, message in enumerate(messages)
        ]
        previous = self._entries.get(ticket_id)
        if previous is not None:
            local: list[MessageRecord] = []
            for record in previous.messages:
                if isinstance(record, ProvisionalMessage):
                    local.append(record)
                elif record.state == MessageState.SENT:
                    match = _find_server_copy(fetched, record)
                    if match is None:
                        # Confirmed after the fetch read the thread.
                        local.append(record)
                    else:
                        fetched[match] = record
            fetched.extend(local)
            if ticket is None:
                ticket = previous.ticket_detail
        return self.put(ticket_id, CacheEntry(messages=tuple(fetched), ticket_detail=ticket))

    def update_messages(
        self,
        ticket_id: str,
        fn: Callable[[tuple[MessageRecord, ...]], Sequence[MessageRecord]],
    ) -> CacheEntry:
        previous = self._entries.get(ticket_id)
        if previous is None:
            # Incomplete until a fetch fills in the detail; stale so it never blocks one.
            previous = CacheEntry(timestamp=self.clock() - self.ttl - timedelta(seconds=1))
        entry = replace(previous, messages=tuple(fn(previous.messages)))
        return self.put(ticket_id, entry, preserve_timestamp=True)

    def update_detail(
        self,
        ticket_id: str,
        fn: Callable[[Ticket | None], Ticket | None],
        *,
        preserve_timestamp: bool = False,
    ) -> CacheEntry | None:
        previous = self._entries.get(ticket_id)
        if previous is None:
            return None
        return self.put(
            ticket_id,
            replace(previous, ticket_detail=fn(previous.ticket_detail)),
            preserve_timestamp=preserve_timestamp,
        )

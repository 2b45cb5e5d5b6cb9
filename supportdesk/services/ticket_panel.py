from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Coroutine

import structlog

from supportdesk.core.config import settings
from supportdesk.schemas.ticket import (
    MessageRecord,
    MessageSearchHit,
    MessageState,
    SenderType,
    Ticket,
    TicketStatus,
)
from supportdesk.services.auth import AuthError, TokenProvider, resolve_identity
from supportdesk.services.events import (
    EventBus,
    TicketCreated,
    TicketDetailFailed,
    TicketDetailLoaded,
    TicketListFailed,
    TicketListLoaded,
    TicketStatusChanged,
    TicketStatusChangeFailed,
)
from supportdesk.services.optimistic_messages import (
    OptimisticMessageController,
    clean_message_text,
)
from supportdesk.services.request_dedup import RequestDeduplicator
from supportdesk.services.ticket_api import (
    Scope,
    TicketApi,
    TicketValidationError,
)
from supportdesk.services.ticket_query import ALL_STATUS, ANY_STATUS, filter_and_sort
from supportdesk.services.ticket_status import TicketStatusController
from supportdesk.services.ticket_store import CacheEntry, TicketStore
from supportdesk.utils.time import utc_now

logger = structlog.get_logger(__name__)

SNIPPET_MAX_CHARS = 100
ADMIN_FALLBACK_SENDER = "admin"


def make_snippet(text: str, limit: int = SNIPPET_MAX_CHARS) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: limit - 1].rstrip() + "…"


def clean_ticket_title(title: str | None, max_chars: int | None = None) -> str:
    limit = settings.TITLE_MAX_CHARS if max_chars is None else max_chars
    cleaned = (title or "").strip()
    if not cleaned:
        raise TicketValidationError("Ticket title is required")
    if len(cleaned) > limit:
        raise TicketValidationError(f"Ticket title exceeds {limit} characters")
    return cleaned


class TicketPanel:
    """State of one ticket panel session, for an end user or for staff.

    The panel owns its cache, in-flight set and event bus; nothing is shared
    with other panels. Views read ``display_tickets``, ``ticket_detail`` and
    ``messages`` and subscribe to ``events`` for changes.
    """

    def __init__(
        self,
        api: TicketApi,
        *,
        scope: Scope,
        token_provider: TokenProvider | None = None,
        identity: str | None = None,
        store: TicketStore | None = None,
        dedup: RequestDeduplicator | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
        page_size: int | None = None,
        preload_top_n: int | None = None,
    ) -> None:
        self.api = api
        self.scope = scope
        self.token_provider = token_provider
        self.identity = identity
        self.clock = clock
        self.store = store or TicketStore(clock=clock)
        self.dedup = dedup or RequestDeduplicator()
        self.events = events or EventBus()
        self.page_size = settings.LIST_PAGE_SIZE if page_size is None else page_size
        self.preload_top_n = (
            settings.PRELOAD_TOP_N if preload_top_n is None else preload_top_n
        )
        self.messages_ctl = OptimisticMessageController(
            api, self.store, scope=scope, events=self.events, clock=clock
        )
        self.status_ctl = TicketStatusController(
            api, self.store, scope=scope, events=self.events
        )

        self.tickets: list[Ticket] = []
        self.next_cursor: str | None = None
        self.status_filter = ANY_STATUS if scope == "admin" else ALL_STATUS
        self.query = ""
        self.loading_list = False
        self.list_error = ""
        self.selected_id: str | None = None
        self.loading_detail = False
        self.detail_error = ""
        self.send_error = ""
        self.status_error = ""
        self.create_error = ""
        self.updating_status = False
        self.search_keyword = ""
        self.search_results: list[MessageSearchHit] = []
        self.searching = False
        self.search_error = ""

        self._background: set[asyncio.Task] = set()
        self.events.subscribe(TicketStatusChanged, self._on_status_changed)
        self.events.subscribe(TicketStatusChangeFailed, self._on_status_failed)

    @property
    def sender_type(self) -> SenderType:
        return SenderType.ADMIN if self.scope == "admin" else SenderType.USER

    @property
    def display_tickets(self) -> list[Ticket]:
        return filter_and_sort(self.tickets, self.query, self.status_filter, scope=self.scope)

    @property
    def ticket_detail(self) -> Ticket | None:
        if self.selected_id is None:
            return None
        entry = self.store.get(self.selected_id)
        if entry is not None and entry.ticket_detail is not None:
            return entry.ticket_detail
        return self._list_item(self.selected_id)

    @property
    def messages(self) -> list[MessageRecord]:
        if self.selected_id is None:
            return []
        entry = self.store.get(self.selected_id)
        return list(entry.messages) if entry is not None else []

    async def resolve_identity(self) -> str | None:
        if self.identity or self.token_provider is None:
            return self.identity
        try:
            self.identity = await resolve_identity(self.token_provider)
        except AuthError as exc:
            logger.error("errors", stage="resolve_identity", error=str(exc))
            return None
        return self.identity

    # ------------------------------------------------------------------ list

    async def load_tickets(self, *, reset: bool = True) -> bool:
        self.loading_list = True
        self.list_error = ""
        try:
            page = await self.api.list_tickets(
                self.scope,
                status=self.status_filter,
                limit=self.page_size,
                cursor=None if reset else self.next_cursor,
            )
        except Exception as exc:
            logger.error("errors", stage="list_tickets", scope=self.scope, error=str(exc))
            self.list_error = str(exc) or "Failed to load tickets"
            self.events.publish(TicketListFailed(error=self.list_error))
            return False
        finally:
            self.loading_list = False

        if reset:
            self.tickets = list(page.items)
        else:
            known = {ticket.ticket_id for ticket in page.items}
            self.tickets = [
                ticket for ticket in self.tickets if ticket.ticket_id not in known
            ] + list(page.items)
        self.next_cursor = page.next_cursor
        logger.debug(
            "ticket_list_loaded",
            scope=self.scope,
            count=len(self.tickets),
            has_more=bool(self.next_cursor),
        )
        self.events.publish(
            TicketListLoaded(count=len(self.tickets), has_more=bool(self.next_cursor))
        )
        self._preload_top_tickets()
        return True

    async def load_more(self) -> bool:
        if not self.next_cursor or self.loading_list:
            return False
        return await self.load_tickets(reset=False)

    async def set_status_filter(self, status_filter: str) -> bool:
        self.status_filter = (status_filter or ANY_STATUS).upper()
        return await self.load_tickets(reset=True)

    def set_query(self, text: str) -> None:
        self.query = (text or "").strip().lower()

    def _list_item(self, ticket_id: str) -> Ticket | None:
        for ticket in self.tickets:
            if ticket.ticket_id == ticket_id:
                return ticket
        return None

    def _patch_list_item(self, ticket_id: str, **changes: Any) -> None:
        self.tickets = [
            ticket.model_copy(update=changes) if ticket.ticket_id == ticket_id else ticket
            for ticket in self.tickets
        ]

    def _preload_top_tickets(self) -> None:
        if self.preload_top_n <= 0:
            return
        pending = [
            ticket.ticket_id
            for ticket in self.display_tickets[: self.preload_top_n]
            if not self.store.has(ticket.ticket_id)
        ]
        if pending:
            logger.debug("ticket_preload", ticket_ids=pending)
            for ticket_id in pending:
                self._spawn(self._refresh(ticket_id))

    # ---------------------------------------------------------------- detail

    async def _fetch_detail(self, ticket_id: str) -> CacheEntry:
        async def fetch() -> CacheEntry:
            ticket, messages = await asyncio.gather(
                self.api.get_ticket(self.scope, ticket_id),
                self.api.get_ticket_messages(self.scope, ticket_id),
            )
            entry = self.store.store_fetched(ticket_id, ticket, messages)
            logger.debug(
                "ticket_cached",
                ticket_id=ticket_id,
                messages=len(entry.messages),
                title=ticket.title if ticket else None,
            )
            return entry

        return await self.dedup.run(ticket_id, fetch)

    async def _refresh(self, ticket_id: str) -> None:
        try:
            await self._fetch_detail(ticket_id)
        except Exception as exc:
            logger.debug("ticket_refresh_failed", ticket_id=ticket_id, error=str(exc))

    async def select_ticket(
        self, ticket_id: str, *, force_refresh: bool = False
    ) -> CacheEntry | None:
        self.selected_id = ticket_id
        self.detail_error = ""

        entry = self.store.get(ticket_id)
        if entry is not None and entry.is_complete and not force_refresh:
            logger.debug("ticket_cache_hit", ticket_id=ticket_id)
            self.loading_detail = False
            self.events.publish(TicketDetailLoaded(ticket_id=ticket_id, from_cache=True))
            if self.store.is_stale(entry):
                logger.debug("ticket_cache_stale", ticket_id=ticket_id)
                self._spawn(self._refresh(ticket_id))
            await self.status_ctl.apply_auto_transition(ticket_id, None)
            return entry

        self.loading_detail = True
        try:
            entry = await self._fetch_detail(ticket_id)
        except Exception as exc:
            logger.error("errors", stage="load_detail", ticket_id=ticket_id, error=str(exc))
            if self.selected_id == ticket_id:
                self.loading_detail = False
                self.detail_error = str(exc) or "Failed to load ticket"
                self.events.publish(
                    TicketDetailFailed(ticket_id=ticket_id, error=self.detail_error)
                )
            return None

        if self.selected_id != ticket_id:
            # Cached for later, but the view has moved on.
            logger.debug("ticket_detail_late", ticket_id=ticket_id, selected=self.selected_id)
            return entry
        self.loading_detail = False
        self.events.publish(TicketDetailLoaded(ticket_id=ticket_id))
        await self.status_ctl.apply_auto_transition(ticket_id, None)
        return entry

    def clear_selection(self) -> None:
        self.selected_id = None
        self.loading_detail = False
        self.detail_error = ""

    # -------------------------------------------------------------- messages

    async def _sender(self) -> str | None:
        identity = await self.resolve_identity()
        if identity:
            return identity
        if self.scope == "admin":
            return ADMIN_FALLBACK_SENDER
        return None

    async def send_reply(self, text: str) -> MessageRecord | None:
        ticket_id = self.selected_id
        if not ticket_id:
            return None
        cleaned = clean_message_text(text)
        self.send_error = ""
        sender = await self._sender()
        if sender is None:
            self.send_error = "Not authenticated: missing ID token"
            logger.error("errors", stage="send_reply", ticket_id=ticket_id, error=self.send_error)
            return None

        entry = self.store.get(ticket_id)
        history = entry.messages if entry is not None else ()
        record = await self.messages_ctl.send_message(
            ticket_id, cleaned, sender, self.sender_type
        )
        await self._after_send(ticket_id, record, history)
        return record

    async def retry_message(self, message_id: str) -> MessageRecord | None:
        ticket_id = self.selected_id
        if not ticket_id:
            return None
        entry = self.store.get(ticket_id)
        history = (
            tuple(record for record in entry.messages if record.id != message_id)
            if entry is not None
            else ()
        )
        record = await self.messages_ctl.retry(ticket_id, message_id)
        if record is not None:
            await self._after_send(ticket_id, record, history)
        return record

    async def _after_send(
        self,
        ticket_id: str,
        record: MessageRecord,
        history: tuple[MessageRecord, ...],
    ) -> None:
        if record.state != MessageState.SENT:
            self.send_error = "Failed to send message"
            return
        self.send_error = ""
        changes = {
            "last_message_snippet": make_snippet(record.text),
            "updated_at": record.created_at or self.clock(),
        }
        self._patch_list_item(ticket_id, **changes)
        self.store.update_detail(
            ticket_id,
            lambda detail: detail.model_copy(update=changes) if detail else detail,
            preserve_timestamp=True,
        )
        await self.status_ctl.apply_auto_transition(ticket_id, self.sender_type, history)

    # ---------------------------------------------------------------- status

    async def change_status(self, new_status: TicketStatus | str) -> bool:
        ticket_id = self.selected_id
        if not ticket_id:
            return False
        self.status_error = ""
        self.updating_status = True
        try:
            return await self.status_ctl.apply_status_change(ticket_id, new_status)
        finally:
            self.updating_status = False

    def _on_status_changed(self, event: TicketStatusChanged) -> None:
        changes: dict[str, Any] = {"status": event.status}
        if event.confirmed:
            changes["updated_at"] = self.clock()
        self._patch_list_item(event.ticket_id, **changes)

    def _on_status_failed(self, event: TicketStatusChangeFailed) -> None:
        self.status_error = event.summary

    # ---------------------------------------------------------------- create

    async def create_ticket(self, title: str, text: str) -> Ticket | None:
        title = clean_ticket_title(title)
        text = clean_message_text(text)
        self.create_error = ""
        try:
            created = await self.api.create_ticket(title, text)
        except Exception as exc:
            logger.error("errors", stage="create_ticket", error=str(exc))
            self.create_error = str(exc) or "Failed to create ticket"
            return None

        ticket = created.model_copy(
            update={
                "title": created.title or title,
                "last_message_snippet": created.last_message_snippet or make_snippet(text),
                "updated_at": created.updated_at or self.clock(),
            }
        )
        self.tickets = [ticket] + [
            item for item in self.tickets if item.ticket_id != ticket.ticket_id
        ]
        logger.info("ticket_created", ticket_id=ticket.ticket_id)
        self.events.publish(TicketCreated(ticket_id=ticket.ticket_id, ticket=ticket))
        await self.select_ticket(ticket.ticket_id)
        return ticket

    # ---------------------------------------------------------------- search

    async def search(self, keyword: str) -> list[MessageSearchHit]:
        self.search_keyword = (keyword or "").strip()
        self.search_error = ""
        if not self.search_keyword:
            self.search_results = []
            return []
        if self.scope == "admin":
            # Staff have no thread search; match the loaded list instead.
            self.search_results = [
                MessageSearchHit(
                    ticket_id=ticket.ticket_id,
                    ticket_subject=ticket.title,
                    snippet=ticket.last_message_snippet,
                    created_at=ticket.updated_at,
                )
                for ticket in filter_and_sort(self.tickets, self.search_keyword, ANY_STATUS)
            ]
            return self.search_results

        keyword = self.search_keyword
        self.searching = True
        try:
            hits = await self.api.search_messages(keyword)
        except Exception as exc:
            logger.error("errors", stage="search_messages", error=str(exc))
            if keyword == self.search_keyword:
                self.search_error = str(exc) or "Search failed"
                self.search_results = []
            return []
        finally:
            self.searching = False

        if keyword != self.search_keyword:
            return hits
        self.search_results = list(hits)
        logger.debug("ticket_search", results=len(hits))
        return self.search_results

    # ------------------------------------------------------------ lifecycle

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()



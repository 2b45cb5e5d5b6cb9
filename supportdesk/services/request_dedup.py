from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RequestDeduplicator:
    """Single-flight guard for per-ticket fetches."""

    def __init__(self) -> None:
        self._in_flight: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}

    def begin_fetch(self, ticket_id: str) -> bool:
        if ticket_id in self._in_flight:
            return False
        self._in_flight.add(ticket_id)
        return True

    def end_fetch(self, ticket_id: str) -> None:
        self._in_flight.discard(ticket_id)
        self._tasks.pop(ticket_id, None)

    def in_flight(self, ticket_id: str) -> bool:
        return ticket_id in self._in_flight

    async def run(self, ticket_id: str, fetch: Callable[[], Awaitable[T]]) -> T:
        """Run ``fetch`` once per ticket; concurrent callers share its outcome."""
        task = self._tasks.get(ticket_id)
        if task is None:
            if not self.begin_fetch(ticket_id):
                # Claimed through begin_fetch by someone not using run(); nothing to join.
                logger.debug("fetch_already_in_flight", ticket_id=ticket_id)
                raise RuntimeError(f"fetch for ticket {ticket_id} is already in flight")
            task = asyncio.ensure_future(fetch())
            self._tasks[ticket_id] = task
            task.add_done_callback(lambda _: self.end_fetch(ticket_id))
        else:
            logger.debug("fetch_joined", ticket_id=ticket_id)
        return await asyncio.shield(task)

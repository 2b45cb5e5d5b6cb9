from __future__ import annotations

from typing import Iterable, Sequence

from supportdesk.schemas.ticket import CLOSED_STATUSES, Ticket, TicketStatus
from supportdesk.services.ticket_api import Scope

ANY_STATUS = "ANY"
ALL_STATUS = "ALL"

ADMIN_STATUS_FILTERS = (
    ANY_STATUS,
    TicketStatus.OPEN.value,
    TicketStatus.IN_PROGRESS.value,
    TicketStatus.RESOLVED.value,
    TicketStatus.CLOSED.value,
)
USER_STATUS_FILTERS = (ALL_STATUS, TicketStatus.IN_PROGRESS.value, TicketStatus.RESOLVED.value)

STATUS_PRIORITY = {
    TicketStatus.OPEN: 1,
    TicketStatus.IN_PROGRESS: 2,
    TicketStatus.RESOLVED: 3,
    TicketStatus.CLOSED: 4,
}
UNKNOWN_STATUS_PRIORITY = 5

STATUS_LABELS = {
    TicketStatus.OPEN: "Open",
    TicketStatus.IN_PROGRESS: "In Progress",
    TicketStatus.RESOLVED: "Resolved (User Satisfied)",
    TicketStatus.CLOSED: "Closed (User Not Satisfied)",
}
USER_STATUS_LABELS = {
    TicketStatus.OPEN: "In Progress",
    TicketStatus.IN_PROGRESS: "In Progress",
    TicketStatus.RESOLVED: "Resolved",
    TicketStatus.CLOSED: "Resolved",
}


def status_label(status: TicketStatus | str, scope: Scope = "admin") -> str:
    labels = USER_STATUS_LABELS if scope == "user" else STATUS_LABELS
    return labels.get(status, str(getattr(status, "value", status)))


def status_priority(status: TicketStatus | str | None) -> int:
    return STATUS_PRIORITY.get(status, UNKNOWN_STATUS_PRIORITY)


def _haystack(ticket: Ticket) -> str:
    parts = [
        ticket.title or "",
        ticket.email or "",
        ticket.username or "",
        ticket.last_message_snippet or "",
    ]
    return " ".join(parts).lower()


def matches_query(ticket: Ticket, text_query: str | None) -> bool:
    query = (text_query or "").strip().lower()
    if not query:
        return True
    return query in _haystack(ticket)


def matches_status(ticket: Ticket, status_filter: str | None, scope: Scope = "admin") -> bool:
    wanted = (status_filter or ANY_STATUS).upper()
    if wanted in {ANY_STATUS, ALL_STATUS}:
        return True
    if scope == "user":
        if wanted == TicketStatus.RESOLVED.value:
            return ticket.status in CLOSED_STATUSES
        if wanted == TicketStatus.IN_PROGRESS.value:
            return ticket.status not in CLOSED_STATUSES
    return ticket.status == wanted


def sort_tickets_by_priority(tickets: Iterable[Ticket]) -> list[Ticket]:
    """Status priority ascending, then most recently updated first.

    Both passes are stable, so tickets with equal keys keep their input order.
    """
    by_recency = sorted(
        tickets,
        key=lambda ticket: ticket.updated_at.timestamp()
        if ticket.updated_at is not None
        else float("-inf"),
        reverse=True,
    )
    return sorted(by_recency, key=lambda ticket: status_priority(ticket.status))


def filter_and_sort(
    tickets: Sequence[Ticket],
    text_query: str | None,
    status_filter: str | None,
    *,
    scope: Scope = "admin",
) -> list[Ticket]:
    filtered = [
        ticket
        for ticket in tickets
        if matches_query(ticket, text_query) and matches_status(ticket, status_filter, scope)
    ]
    return sort_tickets_by_priority(filtered)

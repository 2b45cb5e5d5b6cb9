from __future__ import annotations

from typing import Any, Literal, Protocol

import httpx
import structlog

from supportdesk.core.config import settings
from supportdesk.schemas.ticket import (
    Message,
    MessageSearchHit,
    Ticket,
    TicketPage,
    TicketStatus,
)
from supportdesk.services.auth import AuthError, TokenProvider

logger = structlog.get_logger(__name__)

Scope = Literal["user", "admin"]

TICKET_FIELDS = """
    ticketId
    title
    status
    lastMessageSnippet
    updatedAt
"""

ADMIN_LIST_FIELDS = TICKET_FIELDS + """
    email
"""

ADMIN_TICKET_FIELDS = TICKET_FIELDS + """
    createdAt
    email
    username
    avatar
"""

CREATED_TICKET_FIELDS = """
    ticketId
    title
    status
    updatedAt
"""

# Thread queries carry no message id; the cache assigns local ones.
MESSAGE_FIELDS = {
    "getMyTicketMessages": "sender text createdAt senderType",
    "addMyTicketMessage": "text sender createdAt",
    "getTicketMessagesAdmin": (
        "ticketRef sender text attachments senderType createdAt updatedAt"
    ),
    "addAdminTicketMessage": "ticketRef sender senderType text createdAt updatedAt",
}

SEARCH_HIT_FIELDS = """
    ticketId
    ticketSubject
    snippet
    createdAt
"""


class SupportDeskError(Exception):
    pass


class TicketApiError(SupportDeskError):
    pass


class AuthenticationError(TicketApiError, AuthError):
    pass


class TicketValidationError(SupportDeskError, ValueError):
    pass


class TicketApi(Protocol):
    async def list_tickets(
        self,
        scope: Scope,
        *,
        status: str = "ANY",
        limit: int = 20,
        cursor: str | None = None,
    ) -> TicketPage: ...

    async def get_ticket(self, scope: Scope, ticket_id: str) -> Ticket: ...

    async def get_ticket_messages(self, scope: Scope, ticket_id: str) -> list[Message]: ...

    async def create_ticket(self, title: str, text: str) -> Ticket: ...

    async def add_message(self, scope: Scope, ticket_id: str, text: str) -> Message: ...

    async def update_ticket_status(
        self, scope: Scope, ticket_id: str, status: TicketStatus | str
    ) -> Ticket: ...

    async def search_messages(self, keyword: str) -> list[MessageSearchHit]: ...


class GraphQLTicketApi:
    """Ticket operations over a GraphQL endpoint, authorised with the caller's ID token."""

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token_provider = token_provider
        self.url = url if url is not None else settings.GRAPHQL_URL
        self.timeout = timeout if timeout is not None else settings.REQUEST_TIMEOUT_SEC
        self.transport = transport

    async def list_tickets(
        self,
        scope: Scope,
        *,
        status: str = "ANY",
        limit: int = 20,
        cursor: str | None = None,
    ) -> TicketPage:
        if scope == "admin":
            data = await self._execute(
                "listTicketsAdmin",
                f"""
                query ListTicketsAdmin($status: String, $limit: Int, $nextToken: AWSJSON) {{
                  listTicketsAdmin(status: $status, limit: $limit, nextToken: $nextToken) {{
                    items {{ {ADMIN_LIST_FIELDS} }}
                    nextToken
                  }}
                }}
                """,
                {"status": status, "limit": limit, "nextToken": cursor},
            )
            return TicketPage.model_validate(data or {"items": []})
        data = await self._execute(
            "listMyTickets",
            f"query ListMyTickets {{ listMyTickets {{ {TICKET_FIELDS} }} }}",
        )
        return TicketPage(items=[Ticket.model_validate(item) for item in data or []])

    async def get_ticket(self, scope: Scope, ticket_id: str) -> Ticket:
        if scope == "user":
            # Users have no single-ticket query; their list carries the detail.
            page = await self.list_tickets("user")
            for ticket in page.items:
                if ticket.ticket_id == ticket_id:
                    return ticket
            raise TicketApiError(f"Ticket {ticket_id} not found")
        data = await self._execute(
            "getTicketAdmin",
            f"""
            query GetTicketAdmin($ticketId: ID!) {{
              getTicketAdmin(ticketId: $ticketId) {{ {ADMIN_TICKET_FIELDS} }}
            }}
            """,
            {"ticketId": ticket_id},
        )
        if not data:
            raise TicketApiError(f"Ticket {ticket_id} not found")
        return Ticket.model_validate(data)

    async def get_ticket_messages(self, scope: Scope, ticket_id: str) -> list[Message]:
        field = "getTicketMessagesAdmin" if scope == "admin" else "getMyTicketMessages"
        data = await self._execute(
            field,
            f"""
            query {field[0].upper()}{field[1:]}($ticketId: ID!) {{
              {field}(ticketId: $ticketId) {{ {MESSAGE_FIELDS[field]} }}
            }}
            """,
            {"ticketId": ticket_id},
        )
        return [Message.model_validate(item) for item in data or []]

    async def create_ticket(self, title: str, text: str) -> Ticket:
        data = await self._execute(
            "createMyTicket",
            f"""
            mutation CreateMyTicket($title: String!, $text: String!) {{
              createMyTicket(title: $title, text: $text) {{ {CREATED_TICKET_FIELDS} }}
            }}
            """,
            {"title": title, "text": text},
        )
        if not data:
            raise TicketApiError("createMyTicket returned no ticket")
        return Ticket.model_validate(data)

    async def add_message(self, scope: Scope, ticket_id: str, text: str) -> Message:
        field = "addAdminTicketMessage" if scope == "admin" else "addMyTicketMessage"
        data = await self._execute(
            field,
            f"""
            mutation {field[0].upper()}{field[1:]}($ticketId: ID!, $text: String!) {{
              {field}(ticketId: $ticketId, text: $text) {{ {MESSAGE_FIELDS[field]} }}
            }}
            """,
            {"ticketId": ticket_id, "text": text},
        )
        if not data:
            raise TicketApiError(f"{field} returned no message")
        return Message.model_validate(data)

    async def update_ticket_status(
        self, scope: Scope, ticket_id: str, status: TicketStatus | str
    ) -> Ticket:
        try:
            normalized = TicketStatus.parse(status)
        except ValueError as exc:
            raise TicketValidationError(str(exc)) from exc
        field = "updateTicketStatusAdmin" if scope == "admin" else "updateMyTicketStatus"
        fields = ADMIN_TICKET_FIELDS if scope == "admin" else TICKET_FIELDS
        data = await self._execute(
            field,
            f"""
            mutation {field[0].upper()}{field[1:]}($ticketId: ID!, $status: String!) {{
              {field}(ticketId: $ticketId, status: $status) {{ {fields} }}
            }}
            """,
            {"ticketId": ticket_id, "status": normalized.value},
        )
        if not data:
            raise TicketApiError(f"{field} returned no ticket")
        return Ticket.model_validate(data)

    async def search_messages(self, keyword: str) -> list[MessageSearchHit]:
        data = await self._execute(
            "searchMyTicketMessages",
            f"""
            query SearchMyTicketMessages($keyword: String!) {{
              searchMyTicketMessages(keyword: $keyword) {{ {SEARCH_HIT_FIELDS} }}
            }}
            """,
            {"keyword": keyword},
        )
        return [MessageSearchHit.model_validate(item) for item in data or []]

    async def _execute(
        self, field: str, query: str, variables: dict[str, Any] | None = None
    ) -> Any:
        if not self.url:
            raise TicketApiError("GRAPHQL_URL is not configured")
        token = await self.token_provider.get_id_token()
        if not token:
            logger.error("errors", stage="graphql_auth", operation=field)
            raise AuthenticationError("Not authenticated: missing ID token")

        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        headers = {"Authorization": token, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("errors", stage="graphql_http", operation=field, error=str(exc))
            raise TicketApiError(f"{field} failed: {exc}") from exc

        if response.status_code in {401, 403}:
            logger.error(
                "errors",
                stage="graphql_auth",
                operation=field,
                status_code=response.status_code,
            )
            raise AuthenticationError(f"{field} rejected the ID token")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = response.text
            logger.error(
                "errors",
                stage="graphql_http",
                operation=field,
                status_code=response.status_code,
                response=body,
            )
            raise TicketApiError(f"{field} failed: {response.status_code} {body}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            logger.error(
                "errors",
                stage="graphql_http",
                operation=field,
                status_code=response.status_code,
                response=response.text,
            )
            raise TicketApiError(f"{field} failed: invalid JSON response") from exc

        if not isinstance(body, dict):
            raise TicketApiError(f"{field} failed: {body}")
        errors = body.get("errors") or []
        if errors:
            message = "; ".join(
                str(error.get("message") or error) if isinstance(error, dict) else str(error)
                for error in errors
            )
            logger.error("errors", stage="graphql", operation=field, error=message)
            raise TicketApiError(f"{field} failed: {message}")
        return (body.get("data") or {}).get(field)

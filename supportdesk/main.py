from __future__ import annotations

import httpx

from supportdesk.core.logging import setup_logging
from supportdesk.services.auth import TokenProvider
from supportdesk.services.ticket_api import GraphQLTicketApi, Scope
from supportdesk.services.ticket_panel import TicketPanel


async def open_panel(
    scope: Scope,
    token_provider: TokenProvider,
    *,
    url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    load: bool = True,
) -> TicketPanel:
    """Wire a panel to the GraphQL API and load its first page of tickets."""
    setup_logging()
    api = GraphQLTicketApi(token_provider, url=url, transport=transport)
    panel = TicketPanel(api, scope=scope, token_provider=token_provider)
    await panel.resolve_identity()
    if load:
        await panel.load_tickets()
    return panel

import asyncio

import pytest

from fakes import FakeClock, FakeTicketApi

from supportdesk.schemas.ticket import MessageState, SenderType, TicketStatus
from supportdesk.services.events import TicketStatusChangeFailed
from supportdesk.services.ticket_api import TicketApiError, TicketValidationError
from supportdesk.services.ticket_panel import TicketPanel


def _panel(api: FakeTicketApi, scope: str = "admin", **kwargs) -> TicketPanel:
    identity = "admin@example.com" if scope == "admin" else "user@example.com"
    kwargs.setdefault("preload_top_n", 0)
    return TicketPanel(api, scope=scope, identity=identity, clock=api.clock, **kwargs)


def test_cached_ticket_is_served_without_network_until_stale() -> None:
    clock = FakeClock()
    api = FakeTicketApi(clock)
    api.seed_ticket("t1", messages=[(SenderType.USER, "hi")])
    panel = _panel(api)

    async def scenario() -> None:
        await panel.select_ticket("t1")
        assert api.count("get_ticket") == 1

        clock.advance(ms=299_999)
        await panel.select_ticket("t1")
        await panel.wait_idle()
        assert api.count("get_ticket") == 1

        clock.advance(ms=2)
        await panel.select_ticket("t1")
        await panel.select_ticket("t1")
        assert [message.text for message in panel.messages] == ["hi"]
        await panel.wait_idle()
        assert api.count("get_ticket") == 2
        assert api.count("get_ticket_messages") == 2

    asyncio.run(scenario())


def test_concurrent_opens_share_one_fetch() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1", title="Printer on fire")
    panel = _panel(api)

    async def scenario():
        return await asyncio.gather(panel.select_ticket("t1"), panel.select_ticket("t1"))

    first, second = asyncio.run(scenario())

    assert api.count("get_ticket", "t1") == 1
    assert first is second
    assert panel.ticket_detail.title == "Printer on fire"
    assert panel.dedup.in_flight("t1") is False


def test_detail_error_is_reported_and_released_for_retry() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1")
    panel = _panel(api)
    api.failures["get_ticket"] = TicketApiError("boom")

    async def scenario() -> None:
        assert await panel.select_ticket("t1") is None
        assert panel.detail_error == "boom"
        assert panel.selected_id == "t1"
        del api.failures["get_ticket"]
        assert await panel.select_ticket("t1") is not None
        assert panel.detail_error == ""

    asyncio.run(scenario())
    assert api.count("get_ticket") == 2


def test_late_detail_response_does_not_touch_the_new_selection() -> None:
    api = FakeTicketApi()
    api.seed_ticket("slow")
    api.seed_ticket("fast", title="Fast one")
    panel = _panel(api)

    async def scenario() -> None:
        await panel.select_ticket("fast")
        api.gates["get_ticket"] = asyncio.Event()
        slow = asyncio.ensure_future(panel.select_ticket("slow"))
        for _ in range(5):
            await asyncio.sleep(0)
        assert panel.loading_detail is True

        await panel.select_ticket("fast")
        api.failures["get_ticket"] = TicketApiError("late failure")
        api.gates["get_ticket"].set()

        assert await slow is None
        assert panel.selected_id == "fast"
        assert panel.detail_error == ""
        assert panel.loading_detail is False
        assert panel.ticket_detail.title == "Fast one"

    asyncio.run(scenario())


def test_late_success_is_cached_but_not_shown() -> None:
    api = FakeTicketApi()
    api.seed_ticket("slow", title="Slow one")
    api.seed_ticket("other", title="Other")
    panel = _panel(api)

    async def scenario() -> None:
        api.gates["get_ticket"] = asyncio.Event()
        slow = asyncio.ensure_future(panel.select_ticket("slow"))
        await asyncio.sleep(0)
        panel.clear_selection()
        api.gates["get_ticket"].set()
        await slow

    asyncio.run(scenario())

    assert panel.selected_id is None
    assert panel.ticket_detail is None
    assert panel.store.get("slow").ticket_detail.title == "Slow one"


def test_list_error_keeps_previous_tickets() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1")
    api.seed_ticket("t2")
    panel = _panel(api)

    assert asyncio.run(panel.load_tickets()) is True
    api.failures["list_tickets"] = TicketApiError("service unavailable")
    assert asyncio.run(panel.load_tickets()) is False

    assert panel.list_error == "service unavailable"
    assert {ticket.ticket_id for ticket in panel.tickets} == {"t1", "t2"}
    assert panel.loading_list is False


def test_pagination_appends_pages() -> None:
    api = FakeTicketApi()
    for index in range(5):
        api.seed_ticket(f"t{index}")
    panel = _panel(api, page_size=2)

    async def scenario() -> None:
        await panel.load_tickets()
        assert len(panel.tickets) == 2
        while await panel.load_more():
            pass

    asyncio.run(scenario())

    assert [ticket.ticket_id for ticket in panel.tickets] == ["t0", "t1", "t2", "t3", "t4"]
    assert panel.next_cursor is None


def test_list_load_preloads_top_tickets() -> None:
    api = FakeTicketApi()
    for index in range(5):
        api.seed_ticket(f"t{index}")
    panel = _panel(api, preload_top_n=3)

    async def scenario() -> None:
        await panel.load_tickets()
        await panel.wait_idle()

    asyncio.run(scenario())

    assert api.count("get_ticket") == 3
    assert len(panel.store) == 3


def test_preload_failures_stay_quiet() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1")
    panel = _panel(api, preload_top_n=3)
    api.failures["get_ticket_messages"] = TicketApiError("nope")

    async def scenario() -> None:
        assert await panel.load_tickets() is True
        await panel.wait_idle()

    asyncio.run(scenario())

    assert panel.list_error == ""
    assert panel.detail_error == ""
    assert len(panel.store) == 0


def test_query_and_filter_shape_the_visible_list() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1", title="Billing question", status=TicketStatus.RESOLVED)
    api.seed_ticket("t2", title="Cannot log in")
    api.seed_ticket("t3", title="Billing again", status=TicketStatus.CLOSED)
    panel = _panel(api, scope="user")

    asyncio.run(panel.load_tickets())
    panel.set_query("  BILLING ")
    assert [ticket.ticket_id for ticket in panel.display_tickets] == ["t1", "t3"]

    asyncio.run(panel.set_status_filter("in_progress"))
    assert panel.display_tickets == []
    panel.set_query("")
    assert [ticket.ticket_id for ticket in panel.display_tickets] == ["t2"]


def test_end_to_end_ticket_lifecycle() -> None:
    api = FakeTicketApi()
    user = _panel(api, scope="user")
    admin = _panel(api, scope="admin")

    async def scenario() -> None:
        created = await user.create_ticket("Cannot log in", "Error on page load")
        assert created.status == TicketStatus.OPEN
        assert "Error on page load" in created.last_message_snippet
        assert user.tickets[0].ticket_id == created.ticket_id
        assert user.selected_id == created.ticket_id

        await admin.load_tickets()
        await admin.select_ticket(created.ticket_id)
        assert admin.ticket_detail.status == TicketStatus.OPEN

        reply = await admin.send_reply("Looking into it")
        assert reply.state == MessageState.SENT
        assert admin.ticket_detail.status == TicketStatus.IN_PROGRESS
        assert admin.tickets[0].status == TicketStatus.IN_PROGRESS
        assert admin.tickets[0].last_message_snippet == "Looking into it"

        assert await admin.change_status("RESOLVED") is True
        assert admin.ticket_detail.status == TicketStatus.RESOLVED
        assert api.tickets[created.ticket_id].status == TicketStatus.RESOLVED

        await user.select_ticket(created.ticket_id, force_refresh=True)
        assert user.ticket_detail.status == TicketStatus.RESOLVED
        await user.send_reply("Still broken")
        assert user.ticket_detail.status == TicketStatus.IN_PROGRESS
        assert api.tickets[created.ticket_id].status == TicketStatus.IN_PROGRESS

    asyncio.run(scenario())


def test_failed_send_then_retry_keeps_the_message_id() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1", messages=[(SenderType.USER, "help")])
    panel = _panel(api, scope="user")

    async def scenario() -> None:
        await panel.select_ticket("t1")
        api.failures["add_message"] = TicketApiError("offline")
        failed = await panel.send_reply("hello")
        assert failed.state == MessageState.FAILED
        assert panel.messages[-1].id == failed.id
        assert panel.send_error

        del api.failures["add_message"]
        sent = await panel.retry_message(failed.id)
        assert sent.state == MessageState.SENT
        assert sent.id == failed.id
        assert [message.text for message in panel.messages] == ["help", "hello"]

    asyncio.run(scenario())


def test_refresh_does_not_drop_failed_messages() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1", messages=[(SenderType.USER, "help")])
    panel = _panel(api, scope="user")

    async def scenario() -> None:
        await panel.select_ticket("t1")
        api.failures["add_message"] = TicketApiError("offline")
        failed = await panel.send_reply("hello")
        await panel.select_ticket("t1", force_refresh=True)
        assert panel.messages[-1].id == failed.id
        assert panel.messages[-1].state == MessageState.FAILED

    asyncio.run(scenario())


def test_opening_open_ticket_with_staff_reply_repairs_status() -> None:
    api = FakeTicketApi()
    api.seed_ticket(
        "t1",
        messages=[(SenderType.USER, "help"), (SenderType.ADMIN, "on it")],
    )
    panel = _panel(api, scope="admin")

    asyncio.run(panel.select_ticket("t1"))

    assert panel.ticket_detail.status == TicketStatus.IN_PROGRESS
    assert api.tickets["t1"].status == TicketStatus.IN_PROGRESS


def test_failed_status_change_surfaces_error() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1", status=TicketStatus.IN_PROGRESS)
    panel = _panel(api)
    seen = []
    panel.events.subscribe(TicketStatusChangeFailed, seen.append)

    async def scenario() -> bool:
        await panel.load_tickets()
        await panel.select_ticket("t1")
        api.failures["update_ticket_status"] = TicketApiError("denied")
        return await panel.change_status(TicketStatus.CLOSED)

    assert asyncio.run(scenario()) is False
    assert panel.ticket_detail.status == TicketStatus.IN_PROGRESS
    assert panel.tickets[0].status == TicketStatus.IN_PROGRESS
    assert "denied" in panel.status_error
    assert seen and seen[0].status == TicketStatus.CLOSED


def test_user_without_identity_cannot_send() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1")
    panel = TicketPanel(api, scope="user", clock=api.clock, preload_top_n=0)

    async def scenario():
        await panel.select_ticket("t1")
        return await panel.send_reply("hello")

    assert asyncio.run(scenario()) is None
    assert "Not authenticated" in panel.send_error
    assert api.count("add_message") == 0


def test_create_ticket_validates_before_calling_api() -> None:
    api = FakeTicketApi()
    panel = _panel(api, scope="user")

    with pytest.raises(TicketValidationError):
        asyncio.run(panel.create_ticket("x" * 101, "body"))
    with pytest.raises(TicketValidationError):
        asyncio.run(panel.create_ticket("Title", ""))
    assert api.count("create_ticket") == 0


def test_create_ticket_failure_is_reported() -> None:
    api = FakeTicketApi()
    panel = _panel(api, scope="user")
    api.failures["create_ticket"] = TicketApiError("quota exceeded")

    assert asyncio.run(panel.create_ticket("Title", "Body")) is None
    assert panel.create_error == "quota exceeded"
    assert panel.tickets == []


def test_background_refresh_keeps_a_reply_confirmed_meanwhile() -> None:
    clock = FakeClock()
    api = FakeTicketApi(clock)
    api.seed_ticket("t1", status=TicketStatus.IN_PROGRESS, messages=[(SenderType.USER, "help")])
    panel = _panel(api, scope="user")

    async def scenario() -> None:
        await panel.select_ticket("t1")
        clock.advance(ms=300_001)
        api.gates["get_ticket"] = asyncio.Event()
        await panel.select_ticket("t1")
        for _ in range(5):
            await asyncio.sleep(0)
        assert api.count("get_ticket_messages") == 2

        sent = await panel.send_reply("hello")
        assert sent.state == MessageState.SENT
        api.gates["get_ticket"].set()
        await panel.wait_idle()
        assert [message.text for message in panel.messages] == ["help", "hello"]
        assert panel.messages[-1].id == sent.id

        await panel.select_ticket("t1", force_refresh=True)
        assert [message.text for message in panel.messages] == ["help", "hello"]
        assert panel.messages[-1].id == sent.id

    asyncio.run(scenario())


def test_confirmed_reply_updates_cached_detail() -> None:
    clock = FakeClock()
    api = FakeTicketApi(clock)
    api.seed_ticket("t1", status=TicketStatus.IN_PROGRESS)
    panel = _panel(api, scope="user")

    async def scenario() -> None:
        await panel.load_tickets()
        await panel.select_ticket("t1")
        cached_at = panel.store.get("t1").timestamp
        clock.advance(seconds=10)
        await panel.send_reply("any update?")
        detail = panel.ticket_detail
        assert detail.last_message_snippet == "any update?"
        assert detail.updated_at == clock()
        assert panel.store.get("t1").timestamp == cached_at
        assert panel.tickets[0].last_message_snippet == "any update?"

    asyncio.run(scenario())


def test_user_search_lists_matching_messages() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1", title="Billing", messages=[(SenderType.USER, "Refund please")])
    api.seed_ticket("t2", title="Login", messages=[(SenderType.USER, "Cannot log in")])
    panel = _panel(api, scope="user")

    hits = asyncio.run(panel.search("  refund "))

    assert [hit.ticket_id for hit in hits] == ["t1"]
    assert hits[0].ticket_subject == "Billing"
    assert panel.search_results == hits
    assert panel.searching is False


def test_blank_search_clears_results_without_a_call() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1", messages=[(SenderType.USER, "Refund please")])
    panel = _panel(api, scope="user")

    asyncio.run(panel.search("refund"))
    assert asyncio.run(panel.search("   ")) == []

    assert panel.search_results == []
    assert api.count("search_messages") == 1


def test_search_failure_is_reported() -> None:
    api = FakeTicketApi()
    panel = _panel(api, scope="user")
    api.failures["search_messages"] = TicketApiError("search offline")

    assert asyncio.run(panel.search("refund")) == []
    assert panel.search_error == "search offline"
    assert panel.search_results == []


def test_staff_search_matches_the_loaded_list() -> None:
    api = FakeTicketApi()
    api.seed_ticket("t1", title="Billing question")
    api.seed_ticket("t2", title="Cannot log in")
    panel = _panel(api)

    async def scenario():
        await panel.load_tickets()
        return await panel.search("billing")

    hits = asyncio.run(scenario())

    assert [hit.ticket_id for hit in hits] == ["t1"]
    assert api.count("search_messages") == 0

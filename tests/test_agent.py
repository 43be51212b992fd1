"""Tests for the agent handler: end-to-end turns, retries, streaming and memory."""

from __future__ import annotations

import httpx
import pytest

from conftest import Seed, reply, tool_call
from engezna_agent.agent import APOLOGY_TEXT, create_agent_handler, create_runner
from engezna_agent.errors import ErrorKind
from engezna_agent.memory import INSIGHTS_TABLE
from engezna_agent.models import AgentContext, Role, append_turn
from engezna_agent.runners.openai_runner import OpenAIRunner
from engezna_agent.tools.dispatch import ToolDispatcher


@pytest.fixture
async def make_handler(store, rate_limiter):
    handlers = []

    def _make(llm, provider="anthropic"):
        handler = create_agent_handler(
            store, provider=provider, llm=llm, rate_limiter=rate_limiter, retry_backoff_seconds=0,
        )
        handlers.append(handler)
        return handler

    yield _make
    for handler in handlers:
        await handler.aclose()


@pytest.fixture
def agent_ctx(make_ctx):
    def _make(**overrides):
        return AgentContext(make_ctx(**overrides), customer_name="أحمد")

    return _make


def non_memory_writes(store):
    return [w for w in store.writes if w[1] != INSIGHTS_TABLE]


# ── End-to-end scenarios ─────────────────────────────────────────────


class TestScenarios:
    async def test_arabic_pizza_search(self, make_handler, scripted_llm, agent_ctx):
        llm = scripted_llm(
            reply("", tool_call("search_menu", {"query": "بيتزا"})),
            reply("عندنا بيتزا مارجريتا بـ 120 ج.م وبيتزا بيبروني بـ 150 ج.م"),
        )
        response = await make_handler(llm).handle_conversation_turn("عايز بيتزا", [], agent_ctx())

        record = response.tool_calls_executed[0]
        assert record.name == "search_menu"
        assert record.result.ok
        assert record.result.data["count"] == 2
        assert "بيتزا مارجريتا" in response.text
        assert response.done is True
        assert {p.id for p in response.products} == {Seed.MARGHERITA, Seed.PEPPERONI}
        assert response.suggestions[0] == "🛒 أضف للسلة"

    async def test_outside_service_area_cannot_order(self, make_handler, scripted_llm, agent_ctx, store):
        llm = scripted_llm(
            reply("", tool_call("place_order", {
                "provider_id": Seed.PIZZA_PLACE, "items": [{"item_id": Seed.PEPPERONI}],
            })),
            reply("للأسف التوصيل مش متاح في منطقتك لسه"),
        )
        ctx = agent_ctx(in_service_area=False)
        response = await make_handler(llm).handle_conversation_turn("اطلبلي بيتزا بيبروني", [], ctx)

        assert "place_order" not in {schema["name"] for schema in llm.bound_tools[0]}
        assert "OUTSIDE the delivery area" in llm.calls[0][0].content
        assert response.tool_calls_executed[0].result.error is ErrorKind.UNKNOWN_TOOL
        assert non_memory_writes(store) == []
        assert len(store.rows("orders")) == 4

    async def test_eleventh_tool_call_is_rate_limited(self, make_handler, scripted_llm, agent_ctx, store):
        calls = [tool_call("search_menu", {"query": "بيتزا"}) for _ in range(11)]
        llm = scripted_llm(reply("", *calls), reply("استنى شوية وجرب تاني"))
        response = await make_handler(llm).handle_conversation_turn("دورلي على بيتزا", [], agent_ctx())

        results = [r.result for r in response.tool_calls_executed]
        assert all(r.ok for r in results[:10])
        assert results[10].error is ErrorKind.RATE_LIMITED
        assert "ثانية" in results[10].message
        # the limited call never reached the executor
        assert store.operations.count(("select", "menu_items")) == 10

    async def test_place_order_without_items(self, make_handler, scripted_llm, agent_ctx, store):
        llm = scripted_llm(
            reply("", tool_call("place_order", {"provider_id": Seed.PIZZA_PLACE})),
            reply("تحب تطلب إيه بالظبط؟"),
        )
        response = await make_handler(llm).handle_conversation_turn("اطلب", [], agent_ctx())

        result = response.tool_calls_executed[0].result
        assert result.error is ErrorKind.VALIDATION_ERROR
        assert '"field": "items"' in result.message
        assert non_memory_writes(store) == []
        assert response.text == "تحب تطلب إيه بالظبط؟"


# ── Turn handling ────────────────────────────────────────────────────


class TestHandleConversationTurn:
    async def test_prior_history_is_sent_and_not_mutated(self, make_handler, scripted_llm, agent_ctx):
        prior = append_turn([], Role.CUSTOMER, "أهلاً")
        prior = append_turn(prior, Role.ASSISTANT, "أهلاً بيك!")
        snapshot = list(prior)
        llm = scripted_llm(reply("تمام"))
        await make_handler(llm).handle_conversation_turn("عايز أطلب", prior, agent_ctx())

        assert prior == snapshot
        sent = [m.content for m in llm.calls[0][1:]]
        assert sent == ["أهلاً", "أهلاً بيك!", "عايز أطلب"]

    async def test_system_prompt_includes_memory(self, make_handler, scripted_llm, agent_ctx):
        llm = scripted_llm(reply("أهلاً يا أحمد"))
        await make_handler(llm).handle_conversation_turn("أهلاً", [], agent_ctx())
        prompt = llm.calls[0][0].content
        assert "Name: أحمد" in prompt
        assert "Returning customer with 2 completed order(s)" in prompt

    async def test_empty_message_is_rejected(self, make_handler, scripted_llm, agent_ctx):
        with pytest.raises(ValueError):
            await make_handler(scripted_llm()).handle_conversation_turn("   ", [], agent_ctx())

    async def test_retries_once_before_any_tool(self, make_handler, scripted_llm, agent_ctx):
        llm = scripted_llm(reply("أهلاً بيك"), errors={0: httpx.ConnectError("refused")})
        response = await make_handler(llm).handle_conversation_turn("أهلاً", [], agent_ctx())
        assert response.text == "أهلاً بيك"
        assert response.done is True
        assert len(llm.calls) == 2

    async def test_apology_when_retry_also_fails(self, make_handler, scripted_llm, agent_ctx):
        llm = scripted_llm(
            reply("unused"),
            errors={0: httpx.ConnectError("refused"), 1: httpx.ConnectError("refused")},
        )
        response = await make_handler(llm).handle_conversation_turn("أهلاً", [], agent_ctx())
        assert response.text == APOLOGY_TEXT[0]
        assert response.done is False
        assert response.error_kind is ErrorKind.UPSTREAM_FAILURE
        assert len(llm.calls) == 2

    async def test_no_retry_after_a_tool_ran(self, make_handler, scripted_llm, agent_ctx):
        llm = scripted_llm(
            reply("", tool_call("get_cart_summary")),
            errors={1: httpx.ReadTimeout("timed out")},
        )
        response = await make_handler(llm).handle_conversation_turn("السلة فيها إيه؟", [], agent_ctx(locale="en"))
        assert response.text == APOLOGY_TEXT[1]
        assert response.error_kind is ErrorKind.UPSTREAM_FAILURE
        assert len(llm.calls) == 2

    async def test_loop_limit_response(self, store, rate_limiter, scripted_llm, agent_ctx):
        llm = scripted_llm(reply("", tool_call("get_cart_summary")))
        handler = create_agent_handler(
            store, llm=llm, rate_limiter=rate_limiter, max_tool_rounds=2, retry_backoff_seconds=0,
        )
        response = await handler.handle_conversation_turn("أهلاً", [], agent_ctx())
        await handler.aclose()
        assert response.error_kind is ErrorKind.LOOP_LIMIT_EXCEEDED
        assert response.done is False
        assert len(llm.calls) == 3


class TestMemoryUpdate:
    async def test_insights_are_saved_in_background(self, make_handler, scripted_llm, agent_ctx, store):
        llm = scripted_llm(reply("عندنا بيتزا مارجريتا"))
        handler = make_handler(llm)
        await handler.handle_conversation_turn("عايز بيتزا حارة", [], agent_ctx())
        await handler.drain()

        row = store.rows(INSIGHTS_TABLE)[0]
        assert row["customer_id"] == Seed.CUSTOMER
        assert row["preferences"]["favorite_categories"] == ["pizza"]
        assert row["preferences"]["spicy"] is True
        assert row["preferences"]["preferred_locale"] == "ar"

    async def test_placed_order_is_remembered(self, make_handler, scripted_llm, agent_ctx, store):
        llm = scripted_llm(
            reply("", tool_call("place_order", {
                "provider_id": Seed.PIZZA_PLACE, "items": [{"item_id": Seed.PEPPERONI}],
            })),
            reply("تم تسجيل طلبك"),
        )
        handler = make_handler(llm)
        response = await handler.handle_conversation_turn("اطلبلي بيبروني", [], agent_ctx())
        await handler.drain()

        assert response.tool_calls_executed[0].result.ok
        row = store.rows(INSIGHTS_TABLE)[0]
        assert row["preferences"]["frequent_providers"] == [Seed.PIZZA_PLACE]
        assert "Ordered from بيتزا الشاطر" in row["insights"]

    async def test_guests_have_no_memory(self, make_handler, scripted_llm, agent_ctx, store):
        handler = make_handler(scripted_llm(reply("أهلاً")))
        await handler.handle_conversation_turn("عايز بيتزا", [], agent_ctx(customer_id=None))
        await handler.drain()
        assert store.rows(INSIGHTS_TABLE) == []


# ── Streaming ────────────────────────────────────────────────────────


class TestStreamConversationTurn:
    async def test_streams_events_then_done(self, make_handler, scripted_llm, agent_ctx):
        llm = scripted_llm(
            reply("", tool_call("search_menu", {"query": "بيتزا"})),
            reply("عندنا مارجريتا"),
        )
        handler = make_handler(llm)
        events = [e async for e in handler.stream_conversation_turn("عايز بيتزا", [], agent_ctx())]

        assert events[0].type == "tool_call"
        assert events[-1].type == "done"
        assert events[-1].response.text == "عندنا مارجريتا"
        assert "error" not in {e.type for e in events}

    async def test_retries_when_nothing_was_emitted(self, make_handler, scripted_llm, agent_ctx):
        llm = scripted_llm(reply("أهلاً بيك"), errors={0: httpx.ConnectError("refused")})
        events = [e async for e in make_handler(llm).stream_conversation_turn("أهلاً", [], agent_ctx())]
        assert [e.type for e in events] == ["content", "content", "done"]
        assert events[-1].response.done is True

    async def test_failure_after_emitting_ends_with_apology(self, make_handler, scripted_llm, agent_ctx):
        llm = scripted_llm(
            reply("", tool_call("get_cart_summary")),
            errors={1: httpx.ConnectError("refused")},
        )
        events = [e async for e in make_handler(llm).stream_conversation_turn("السلة", [], agent_ctx())]

        assert [e.type for e in events] == ["tool_call", "tool_result", "error", "done"]
        assert events[-1].response.error_kind is ErrorKind.UPSTREAM_FAILURE
        assert events[-1].response.done is False
        assert len(llm.calls) == 2


class TestCreateRunner:
    def test_openai_runner(self, scripted_llm, rate_limiter):
        runner = create_runner("OpenAI", ToolDispatcher(rate_limiter), llm=scripted_llm())
        assert isinstance(runner, OpenAIRunner)
        assert runner.vendor == "openai"

    def test_unknown_provider(self, scripted_llm, rate_limiter):
        with pytest.raises(ValueError):
            create_runner("gemini", ToolDispatcher(rate_limiter), llm=scripted_llm())

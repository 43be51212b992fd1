"""Tests for the model/tool loop and the vendor wire formats."""

from __future__ import annotations

import httpx
import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from conftest import reply, tool_call
from engezna_agent.errors import ErrorKind, UpstreamFailure
from engezna_agent.models import Role, ToolResult, append_turn
from engezna_agent.runners.anthropic_runner import AnthropicRunner
from engezna_agent.runners.base import LOOP_LIMIT_TEXT, history_to_messages
from engezna_agent.runners.openai_runner import OpenAIRunner
from engezna_agent.tools.dispatch import ToolDispatcher
from engezna_agent.tools.registry import get_available_tools

PROMPT = "You are the Engezna Smart Assistant."


@pytest.fixture
def dispatcher(rate_limiter):
    return ToolDispatcher(rate_limiter)


@pytest.fixture
def opening():
    return append_turn([], Role.CUSTOMER, "عايز بيتزا")


# ── Wire formats ─────────────────────────────────────────────────────


class TestToolSchemas:
    def test_anthropic_shape(self, scripted_llm, dispatcher, make_ctx):
        runner = AnthropicRunner(scripted_llm(), dispatcher)
        schemas = runner.tool_schemas(get_available_tools(make_ctx()))
        search = next(s for s in schemas if s["name"] == "search_menu")
        assert set(search) == {"name", "description", "input_schema"}
        assert search["input_schema"]["type"] == "object"
        assert "query" in search["input_schema"]["properties"]
        assert "query" in search["input_schema"]["required"]

    def test_openai_shape(self, scripted_llm, dispatcher, make_ctx):
        runner = OpenAIRunner(scripted_llm(), dispatcher)
        schemas = runner.tool_schemas(get_available_tools(make_ctx()))
        place = next(s for s in schemas if s["function"]["name"] == "place_order")
        assert place["type"] == "function"
        assert "items" in place["function"]["parameters"]["properties"]

    def test_anthropic_text_blocks(self, scripted_llm, dispatcher):
        runner = AnthropicRunner(scripted_llm(), dispatcher)
        content = [
            {"type": "text", "text": "أهلاً "},
            {"type": "tool_use", "id": "toolu_1", "name": "search_menu", "input": {}},
            {"type": "text", "text": "بيك"},
        ]
        assert runner.extract_text(content) == "أهلاً بيك"

    def test_anthropic_marks_failed_tool_results(self, scripted_llm, dispatcher):
        runner = AnthropicRunner(scripted_llm(), dispatcher)
        call = {"id": "toolu_1", "name": "cancel_order", "args": {}}
        failed = runner.tool_message(call, ToolResult.failure(ErrorKind.INVALID_STATE, "already accepted"))
        ok = runner.tool_message(call, ToolResult.success({"status": "cancelled"}))
        assert failed.status == "error"
        assert ok.status == "success"
        assert '"invalid_state"' in failed.content

    def test_rejects_zero_rounds(self, scripted_llm, dispatcher):
        with pytest.raises(ValueError):
            AnthropicRunner(scripted_llm(), dispatcher, max_tool_rounds=0)


class TestHistory:
    def test_tool_turns_and_leading_assistant_turns_are_dropped(self):
        history = append_turn([], Role.ASSISTANT, "أهلاً! أقدر أساعدك إزاي؟")
        history = append_turn(history, Role.CUSTOMER, "عايز بيتزا")
        history = append_turn(history, Role.TOOL, {"ok": True, "data": {}}, tool_name="search_menu")
        history = append_turn(history, Role.ASSISTANT, "عندنا مارجريتا")
        messages = history_to_messages(history)
        assert [type(m) for m in messages] == [HumanMessage, AIMessage]
        assert messages[1].content == "عندنا مارجريتا"


# ── Loop ─────────────────────────────────────────────────────────────


class TestRun:
    async def test_plain_answer_without_tools(self, scripted_llm, dispatcher, make_ctx, opening):
        llm = scripted_llm(reply("أهلاً بيك! عايز تطلب إيه؟"))
        response = await AnthropicRunner(llm, dispatcher).run(PROMPT, opening, make_ctx())

        assert response.text == "أهلاً بيك! عايز تطلب إيه؟"
        assert response.done is True
        assert response.error_kind is None
        assert response.tool_calls_executed == []
        assert len(llm.calls) == 1
        assert isinstance(llm.calls[0][0], SystemMessage)
        assert llm.calls[0][0].content == PROMPT

    async def test_tool_round_feeds_result_back(self, scripted_llm, dispatcher, make_ctx, opening, seed):
        llm = scripted_llm(
            reply("", tool_call("search_menu", {"query": "بيتزا"})),
            reply("عندنا **بيتزا مارجريتا** و بيبروني"),
        )
        response = await OpenAIRunner(llm, dispatcher).run(PROMPT, opening, make_ctx())

        assert response.text == "عندنا بيتزا مارجريتا و بيبروني"
        assert [r.name for r in response.tool_calls_executed] == ["search_menu"]
        assert {p.id for p in response.products} == {seed.MARGHERITA, seed.PEPPERONI}
        second_call = llm.calls[1]
        assert isinstance(second_call[-1], ToolMessage)
        assert second_call[-1].tool_call_id == "call_0_0"

    async def test_multiple_calls_run_in_order(self, scripted_llm, dispatcher, make_ctx, opening, seed):
        llm = scripted_llm(
            reply("", tool_call("check_provider_open", {"provider_id": seed.PIZZA_PLACE}),
                  tool_call("get_cart_summary")),
            reply("مفتوح"),
        )
        response = await AnthropicRunner(llm, dispatcher).run(PROMPT, opening, make_ctx())
        assert [r.name for r in response.tool_calls_executed] == ["check_provider_open", "get_cart_summary"]
        assert [r.call_id for r in response.tool_calls_executed] == ["call_0_0", "call_0_1"]

    async def test_cart_actions_are_collected(self, scripted_llm, dispatcher, make_ctx, opening, seed):
        llm = scripted_llm(
            reply("", tool_call("add_to_cart", {
                "item_id": seed.PEPSI, "item_name": "بيبسي", "provider_id": seed.PIZZA_PLACE, "price": 20,
            })),
            reply("ضفتلك بيبسي"),
        )
        response = await AnthropicRunner(llm, dispatcher).run(PROMPT, opening, make_ctx())
        assert response.cart_actions[0]["type"] == "ADD_ITEM"

    async def test_loop_limit(self, scripted_llm, dispatcher, make_ctx, opening):
        llm = scripted_llm(reply("", tool_call("get_cart_summary")))
        runner = AnthropicRunner(llm, dispatcher, max_tool_rounds=3)
        response = await runner.run(PROMPT, opening, make_ctx())

        assert len(llm.calls) == 4
        assert len(response.tool_calls_executed) == 3
        assert response.done is False
        assert response.error_kind is ErrorKind.LOOP_LIMIT_EXCEEDED
        assert response.text == LOOP_LIMIT_TEXT[0]

    async def test_loop_limit_message_follows_locale(self, scripted_llm, dispatcher, make_ctx, opening):
        llm = scripted_llm(reply("", tool_call("get_cart_summary")))
        response = await OpenAIRunner(llm, dispatcher, max_tool_rounds=1).run(
            PROMPT, opening, make_ctx(locale="en"),
        )
        assert len(llm.calls) == 2
        assert response.text == LOOP_LIMIT_TEXT[1]

    async def test_malformed_arguments_become_validation_error(self, scripted_llm, dispatcher, make_ctx, opening):
        llm = scripted_llm(
            reply("", tool_call("search_menu", "not json")),
            reply("ممكن توضحلي عايز إيه؟"),
        )
        response = await AnthropicRunner(llm, dispatcher).run(PROMPT, opening, make_ctx())

        record = response.tool_calls_executed[0]
        assert record.args == {}
        assert record.result.error is ErrorKind.VALIDATION_ERROR
        assert "not valid JSON" in record.result.message
        assert response.done is True

    async def test_tool_not_offered_is_unknown(self, scripted_llm, dispatcher, make_ctx, opening, seed, store):
        llm = scripted_llm(
            reply("", tool_call("place_order", {"provider_id": seed.PIZZA_PLACE, "items": [{"item_id": seed.PEPPERONI}]})),
            reply("للأسف الطلب مش متاح في منطقتك"),
        )
        ctx = make_ctx(in_service_area=False)
        response = await AnthropicRunner(llm, dispatcher).run(PROMPT, opening, ctx)

        assert "place_order" not in {schema["name"] for schema in llm.bound_tools[0]}
        assert response.tool_calls_executed[0].result.error is ErrorKind.UNKNOWN_TOOL
        assert store.writes == []

    async def test_upstream_failure_before_tools(self, scripted_llm, dispatcher, make_ctx, opening):
        llm = scripted_llm(reply("unused"), errors={0: httpx.ConnectError("connection refused")})
        with pytest.raises(UpstreamFailure) as info:
            await AnthropicRunner(llm, dispatcher).run(PROMPT, opening, make_ctx())
        assert info.value.vendor == "anthropic"
        assert info.value.tools_executed == 0

    async def test_upstream_failure_after_tools(self, scripted_llm, dispatcher, make_ctx, opening):
        llm = scripted_llm(
            reply("", tool_call("get_cart_summary")),
            errors={1: httpx.ReadTimeout("timed out")},
        )
        with pytest.raises(UpstreamFailure) as info:
            await OpenAIRunner(llm, dispatcher).run(PROMPT, opening, make_ctx())
        assert info.value.tools_executed == 1

    async def test_empty_answer_gets_placeholder(self, scripted_llm, dispatcher, make_ctx, opening):
        response = await AnthropicRunner(scripted_llm(reply("")), dispatcher).run(PROMPT, opening, make_ctx())
        assert response.text
        assert response.done is True


class TestStream:
    async def test_event_sequence(self, scripted_llm, dispatcher, make_ctx, opening):
        llm = scripted_llm(
            reply("", tool_call("search_menu", {"query": "بيتزا"})),
            reply("عندنا بيتزا مارجريتا"),
        )
        events = [e async for e in AnthropicRunner(llm, dispatcher).stream(PROMPT, opening, make_ctx())]

        assert [e.type for e in events] == ["tool_call", "tool_result", "content", "content", "done"]
        assert events[0].tool_name == "search_menu"
        assert events[0].tool_args == {"query": "بيتزا"}
        assert events[1].tool_result.ok is True
        assert "".join(e.content for e in events if e.type == "content") == "عندنا بيتزا مارجريتا"
        assert events[-1].response.text == "عندنا بيتزا مارجريتا"
        assert len(events[-1].response.tool_calls_executed) == 1

    async def test_stream_raises_upstream_failure(self, scripted_llm, dispatcher, make_ctx, opening):
        llm = scripted_llm(reply("x"), errors={0: httpx.ConnectError("refused")})
        with pytest.raises(UpstreamFailure):
            async for _ in OpenAIRunner(llm, dispatcher).stream(PROMPT, opening, make_ctx()):
                pass

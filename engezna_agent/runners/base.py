"""Vendor-agnostic conversation loop.

Architecture:
  One customer turn is a LangGraph StateGraph with three nodes:

    1. **model**     calls the chat model with the tools offered this turn
    2. **tools**     runs every tool call of the last model message, in order,
                     through the dispatcher (rate limit, validation, gate, execute)
    3. **fallback**  ends a turn whose model keeps asking for tools

  Routing:
    model → (no tool calls?)                  → END
    model → (tool calls, rounds < max)        → tools → model (loop)
    model → (tool calls, rounds == max)       → fallback → END

  ``rounds`` is explicit graph state incremented by the tools node, so a turn
  runs at most ``max_tool_rounds`` tool rounds and ``max_tool_rounds + 1``
  model calls before it terminates.

  Vendor subclasses only translate wire formats: tool schema shape, content
  blocks, tool-error flags and the SDK's exception types.
"""

from __future__ import annotations

import logging
import operator
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from enum import Enum
from typing import Annotated, Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import RunnableConfig
from langchain_core.utils.function_calling import convert_to_openai_tool
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from langgraph.types import StreamWriter
from typing_extensions import TypedDict

from engezna_agent.config import MAX_TOOL_ROUNDS
from engezna_agent.errors import ErrorKind, UpstreamFailure
from engezna_agent.models import (
    AgentResponse,
    AgentStreamEvent,
    ConversationTurn,
    Role,
    ToolCallRecord,
    ToolContext,
    ToolResult,
)
from engezna_agent.responses import (
    build_suggestions,
    extract_cart_actions,
    extract_products,
    sanitize_text,
)
from engezna_agent.services.metrics import metrics
from engezna_agent.tools.common import localized
from engezna_agent.tools.dispatch import ToolDispatcher
from engezna_agent.tools.registry import ToolDefinition, get_available_tools

logger = logging.getLogger(__name__)

LOOP_LIMIT_TEXT = (
    "عذراً، مش قادر أكمل الطلب دلوقتي. حاول مرة تانية.",
    "Sorry, I couldn't complete that request right now. Please try again.",
)
EMPTY_REPLY_TEXT = (
    "تمام، أقدر أساعدك في حاجة تانية؟",
    "Done. Can I help you with anything else?",
)


class TurnPhase(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    MODEL_REQUESTS_TOOLS = "model_requests_tools"
    EXECUTING_TOOLS = "executing_tools"
    FINAL_RESPONSE = "final_response"


class TurnState(TypedDict):
    """State flowing through the turn graph.

    ``messages`` uses the ``add_messages`` reducer and ``records`` is
    append-only, so nodes return only what they add.  ``malformed`` holds
    ids of tool calls whose arguments were not valid JSON.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    records: Annotated[list[ToolCallRecord], operator.add]
    rounds: int
    phase: TurnPhase
    malformed: list[str]
    error_kind: ErrorKind | None


def history_to_messages(history: Sequence[ConversationTurn]) -> list[BaseMessage]:
    """Convert stored turns to chat messages.

    Tool turns from earlier requests are dropped: vendors reject tool
    results whose originating call is not in the same request.  The
    conversation must open with a customer message.
    """
    messages: list[BaseMessage] = []
    for turn in history:
        if turn.role is Role.CUSTOMER:
            messages.append(HumanMessage(content=turn.text))
        elif turn.role is Role.ASSISTANT and messages:
            messages.append(AIMessage(content=turn.text))
    return messages


class AgentRunner(ABC):
    """Runs one customer turn against a chat model with tool calling."""

    vendor: str = ""
    upstream_errors: tuple[type[BaseException], ...] = ()

    def __init__(
        self,
        llm: BaseChatModel,
        dispatcher: ToolDispatcher,
        *,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
    ):
        if max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be >= 1")
        self._llm = llm
        self._dispatcher = dispatcher
        self.max_tool_rounds = max_tool_rounds
        self._graph = self._build_graph()

    # ── Vendor wire format ───────────────────────────────────────────

    @abstractmethod
    def format_tool(self, name: str, description: str, parameters: dict[str, Any]) -> dict[str, Any]:
        """Tool schema in the vendor's native shape."""

    def extract_text(self, content: Any) -> str:
        if isinstance(content, str):
            return content
        return ""

    def tool_message(self, call: dict[str, Any], result: ToolResult) -> ToolMessage:
        return ToolMessage(
            content=result.to_model_payload(), tool_call_id=call["id"], name=call["name"],
        )

    def tool_schemas(self, tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        schemas = []
        for definition in tools:
            parameters = convert_to_openai_tool(definition.params_model)["function"]["parameters"]
            schemas.append(self.format_tool(definition.name.value, definition.description, parameters))
        return schemas

    # ── Nodes ────────────────────────────────────────────────────────

    async def _model_node(self, state: TurnState, config: RunnableConfig, writer: StreamWriter) -> dict:
        conf = config["configurable"]
        schemas = conf["tool_schemas"]
        llm = self._llm.bind_tools(schemas) if schemas else self._llm
        messages = [SystemMessage(content=conf["prompt"]), *state["messages"]]

        logger.debug("Model call %d (%s)", state["rounds"] + 1, self.vendor)
        t0 = time.perf_counter()
        aggregate: AIMessageChunk | None = None
        try:
            async for chunk in llm.astream(messages):
                aggregate = chunk if aggregate is None else aggregate + chunk
                text = self.extract_text(chunk.content)
                if text:
                    writer(AgentStreamEvent(type="content", content=text))
        except self.upstream_errors as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(self.vendor, "llm_stream", error_type=type(exc).__name__, latency_ms=elapsed)
            raise UpstreamFailure(self.vendor, str(exc), tools_executed=len(state["records"])) from exc
        metrics.record_success(self.vendor, "llm_stream", latency_ms=(time.perf_counter() - t0) * 1000)

        if aggregate is None:
            message = AIMessage(content="")
            malformed: list[str] = []
        else:
            message, malformed = self._normalize(aggregate)
        phase = TurnPhase.MODEL_REQUESTS_TOOLS if message.tool_calls else TurnPhase.FINAL_RESPONSE
        return {"messages": [message], "phase": phase, "malformed": malformed}

    def _normalize(self, chunk: AIMessageChunk) -> tuple[AIMessage, list[str]]:
        """Flatten the streamed chunks into one plain-text AIMessage."""
        tool_calls = [
            {"name": call["name"], "args": call["args"], "id": call["id"], "type": "tool_call"}
            for call in chunk.tool_calls
        ]
        malformed = []
        for bad in chunk.invalid_tool_calls:
            if not bad.get("name") or not bad.get("id"):
                logger.warning("Dropping unusable tool call from %s: %s", self.vendor, bad)
                continue
            malformed.append(bad["id"])
            tool_calls.append({"name": bad["name"], "args": {}, "id": bad["id"], "type": "tool_call"})
        message = AIMessage(content=self.extract_text(chunk.content), tool_calls=tool_calls, id=chunk.id)
        return message, malformed

    async def _tools_node(self, state: TurnState, config: RunnableConfig, writer: StreamWriter) -> dict:
        conf = config["configurable"]
        ctx: ToolContext = conf["tool_context"]
        offered: frozenset[str] = conf["offered"]
        last = state["messages"][-1]
        logger.debug("%s round %d: %d call(s)", TurnPhase.EXECUTING_TOOLS.value,
                     state["rounds"] + 1, len(last.tool_calls))

        messages: list[ToolMessage] = []
        records: list[ToolCallRecord] = []
        for call in last.tool_calls:
            args = call["args"] if isinstance(call["args"], dict) else {}
            writer(AgentStreamEvent(type="tool_call", tool_name=call["name"], tool_args=args))
            if call["id"] in state["malformed"]:
                result = ToolResult.failure(
                    ErrorKind.VALIDATION_ERROR, "Invalid parameters: arguments were not valid JSON",
                )
            else:
                result = await self._dispatcher.dispatch(call["name"], args, ctx, offered)
            writer(AgentStreamEvent(type="tool_result", tool_name=call["name"], tool_result=result))
            records.append(ToolCallRecord(call_id=call["id"], name=call["name"], args=args, result=result))
            messages.append(self.tool_message(call, result))

        return {
            "messages": messages,
            "records": records,
            "rounds": state["rounds"] + 1,
            "phase": TurnPhase.AWAITING_MODEL,
            "malformed": [],
        }

    def _fallback_node(self, state: TurnState) -> dict:
        logger.warning(
            "Tool loop limit reached after %d rounds (%s); ending turn", state["rounds"], self.vendor,
        )
        return {"phase": TurnPhase.FINAL_RESPONSE, "error_kind": ErrorKind.LOOP_LIMIT_EXCEEDED}

    def _route_after_model(self, state: TurnState) -> str:
        if state["phase"] is not TurnPhase.MODEL_REQUESTS_TOOLS:
            return END
        if state["rounds"] >= self.max_tool_rounds:
            return "fallback"
        return "tools"

    def _build_graph(self):
        graph = StateGraph(TurnState)
        graph.add_node("model", self._model_node)
        graph.add_node("tools", self._tools_node)
        graph.add_node("fallback", self._fallback_node)

        graph.set_entry_point("model")
        graph.add_conditional_edges(
            "model", self._route_after_model, {"tools": "tools", "fallback": "fallback", END: END},
        )
        graph.add_edge("tools", "model")
        graph.add_edge("fallback", END)
        return graph.compile()

    # ── Public API ───────────────────────────────────────────────────

    def _prepare(
        self, prompt: str, history: Sequence[ConversationTurn], ctx: ToolContext,
    ) -> tuple[TurnState, RunnableConfig]:
        tools = get_available_tools(ctx)
        inputs: TurnState = {
            "messages": history_to_messages(history),
            "records": [],
            "rounds": 0,
            "phase": TurnPhase.AWAITING_MODEL,
            "malformed": [],
            "error_kind": None,
        }
        config: RunnableConfig = {
            "configurable": {
                "prompt": prompt,
                "tool_context": ctx,
                "tool_schemas": self.tool_schemas(tools),
                "offered": frozenset(tool.name.value for tool in tools),
            },
            # Every round is two graph steps; leave room for the final model call and fallback.
            "recursion_limit": 2 * self.max_tool_rounds + 5,
        }
        return inputs, config

    def _to_response(self, state: TurnState, ctx: ToolContext) -> AgentResponse:
        records = list(state["records"])
        error_kind = state.get("error_kind")
        if error_kind is ErrorKind.LOOP_LIMIT_EXCEEDED:
            text = localized(ctx, *LOOP_LIMIT_TEXT)
        else:
            last = state["messages"][-1]
            text = sanitize_text(self.extract_text(last.content)) or localized(ctx, *EMPTY_REPLY_TEXT)

        products = extract_products(records)
        return AgentResponse(
            text=text,
            tool_calls_executed=records,
            done=error_kind is None,
            error_kind=error_kind,
            products=products,
            cart_actions=extract_cart_actions(records),
            suggestions=build_suggestions(text, bool(products), ctx.locale),
        )

    async def run(
        self, prompt: str, history: Sequence[ConversationTurn], ctx: ToolContext,
    ) -> AgentResponse:
        """Run the turn to completion.  Raises :class:`UpstreamFailure`."""
        inputs, config = self._prepare(prompt, history, ctx)
        state = await self._graph.ainvoke(inputs, config)
        return self._to_response(state, ctx)

    async def stream(
        self, prompt: str, history: Sequence[ConversationTurn], ctx: ToolContext,
    ) -> AsyncIterator[AgentStreamEvent]:
        """Yield text chunks and tool events as they happen, then ``done``.

        Raises :class:`UpstreamFailure` from the iterator.
        """
        inputs, config = self._prepare(prompt, history, ctx)
        final_state: TurnState = inputs
        async for mode, payload in self._graph.astream(inputs, config, stream_mode=["custom", "values"]):
            if mode == "custom":
                yield payload
            else:
                final_state = payload
        yield AgentStreamEvent(type="done", response=self._to_response(final_state, ctx))

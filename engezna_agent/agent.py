"""Agent handler: the single entry point the chat UI talks to.

Architecture:
  One customer turn runs as:

    1. **memory**   load the customer's stored preferences and order summary
    2. **prompt**   build the system prompt from context + memory
    3. **runner**   run the bounded model/tool loop (Anthropic or OpenAI,
                    chosen once from ``AGENT_PROVIDER``)
    4. **learn**    analyse the finished conversation and merge new insights
                    into memory, as a background task after the reply is sent

  Failure handling:
    A vendor failure before any tool has run is retried once after a short
    backoff.  Once a tool has executed the turn is not replayed (it may have
    written), and the customer gets a localized apology instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence

from langchain_core.language_models import BaseChatModel

from engezna_agent.config import (
    AGENT_PROVIDER,
    MAX_TOOL_ROUNDS,
    RATE_LIMIT_MAX_CALLS,
    RATE_LIMIT_WINDOW_SECONDS,
    UPSTREAM_RETRY_BACKOFF_SECONDS,
)
from engezna_agent.errors import ErrorKind, UpstreamFailure
from engezna_agent.memory import MemoryStore, analyze_conversation_for_insights
from engezna_agent.models import (
    AgentContext,
    AgentResponse,
    AgentStreamEvent,
    ConversationTurn,
    Role,
    append_turn,
)
from engezna_agent.prompts import build_system_prompt
from engezna_agent.responses import build_suggestions
from engezna_agent.runners.base import AgentRunner
from engezna_agent.services.data_store import DataStore
from engezna_agent.services.rate_limiter import InMemoryRateLimitStore, RateLimiter
from engezna_agent.tools.common import localized
from engezna_agent.tools.dispatch import ToolDispatcher

logger = logging.getLogger(__name__)

APOLOGY_TEXT = (
    "عذراً، حدث خطأ. من فضلك حاول مرة تانية.",
    "Sorry, something went wrong. Please try again.",
)


def create_runner(
    provider: str,
    dispatcher: ToolDispatcher,
    *,
    llm: BaseChatModel | None = None,
    max_tool_rounds: int = MAX_TOOL_ROUNDS,
) -> AgentRunner:
    """Build the runner for ``provider`` ("anthropic" or "openai").

    ``llm`` overrides the vendor chat model (tests pass a scripted one).
    """
    provider = provider.strip().lower()
    if provider == "anthropic":
        from engezna_agent.runners.anthropic_runner import AnthropicRunner, build_anthropic_llm

        return AnthropicRunner(llm or build_anthropic_llm(), dispatcher, max_tool_rounds=max_tool_rounds)
    if provider == "openai":
        from engezna_agent.runners.openai_runner import OpenAIRunner, build_openai_llm

        return OpenAIRunner(llm or build_openai_llm(), dispatcher, max_tool_rounds=max_tool_rounds)
    raise ValueError(f"Unknown agent provider: {provider!r}")


class AgentHandler:
    def __init__(
        self,
        runner: AgentRunner,
        memory_store: MemoryStore,
        *,
        retry_backoff_seconds: float = UPSTREAM_RETRY_BACKOFF_SECONDS,
    ):
        self._runner = runner
        self._memory = memory_store
        self._retry_backoff = retry_backoff_seconds
        self._background: set[asyncio.Task] = set()

    @property
    def vendor(self) -> str:
        return self._runner.vendor

    async def _prepare(
        self, customer_message: str, prior_history: Sequence[ConversationTurn], ctx: AgentContext,
    ) -> tuple[list[ConversationTurn], str]:
        if not customer_message or not customer_message.strip():
            raise ValueError("customer_message must not be empty")
        history = append_turn(prior_history, Role.CUSTOMER, customer_message.strip())
        memory = await self._memory.load_customer_insights(ctx.customer_id)
        return history, build_system_prompt(ctx, memory)

    def _apology(self, ctx: AgentContext) -> AgentResponse:
        text = localized(ctx.tool_context, *APOLOGY_TEXT)
        return AgentResponse(
            text=text,
            done=False,
            error_kind=ErrorKind.UPSTREAM_FAILURE,
            suggestions=build_suggestions(text, False, ctx.locale),
        )

    async def handle_conversation_turn(
        self,
        customer_message: str,
        prior_history: Sequence[ConversationTurn],
        ctx: AgentContext,
    ) -> AgentResponse:
        """Answer one customer message.  Never raises for vendor failures."""
        history, prompt = await self._prepare(customer_message, prior_history, ctx)
        try:
            response = await self._runner.run(prompt, history, ctx.tool_context)
        except UpstreamFailure as exc:
            if exc.tools_executed:
                logger.error("%s; %d tool(s) already ran, not retrying", exc, exc.tools_executed)
                return self._apology(ctx)
            logger.warning("%s; retrying in %.1fs", exc, self._retry_backoff)
            await asyncio.sleep(self._retry_backoff)
            try:
                response = await self._runner.run(prompt, history, ctx.tool_context)
            except UpstreamFailure as retry_exc:
                logger.error("%s on retry; giving up", retry_exc)
                return self._apology(ctx)

        self._schedule_memory_update(ctx, history, response)
        return response

    async def stream_conversation_turn(
        self,
        customer_message: str,
        prior_history: Sequence[ConversationTurn],
        ctx: AgentContext,
    ) -> AsyncIterator[AgentStreamEvent]:
        """Streaming variant: text chunks and tool events, then ``done``.

        A vendor failure is retried only if nothing has been emitted yet.
        """
        history, prompt = await self._prepare(customer_message, prior_history, ctx)
        for attempt in (1, 2):
            emitted = False
            try:
                async for event in self._runner.stream(prompt, history, ctx.tool_context):
                    if event.type == "done" and event.response is not None:
                        self._schedule_memory_update(ctx, history, event.response)
                    emitted = True
                    yield event
                return
            except UpstreamFailure as exc:
                if attempt == 1 and not emitted and not exc.tools_executed:
                    logger.warning("%s; retrying stream in %.1fs", exc, self._retry_backoff)
                    await asyncio.sleep(self._retry_backoff)
                    continue
                logger.error("%s during stream; giving up", exc)
                apology = self._apology(ctx)
                yield AgentStreamEvent(type="error", error=apology.text)
                yield AgentStreamEvent(type="done", response=apology)
                return

    # ── Memory ───────────────────────────────────────────────────────

    def _schedule_memory_update(
        self, ctx: AgentContext, history: list[ConversationTurn], response: AgentResponse,
    ) -> None:
        if not ctx.customer_id:
            return
        turns = history
        for record in response.tool_calls_executed:
            turns = append_turn(turns, Role.TOOL, record.result.model_dump(mode="json"), tool_name=record.name)
        turns = append_turn(turns, Role.ASSISTANT, response.text)

        task = asyncio.create_task(self._update_memory(ctx.customer_id, turns))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _update_memory(self, customer_id: str, turns: list[ConversationTurn]) -> None:
        try:
            delta = analyze_conversation_for_insights(turns)
            await self._memory.save_customer_insights(customer_id, delta)
        except Exception:
            logger.warning("Memory update for %s failed", customer_id, exc_info=True)

    async def drain(self) -> None:
        """Wait for pending memory updates."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()


def create_agent_handler(
    store: DataStore,
    *,
    provider: str = AGENT_PROVIDER,
    llm: BaseChatModel | None = None,
    rate_limiter: RateLimiter | None = None,
    max_tool_rounds: int = MAX_TOOL_ROUNDS,
    retry_backoff_seconds: float = UPSTREAM_RETRY_BACKOFF_SECONDS,
) -> AgentHandler:
    """Wire the handler with its stores.  Call once at application startup."""
    if rate_limiter is None:
        rate_limiter = RateLimiter(
            InMemoryRateLimitStore(),
            max_calls=RATE_LIMIT_MAX_CALLS,
            window_seconds=RATE_LIMIT_WINDOW_SECONDS,
        )
    runner = create_runner(provider, ToolDispatcher(rate_limiter), llm=llm, max_tool_rounds=max_tool_rounds)
    logger.info("Agent handler ready: provider=%s, max_tool_rounds=%d", runner.vendor, max_tool_rounds)
    return AgentHandler(runner, MemoryStore(store), retry_backoff_seconds=retry_backoff_seconds)

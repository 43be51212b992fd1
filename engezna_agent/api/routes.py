"""FastAPI route definitions for the Engezna agent API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from engezna_agent.agent import AgentHandler
from engezna_agent.api.schemas import ChatRequest, ChatResponse, HealthResponse
from engezna_agent.config import SERVICEABLE_GOVERNORATE_IDS
from engezna_agent.models import (
    AgentContext,
    AgentStreamEvent,
    CartSnapshot,
    ConversationTurn,
    GeoScope,
    Role,
    ToolContext,
    is_serviceable,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_agent(request: Request) -> AgentHandler:
    """Retrieve the agent handler from app state (set by the lifespan)."""
    agent = getattr(request.app.state, "agent", None)
    if agent is None or getattr(request.app.state, "store", None) is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return agent


def _history(body: ChatRequest) -> list[ConversationTurn]:
    return [
        ConversationTurn(
            role=Role.ASSISTANT if msg.role == "assistant" else Role.CUSTOMER,
            content=msg.content,
            position=i,
        )
        for i, msg in enumerate(body.conversation_history)
    ]


def _build_context(body: ChatRequest, http_request: Request) -> AgentContext:
    state = http_request.app.state
    geo = GeoScope(governorate_id=body.governorate_id, city_id=body.city_id)
    tool_context = ToolContext(
        store=state.store,
        customer_id=body.customer_id or None,
        locale=body.locale,
        geo=geo,
        embeddings=getattr(state, "embeddings", None),
        provider_id=body.provider_id,
        cart=body.cart or CartSnapshot(),
        in_service_area=is_serviceable(geo, SERVICEABLE_GOVERNORATE_IDS),
        session_id=body.session_id or (http_request.client.host if http_request.client else None),
    )
    return AgentContext(tool_context=tool_context, customer_name=body.customer_name)


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(http_request: Request):
    """Health check endpoint."""
    agent = getattr(http_request.app.state, "agent", None)
    return HealthResponse(provider=agent.vendor if agent is not None else None)


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Send one customer message to the assistant and get its reply.

    The conversation history travels with each request; the server keeps
    no per-conversation state.
    """
    agent = _get_agent(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        response = await agent.handle_conversation_turn(
            request.message, _history(request), _build_context(request, http_request),
        )
    except Exception as e:
        # Full traceback stays server-side.
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    if response.error_kind is not None:
        logger.info("[%s] Turn ended with %s", request_id, response.error_kind.value)
    return ChatResponse(
        reply=response.text,
        done=response.done,
        products=response.products,
        cart_actions=response.cart_actions,
        suggestions=response.suggestions,
        tools_used=[record.name for record in response.tool_calls_executed],
    )


@router.post("/chat/stream")
async def chat_stream(request: ChatRequest, http_request: Request):
    """Stream the reply as newline-delimited JSON events.

    Event types: ``content`` (text chunk), ``tool_call``, ``tool_result``,
    ``error`` and a final ``done`` carrying the full response.
    """
    agent = _get_agent(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    ctx = _build_context(request, http_request)
    history = _history(request)

    async def events() -> AsyncIterator[str]:
        try:
            async for event in agent.stream_conversation_turn(request.message, history, ctx):
                yield event.model_dump_json(exclude_none=True) + "\n"
        except Exception:
            logger.exception("[%s] Error while streaming chat response", request_id)
            error = AgentStreamEvent(type="error", error="An internal error occurred. Please try again.")
            yield error.model_dump_json(exclude_none=True) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")

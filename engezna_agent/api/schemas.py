"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, StringConstraints

from engezna_agent.models import CartSnapshot, ProductCard


class HistoryMessage(BaseModel):
    """One earlier message of the conversation, as the chat UI keeps it."""

    role: Literal["customer", "user", "assistant"]
    content: str = Field(..., max_length=4000)


class ChatRequest(BaseModel):
    """Incoming chat message from the chat widget."""

    message: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=2000)] = Field(
        ..., description="The customer's message",
    )
    conversation_history: list[HistoryMessage] = Field(default_factory=list, max_length=50)
    customer_id: str | None = Field(None, max_length=64, description="Signed-in customer id; omit for guests")
    session_id: str | None = Field(None, max_length=64, description="Chat session id; keys guest rate limits")
    customer_name: str | None = Field(None, max_length=100)
    locale: Literal["ar", "en"] = "ar"
    governorate_id: str | None = Field(None, max_length=64)
    city_id: str | None = Field(None, max_length=64)
    provider_id: str | None = Field(None, max_length=64, description="Store page the customer is on")
    cart: CartSnapshot | None = None


class ChatResponse(BaseModel):
    """Response from the agent."""

    reply: str = Field(..., description="The assistant's message")
    done: bool = Field(..., description="False when the turn ended on a fallback")
    products: list[ProductCard] = Field(default_factory=list)
    cart_actions: list[dict[str, Any]] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "engezna-agent"
    provider: str | None = None

"""Core data model shared by the tools, runners and the orchestrator."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, model_validator

from engezna_agent.errors import ErrorKind

if TYPE_CHECKING:
    from engezna_agent.services.data_store import DataStore
    from engezna_agent.services.embeddings import EmbeddingProvider

CAIRO_TZ = ZoneInfo("Africa/Cairo")
ANONYMOUS_CUSTOMER = "anonymous"


def cairo_now() -> datetime:
    """Marketplace wall clock (all providers operate on Cairo time)."""
    return datetime.now(CAIRO_TZ)


# ── Conversation ─────────────────────────────────────────────────────


class Role(str, Enum):
    CUSTOMER = "customer"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ConversationTurn(BaseModel):
    """One immutable entry of a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | dict[str, Any] | list[Any]
    position: int = Field(..., ge=0)
    tool_name: str | None = None

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, ensure_ascii=False, default=str)


def append_turn(
    history: Sequence[ConversationTurn],
    role: Role,
    content: str | dict[str, Any] | list[Any],
    *,
    tool_name: str | None = None,
) -> list[ConversationTurn]:
    """Return a new list with one more turn; ``history`` is left untouched."""
    turn = ConversationTurn(role=role, content=content, position=len(history), tool_name=tool_name)
    return [*history, turn]


# ── Request context ──────────────────────────────────────────────────


class GeoScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    governorate_id: str | None = None
    city_id: str | None = None


class CartLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str | None = None
    name: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)

    @property
    def subtotal(self) -> float:
        return round(self.quantity * self.unit_price, 2)


class CartSnapshot(BaseModel):
    """The customer's client-side cart as sent with the chat request."""

    model_config = ConfigDict(frozen=True)

    provider_id: str | None = None
    lines: tuple[CartLine, ...] = ()
    total: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.lines


def is_serviceable(geo: GeoScope, serviceable_governorates: Sequence[str]) -> bool:
    """Order placement is offered only inside the configured governorates.

    An empty allow-list means every governorate is served; a customer with no
    known governorate is never considered inside the service area.
    """
    if not geo.governorate_id:
        return False
    if not serviceable_governorates:
        return True
    return geo.governorate_id in serviceable_governorates


@dataclass(frozen=True)
class ToolContext:
    """Capability bundle handed to every tool call of one turn (read-only)."""

    store: DataStore
    customer_id: str | None = None
    locale: str = "ar"
    geo: GeoScope = field(default_factory=GeoScope)
    embeddings: EmbeddingProvider | None = None
    provider_id: str | None = None
    cart: CartSnapshot = field(default_factory=CartSnapshot)
    in_service_area: bool = True
    clock: Callable[[], datetime] = cairo_now
    session_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.customer_id)

    @property
    def rate_limit_key(self) -> str:
        """Signed-in customers by id; guests by chat session."""
        if self.customer_id:
            return self.customer_id
        return f"guest:{self.session_id}" if self.session_id else ANONYMOUS_CUSTOMER

    def effective_provider_id(self, explicit: str | None = None) -> str | None:
        """Explicit argument, then the cart's provider, then the page's provider."""
        return explicit or self.cart.provider_id or self.provider_id


@dataclass(frozen=True)
class AgentContext:
    """Per-turn context for the orchestrator; discarded after the turn."""

    tool_context: ToolContext
    customer_name: str | None = None

    @property
    def customer_id(self) -> str | None:
        return self.tool_context.customer_id

    @property
    def locale(self) -> str:
        return self.tool_context.locale

    @property
    def geo(self) -> GeoScope:
        return self.tool_context.geo


# ── Tool results ─────────────────────────────────────────────────────


class ToolResult(BaseModel):
    """Tagged outcome of a tool call: ``data`` xor ``(error, message)``."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    data: Any = None
    error: ErrorKind | None = None
    message: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> ToolResult:
        if self.ok:
            if self.data is None or self.error is not None or self.message is not None:
                raise ValueError("a successful ToolResult carries data and nothing else")
        elif self.data is not None or self.error is None or not self.message:
            raise ValueError("a failed ToolResult carries error and message and no data")
        return self

    @classmethod
    def success(cls, data: Any) -> ToolResult:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> ToolResult:
        return cls(ok=False, error=error, message=message)

    def to_model_payload(self) -> str:
        """JSON text fed back to the model as the tool's output."""
        return self.model_dump_json(exclude_none=True)


class ToolCallRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    call_id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: ToolResult


# ── Agent output ─────────────────────────────────────────────────────


class ProductCard(BaseModel):
    id: str
    name: str
    price: float
    image_url: str | None = None
    has_variants: bool = False
    provider_id: str | None = None
    provider_name: str | None = None


class AgentResponse(BaseModel):
    """Vendor-agnostic result of one turn.

    ``done`` is False when the turn ended on a fallback (loop limit or
    provider failure) instead of a model-authored answer.
    """

    text: str
    tool_calls_executed: list[ToolCallRecord] = Field(default_factory=list)
    done: bool = True
    error_kind: ErrorKind | None = None
    products: list[ProductCard] = Field(default_factory=list)
    cart_actions: list[dict[str, Any]] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class AgentStreamEvent(BaseModel):
    type: Literal["content", "tool_call", "tool_result", "done", "error"]
    content: str | None = None
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    tool_result: ToolResult | None = None
    response: AgentResponse | None = None
    error: str | None = None

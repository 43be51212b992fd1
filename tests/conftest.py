"""Shared test fixtures for the Engezna agent test suite."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import pytest
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult
from pydantic import Field


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py sees them on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-456")
    os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-supabase-key-789")
    os.environ["METRICS_ENABLED"] = "false"


# ── Seed data ────────────────────────────────────────────────────────


class Seed:
    """Ids of the rows in :func:`seed_tables` (all valid UUIDs)."""

    GOVERNORATE = "0a000000-0000-4000-8000-000000000001"
    OTHER_GOVERNORATE = "0a000000-0000-4000-8000-000000000002"
    CITY = "0c000000-0000-4000-8000-000000000001"

    CUSTOMER = "c1000000-0000-4000-8000-000000000001"
    OTHER_CUSTOMER = "c2000000-0000-4000-8000-000000000002"

    PIZZA_PLACE = "1a000000-0000-4000-8000-000000000001"
    GRILL_PLACE = "1b000000-0000-4000-8000-000000000002"
    MISSING_PROVIDER = "1f000000-0000-4000-8000-00000000ffff"

    MARGHERITA = "2a000000-0000-4000-8000-000000000001"
    PEPPERONI = "2a000000-0000-4000-8000-000000000002"
    PEPSI = "2a000000-0000-4000-8000-000000000003"
    SEAFOOD_PIZZA = "2a000000-0000-4000-8000-000000000004"
    KOFTA = "2b000000-0000-4000-8000-000000000001"
    MISSING_ITEM = "2f000000-0000-4000-8000-00000000ffff"

    LARGE_MARGHERITA = "3a000000-0000-4000-8000-000000000001"
    ADDRESS = "4a000000-0000-4000-8000-000000000001"

    PENDING_ORDER = "5a000000-0000-4000-8000-000000000001"
    DELIVERED_ORDER = "5a000000-0000-4000-8000-000000000002"
    OLD_DELIVERED_ORDER = "5a000000-0000-4000-8000-000000000003"
    OTHER_CUSTOMERS_ORDER = "5b000000-0000-4000-8000-000000000001"


# Wednesday, 14:00 Cairo time.
FIXED_NOW = datetime.fromisoformat("2026-03-11T14:00:00+02:00")

OPEN_HOURS = {"wednesday": {"open": "10:00", "close": "23:00", "is_open": True}}


def seed_tables() -> dict[str, list[dict[str, Any]]]:
    s = Seed
    return {
        "providers": [
            {
                "id": s.PIZZA_PLACE, "name_ar": "بيتزا الشاطر", "name_en": "Pizza El Shater",
                "category": "restaurant_cafe", "status": "open", "rating": 4.6,
                "governorate_id": s.GOVERNORATE, "city_id": s.CITY,
                "min_order_amount": 50, "delivery_fee": 15, "estimated_delivery_time_min": 35,
                "business_hours": OPEN_HOURS,
            },
            {
                "id": s.GRILL_PLACE, "name_ar": "مشويات أبو علي", "name_en": "Abu Ali Grill",
                "category": "restaurant_cafe", "status": "closed", "rating": 4.2,
                "governorate_id": s.GOVERNORATE, "city_id": s.CITY,
                "min_order_amount": 80, "delivery_fee": 20, "estimated_delivery_time_min": 45,
            },
        ],
        "menu_items": [
            {
                "id": s.MARGHERITA, "provider_id": s.PIZZA_PLACE, "name_ar": "بيتزا مارجريتا",
                "name_en": "Margherita Pizza", "description_ar": "صلصة طماطم وموتزاريلا",
                "price": 120, "is_available": True, "has_variants": True, "display_order": 1,
            },
            {
                "id": s.PEPPERONI, "provider_id": s.PIZZA_PLACE, "name_ar": "بيتزا بيبروني",
                "name_en": "Pepperoni Pizza", "price": 150, "is_available": True,
                "has_variants": False, "display_order": 2,
            },
            {
                "id": s.PEPSI, "provider_id": s.PIZZA_PLACE, "name_ar": "بيبسي", "name_en": "Pepsi",
                "price": 20, "is_available": True, "has_variants": False, "display_order": 3,
            },
            {
                "id": s.SEAFOOD_PIZZA, "provider_id": s.PIZZA_PLACE, "name_ar": "بيتزا سي فود",
                "name_en": "Seafood Pizza", "price": 190, "is_available": False,
                "has_variants": False, "display_order": 4,
            },
            {
                "id": s.KOFTA, "provider_id": s.GRILL_PLACE, "name_ar": "كفتة مشوية",
                "name_en": "Grilled Kofta", "price": 90, "is_available": True,
                "has_variants": False, "display_order": 1,
            },
        ],
        "product_variants": [
            {
                "id": s.LARGE_MARGHERITA, "product_id": s.MARGHERITA, "name_ar": "كبير",
                "name_en": "Large", "price": 160, "is_available": True, "is_default": False,
                "display_order": 2,
            },
        ],
        "customer_addresses": [
            {
                "id": s.ADDRESS, "user_id": s.CUSTOMER, "label": "البيت",
                "address_line": "شارع التحرير", "is_default": True,
            },
        ],
        "orders": [
            {
                "id": s.PENDING_ORDER, "order_number": "ENG-PEND01", "customer_id": s.CUSTOMER,
                "provider_id": s.PIZZA_PLACE, "status": "pending", "total": 135,
                "created_at": "2026-03-11T13:30:00+02:00",
            },
            {
                "id": s.DELIVERED_ORDER, "order_number": "ENG-DELV01", "customer_id": s.CUSTOMER,
                "provider_id": s.PIZZA_PLACE, "status": "delivered", "total": 170,
                "created_at": "2026-03-01T20:00:00+02:00",
                "accepted_at": "2026-03-01T20:02:00+02:00",
                "delivered_at": "2026-03-01T20:40:00+02:00",
            },
            {
                "id": s.OLD_DELIVERED_ORDER, "order_number": "ENG-DELV00", "customer_id": s.CUSTOMER,
                "provider_id": s.PIZZA_PLACE, "status": "delivered", "total": 135,
                "created_at": "2026-02-14T19:00:00+02:00",
            },
            {
                "id": s.OTHER_CUSTOMERS_ORDER, "order_number": "ENG-OTHR01",
                "customer_id": s.OTHER_CUSTOMER, "provider_id": s.PIZZA_PLACE,
                "status": "pending", "total": 120, "created_at": "2026-03-11T12:00:00+02:00",
            },
        ],
        "order_items": [
            {"order_id": s.DELIVERED_ORDER, "item_name": "بيتزا مارجريتا", "quantity": 1},
            {"order_id": s.DELIVERED_ORDER, "item_name": "بيبسي", "quantity": 1},
            {"order_id": s.OLD_DELIVERED_ORDER, "item_name": "بيتزا مارجريتا", "quantity": 1},
        ],
        "promo_codes": [
            {
                "id": "6a000000-0000-4000-8000-000000000001", "code": "WELCOME10",
                "discount_type": "percentage", "discount_value": 10, "max_discount_amount": 30,
                "min_order_amount": 100, "is_active": True, "usage_limit": 100, "usage_count": 3,
                "valid_from": "2026-01-01T00:00:00+02:00", "valid_until": "2026-12-31T23:59:59+02:00",
            },
            {
                "id": "6a000000-0000-4000-8000-000000000002", "code": "FIRST50",
                "discount_type": "fixed", "discount_value": 50, "first_order_only": True,
                "is_active": True,
                "valid_from": "2026-01-01T00:00:00+02:00", "valid_until": "2026-12-31T23:59:59+02:00",
            },
        ],
    }


@pytest.fixture
def seed():
    return Seed


@pytest.fixture
def store():
    from engezna_agent.services.data_store import InMemoryDataStore

    return InMemoryDataStore(seed_tables())


@pytest.fixture
def make_ctx(store):
    """Factory for ToolContexts over the seeded store (signed in, Arabic, in area)."""
    from engezna_agent.models import GeoScope, ToolContext

    def _make(**overrides: Any) -> ToolContext:
        values: dict[str, Any] = {
            "store": store,
            "customer_id": Seed.CUSTOMER,
            "locale": "ar",
            "geo": GeoScope(governorate_id=Seed.GOVERNORATE, city_id=Seed.CITY),
            "clock": lambda: FIXED_NOW,
        }
        values.update(overrides)
        return ToolContext(**values)

    return _make


class ManualClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def rate_limiter(manual_clock):
    from engezna_agent.services.rate_limiter import InMemoryRateLimitStore, RateLimiter

    return RateLimiter(InMemoryRateLimitStore(), max_calls=10, window_seconds=60, clock=manual_clock)


# ── Scripted chat model ──────────────────────────────────────────────


def tool_call(name: str, args: dict[str, Any] | str | None = None) -> dict[str, Any]:
    """One scripted tool call; a ``str`` ``args`` is sent verbatim (may be invalid JSON)."""
    return {"name": name, "args": {} if args is None else args}


def reply(text: str = "", *calls: dict[str, Any]) -> dict[str, Any]:
    """One scripted model response."""
    return {"text": text, "tool_calls": list(calls)}


class ScriptedChatModel(BaseChatModel):
    """Chat model that plays back scripted responses.

    Each call consumes the next script entry; once the script runs out the
    last entry repeats.  ``errors`` maps a 0-based call index to an exception
    raised instead of answering.
    """

    script: list[dict[str, Any]] = Field(default_factory=list)
    errors: dict[int, Exception] = Field(default_factory=dict)
    calls: list[list[BaseMessage]] = Field(default_factory=list)
    bound_tools: list[list[Any]] = Field(default_factory=list)

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def bind_tools(self, tools, **kwargs):
        self.bound_tools.append(list(tools))
        return self

    def _next(self, messages: list[BaseMessage]) -> tuple[int, dict[str, Any]]:
        index = len(self.calls)
        self.calls.append(list(messages))
        if index in self.errors:
            raise self.errors[index]
        entry = self.script[min(index, len(self.script) - 1)] if self.script else reply("")
        return index, entry

    @staticmethod
    def _chunks(index: int, entry: dict[str, Any]) -> list[AIMessageChunk]:
        chunks = []
        if entry["text"]:
            # Two halves, to exercise chunk aggregation.
            middle = len(entry["text"]) // 2
            chunks.append(AIMessageChunk(content=entry["text"][:middle]))
            chunks.append(AIMessageChunk(content=entry["text"][middle:]))
        tool_chunks = [
            {
                "name": call["name"],
                "args": call["args"] if isinstance(call["args"], str) else json.dumps(call["args"]),
                "id": f"call_{index}_{i}",
                "index": i,
            }
            for i, call in enumerate(entry["tool_calls"])
        ]
        if tool_chunks:
            chunks.append(AIMessageChunk(content="", tool_call_chunks=tool_chunks))
        return chunks or [AIMessageChunk(content="")]

    def _generate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        index, entry = self._next(messages)
        merged = self._chunks(index, entry)
        message = merged[0]
        for chunk in merged[1:]:
            message = message + chunk
        return ChatResult(generations=[ChatGeneration(message=AIMessage(
            content=message.content, tool_calls=message.tool_calls,
        ))])

    async def _astream(self, messages, stop=None, run_manager=None, **kwargs) -> AsyncIterator[ChatGenerationChunk]:
        index, entry = self._next(messages)
        for chunk in self._chunks(index, entry):
            yield ChatGenerationChunk(message=chunk)


@pytest.fixture
def scripted_llm():
    def _make(*script: dict[str, Any], errors: dict[int, Exception] | None = None) -> ScriptedChatModel:
        return ScriptedChatModel(script=list(script), errors=errors or {})

    return _make

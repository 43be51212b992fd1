"""Durable per-customer memory for personalising the assistant.

Memory has two parts:

* **Insights**: preferences and free-text snippets stored in the
  ``customer_insights`` table.  They grow additively after each conversation.
* **Order summary**: the last delivered orders and repeatedly ordered items,
  derived read-only from ``orders`` / ``order_items`` on every load.

Memory is best-effort: loading never fails a turn (defaults are returned)
and saving failures are logged and swallowed.

Concurrent turns of the same customer are reconciled with optimistic
concurrency on ``updated_at``: a save re-reads the row, merges, and only
writes if nobody else wrote in between, retrying otherwise.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from engezna_agent.errors import DataStoreError
from engezna_agent.models import ConversationTurn, Role
from engezna_agent.services.data_store import DataStore, eq, in_

logger = logging.getLogger(__name__)

INSIGHTS_TABLE = "customer_insights"
MAX_SAVE_ATTEMPTS = 3
MAX_INSIGHTS = 50
RECENT_ORDER_LIMIT = 5
COMPLETED_STATUSES = ("delivered", "completed")


# ── Data model ───────────────────────────────────────────────────────


class CustomerPreferences(BaseModel):
    favorite_categories: list[str] = Field(default_factory=list)
    dietary_notes: list[str] = Field(default_factory=list)
    frequent_providers: list[str] = Field(default_factory=list)
    spicy: bool | None = None
    vegetarian: bool | None = None
    preferred_locale: str | None = None


class PastOrder(BaseModel):
    provider_id: str | None = None
    provider_name: str = ""
    items: list[str] = Field(default_factory=list)
    total: float | None = None
    created_at: str | None = None


class CustomerMemory(BaseModel):
    customer_id: str | None = None
    preferences: CustomerPreferences = Field(default_factory=CustomerPreferences)
    insights: list[str] = Field(default_factory=list)
    recent_orders: list[PastOrder] = Field(default_factory=list)
    favorite_items: list[str] = Field(default_factory=list)
    order_count: int = 0
    updated_at: str | None = None

    @property
    def is_returning(self) -> bool:
        return self.order_count > 0


class InsightDelta(BaseModel):
    """Additive changes proposed by one conversation."""

    favorite_categories: list[str] = Field(default_factory=list)
    dietary_notes: list[str] = Field(default_factory=list)
    frequent_providers: list[str] = Field(default_factory=list)
    spicy: bool | None = None
    vegetarian: bool | None = None
    preferred_locale: str | None = None
    insights: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.favorite_categories or self.dietary_notes or self.frequent_providers
            or self.insights or self.spicy is not None or self.vegetarian is not None
            or self.preferred_locale
        )


# ── Merging ──────────────────────────────────────────────────────────

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)


def normalize_insight(text: str) -> str:
    """Key used to de-duplicate insight text."""
    return " ".join(_PUNCTUATION.sub(" ", text).casefold().split())


def merge_unique(existing: Iterable[str], additions: Iterable[str]) -> list[str]:
    """Union preserving first-seen order, de-duplicated by normalised text."""
    merged: list[str] = []
    seen: set[str] = set()
    for value in (*existing, *additions):
        key = normalize_insight(value)
        if key and key not in seen:
            seen.add(key)
            merged.append(value.strip())
    return merged


def merge_delta(
    preferences: CustomerPreferences,
    insights: Sequence[str],
    delta: InsightDelta,
) -> tuple[CustomerPreferences, list[str]]:
    """Lists are unioned; scalar preferences are last-write-wins."""
    merged = CustomerPreferences(
        favorite_categories=merge_unique(preferences.favorite_categories, delta.favorite_categories),
        dietary_notes=merge_unique(preferences.dietary_notes, delta.dietary_notes),
        frequent_providers=merge_unique(preferences.frequent_providers, delta.frequent_providers),
        spicy=delta.spicy if delta.spicy is not None else preferences.spicy,
        vegetarian=delta.vegetarian if delta.vegetarian is not None else preferences.vegetarian,
        preferred_locale=delta.preferred_locale or preferences.preferred_locale,
    )
    all_insights = merge_unique(insights, delta.insights)
    return merged, all_insights[-MAX_INSIGHTS:]


# ── Store ────────────────────────────────────────────────────────────


def _utc_stamp() -> str:
    return datetime.now(UTC).isoformat()


class MemoryStore:
    def __init__(self, store: DataStore, clock: Callable[[], str] = _utc_stamp):
        self._store = store
        self._clock = clock

    async def load_customer_insights(self, customer_id: str | None) -> CustomerMemory:
        """Return the customer's memory, or an empty one on any problem."""
        if not customer_id:
            return CustomerMemory()
        try:
            row = await self._store.select_one(INSIGHTS_TABLE, filters=[eq("customer_id", customer_id)])
            memory = CustomerMemory(customer_id=customer_id)
            if row is not None:
                memory.preferences = CustomerPreferences.model_validate(row.get("preferences") or {})
                memory.insights = list(row.get("insights") or [])
                memory.updated_at = row.get("updated_at")
        except Exception:
            logger.warning("Could not load memory for %s; using defaults", customer_id, exc_info=True)
            return CustomerMemory(customer_id=customer_id)

        # Order history is optional; stored preferences survive without it.
        try:
            await self._attach_order_summary(memory, customer_id)
        except Exception:
            logger.warning("Could not load order history for %s", customer_id, exc_info=True)
        return memory

    async def _attach_order_summary(self, memory: CustomerMemory, customer_id: str) -> None:
        completed = [eq("customer_id", customer_id), in_("status", COMPLETED_STATUSES)]
        orders = await self._store.select(
            "orders", filters=completed, order_by="created_at", descending=True, limit=RECENT_ORDER_LIMIT,
        )
        if not orders:
            return
        memory.order_count = await self._store.count("orders", filters=completed)

        order_ids = [o["id"] for o in orders]
        lines = await self._store.select(
            "order_items", columns="order_id, item_name, quantity", filters=[in_("order_id", order_ids)],
        )
        provider_ids = sorted({o["provider_id"] for o in orders if o.get("provider_id")})
        providers = await self._store.select(
            "providers", columns="id, name_ar", filters=[in_("id", provider_ids)],
        ) if provider_ids else []
        names = {p["id"]: p.get("name_ar") or "" for p in providers}

        items_by_order: dict[str, list[str]] = {}
        for line in lines:
            if line.get("item_name"):
                items_by_order.setdefault(line["order_id"], []).append(line["item_name"])

        memory.recent_orders = [
            PastOrder(
                provider_id=o.get("provider_id"),
                provider_name=names.get(o.get("provider_id"), ""),
                items=items_by_order.get(o["id"], []),
                total=o.get("total"),
                created_at=o.get("created_at"),
            )
            for o in orders
        ]
        # Items that appear in more than one recent order.
        counts = Counter(name for items in items_by_order.values() for name in set(items))
        memory.favorite_items = [
            name for name, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])) if count > 1
        ][:5]

    async def save_customer_insights(self, customer_id: str, delta: InsightDelta) -> bool:
        """Merge *delta* into the stored memory.  Returns ``True`` on success.

        Never raises: persistence failures are logged only.
        """
        if not customer_id or delta.is_empty:
            return True
        try:
            for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
                if await self._try_save(customer_id, delta):
                    logger.debug("Saved memory for %s (attempt %d)", customer_id, attempt)
                    return True
                logger.info(
                    "Concurrent memory update for %s; retrying (%d/%d)",
                    customer_id, attempt, MAX_SAVE_ATTEMPTS,
                )
            logger.warning("Gave up saving memory for %s after %d attempts", customer_id, MAX_SAVE_ATTEMPTS)
        except Exception:
            logger.warning("Failed to save memory for %s", customer_id, exc_info=True)
        return False

    async def _try_save(self, customer_id: str, delta: InsightDelta) -> bool:
        row = await self._store.select_one(INSIGHTS_TABLE, filters=[eq("customer_id", customer_id)])
        current_prefs = CustomerPreferences.model_validate((row or {}).get("preferences") or {})
        preferences, insights = merge_delta(current_prefs, (row or {}).get("insights") or [], delta)
        values: dict[str, Any] = {
            "preferences": preferences.model_dump(),
            "insights": insights,
            "updated_at": self._clock(),
        }

        if row is None:
            try:
                await self._store.insert(INSIGHTS_TABLE, {"id": customer_id, "customer_id": customer_id, **values})
            except DataStoreError as exc:
                if exc.is_conflict:
                    return False  # another turn created the row first
                raise
            return True

        updated = await self._store.update(
            INSIGHTS_TABLE,
            values,
            filters=[eq("customer_id", customer_id), eq("updated_at", row.get("updated_at"))],
        )
        return bool(updated)


# ── Conversation analysis ────────────────────────────────────────────

_VEGETARIAN = ("نباتي", "نباتية", "vegetarian", "vegan", "مش باكل لحم")
_SPICY = ("حار", "حراق", "سبايسي", "spicy", "hot sauce")
_NOT_SPICY = ("مش حار", "من غير شطة", "بدون شطة", "not spicy", "no spicy", "without spice", "mild")
_HEALTHY = ("دايت", "رجيم", "صحي", "diet", "healthy", "low calorie")
_ALLERGY = (
    re.compile(r"حساسية\s+(?:من|ل|ضد)\s*(\w+)"),
    re.compile(r"allergic\s+to\s+(\w+)", re.IGNORECASE),
    re.compile(r"(\w+)\s+allergy", re.IGNORECASE),
)
_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("pizza", ("بيتزا", "بيتزه", "pizza")),
    ("burger", ("برجر", "برغر", "همبرجر", "burger")),
    ("shawarma", ("شاورما", "شاورمة", "shawarma")),
    ("grills", ("مشويات", "كباب", "كفتة", "grill", "kebab")),
    ("chicken", ("فراخ", "دجاج", "chicken")),
    ("seafood", ("سمك", "جمبري", "seafood", "fish", "shrimp")),
    ("koshary", ("كشري", "koshary", "koshari")),
    ("desserts", ("حلويات", "كنافة", "بسبوسة", "dessert", "cake")),
    ("coffee", ("قهوة", "كوفي", "coffee", "latte")),
    ("grocery", ("سوبر ماركت", "بقالة", "grocery", "supermarket")),
)
_ARABIC_CHAR = re.compile(r"[؀-ۿ]")
_LATIN_CHAR = re.compile(r"[A-Za-z]")


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _placed_orders(turns: Sequence[ConversationTurn]) -> list[dict[str, Any]]:
    placed = []
    for turn in turns:
        if turn.role is Role.TOOL and turn.tool_name == "place_order" and isinstance(turn.content, dict):
            if turn.content.get("ok") and isinstance(turn.content.get("data"), dict):
                placed.append(turn.content["data"])
    return placed


def analyze_conversation_for_insights(turns: Sequence[ConversationTurn]) -> InsightDelta:
    """Derive additive memory updates from a finished conversation.

    A deterministic keyword heuristic over the customer's own messages plus
    successful ``place_order`` results.  Identical input always yields an
    identical delta.
    """
    delta = InsightDelta()
    arabic_chars = latin_chars = 0

    for turn in turns:
        if turn.role is not Role.CUSTOMER:
            continue
        text = turn.text.casefold()
        arabic_chars += len(_ARABIC_CHAR.findall(text))
        latin_chars += len(_LATIN_CHAR.findall(text))

        if _contains_any(text, _VEGETARIAN):
            delta.vegetarian = True
            delta.insights = merge_unique(delta.insights, ["Prefers vegetarian food"])
        if _contains_any(text, _NOT_SPICY):
            delta.spicy = False
            delta.insights = merge_unique(delta.insights, ["Avoids spicy food"])
        elif _contains_any(text, _SPICY):
            delta.spicy = True
            delta.insights = merge_unique(delta.insights, ["Likes spicy food"])
        if _contains_any(text, _HEALTHY):
            delta.dietary_notes = merge_unique(delta.dietary_notes, ["healthy"])
        for pattern in _ALLERGY:
            for allergen in pattern.findall(text):
                delta.dietary_notes = merge_unique(delta.dietary_notes, [f"allergy: {allergen}"])
                delta.insights = merge_unique(delta.insights, [f"Allergic to {allergen}"])
        for category, keywords in _CATEGORIES:
            if _contains_any(text, keywords):
                delta.favorite_categories = merge_unique(delta.favorite_categories, [category])

    for order in _placed_orders(turns):
        provider_id = order.get("provider_id")
        if provider_id:
            delta.frequent_providers = merge_unique(delta.frequent_providers, [provider_id])
        if order.get("provider_name"):
            delta.insights = merge_unique(delta.insights, [f"Ordered from {order['provider_name']}"])

    if arabic_chars or latin_chars:
        delta.preferred_locale = "ar" if arabic_chars >= latin_chars else "en"
    return delta

"""Post-processing of a finished turn into what the chat UI renders.

The model is told to answer in plain text but does not always comply, so the
final text is sanitised here.  Product cards and cart actions come from the
tool results of the turn, never from the model's text.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from engezna_agent.models import ProductCard, ToolCallRecord

MAX_PRODUCTS = 5

PRODUCT_TOOLS = ("search_menu", "get_menu_items")

_HTML_TAG = re.compile(r"<[^>]+>")
_MD_LINK = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
_BARE_URL = re.compile(r"https?://\S+")
_MD_EMPHASIS = re.compile(r"(\*\*|__|\*|_|~~|`)(?=\S)(.+?)(?<=\S)\1")
_MD_HEADING = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_MD_BULLET = re.compile(r"^\s*[-*+]\s+", re.MULTILINE)
_MD_QUOTE = re.compile(r"^\s*>\s?", re.MULTILINE)
_CODE_FENCE = re.compile(r"```[a-zA-Z]*\n?")
_BLANK_LINES = re.compile(r"\n{3,}")

SUGGESTIONS = {
    "products": {
        "ar": ["🛒 أضف للسلة", "📋 شوف تفاصيل أكتر", "🔍 بحث تاني"],
        "en": ["🛒 Add to cart", "📋 More details", "🔍 Search again"],
    },
    "order": {
        "ar": ["📦 تتبع الطلب", "❌ إلغاء", "🏠 الرئيسية"],
        "en": ["📦 Track order", "❌ Cancel", "🏠 Home"],
    },
    "default": {
        "ar": ["🍽️ المنيو", "🔥 العروض", "📦 طلباتي"],
        "en": ["🍽️ Menu", "🔥 Offers", "📦 My orders"],
    },
}

_ORDER_WORDS = re.compile(r"طلب|order", re.IGNORECASE)


def sanitize_text(text: str) -> str:
    """Strip markdown, links and HTML so the reply renders as plain text."""
    text = _CODE_FENCE.sub("", text)
    text = _HTML_TAG.sub("", text)
    text = _MD_LINK.sub(r"\1", text)
    text = _BARE_URL.sub("", text)
    text = _MD_EMPHASIS.sub(r"\2", text)
    text = _MD_HEADING.sub("", text)
    text = _MD_BULLET.sub("• ", text)
    text = _MD_QUOTE.sub("", text)
    text = "\n".join(line.rstrip() for line in text.splitlines())
    return _BLANK_LINES.sub("\n\n", text).strip()


def extract_products(records: Sequence[ToolCallRecord]) -> list[ProductCard]:
    """Up to ``MAX_PRODUCTS`` distinct menu items found by search tools this turn."""
    products: list[ProductCard] = []
    seen: set[str] = set()
    for record in records:
        if record.name not in PRODUCT_TOOLS or not record.result.ok:
            continue
        data = record.result.data
        if not isinstance(data, dict):
            continue
        for item in data.get("items") or []:
            if len(products) >= MAX_PRODUCTS:
                return products
            if not isinstance(item, dict) or item.get("id") in seen:
                continue
            try:
                card = ProductCard.model_validate(item)
            except ValidationError:
                continue
            seen.add(card.id)
            products.append(card)
    return products


def extract_cart_actions(records: Sequence[ToolCallRecord]) -> list[dict[str, Any]]:
    actions = []
    for record in records:
        data = record.result.data if record.result.ok else None
        if isinstance(data, dict) and isinstance(data.get("cart_action"), dict):
            actions.append(data["cart_action"])
    return actions


def build_suggestions(text: str, has_products: bool, locale: str) -> list[str]:
    """Quick-reply chips shown under the assistant's message."""
    lang = "en" if locale == "en" else "ar"
    if has_products:
        return list(SUGGESTIONS["products"][lang])
    if _ORDER_WORDS.search(text):
        return list(SUGGESTIONS["order"][lang])
    return list(SUGGESTIONS["default"][lang])

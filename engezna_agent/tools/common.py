"""Helpers shared by the tool executors."""

from __future__ import annotations

from engezna_agent.errors import InvalidStateError, NotFoundError
from engezna_agent.models import ToolContext
from engezna_agent.services.data_store import Filter, Row, eq

# Provider statuses that still appear in search results.
LISTED_PROVIDER_STATUSES = ("open", "closed", "temporarily_paused")


def localized(ctx: ToolContext, ar: str, en: str) -> str:
    return en if ctx.locale == "en" else ar


def display_name(row: Row, ctx: ToolContext) -> str:
    """Localized ``name_ar`` / ``name_en`` with a fallback to the other language."""
    if ctx.locale == "en":
        return row.get("name_en") or row.get("name_ar") or ""
    return row.get("name_ar") or row.get("name_en") or ""


def require_provider_id(ctx: ToolContext, explicit: str | None) -> str:
    provider_id = ctx.effective_provider_id(explicit)
    if not provider_id:
        raise InvalidStateError(
            localized(ctx, "محتاج أعرف المطعم الأول", "Please choose a store first"),
        )
    return provider_id


def require_customer(ctx: ToolContext) -> str:
    # Unreachable through the registry, which hides auth-only tools from guests.
    if not ctx.customer_id:
        raise InvalidStateError(localized(ctx, "لازم تسجل دخول الأول", "Please sign in first"))
    return ctx.customer_id


async def fetch_provider(ctx: ToolContext, provider_id: str, columns: str = "*") -> Row:
    provider = await ctx.store.select_one("providers", columns=columns, filters=[eq("id", provider_id)])
    if provider is None:
        raise NotFoundError(localized(ctx, "المطعم ده مش موجود", "Store not found"))
    return provider


def order_filter(order_ref: str) -> Filter:
    """Orders are addressed by UUID or by their public ``ENG-`` number."""
    if order_ref.upper().startswith("ENG-"):
        return eq("order_number", order_ref.upper())
    return eq("id", order_ref)

"""Menu tools: browsing, searching and checking items."""

from __future__ import annotations

import logging
from typing import Any

from engezna_agent.errors import NotFoundError
from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.services.data_store import Row, any_of, eq, ilike, in_
from engezna_agent.services.embeddings import expand_query_terms
from engezna_agent.tools.common import (
    LISTED_PROVIDER_STATUSES,
    display_name,
    localized,
    require_provider_id,
)
from engezna_agent.tools.params import (
    GetMenuItemsParams,
    ItemParams,
    ProviderParams,
    SearchMenuParams,
)

logger = logging.getLogger(__name__)

SEMANTIC_MATCH_THRESHOLD = 0.3
CITY_PROVIDER_LIMIT = 50


def _item_card(row: Row, ctx: ToolContext, provider_names: dict[str, str]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "name": display_name(row, ctx),
        "price": row.get("price"),
        "original_price": row.get("original_price"),
        "image_url": row.get("image_url"),
        "has_variants": bool(row.get("has_variants")),
        "provider_id": row.get("provider_id"),
        "provider_name": provider_names.get(row.get("provider_id"), ""),
    }


async def _provider_names(ctx: ToolContext, provider_ids: set[str]) -> dict[str, str]:
    if not provider_ids:
        return {}
    rows = await ctx.store.select(
        "providers", columns="id, name_ar, name_en", filters=[in_("id", sorted(provider_ids))],
    )
    return {row["id"]: display_name(row, ctx) for row in rows}


async def _attach_variants(ctx: ToolContext, items: list[dict[str, Any]]) -> None:
    with_variants = [item["id"] for item in items if item["has_variants"]]
    if not with_variants:
        return
    variants = await ctx.store.select(
        "product_variants",
        columns="id, product_id, name_ar, name_en, price, is_default",
        filters=[in_("product_id", with_variants), eq("is_available", True)],
        order_by="display_order",
    )
    by_item: dict[str, list[dict[str, Any]]] = {}
    for variant in variants:
        by_item.setdefault(variant["product_id"], []).append({
            "id": variant["id"],
            "name": display_name(variant, ctx),
            "price": variant.get("price"),
            "is_default": bool(variant.get("is_default")),
        })
    for item in items:
        if item["id"] in by_item:
            item["variants"] = by_item[item["id"]]


# ── search_menu ──────────────────────────────────────────────────────


async def _scope_provider_ids(ctx: ToolContext, params: SearchMenuParams) -> list[str] | None:
    """Provider ids to search in, or ``None`` when the area has no providers."""
    provider_id = ctx.effective_provider_id(params.provider_id)
    if provider_id:
        return [provider_id]
    filters = [in_("status", LISTED_PROVIDER_STATUSES)]
    city_id = params.city_id or ctx.geo.city_id
    if city_id:
        filters.append(eq("city_id", city_id))
    elif ctx.geo.governorate_id:
        filters.append(eq("governorate_id", ctx.geo.governorate_id))
    providers = await ctx.store.select(
        "providers", columns="id", filters=filters, limit=CITY_PROVIDER_LIMIT,
    )
    return [p["id"] for p in providers] or None


async def _semantic_search(
    ctx: ToolContext, query: str, provider_ids: list[str], limit: int,
) -> list[Row] | None:
    """Nearest menu items by embedding, or ``None`` when unavailable."""
    if ctx.embeddings is None:
        return None
    try:
        vector = await ctx.embeddings.embed(query)
    except Exception as exc:
        logger.warning("Embedding failed for %r, falling back to keywords: %s", query, exc)
        return None
    rows = await ctx.store.rpc("match_menu_items", {
        "query_embedding": vector,
        "match_threshold": SEMANTIC_MATCH_THRESHOLD,
        "match_count": limit,
        "provider_ids": provider_ids,
    })
    return rows or None


async def _keyword_search(
    ctx: ToolContext, query: str, provider_ids: list[str], limit: int,
) -> list[Row]:
    # Commas and parentheses are PostgREST syntax inside or=(...).
    terms = [t for t in (term.strip(",()") for term in expand_query_terms(query)) if t]
    clauses = [
        ilike(column, f"%{term}%")
        for term in terms
        for column in ("name_ar", "name_en", "description_ar")
    ]
    return await ctx.store.select(
        "menu_items",
        filters=[in_("provider_id", provider_ids), eq("is_available", True), any_of(*clauses)],
        limit=limit,
    )


async def search_menu(params: SearchMenuParams, ctx: ToolContext) -> ToolResult:
    provider_ids = await _scope_provider_ids(ctx, params)
    if provider_ids is None:
        return ToolResult.success({
            "items": [],
            "count": 0,
            "message": localized(ctx, "مفيش تجار متاحين في المنطقة دي", "No stores available in this area"),
        })

    rows = await _semantic_search(ctx, params.query, provider_ids, params.limit)
    search_mode = "semantic"
    if rows is None:
        rows = await _keyword_search(ctx, params.query, provider_ids, params.limit)
        search_mode = "keyword"

    names = await _provider_names(ctx, {row["provider_id"] for row in rows})
    items = [_item_card(row, ctx, names) for row in rows]
    logger.debug("search_menu %r -> %d items (%s)", params.query, len(items), search_mode)
    data: dict[str, Any] = {"query": params.query, "items": items, "count": len(items)}
    if not items:
        data["message"] = localized(ctx, "مش لاقي نتائج لبحثك", "No results for your search")
    return ToolResult.success(data)


# ── Browsing ─────────────────────────────────────────────────────────


async def get_menu_items(params: GetMenuItemsParams, ctx: ToolContext) -> ToolResult:
    provider_id = require_provider_id(ctx, params.provider_id)
    filters = [eq("provider_id", provider_id), eq("is_available", True)]
    if params.category_id:
        filters.append(eq("provider_category_id", params.category_id))
    if params.search_query:
        filters.append(any_of(
            ilike("name_ar", f"%{params.search_query}%"),
            ilike("name_en", f"%{params.search_query}%"),
        ))
    rows = await ctx.store.select(
        "menu_items", filters=filters, order_by="display_order", limit=params.limit,
    )
    names = await _provider_names(ctx, {provider_id})
    items = [_item_card(row, ctx, names) for row in rows]
    await _attach_variants(ctx, items)
    return ToolResult.success({"provider_id": provider_id, "items": items, "count": len(items)})


async def get_item_details(params: ItemParams, ctx: ToolContext) -> ToolResult:
    item = await ctx.store.select_one("menu_items", filters=[eq("id", params.item_id)])
    if item is None:
        raise NotFoundError(localized(ctx, "المنتج ده مش موجود", "Item not found"))

    names = await _provider_names(ctx, {item["provider_id"]})
    details = _item_card(item, ctx, names)
    details.update({
        "description": item.get("description_en" if ctx.locale == "en" else "description_ar"),
        "is_available": bool(item.get("is_available")) and item.get("has_stock") is not False,
        "is_vegetarian": bool(item.get("is_vegetarian")),
        "is_spicy": bool(item.get("is_spicy")),
        "calories": item.get("calories"),
        "preparation_time_min": item.get("preparation_time_min"),
    })
    await _attach_variants(ctx, [details])

    addons = await ctx.store.select(
        "store_addons",
        columns="id, name_ar, name_en, price, addon_group",
        filters=[eq("provider_id", item["provider_id"]), eq("is_active", True)],
        order_by="display_order",
    )
    details["addons"] = [
        {"id": a["id"], "name": display_name(a, ctx), "price": a.get("price"), "group": a.get("addon_group")}
        for a in addons
    ]
    return ToolResult.success(details)


async def check_item_availability(params: ItemParams, ctx: ToolContext) -> ToolResult:
    item = await ctx.store.select_one(
        "menu_items",
        columns="id, name_ar, name_en, is_available, has_stock, stock_notes",
        filters=[eq("id", params.item_id)],
    )
    if item is None:
        raise NotFoundError(localized(ctx, "المنتج ده مش موجود", "Item not found"))

    available = bool(item.get("is_available")) and item.get("has_stock") is not False
    if available:
        message = localized(ctx, "المنتج متاح", "The item is available")
    else:
        message = item.get("stock_notes") or localized(
            ctx, "المنتج غير متاح حالياً", "The item is currently unavailable",
        )
    return ToolResult.success({
        "item_id": item["id"],
        "name": display_name(item, ctx),
        "available": available,
        "message": message,
    })


async def get_provider_categories(params: ProviderParams, ctx: ToolContext) -> ToolResult:
    rows = await ctx.store.select(
        "provider_categories",
        columns="id, name_ar, name_en, description_ar, icon, display_order",
        filters=[eq("provider_id", params.provider_id), eq("is_active", True)],
        order_by="display_order",
    )
    return ToolResult.success({
        "provider_id": params.provider_id,
        "categories": [{"id": r["id"], "name": display_name(r, ctx), "icon": r.get("icon")} for r in rows],
    })

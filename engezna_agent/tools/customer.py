"""Customer tools: saved addresses and favourite stores."""

from __future__ import annotations

from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.services.data_store import eq, in_
from engezna_agent.tools.common import display_name, require_customer
from engezna_agent.tools.params import NoParams


async def get_customer_addresses(params: NoParams, ctx: ToolContext) -> ToolResult:
    customer_id = require_customer(ctx)
    rows = await ctx.store.select(
        "customer_addresses",
        filters=[eq("user_id", customer_id)],
        order_by="is_default",
        descending=True,
    )
    return ToolResult.success({
        "addresses": [
            {
                "id": r["id"],
                "label": r.get("label"),
                "address_line": r.get("address_line"),
                "building_number": r.get("building_number"),
                "floor_number": r.get("floor_number"),
                "apartment_number": r.get("apartment_number"),
                "landmark": r.get("landmark"),
                "is_default": bool(r.get("is_default")),
            }
            for r in rows
        ],
        "count": len(rows),
    })


async def get_favorites(params: NoParams, ctx: ToolContext) -> ToolResult:
    customer_id = require_customer(ctx)
    favorites = await ctx.store.select(
        "favorites",
        columns="id, provider_id, created_at",
        filters=[eq("user_id", customer_id)],
        order_by="created_at",
        descending=True,
    )
    provider_ids = [f["provider_id"] for f in favorites if f.get("provider_id")]
    providers = {}
    if provider_ids:
        rows = await ctx.store.select("providers", filters=[in_("id", provider_ids)])
        providers = {row["id"]: row for row in rows}
    return ToolResult.success({
        "providers": [
            {
                "id": pid,
                "name": display_name(providers[pid], ctx),
                "category": providers[pid].get("category"),
                "rating": providers[pid].get("rating"),
                "status": providers[pid].get("status"),
            }
            for pid in provider_ids
            if pid in providers
        ],
    })

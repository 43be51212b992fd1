"""Provider (store) tools: profile, opening hours, delivery terms, search, reviews."""

from __future__ import annotations

from datetime import datetime, time
from typing import Any

from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.services.data_store import Row, eq, ilike, in_
from engezna_agent.tools.common import (
    LISTED_PROVIDER_STATUSES,
    display_name,
    fetch_provider,
    localized,
    require_provider_id,
)
from engezna_agent.tools.params import (
    DeliveryInfoParams,
    ProviderParams,
    ProviderReviewsParams,
    SearchProvidersParams,
)

DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ── Opening hours ────────────────────────────────────────────────────


def _clock(value: str) -> time:
    """Parse ``H:MM`` or ``HH:MM:SS`` (Postgres ``time``) into a :class:`time`."""
    fmt = "%H:%M:%S" if value.count(":") == 2 else "%H:%M"
    return datetime.strptime(value.strip(), fmt).time()


def opening_status(provider: Row, now: datetime) -> tuple[bool, str, str]:
    """Return ``(is_open, reason_ar, reason_en)`` for *provider* at *now*.

    ``business_hours`` maps weekday names to ``{"open": "HH:MM", "close":
    "HH:MM", "is_open": bool}``; a closing time earlier than the opening time
    means the store closes after midnight.
    """
    status = provider.get("status")
    if status == "temporarily_paused":
        return False, "التاجر متوقف مؤقتاً", "The store is temporarily paused"
    if status == "on_vacation":
        return False, "التاجر في إجازة", "The store is on vacation"
    if status != "open":
        return False, "التاجر مغلق", "The store is closed"

    today = (provider.get("business_hours") or {}).get(DAY_NAMES[now.weekday()])
    if not today:
        return True, "مفتوح", "Open"
    if not today.get("is_open", True):
        return False, "التاجر مغلق اليوم", "The store is closed today"

    opens, closes = today.get("open", "00:00"), today.get("close", "23:59")
    start, end, current = _clock(opens), _clock(closes), now.time().replace(second=0, microsecond=0)
    if end <= start:
        is_open = current >= start or current <= end
    else:
        is_open = start <= current <= end
    if is_open:
        return True, f"مفتوح حتى {closes}", f"Open until {closes}"
    return False, f"مغلق - يفتح الساعة {opens}", f"Closed, opens at {opens}"


# ── Tools ────────────────────────────────────────────────────────────


async def get_provider_info(params: ProviderParams, ctx: ToolContext) -> ToolResult:
    provider = await fetch_provider(ctx, params.provider_id)
    return ToolResult.success({
        "id": provider["id"],
        "name": display_name(provider, ctx),
        "description": provider.get("description_en" if ctx.locale == "en" else "description_ar"),
        "category": provider.get("category"),
        "status": provider.get("status"),
        "rating": provider.get("rating"),
        "total_reviews": provider.get("total_reviews"),
        "address": provider.get("address_ar"),
        "phone": provider.get("phone"),
        "min_order_amount": provider.get("min_order_amount"),
        "delivery_fee": provider.get("delivery_fee"),
        "estimated_delivery_time_min": provider.get("estimated_delivery_time_min"),
        "business_hours": provider.get("business_hours"),
    })


async def check_provider_open(params: ProviderParams, ctx: ToolContext) -> ToolResult:
    provider = await fetch_provider(
        ctx, params.provider_id, columns="id, name_ar, name_en, status, business_hours",
    )
    now = ctx.clock()
    is_open, reason_ar, reason_en = opening_status(provider, now)
    return ToolResult.success({
        "provider_id": provider["id"],
        "name": display_name(provider, ctx),
        "is_open": is_open,
        "message": localized(ctx, reason_ar, reason_en),
        "current_time": now.strftime("%H:%M"),
    })


async def get_delivery_info(params: DeliveryInfoParams, ctx: ToolContext) -> ToolResult:
    provider_id = require_provider_id(ctx, params.provider_id)
    provider = await fetch_provider(
        ctx,
        provider_id,
        columns="id, name_ar, name_en, delivery_fee, min_order_amount, "
                "estimated_delivery_time_min, delivery_radius_km",
    )
    fee = provider.get("delivery_fee")
    minimum = provider.get("min_order_amount")
    eta = provider.get("estimated_delivery_time_min")
    return ToolResult.success({
        "provider_id": provider["id"],
        "name": display_name(provider, ctx),
        "delivery_fee": fee,
        "min_order_amount": minimum,
        "estimated_time_min": eta,
        "delivery_radius_km": provider.get("delivery_radius_km"),
        "message": localized(
            ctx,
            f"رسوم التوصيل: {fee} ج.م | الحد الأدنى: {minimum} ج.م | الوقت المتوقع: {eta} دقيقة",
            f"Delivery fee: {fee} EGP | Minimum order: {minimum} EGP | ETA: {eta} min",
        ),
    })


async def search_providers(params: SearchProvidersParams, ctx: ToolContext) -> ToolResult:
    filters = [in_("status", LISTED_PROVIDER_STATUSES)]
    city_id = params.city_id or ctx.geo.city_id
    if city_id:
        filters.append(eq("city_id", city_id))
    elif ctx.geo.governorate_id:
        filters.append(eq("governorate_id", ctx.geo.governorate_id))
    if params.category:
        filters.append(eq("category", params.category))
    if params.search_query:
        filters.append(ilike("name_ar", f"%{params.search_query}%"))

    rows = await ctx.store.select(
        "providers", filters=filters, order_by="rating", descending=True, limit=params.limit,
    )
    providers: list[dict[str, Any]] = [
        {
            "id": row["id"],
            "name": display_name(row, ctx),
            "category": row.get("category"),
            "status": row.get("status"),
            "rating": row.get("rating"),
            "delivery_fee": row.get("delivery_fee"),
            "estimated_delivery_time_min": row.get("estimated_delivery_time_min"),
            "logo_url": row.get("logo_url"),
        }
        for row in rows
    ]
    return ToolResult.success({"providers": providers, "count": len(providers)})


async def get_provider_reviews(params: ProviderReviewsParams, ctx: ToolContext) -> ToolResult:
    rows = await ctx.store.select(
        "reviews",
        columns="id, rating, comment, created_at, provider_response",
        filters=[eq("provider_id", params.provider_id)],
        order_by="created_at",
        descending=True,
        limit=params.limit,
    )
    ratings = [r["rating"] for r in rows if r.get("rating") is not None]
    return ToolResult.success({
        "provider_id": params.provider_id,
        "reviews": [
            {
                "rating": r.get("rating"),
                "comment": r.get("comment"),
                "created_at": r.get("created_at"),
                "provider_response": r.get("provider_response"),
            }
            for r in rows
        ],
        "average_rating": round(sum(ratings) / len(ratings), 1) if ratings else None,
    })

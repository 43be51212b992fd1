"""Promotion tools: active offers and promo-code checks."""

from __future__ import annotations

from engezna_agent.errors import ConflictError, NotFoundError
from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.services.data_store import eq, gte, lte
from engezna_agent.tools.common import display_name, localized
from engezna_agent.tools.params import ProviderParams, ValidatePromoCodeParams


async def get_provider_promotions(params: ProviderParams, ctx: ToolContext) -> ToolResult:
    now = ctx.clock().isoformat()
    rows = await ctx.store.select(
        "promotions",
        columns="id, name_ar, name_en, type, discount_value, min_order_amount, "
                "max_discount, start_date, end_date",
        filters=[
            eq("provider_id", params.provider_id),
            eq("is_active", True),
            lte("start_date", now),
            gte("end_date", now),
        ],
    )
    return ToolResult.success({
        "provider_id": params.provider_id,
        "promotions": [
            {
                "id": r["id"],
                "name": display_name(r, ctx),
                "type": r.get("type"),
                "discount_value": r.get("discount_value"),
                "min_order_amount": r.get("min_order_amount"),
                "max_discount": r.get("max_discount"),
                "end_date": r.get("end_date"),
            }
            for r in rows
        ],
    })


async def validate_promo_code(params: ValidatePromoCodeParams, ctx: ToolContext) -> ToolResult:
    now = ctx.clock().isoformat()
    promo = await ctx.store.select_one(
        "promo_codes",
        filters=[
            eq("code", params.code.upper()),
            eq("is_active", True),
            lte("valid_from", now),
            gte("valid_until", now),
        ],
    )
    if promo is None:
        raise NotFoundError(localized(
            ctx, "كود الخصم غير صالح أو منتهي الصلاحية", "The promo code is invalid or expired",
        ))

    usage_limit = promo.get("usage_limit")
    if usage_limit and (promo.get("usage_count") or 0) >= usage_limit:
        raise ConflictError(localized(
            ctx, "تم استنفاد عدد مرات استخدام هذا الكود", "This code has reached its usage limit",
        ))

    minimum = promo.get("min_order_amount")
    if minimum and params.order_total is not None and params.order_total < minimum:
        raise ConflictError(localized(
            ctx, f"الحد الأدنى للطلب {minimum} ج.م", f"The minimum order for this code is {minimum} EGP",
        ))

    applicable = promo.get("applicable_providers") or []
    provider_id = ctx.effective_provider_id(params.provider_id)
    if applicable and provider_id and provider_id not in applicable:
        raise ConflictError(localized(
            ctx, "هذا الكود غير صالح لهذا التاجر", "This code is not valid for this store",
        ))

    if promo.get("first_order_only") and ctx.customer_id:
        delivered = await ctx.store.count(
            "orders", filters=[eq("customer_id", ctx.customer_id), eq("status", "delivered")],
        )
        if delivered:
            raise ConflictError(localized(
                ctx, "هذا الكود للطلب الأول فقط", "This code is valid on the first order only",
            ))

    if promo.get("discount_type") == "percentage":
        discount = (params.order_total or 0) * promo.get("discount_value", 0) / 100
        cap = promo.get("max_discount_amount")
        if cap:
            discount = min(discount, cap)
    else:
        discount = promo.get("discount_value", 0)
    discount = round(discount, 2)

    return ToolResult.success({
        "valid": True,
        "code": promo["code"],
        "discount_type": promo.get("discount_type"),
        "discount_value": promo.get("discount_value"),
        "discount": discount,
        "message": localized(ctx, f"تم تطبيق الخصم: {discount} ج.م", f"Discount applied: {discount} EGP"),
    })

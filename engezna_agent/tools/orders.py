"""Order tools: placement, status, history, tracking and cancellation.

``place_order`` performs every check with reads first and then issues a
single ``place_customer_order`` RPC, so the database inserts the order and
its lines in one transaction.  A failure of that call is reported as a
failed tool result; the tool never reports a partially created order.
"""

from __future__ import annotations

import logging
from typing import Any

from engezna_agent.errors import (
    ConflictError,
    DataStoreError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.services.data_store import Row, eq, in_
from engezna_agent.tools.common import (
    display_name,
    fetch_provider,
    localized,
    order_filter,
    require_customer,
)
from engezna_agent.tools.params import (
    CancelOrderParams,
    OrderHistoryParams,
    OrderRefParams,
    PlaceOrderParams,
)
from engezna_agent.tools.providers import opening_status

logger = logging.getLogger(__name__)

STATUS_LABELS: dict[str, tuple[str, str]] = {
    "pending": ("في انتظار قبول التاجر", "Waiting for the store to accept"),
    "accepted": ("تم قبول الطلب", "Accepted"),
    "preparing": ("جاري التحضير", "Being prepared"),
    "ready": ("الطلب جاهز", "Ready"),
    "out_for_delivery": ("في الطريق إليك", "On the way"),
    "delivered": ("تم التوصيل", "Delivered"),
    "cancelled": ("ملغي", "Cancelled"),
    "rejected": ("مرفوض", "Rejected"),
}

TIMELINE_STEPS = (
    ("pending", "created_at"),
    ("accepted", "accepted_at"),
    ("preparing", "preparing_at"),
    ("ready", "ready_at"),
    ("out_for_delivery", "out_for_delivery_at"),
    ("delivered", "delivered_at"),
)


def _status_label(status: str | None, ctx: ToolContext) -> str:
    ar, en = STATUS_LABELS.get(status or "", (status or "", status or ""))
    return localized(ctx, ar, en)


async def _fetch_own_order(ctx: ToolContext, order_ref: str) -> Row:
    customer_id = require_customer(ctx)
    order = await ctx.store.select_one("orders", filters=[order_filter(order_ref)])
    if order is None:
        raise NotFoundError(localized(ctx, "الطلب ده مش موجود", "Order not found"))
    if order.get("customer_id") != customer_id:
        raise PermissionDeniedError(
            localized(ctx, "الطلب ده مش بتاعك", "This order does not belong to you"),
        )
    return order


# ── place_order ──────────────────────────────────────────────────────


async def _price_lines(
    ctx: ToolContext, params: PlaceOrderParams,
) -> tuple[list[dict[str, Any]], float]:
    item_ids = sorted({line.item_id for line in params.items})
    items = {
        row["id"]: row
        for row in await ctx.store.select("menu_items", filters=[in_("id", item_ids)])
    }
    variant_ids = sorted({line.variant_id for line in params.items if line.variant_id})
    variants: dict[str, Row] = {}
    if variant_ids:
        variants = {
            row["id"]: row
            for row in await ctx.store.select("product_variants", filters=[in_("id", variant_ids)])
        }

    lines: list[dict[str, Any]] = []
    for line in params.items:
        item = items.get(line.item_id)
        if item is None:
            raise NotFoundError(localized(ctx, "منتج في الطلب مش موجود", "An item in the order does not exist"))
        name = display_name(item, ctx)
        if item.get("provider_id") != params.provider_id:
            raise ConflictError(localized(
                ctx, f"{name} مش من نفس المطعم", f"{name} is not sold by this store",
            ))
        if not item.get("is_available") or item.get("has_stock") is False:
            raise ConflictError(localized(ctx, f"{name} مش متاح دلوقتي", f"{name} is currently unavailable"))

        unit_price = item.get("price")
        variant_name = None
        if line.variant_id:
            variant = variants.get(line.variant_id)
            if variant is None or variant.get("product_id") != item["id"]:
                raise NotFoundError(localized(ctx, f"الحجم المطلوب من {name} مش موجود", f"Size not found for {name}"))
            if variant.get("is_available") is False:
                raise ConflictError(localized(ctx, f"الحجم ده من {name} مش متاح", f"That size of {name} is unavailable"))
            unit_price = variant.get("price")
            variant_name = display_name(variant, ctx)
        if unit_price is None:
            raise InvalidStateError(localized(ctx, f"سعر {name} مش متاح", f"{name} has no price"))

        lines.append({
            "menu_item_id": item["id"],
            "variant_id": line.variant_id,
            "item_name": name,
            "variant_name": variant_name,
            "quantity": line.quantity,
            "unit_price": unit_price,
            "total_price": round(unit_price * line.quantity, 2),
        })
    subtotal = round(sum(line["total_price"] for line in lines), 2)
    return lines, subtotal


async def _delivery_address(ctx: ToolContext, customer_id: str, address_id: str | None) -> Row:
    filters = [eq("user_id", customer_id)]
    if address_id:
        filters.append(eq("id", address_id))
    addresses = await ctx.store.select(
        "customer_addresses", filters=filters, order_by="is_default", descending=True, limit=1,
    )
    if not addresses:
        if address_id:
            raise NotFoundError(localized(ctx, "العنوان ده مش موجود", "Address not found"))
        raise InvalidStateError(localized(
            ctx, "محتاج عنوان توصيل قبل ما أطلب", "A delivery address is needed before ordering",
        ))
    return addresses[0]


async def place_order(params: PlaceOrderParams, ctx: ToolContext) -> ToolResult:
    customer_id = require_customer(ctx)
    provider = await fetch_provider(ctx, params.provider_id)
    is_open, reason_ar, reason_en = opening_status(provider, ctx.clock())
    if not is_open:
        raise ConflictError(localized(ctx, reason_ar, reason_en))

    lines, subtotal = await _price_lines(ctx, params)
    minimum = provider.get("min_order_amount") or 0
    if subtotal < minimum:
        raise ConflictError(localized(
            ctx,
            f"الحد الأدنى للطلب {minimum} ج.م والطلب {subtotal} ج.م",
            f"Minimum order is {minimum} EGP, this order is {subtotal} EGP",
        ))

    address = await _delivery_address(ctx, customer_id, params.address_id)
    delivery_fee = provider.get("delivery_fee") or 0
    total = round(subtotal + delivery_fee, 2)

    created = await ctx.store.rpc("place_customer_order", {
        "customer_id": customer_id,
        "provider_id": provider["id"],
        "address_id": address["id"],
        "payment_method": params.payment_method,
        "notes": params.notes,
        "subtotal": subtotal,
        "delivery_fee": delivery_fee,
        "total": total,
        "items": lines,
    })
    if not created or not created.get("id"):
        raise DataStoreError("place_customer_order returned no order")

    logger.info(
        "Order %s placed by %s at %s (total=%.2f)",
        created.get("order_number"), customer_id, provider["id"], total,
    )
    return ToolResult.success({
        "order_id": created["id"],
        "order_number": created.get("order_number"),
        "status": created.get("status", "pending"),
        "provider_id": provider["id"],
        "provider_name": display_name(provider, ctx),
        "items": [
            {"name": line["item_name"], "quantity": line["quantity"], "total_price": line["total_price"]}
            for line in lines
        ],
        "subtotal": subtotal,
        "delivery_fee": delivery_fee,
        "total": total,
        "estimated_delivery_time_min": provider.get("estimated_delivery_time_min"),
        "message": localized(
            ctx,
            f"تم تسجيل طلبك رقم {created.get('order_number')} بإجمالي {total} ج.م",
            f"Order {created.get('order_number')} placed, total {total} EGP",
        ),
    })


# ── Lookups ──────────────────────────────────────────────────────────


async def get_order_status(params: OrderRefParams, ctx: ToolContext) -> ToolResult:
    order = await _fetch_own_order(ctx, params.order_id)
    return ToolResult.success({
        "order_id": order["id"],
        "order_number": order.get("order_number"),
        "status": order.get("status"),
        "status_message": _status_label(order.get("status"), ctx),
        "total": order.get("total"),
        "payment_method": order.get("payment_method"),
        "created_at": order.get("created_at"),
        "estimated_delivery_time": order.get("estimated_delivery_time"),
    })


async def get_order_history(params: OrderHistoryParams, ctx: ToolContext) -> ToolResult:
    customer_id = require_customer(ctx)
    filters = [eq("customer_id", customer_id)]
    if params.status:
        filters.append(eq("status", params.status))
    orders = await ctx.store.select(
        "orders", filters=filters, order_by="created_at", descending=True, limit=params.limit,
    )
    provider_ids = sorted({o["provider_id"] for o in orders if o.get("provider_id")})
    names: dict[str, str] = {}
    if provider_ids:
        rows = await ctx.store.select(
            "providers", columns="id, name_ar, name_en", filters=[in_("id", provider_ids)],
        )
        names = {row["id"]: display_name(row, ctx) for row in rows}
    return ToolResult.success({
        "orders": [
            {
                "order_id": o["id"],
                "order_number": o.get("order_number"),
                "status": o.get("status"),
                "status_message": _status_label(o.get("status"), ctx),
                "total": o.get("total"),
                "created_at": o.get("created_at"),
                "provider_id": o.get("provider_id"),
                "provider_name": names.get(o.get("provider_id"), ""),
            }
            for o in orders
        ],
        "count": len(orders),
    })


async def track_order(params: OrderRefParams, ctx: ToolContext) -> ToolResult:
    order = await _fetch_own_order(ctx, params.order_id)
    timeline = [
        {"status": status, "label": _status_label(status, ctx), "time": order[column]}
        for status, column in TIMELINE_STEPS
        if order.get(column)
    ]
    return ToolResult.success({
        "order_id": order["id"],
        "order_number": order.get("order_number"),
        "status": order.get("status"),
        "status_message": _status_label(order.get("status"), ctx),
        "timeline": timeline,
        "estimated_delivery_time": order.get("estimated_delivery_time"),
        "delivery_instructions": order.get("delivery_instructions"),
    })


# ── cancel_order ─────────────────────────────────────────────────────


async def cancel_order(params: CancelOrderParams, ctx: ToolContext) -> ToolResult:
    order = await _fetch_own_order(ctx, params.order_id)
    if order.get("status") != "pending":
        raise InvalidStateError(localized(
            ctx,
            "لا يمكن إلغاء الطلب بعد قبوله من التاجر",
            "The order can no longer be cancelled once the store has accepted it",
        ))

    # The status guard makes the update a no-op if the store accepted meanwhile.
    updated = await ctx.store.update(
        "orders",
        {
            "status": "cancelled",
            "cancelled_at": ctx.clock().isoformat(),
            "cancellation_reason": params.reason or "إلغاء من العميل",
            "cancelled_by": "customer",
        },
        filters=[eq("id", order["id"]), eq("status", "pending")],
    )
    if not updated:
        raise ConflictError(localized(
            ctx, "حالة الطلب اتغيرت، مينفعش يتلغي دلوقتي", "The order status changed and it can no longer be cancelled",
        ))
    logger.info("Order %s cancelled by customer %s", order["id"], ctx.customer_id)
    return ToolResult.success({
        "order_id": order["id"],
        "order_number": order.get("order_number"),
        "status": "cancelled",
        "message": localized(ctx, "تم إلغاء الطلب بنجاح", "The order was cancelled"),
    })

"""Cart tools.

The cart lives on the client.  These tools never touch the data store; they
return ``cart_action`` instructions that the chat UI applies, and read the
cart snapshot sent with the request.
"""

from __future__ import annotations

from typing import Any

from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.tools.common import localized
from engezna_agent.tools.params import (
    AddToCartParams,
    NoParams,
    RemoveFromCartParams,
    UpdateCartQuantityParams,
)


def _action(action_type: str, **fields: Any) -> dict[str, Any]:
    return {"type": action_type, **{k: v for k, v in fields.items() if v is not None}}


async def add_to_cart(params: AddToCartParams, ctx: ToolContext) -> ToolResult:
    action = _action(
        "ADD_ITEM",
        provider_id=params.provider_id,
        menu_item_id=params.item_id,
        menu_item_name=params.item_name,
        quantity=params.quantity,
        unit_price=params.price,
        variant_id=params.variant_id,
        variant_name=params.variant_name,
    )
    data: dict[str, Any] = {
        "cart_action": action,
        "message": localized(
            ctx,
            f"تم إضافة {params.quantity}x {params.item_name} للسلة",
            f"Added {params.quantity}x {params.item_name} to the cart",
        ),
    }
    if ctx.cart.provider_id and ctx.cart.provider_id != params.provider_id and not ctx.cart.is_empty:
        # The client replaces a cart from another store after confirming.
        data["replaces_cart_from_provider"] = ctx.cart.provider_id
    return ToolResult.success(data)


async def remove_from_cart(params: RemoveFromCartParams, ctx: ToolContext) -> ToolResult:
    # quantity 0 tells the client to remove the whole line
    action = _action("REMOVE_ITEM", menu_item_name=params.item_name, quantity=params.quantity or 0)
    if params.quantity:
        message = localized(
            ctx,
            f"تم إزالة {params.quantity}x {params.item_name} من السلة",
            f"Removed {params.quantity}x {params.item_name} from the cart",
        )
    else:
        message = localized(
            ctx, f"تم إزالة {params.item_name} من السلة", f"Removed {params.item_name} from the cart",
        )
    return ToolResult.success({"cart_action": action, "message": message})


async def update_cart_quantity(params: UpdateCartQuantityParams, ctx: ToolContext) -> ToolResult:
    if params.new_quantity == 0:
        return await remove_from_cart(RemoveFromCartParams(item_name=params.item_name), ctx)

    if params.new_quantity is not None:
        action = _action("UPDATE_QUANTITY", menu_item_name=params.item_name, quantity=params.new_quantity)
        message = localized(
            ctx,
            f"تم تعديل كمية {params.item_name} إلى {params.new_quantity}",
            f"Updated {params.item_name} to {params.new_quantity}",
        )
    else:
        action = _action("UPDATE_QUANTITY", menu_item_name=params.item_name, quantity_change=params.change)
        if params.change > 0:
            message = localized(
                ctx,
                f"تم زيادة {params.item_name} بـ {params.change}",
                f"Increased {params.item_name} by {params.change}",
            )
        else:
            message = localized(
                ctx,
                f"تم تقليل {params.item_name} بـ {abs(params.change)}",
                f"Decreased {params.item_name} by {abs(params.change)}",
            )
    return ToolResult.success({"cart_action": action, "message": message})


async def clear_cart(params: NoParams, ctx: ToolContext) -> ToolResult:
    return ToolResult.success({
        "cart_action": _action("CLEAR_CART"),
        "message": localized(ctx, "تم تفريغ السلة بالكامل", "The cart has been cleared"),
    })


async def get_cart_summary(params: NoParams, ctx: ToolContext) -> ToolResult:
    cart = ctx.cart
    if cart.is_empty:
        return ToolResult.success({
            "items": [],
            "total": 0,
            "count": 0,
            "message": localized(ctx, "السلة فاضية", "The cart is empty"),
        })
    total = cart.total or round(sum(line.subtotal for line in cart.lines), 2)
    return ToolResult.success({
        "provider_id": cart.provider_id,
        "items": [
            {
                "item_id": line.item_id,
                "name": line.name,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "subtotal": line.subtotal,
            }
            for line in cart.lines
        ],
        "total": total,
        "count": len(cart.lines),
        "message": localized(
            ctx,
            f"السلة فيها {len(cart.lines)} صنف بإجمالي {total} ج.م",
            f"{len(cart.lines)} item(s) in the cart, total {total} EGP",
        ),
    })

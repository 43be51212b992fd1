"""Parameter schemas for every agent tool.

Each model doubles as the JSON schema the LLM sees (via
``model_json_schema``) and as the validator applied to the arguments it
sends back.  Unknown fields are rejected so the model learns the exact
contract instead of having stray arguments silently ignored.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError, model_validator

UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
ORDER_REF_PATTERN = r"^(?:ENG-[A-Za-z0-9]{4,20}|" + UUID_PATTERN[1:-1] + r")$"

EntityId = Annotated[str, StringConstraints(strip_whitespace=True, pattern=UUID_PATTERN)]
OrderRef = Annotated[str, StringConstraints(strip_whitespace=True, pattern=ORDER_REF_PATTERN)]
ShortText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
Quantity = Annotated[int, Field(ge=1, le=50)]

ProviderCategory = Literal["restaurant_cafe", "coffee_patisserie", "grocery", "vegetables_fruits"]
OrderStatus = Literal[
    "pending", "accepted", "preparing", "ready", "out_for_delivery", "delivered", "cancelled",
]
PaymentMethod = Literal["cash", "card", "wallet"]
TicketType = Literal["payment", "delivery", "quality", "provider_issue", "account", "other"]


class ToolParams(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class NoParams(ToolParams):
    """No arguments."""


# ── Menu ─────────────────────────────────────────────────────────────


class ProviderParams(ToolParams):
    provider_id: EntityId = Field(..., description="Provider (store) id")


class ItemParams(ToolParams):
    item_id: EntityId = Field(..., description="Menu item id")


class GetMenuItemsParams(ToolParams):
    provider_id: EntityId | None = Field(
        None, description="Provider id; defaults to the provider of the cart or current page",
    )
    category_id: EntityId | None = Field(None, description="Menu category id")
    search_query: str | None = Field(None, max_length=100, description="Filter by item name")
    limit: int = Field(20, ge=1, le=50)


class SearchMenuParams(ToolParams):
    query: str = Field(..., min_length=2, max_length=100, description="What the customer wants")
    provider_id: EntityId | None = Field(
        None, description="Restrict to one provider; omit to search the customer's city",
    )
    city_id: EntityId | None = Field(None, description="City to search in")
    limit: int = Field(10, ge=1, le=20)


# ── Cart ─────────────────────────────────────────────────────────────


class AddToCartParams(ToolParams):
    item_id: EntityId
    item_name: ShortText
    provider_id: EntityId
    price: float = Field(..., gt=0, description="Unit price in EGP")
    quantity: Quantity = 1
    variant_id: EntityId | None = Field(None, description="Size / variant id")
    variant_name: ShortText | None = None


class RemoveFromCartParams(ToolParams):
    item_name: ShortText
    quantity: Quantity | None = Field(None, description="How many to remove; omit to remove all")


class UpdateCartQuantityParams(ToolParams):
    item_name: ShortText
    new_quantity: int | None = Field(None, ge=0, le=50, description="Absolute new quantity")
    change: int | None = Field(None, ge=-50, le=50, description="Relative change, e.g. +2 or -1")

    @model_validator(mode="after")
    def _one_of(self) -> UpdateCartQuantityParams:
        if (self.new_quantity is None) == (self.change is None):
            raise ValueError("provide exactly one of new_quantity or change")
        if self.change == 0:
            raise ValueError("change must not be zero")
        return self


# ── Providers ────────────────────────────────────────────────────────


class DeliveryInfoParams(ToolParams):
    provider_id: EntityId | None = Field(
        None, description="Provider id; defaults to the provider of the cart or current page",
    )


class SearchProvidersParams(ToolParams):
    city_id: EntityId | None = Field(None, description="City id; defaults to the customer's city")
    category: ProviderCategory | None = None
    search_query: str | None = Field(None, max_length=100)
    limit: int = Field(10, ge=1, le=20)


class ProviderReviewsParams(ToolParams):
    provider_id: EntityId
    limit: int = Field(5, ge=1, le=20)


# ── Orders ───────────────────────────────────────────────────────────


class OrderLineParams(ToolParams):
    item_id: EntityId
    quantity: Quantity = 1
    variant_id: EntityId | None = None


class PlaceOrderParams(ToolParams):
    provider_id: EntityId
    items: list[OrderLineParams] = Field(..., min_length=1, max_length=50)
    address_id: EntityId | None = Field(
        None, description="Delivery address id; defaults to the customer's default address",
    )
    payment_method: PaymentMethod = "cash"
    notes: str | None = Field(None, max_length=500)


class OrderRefParams(ToolParams):
    order_id: OrderRef = Field(..., description="Order id or order number (ENG-...)")


class OrderHistoryParams(ToolParams):
    limit: int = Field(10, ge=1, le=50)
    status: OrderStatus | None = None


class CancelOrderParams(ToolParams):
    order_id: OrderRef
    reason: str | None = Field(None, max_length=500)


# ── Promotions ───────────────────────────────────────────────────────


class ValidatePromoCodeParams(ToolParams):
    code: str = Field(..., pattern=r"^[A-Za-z0-9]{3,20}$", description="Promo code")
    provider_id: EntityId | None = None
    order_total: float | None = Field(None, ge=0)


# ── Support ──────────────────────────────────────────────────────────


class SupportTicketParams(ToolParams):
    type: TicketType
    subject: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=10, max_length=2000)
    order_id: OrderRef | None = None


class EscalateParams(ToolParams):
    reason: str = Field(..., min_length=3, max_length=500)


# ── Error reporting ──────────────────────────────────────────────────


def field_errors(exc: ValidationError) -> list[dict[str, str]]:
    """Flatten a pydantic error into ``[{field, message}]`` pairs."""
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "params", "message": err["msg"]}
        for err in exc.errors()
    ]


def describe_errors(exc: ValidationError) -> str:
    return "; ".join(f"{e['field']}: {e['message']}" for e in field_errors(exc))

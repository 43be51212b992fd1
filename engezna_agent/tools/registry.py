"""The agent's tool catalog and its executor boundary.

Tools are addressed by :class:`ToolName`; the enum values are the strings the
LLM sees.  ``TOOL_REGISTRY`` is an immutable mapping built at import time.

:func:`execute_agent_tool` is the only way tools run.  It never raises (task
cancellation aside): business errors, data-store failures and unexpected
bugs all come back as failed :class:`ToolResult` objects that the model can
read and explain to the customer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ValidationError

from engezna_agent.errors import DataStoreError, ErrorKind, ToolError
from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.services.metrics import metrics
from engezna_agent.tools import cart, customer, menu, orders, promotions, providers, support
from engezna_agent.tools import params as p
from engezna_agent.tools.common import localized

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    # Menu
    SEARCH_MENU = "search_menu"
    GET_MENU_ITEMS = "get_menu_items"
    GET_ITEM_DETAILS = "get_item_details"
    CHECK_ITEM_AVAILABILITY = "check_item_availability"
    GET_PROVIDER_CATEGORIES = "get_provider_categories"
    # Providers
    GET_PROVIDER_INFO = "get_provider_info"
    CHECK_PROVIDER_OPEN = "check_provider_open"
    GET_DELIVERY_INFO = "get_delivery_info"
    SEARCH_PROVIDERS = "search_providers"
    GET_PROVIDER_REVIEWS = "get_provider_reviews"
    # Cart
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    UPDATE_CART_QUANTITY = "update_cart_quantity"
    CLEAR_CART = "clear_cart"
    GET_CART_SUMMARY = "get_cart_summary"
    # Orders
    PLACE_ORDER = "place_order"
    GET_ORDER_STATUS = "get_order_status"
    GET_ORDER_HISTORY = "get_order_history"
    TRACK_ORDER = "track_order"
    CANCEL_ORDER = "cancel_order"
    # Customer
    GET_CUSTOMER_ADDRESSES = "get_customer_addresses"
    GET_FAVORITES = "get_favorites"
    # Promotions
    GET_PROVIDER_PROMOTIONS = "get_provider_promotions"
    VALIDATE_PROMO_CODE = "validate_promo_code"
    # Support
    CREATE_SUPPORT_TICKET = "create_support_ticket"
    ESCALATE_TO_HUMAN = "escalate_to_human"

    @classmethod
    def parse(cls, name: str) -> ToolName | None:
        try:
            return cls(name)
        except ValueError:
            return None


Executor = Callable[[Any, ToolContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolDefinition:
    name: ToolName
    description: str
    params_model: type[BaseModel]
    executor: Executor
    requires_auth: bool = False
    writes: bool = False
    requires_service_area: bool = False


def _define(name: ToolName, description: str, params_model: type[BaseModel], executor: Executor, **flags: bool):
    return name, ToolDefinition(name, description, params_model, executor, **flags)


TOOL_REGISTRY: Mapping[ToolName, ToolDefinition] = MappingProxyType(dict([
    # ── Menu ─────────────────────────────────────────────────────────
    _define(
        ToolName.SEARCH_MENU,
        "Search menu items by what the customer wants (dish, ingredient, craving). "
        "Searches the current store if one is selected, otherwise every store in the customer's area.",
        p.SearchMenuParams, menu.search_menu,
    ),
    _define(
        ToolName.GET_MENU_ITEMS,
        "List available items of a store's menu, optionally filtered by category or name.",
        p.GetMenuItemsParams, menu.get_menu_items,
    ),
    _define(
        ToolName.GET_ITEM_DETAILS,
        "Get full details of a menu item: description, sizes/variants, add-ons, price.",
        p.ItemParams, menu.get_item_details,
    ),
    _define(
        ToolName.CHECK_ITEM_AVAILABILITY,
        "Check whether a menu item is available right now.",
        p.ItemParams, menu.check_item_availability,
    ),
    _define(
        ToolName.GET_PROVIDER_CATEGORIES,
        "List the menu sections of a store (pizza, drinks, desserts, ...).",
        p.ProviderParams, menu.get_provider_categories,
    ),
    # ── Providers ────────────────────────────────────────────────────
    _define(
        ToolName.GET_PROVIDER_INFO,
        "Get a store's profile: name, rating, address, delivery fee, minimum order, hours.",
        p.ProviderParams, providers.get_provider_info,
    ),
    _define(
        ToolName.CHECK_PROVIDER_OPEN,
        "Check whether a store is open now (Cairo time).",
        p.ProviderParams, providers.check_provider_open,
    ),
    _define(
        ToolName.GET_DELIVERY_INFO,
        "Get delivery fee, minimum order and estimated delivery time of a store.",
        p.DeliveryInfoParams, providers.get_delivery_info,
    ),
    _define(
        ToolName.SEARCH_PROVIDERS,
        "Find stores in the customer's city, optionally by category or name.",
        p.SearchProvidersParams, providers.search_providers,
    ),
    _define(
        ToolName.GET_PROVIDER_REVIEWS,
        "Get the latest customer reviews of a store.",
        p.ProviderReviewsParams, providers.get_provider_reviews,
    ),
    # ── Cart ─────────────────────────────────────────────────────────
    _define(
        ToolName.ADD_TO_CART,
        "Add an item to the customer's cart when they ask to add or order it.",
        p.AddToCartParams, cart.add_to_cart,
    ),
    _define(
        ToolName.REMOVE_FROM_CART,
        "Remove an item (or some of its quantity) from the cart.",
        p.RemoveFromCartParams, cart.remove_from_cart,
    ),
    _define(
        ToolName.UPDATE_CART_QUANTITY,
        "Change the quantity of an item in the cart, either to a new value or by a relative change.",
        p.UpdateCartQuantityParams, cart.update_cart_quantity,
    ),
    _define(
        ToolName.CLEAR_CART,
        "Empty the cart completely.",
        p.NoParams, cart.clear_cart,
    ),
    _define(
        ToolName.GET_CART_SUMMARY,
        "Show what is in the cart and its total.",
        p.NoParams, cart.get_cart_summary,
    ),
    # ── Orders ───────────────────────────────────────────────────────
    _define(
        ToolName.PLACE_ORDER,
        "Place an order with one store for the listed items, delivered to the customer's address. "
        "Only call after the customer has confirmed the items.",
        p.PlaceOrderParams, orders.place_order,
        requires_auth=True, writes=True, requires_service_area=True,
    ),
    _define(
        ToolName.GET_ORDER_STATUS,
        "Get the current status of one of the customer's orders.",
        p.OrderRefParams, orders.get_order_status,
        requires_auth=True,
    ),
    _define(
        ToolName.GET_ORDER_HISTORY,
        "List the customer's previous orders.",
        p.OrderHistoryParams, orders.get_order_history,
        requires_auth=True,
    ),
    _define(
        ToolName.TRACK_ORDER,
        "Track an order step by step with timestamps.",
        p.OrderRefParams, orders.track_order,
        requires_auth=True,
    ),
    _define(
        ToolName.CANCEL_ORDER,
        "Cancel one of the customer's orders; only possible while it is still pending.",
        p.CancelOrderParams, orders.cancel_order,
        requires_auth=True, writes=True,
    ),
    # ── Customer ─────────────────────────────────────────────────────
    _define(
        ToolName.GET_CUSTOMER_ADDRESSES,
        "List the customer's saved delivery addresses.",
        p.NoParams, customer.get_customer_addresses,
        requires_auth=True,
    ),
    _define(
        ToolName.GET_FAVORITES,
        "List the customer's favourite stores.",
        p.NoParams, customer.get_favorites,
        requires_auth=True,
    ),
    # ── Promotions ───────────────────────────────────────────────────
    _define(
        ToolName.GET_PROVIDER_PROMOTIONS,
        "List a store's active offers.",
        p.ProviderParams, promotions.get_provider_promotions,
    ),
    _define(
        ToolName.VALIDATE_PROMO_CODE,
        "Check a promo code and compute its discount for an order total.",
        p.ValidatePromoCodeParams, promotions.validate_promo_code,
    ),
    # ── Support ──────────────────────────────────────────────────────
    _define(
        ToolName.CREATE_SUPPORT_TICKET,
        "Open a support ticket for a problem with an order, payment, delivery or account.",
        p.SupportTicketParams, support.create_support_ticket,
        requires_auth=True, writes=True,
    ),
    _define(
        ToolName.ESCALATE_TO_HUMAN,
        "Hand the conversation over to a human support agent.",
        p.EscalateParams, support.escalate_to_human,
    ),
]))


def get_tool_definition(name: ToolName | str) -> ToolDefinition | None:
    tool = name if isinstance(name, ToolName) else ToolName.parse(name)
    return TOOL_REGISTRY.get(tool) if tool is not None else None


def get_available_tools(ctx: ToolContext) -> list[ToolDefinition]:
    """Tools offered to the model this turn, in catalog order.

    Auth-only tools are hidden from guests and order placement is hidden
    outside the serviceable area.
    """
    return [
        definition
        for definition in TOOL_REGISTRY.values()
        if (ctx.is_authenticated or not definition.requires_auth)
        and (ctx.in_service_area or not definition.requires_service_area)
    ]


# ── Execution ────────────────────────────────────────────────────────


async def _run(definition: ToolDefinition, params: BaseModel, ctx: ToolContext) -> ToolResult:
    name = definition.name.value
    t0 = time.perf_counter()
    try:
        result = await definition.executor(params, ctx)
    except ToolError as exc:
        result = ToolResult.failure(exc.kind, exc.message)
        logger.info("Tool %s failed (%s): %s", name, exc.kind.value, exc.message)
    except DataStoreError as exc:
        result = ToolResult.failure(
            ErrorKind.UPSTREAM_FAILURE,
            localized(ctx, "فيه مشكلة مؤقتة في النظام", "A temporary system problem occurred"),
        )
        logger.warning("Tool %s data-store failure: %s", name, exc)
    except Exception:
        result = ToolResult.failure(
            ErrorKind.UPSTREAM_FAILURE,
            localized(ctx, "فيه مشكلة مؤقتة في النظام", "A temporary system problem occurred"),
        )
        logger.exception("Tool %s raised unexpectedly", name)

    metrics.record_tool(
        name, ok=result.ok, latency_ms=(time.perf_counter() - t0) * 1000,
        error_kind=result.error.value if result.error else None,
    )
    return result


async def execute_agent_tool(
    tool_name: ToolName | str,
    params: BaseModel | dict[str, Any],
    ctx: ToolContext,
) -> ToolResult:
    """Run one tool and return its result.

    ``params`` is normally the model instance produced by
    :func:`~engezna_agent.tools.validation.validate_tool_params`; a raw
    dict is validated here.  Write tools are shielded so a cancelled turn
    (client disconnect) cannot abort a write that was already dispatched.
    """
    definition = get_tool_definition(tool_name)
    if definition is None:
        return ToolResult.failure(ErrorKind.UNKNOWN_TOOL, f"Unknown tool: {tool_name}")

    if definition.requires_auth and not ctx.is_authenticated:
        return ToolResult.failure(
            ErrorKind.PERMISSION_DENIED,
            localized(ctx, "لازم تسجل دخول الأول", "The customer must sign in first"),
        )

    if not isinstance(params, definition.params_model):
        try:
            params = definition.params_model.model_validate(params)
        except ValidationError as exc:
            return ToolResult.failure(ErrorKind.VALIDATION_ERROR, p.describe_errors(exc))

    if definition.writes:
        return await asyncio.shield(_run(definition, params, ctx))
    return await _run(definition, params, ctx)

"""System prompt for the Engezna Smart Assistant.

The prompt is a pure function of the turn's context and the customer's
memory: no clock, no randomness, stable ordering.  Identical inputs always
produce byte-identical text.
"""

from __future__ import annotations

from engezna_agent.memory import CustomerMemory
from engezna_agent.models import AgentContext
from engezna_agent.tools.registry import ToolDefinition, get_available_tools

SYSTEM_PROMPT_TEMPLATE = """You are the **Engezna Smart Assistant** (مساعد إنجزنا الذكي), the ordering assistant of Engezna, a food and grocery delivery marketplace in Egypt.

## Language
{language_instruction}

## Your Role
You help customers:
1. **Find food and products**: search menus, compare stores, suggest dishes
2. **Build their cart**: add, remove and change quantities
3. **Order**: place orders and follow their status
4. **Get help**: promo codes, complaints, support tickets

## Customer
{customer_section}

## Location
{location_section}

## Available Tools
You can ONLY use these tools in this conversation:
{tool_section}

## Conversation Guidelines
- Keep answers short and friendly: two or three sentences, or a short list.
- Use plain text only. No markdown, no links, no HTML.
- Always search before recommending items; never invent items, prices or stores.
- Prices are in Egyptian pounds (ج.م / EGP).
- Confirm the items, store and total with the customer before placing an order.
- If a tool reports that an action is rate limited, ask the customer to wait a little and try again.
- If a tool reports invalid or missing parameters, ask the customer for the missing information.
- If something cannot be done in this conversation, say so plainly and suggest an alternative.
- Never mention tools, error codes or internal identifiers to the customer.
"""

LANGUAGE_INSTRUCTIONS = {
    "ar": (
        "Reply in Egyptian Arabic (العامية المصرية), warm and natural. "
        "Keep dish and store names exactly as the tools return them."
    ),
    "en": (
        "Reply in clear, friendly English. "
        "Keep dish and store names exactly as the tools return them."
    ),
}


def _language_instruction(locale: str) -> str:
    return LANGUAGE_INSTRUCTIONS.get(locale, LANGUAGE_INSTRUCTIONS["ar"])


def _customer_section(ctx: AgentContext, memory: CustomerMemory) -> str:
    lines: list[str] = []
    if not ctx.customer_id:
        lines.append("- Guest (not signed in). Orders, addresses and order history need signing in.")
    if ctx.customer_name:
        lines.append(f"- Name: {ctx.customer_name}. Greet them by name.")

    if memory.is_returning:
        lines.append(f"- Returning customer with {memory.order_count} completed order(s).")
    elif ctx.customer_id:
        lines.append("- New customer: welcome them to Engezna.")

    prefs = memory.preferences
    if prefs.vegetarian:
        lines.append("- Vegetarian: suggest vegetarian options first.")
    if prefs.spicy is True:
        lines.append("- Likes spicy food.")
    elif prefs.spicy is False:
        lines.append("- Avoids spicy food.")
    if prefs.dietary_notes:
        lines.append(f"- Dietary notes: {', '.join(sorted(prefs.dietary_notes))}")
    if prefs.favorite_categories:
        lines.append(f"- Favourite categories: {', '.join(sorted(prefs.favorite_categories))}")
    if memory.favorite_items:
        lines.append(f"- Often orders: {', '.join(memory.favorite_items)}")

    if memory.recent_orders:
        lines.append("- Recent orders:")
        for i, order in enumerate(memory.recent_orders[:3], start=1):
            items = ", ".join(order.items[:3])
            more = f" (+{len(order.items) - 3} more)" if len(order.items) > 3 else ""
            lines.append(f"  {i}. {order.provider_name or 'store'}: {items}{more}")

    if memory.insights:
        lines.append("- Notes from earlier conversations:")
        lines.extend(f"  - {insight}" for insight in sorted(memory.insights))

    return "\n".join(lines) if lines else "- No information yet."


def _location_section(ctx: AgentContext) -> str:
    geo = ctx.geo
    lines = []
    if geo.governorate_id:
        lines.append(f"- Governorate id: {geo.governorate_id}")
    if geo.city_id:
        lines.append(f"- City id: {geo.city_id}")
    tool_ctx = ctx.tool_context
    if tool_ctx.provider_id:
        lines.append(f"- Currently viewing store id: {tool_ctx.provider_id}")
    if not tool_ctx.cart.is_empty:
        lines.append(
            f"- Cart: {len(tool_ctx.cart.lines)} item(s) from store id {tool_ctx.cart.provider_id}"
        )
    if not tool_ctx.in_service_area:
        lines.append(
            "- The customer is OUTSIDE the delivery area: placing orders is not available. "
            "If they want to order, explain this politely; they can still browse menus."
        )
    return "\n".join(lines) if lines else "- Unknown location."


def _tool_section(tools: list[ToolDefinition]) -> str:
    return "\n".join(f"- `{tool.name.value}`: {tool.description}" for tool in tools)


def build_system_prompt(ctx: AgentContext, memory: CustomerMemory) -> str:
    """Assemble the system prompt for one turn."""
    return SYSTEM_PROMPT_TEMPLATE.format(
        language_instruction=_language_instruction(ctx.locale),
        customer_section=_customer_section(ctx, memory),
        location_section=_location_section(ctx),
        tool_section=_tool_section(get_available_tools(ctx.tool_context)),
    )

"""Tests for the system prompt builder."""

from __future__ import annotations

from engezna_agent.memory import CustomerMemory, CustomerPreferences, PastOrder
from engezna_agent.models import AgentContext, CartLine, CartSnapshot
from engezna_agent.prompts import LANGUAGE_INSTRUCTIONS, build_system_prompt
from engezna_agent.tools.registry import TOOL_REGISTRY


def returning_memory(seed) -> CustomerMemory:
    return CustomerMemory(
        customer_id=seed.CUSTOMER,
        preferences=CustomerPreferences(spicy=True, favorite_categories=["pizza", "burger"]),
        insights=["Prefers delivery after 8pm", "Allergic to peanuts"],
        recent_orders=[PastOrder(provider_name="بيتزا الشاطر", items=["بيتزا مارجريتا", "بيبسي"])],
        favorite_items=["بيتزا مارجريتا"],
        order_count=2,
    )


class TestBuildSystemPrompt:
    def test_identical_inputs_give_identical_text(self, make_ctx, seed):
        ctx = AgentContext(make_ctx(), customer_name="أحمد")
        memory = returning_memory(seed)
        assert build_system_prompt(ctx, memory) == build_system_prompt(ctx, memory)

    def test_lists_every_available_tool(self, make_ctx):
        prompt = build_system_prompt(AgentContext(make_ctx()), CustomerMemory())
        for name in TOOL_REGISTRY:
            assert f"`{name.value}`" in prompt

    def test_guest_prompt_omits_account_tools(self, make_ctx):
        prompt = build_system_prompt(AgentContext(make_ctx(customer_id=None)), CustomerMemory())
        assert "`search_menu`" in prompt
        assert "`place_order`" not in prompt
        assert "Guest (not signed in)" in prompt

    def test_outside_service_area(self, make_ctx):
        prompt = build_system_prompt(AgentContext(make_ctx(in_service_area=False)), CustomerMemory())
        assert "OUTSIDE the delivery area" in prompt
        assert "`place_order`" not in prompt

    def test_language_follows_locale(self, make_ctx):
        arabic = build_system_prompt(AgentContext(make_ctx()), CustomerMemory())
        english = build_system_prompt(AgentContext(make_ctx(locale="en")), CustomerMemory())
        assert LANGUAGE_INSTRUCTIONS["ar"] in arabic
        assert LANGUAGE_INSTRUCTIONS["en"] in english

    def test_memory_is_rendered(self, make_ctx, seed):
        prompt = build_system_prompt(AgentContext(make_ctx(), customer_name="أحمد"), returning_memory(seed))
        assert "Name: أحمد" in prompt
        assert "Returning customer with 2 completed order(s)" in prompt
        assert "Likes spicy food" in prompt
        assert "Favourite categories: burger, pizza" in prompt
        assert "Often orders: بيتزا مارجريتا" in prompt
        assert "1. بيتزا الشاطر: بيتزا مارجريتا, بيبسي" in prompt
        # insights are sorted for a stable prompt
        assert prompt.index("Allergic to peanuts") < prompt.index("Prefers delivery after 8pm")

    def test_new_customer(self, make_ctx):
        prompt = build_system_prompt(AgentContext(make_ctx()), CustomerMemory())
        assert "New customer" in prompt

    def test_location_and_cart(self, make_ctx, seed):
        cart = CartSnapshot(provider_id=seed.PIZZA_PLACE, lines=(CartLine(name="بيبسي", quantity=2, unit_price=20),))
        prompt = build_system_prompt(
            AgentContext(make_ctx(cart=cart, provider_id=seed.PIZZA_PLACE)), CustomerMemory(),
        )
        assert f"City id: {seed.CITY}" in prompt
        assert f"Currently viewing store id: {seed.PIZZA_PLACE}" in prompt
        assert f"Cart: 1 item(s) from store id {seed.PIZZA_PLACE}" in prompt

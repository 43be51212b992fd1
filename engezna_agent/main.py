"""CLI entry point for the Engezna Smart Assistant.

A terminal chat loop for development.  For production, use the FastAPI
server (engezna_agent/server.py).

Usage:
    python -m engezna_agent.main                       # Arabic, guest
    python -m engezna_agent.main --locale en --customer-id <uuid>
    python -m engezna_agent.main --debug               # show API calls
    python -m engezna_agent.main --demo catalog.json   # in-memory tables, no Supabase
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from dotenv import load_dotenv

from engezna_agent.agent import AgentHandler, create_agent_handler
from engezna_agent.config import SERVICEABLE_GOVERNORATE_IDS, SUPABASE_URL, require_env
from engezna_agent.models import (
    AgentContext,
    ConversationTurn,
    GeoScope,
    Role,
    ToolContext,
    append_turn,
    is_serviceable,
)
from engezna_agent.services.data_store import DataStore, InMemoryDataStore, SupabaseDataStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("engezna_agent").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat_loop(handler: AgentHandler, ctx: AgentContext) -> None:
    history: list[ConversationTurn] = []
    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue
        if user_input.lower() in ("exit", "quit", "q"):
            print("\nمع السلامة! Goodbye!")
            break
        if user_input.lower() == "new":
            history = []
            print("\n>> New conversation started.\n")
            continue

        try:
            response = await handler.handle_conversation_turn(user_input, history, ctx)
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nAssistant: Something went wrong: {e}\n")
            continue

        history = append_turn(history, Role.CUSTOMER, user_input)
        history = append_turn(history, Role.ASSISTANT, response.text)
        print(f"\nAssistant: {response.text}")
        for product in response.products:
            print(f"   • {product.name}: {product.price:g} EGP ({product.provider_name or '-'})")
        if response.tool_calls_executed:
            logger.info("Tools used: %s", ", ".join(r.name for r in response.tool_calls_executed))
        print()


def open_store(demo: Path | None = None) -> DataStore:
    """Supabase by default; with *demo*, a JSON file of ``{table: [rows]}`` held in memory."""
    if demo is None:
        return SupabaseDataStore(SUPABASE_URL, require_env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY"))
    tables = json.loads(demo.read_text(encoding="utf-8"))
    logger.info("Demo store loaded: %s", ", ".join(f"{name}={len(rows)}" for name, rows in tables.items()))
    return InMemoryDataStore(tables)


async def _run(args: argparse.Namespace) -> None:
    store = open_store(args.demo)
    handler = create_agent_handler(store)
    geo = GeoScope(governorate_id=args.governorate_id, city_id=args.city_id)
    ctx = AgentContext(
        tool_context=ToolContext(
            store=store,
            customer_id=args.customer_id,
            locale=args.locale,
            geo=geo,
            in_service_area=is_serviceable(geo, SERVICEABLE_GOVERNORATE_IDS),
        ),
        customer_name=args.name,
    )
    try:
        await _chat_loop(handler, ctx)
    finally:
        await handler.aclose()
        await store.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Engezna Smart Assistant CLI")
    parser.add_argument("--debug", action="store_true", help="Show all log messages including HTTP requests")
    parser.add_argument("--locale", choices=("ar", "en"), default="ar")
    parser.add_argument("--customer-id", default=None, help="Act as this signed-in customer")
    parser.add_argument("--name", default=None, help="Customer display name")
    parser.add_argument("--governorate-id", default=None)
    parser.add_argument("--city-id", default=None)
    parser.add_argument("--demo", type=Path, default=None, metavar="FILE", help="Use an in-memory store seeded from a JSON file")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Engezna Smart Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    asyncio.run(_run(args))


if __name__ == "__main__":
    main()

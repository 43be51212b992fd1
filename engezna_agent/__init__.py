"""Engezna Smart Assistant: the AI ordering agent of the Engezna marketplace.

Architecture Overview
=====================

Each customer turn is handled by :class:`engezna_agent.agent.AgentHandler`:

1. **Memory**: stored preferences, insights and a summary of recent orders
   are loaded for signed-in customers.

2. **Prompt**: a deterministic system prompt is built from the customer,
   their location, their memory and the tools offered this turn.

3. **Runner**: a LangGraph StateGraph (model → tools → model ...) runs
   against Claude or GPT, selected once by ``AGENT_PROVIDER``.  The number of
   tool rounds per turn is capped; a turn that hits the cap ends on a
   polite fallback.

4. **Learn**: after the reply is returned, a background task derives new
   insights from the conversation and merges them into memory.

Every tool call the model makes passes through the rate limiter, pydantic
parameter validation and the per-turn availability gate before it reaches
the tool registry.  Failures at any stage go back to the model as structured
tool results so it can explain them to the customer.

Key Design Decisions
--------------------
- **Typed tool catalog**: ``ToolName`` enum mapped to immutable
  ``ToolDefinition`` entries; the model only ever sees the enum values.
- **Injected stores**: the data store, rate-limit store and memory store are
  built at startup and passed in, never module globals.
- **Atomic writes**: order placement is one RPC call to the data store and
  write tools are shielded from cancellation.
- **Resilience**: the Supabase client retries timeouts and 5xx responses
  with exponential backoff; the handler retries a failed LLM call once when
  no tool has run yet.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``engezna_agent/agent.py``: turn orchestration and runner selection
- ``engezna_agent/runners/``: LangGraph loop and the two vendor runners
- ``engezna_agent/tools/``: tool catalog, parameter schemas, dispatch
- ``engezna_agent/memory.py``: customer memory load / merge / analysis
- ``engezna_agent/prompts.py``: system prompt builder
- ``engezna_agent/responses.py``: reply sanitising and UI hints
- ``engezna_agent/services/``: data store, embeddings, cache, rate limiter, metrics
- ``engezna_agent/config.py``: configuration from environment / SSM
- ``engezna_agent/server.py``, ``engezna_agent/api/``: FastAPI app
- ``engezna_agent/main.py``: CLI chat interface
"""

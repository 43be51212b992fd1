"""FastAPI server for the Engezna Smart Assistant.

Run with:
    uvicorn engezna_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from engezna_agent.agent import create_agent_handler
from engezna_agent.api.routes import router
from engezna_agent.config import (
    CORS_ORIGINS,
    EMBEDDING_CACHE_TTL_SECONDS,
    EMBEDDING_MODEL_NAME,
    SEMANTIC_SEARCH_ENABLED,
    SERVER_HOST,
    SERVER_PORT,
    SUPABASE_URL,
    require_env,
    validate_settings,
)
from engezna_agent.services.cache import LRUCache
from engezna_agent.services.data_store import SupabaseDataStore
from engezna_agent.services.embeddings import CachedEmbeddingProvider, OpenAIEmbeddingProvider
from engezna_agent.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the data store, embedding cache and agent handler once.

    Shutdown waits for pending memory updates before closing the store.
    """
    validate_settings()
    store = SupabaseDataStore(
        SUPABASE_URL, require_env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY"),
    )
    embeddings = None
    if SEMANTIC_SEARCH_ENABLED:
        embeddings = CachedEmbeddingProvider(
            OpenAIEmbeddingProvider(EMBEDDING_MODEL_NAME, require_env("OPENAI_API_KEY")),
            LRUCache(ttl_seconds=EMBEDDING_CACHE_TTL_SECONDS),
        )

    logger.info("Building agent handler…")
    handler = create_agent_handler(store)
    application.state.store = store
    application.state.embeddings = embeddings
    application.state.agent = handler
    logger.info("Agent ready.")
    yield

    await handler.aclose()
    await store.aclose()
    metrics.close()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Engezna Smart Assistant",
    description=(
        "AI ordering assistant for the Engezna delivery marketplace: "
        "menu search, cart building, ordering and support in Arabic and English."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (chat widget) ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Engezna Smart Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Engezna agent API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "engezna_agent.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )

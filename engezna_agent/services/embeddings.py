"""Embedding providers for semantic menu search.

``search_menu`` embeds the customer's query and asks the data store for the
nearest menu items.  Repeated queries ("بيتزا", "pizza") are very common, so
the production provider is wrapped in :class:`CachedEmbeddingProvider`.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod

from langchain_openai import OpenAIEmbeddings

from engezna_agent.services.cache import LRUCache
from engezna_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Collapse whitespace so equivalent queries share one embedding."""
    return _WHITESPACE.sub(" ", text).strip()


class EmbeddingProvider(ABC):
    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for *text*."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """``text-embedding-3-small`` (1536 dimensions) through langchain-openai."""

    def __init__(self, model: str, api_key: str):
        self._client = OpenAIEmbeddings(model=model, api_key=api_key)
        self._model = model

    async def embed(self, text: str) -> list[float]:
        cleaned = normalize_text(text)
        if not cleaned:
            raise ValueError("Empty text provided for embedding")
        with metrics.timed("openai", "embed"):
            vector = await self._client.aembed_query(cleaned)
        return vector


class CachedEmbeddingProvider(EmbeddingProvider):
    """Caches vectors by normalised, case-folded text."""

    def __init__(self, inner: EmbeddingProvider, cache: LRUCache):
        self._inner = inner
        self._cache = cache

    @staticmethod
    def _key(text: str) -> str:
        return f"embedding:{normalize_text(text).casefold()}"

    async def embed(self, text: str) -> list[float]:
        key = self._key(text)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Embedding cache hit for %r", text)
            return cached
        vector = await self._inner.embed(text)
        self._cache.put(key, vector)
        return vector


# ── Dialect synonym expansion ────────────────────────────────────────
# Egyptian / Levantine variants and English equivalents, used to widen the
# keyword fallback when semantic search is unavailable.

ARABIC_SYNONYMS: dict[str, tuple[str, ...]] = {
    # Vegetables
    "طماطم": ("بندورة", "قوطة", "tomato"),
    "بندورة": ("طماطم", "قوطة", "tomato"),
    "بطاطس": ("بطاطا", "potato"),
    "بصل": ("onion",),
    "خيار": ("cucumber",),
    # Drinks
    "بيبسي": ("كولا", "بيبسى", "pepsi", "cola"),
    "كوكاكولا": ("كولا", "كوكا", "coca cola", "coke"),
    "عصير": ("juice", "عصاير"),
    "مشروب": ("drink", "مشروبات"),
    # Meat
    "فراخ": ("دجاج", "chicken"),
    "دجاج": ("فراخ", "chicken"),
    "لحمة": ("لحم", "meat", "beef"),
    "كفتة": ("كفته", "kofta"),
    # Dishes
    "شاورما": ("شاورمة", "شاورمه", "shawarma"),
    "بيتزا": ("pizza", "بيتزه"),
    "برجر": ("برغر", "burger", "همبرجر", "همبورجر"),
    "سندوتش": ("سندويتش", "ساندويتش", "sandwich"),
    "حواوشي": ("حواوشى", "hawawshi"),
    # Descriptive
    "حار": ("حراق", "سبايسي", "spicy", "hot"),
    "ساقع": ("ساقعة", "بارد", "cold", "مثلج"),
    "كبير": ("large", "big", "عائلي", "فاميلي"),
    "صغير": ("small", "mini", "ميني"),
}


def expand_query_terms(query: str) -> list[str]:
    """Return the query's words plus their synonyms, de-duplicated in order."""
    terms: list[str] = []
    for word in normalize_text(query).casefold().split(" "):
        if not word:
            continue
        for term in (word, *ARABIC_SYNONYMS.get(word, ())):
            if term not in terms:
                terms.append(term)
    return terms

"""Tests for the embedding cache and the dialect synonym expansion."""

from __future__ import annotations

import pytest

from engezna_agent.services.cache import LRUCache
from engezna_agent.services.embeddings import (
    CachedEmbeddingProvider,
    EmbeddingProvider,
    expand_query_terms,
    normalize_text,
)


class CountingProvider(EmbeddingProvider):
    def __init__(self):
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return [float(len(text)), 1.0]


class TestCachedEmbeddingProvider:
    async def test_repeated_query_hits_cache(self):
        inner = CountingProvider()
        provider = CachedEmbeddingProvider(inner, LRUCache())
        first = await provider.embed("بيتزا")
        second = await provider.embed("بيتزا")
        assert first == second
        assert inner.calls == ["بيتزا"]

    async def test_whitespace_and_case_share_an_entry(self):
        inner = CountingProvider()
        provider = CachedEmbeddingProvider(inner, LRUCache())
        await provider.embed("Chicken  Shawarma")
        await provider.embed("  chicken shawarma ")
        assert len(inner.calls) == 1

    async def test_expired_vectors_are_recomputed(self, manual_clock):
        inner = CountingProvider()
        provider = CachedEmbeddingProvider(inner, LRUCache(ttl_seconds=60, clock=manual_clock))
        await provider.embed("كشري")
        manual_clock.advance(60)
        await provider.embed("كشري")
        assert len(inner.calls) == 2

    async def test_inner_errors_are_not_cached(self):
        class FlakyProvider(EmbeddingProvider):
            def __init__(self):
                self.attempts = 0

            async def embed(self, text: str) -> list[float]:
                self.attempts += 1
                if self.attempts == 1:
                    raise RuntimeError("rate limited")
                return [0.5]

        inner = FlakyProvider()
        provider = CachedEmbeddingProvider(inner, LRUCache())
        with pytest.raises(RuntimeError):
            await provider.embed("pizza")
        assert await provider.embed("pizza") == [0.5]


class TestQueryExpansion:
    def test_normalize_collapses_whitespace(self):
        assert normalize_text("  عايز \n  بيتزا ") == "عايز بيتزا"

    def test_arabic_word_gets_synonyms(self):
        assert expand_query_terms("بيتزا") == ["بيتزا", "pizza", "بيتزه"]

    def test_words_are_expanded_independently(self):
        terms = expand_query_terms("فراخ حار")
        assert terms[:3] == ["فراخ", "دجاج", "chicken"]
        assert "spicy" in terms

    def test_duplicates_are_dropped(self):
        terms = expand_query_terms("طماطم بندورة")
        assert terms.count("طماطم") == 1
        assert terms.count("tomato") == 1

    def test_unknown_words_pass_through_casefolded(self):
        assert expand_query_terms("Pizza") == ["pizza"]

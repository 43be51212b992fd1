"""Tests for the in-memory LRU cache."""

from __future__ import annotations

from engezna_agent.services.cache import DEFAULT_MAX_BYTES, LRUCache

# ── Core operations ──────────────────────────────────────────────────


class TestLRUCacheBasics:
    def test_put_and_get(self):
        cache = LRUCache()
        cache.put("embedding:pizza", [0.12, -0.03])
        assert cache.get("embedding:pizza") == [0.12, -0.03]

    def test_get_returns_none_for_missing_key(self):
        cache = LRUCache()
        assert cache.get("nonexistent") is None

    def test_put_overwrites_existing_key(self):
        cache = LRUCache()
        cache.put("key1", "old")
        cache.put("key1", "new")
        assert cache.get("key1") == "new"
        assert cache.entry_count == 1

    def test_invalidate_removes_key(self):
        cache = LRUCache()
        cache.put("key1", "value")
        assert cache.invalidate("key1") is True
        assert cache.get("key1") is None

    def test_invalidate_returns_false_for_missing_key(self):
        cache = LRUCache()
        assert cache.invalidate("nonexistent") is False

    def test_clear_removes_all_entries(self):
        cache = LRUCache()
        cache.put("a", 1)
        cache.put("b", 2)
        cache.clear()
        assert cache.entry_count == 0
        assert cache.current_bytes == 0

    def test_has_key(self):
        cache = LRUCache()
        cache.put("key1", "value")
        assert cache.has("key1") is True
        assert cache.has("key2") is False


# ── LRU eviction ────────────────────────────────────────────────────


class TestLRUEviction:
    def test_evicts_lru_when_over_limit(self):
        """With a tiny limit, inserting a new entry should evict the oldest."""
        # json.dumps("aaa") → '"aaa"' → 5 bytes.  Limit of 10 fits 2 entries.
        cache = LRUCache(max_bytes=10)
        cache.put("first", "aaa")
        cache.put("second", "bbb")
        cache.put("third", "ccc")
        assert cache.get("first") is None
        assert cache.get("third") == "ccc"

    def test_access_promotes_to_mru(self):
        """Accessing an entry should move it to MRU, protecting it from eviction."""
        cache = LRUCache(max_bytes=10)
        cache.put("a", "111")
        cache.put("b", "222")
        cache.get("a")
        cache.put("c", "333")
        assert cache.get("a") == "111"
        assert cache.get("b") is None

    def test_skips_entry_larger_than_max(self):
        """A single entry that exceeds the limit should not be cached."""
        cache = LRUCache(max_bytes=10)
        cache.put("huge", "x" * 100)
        assert cache.get("huge") is None
        assert cache.entry_count == 0


# ── Expiry ──────────────────────────────────────────────────────────


class TestTTL:
    def test_entry_expires_after_ttl(self, manual_clock):
        cache = LRUCache(ttl_seconds=30, clock=manual_clock)
        cache.put("embedding:pizza", [1.0])
        manual_clock.advance(29)
        assert cache.get("embedding:pizza") == [1.0]
        manual_clock.advance(1)
        assert cache.get("embedding:pizza") is None
        assert cache.entry_count == 0
        assert cache.current_bytes == 0

    def test_has_ignores_expired_entries(self, manual_clock):
        cache = LRUCache(ttl_seconds=10, clock=manual_clock)
        cache.put("k", "v")
        manual_clock.advance(10)
        assert cache.has("k") is False

    def test_overwrite_restarts_ttl(self, manual_clock):
        cache = LRUCache(ttl_seconds=10, clock=manual_clock)
        cache.put("k", "v1")
        manual_clock.advance(8)
        cache.put("k", "v2")
        manual_clock.advance(8)
        assert cache.get("k") == "v2"

    def test_no_ttl_never_expires(self, manual_clock):
        cache = LRUCache(clock=manual_clock)
        cache.put("k", "v")
        manual_clock.advance(10**6)
        assert cache.get("k") == "v"


# ── Size tracking ───────────────────────────────────────────────────


class TestSizeTracking:
    def test_current_bytes_tracks_inserts(self):
        cache = LRUCache()
        assert cache.current_bytes == 0
        cache.put("k", {"data": "hello"})
        assert cache.current_bytes > 0

    def test_arabic_text_is_measured_in_bytes(self):
        cache = LRUCache()
        cache.put("k", "بيتزا")
        # json.dumps escapes non-ASCII: "ب..." is 6 bytes per letter plus quotes
        assert cache.current_bytes == 5 * 6 + 2

    def test_current_bytes_decreases_on_invalidate(self):
        cache = LRUCache()
        cache.put("k", "val")
        size_before = cache.current_bytes
        cache.invalidate("k")
        assert cache.current_bytes < size_before
        assert cache.current_bytes == 0

    def test_overwrite_adjusts_size(self):
        cache = LRUCache()
        cache.put("k", "short")
        size_short = cache.current_bytes
        cache.put("k", "a much longer value string")
        assert cache.current_bytes > size_short
        assert cache.entry_count == 1


# ── 5 MB default limit ─────────────────────────────────────────────


class TestDefaultLimit:
    def test_default_max_is_5mb(self):
        cache = LRUCache()
        assert cache._max_bytes == DEFAULT_MAX_BYTES == 5 * 1024 * 1024

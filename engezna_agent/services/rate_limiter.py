"""Per-customer sliding-window rate limiting for agent tool calls.

Every tool call a customer's conversation triggers counts against a global
window (default 10 calls per 60 s).  A few tools with real-world side
effects (cancellations, support tickets, escalations) additionally have a
stricter window of their own.

The limiter fails open: if its store raises, the call is allowed and a
warning is logged, because a broken quota store must not lock customers
out of the assistant.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowLimit:
    max_calls: int
    window_seconds: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int | None = None


# Stricter per-tool windows on top of the global one.
DEFAULT_TOOL_LIMITS: Mapping[str, WindowLimit] = MappingProxyType({
    "cancel_order": WindowLimit(max_calls=2, window_seconds=300),
    "create_support_ticket": WindowLimit(max_calls=3, window_seconds=300),
    "escalate_to_human": WindowLimit(max_calls=2, window_seconds=300),
})


# ── Stores ───────────────────────────────────────────────────────────


class RateLimitStore(ABC):
    """Keyed timestamp log.  Keys are opaque strings."""

    @abstractmethod
    def recent(self, key: str, now: float, window_seconds: float) -> list[float]:
        """Drop timestamps older than the window and return the rest, oldest first."""

    @abstractmethod
    def record(self, key: str, timestamp: float) -> None: ...


@dataclass
class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store; entries expire by pruning on access."""

    _entries: dict[str, deque[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def recent(self, key: str, now: float, window_seconds: float) -> list[float]:
        with self._lock:
            entries = self._entries.get(key)
            if entries is None:
                return []
            while entries and entries[0] <= now - window_seconds:
                entries.popleft()
            if not entries:
                del self._entries[key]
                return []
            return list(entries)

    def record(self, key: str, timestamp: float) -> None:
        with self._lock:
            self._entries.setdefault(key, deque()).append(timestamp)

    def __len__(self) -> int:
        return len(self._entries)


# ── Limiter ──────────────────────────────────────────────────────────


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        max_calls: int = 10,
        window_seconds: float = 60.0,
        tool_limits: Mapping[str, WindowLimit] = DEFAULT_TOOL_LIMITS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_calls < 1 or window_seconds <= 0:
            raise ValueError("max_calls must be >= 1 and window_seconds > 0")
        self._store = store
        self._global = WindowLimit(max_calls, window_seconds)
        self._tool_limits = dict(tool_limits)
        self._clock = clock

    def _windows(self, customer_id: str, tool_name: str) -> list[tuple[str, WindowLimit]]:
        windows = [(customer_id, self._global)]
        tool_limit = self._tool_limits.get(tool_name)
        if tool_limit is not None:
            windows.append((f"{customer_id}:{tool_name}", tool_limit))
        return windows

    def check_rate_limit(self, customer_id: str, tool_name: str) -> RateLimitDecision:
        """Allow and record the call, or deny it with the time to wait.

        Denied calls are not recorded, so a customer who keeps retrying is
        not pushed further back.
        """
        if not customer_id:
            raise ValueError("customer_id must be a non-empty string")
        if not tool_name:
            raise ValueError("tool_name must be a non-empty string")

        now = self._clock()
        windows = self._windows(customer_id, tool_name)
        try:
            retry_after = 0.0
            for key, limit in windows:
                recent = self._store.recent(key, now, limit.window_seconds)
                if len(recent) >= limit.max_calls:
                    # The window frees up when its oldest counted call expires.
                    oldest = recent[len(recent) - limit.max_calls]
                    retry_after = max(retry_after, oldest + limit.window_seconds - now)
            if retry_after > 0:
                retry_ms = max(1, math.ceil(retry_after * 1000))
                logger.info(
                    "Rate limit hit for %s on %s (retry in %dms)", customer_id, tool_name, retry_ms,
                )
                return RateLimitDecision(allowed=False, retry_after_ms=retry_ms)

            for key, _ in windows:
                self._store.record(key, now)
        except Exception:
            logger.warning(
                "Rate-limit store unavailable for %s; allowing %s", customer_id, tool_name,
                exc_info=True,
            )
        return RateLimitDecision(allowed=True)

"""Data-store clients for the marketplace tables.

The agent treats the marketplace database as a row store reached through
``select`` / ``insert`` / ``update`` / ``rpc``.  Two implementations:

* :class:`SupabaseDataStore` — async HTTP client for Supabase's PostgREST
  API with retry logic and timeout handling.  Row-level consistency (order
  placement, insight merges) is arbitrated by the database itself.
* :class:`InMemoryDataStore` — the same contract over Python dicts, used by
  the CLI demo and the test-suite.

Filters are structured :class:`Filter` objects so that both backends
evaluate exactly the same predicates.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from engezna_agent.errors import DataStoreError
from engezna_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0

Row = dict[str, Any]


# ── Filters ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Filter:
    """A single PostgREST-style predicate (``column=op.value``)."""

    column: str
    op: str
    value: Any

    # PostgREST rendering

    def to_param(self) -> tuple[str, str]:
        if self.op == "or":
            clauses = ",".join(f"{f.column}.{f._expression(nested=True)}" for f in self.value)
            return "or", f"({clauses})"
        return self.column, self._expression()

    def _expression(self, nested: bool = False) -> str:
        """Render ``op.value``; inside ``or=(...)`` reserved characters are quoted."""
        if self.op == "in":
            return "in.(" + ",".join(_quote(v) for v in self.value) + ")"
        if self.op == "ilike":
            pattern = str(self.value).replace("%", "*")
            return "ilike." + (_quote(pattern) if nested else pattern)
        return f"{self.op}.{_quote(self.value) if nested else _render(self.value)}"

    # In-memory evaluation

    def matches(self, row: Row) -> bool:
        if self.op == "or":
            return any(f.matches(row) for f in self.value)
        actual = row.get(self.column)
        if self.op == "eq":
            return _same(actual, self.value)
        if self.op == "in":
            return any(_same(actual, v) for v in self.value)
        if self.op == "ilike":
            return actual is not None and _like_regex(str(self.value)).search(str(actual)) is not None
        if actual is None:
            return False
        if self.op == "gte":
            return actual >= self.value
        if self.op == "lte":
            return actual <= self.value
        raise ValueError(f"Unsupported filter operator: {self.op}")


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _quote(value: Any) -> str:
    text = _render(value)
    if any(ch in text for ch in ',()"'):
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return text


def _same(actual: Any, expected: Any) -> bool:
    if isinstance(expected, bool) or isinstance(actual, bool):
        return actual is expected
    return actual == expected or (actual is not None and str(actual) == str(expected))


def _like_regex(pattern: str) -> re.Pattern[str]:
    parts = [re.escape(p) for p in pattern.split("%")]
    return re.compile("^" + ".*".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def ilike(column: str, pattern: str) -> Filter:
    return Filter(column, "ilike", pattern)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def any_of(*filters: Filter) -> Filter:
    return Filter("", "or", tuple(filters))


# ── Interface ────────────────────────────────────────────────────────


class DataStore(ABC):
    """Async row store over the marketplace tables."""

    @abstractmethod
    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]: ...

    @abstractmethod
    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int: ...

    @abstractmethod
    async def insert(self, table: str, rows: Row | list[Row]) -> list[Row]: ...

    @abstractmethod
    async def update(self, table: str, values: Row, *, filters: Sequence[Filter]) -> list[Row]: ...

    @abstractmethod
    async def rpc(self, function: str, params: Row) -> Any: ...

    async def select_one(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
    ) -> Row | None:
        rows = await self.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None

    async def aclose(self) -> None:
        return None


# ── Supabase / PostgREST ─────────────────────────────────────────────


class SupabaseDataStore(DataStore):
    """Thin async wrapper around Supabase's PostgREST endpoint with retries.

    Timeouts, connection errors and 5xx responses are retried with
    exponential backoff; 4xx responses raise immediately.
    """

    def __init__(
        self,
        url: str,
        service_key: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = await self._client.request(
                    method, path, params=params, json=json_body, headers=headers,
                )
                elapsed = (time.perf_counter() - t0) * 1000
                if response.status_code >= 500:
                    raise DataStoreError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    metrics.record_failure(
                        "supabase", operation,
                        error_type=f"http_{response.status_code}", latency_ms=elapsed,
                    )
                    raise DataStoreError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success("supabase", operation, latency_ms=elapsed)
                return response

            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = exc
                metrics.record_failure("supabase", operation, error_type=type(exc).__name__)
                logger.warning(
                    "Supabase attempt %d/%d for %s failed (%s)",
                    attempt, MAX_RETRIES, operation, type(exc).__name__,
                )
            except DataStoreError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    metrics.record_failure(
                        "supabase", operation, error_type=f"http_{exc.status_code}",
                    )
                    logger.warning(
                        "Supabase server error on attempt %d/%d for %s",
                        attempt, MAX_RETRIES, operation,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise DataStoreError(
            f"Supabase request {operation} failed after {MAX_RETRIES} attempts: {last_error}"
        )

    @staticmethod
    def _params(filters: Sequence[Filter]) -> list[tuple[str, str]]:
        return [f.to_param() for f in filters]

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        params = [("select", " ".join(columns.split())), *self._params(filters)]
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", f"/{table}", params=params)
        return response.json()

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        response = await self._request(
            "HEAD",
            f"/{table}",
            params=[("select", "*"), *self._params(filters)],
            headers={"Prefer": "count=exact"},
        )
        # Content-Range looks like "0-24/57" or "*/0".
        content_range = response.headers.get("content-range", "*/0")
        total = content_range.rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else 0

    async def insert(self, table: str, rows: Row | list[Row]) -> list[Row]:
        response = await self._request(
            "POST", f"/{table}", json_body=rows,
            headers={"Prefer": "return=representation"},
        )
        return response.json()

    async def update(self, table: str, values: Row, *, filters: Sequence[Filter]) -> list[Row]:
        if not filters:
            raise ValueError("Refusing to update a whole table without filters")
        response = await self._request(
            "PATCH", f"/{table}", params=self._params(filters), json_body=values,
            headers={"Prefer": "return=representation"},
        )
        return response.json()

    async def rpc(self, function: str, params: Row) -> Any:
        response = await self._request("POST", f"/rpc/{function}", json_body=params)
        return response.json() if response.content else None

    async def aclose(self) -> None:
        await self._client.aclose()


# ── In-memory implementation ─────────────────────────────────────────

RpcHandler = Callable[[Row], Awaitable[Any]]


class InMemoryDataStore(DataStore):
    """Dict-backed store honouring the same filters as PostgREST.

    Column projections and embedded joins are ignored: full rows are
    returned.  ``operations`` records every call so callers can assert which
    tables were read or written.
    """

    WRITE_OPERATIONS = frozenset({"insert", "update", "rpc:place_customer_order"})

    def __init__(self, tables: dict[str, list[Row]] | None = None):
        self._tables: dict[str, list[Row]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self._lock = threading.Lock()
        self.operations: list[tuple[str, str]] = []
        self._rpcs: dict[str, RpcHandler] = {
            "place_customer_order": self._place_customer_order,
            "match_menu_items": self._match_menu_items,
        }

    # ── Introspection ────────────────────────────────────────────────

    def rows(self, table: str) -> list[Row]:
        with self._lock:
            return [dict(row) for row in self._tables.get(table, [])]

    @property
    def writes(self) -> list[tuple[str, str]]:
        return [op for op in self.operations if op[0] in self.WRITE_OPERATIONS]

    def register_rpc(self, name: str, handler: RpcHandler) -> None:
        self._rpcs[name] = handler

    # ── DataStore API ────────────────────────────────────────────────

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        self.operations.append(("select", table))
        with self._lock:
            rows = [dict(r) for r in self._tables.get(table, []) if all(f.matches(r) for f in filters)]
        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            rows = present + missing
        return rows[:limit] if limit is not None else rows

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        self.operations.append(("count", table))
        with self._lock:
            return sum(1 for r in self._tables.get(table, []) if all(f.matches(r) for f in filters))

    async def insert(self, table: str, rows: Row | list[Row]) -> list[Row]:
        self.operations.append(("insert", table))
        batch = [rows] if isinstance(rows, dict) else rows
        stored = [self._with_defaults(row) for row in batch]
        with self._lock:
            existing = self._tables.setdefault(table, [])
            ids = {r.get("id") for r in existing}
            if any(row["id"] in ids for row in stored):
                raise DataStoreError(f"Duplicate key in {table}", status_code=409)
            existing.extend(stored)
        return [dict(row) for row in stored]

    async def update(self, table: str, values: Row, *, filters: Sequence[Filter]) -> list[Row]:
        if not filters:
            raise ValueError("Refusing to update a whole table without filters")
        self.operations.append(("update", table))
        updated: list[Row] = []
        with self._lock:
            for row in self._tables.get(table, []):
                if all(f.matches(row) for f in filters):
                    row.update(values)
                    updated.append(dict(row))
        return updated

    async def rpc(self, function: str, params: Row) -> Any:
        self.operations.append((f"rpc:{function}", function))
        handler = self._rpcs.get(function)
        if handler is None:
            raise DataStoreError(f"Unknown function {function}", status_code=404)
        return await handler(params)

    # ── Built-in functions ───────────────────────────────────────────

    @staticmethod
    def _with_defaults(row: Row) -> Row:
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", datetime.now(UTC).isoformat())
        return stored

    async def _place_customer_order(self, params: Row) -> Row:
        """Insert an order and its lines as one unit."""
        order = self._with_defaults({
            "customer_id": params["customer_id"],
            "provider_id": params["provider_id"],
            "address_id": params.get("address_id"),
            "status": "pending",
            "payment_method": params.get("payment_method", "cash"),
            "notes": params.get("notes"),
            "subtotal": params["subtotal"],
            "delivery_fee": params.get("delivery_fee", 0),
            "total": params["total"],
        })
        order["order_number"] = f"ENG-{order['id'][:6].upper()}"
        lines = [
            self._with_defaults({**line, "order_id": order["id"]})
            for line in params["items"]
        ]
        with self._lock:
            self._tables.setdefault("orders", []).append(order)
            self._tables.setdefault("order_items", []).extend(lines)
        return {key: order[key] for key in ("id", "order_number", "status", "total")}

    async def _match_menu_items(self, params: Row) -> list[Row]:
        """Cosine-similarity search over ``menu_items.embedding``."""
        query = params["query_embedding"]
        threshold = params.get("match_threshold", 0.0)
        provider_ids = params.get("provider_ids")
        scored: list[Row] = []
        for row in self.rows("menu_items"):
            vector = row.get("embedding")
            if not vector or not row.get("is_available", True):
                continue
            if provider_ids and row.get("provider_id") not in provider_ids:
                continue
            similarity = _cosine(query, vector)
            if similarity >= threshold:
                item = {k: v for k, v in row.items() if k != "embedding"}
                scored.append({**item, "similarity": similarity})
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[: params.get("match_count", 10)]


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0

"""Operational counters for the Engezna agent, published to CloudWatch.

Two families of data points are kept:

* ``ExternalAPI/*``: one request counter per call to Anthropic, OpenAI or
  Supabase, an error counter keyed by exception type, and call latency.
* ``AgentTool/*``: one execution counter per tool dispatch, keyed by the
  result status (``ok`` or the error kind), plus tool latency.

Points are buffered in memory. With ``METRICS_ENABLED=true`` a daemon
thread ships them every ``FLUSH_INTERVAL_SECONDS``; otherwise ``flush``
only empties the buffer.
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "EngeznaAgent"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit


def _dims(**pairs: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in pairs.items()]


def _point(name: str, dims: list[dict[str, str]], value: float, at: datetime, unit: str = "Count") -> dict[str, Any]:
    return {"MetricName": name, "Dimensions": dims, "Timestamp": at, "Value": value, "Unit": unit}


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class MetricsClient:
    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None
        self._stop = threading.Event()
        if enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Recording ─────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        at = datetime.now(UTC)
        self._extend(
            _point("ExternalAPI/RequestCount", _dims(Service=service, Status="success"), 1, at),
            _point("ExternalAPI/Latency", _dims(Service=service, Operation=operation), latency_ms, at, "Milliseconds"),
        )
        logger.debug("%s %s ok in %.1fms", service, operation, latency_ms)

    def record_failure(self, service: str, operation: str, error_type: str, latency_ms: float = 0) -> None:
        """Count a failed call; latency is only recorded when it was measured."""
        at = datetime.now(UTC)
        points = [
            _point("ExternalAPI/RequestCount", _dims(Service=service, Status="failure"), 1, at),
            _point("ExternalAPI/ErrorCount", _dims(Service=service, ErrorType=error_type), 1, at),
        ]
        if latency_ms > 0:
            points.append(
                _point("ExternalAPI/Latency", _dims(Service=service, Operation=operation), latency_ms, at, "Milliseconds")
            )
        self._extend(*points)
        logger.debug("%s %s failed (%s) after %.1fms", service, operation, error_type, latency_ms)

    @contextmanager
    def timed(self, service: str, operation: str) -> Iterator[None]:
        """Time the enclosed external call and record its outcome.

        Exceptions are counted under their class name and re-raised.
        """
        started = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record_failure(service, operation, type(exc).__name__, latency_ms=_elapsed_ms(started))
            raise
        self.record_success(service, operation, latency_ms=_elapsed_ms(started))

    def record_tool(self, tool_name: str, ok: bool, latency_ms: float, error_kind: str | None = None) -> None:
        at = datetime.now(UTC)
        status = "ok" if ok else (error_kind or "error")
        self._extend(
            _point("AgentTool/ExecutionCount", _dims(Tool=tool_name, Status=status), 1, at),
            _point("AgentTool/Latency", _dims(Tool=tool_name), latency_ms, at, "Milliseconds"),
        )
        logger.debug("tool %s -> %s in %.1fms", tool_name, status, latency_ms)

    # ── Shipping ──────────────────────────────────────────────────────

    def flush(self) -> int:
        """Drain the buffer; returns how many points reached CloudWatch."""
        with self._lock:
            pending, self._buffer = self._buffer, []
        if not pending:
            return 0
        if not self._enabled:
            logger.debug("Dropping %d metric points (publishing disabled)", len(pending))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for start in range(0, len(pending), MAX_BATCH_SIZE):
                batch = pending[start : start + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=batch)
                sent += len(batch)
        except Exception:
            logger.exception("Publishing metrics failed after %d of %d points", sent, len(pending))
        else:
            logger.info("Published %d metric points", sent)
        return sent

    def close(self) -> None:
        """Stop the background publisher and ship what is left."""
        self._stop.set()
        self.flush()

    def _extend(self, *points: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.extend(points)

    def _start_flush_thread(self) -> None:
        def publish_until_stopped() -> None:
            while not self._stop.wait(FLUSH_INTERVAL_SECONDS):
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics publisher iteration failed")

        threading.Thread(target=publish_until_stopped, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)
        logger.info("Publishing metrics every %ds", FLUSH_INTERVAL_SECONDS)


metrics = MetricsClient()

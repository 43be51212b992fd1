"""Error taxonomy for the agent core.

``ErrorKind`` values travel to the model inside failed ``ToolResult``
payloads and into logs / metrics.  They are never shown to the customer.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    UNKNOWN_TOOL = "unknown_tool"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PERMISSION_DENIED = "permission_denied"
    UPSTREAM_FAILURE = "upstream_failure"
    INVALID_STATE = "invalid_state"
    LOOP_LIMIT_EXCEEDED = "loop_limit_exceeded"


class AgentError(Exception):
    """Base class for errors raised inside the agent core."""

    kind: ErrorKind = ErrorKind.UPSTREAM_FAILURE


# ── Tool-level business errors ───────────────────────────────────────
# Raised by tool executors and converted into failed ToolResults at the
# registry boundary, so they never escape a tool call.


class ToolError(AgentError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(ToolError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(ToolError):
    kind = ErrorKind.CONFLICT


class PermissionDeniedError(ToolError):
    kind = ErrorKind.PERMISSION_DENIED


class InvalidStateError(ToolError):
    kind = ErrorKind.INVALID_STATE


# ── Infrastructure errors ────────────────────────────────────────────


class DataStoreError(AgentError):
    """Raised when a data-store call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_not_found(self) -> bool:
        # PostgREST answers 406 when a single-row request matches nothing.
        return self.status_code in (404, 406)

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class UpstreamFailure(AgentError):
    """Raised by a runner when the LLM vendor call fails.

    ``tools_executed`` tells the orchestrator whether the turn already had
    side effects, which decides if a retry is safe.
    """

    def __init__(self, vendor: str, detail: str, *, tools_executed: int = 0):
        self.vendor = vendor
        self.detail = detail
        self.tools_executed = tools_executed
        super().__init__(f"{vendor} call failed: {detail}")

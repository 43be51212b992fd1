"""Per-call pipeline between the model and the tool registry.

Every tool call the model requests goes, in order, through:

  1. the customer's rate limit,
  2. parameter validation,
  3. the per-turn availability gate (tools not offered this turn are unknown),
  4. execution.

Each stage that rejects the call produces a failed ``ToolResult`` instead of
raising, so the model can recover in its next response.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import Any

from engezna_agent.errors import ErrorKind
from engezna_agent.models import ToolContext, ToolResult
from engezna_agent.services.rate_limiter import RateLimiter
from engezna_agent.tools.common import localized
from engezna_agent.tools.registry import execute_agent_tool
from engezna_agent.tools.validation import validate_tool_params

logger = logging.getLogger(__name__)


class ToolDispatcher:
    def __init__(self, rate_limiter: RateLimiter):
        self._rate_limiter = rate_limiter

    async def dispatch(
        self,
        tool_name: str,
        raw_args: Any,
        ctx: ToolContext,
        offered: Collection[str],
    ) -> ToolResult:
        decision = self._rate_limiter.check_rate_limit(ctx.rate_limit_key, tool_name)
        if not decision.allowed:
            seconds = max(1, round((decision.retry_after_ms or 0) / 1000))
            return ToolResult.failure(
                ErrorKind.RATE_LIMITED,
                localized(
                    ctx,
                    f"طلبات كتير ورا بعض، استنى {seconds} ثانية وجرب تاني",
                    f"Too many requests; ask the customer to wait {seconds} seconds and try again",
                ),
            )

        validation = validate_tool_params(tool_name, raw_args)
        if not validation.valid:
            logger.info(
                "Rejected %s call: %s", tool_name,
                ", ".join(f"{e.field}: {e.message}" for e in validation.errors),
            )
            return validation.to_tool_result()

        if tool_name not in offered:
            logger.info("Model called %s, which is not offered this turn", tool_name)
            return ToolResult.failure(
                ErrorKind.UNKNOWN_TOOL, f"Tool {tool_name} is not available in this conversation",
            )

        return await execute_agent_tool(tool_name, validation.params, ctx)

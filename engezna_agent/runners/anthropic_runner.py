"""Claude (Anthropic Messages API) runner."""

from __future__ import annotations

import asyncio
from typing import Any

import anthropic
import httpx
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import ToolMessage

from engezna_agent.config import (
    ANTHROPIC_MODEL_NAME,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    require_env,
)
from engezna_agent.models import ToolResult
from engezna_agent.runners.base import AgentRunner


def build_anthropic_llm() -> ChatAnthropic:
    return ChatAnthropic(
        model=ANTHROPIC_MODEL_NAME,
        api_key=require_env("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
        temperature=LLM_TEMPERATURE,
        max_tokens=LLM_MAX_TOKENS,
        timeout=LLM_TIMEOUT_SECONDS,
        max_retries=0,  # AgentHandler owns the retry policy
    )


class AnthropicRunner(AgentRunner):
    vendor = "anthropic"
    upstream_errors = (anthropic.APIError, httpx.HTTPError, asyncio.TimeoutError)

    def format_tool(self, name: str, description: str, parameters: dict[str, Any]) -> dict[str, Any]:
        return {"name": name, "description": description, "input_schema": parameters}

    def extract_text(self, content: Any) -> str:
        # Claude answers with a list of content blocks; only text blocks are shown.
        if isinstance(content, str):
            return content
        parts = []
        for block in content or []:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") in ("text", "text_delta"):
                parts.append(block.get("text", ""))
        return "".join(parts)

    def tool_message(self, call: dict[str, Any], result: ToolResult) -> ToolMessage:
        return ToolMessage(
            content=result.to_model_payload(),
            tool_call_id=call["id"],
            name=call["name"],
            status="success" if result.ok else "error",
        )

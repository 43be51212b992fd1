"""OpenAI (Chat Completions) runner."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import openai
from langchain_openai import ChatOpenAI

from engezna_agent.config import (
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    OPENAI_MODEL_NAME,
    require_env,
)
from engezna_agent.runners.base import AgentRunner


def build_openai_llm() -> ChatOpenAI:
    return ChatOpenAI(
        model=OPENAI_MODEL_NAME,
        api_key=require_env("OPENAI_API_KEY"),
        temperature=LLM_TEMPERATURE,
        max_tokens=LLM_MAX_TOKENS,
        timeout=LLM_TIMEOUT_SECONDS,
        max_retries=0,  # AgentHandler owns the retry policy
    )


class OpenAIRunner(AgentRunner):
    vendor = "openai"
    upstream_errors = (openai.APIError, httpx.HTTPError, asyncio.TimeoutError)

    def format_tool(self, name: str, description: str, parameters: dict[str, Any]) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": name, "description": description, "parameters": parameters},
        }

    def extract_text(self, content: Any) -> str:
        if isinstance(content, str):
            return content
        # Responses-style content parts
        return "".join(
            part.get("text", "") for part in content or []
            if isinstance(part, dict) and part.get("type") in ("text", "output_text")
        )

"""Thin wrapper around the Anthropic Messages API."""

from __future__ import annotations

import logging
import os
from typing import Any

import anthropic

from models import ContentBlock

REQUEST_TIMEOUT_SECONDS = float(os.getenv("LLM_REQUEST_TIMEOUT_SECONDS", "120"))

LOGGER = logging.getLogger(__name__)

_client: anthropic.Anthropic | None = None


def get_client() -> anthropic.Anthropic:
    """Return a cached Anthropic client; SDK-level retries are disabled (we retry ourselves)."""
    global _client
    if _client is None:
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise RuntimeError("ANTHROPIC_API_KEY environment variable is required")
        _client = anthropic.Anthropic(api_key=api_key, max_retries=0)
    return _client


def complete(
    system: str,
    messages: list[dict[str, str]],
    model: str,
    max_tokens: int,
    temperature: float,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> list[ContentBlock]:
    """Call Claude and return the response content as provider-neutral blocks.

    Args:
        system: System prompt, sent as a cacheable block since it is static
                across pair evaluations.
        messages: Conversation turns with "role" ("user"/"assistant") and "content".
        timeout: Seconds before the HTTP request is abandoned.
    """
    client = get_client()
    kwargs: dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "system": [
            {"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}
        ],
        "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        "timeout": timeout,
    }

    LOGGER.debug("Calling Claude model=%s max_tokens=%s", kwargs["model"], max_tokens)
    response = client.messages.create(**kwargs)
    LOGGER.debug("Claude stop_reason=%s", response.stop_reason)
    return [
        ContentBlock(type=block.type, text=getattr(block, "text", "") or "")
        for block in response.content
    ]

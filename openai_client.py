"""OpenAI chat-completions adapter exposing the same completion shape as anthropic_client."""

from __future__ import annotations

import logging
import os

from openai import OpenAI

from models import ContentBlock

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-5.2")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("LLM_REQUEST_TIMEOUT_SECONDS", "120"))

LOGGER = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    global _client
    if _client is None:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable is required")
        _client = OpenAI(api_key=api_key, max_retries=0)
    return _client


def complete(
    system: str,
    messages: list[dict[str, str]],
    model: str,
    max_tokens: int,
    temperature: float,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> list[ContentBlock]:
    """Call OpenAI and wrap the reply in a single text block.

    An empty reply yields no blocks, which callers treat as a fatal response.
    """
    client = get_client()
    LOGGER.debug("Calling OpenAI model=%s max_completion_tokens=%s", model, max_tokens)
    response = client.chat.completions.create(
        model=model,
        temperature=temperature,
        max_completion_tokens=max_tokens,
        messages=[{"role": "system", "content": system}, *messages],
        timeout=timeout,
    )

    content = response.choices[0].message.content
    if not content:
        return []
    return [ContentBlock(type="text", text=content)]

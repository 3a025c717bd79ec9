"""LLM call lifecycle that turns one eligible pair into validated, de-duplicated proposals.

Two retry policies compose here:

- parse retry (this module): a response that is not a JSON array gets exactly
  one more attempt, with the raw reply and stricter formatting instructions
  appended to the conversation. Invalid or duplicate elements are dropped,
  never retried.
- transient retry (retry_policy.call_with_retry): wraps every individual LLM
  call and retries rate-limit, server and connection errors with backoff.

Worst case is 2 x api_max_retries physical calls per pair.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Sequence

import anthropic_client
from matching_prompt import (
    MATCHING_MODEL_CONFIG,
    MatchingOutputError,
    build_matching_messages,
    build_matching_retry_message,
    deduplicate_proposals,
    filter_valid_proposals,
    parse_matching_output,
)
from models import ContentBlock, PairContext, ProposalGenerationResult
from retry_policy import call_with_retry, check_cancelled

MAX_PARSE_ATTEMPTS = 2

LOGGER = logging.getLogger(__name__)

CompleteFn = Callable[..., Sequence[ContentBlock]]


class EmptyResponseError(RuntimeError):
    """The LLM response had no text content blocks."""


def extract_text_content(blocks: Sequence[ContentBlock]) -> str:
    """Concatenate all text blocks; raise EmptyResponseError if there are none."""
    texts = [block.text for block in blocks if block.type == "text"]
    if not texts:
        kinds = ", ".join(block.type for block in blocks) or "none"
        raise EmptyResponseError(
            f"LLM response contained no text content blocks (block types: {kinds})"
        )
    return "".join(texts)


def generate_proposals_for_pair(
    pair_context: PairContext,
    complete: CompleteFn | None = None,
    model: str | None = None,
    max_attempts: int = 2,
    api_max_retries: int = 3,
    api_retry_base_delay_ms: float = 1000,
    request_timeout_seconds: float | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ProposalGenerationResult:
    """Generate collaboration proposals for one pair.

    Args:
        pair_context: The eligible pair plus its assembled prompt input.
        complete: LLM completion function with the anthropic_client.complete
            signature. Defaults to Claude.
        model: Model name to request and record; defaults to MATCHING_MODEL_CONFIG.
        max_attempts: Parse attempts (1 or 2; values above 2 are clamped).
        api_max_retries: Total attempts per LLM call for transient errors.
        api_retry_base_delay_ms: Backoff base; 0 retries immediately.
        request_timeout_seconds: Per-call HTTP timeout passed to `complete`;
            defaults to MATCHING_MODEL_CONFIG.timeout_seconds.
        cancel_event: Set by the caller to abort before the next call, during
            a backoff wait, or once an in-flight call returns. A set event
            raises OperationCancelled and the reply is discarded unparsed.

    Returns:
        A ProposalGenerationResult. Unparseable output yields an empty result,
        never an exception. Fatal API errors and exhausted transient retries
        propagate.
    """
    complete = complete or anthropic_client.complete
    model = model or MATCHING_MODEL_CONFIG.model
    timeout = request_timeout_seconds or MATCHING_MODEL_CONFIG.timeout_seconds
    max_attempts = min(max(1, max_attempts), MAX_PARSE_ATTEMPTS)
    pair = pair_context.pair
    pair_label = f"{pair.researcher_a_id}/{pair.researcher_b_id}"

    system, user = build_matching_messages(pair_context.input)
    messages: list[dict[str, str]] = [{"role": "user", "content": user}]

    def call_llm() -> str:
        blocks = complete(
            system,
            list(messages),
            model=model,
            max_tokens=MATCHING_MODEL_CONFIG.max_tokens,
            temperature=MATCHING_MODEL_CONFIG.temperature,
            timeout=timeout,
        )
        return extract_text_content(blocks)

    for attempt in range(1, max_attempts + 1):
        text = call_with_retry(
            call_llm,
            max_attempts=api_max_retries,
            base_delay_ms=api_retry_base_delay_ms,
            sleep=sleep,
            cancel_event=cancel_event,
            label=f"LLM call for pair {pair_label}",
        )
        check_cancelled(cancel_event)
        try:
            items = parse_matching_output(text)
        except MatchingOutputError as exc:
            LOGGER.warning(
                "Unparseable proposal output for pair %s on attempt %s/%s: %s",
                pair_label,
                attempt,
                max_attempts,
                exc,
            )
            if attempt == max_attempts:
                return ProposalGenerationResult(
                    proposals=[],
                    discarded=0,
                    deduplicated=0,
                    attempts=attempt,
                    retried=attempt > 1,
                    raw_count=0,
                    model=model,
                )
            messages.append({"role": "assistant", "content": text})
            messages.append({"role": "user", "content": build_matching_retry_message()})
            continue

        filtered = filter_valid_proposals(items)
        for index, errors in enumerate(filtered.errors):
            if errors:
                LOGGER.info(
                    "Discarded proposal %s for pair %s: %s", index, pair_label, "; ".join(errors)
                )
        deduped = deduplicate_proposals(filtered.valid, pair_context.input.existing_proposals)
        return ProposalGenerationResult(
            proposals=deduped.unique,
            discarded=filtered.discarded,
            deduplicated=deduped.duplicates,
            attempts=attempt,
            retried=attempt > 1,
            raw_count=len(items),
            model=model,
        )

    raise AssertionError("unreachable")

"""Transient-error retry policy wrapped around every individual LLM call."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, TypeVar

import anthropic
import openai

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429})

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    anthropic.APIConnectionError,  # includes APITimeoutError
    openai.APIConnectionError,
    ConnectionError,
    TimeoutError,
)

_CONNECTION_MESSAGES = (
    "econnrefused",
    "econnreset",
    "etimedout",
    "connection reset",
    "connection refused",
    "timed out",
)


class OperationCancelled(RuntimeError):
    """The caller's cancellation signal was set before the operation finished."""


def is_retryable_error(exc: BaseException) -> bool:
    """Classify an LLM call failure as transient.

    Retryable: HTTP-style status 408, 429 or >= 500, and connection/timeout
    errors. Everything else (auth, bad request, empty responses) is fatal.
    """
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status in RETRYABLE_STATUS_CODES or status >= 500

    if isinstance(exc, _CONNECTION_ERRORS):
        return True

    message = str(exc).lower()
    return any(token in message for token in _CONNECTION_MESSAGES)


def backoff_delay_ms(attempt: int, base_delay_ms: float, jitter: float) -> float:
    """Delay before retrying after `attempt` (1-based): base * 2^(attempt-1) plus 0-25% jitter.

    `jitter` is a value in [0, 1) scaled to the 25% band.
    """
    exponential = base_delay_ms * (2 ** (attempt - 1))
    return exponential + exponential * 0.25 * jitter


def check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Operation cancelled by caller")


def call_with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    base_delay_ms: float = 1000,
    *,
    sleep: Callable[[float], None] = time.sleep,
    jitter: Callable[[], float] = random.random,
    cancel_event: threading.Event | None = None,
    label: str = "LLM call",
) -> T:
    """Call `fn`, retrying transient failures with exponential backoff.

    Non-retryable errors propagate on the first failure. After `max_attempts`
    total attempts the last error is re-raised. When `cancel_event` is given,
    the backoff wait is interruptible and a set event raises OperationCancelled.
    """
    max_attempts = max(1, max_attempts)
    for attempt in range(1, max_attempts + 1):
        check_cancelled(cancel_event)
        try:
            return fn()
        except Exception as exc:
            if attempt == max_attempts or not is_retryable_error(exc):
                raise

            wait_ms = backoff_delay_ms(attempt, base_delay_ms, jitter()) if base_delay_ms > 0 else 0
            LOGGER.warning(
                "%s attempt %s/%s failed (%s). Retrying in %sms...",
                label,
                attempt,
                max_attempts,
                exc,
                round(wait_ms),
            )
            if wait_ms <= 0:
                continue
            if cancel_event is not None:
                if cancel_event.wait(wait_ms / 1000):
                    raise OperationCancelled("Operation cancelled during retry backoff") from exc
            else:
                sleep(wait_ms / 1000)

    raise AssertionError("unreachable")

"""Shared helper functions used across multiple pipeline stages.

Centralises the retry policy for provider calls and the run identity
helpers used by the orchestrator and the run summary.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from forest_agreement.core.exceptions import PipelineError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("forest_agreement.utils.helpers")

T = TypeVar("T")

#: Upper bound for a single backoff wait.
MAX_BACKOFF_SECONDS = 60.0


def backoff_seconds(attempt: int, base: float, cap: float = MAX_BACKOFF_SECONDS) -> float:
    """Exponential backoff for the *attempt*-th retry (1-based), capped."""
    return min(cap, base * (2 ** (attempt - 1)))


def call_with_retry(
    func: Callable[[], T],
    *,
    max_retries: int,
    retry_base_seconds: float,
    description: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *func*, retrying ``retryable`` pipeline errors with capped backoff.

    Only ``PipelineError`` instances with ``retryable=True`` are retried.
    Validation, configuration and contract errors propagate on the first
    attempt.

    Args:
        func: Zero-argument callable to invoke.
        max_retries: Retries after the first attempt (0 disables retrying).
        retry_base_seconds: Backoff base; the n-th retry waits
            ``base * 2**(n-1)`` seconds, capped at ``MAX_BACKOFF_SECONDS``.
        description: Label used in log messages.
        sleep: Wait function (injected in tests).

    Returns:
        Whatever *func* returns.

    Raises:
        PipelineError: The last error once retries are exhausted, or the
            first non-retryable error.
    """
    attempt = 0
    while True:
        try:
            return func()
        except PipelineError as exc:
            if not exc.retryable or attempt >= max_retries:
                if exc.retryable:
                    logger.error(
                        "Retries exhausted | call=%s | retries=%d | error=%s",
                        description,
                        attempt,
                        exc,
                    )
                raise
            attempt += 1
            wait = backoff_seconds(attempt, retry_base_seconds)
            logger.warning(
                "Transient error (retry %d/%d) | call=%s | backoff=%.1fs | error=%s",
                attempt,
                max_retries,
                description,
                wait,
                exc,
            )
            sleep(wait)


def new_run_id() -> str:
    """Return a short unique run identifier."""
    return uuid.uuid4().hex[:12]


def utc_timestamp() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()

"""Tests for shared helpers.

Covers:
- Capped exponential backoff
- Retry of transient pipeline errors only
- Run identity helpers
"""

from __future__ import annotations

from datetime import datetime

import pytest

from forest_agreement.core.exceptions import PipelineError, TransientError, ValidationError
from forest_agreement.utils.helpers import (
    MAX_BACKOFF_SECONDS,
    backoff_seconds,
    call_with_retry,
    new_run_id,
    utc_timestamp,
)


class TestBackoff:
    """Exponential backoff schedule."""

    def test_doubles_per_attempt(self) -> None:
        assert [backoff_seconds(n, 2.0) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_capped(self) -> None:
        assert backoff_seconds(20, 5.0) == MAX_BACKOFF_SECONDS

    def test_zero_base(self) -> None:
        assert backoff_seconds(4, 0.0) == 0.0


class _Flaky:
    """Callable failing with the given errors before returning ``"ok"``."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestCallWithRetry:
    """Retry policy for provider calls."""

    def test_success_first_try(self) -> None:
        func = _Flaky()
        waits: list[float] = []
        assert call_with_retry(
            func, max_retries=3, retry_base_seconds=1.0, sleep=waits.append
        ) == "ok"
        assert func.calls == 1
        assert waits == []

    def test_transient_errors_are_retried(self) -> None:
        func = _Flaky(TransientError("timeout"), TransientError("timeout"))
        waits: list[float] = []
        result = call_with_retry(
            func, max_retries=3, retry_base_seconds=1.0, description="JRC", sleep=waits.append
        )
        assert result == "ok"
        assert func.calls == 3
        assert waits == [1.0, 2.0]

    def test_retries_exhausted(self) -> None:
        func = _Flaky(*(TransientError("timeout") for _ in range(5)))
        waits: list[float] = []
        with pytest.raises(TransientError):
            call_with_retry(func, max_retries=2, retry_base_seconds=0.5, sleep=waits.append)
        assert func.calls == 3
        assert waits == [0.5, 1.0]

    def test_non_retryable_propagates_immediately(self) -> None:
        func = _Flaky(ValidationError("bad geometry"))
        waits: list[float] = []
        with pytest.raises(ValidationError):
            call_with_retry(func, max_retries=5, retry_base_seconds=1.0, sleep=waits.append)
        assert func.calls == 1
        assert waits == []

    def test_retryable_flag_on_base_error(self) -> None:
        func = _Flaky(PipelineError("blip", retryable=True))
        assert call_with_retry(
            func, max_retries=1, retry_base_seconds=0.0, sleep=lambda _s: None
        ) == "ok"

    def test_zero_retries(self) -> None:
        func = _Flaky(TransientError("timeout"))
        with pytest.raises(TransientError):
            call_with_retry(func, max_retries=0, retry_base_seconds=1.0, sleep=lambda _s: None)
        assert func.calls == 1

    def test_other_exceptions_are_not_caught(self) -> None:
        func = _Flaky(KeyError("band"))
        with pytest.raises(KeyError):
            call_with_retry(func, max_retries=3, retry_base_seconds=0.0, sleep=lambda _s: None)


class TestRunIdentity:
    def test_run_ids_are_unique(self) -> None:
        ids = {new_run_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(run_id) == 12 for run_id in ids)

    def test_timestamp_is_utc_iso(self) -> None:
        parsed = datetime.fromisoformat(utc_timestamp())
        assert parsed.utcoffset() is not None
        assert parsed.utcoffset().total_seconds() == 0

"""
Property-based tests for the Retry Manager module.

Uses Hypothesis for property-based testing to verify exponential backoff
on transport faults and that non-transport errors are never retried.
"""

import asyncio

from hypothesis import given, settings
from hypothesis import strategies as st

from challenge_pipeline.config import RetryConfig
from challenge_pipeline.exceptions import MalformedChallengeError, TransportError
from challenge_pipeline.retry_manager import RetryManager, RetryResult


# Strategies for generating test data

@st.composite
def retry_config_strategy(draw) -> RetryConfig:
    """Generate valid RetryConfig objects."""
    return RetryConfig(
        max_retries=draw(st.integers(min_value=0, max_value=5)),
        base_delay_seconds=draw(st.floats(min_value=0.001, max_value=2.0)),
        max_delay_seconds=draw(st.floats(min_value=2.0, max_value=30.0)),
    )


transport_error_codes = st.sampled_from(["timeout", "network_error", "tls_error"])


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FlakyOperation:
    """Fails with the given errors in order, then returns value."""

    def __init__(self, errors: list[Exception], value: str = "ok") -> None:
        self._errors = list(errors)
        self._value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._value


class TestExponentialBackoffProperty:
    """
    **Feature: challenge-pipeline, Property 25: Exponential backoff on transport faults**

    *For any* run of transport faults, the delays between tries follow
    base_delay * 2^n capped at max_delay.
    """

    @given(config=retry_config_strategy(), code=transport_error_codes)
    @settings(max_examples=100, deadline=None)
    def test_delays_follow_exponential_schedule(self, config: RetryConfig, code: str) -> None:
        sleep = RecordingSleep()
        manager = RetryManager(config, sleep=sleep)
        errors = [TransportError(code=code, message="fault") for _ in range(config.max_retries + 1)]
        operation = FlakyOperation(errors)

        result = asyncio.run(manager.execute_with_retry(operation))

        assert not result.success
        assert result.attempts == config.max_retries + 1
        assert operation.calls == config.max_retries + 1
        assert isinstance(result.last_error, TransportError)

        expected = [
            min(config.base_delay_seconds * (2 ** n), config.max_delay_seconds)
            for n in range(config.max_retries)
        ]
        assert sleep.delays == expected, f"Expected {expected}, got {sleep.delays}"

    @given(config=retry_config_strategy(), attempt=st.integers(min_value=0, max_value=20))
    @settings(max_examples=100)
    def test_delay_never_exceeds_cap(self, config: RetryConfig, attempt: int) -> None:
        manager = RetryManager(config)

        delay = manager._calculate_delay(attempt)

        assert 0 < delay <= config.max_delay_seconds

    @given(config=retry_config_strategy(), data=st.data())
    @settings(max_examples=100, deadline=None)
    def test_recovers_after_transient_faults(self, config: RetryConfig, data) -> None:
        failures = data.draw(st.integers(min_value=0, max_value=config.max_retries))
        operation = FlakyOperation(
            [TransportError(code="network_error", message="reset") for _ in range(failures)],
            value="response",
        )
        manager = RetryManager(config, sleep=RecordingSleep())

        result = asyncio.run(manager.execute_with_retry(operation))

        assert result == RetryResult(success=True, result="response", attempts=failures + 1, last_error=None)


class TestNonRetryableErrorProperty:
    """
    **Feature: challenge-pipeline, Property 26: Only transport faults are retried**

    *For any* error that is not a TransportError, the manager stops after
    the first try and reports the error.
    """

    @given(config=retry_config_strategy())
    @settings(max_examples=50, deadline=None)
    def test_other_errors_stop_immediately(self, config: RetryConfig) -> None:
        sleep = RecordingSleep()
        error = MalformedChallengeError(code="missing_marker", message="no form")
        operation = FlakyOperation([error])

        result = asyncio.run(RetryManager(config, sleep=sleep).execute_with_retry(operation))

        assert not result.success
        assert result.attempts == 1
        assert result.last_error is error
        assert sleep.delays == []

    def test_custom_predicate(self) -> None:
        operation = FlakyOperation([ValueError("flaky"), ValueError("flaky")], value="done")
        manager = RetryManager(RetryConfig(max_retries=3), sleep=RecordingSleep())

        result = asyncio.run(
            manager.execute_with_retry(operation, is_retryable=lambda e: isinstance(e, ValueError))
        )

        assert result.success
        assert result.result == "done"
        assert result.attempts == 3

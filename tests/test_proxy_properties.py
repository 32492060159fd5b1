"""
Property-based tests for the proxy rotator.

Uses Hypothesis for property-based testing to verify rotation order, bans
after repeated failures, ban expiry and exhaustion.
"""

import asyncio
import random

import pytest
from hypothesis import given, settings, strategies as st

from challenge_pipeline.exceptions import ConfigurationError, ProxyExhaustedError
from challenge_pipeline.proxy import ProxyRotator


# Strategies for generating test data

@st.composite
def proxy_list_strategy(draw):
    """Generate a list of distinct proxy URLs."""
    ports = draw(st.lists(st.integers(min_value=1024, max_value=65535), min_size=1, max_size=8, unique=True))
    return [f"http://10.0.0.1:{port}" for port in ports]


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _next_n(rotator, count):
    async def run_test():
        return [await rotator.next_proxy() for _ in range(count)]

    return asyncio.run(run_test())


class TestRotationProperty:
    """
    **Feature: challenge-pipeline, Property 23: Proxy rotation**

    *For any* proxy list, sequential rotation visits every proxy once per
    cycle and random rotation only returns configured proxies.
    """

    @given(proxies=proxy_list_strategy(), cycles=st.integers(min_value=1, max_value=3))
    @settings(max_examples=100, deadline=None)
    def test_sequential_cycles(self, proxies, cycles):
        rotator = ProxyRotator(proxies)

        picked = _next_n(rotator, len(proxies) * cycles)

        assert picked == proxies * cycles

    @given(proxies=proxy_list_strategy(), seed=st.integers(min_value=0, max_value=1000))
    @settings(max_examples=50, deadline=None)
    def test_random_stays_in_list(self, proxies, seed):
        rotator = ProxyRotator(proxies, strategy="random", rng=random.Random(seed))

        assert set(_next_n(rotator, 20)) <= set(proxies)

    def test_duplicates_and_blanks_dropped(self):
        rotator = ProxyRotator(["http://a:1", "", "http://a:1", "http://b:2"])

        assert rotator.proxies == ["http://a:1", "http://b:2"]

    def test_invalid_settings(self):
        with pytest.raises(ConfigurationError):
            ProxyRotator(["http://a:1"], strategy="round-robin-ish")
        with pytest.raises(ConfigurationError):
            ProxyRotator(["http://a:1"], failure_threshold=0)


class TestBanProperty:
    """
    **Feature: challenge-pipeline, Property 24: Bans and exhaustion**

    *For any* threshold, a proxy is skipped once its consecutive failures
    reach it, the ban lifts after ban_seconds, and an empty pool raises
    ProxyExhaustedError.
    """

    @given(proxies=proxy_list_strategy(), threshold=st.integers(min_value=1, max_value=5))
    @settings(max_examples=100, deadline=None)
    def test_banned_proxy_skipped(self, proxies, threshold):
        clock = FakeClock()
        rotator = ProxyRotator(proxies, failure_threshold=threshold, clock=clock)
        banned = proxies[0]

        for _ in range(threshold):
            rotator.report_failure(banned)

        picked = _next_n(rotator, len(proxies) * 2) if len(proxies) > 1 else []
        assert banned not in picked
        assert rotator.available_count() == len(proxies) - 1

    @given(proxies=proxy_list_strategy())
    @settings(max_examples=50, deadline=None)
    def test_all_banned_is_exhausted(self, proxies):
        rotator = ProxyRotator(proxies, failure_threshold=1, clock=FakeClock())
        for proxy in proxies:
            rotator.report_failure(proxy)

        with pytest.raises(ProxyExhaustedError):
            _next_n(rotator, 1)

    def test_empty_pool_is_exhausted(self):
        with pytest.raises(ProxyExhaustedError):
            _next_n(ProxyRotator([]), 1)

    def test_ban_expires(self):
        clock = FakeClock()
        rotator = ProxyRotator(["http://a:1"], failure_threshold=1, ban_seconds=60.0, clock=clock)
        rotator.report_failure("http://a:1")
        assert rotator.available_count() == 0

        clock.now += 60.0

        assert _next_n(rotator, 1) == ["http://a:1"]
        assert rotator.stats("http://a:1").consecutive_failures == 0

    def test_success_resets_failures(self):
        rotator = ProxyRotator(["http://a:1"], failure_threshold=2, clock=FakeClock())
        rotator.report_failure("http://a:1")
        rotator.report_success("http://a:1")
        rotator.report_failure("http://a:1")

        stats = rotator.stats("http://a:1")
        assert stats.failures == 2
        assert stats.successes == 1
        assert rotator.available_count() == 1

    def test_unknown_proxy_reports_ignored(self):
        rotator = ProxyRotator(["http://a:1"])
        rotator.report_failure("http://unknown:9")
        rotator.report_success("http://unknown:9")

        assert rotator.available_count() == 1

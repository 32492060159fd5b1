"""
Proxy sources for the challenge pipeline.

The orchestrator only depends on ProxySource.next_proxy(). ProxyRotator is
the in-memory default: it cycles through a fixed list, bans a proxy for a
while after repeated failures and raises ProxyExhaustedError once every
proxy is banned.
"""

import asyncio
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from .exceptions import ConfigurationError, ProxyExhaustedError

SEQUENTIAL = "sequential"
RANDOM = "random"


class ProxySource(ABC):
    """Supplies proxy endpoints to the orchestrator."""

    @abstractmethod
    async def next_proxy(self) -> str:
        """
        Return the proxy to use for the next request.

        Raises:
            ProxyExhaustedError: If no usable proxy remains
        """

    def report_failure(self, proxy: str) -> None:
        """Called when a request through proxy was blocked or failed."""

    def report_success(self, proxy: str) -> None:
        """Called when a request through proxy reached the resource."""


@dataclass
class ProxyStats:
    """Usage counters for one proxy."""

    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    banned_until: Optional[float] = None


class ProxyRotator(ProxySource):
    """
    Rotates through a static proxy list.

    A proxy is banned for ban_seconds once its consecutive failures reach
    failure_threshold; a ban lifts on its own when the window passes.
    """

    def __init__(
        self,
        proxies: list[str],
        strategy: str = SEQUENTIAL,
        ban_seconds: float = 300.0,
        failure_threshold: int = 3,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if strategy not in (SEQUENTIAL, RANDOM):
            raise ConfigurationError(
                code="invalid_proxy_strategy",
                message=f"Unknown proxy rotation strategy '{strategy}'",
                details={"valid": [SEQUENTIAL, RANDOM]},
            )
        if failure_threshold < 1:
            raise ConfigurationError(
                code="invalid_proxy_threshold",
                message="failure_threshold must be at least 1",
                details={"failure_threshold": failure_threshold},
            )

        self._proxies: list[str] = []
        for proxy in proxies:
            if proxy and proxy not in self._proxies:
                self._proxies.append(proxy)
        self._stats: dict[str, ProxyStats] = {p: ProxyStats() for p in self._proxies}
        self._strategy = strategy
        self._ban_seconds = ban_seconds
        self._failure_threshold = failure_threshold
        self._rng = rng or random.Random()
        self._clock = clock
        self._index = 0
        self._lock = asyncio.Lock()

    @property
    def proxies(self) -> list[str]:
        return list(self._proxies)

    def stats(self, proxy: str) -> ProxyStats:
        return self._stats[proxy]

    def _available(self) -> list[str]:
        now = self._clock()
        available = []
        for proxy in self._proxies:
            stats = self._stats[proxy]
            if stats.banned_until is not None and stats.banned_until <= now:
                stats.banned_until = None
                stats.consecutive_failures = 0
            if stats.banned_until is None:
                available.append(proxy)
        return available

    def available_count(self) -> int:
        return len(self._available())

    async def next_proxy(self) -> str:
        async with self._lock:
            available = self._available()
            if not available:
                raise ProxyExhaustedError(
                    code="proxy_exhausted",
                    message="All proxies are banned or none are configured",
                    details={"total": len(self._proxies)},
                )
            if self._strategy == RANDOM:
                return self._rng.choice(available)
            proxy = available[self._index % len(available)]
            self._index = (self._index + 1) % len(available)
            return proxy

    def report_failure(self, proxy: str) -> None:
        stats = self._stats.get(proxy)
        if stats is None:
            return
        stats.failures += 1
        stats.consecutive_failures += 1
        if stats.consecutive_failures >= self._failure_threshold:
            stats.banned_until = self._clock() + self._ban_seconds

    def report_success(self, proxy: str) -> None:
        stats = self._stats.get(proxy)
        if stats is None:
            return
        stats.successes += 1
        stats.consecutive_failures = 0
        stats.banned_until = None

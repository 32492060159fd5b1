"""
Per-domain adaptive state.

Tracks, for every host the pipeline talks to, the recent attempt history,
consecutive failures, cooldown, an EWMA latency model used for adaptive
delays, the active browser fingerprint and the learned detector weight
adjustments. Mutations happen under one asyncio.Lock per host, so different
hosts never contend. Callers only ever receive DomainStateSnapshot copies.
"""

import asyncio
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Mapping, Optional

import idna

from .audit_logger import AuditLogger
from .config import DomainStateConfig
from .exceptions import ConfigurationError
from .fingerprint import FingerprintGenerator, FingerprintProfile
from .models import AttemptOutcome, AttemptRecord

# Adjustments that decay below this are dropped
ADJUSTMENT_EPSILON = 1e-6


def normalize_host(host: str) -> str:
    """
    Canonical key for a host: IDNA-encoded, lowercase, without trailing dot.

    Raises:
        ConfigurationError: If host is empty
    """
    cleaned = (host or "").strip().rstrip(".")
    if not cleaned:
        raise ConfigurationError(
            code="invalid_host",
            message="Host must not be empty",
            details={"host": host},
        )
    try:
        return idna.encode(cleaned, uts46=True).decode("ascii").lower()
    except idna.IDNAError:
        # Labels IDNA rejects (underscores, IP literals in odd forms) stay as-is
        return cleaned.lower()


class LatencyModel:
    """
    Exponentially weighted mean and variance of observed latencies.

    suggest_delay() returns mean + 2 standard deviations, clamped to the
    configured range, so a slow or jittery origin is given more room.
    """

    def __init__(self, alpha: float = 0.2) -> None:
        if not 0.0 < alpha <= 1.0:
            raise ConfigurationError(
                code="invalid_ewma_alpha",
                message="ewma_alpha must be in (0, 1]",
                details={"ewma_alpha": alpha},
            )
        self.alpha = alpha
        self.mean = 0.0
        self.variance = 0.0
        self.samples = 0

    def update(self, sample: float) -> None:
        if not math.isfinite(sample) or sample < 0:
            return
        if self.samples == 0:
            self.mean = sample
            self.variance = 0.0
        else:
            diff = sample - self.mean
            increment = self.alpha * diff
            self.mean += increment
            self.variance = (1.0 - self.alpha) * (self.variance + diff * increment)
        self.samples += 1

    def suggest_delay(self, minimum: float, maximum: float) -> Optional[float]:
        if self.samples == 0:
            return None
        delay = self.mean + 2.0 * math.sqrt(max(self.variance, 0.0))
        return min(max(delay, minimum), maximum)


@dataclass
class DomainState:
    """Mutable per-host record; only the manager touches it."""

    host: str
    attempt_history: deque = field(default_factory=deque)
    consecutive_failures: int = 0
    cooldown_until: Optional[float] = None
    delay_model: LatencyModel = field(default_factory=LatencyModel)
    active_fingerprint: Optional[FingerprintProfile] = None
    weight_adjustments: dict[str, float] = field(default_factory=dict)
    last_wait_seconds: float = 0.0
    total_attempts: int = 0
    total_successes: int = 0


@dataclass(frozen=True)
class DomainStateSnapshot:
    """Read-only copy of a DomainState handed to detector, solver and planner."""

    host: str
    consecutive_failures: int = 0
    cooldown_remaining_seconds: float = 0.0
    last_wait_seconds: float = 0.0
    suggested_delay_seconds: Optional[float] = None
    weight_adjustments: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    history: tuple[AttemptRecord, ...] = ()
    active_fingerprint: Optional[FingerprintProfile] = None
    total_attempts: int = 0
    total_successes: int = 0


class DomainStateManager:
    """
    Owns every DomainState for the process lifetime.

    Fingerprints are shared across hosts unless per_domain_fingerprint is
    set, in which case each host gets and rotates its own profile.
    """

    def __init__(
        self,
        config: Optional[DomainStateConfig] = None,
        fingerprint_generator: Optional[FingerprintGenerator] = None,
        per_domain_fingerprint: bool = False,
        adaptive_timing: bool = True,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or DomainStateConfig()
        self._generator = fingerprint_generator or FingerprintGenerator()
        self._per_domain = per_domain_fingerprint
        self._adaptive_timing = adaptive_timing
        self._logger = audit_logger
        self._clock = clock

        self._states: dict[str, DomainState] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._shared_lock = asyncio.Lock()
        self._shared_fingerprint: Optional[FingerprintProfile] = None

        # Validate alpha once at construction
        LatencyModel(self._config.ewma_alpha)

    def _log_info(self, message: str, **context) -> None:
        if self._logger:
            self._logger.info("domain_state", message, context)

    def _state(self, host: str) -> DomainState:
        key = normalize_host(host)
        state = self._states.get(key)
        if state is None:
            state = DomainState(
                host=key,
                attempt_history=deque(maxlen=self._config.history_limit),
                delay_model=LatencyModel(self._config.ewma_alpha),
            )
            self._states[key] = state
        return state

    def _make_snapshot(self, state: DomainState) -> DomainStateSnapshot:
        suggested = None
        if self._adaptive_timing:
            suggested = state.delay_model.suggest_delay(
                self._config.min_delay_seconds, self._config.max_delay_seconds
            )
        fingerprint = state.active_fingerprint if self._per_domain else self._shared_fingerprint
        return DomainStateSnapshot(
            host=state.host,
            consecutive_failures=state.consecutive_failures,
            cooldown_remaining_seconds=self._remaining(state),
            last_wait_seconds=state.last_wait_seconds,
            suggested_delay_seconds=suggested,
            weight_adjustments=MappingProxyType(dict(state.weight_adjustments)),
            history=tuple(state.attempt_history),
            active_fingerprint=fingerprint,
            total_attempts=state.total_attempts,
            total_successes=state.total_successes,
        )

    def _remaining(self, state: DomainState) -> float:
        if state.cooldown_until is None:
            return 0.0
        return max(state.cooldown_until - self._clock(), 0.0)

    @property
    def hosts(self) -> list[str]:
        return sorted(self._states)

    def get_or_create(self, host: str) -> DomainStateSnapshot:
        """Snapshot of the host's state, creating an empty one on first use."""
        return self._make_snapshot(self._state(host))

    def snapshot(self, host: str) -> DomainStateSnapshot:
        return self.get_or_create(host)

    def is_in_cooldown(self, host: str) -> bool:
        return self._remaining(self._state(host)) > 0.0

    def cooldown_remaining(self, host: str) -> float:
        return self._remaining(self._state(host))

    def _update_weights(self, state: DomainState, outcome: AttemptOutcome) -> None:
        decayed = {}
        for pattern_id, value in state.weight_adjustments.items():
            value *= self._config.weight_decay
            if abs(value) >= ADJUSTMENT_EPSILON:
                decayed[pattern_id] = value

        bound = self._config.max_weight_adjustment
        step = self._config.weight_step
        for pattern_id in outcome.confirmed_patterns:
            decayed[pattern_id] = min(decayed.get(pattern_id, 0.0) + step, bound)
        for pattern_id in outcome.refuted_patterns:
            decayed[pattern_id] = max(decayed.get(pattern_id, 0.0) - step, -bound)
        state.weight_adjustments = decayed

    async def record_outcome(self, host: str, outcome: AttemptOutcome) -> DomainStateSnapshot:
        """
        Fold one attempt into the host's state.

        Appends to the bounded history, updates consecutive failures and the
        latency model, decays then nudges weight adjustments, and starts a
        cooldown whenever failures reach the threshold.

        Returns:
            Snapshot taken after the update
        """
        key = normalize_host(host)
        async with self._locks[key]:
            state = self._state(key)
            state.total_attempts += 1
            state.attempt_history.append(
                AttemptRecord(
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    challenge_type=outcome.challenge_type.value,
                    success=outcome.success,
                    status_code=outcome.status_code,
                    action=outcome.action.value if outcome.action else None,
                    wait_seconds=outcome.wait_seconds,
                    error=outcome.error,
                )
            )

            if outcome.success:
                state.total_successes += 1
                state.consecutive_failures = 0
                state.cooldown_until = None
                state.last_wait_seconds = 0.0
                state.delay_model.update(outcome.latency_seconds)
            else:
                state.consecutive_failures += 1
                if outcome.wait_seconds > 0:
                    state.last_wait_seconds = outcome.wait_seconds
                if state.consecutive_failures >= self._config.failure_threshold:
                    state.cooldown_until = self._clock() + self._config.cooldown_seconds
                    self._log_info(
                        "Host entered cooldown",
                        host=key,
                        consecutive_failures=state.consecutive_failures,
                        cooldown_seconds=self._config.cooldown_seconds,
                    )

            self._update_weights(state, outcome)
            return self._make_snapshot(state)

    async def current_fingerprint(self, host: str) -> FingerprintProfile:
        """The profile to present to host, generated on first use."""
        if not self._per_domain:
            async with self._shared_lock:
                if self._shared_fingerprint is None:
                    self._shared_fingerprint = self._generator.generate()
                return self._shared_fingerprint

        key = normalize_host(host)
        async with self._locks[key]:
            state = self._state(key)
            if state.active_fingerprint is None:
                state.active_fingerprint = self._generator.generate()
            return state.active_fingerprint

    async def rotate_fingerprint(self, host: str) -> FingerprintProfile:
        """Replace the profile presented to host with a new one."""
        if not self._per_domain:
            async with self._shared_lock:
                self._shared_fingerprint = self._generator.rotate(self._shared_fingerprint)
                profile = self._shared_fingerprint
        else:
            key = normalize_host(host)
            async with self._locks[key]:
                state = self._state(key)
                state.active_fingerprint = self._generator.rotate(state.active_fingerprint)
                profile = state.active_fingerprint

        self._log_info(
            "Fingerprint rotated",
            host=normalize_host(host),
            profile_id=profile.profile_id,
            browser=profile.browser,
            platform=profile.platform,
        )
        return profile

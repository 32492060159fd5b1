"""
Challenge Orchestrator.

Drives one logical request through the pipeline until the origin serves
the resource or the plan aborts:

1. Wait out the host's cooldown
2. Send through the transport, retrying transport faults
3. Classify the response
4. Solve the challenge
5. Plan the next step
6. Execute it (submit / wait / rotate fingerprint / rotate proxy / abort)
7. Record the outcome in the host's state and emit events

Waits happen outside the per-host locks; cancellation of the awaiting task
abandons pending waits and sandbox runs without leaving state half-written.
"""

import asyncio
import random
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

from .audit_logger import AuditLogger
from .captcha import CaptchaProvider
from .config import PipelineConfig, load_config_from_env
from .detector import ChallengeDetector
from .domain_state import DomainStateManager, normalize_host
from .enums import ChallengeType, EventKind, FailureReason, MitigationAction, SolveStatus
from .events import AuditLogSink, EventDispatcher, EventSink, PipelineEvent
from .exceptions import (
    AttemptBudgetExceededError,
    ConfigurationError,
    PipelineFailure,
    ProxyExhaustedError,
    TransportError,
)
from .fingerprint import FingerprintGenerator, FingerprintProfile, load_catalog
from .models import (
    AttemptOutcome,
    AttemptRecord,
    DetectionResult,
    FinalResponse,
    HttpRequest,
    HttpResponse,
    MitigationPlan,
    Submission,
)
from .planner import MitigationPlanner
from .proxy import ProxyRotator, ProxySource
from .retry_manager import RetryManager
from .sandbox import SandboxEvaluator
from .solver import SolverDispatcher
from .transport import HttpxTransport, Transport


def _is_redirect(status_code: int) -> bool:
    return 300 <= status_code < 400


class ChallengeOrchestrator:
    """
    Main entry point of the challenge pipeline.

    Every collaborator is injectable; anything not supplied is built from
    the PipelineConfig (httpx transport, in-memory proxy rotator, bundled
    fingerprint catalog). The sleep coroutine is injectable so tests can
    observe waits without spending them.
    """

    async def __aenter__(self) -> "ChallengeOrchestrator":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.aclose()

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        transport: Optional[Transport] = None,
        captcha_provider: Optional[CaptchaProvider] = None,
        proxy_source: Optional[ProxySource] = None,
        event_sinks: Optional[list[EventSink]] = None,
        logger: Optional[AuditLogger] = None,
        rng: Optional[random.Random] = None,
        fingerprint_generator: Optional[FingerprintGenerator] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: Pipeline configuration (defaults are used when omitted)
            transport: HTTP transport; HttpxTransport when omitted
            captcha_provider: Optional CAPTCHA provider
            proxy_source: Proxy source; a ProxyRotator over config.proxies when omitted
            event_sinks: Additional sinks that receive every pipeline event
            logger: Optional audit logger for logging
            rng: Random source shared by fingerprinting, proxies and submit delays
            fingerprint_generator: Overrides the catalog-backed generator
            sleep: Coroutine used for every wait
            clock: Monotonic clock used for cooldowns

        Raises:
            ConfigurationError: If the configuration or bundled catalog is invalid
        """
        self._config = config or PipelineConfig()
        self._config.validate()
        self._logger = logger
        self._rng = rng or random.Random()
        self._sleep = sleep

        catalog = load_catalog()
        self._fingerprints = fingerprint_generator or FingerprintGenerator(
            self._config.fingerprint, catalog, self._rng
        )

        self._owns_transport = transport is None
        self._transport = transport or HttpxTransport(
            timeout_seconds=self._config.request_timeout_seconds,
            tls_profiles=catalog.get("tls_profiles"),
            audit_logger=logger,
        )
        self._retry_manager = RetryManager(self._config.retry, sleep=sleep)

        self._proxy_enabled = proxy_source is not None or bool(self._config.proxies)
        self._proxy_source = proxy_source or ProxyRotator(self._config.proxies, rng=self._rng)
        # Proxy each host last worked through; a request starts from its host's entry
        self._host_proxies: dict[str, str] = {}

        self._detector = ChallengeDetector(self._config.detector)
        self._solver = SolverDispatcher(
            config=self._config.solver,
            sandbox=SandboxEvaluator(audit_logger=logger),
            captcha_provider=captcha_provider,
            rng=self._rng,
            audit_logger=logger,
            block_budget=self._config.sandbox,
        )
        self._planner = MitigationPlanner(
            self._config.backoff,
            captcha_provider_configured=captcha_provider is not None,
        )
        self._domain_state = DomainStateManager(
            self._config.domain_state,
            fingerprint_generator=self._fingerprints,
            per_domain_fingerprint=self._config.fingerprint.per_domain,
            adaptive_timing=self._config.enable_adaptive_timing,
            audit_logger=logger,
            clock=clock,
        )

        self._events = EventDispatcher(logger)
        if logger is not None:
            self._events.register_sink(AuditLogSink(logger))
        for sink in event_sinks or []:
            self._events.register_sink(sink)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None, **kwargs) -> "ChallengeOrchestrator":
        """Build an orchestrator, and its logger, from CHALLENGE_PIPELINE_* variables."""
        config = load_config_from_env(env_file)
        kwargs.setdefault("logger", AuditLogger.from_config(config.logging))
        return cls(config, **kwargs)

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def domain_state(self) -> DomainStateManager:
        return self._domain_state

    @property
    def detector(self) -> ChallengeDetector:
        return self._detector

    @property
    def events(self) -> EventDispatcher:
        return self._events

    def current_proxy(self, host: str) -> Optional[str]:
        """Proxy the next request to host will start from."""
        return self._host_proxies.get(normalize_host(host))

    async def aclose(self) -> None:
        """Deliver queued events, then close the transport if this orchestrator built it."""
        await self._events.aclose()
        if self._owns_transport:
            await self._transport.aclose()

    def _log_info(self, component: str, message: str, data: dict) -> None:
        """Log an info message if logger is available."""
        if self._logger:
            self._logger.info(component, message, data)

    def _log_error(self, component: str, message: str, data: dict, error: Optional[Exception] = None) -> None:
        """Log an error message if logger is available."""
        if self._logger:
            self._logger.log_error(component, message, error=error, additional_data=data)

    def _emit(self, kind: EventKind, host: str, attempt: int, **data) -> None:
        self._events.dispatch(PipelineEvent(kind=kind, host=host, attempt=attempt, data=data))

    async def _wait_for_cooldown(self, host: str) -> None:
        remaining = self._domain_state.cooldown_remaining(host)
        if remaining > 0:
            self._log_info(
                "ChallengeOrchestrator",
                "Waiting out host cooldown",
                {"host": host, "seconds": round(remaining, 3)},
            )
            await self._sleep(remaining)

    async def _ensure_proxy(self, host: str, proxy: Optional[str]) -> Optional[str]:
        if not self._proxy_enabled or proxy is not None:
            return proxy
        proxy = self._host_proxies.get(host)
        if proxy is None:
            proxy = await self._proxy_source.next_proxy()
            self._host_proxies[host] = proxy
        return proxy

    def _build_request(
        self,
        pending: HttpRequest,
        fingerprint: FingerprintProfile,
        proxy: Optional[str],
    ) -> HttpRequest:
        headers = fingerprint.request_headers()
        headers.update(pending.headers)
        return HttpRequest(
            method=pending.method,
            url=pending.url,
            headers=headers,
            data=pending.data,
            cookies=dict(pending.cookies),
            proxy=proxy,
            follow_redirects=pending.follow_redirects,
            tls_profile_id=fingerprint.tls_profile_id,
        )

    @staticmethod
    def _request_from_submission(submission: Submission) -> HttpRequest:
        return HttpRequest(
            method=submission.method,
            url=submission.url,
            headers=dict(submission.headers),
            data=dict(submission.form_fields),
            cookies=dict(submission.cookies),
            follow_redirects=submission.follow_redirects,
        )

    async def _send(
        self,
        request: HttpRequest,
        host: str,
        attempts: int,
        last_detection: Optional[DetectionResult],
        history: list[AttemptRecord],
    ) -> HttpResponse:
        result = await self._retry_manager.execute_with_retry(
            lambda: self._transport.send(request)
        )
        if result.success:
            return result.result

        error = result.last_error
        if not isinstance(error, TransportError):
            raise error
        if request.proxy is not None:
            self._proxy_source.report_failure(request.proxy)
            self._forget_proxy(host, request.proxy)
        await self._record(
            host,
            AttemptOutcome(
                challenge_type=last_detection.challenge_type if last_detection else ChallengeType.NONE,
                success=False,
                error=f"{error.code}: {error.message}",
            ),
            history,
        )
        self._log_error(
            "ChallengeOrchestrator",
            "Transport failed after retries",
            {"host": host, "retries": result.attempts},
            error=error,
        )
        self._emit(
            EventKind.OUTCOME, host, attempts,
            success=False, failure_reason=FailureReason.TRANSPORT_ERROR.value,
        )
        raise PipelineFailure(
            code="transport_failed",
            message=f"Transport failed after {result.attempts} tries: {error.message}",
            reason=FailureReason.TRANSPORT_ERROR,
            last_classification=last_detection.challenge_type if last_detection else None,
            attempts=attempts,
            history=history,
            details={"transport_error": error.code},
        )

    async def _record(
        self,
        host: str,
        outcome: AttemptOutcome,
        history: list[AttemptRecord],
    ) -> None:
        snapshot = await self._domain_state.record_outcome(host, outcome)
        if snapshot.history:
            history.append(snapshot.history[-1])

    def _abort(
        self,
        plan: MitigationPlan,
        detection: DetectionResult,
        attempts: int,
        history: list[AttemptRecord],
    ) -> PipelineFailure:
        error_cls = PipelineFailure
        if plan.failure_reason == FailureReason.ATTEMPT_BUDGET_EXCEEDED:
            error_cls = AttemptBudgetExceededError
        reason = plan.failure_reason
        return error_cls(
            code=reason.value if reason else "aborted",
            message=plan.reason,
            reason=reason,
            last_classification=detection.challenge_type,
            attempts=attempts,
            history=history,
        )

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        data: Optional[dict[str, str]] = None,
    ) -> FinalResponse:
        """
        Fetch url, solving any challenges the origin puts in the way.

        Args:
            url: Absolute http(s) URL
            method: HTTP method of the original request
            headers: Extra headers layered over the fingerprint's headers
            data: Optional form body of the original request

        Returns:
            FinalResponse with the served response and the attempt history

        Raises:
            PipelineFailure: The plan aborted, the transport or the proxies
                were exhausted (AttemptBudgetExceededError when the attempt
                budget ran out)
        """
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise PipelineFailure(
                code="invalid_url",
                message=f"Not an absolute http(s) URL: {url}",
                details={"url": url},
            )
        try:
            host = normalize_host(parts.hostname)
        except ConfigurationError as e:
            raise PipelineFailure(code="invalid_url", message=e.message, details={"url": url}) from e

        max_attempts = self._config.max_challenge_attempts
        adaptive = self._config.enable_adaptive_scoring
        original = HttpRequest(method=method, url=url, headers=dict(headers or {}), data=data)
        pending = original
        attempts = 0
        history: list[AttemptRecord] = []
        last_detection: Optional[DetectionResult] = None
        solved_detection: Optional[DetectionResult] = None
        blind_retry_used = False
        proxy: Optional[str] = None

        self._log_info("ChallengeOrchestrator", f"Starting request for {host}", {"url": url, "method": method})

        while True:
            await self._wait_for_cooldown(host)
            try:
                proxy = await self._ensure_proxy(host, proxy)
            except ProxyExhaustedError as e:
                raise PipelineFailure(
                    code="proxy_exhausted",
                    message=e.message,
                    reason=FailureReason.PROXY_EXHAUSTED,
                    last_classification=last_detection.challenge_type if last_detection else None,
                    attempts=attempts,
                    history=history,
                ) from e

            fingerprint = await self._domain_state.current_fingerprint(host)
            is_submission = pending is not original
            response = await self._send(
                self._build_request(pending, fingerprint, proxy), host, attempts, last_detection, history
            )
            attempts += 1

            snapshot = self._domain_state.snapshot(host)
            detection = self._detector.classify_response(response, snapshot if adaptive else None)
            last_detection = detection
            self._emit(
                EventKind.CLASSIFICATION, host, attempts,
                challenge_type=detection.challenge_type.value,
                confidence=round(detection.confidence, 4),
                matched_patterns=list(detection.matched_patterns),
                status_code=response.status_code,
            )

            if detection.challenge_type == ChallengeType.NONE:
                confirmed = solved_detection.matched_patterns if (adaptive and solved_detection) else ()
                await self._record(
                    host,
                    AttemptOutcome(
                        challenge_type=ChallengeType.NONE,
                        success=True,
                        latency_seconds=response.elapsed_ms / 1000.0,
                        confirmed_patterns=confirmed,
                        status_code=response.status_code,
                    ),
                    history,
                )
                solved_detection = None
                if proxy is not None:
                    self._proxy_source.report_success(proxy)

                if is_submission and _is_redirect(response.status_code):
                    # Clearance granted; fetch the original resource with the new cookies
                    pending = original
                    if attempts >= max_attempts:
                        raise AttemptBudgetExceededError(
                            code=FailureReason.ATTEMPT_BUDGET_EXCEEDED.value,
                            message=f"Attempt budget of {max_attempts} exhausted",
                            reason=FailureReason.ATTEMPT_BUDGET_EXCEEDED,
                            last_classification=detection.challenge_type,
                            attempts=attempts,
                            history=history,
                        )
                    continue

                self._emit(EventKind.OUTCOME, host, attempts, success=True, status_code=response.status_code)
                self._log_info(
                    "ChallengeOrchestrator",
                    f"Request for {host} completed",
                    {"attempts": attempts, "status_code": response.status_code},
                )
                return FinalResponse(
                    response=response,
                    attempts=attempts,
                    history=history,
                    last_detection=detection,
                )

            solve_result = await self._solver.solve(detection, response.url, snapshot, fingerprint)
            self._emit(
                EventKind.SOLVE_ATTEMPT, host, attempts,
                challenge_type=detection.challenge_type.value,
                status=solve_result.status.value,
                reason=solve_result.reason.value if solve_result.reason else None,
            )

            plan = self._planner.plan(
                solve_result,
                snapshot,
                attempts_so_far=attempts,
                max_attempts=max_attempts,
                blind_retry_used=blind_retry_used,
            )
            self._emit(
                EventKind.MITIGATION, host, attempts,
                action=plan.action.value,
                wait_seconds=plan.wait_seconds,
                reason=plan.reason,
            )

            refuted: tuple[str, ...] = ()
            if adaptive and solve_result.reason == FailureReason.MALFORMED_CHALLENGE:
                refuted = detection.matched_patterns
            if adaptive and solved_detection is not None:
                # The previous answer was rejected
                refuted = refuted + solved_detection.matched_patterns
            await self._record(
                host,
                AttemptOutcome(
                    challenge_type=detection.challenge_type,
                    success=False,
                    refuted_patterns=refuted,
                    status_code=response.status_code,
                    action=plan.action,
                    wait_seconds=plan.wait_seconds,
                    error=solve_result.message or None,
                ),
                history,
            )
            solved_detection = None

            if plan.action == MitigationAction.ABORT:
                self._log_error(
                    "ChallengeOrchestrator",
                    f"Request for {host} aborted",
                    {
                        "reason": plan.reason,
                        "challenge_type": detection.challenge_type.value,
                        "attempts": attempts,
                    },
                )
                self._emit(
                    EventKind.OUTCOME, host, attempts,
                    success=False,
                    failure_reason=plan.failure_reason.value if plan.failure_reason else None,
                )
                raise self._abort(plan, detection, attempts, history)

            if plan.action == MitigationAction.RETRY:
                if plan.wait_seconds > 0:
                    await self._sleep(plan.wait_seconds)
                if plan.submission is not None:
                    pending = self._request_from_submission(plan.submission)
                    solved_detection = detection
                else:
                    pending = original

            elif plan.action == MitigationAction.WAIT_THEN_RETRY:
                await self._sleep(plan.wait_seconds)
                pending = original

            elif plan.action == MitigationAction.ROTATE_FINGERPRINT_THEN_RETRY:
                if solve_result.status == SolveStatus.FAILED:
                    blind_retry_used = True
                await self._domain_state.rotate_fingerprint(host)
                pending = original

            elif plan.action == MitigationAction.ROTATE_PROXY_THEN_RETRY:
                proxy = await self._rotate_proxy(host, proxy, detection, attempts, history)
                pending = original

    def _forget_proxy(self, host: str, proxy: str) -> None:
        if self._host_proxies.get(host) == proxy:
            del self._host_proxies[host]

    async def _rotate_proxy(
        self,
        host: str,
        previous: Optional[str],
        detection: DetectionResult,
        attempts: int,
        history: list[AttemptRecord],
    ) -> str:
        if previous is not None:
            self._proxy_source.report_failure(previous)
            self._forget_proxy(host, previous)
        try:
            proxy = await self._proxy_source.next_proxy()
        except ProxyExhaustedError as e:
            raise PipelineFailure(
                code="proxy_exhausted",
                message=e.message,
                reason=FailureReason.PROXY_EXHAUSTED,
                last_classification=detection.challenge_type,
                attempts=attempts,
                history=history,
            ) from e
        self._log_info(
            "ChallengeOrchestrator",
            "Proxy rotated",
            {"host": host, "rotated": previous != proxy},
        )
        self._host_proxies[host] = proxy
        return proxy

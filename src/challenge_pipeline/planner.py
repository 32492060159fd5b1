"""
Mitigation planner.

Turns a SolveResult plus the host's state snapshot into the next step for
the orchestrator. The planner is a pure function of its inputs; it never
sleeps or mutates state.
"""

import math
from typing import Optional

from .config import BackoffConfig
from .enums import FailureReason, MitigationAction, SolveStatus
from .models import MitigationPlan, SolveResult

# Failure counts beyond this no longer change the multiplier meaningfully
MAX_BACKOFF_EXPONENT = 60


class MitigationPlanner:
    """
    Chooses RETRY, WAIT_THEN_RETRY, ROTATE_*_THEN_RETRY or ABORT.

    Priority order:
    1. Attempt budget spent -> ABORT
    2. Solved -> RETRY with the submission
    3. Captcha required -> ABORT
    4. Mitigation requested -> pass through, waits stretched by backoff
    5. Failed -> ABORT, or one blind fingerprint rotation in best-effort mode
    """

    def __init__(
        self,
        config: Optional[BackoffConfig] = None,
        captcha_provider_configured: bool = False,
    ) -> None:
        self._config = config or BackoffConfig()
        self._captcha_provider_configured = captcha_provider_configured

    def backoff_wait(self, base_wait: float, domain_state=None) -> float:
        """
        Stretch base_wait by multiplier ** consecutive_failures.

        While failures continue the result never drops below the host's
        previous wait; it is always clamped to max_backoff_seconds.
        """
        if not math.isfinite(base_wait) or base_wait < 0:
            base_wait = 0.0

        failures = domain_state.consecutive_failures if domain_state is not None else 0
        ceiling = self._config.max_backoff_seconds
        try:
            wait = base_wait * self._config.multiplier ** min(failures, MAX_BACKOFF_EXPONENT)
        except OverflowError:
            wait = ceiling

        if failures > 0 and domain_state is not None:
            previous = domain_state.last_wait_seconds
            if math.isfinite(previous) and previous > wait:
                wait = previous

        if math.isnan(wait):
            wait = ceiling
        return min(max(wait, 0.0), ceiling)

    def plan(
        self,
        solve_result: SolveResult,
        domain_state=None,
        attempts_so_far: int = 0,
        max_attempts: int = 1,
        blind_retry_used: bool = False,
    ) -> MitigationPlan:
        """
        Decide the next step.

        Args:
            solve_result: Output of the solver dispatcher
            domain_state: DomainStateSnapshot of the host, if any
            attempts_so_far: Responses received so far in this request
            max_attempts: The request's attempt budget
            blind_retry_used: Whether the best-effort blind retry was spent

        Returns:
            MitigationPlan for the orchestrator to execute
        """
        if attempts_so_far >= max_attempts:
            return MitigationPlan(
                action=MitigationAction.ABORT,
                reason=f"Attempt budget of {max_attempts} exhausted",
                failure_reason=FailureReason.ATTEMPT_BUDGET_EXCEEDED,
            )

        if solve_result.status == SolveStatus.SUCCESS:
            submission = solve_result.submission
            return MitigationPlan(
                action=MitigationAction.RETRY,
                reason="Challenge solved" if submission else "No challenge",
                wait_seconds=submission.wait_seconds if submission else 0.0,
                submission=submission,
            )

        if solve_result.status == SolveStatus.CAPTCHA_REQUIRED:
            if self._captcha_provider_configured:
                failure_reason = FailureReason.CAPTCHA_UNRESOLVED
                reason = "Captcha provider could not resolve the challenge"
            else:
                failure_reason = FailureReason.NO_CAPTCHA_PROVIDER
                reason = "Captcha required but no provider is configured"
            return MitigationPlan(
                action=MitigationAction.ABORT,
                reason=reason,
                failure_reason=failure_reason,
            )

        if solve_result.status == SolveStatus.MITIGATE:
            action = solve_result.action or MitigationAction.WAIT_THEN_RETRY
            wait = solve_result.wait_seconds
            if action == MitigationAction.WAIT_THEN_RETRY:
                wait = self.backoff_wait(wait, domain_state)
            elif not math.isfinite(wait) or wait < 0:
                wait = 0.0
            return MitigationPlan(
                action=action,
                reason=f"Mitigation requested: {action.value}",
                wait_seconds=wait,
            )

        # FAILED
        if self._config.best_effort and not blind_retry_used:
            return MitigationPlan(
                action=MitigationAction.ROTATE_FINGERPRINT_THEN_RETRY,
                reason=f"Best-effort retry after: {solve_result.message or 'solve failed'}",
                failure_reason=solve_result.reason,
            )
        return MitigationPlan(
            action=MitigationAction.ABORT,
            reason=solve_result.message or "Challenge could not be solved",
            failure_reason=solve_result.reason,
        )

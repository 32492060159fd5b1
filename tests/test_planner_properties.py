"""
Property-based tests for the mitigation planner.

Uses Hypothesis for property-based testing to verify the plan priority
order, the attempt budget, and that backoff waits are bounded and never
shrink while failures continue.
"""

from hypothesis import given, settings, strategies as st

from challenge_pipeline.config import BackoffConfig
from challenge_pipeline.domain_state import DomainStateSnapshot
from challenge_pipeline.enums import FailureReason, MitigationAction, SolveStatus
from challenge_pipeline.models import SolveResult, Submission
from challenge_pipeline.planner import MitigationPlanner


# Strategies for generating test data

@st.composite
def solve_result_strategy(draw):
    """Generate a SolveResult of any status."""
    status = draw(st.sampled_from(list(SolveStatus)))
    if status == SolveStatus.SUCCESS:
        submission = draw(st.one_of(
            st.none(),
            st.builds(
                Submission,
                method=st.just("POST"),
                url=st.just("https://example.com/?__cf_chl_f_tk=x"),
                wait_seconds=st.floats(min_value=0.0, max_value=10.0),
            ),
        ))
        return SolveResult.success(submission)
    if status == SolveStatus.CAPTCHA_REQUIRED:
        return SolveResult.captcha_required("site-key", {"page_url": "https://example.com/"})
    if status == SolveStatus.MITIGATE:
        action = draw(st.sampled_from([
            MitigationAction.WAIT_THEN_RETRY,
            MitigationAction.ROTATE_FINGERPRINT_THEN_RETRY,
            MitigationAction.ROTATE_PROXY_THEN_RETRY,
        ]))
        return SolveResult.mitigate(action, draw(st.floats(min_value=0.0, max_value=600.0)))
    reason = draw(st.sampled_from([
        FailureReason.MALFORMED_CHALLENGE,
        FailureReason.UNSUPPORTED_CONSTRUCT,
        FailureReason.RESOURCE_EXCEEDED,
        FailureReason.CAPTCHA_ERROR,
    ]))
    return SolveResult.failed(reason, "failed")


@st.composite
def backoff_config_strategy(draw):
    """Generate valid BackoffConfig objects."""
    return BackoffConfig(
        multiplier=draw(st.floats(min_value=1.0, max_value=4.0)),
        max_backoff_seconds=draw(st.floats(min_value=1.0, max_value=3600.0)),
    )


def _snapshot(failures=0, last_wait=0.0):
    return DomainStateSnapshot(host="example.com", consecutive_failures=failures, last_wait_seconds=last_wait)


class TestAttemptBudgetProperty:
    """
    **Feature: challenge-pipeline, Property 14: Attempt budget**

    *For any* solve result, once attempts_so_far reaches max_attempts the
    plan is ABORT with ATTEMPT_BUDGET_EXCEEDED.
    """

    @given(
        result=solve_result_strategy(),
        max_attempts=st.integers(min_value=1, max_value=20),
        overshoot=st.integers(min_value=0, max_value=5),
    )
    @settings(max_examples=100)
    def test_budget_spent_aborts(self, result, max_attempts, overshoot):
        plan = MitigationPlanner().plan(result, _snapshot(), max_attempts + overshoot, max_attempts)

        assert plan.action == MitigationAction.ABORT
        assert plan.failure_reason == FailureReason.ATTEMPT_BUDGET_EXCEEDED

    @given(result=solve_result_strategy(), max_attempts=st.integers(min_value=2, max_value=20))
    @settings(max_examples=100)
    def test_plan_is_deterministic(self, result, max_attempts):
        planner = MitigationPlanner()

        assert planner.plan(result, _snapshot(2, 10.0), 1, max_attempts) == planner.plan(
            result, _snapshot(2, 10.0), 1, max_attempts
        )


class TestPlanPriorityProperty:
    """
    **Feature: challenge-pipeline, Property 15: Plan priority**

    *For any* result within budget, SUCCESS retries with its submission,
    CAPTCHA_REQUIRED and FAILED abort, and MITIGATE passes its action through.
    """

    @given(result=solve_result_strategy())
    @settings(max_examples=100)
    def test_status_maps_to_action(self, result):
        plan = MitigationPlanner().plan(result, _snapshot(), 1, 5)

        if result.status == SolveStatus.SUCCESS:
            assert plan.action == MitigationAction.RETRY
            assert plan.submission is result.submission
            expected_wait = result.submission.wait_seconds if result.submission else 0.0
            assert plan.wait_seconds == expected_wait
        elif result.status == SolveStatus.CAPTCHA_REQUIRED:
            assert plan.action == MitigationAction.ABORT
            assert plan.failure_reason == FailureReason.NO_CAPTCHA_PROVIDER
        elif result.status == SolveStatus.MITIGATE:
            assert plan.action == result.action
        else:
            assert plan.action == MitigationAction.ABORT
            assert plan.failure_reason == result.reason

    def test_captcha_with_provider_is_unresolved(self):
        planner = MitigationPlanner(captcha_provider_configured=True)
        plan = planner.plan(SolveResult.captcha_required("k", {}), None, 0, 3)

        assert plan.action == MitigationAction.ABORT
        assert plan.failure_reason == FailureReason.CAPTCHA_UNRESOLVED

    @given(reason=st.sampled_from([FailureReason.MALFORMED_CHALLENGE, FailureReason.UNSUPPORTED_CONSTRUCT]))
    @settings(max_examples=10)
    def test_best_effort_allows_one_blind_retry(self, reason):
        planner = MitigationPlanner(BackoffConfig(best_effort=True))
        failed = SolveResult.failed(reason, "bad page")

        first = planner.plan(failed, _snapshot(), 1, 5, blind_retry_used=False)
        second = planner.plan(failed, _snapshot(), 2, 5, blind_retry_used=True)

        assert first.action == MitigationAction.ROTATE_FINGERPRINT_THEN_RETRY
        assert second.action == MitigationAction.ABORT
        assert second.failure_reason == reason


class TestBackoffProperty:
    """
    **Feature: challenge-pipeline, Property 16: Bounded non-decreasing backoff**

    *For any* base wait and run of consecutive failures, each
    WAIT_THEN_RETRY wait is within [0, max_backoff_seconds] and never
    smaller than the previous one.
    """

    @given(
        config=backoff_config_strategy(),
        base=st.floats(min_value=0.0, max_value=600.0),
        failures=st.integers(min_value=0, max_value=1000),
        last_wait=st.floats(min_value=0.0, max_value=5000.0),
    )
    @settings(max_examples=100)
    def test_wait_bounded(self, config, base, failures, last_wait):
        wait = MitigationPlanner(config).backoff_wait(base, _snapshot(failures, last_wait))

        assert 0.0 <= wait <= config.max_backoff_seconds

    @given(
        config=backoff_config_strategy(),
        bases=st.lists(st.floats(min_value=0.0, max_value=600.0), min_size=2, max_size=12),
    )
    @settings(max_examples=100)
    def test_waits_non_decreasing_over_failures(self, config, bases):
        planner = MitigationPlanner(config)
        last_wait = 0.0
        waits = []
        for failures, base in enumerate(bases):
            plan = planner.plan(
                SolveResult.mitigate(MitigationAction.WAIT_THEN_RETRY, base),
                _snapshot(failures, last_wait),
                attempts_so_far=failures,
                max_attempts=len(bases) + 1,
            )
            waits.append(plan.wait_seconds)
            last_wait = plan.wait_seconds

        for earlier, later in zip(waits[1:], waits[2:]):
            assert later >= earlier, f"Wait shrank: {waits}"

    def test_doubling_caps_at_maximum(self):
        planner = MitigationPlanner(BackoffConfig(multiplier=2.0, max_backoff_seconds=50.0))
        waits = [planner.backoff_wait(10.0, _snapshot(f, 0.0)) for f in range(5)]

        assert waits == [10.0, 20.0, 40.0, 50.0, 50.0]

    @given(base=st.sampled_from([float("nan"), float("inf"), -1.0]))
    @settings(max_examples=10)
    def test_invalid_base_is_safe(self, base):
        wait = MitigationPlanner().backoff_wait(base, _snapshot(3, 0.0))

        assert wait == 0.0

    def test_huge_failure_count_does_not_overflow(self):
        config = BackoffConfig(multiplier=4.0, max_backoff_seconds=120.0)

        assert MitigationPlanner(config).backoff_wait(1.0, _snapshot(10 ** 6)) == 120.0

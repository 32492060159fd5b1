"""
Property-based tests for the challenge detector.

Uses Hypothesis for property-based testing to verify classification of
sample pages, status-code gating, the status-only fallback and the
monotonic effect of weight adjustments on confidence.
"""

from types import MappingProxyType

from hypothesis import given, settings, strategies as st

from challenge_pipeline.config import DetectorConfig
from challenge_pipeline.detector import DEFAULT_MATCHERS, ChallengeDetector
from challenge_pipeline.domain_state import DomainStateSnapshot
from challenge_pipeline.enums import ChallengeType

from challenge_pages import (
    CF_HEADERS,
    access_denied_page,
    iuam_page,
    js_v2_page,
    managed_v3_page,
    ok_page,
    rate_limit_page,
    turnstile_page,
)


# Strategies for generating test data

non_challenge_status = st.integers(min_value=100, max_value=599).filter(lambda s: s not in (403, 429, 503))

sample_pages = st.sampled_from([
    (iuam_page(), 503, ChallengeType.IUAM_V1),
    (js_v2_page(), 403, ChallengeType.JS_CHALLENGE_V2),
    (managed_v3_page(), 403, ChallengeType.MANAGED_V3),
    (turnstile_page(), 403, ChallengeType.TURNSTILE),
    (rate_limit_page(), 429, ChallengeType.RATE_LIMIT),
    (access_denied_page(), 403, ChallengeType.ACCESS_DENIED),
])

pattern_ids = [m.id for m in DEFAULT_MATCHERS if m.challenge_type is not None]


@st.composite
def adjustments_strategy(draw):
    """Generate weight adjustments within the default learning bound."""
    ids = draw(st.lists(st.sampled_from(pattern_ids), max_size=8, unique=True))
    return {pid: draw(st.floats(min_value=-0.2, max_value=0.2)) for pid in ids}


def _snapshot(adjustments):
    return DomainStateSnapshot(host="example.com", weight_adjustments=MappingProxyType(dict(adjustments)))


class TestClassificationProperty:
    """
    **Feature: challenge-pipeline, Property 10: Sample page classification**

    *For any* sample challenge page, the detector returns its type with the
    markers its solver needs and confidence in [0, 1].
    """

    @given(page=sample_pages)
    @settings(max_examples=30)
    def test_sample_pages_classified(self, page):
        body, status, expected = page
        result = ChallengeDetector().classify(CF_HEADERS, body, status_code=status)

        assert result.challenge_type == expected, f"Expected {expected}, got {result.challenge_type}"
        assert 0.0 <= result.confidence <= 1.0
        assert result.status_code == status
        assert result.matched_patterns, "Winning type should list its matched patterns"

    def test_iuam_markers(self):
        result = ChallengeDetector().classify({}, iuam_page("5+3*2"), status_code=503)

        assert result.markers["puzzle"] == "5+3*2"
        assert result.markers["form_action"] == "/?__cf_chl_f_tk=iuamtoken123"
        assert result.markers["field.jschl_vc"] == "0f1e2d3c4b5a"
        assert result.markers["delay_ms"] == "4000"

    def test_headers_are_case_insensitive(self):
        body = rate_limit_page()
        upper = ChallengeDetector().classify({"Retry-After": "30"}, body, status_code=429)
        lower = ChallengeDetector().classify({"retry-after": "30"}, body, status_code=429)

        assert upper == lower
        assert upper.markers["retry_after"] == "30"

    def test_corroborating_headers_raise_confidence(self):
        body = managed_v3_page()
        bare = ChallengeDetector().classify({}, body, status_code=403)
        corroborated = ChallengeDetector().classify(CF_HEADERS, body, status_code=403)

        assert corroborated.challenge_type == bare.challenge_type
        assert corroborated.confidence >= bare.confidence

    @given(page=sample_pages)
    @settings(max_examples=30)
    def test_classification_is_pure(self, page):
        body, status, _ = page
        detector = ChallengeDetector()

        assert detector.classify(CF_HEADERS, body, status_code=status) == detector.classify(
            CF_HEADERS, body, status_code=status
        )


class TestStatusGatingProperty:
    """
    **Feature: challenge-pipeline, Property 11: Status gating and fallback**

    *For any* non-challenge status the result is NONE with confidence 1.0;
    a challenge status with no matching markers falls back to a low
    confidence RATE_LIMIT (429) or ACCESS_DENIED.
    """

    @given(status=non_challenge_status, page=sample_pages)
    @settings(max_examples=100)
    def test_non_challenge_status_is_none(self, status, page):
        body, _, _ = page
        result = ChallengeDetector().classify(CF_HEADERS, body, status_code=status)

        assert result.challenge_type == ChallengeType.NONE
        assert result.confidence == 1.0
        assert result.matched_patterns == ()

    @given(status=st.sampled_from([403, 503]))
    @settings(max_examples=10)
    def test_unmatched_challenge_status_is_access_denied(self, status):
        result = ChallengeDetector().classify({}, ok_page(), status_code=status)

        assert result.challenge_type == ChallengeType.ACCESS_DENIED
        assert result.confidence == DetectorConfig().status_only_confidence

    def test_bare_429_is_rate_limit(self):
        result = ChallengeDetector().classify({}, ok_page(), status_code=429)

        assert result.challenge_type == ChallengeType.RATE_LIMIT
        assert result.confidence <= DetectorConfig().single_signal_ceiling

    def test_configurable_status_codes(self):
        detector = ChallengeDetector(DetectorConfig(challenge_status_codes=(403, 429, 503, 520)))

        assert detector.classify({}, iuam_page(), status_code=520).challenge_type == ChallengeType.IUAM_V1
        assert ChallengeDetector().classify({}, iuam_page(), status_code=520).challenge_type == ChallengeType.NONE


class TestSingleSignalCeilingProperty:
    """
    **Feature: challenge-pipeline, Property 12: Single-signal ceiling**

    *For any* page matched by a single typed signal, confidence never
    exceeds the single-signal ceiling, whatever the corroborating headers.
    """

    @given(with_headers=st.booleans(), boost=st.floats(min_value=0.0, max_value=0.2))
    @settings(max_examples=50)
    def test_single_signal_capped(self, with_headers, boost):
        body = "<html><body>Access denied</body></html>"
        headers = dict(CF_HEADERS, **{"cf-mitigated": "challenge"}) if with_headers else {}
        snapshot = _snapshot({"access_denied_text": boost})

        result = ChallengeDetector().classify(headers, body, snapshot, status_code=403)

        assert result.challenge_type == ChallengeType.ACCESS_DENIED
        assert result.confidence <= DetectorConfig().single_signal_ceiling + 1e-12


class TestAdaptiveWeightProperty:
    """
    **Feature: challenge-pipeline, Property 13: Monotone adaptive weights**

    *For any* page and adjustments, raising the adjustment of a matched
    pattern never lowers that type's confidence, and weights stay within
    the configured bounds.
    """

    @given(page=sample_pages, adjustments=adjustments_strategy(), extra=st.floats(min_value=0.0, max_value=0.2))
    @settings(max_examples=100)
    def test_confirming_a_pattern_never_lowers_confidence(self, page, adjustments, extra):
        body, status, _ = page
        detector = ChallengeDetector()
        baseline = detector.classify(CF_HEADERS, body, _snapshot(adjustments), status_code=status)
        pattern = baseline.matched_patterns[0]

        raised = dict(adjustments)
        raised[pattern] = raised.get(pattern, 0.0) + extra
        boosted = detector.classify(CF_HEADERS, body, _snapshot(raised), status_code=status)

        if boosted.challenge_type == baseline.challenge_type:
            assert boosted.confidence >= baseline.confidence - 1e-12, (
                f"Confidence dropped from {baseline.confidence} to {boosted.confidence}"
            )

    @given(adjustment=st.floats(min_value=-5.0, max_value=5.0, allow_nan=False))
    @settings(max_examples=100)
    def test_effective_weight_bounded(self, adjustment):
        config = DetectorConfig()
        detector = ChallengeDetector(config)

        for matcher in DEFAULT_MATCHERS:
            weight = detector.effective_weight(matcher, {matcher.id: adjustment})
            assert config.min_weight <= weight <= config.max_weight

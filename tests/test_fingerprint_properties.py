"""
Property-based tests for browser fingerprint profiles.

Uses Hypothesis for property-based testing to verify that generated
profiles honour the selection options, that rotation changes identity,
and that seeded generators are reproducible.
"""

import random

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from challenge_pipeline.config import FingerprintOptions
from challenge_pipeline.exceptions import ConfigurationError
from challenge_pipeline.fingerprint import (
    VALID_PLATFORMS,
    FingerprintGenerator,
    load_catalog,
)

CATALOG = load_catalog()


# Strategies for generating test data

@st.composite
def fingerprint_options_strategy(draw) -> FingerprintOptions:
    """Generate FingerprintOptions, including combinations with no match."""
    desktop = draw(st.booleans())
    return FingerprintOptions(
        platform=draw(st.one_of(st.none(), st.sampled_from(VALID_PLATFORMS))),
        browser=draw(st.one_of(st.none(), st.sampled_from(["chrome", "firefox", "safari"]))),
        desktop=desktop,
        mobile=True if not desktop else draw(st.booleans()),
        allow_brotli=draw(st.booleans()),
    )


def catalog_agents(options: FingerprintOptions) -> set[str]:
    kinds = [k for k, on in (("desktop", options.desktop), ("mobile", options.mobile)) if on]
    agents = set()
    for kind in kinds:
        for platform, browsers in CATALOG["user_agents"][kind].items():
            if options.platform and platform != options.platform:
                continue
            for browser, entries in browsers.items():
                if options.browser and browser != options.browser:
                    continue
                agents.update(entries)
    return agents


class TestProfileSelectionProperty:
    """
    **Feature: challenge-pipeline, Property 34: Profiles honour selection options**

    *For any* options, the generator either rejects them because nothing in
    the catalog matches, or every profile it builds comes from the permitted
    subset of the catalog.
    """

    @given(options=fingerprint_options_strategy(), seed=st.integers(min_value=0, max_value=10_000))
    @settings(max_examples=200)
    def test_profiles_match_options(self, options: FingerprintOptions, seed: int) -> None:
        allowed = catalog_agents(options)
        if not allowed:
            with pytest.raises(ConfigurationError):
                FingerprintGenerator(options, rng=random.Random(seed))
            return

        profile = FingerprintGenerator(options, rng=random.Random(seed)).generate()

        assert profile.user_agent in allowed
        if options.platform:
            assert profile.platform == options.platform
        if options.browser:
            assert profile.browser == options.browser
        if not options.mobile:
            assert not profile.is_mobile
        if not options.desktop:
            assert profile.is_mobile

    @given(options=fingerprint_options_strategy(), seed=st.integers(min_value=0, max_value=10_000))
    @settings(max_examples=100)
    def test_brotli_only_when_allowed(self, options: FingerprintOptions, seed: int) -> None:
        if not catalog_agents(options):
            return
        headers = FingerprintGenerator(options, rng=random.Random(seed)).generate().request_headers()

        encodings = [e.strip() for e in headers.get("Accept-Encoding", "").split(",")]
        if not options.allow_brotli:
            assert "br" not in encodings

    @given(seed=st.integers(min_value=0, max_value=10_000))
    @settings(max_examples=100)
    def test_headers_follow_browser_order(self, seed: int) -> None:
        profile = FingerprintGenerator(rng=random.Random(seed)).generate()
        headers = profile.request_headers()

        assert headers["User-Agent"] == profile.user_agent
        ordered = [name for name in headers if name in profile.header_order]
        expected = [name for name in profile.header_order if name in headers]
        assert ordered == expected

    @given(seed=st.integers(min_value=0, max_value=10_000))
    @settings(max_examples=50)
    def test_seeded_generators_agree(self, seed: int) -> None:
        first = FingerprintGenerator(rng=random.Random(seed)).generate()
        second = FingerprintGenerator(rng=random.Random(seed)).generate()

        assert first == second

    def test_invalid_platform_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            FingerprintGenerator(FingerprintOptions(platform="beos"))

    def test_no_device_class_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            FingerprintGenerator(FingerprintOptions(desktop=False, mobile=False))

    def test_missing_catalog(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            load_catalog(name="absent.json")
        assert exc_info.value.code == "catalog_missing"


class TestRotationProperty:
    """
    **Feature: challenge-pipeline, Property 35: Rotation changes identity**

    *For any* profile, rotating yields a new profile id and, when another
    candidate exists, a different user agent.
    """

    @given(seed=st.integers(min_value=0, max_value=10_000), rounds=st.integers(min_value=1, max_value=10))
    @settings(max_examples=100)
    def test_rotation_avoids_current_agent(self, seed: int, rounds: int) -> None:
        generator = FingerprintGenerator(rng=random.Random(seed))
        current = generator.generate()

        for _ in range(rounds):
            rotated = generator.rotate(current)
            assert rotated.user_agent != current.user_agent
            assert rotated.profile_id != current.profile_id
            current = rotated

    def test_single_candidate_rotation_keeps_agent(self) -> None:
        options = FingerprintOptions(platform="darwin", browser="firefox", mobile=False)
        generator = FingerprintGenerator(options, rng=random.Random(7))
        current = generator.generate()

        rotated = generator.rotate(current)

        assert rotated.user_agent == current.user_agent
        assert rotated.profile_id != current.profile_id

    def test_rotate_without_current(self) -> None:
        profile = FingerprintGenerator(rng=random.Random(1)).rotate(None)

        assert profile.user_agent

    def test_custom_user_agent_used_verbatim(self) -> None:
        agent = CATALOG["user_agents"]["desktop"]["linux"]["firefox"][0]
        generator = FingerprintGenerator(FingerprintOptions(custom_user_agent=agent), rng=random.Random(3))

        profile = generator.generate()

        assert profile.user_agent == agent
        assert profile.platform == "linux"
        assert profile.browser == "firefox"

    def test_unknown_custom_agent(self) -> None:
        options = FingerprintOptions(custom_user_agent="curl/8.5.0")

        profile = FingerprintGenerator(options, rng=random.Random(3)).generate()

        assert profile.user_agent == "curl/8.5.0"
        assert profile.browser == "custom"
        assert profile.tls_profile_id is None

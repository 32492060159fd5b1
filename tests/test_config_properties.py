"""
Property-based tests for configuration module.

Uses Hypothesis for property-based testing to verify that configurations
survive a JSON round trip, that invalid values are rejected, and that
environment variables are picked up.
"""

import dataclasses
import json
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from challenge_pipeline.config import (
    BackoffConfig,
    DetectorConfig,
    DomainStateConfig,
    FingerprintOptions,
    LoggingConfig,
    PipelineConfig,
    RetryConfig,
    SandboxLimits,
    SolverConfig,
    config_from_dict,
    load_config_from_env,
    load_config_from_file,
)
from challenge_pipeline.exceptions import ConfigurationError


# Strategies for generating valid configuration objects

positive_floats = st.floats(min_value=0.01, max_value=1000.0, allow_nan=False, allow_infinity=False)


@st.composite
def sandbox_limits_strategy(draw) -> SandboxLimits:
    """Generate valid SandboxLimits objects."""
    return SandboxLimits(
        max_steps=draw(st.integers(min_value=1, max_value=10_000_000)),
        max_duration_seconds=draw(positive_floats),
        max_memory_cells=draw(st.integers(min_value=1, max_value=10_000_000)),
        max_depth=draw(st.integers(min_value=1, max_value=200)),
        max_nesting_depth=draw(st.integers(min_value=1, max_value=500)),
        max_string_length=draw(st.integers(min_value=1, max_value=10_000_000)),
    )


@st.composite
def solver_config_strategy(draw) -> SolverConfig:
    """Generate valid SolverConfig objects."""
    low = draw(st.floats(min_value=0.0, max_value=10.0))
    high = draw(st.floats(min_value=low, max_value=20.0))
    return SolverConfig(
        iuam_budget=draw(sandbox_limits_strategy()),
        js_v2_budget=draw(sandbox_limits_strategy()),
        managed_v3_budget=draw(sandbox_limits_strategy()),
        submit_delay_min_seconds=low,
        submit_delay_max_seconds=high,
        iuam_default_delay_seconds=draw(positive_floats),
        default_rate_limit_delay_seconds=draw(positive_floats),
    )


@st.composite
def fingerprint_options_strategy(draw) -> FingerprintOptions:
    """Generate valid FingerprintOptions objects."""
    desktop = draw(st.booleans())
    return FingerprintOptions(
        custom_user_agent=draw(st.one_of(st.none(), st.just("Mozilla/5.0 (X11; Linux x86_64) Custom/1.0"))),
        platform=draw(st.one_of(st.none(), st.sampled_from(["windows", "linux", "darwin", "android"]))),
        browser=draw(st.one_of(st.none(), st.sampled_from(["chrome", "firefox"]))),
        desktop=desktop,
        mobile=True if not desktop else draw(st.booleans()),
        allow_brotli=draw(st.booleans()),
        per_domain=draw(st.booleans()),
        tls_profile_id=draw(st.one_of(st.none(), st.just("chrome_120"))),
    )


@st.composite
def pipeline_config_strategy(draw) -> PipelineConfig:
    """Generate valid PipelineConfig objects."""
    ports = draw(st.lists(st.integers(min_value=1024, max_value=65535), max_size=4, unique=True))
    return PipelineConfig(
        max_challenge_attempts=draw(st.integers(min_value=1, max_value=20)),
        request_timeout_seconds=draw(positive_floats),
        proxies=[f"http://10.0.0.2:{port}" for port in ports],
        enable_adaptive_timing=draw(st.booleans()),
        enable_adaptive_scoring=draw(st.booleans()),
        sandbox=draw(sandbox_limits_strategy()),
        solver=draw(solver_config_strategy()),
        detector=DetectorConfig(
            challenge_status_codes=tuple(draw(st.lists(
                st.sampled_from([403, 429, 503, 520]), min_size=1, max_size=4, unique=True,
            ))),
            single_signal_ceiling=draw(st.floats(min_value=0.1, max_value=0.9)),
            status_only_confidence=draw(st.floats(min_value=0.0, max_value=0.5)),
            tie_epsilon=draw(st.floats(min_value=0.0, max_value=0.2)),
        ),
        backoff=BackoffConfig(
            multiplier=draw(st.floats(min_value=1.0, max_value=4.0)),
            max_backoff_seconds=draw(st.floats(min_value=0.0, max_value=3600.0)),
            best_effort=draw(st.booleans()),
        ),
        domain_state=DomainStateConfig(
            failure_threshold=draw(st.integers(min_value=1, max_value=20)),
            cooldown_seconds=draw(positive_floats),
            history_limit=draw(st.integers(min_value=1, max_value=1000)),
            ewma_alpha=draw(st.floats(min_value=0.01, max_value=1.0)),
        ),
        fingerprint=draw(fingerprint_options_strategy()),
        retry=RetryConfig(
            max_retries=draw(st.integers(min_value=0, max_value=10)),
            base_delay_seconds=draw(positive_floats),
            max_delay_seconds=draw(positive_floats),
        ),
        logging=LoggingConfig(
            level=draw(st.sampled_from(["debug", "info", "warn", "error"])),
            output_format=draw(st.sampled_from(["json", "text", "both"])),
        ),
    )


def config_to_dict(config: PipelineConfig) -> dict:
    """Serialize a PipelineConfig to a JSON-compatible dictionary."""
    data = dataclasses.asdict(config)
    data["detector"]["challenge_status_codes"] = list(config.detector.challenge_status_codes)
    return data


def _write_json(directory: str, payload) -> Path:
    path = Path(directory) / "config.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


class TestConfigurationRoundTripProperty:
    """
    **Feature: challenge-pipeline, Property 32: Configuration round trip**

    *For any* valid PipelineConfig, serializing it to JSON and loading it
    back produces an equivalent configuration.
    """

    @given(config=pipeline_config_strategy())
    @settings(max_examples=100)
    def test_config_round_trip_preserves_data(self, config: PipelineConfig) -> None:
        restored = config_from_dict(json.loads(json.dumps(config_to_dict(config))))

        assert restored == config, f"Round trip changed config:\n{config}\n{restored}"

    @given(config=pipeline_config_strategy())
    @settings(max_examples=30, deadline=None)
    def test_file_round_trip(self, config: PipelineConfig) -> None:
        with tempfile.TemporaryDirectory() as directory:
            path = _write_json(directory, config_to_dict(config))

            assert load_config_from_file(path) == config

    def test_empty_dict_gives_defaults(self) -> None:
        assert config_from_dict({}) == PipelineConfig()


class TestInvalidConfigurationProperty:
    """
    **Feature: challenge-pipeline, Property 33: Invalid configuration rejected**

    *For any* out-of-range or mistyped value, loading raises
    ConfigurationError instead of producing a config.
    """

    @given(attempts=st.integers(max_value=0))
    @settings(max_examples=50)
    def test_attempt_budget_must_be_positive(self, attempts: int) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            config_from_dict({"max_challenge_attempts": attempts})
        assert exc_info.value.code == "invalid_attempts"

    @given(multiplier=st.floats(max_value=0.99, allow_nan=False, allow_infinity=False))
    @settings(max_examples=50)
    def test_backoff_multiplier_below_one(self, multiplier: float) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            config_from_dict({"backoff": {"multiplier": multiplier}})
        assert exc_info.value.code == "invalid_backoff"

    @given(steps=st.integers(max_value=0))
    @settings(max_examples=50)
    def test_sandbox_steps_must_be_positive(self, steps: int) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            config_from_dict({"solver": {"managed_v3_budget": {"max_steps": steps}}})
        assert exc_info.value.code == "invalid_sandbox_limits"

    def test_inverted_delay_range(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            config_from_dict({"solver": {"submit_delay_min_seconds": 5, "submit_delay_max_seconds": 1}})
        assert exc_info.value.code == "invalid_delay_range"

    def test_no_device_class(self) -> None:
        with pytest.raises(ConfigurationError):
            config_from_dict({"fingerprint": {"desktop": False, "mobile": False}})

    @given(value=st.sampled_from(["five", "1.5.2", "", "ten seconds"]))
    @settings(max_examples=20)
    def test_mistyped_values(self, value: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            config_from_dict({"request_timeout_seconds": value})
        assert exc_info.value.code == "invalid_config"

    def test_unparseable_file(self) -> None:
        with tempfile.TemporaryDirectory() as directory:
            path = Path(directory) / "config.json"
            path.write_text("{not json", encoding="utf-8")

            with pytest.raises(ConfigurationError) as exc_info:
                load_config_from_file(path)
        assert exc_info.value.code == "parse_error"

    def test_non_object_file(self) -> None:
        with tempfile.TemporaryDirectory() as directory:
            path = _write_json(directory, [1, 2, 3])

            with pytest.raises(ConfigurationError) as exc_info:
                load_config_from_file(path)
        assert exc_info.value.code == "parse_error"

    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as directory:
            with pytest.raises(ConfigurationError) as exc_info:
                load_config_from_file(Path(directory) / "absent.json")
        assert exc_info.value.code == "io_error"


ENV_NAMES = [
    "MAX_CHALLENGE_ATTEMPTS", "REQUEST_TIMEOUT_SECONDS", "PROXIES", "ADAPTIVE_TIMING",
    "ADAPTIVE_SCORING", "BEST_EFFORT", "MAX_BACKOFF_SECONDS", "PER_DOMAIN_FINGERPRINT",
    "CUSTOM_USER_AGENT", "PLATFORM", "BROWSER", "TLS_PROFILE_ID", "LOG_LEVEL", "LOG_FORMAT",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_NAMES:
        monkeypatch.delenv("CHALLENGE_PIPELINE_" + name, raising=False)
    empty = tmp_path / ".env"
    empty.write_text("", encoding="utf-8")
    return empty


class TestEnvironmentConfiguration:
    """Loading configuration from CHALLENGE_PIPELINE_* variables."""

    def test_defaults_without_variables(self, clean_env) -> None:
        assert load_config_from_env(clean_env) == PipelineConfig()

    def test_variables_are_applied(self, clean_env, monkeypatch) -> None:
        monkeypatch.setenv("CHALLENGE_PIPELINE_MAX_CHALLENGE_ATTEMPTS", "8")
        monkeypatch.setenv("CHALLENGE_PIPELINE_PROXIES", "http://a:1, http://b:2;http://c:3")
        monkeypatch.setenv("CHALLENGE_PIPELINE_ADAPTIVE_TIMING", "off")
        monkeypatch.setenv("CHALLENGE_PIPELINE_BEST_EFFORT", "yes")
        monkeypatch.setenv("CHALLENGE_PIPELINE_MAX_BACKOFF_SECONDS", "45")
        monkeypatch.setenv("CHALLENGE_PIPELINE_BROWSER", "firefox")
        monkeypatch.setenv("CHALLENGE_PIPELINE_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("CHALLENGE_PIPELINE_LOG_FORMAT", "json")

        config = load_config_from_env(clean_env)

        assert config.max_challenge_attempts == 8
        assert config.proxies == ["http://a:1", "http://b:2", "http://c:3"]
        assert config.enable_adaptive_timing is False
        assert config.enable_adaptive_scoring is True
        assert config.backoff.best_effort is True
        assert config.backoff.max_backoff_seconds == 45.0
        assert config.fingerprint.browser == "firefox"
        assert config.logging == LoggingConfig(level="debug", output_format="json")

    def test_env_file_is_read(self, clean_env, monkeypatch, tmp_path) -> None:
        env_file = tmp_path / "pipeline.env"
        env_file.write_text(
            "CHALLENGE_PIPELINE_MAX_CHALLENGE_ATTEMPTS=3\nCHALLENGE_PIPELINE_PER_DOMAIN_FINGERPRINT=true\n",
            encoding="utf-8",
        )
        # load_dotenv writes into os.environ; register the names so they are undone
        monkeypatch.setenv("CHALLENGE_PIPELINE_MAX_CHALLENGE_ATTEMPTS", "")
        monkeypatch.delenv("CHALLENGE_PIPELINE_MAX_CHALLENGE_ATTEMPTS")
        monkeypatch.setenv("CHALLENGE_PIPELINE_PER_DOMAIN_FINGERPRINT", "")
        monkeypatch.delenv("CHALLENGE_PIPELINE_PER_DOMAIN_FINGERPRINT")

        config = load_config_from_env(env_file)

        assert config.max_challenge_attempts == 3
        assert config.fingerprint.per_domain is True

    def test_invalid_variable(self, clean_env, monkeypatch) -> None:
        monkeypatch.setenv("CHALLENGE_PIPELINE_MAX_CHALLENGE_ATTEMPTS", "many")

        with pytest.raises(ConfigurationError):
            load_config_from_env(clean_env)

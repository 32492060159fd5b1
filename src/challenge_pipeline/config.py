"""
Configuration dataclasses for the challenge pipeline.

This module defines all configuration structures used throughout the system,
including sandbox resource ceilings, detector scoring, backoff, per-domain
state tracking, fingerprint selection, transport retries and logging, along
with loaders for JSON files and environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

ENV_PREFIX = "CHALLENGE_PIPELINE_"


@dataclass(frozen=True)
class SandboxLimits:
    """Resource budget for a single sandbox evaluation."""

    max_steps: int = 100_000
    max_duration_seconds: float = 1.0
    max_memory_cells: int = 50_000
    max_depth: int = 24
    max_nesting_depth: int = 64
    max_string_length: int = 1_000_000


@dataclass
class SolverConfig:
    """Solver budgets and submission timing."""

    iuam_budget: SandboxLimits = field(default_factory=lambda: SandboxLimits(max_steps=10_000))
    js_v2_budget: SandboxLimits = field(default_factory=SandboxLimits)
    managed_v3_budget: SandboxLimits = field(
        default_factory=lambda: SandboxLimits(
            max_steps=1_000_000,
            max_duration_seconds=5.0,
            max_memory_cells=500_000,
        )
    )
    submit_delay_min_seconds: float = 1.0
    submit_delay_max_seconds: float = 5.0
    iuam_default_delay_seconds: float = 4.0
    default_rate_limit_delay_seconds: float = 60.0


@dataclass
class DetectorConfig:
    """Scoring parameters for the challenge detector."""

    challenge_status_codes: tuple = (403, 429, 503)
    single_signal_ceiling: float = 0.45
    status_only_confidence: float = 0.3
    tie_epsilon: float = 0.05
    min_weight: float = 0.01
    max_weight: float = 0.99


@dataclass
class BackoffConfig:
    """Backoff behaviour used by the mitigation planner."""

    multiplier: float = 2.0
    max_backoff_seconds: float = 300.0
    best_effort: bool = False


@dataclass
class DomainStateConfig:
    """Per-domain tracking and adaptive learning parameters."""

    failure_threshold: int = 5
    cooldown_seconds: float = 30.0
    history_limit: int = 100
    ewma_alpha: float = 0.2
    min_delay_seconds: float = 1.0
    max_delay_seconds: float = 120.0
    weight_step: float = 0.05
    max_weight_adjustment: float = 0.2
    weight_decay: float = 0.9


@dataclass
class FingerprintOptions:
    """Selection of the browser fingerprint presented to the origin."""

    custom_user_agent: Optional[str] = None
    platform: Optional[str] = None
    browser: Optional[str] = None
    desktop: bool = True
    mobile: bool = True
    allow_brotli: bool = False
    per_domain: bool = False
    tls_profile_id: Optional[str] = None


@dataclass
class RetryConfig:
    """Transport-level retry behaviour."""

    max_retries: int = 2
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class PipelineConfig:
    """Main pipeline configuration combining all sub-configurations."""

    max_challenge_attempts: int = 5
    request_timeout_seconds: float = 30.0
    proxies: list[str] = field(default_factory=list)
    enable_adaptive_timing: bool = True
    enable_adaptive_scoring: bool = True
    sandbox: SandboxLimits = field(default_factory=SandboxLimits)
    solver: SolverConfig = field(default_factory=SolverConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    domain_state: DomainStateConfig = field(default_factory=DomainStateConfig)
    fingerprint: FingerprintOptions = field(default_factory=FingerprintOptions)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        """
        Check cross-field invariants.

        Raises:
            ConfigurationError: If any value is out of range
        """
        if self.max_challenge_attempts < 1:
            raise ConfigurationError(
                code="invalid_attempts",
                message="max_challenge_attempts must be at least 1",
                details={"max_challenge_attempts": self.max_challenge_attempts},
            )
        if self.backoff.max_backoff_seconds < 0 or self.backoff.multiplier < 1.0:
            raise ConfigurationError(
                code="invalid_backoff",
                message="backoff multiplier must be >= 1 and max_backoff_seconds >= 0",
                details={
                    "multiplier": self.backoff.multiplier,
                    "max_backoff_seconds": self.backoff.max_backoff_seconds,
                },
            )
        if self.solver.submit_delay_max_seconds < self.solver.submit_delay_min_seconds:
            raise ConfigurationError(
                code="invalid_delay_range",
                message="submit_delay_max_seconds must not be below submit_delay_min_seconds",
                details={},
            )
        if not self.fingerprint.desktop and not self.fingerprint.mobile:
            raise ConfigurationError(
                code="invalid_fingerprint_options",
                message="desktop and mobile cannot both be disabled",
                details={},
            )
        for limits in (
            self.sandbox,
            self.solver.iuam_budget,
            self.solver.js_v2_budget,
            self.solver.managed_v3_budget,
        ):
            if limits.max_steps < 1 or limits.max_duration_seconds <= 0 or limits.max_depth < 1:
                raise ConfigurationError(
                    code="invalid_sandbox_limits",
                    message="sandbox limits must be positive",
                    details={"limits": limits.__dict__},
                )


def _limits_from_dict(data: dict, default: SandboxLimits) -> SandboxLimits:
    return SandboxLimits(
        max_steps=data.get("max_steps", default.max_steps),
        max_duration_seconds=data.get("max_duration_seconds", default.max_duration_seconds),
        max_memory_cells=data.get("max_memory_cells", default.max_memory_cells),
        max_depth=data.get("max_depth", default.max_depth),
        max_nesting_depth=data.get("max_nesting_depth", default.max_nesting_depth),
        max_string_length=data.get("max_string_length", default.max_string_length),
    )


def config_from_dict(data: dict) -> PipelineConfig:
    """
    Build a PipelineConfig from a plain dictionary.

    Unknown keys are ignored; missing keys fall back to defaults.

    Raises:
        ConfigurationError: If a value has the wrong type or fails validation
    """
    try:
        defaults = PipelineConfig()

        solver_data = data.get("solver", {})
        solver = SolverConfig(
            iuam_budget=_limits_from_dict(
                solver_data.get("iuam_budget", {}), defaults.solver.iuam_budget
            ),
            js_v2_budget=_limits_from_dict(
                solver_data.get("js_v2_budget", {}), defaults.solver.js_v2_budget
            ),
            managed_v3_budget=_limits_from_dict(
                solver_data.get("managed_v3_budget", {}), defaults.solver.managed_v3_budget
            ),
            submit_delay_min_seconds=float(solver_data.get("submit_delay_min_seconds", 1.0)),
            submit_delay_max_seconds=float(solver_data.get("submit_delay_max_seconds", 5.0)),
            iuam_default_delay_seconds=float(solver_data.get("iuam_default_delay_seconds", 4.0)),
            default_rate_limit_delay_seconds=float(
                solver_data.get("default_rate_limit_delay_seconds", 60.0)
            ),
        )

        detector_data = data.get("detector", {})
        detector = DetectorConfig(
            challenge_status_codes=tuple(
                detector_data.get("challenge_status_codes", (403, 429, 503))
            ),
            single_signal_ceiling=float(detector_data.get("single_signal_ceiling", 0.45)),
            status_only_confidence=float(detector_data.get("status_only_confidence", 0.3)),
            tie_epsilon=float(detector_data.get("tie_epsilon", 0.05)),
        )

        backoff_data = data.get("backoff", {})
        backoff = BackoffConfig(
            multiplier=float(backoff_data.get("multiplier", 2.0)),
            max_backoff_seconds=float(backoff_data.get("max_backoff_seconds", 300.0)),
            best_effort=bool(backoff_data.get("best_effort", False)),
        )

        state_data = data.get("domain_state", {})
        domain_state = DomainStateConfig(
            failure_threshold=int(state_data.get("failure_threshold", 5)),
            cooldown_seconds=float(state_data.get("cooldown_seconds", 30.0)),
            history_limit=int(state_data.get("history_limit", 100)),
            ewma_alpha=float(state_data.get("ewma_alpha", 0.2)),
            min_delay_seconds=float(state_data.get("min_delay_seconds", 1.0)),
            max_delay_seconds=float(state_data.get("max_delay_seconds", 120.0)),
            weight_step=float(state_data.get("weight_step", 0.05)),
            max_weight_adjustment=float(state_data.get("max_weight_adjustment", 0.2)),
            weight_decay=float(state_data.get("weight_decay", 0.9)),
        )

        fp_data = data.get("fingerprint", {})
        fingerprint = FingerprintOptions(
            custom_user_agent=fp_data.get("custom_user_agent"),
            platform=fp_data.get("platform"),
            browser=fp_data.get("browser"),
            desktop=bool(fp_data.get("desktop", True)),
            mobile=bool(fp_data.get("mobile", True)),
            allow_brotli=bool(fp_data.get("allow_brotli", False)),
            per_domain=bool(fp_data.get("per_domain", False)),
            tls_profile_id=fp_data.get("tls_profile_id"),
        )

        retry_data = data.get("retry", {})
        retry = RetryConfig(
            max_retries=int(retry_data.get("max_retries", 2)),
            base_delay_seconds=float(retry_data.get("base_delay_seconds", 0.5)),
            max_delay_seconds=float(retry_data.get("max_delay_seconds", 8.0)),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            output_format=logging_data.get("output_format", "text"),
        )

        config = PipelineConfig(
            max_challenge_attempts=int(data.get("max_challenge_attempts", 5)),
            request_timeout_seconds=float(data.get("request_timeout_seconds", 30.0)),
            proxies=list(data.get("proxies", [])),
            enable_adaptive_timing=bool(data.get("enable_adaptive_timing", True)),
            enable_adaptive_scoring=bool(data.get("enable_adaptive_scoring", True)),
            sandbox=_limits_from_dict(data.get("sandbox", {}), defaults.sandbox),
            solver=solver,
            detector=detector,
            backoff=backoff,
            domain_state=domain_state,
            fingerprint=fingerprint,
            retry=retry,
            logging=logging_config,
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigurationError(
            code="invalid_config",
            message=f"Invalid configuration value: {e}",
            details={},
        )

    config.validate()
    return config


def load_config_from_file(config_path: Path) -> PipelineConfig:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            code="parse_error",
            message=f"Failed to parse config file: {e}",
            details={"config_path": str(config_path)},
        )
    except OSError as e:
        raise ConfigurationError(
            code="io_error",
            message=f"Failed to read config file: {e}",
            details={"config_path": str(config_path)},
        )

    if not isinstance(data, dict):
        raise ConfigurationError(
            code="parse_error",
            message="Config file must contain a JSON object",
            details={"config_path": str(config_path)},
        )
    return config_from_dict(data)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(env_file: Optional[Path] = None) -> PipelineConfig:
    """
    Build a PipelineConfig from CHALLENGE_PIPELINE_* environment variables.

    A .env file is loaded first (the given path, or the default lookup of
    python-dotenv); variables already set in the process take precedence.

    Raises:
        ConfigurationError: If a variable cannot be parsed or fails validation
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    data: dict = {}
    raw_attempts = os.getenv(ENV_PREFIX + "MAX_CHALLENGE_ATTEMPTS")
    if raw_attempts:
        data["max_challenge_attempts"] = raw_attempts
    raw_timeout = os.getenv(ENV_PREFIX + "REQUEST_TIMEOUT_SECONDS")
    if raw_timeout:
        data["request_timeout_seconds"] = raw_timeout

    raw_proxies = os.getenv(ENV_PREFIX + "PROXIES", "")
    data["proxies"] = [
        p.strip() for chunk in raw_proxies.replace(";", ",").split(",") for p in chunk.split() if p.strip()
    ]
    data["enable_adaptive_timing"] = _env_bool("ADAPTIVE_TIMING", True)
    data["enable_adaptive_scoring"] = _env_bool("ADAPTIVE_SCORING", True)
    data["backoff"] = {"best_effort": _env_bool("BEST_EFFORT", False)}
    raw_max_backoff = os.getenv(ENV_PREFIX + "MAX_BACKOFF_SECONDS")
    if raw_max_backoff:
        data["backoff"]["max_backoff_seconds"] = raw_max_backoff

    fingerprint: dict = {"per_domain": _env_bool("PER_DOMAIN_FINGERPRINT", False)}
    for key in ("custom_user_agent", "platform", "browser", "tls_profile_id"):
        value = os.getenv(ENV_PREFIX + key.upper())
        if value:
            fingerprint[key] = value
    data["fingerprint"] = fingerprint

    data["logging"] = {
        "level": os.getenv(ENV_PREFIX + "LOG_LEVEL", "info").lower(),
        "output_format": os.getenv(ENV_PREFIX + "LOG_FORMAT", "text").lower(),
    }
    return config_from_dict(data)

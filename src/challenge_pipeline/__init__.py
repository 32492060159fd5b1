"""
Challenge Pipeline - classify and clear bot-mitigation challenges.

This package detects the challenge a reverse-proxy security layer returned,
solves it (JavaScript puzzles in a resource-bounded sandbox, CAPTCHA gates
through a pluggable provider), plans mitigations for rate limits and blocks,
and tracks per-domain adaptive state across attempts.
"""

__version__ = "0.1.0"
__author__ = "Challenge Pipeline Team"

from challenge_pipeline.exceptions import (
    ChallengePipelineError,
    ConfigurationError,
    TransportError,
    MalformedChallengeError,
    SandboxError,
    UnsupportedConstructError,
    ResourceExceededError,
    CaptchaError,
    NoCaptchaProviderError,
    ProxyExhaustedError,
    PipelineFailure,
    AttemptBudgetExceededError,
)
from challenge_pipeline.enums import (
    ChallengeType,
    SolveStatus,
    MitigationAction,
    FailureReason,
    EventKind,
    LogLevel,
)
from challenge_pipeline.config import (
    SandboxLimits,
    SolverConfig,
    DetectorConfig,
    BackoffConfig,
    DomainStateConfig,
    FingerprintOptions,
    RetryConfig,
    LoggingConfig,
    PipelineConfig,
    config_from_dict,
    load_config_from_file,
    load_config_from_env,
)
from challenge_pipeline.models import (
    HttpRequest,
    HttpResponse,
    DetectionResult,
    SandboxScript,
    Submission,
    SolveResult,
    MitigationPlan,
    AttemptOutcome,
    AttemptRecord,
    FinalResponse,
)
from challenge_pipeline.fingerprint import (
    FingerprintProfile,
    FingerprintGenerator,
    load_catalog,
)
from challenge_pipeline.detector import (
    ChallengeDetector,
    PatternMatcher,
    DEFAULT_MATCHERS,
)
from challenge_pipeline.sandbox import (
    SandboxEvaluator,
    UNDEFINED,
)
from challenge_pipeline.solver import (
    SolverDispatcher,
)
from challenge_pipeline.captcha import (
    CaptchaProvider,
    CallbackCaptchaProvider,
)
from challenge_pipeline.planner import (
    MitigationPlanner,
)
from challenge_pipeline.domain_state import (
    DomainStateManager,
    DomainState,
    DomainStateSnapshot,
    LatencyModel,
    normalize_host,
)
from challenge_pipeline.proxy import (
    ProxySource,
    ProxyRotator,
)
from challenge_pipeline.transport import (
    Transport,
    HttpxTransport,
)
from challenge_pipeline.retry_manager import (
    RetryManager,
    RetryResult,
)
from challenge_pipeline.events import (
    PipelineEvent,
    EventSink,
    EventDispatcher,
    AuditLogSink,
    CounterSink,
)
from challenge_pipeline.audit_logger import (
    AuditLogger,
    LogEntry,
)
from challenge_pipeline.orchestrator import (
    ChallengeOrchestrator,
)

__all__ = [
    # Exceptions
    "ChallengePipelineError",
    "ConfigurationError",
    "TransportError",
    "MalformedChallengeError",
    "SandboxError",
    "UnsupportedConstructError",
    "ResourceExceededError",
    "CaptchaError",
    "NoCaptchaProviderError",
    "ProxyExhaustedError",
    "PipelineFailure",
    "AttemptBudgetExceededError",
    # Enums
    "ChallengeType",
    "SolveStatus",
    "MitigationAction",
    "FailureReason",
    "EventKind",
    "LogLevel",
    # Configuration
    "SandboxLimits",
    "SolverConfig",
    "DetectorConfig",
    "BackoffConfig",
    "DomainStateConfig",
    "FingerprintOptions",
    "RetryConfig",
    "LoggingConfig",
    "PipelineConfig",
    "config_from_dict",
    "load_config_from_file",
    "load_config_from_env",
    # Models
    "HttpRequest",
    "HttpResponse",
    "DetectionResult",
    "SandboxScript",
    "Submission",
    "SolveResult",
    "MitigationPlan",
    "AttemptOutcome",
    "AttemptRecord",
    "FinalResponse",
    # Fingerprints
    "FingerprintProfile",
    "FingerprintGenerator",
    "load_catalog",
    # Detector
    "ChallengeDetector",
    "PatternMatcher",
    "DEFAULT_MATCHERS",
    # Sandbox
    "SandboxEvaluator",
    "UNDEFINED",
    # Solver
    "SolverDispatcher",
    # Captcha
    "CaptchaProvider",
    "CallbackCaptchaProvider",
    # Planner
    "MitigationPlanner",
    # Domain State
    "DomainStateManager",
    "DomainState",
    "DomainStateSnapshot",
    "LatencyModel",
    "normalize_host",
    # Proxies
    "ProxySource",
    "ProxyRotator",
    # Transport
    "Transport",
    "HttpxTransport",
    # Retry Manager
    "RetryManager",
    "RetryResult",
    # Events
    "PipelineEvent",
    "EventSink",
    "EventDispatcher",
    "AuditLogSink",
    "CounterSink",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Orchestrator
    "ChallengeOrchestrator",
]

"""
Enumeration types for the challenge pipeline.

These enums provide type-safe constants for challenge classifications,
mitigation actions, solve outcomes and failure reasons throughout the system.
"""

from enum import Enum


class ChallengeType(Enum):
    """Classification of a response returned by the security layer."""

    NONE = "none"
    IUAM_V1 = "iuam_v1"
    JS_CHALLENGE_V2 = "js_challenge_v2"
    MANAGED_V3 = "managed_v3"
    TURNSTILE = "turnstile"
    RATE_LIMIT = "rate_limit"
    ACCESS_DENIED = "access_denied"
    BOT_MANAGEMENT = "bot_management"


class SolveStatus(Enum):
    """Tag of a SolveResult."""

    SUCCESS = "success"
    CAPTCHA_REQUIRED = "captcha_required"
    MITIGATE = "mitigate"
    FAILED = "failed"


class MitigationAction(Enum):
    """Next step the orchestrator should take."""

    RETRY = "retry"
    WAIT_THEN_RETRY = "wait_then_retry"
    ROTATE_FINGERPRINT_THEN_RETRY = "rotate_fingerprint_then_retry"
    ROTATE_PROXY_THEN_RETRY = "rotate_proxy_then_retry"
    ABORT = "abort"


class FailureReason(Enum):
    """Reasons attached to failed solves and aborted plans."""

    MALFORMED_CHALLENGE = "malformed_challenge"
    UNSUPPORTED_CONSTRUCT = "unsupported_construct"
    RESOURCE_EXCEEDED = "resource_exceeded"
    NO_CAPTCHA_PROVIDER = "no_captcha_provider"
    CAPTCHA_ERROR = "captcha_error"
    CAPTCHA_UNRESOLVED = "captcha_unresolved"
    PROXY_EXHAUSTED = "proxy_exhausted"
    ATTEMPT_BUDGET_EXCEEDED = "attempt_budget_exceeded"
    TRANSPORT_ERROR = "transport_error"


class EventKind(Enum):
    """Structured events emitted to the events sink."""

    CLASSIFICATION = "classification"
    SOLVE_ATTEMPT = "solve_attempt"
    MITIGATION = "mitigation"
    OUTCOME = "outcome"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

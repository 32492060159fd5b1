"""
Exception classes for the challenge pipeline.

All exceptions inherit from ChallengePipelineError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class ChallengePipelineError(Exception):
    """Base exception for all challenge pipeline errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(ChallengePipelineError):
    """Raised at startup for invalid configuration or a missing bundled catalog."""

    pass


class TransportError(ChallengePipelineError):
    """Raised by transports on connection, TLS or timeout faults."""

    pass


class MalformedChallengeError(ChallengePipelineError):
    """Raised when an expected challenge marker is absent or unusable."""

    pass


class SandboxError(ChallengePipelineError):
    """Base class for sandbox evaluation failures."""

    pass


class UnsupportedConstructError(SandboxError):
    """Raised when a script uses syntax or names outside the supported subset."""

    pass


class ResourceExceededError(SandboxError):
    """Raised when a script breaches a step, time, depth or memory ceiling."""

    pass


class CaptchaError(ChallengePipelineError):
    """Raised by captcha providers when a token cannot be obtained."""

    pass


class NoCaptchaProviderError(CaptchaError):
    """Raised when a captcha must be solved but no provider is configured."""

    pass


class ProxyExhaustedError(ChallengePipelineError):
    """Raised by proxy sources when no usable proxy remains."""

    pass


class PipelineFailure(ChallengePipelineError):
    """
    Terminal failure surfaced to callers of the orchestrator.

    Carries the last classification and the full attempt history so the
    caller can decide whether to adjust configuration and retry.
    """

    def __init__(
        self,
        code: str,
        message: str,
        reason=None,
        last_classification=None,
        attempts: int = 0,
        history: Optional[list] = None,
        details: Optional[dict] = None,
    ) -> None:
        self.reason = reason
        self.last_classification = last_classification
        self.attempts = attempts
        self.history = list(history or [])
        merged = dict(details or {})
        merged.setdefault("attempts", attempts)
        if last_classification is not None:
            merged.setdefault("last_classification", last_classification.value)
        if reason is not None:
            merged.setdefault("reason", reason.value)
        super().__init__(code=code, message=message, details=merged)


class AttemptBudgetExceededError(PipelineFailure):
    """Raised when max_challenge_attempts is spent without reaching the resource."""

    pass

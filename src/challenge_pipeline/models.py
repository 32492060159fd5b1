"""
Data models for the challenge pipeline.

This module defines the records passed between pipeline stages: transport
requests and responses, detection results, sandbox scripts, submissions,
solve results, mitigation plans and attempt outcomes.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .config import SandboxLimits
from .enums import ChallengeType, FailureReason, MitigationAction, SolveStatus


@dataclass
class HttpRequest:
    """A request handed to the transport."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    data: Optional[dict[str, str]] = None
    cookies: dict[str, str] = field(default_factory=dict)
    proxy: Optional[str] = None
    follow_redirects: bool = True
    tls_profile_id: Optional[str] = None


@dataclass
class HttpResponse:
    """A response returned by the transport. Header names are lowercase."""

    status_code: int
    headers: dict[str, str]
    body: str
    url: str
    elapsed_ms: float = 0.0

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


@dataclass(frozen=True)
class DetectionResult:
    """Classification of one response."""

    challenge_type: ChallengeType
    confidence: float
    markers: dict[str, str] = field(default_factory=dict)
    matched_patterns: tuple[str, ...] = ()
    status_code: int = 0


@dataclass(frozen=True)
class SandboxScript:
    """A script to run in the sandbox; inputs are the only visible names."""

    source: str
    entry_expression: Optional[str] = None
    budget: SandboxLimits = field(default_factory=SandboxLimits)
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass
class Submission:
    """The follow-up request that carries a challenge answer."""

    method: str
    url: str
    form_fields: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    wait_seconds: float = 0.0
    follow_redirects: bool = False


@dataclass
class SolveResult:
    """
    Outcome of solving one challenge, tagged by status.

    Only the fields relevant to the status are populated:
    SUCCESS carries a submission (None for NONE responses),
    CAPTCHA_REQUIRED carries site_key and metadata,
    MITIGATE carries action and wait_seconds,
    FAILED carries reason and message.
    """

    status: SolveStatus
    submission: Optional[Submission] = None
    site_key: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    action: Optional[MitigationAction] = None
    wait_seconds: float = 0.0
    reason: Optional[FailureReason] = None
    message: str = ""

    @classmethod
    def success(cls, submission: Optional[Submission] = None) -> "SolveResult":
        return cls(status=SolveStatus.SUCCESS, submission=submission)

    @classmethod
    def captcha_required(cls, site_key: str, metadata: dict[str, str]) -> "SolveResult":
        return cls(status=SolveStatus.CAPTCHA_REQUIRED, site_key=site_key, metadata=metadata)

    @classmethod
    def mitigate(cls, action: MitigationAction, wait_seconds: float = 0.0) -> "SolveResult":
        return cls(status=SolveStatus.MITIGATE, action=action, wait_seconds=wait_seconds)

    @classmethod
    def failed(cls, reason: FailureReason, message: str) -> "SolveResult":
        return cls(status=SolveStatus.FAILED, reason=reason, message=message)


@dataclass(frozen=True)
class MitigationPlan:
    """Next step chosen by the planner."""

    action: MitigationAction
    reason: str
    wait_seconds: float = 0.0
    submission: Optional[Submission] = None
    failure_reason: Optional[FailureReason] = None


@dataclass
class AttemptOutcome:
    """What happened on one attempt, fed back into the domain state."""

    challenge_type: ChallengeType
    success: bool
    latency_seconds: float = 0.0
    confirmed_patterns: tuple[str, ...] = ()
    refuted_patterns: tuple[str, ...] = ()
    status_code: int = 0
    action: Optional[MitigationAction] = None
    wait_seconds: float = 0.0
    error: Optional[str] = None


@dataclass
class AttemptRecord:
    """One entry in a domain's attempt history."""

    timestamp: str
    challenge_type: str
    success: bool
    status_code: int
    action: Optional[str] = None
    wait_seconds: float = 0.0
    error: Optional[str] = None


@dataclass
class FinalResponse:
    """Result of a successful orchestrated request."""

    response: HttpResponse
    attempts: int
    history: list[AttemptRecord] = field(default_factory=list)
    last_detection: Optional[DetectionResult] = None

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def text(self) -> str:
        return self.response.body

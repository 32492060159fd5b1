"""
Challenge detector.

Classifies a response into exactly one ChallengeType by scoring an ordered
list of pattern matchers over the status code, body, inline scripts and
headers. Each matcher has a base weight and a specificity rank; the
per-domain weight adjustments learned by the domain state manager are
added to the base weight before scoring.

Per-type confidence is the noisy-OR of the matched weights, so agreeing
signals can only raise it. A type backed by a single signal is capped at
the single-signal ceiling. Candidates within tie_epsilon of the best are
tie-broken by summed specificity.
"""

import re
from dataclasses import dataclass
from typing import Mapping, Optional

from .challenge_parser import extract_markers
from .config import DetectorConfig
from .enums import ChallengeType
from .models import DetectionResult, HttpResponse

# Matcher kinds
STATUS = "status"
BODY = "body"
SCRIPT = "script"
HEADER = "header"

# Priority when confidence and specificity are both tied
TYPE_ORDER = (
    ChallengeType.TURNSTILE,
    ChallengeType.MANAGED_V3,
    ChallengeType.JS_CHALLENGE_V2,
    ChallengeType.IUAM_V1,
    ChallengeType.RATE_LIMIT,
    ChallengeType.BOT_MANAGEMENT,
    ChallengeType.ACCESS_DENIED,
)


@dataclass(frozen=True)
class PatternMatcher:
    """
    One detection signal.

    challenge_type None marks a corroborating signal (e.g. a Cloudflare
    header) that only counts toward types with evidence of their own.
    For HEADER matchers, header names the header and regex applies to its
    value; for STATUS matchers, regex applies to the status code text.
    """

    id: str
    challenge_type: Optional[ChallengeType]
    kind: str
    base_weight: float
    specificity: int
    regex: re.Pattern
    header: Optional[str] = None

    def matches(self, status_text: str, headers: Mapping[str, str], body: str) -> bool:
        if self.kind == STATUS:
            return self.regex.fullmatch(status_text) is not None
        if self.kind == HEADER:
            value = headers.get(self.header or "")
            return value is not None and self.regex.search(value) is not None
        return self.regex.search(body) is not None


def _matcher(id, challenge_type, kind, weight, specificity, pattern, flags=0, header=None):
    return PatternMatcher(
        id=id,
        challenge_type=challenge_type,
        kind=kind,
        base_weight=weight,
        specificity=specificity,
        regex=re.compile(pattern, flags),
        header=header,
    )


DEFAULT_MATCHERS: tuple[PatternMatcher, ...] = (
    # IUAM v1
    _matcher("iuam_title", ChallengeType.IUAM_V1, BODY, 0.35, 1,
             r"<title>\s*Just a moment\.\.\.\s*</title>", re.IGNORECASE),
    _matcher("iuam_checking_browser", ChallengeType.IUAM_V1, BODY, 0.3, 1,
             r"Checking your browser before accessing", re.IGNORECASE),
    _matcher("iuam_jschl_vars", ChallengeType.IUAM_V1, SCRIPT, 0.6, 3,
             r"var s,t,o,p,b,r,e,a,k,i,n,g"),
    _matcher("iuam_submit_timer", ChallengeType.IUAM_V1, SCRIPT, 0.5, 2,
             r"setTimeout\(function\(\)\s*\{\s*var.*?\.submit\(\)", re.DOTALL),
    _matcher("iuam_form", ChallengeType.IUAM_V1, BODY, 0.7, 4,
             r"""<form[^>]*id=['"]challenge-form['"][^>]*action=['"][^'"]*__cf_chl_f_tk=""", re.IGNORECASE),
    _matcher("iuam_jschl_vc", ChallengeType.IUAM_V1, BODY, 0.5, 3,
             r"""name=['"]jschl_vc['"]""", re.IGNORECASE),
    # JS challenge v2
    _matcher("v2_orchestrate", ChallengeType.JS_CHALLENGE_V2, SCRIPT, 0.65, 4,
             r"/cdn-cgi/challenge-platform/\S*?orchestrate/jsch/v1"),
    _matcher("v2_chl_opt", ChallengeType.JS_CHALLENGE_V2, SCRIPT, 0.45, 2,
             r"window\._cf_chl_opt\s*="),
    _matcher("v2_form", ChallengeType.JS_CHALLENGE_V2, BODY, 0.45, 3,
             r"""<form[^>]*id=['"]challenge-form['"][^>]*action=['"][^'"]*__cf_chl_rt_tk=""", re.IGNORECASE),
    # Managed v3
    _matcher("v3_orchestrate", ChallengeType.MANAGED_V3, SCRIPT, 0.7, 4,
             r"/cdn-cgi/challenge-platform/\S*?orchestrate/(?:captcha|managed)/v1"),
    _matcher("v3_chl_ctx", ChallengeType.MANAGED_V3, SCRIPT, 0.65, 3,
             r"window\._cf_chl_ctx\s*="),
    _matcher("v3_chl_enter", ChallengeType.MANAGED_V3, SCRIPT, 0.6, 3,
             r"window\._cf_chl_enter"),
    _matcher("v3_data_ray", ChallengeType.MANAGED_V3, BODY, 0.2, 1,
             r"""data-ray=['"][A-Fa-f0-9]+['"]"""),
    _matcher("v3_browser_verification", ChallengeType.MANAGED_V3, BODY, 0.3, 1,
             r"""class=['"]cf-browser-verification"""),
    # Turnstile
    _matcher("turnstile_widget", ChallengeType.TURNSTILE, BODY, 0.6, 3,
             r"""class=['"][^'"]*cf-turnstile[^'"]*['"]"""),
    _matcher("turnstile_api", ChallengeType.TURNSTILE, SCRIPT, 0.7, 4,
             r"challenges\.cloudflare\.com/turnstile/v0/api\.js"),
    _matcher("turnstile_sitekey", ChallengeType.TURNSTILE, BODY, 0.4, 5,
             r"""data-sitekey=['"][0-9A-Za-z_-]{20,}['"]"""),
    _matcher("turnstile_response", ChallengeType.TURNSTILE, BODY, 0.5, 3,
             r"cf-turnstile-response"),
    # Rate limit
    _matcher("rate_limit_status", ChallengeType.RATE_LIMIT, STATUS, 0.3, 1, r"429"),
    _matcher("rate_limit_error_code", ChallengeType.RATE_LIMIT, BODY, 0.8, 5,
             r"""class=['"]cf-error-code['"]>\s*1015\s*<"""),
    _matcher("rate_limit_text", ChallengeType.RATE_LIMIT, BODY, 0.6, 3,
             r"You are being rate limited", re.IGNORECASE),
    _matcher("rate_limit_title", ChallengeType.RATE_LIMIT, BODY, 0.4, 2,
             r"<title>[^<]*Rate Limited[^<]*</title>", re.IGNORECASE),
    _matcher("rate_limit_retry_after", ChallengeType.RATE_LIMIT, HEADER, 0.3, 1,
             r"\S", header="retry-after"),
    # Access denied
    _matcher("access_denied_error_code", ChallengeType.ACCESS_DENIED, BODY, 0.8, 5,
             r"""class=['"]cf-error-code['"]>\s*1020\s*<"""),
    _matcher("access_denied_text", ChallengeType.ACCESS_DENIED, BODY, 0.4, 2,
             r"Access denied"),
    _matcher("access_denied_banned", ChallengeType.ACCESS_DENIED, BODY, 0.6, 3,
             r"banned your access"),
    # Bot management
    _matcher("bot_management_error_code", ChallengeType.BOT_MANAGEMENT, BODY, 0.8, 5,
             r"""class=['"]cf-error-code['"]>\s*1010\s*<"""),
    _matcher("bot_management_text", ChallengeType.BOT_MANAGEMENT, BODY, 0.4, 2,
             r"Bot management", re.IGNORECASE),
    _matcher("bot_management_banned", ChallengeType.BOT_MANAGEMENT, BODY, 0.6, 3,
             r"has banned you temporarily"),
    # Corroborating headers
    _matcher("header_server_cloudflare", None, HEADER, 0.15, 0,
             r"^cloudflare", re.IGNORECASE, header="server"),
    _matcher("header_cf_ray", None, HEADER, 0.1, 0, r"\S", header="cf-ray"),
    _matcher("header_cf_mitigated", None, HEADER, 0.3, 1,
             r"challenge", re.IGNORECASE, header="cf-mitigated"),
)


@dataclass
class _Candidate:
    challenge_type: ChallengeType
    matchers: list[PatternMatcher]
    confidence: float = 0.0

    @property
    def specificity(self) -> int:
        return sum(m.specificity for m in self.matchers)


class ChallengeDetector:
    """
    Pure classifier over (headers, body, status). Holds no mutable state.
    """

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        matchers: Optional[tuple[PatternMatcher, ...]] = None,
    ) -> None:
        self._config = config or DetectorConfig()
        self._matchers = matchers if matchers is not None else DEFAULT_MATCHERS

    @property
    def matchers(self) -> tuple[PatternMatcher, ...]:
        return self._matchers

    def effective_weight(self, matcher: PatternMatcher, adjustments: Mapping[str, float]) -> float:
        weight = matcher.base_weight + adjustments.get(matcher.id, 0.0)
        return min(max(weight, self._config.min_weight), self._config.max_weight)

    def _score(self, candidate: _Candidate, adjustments: Mapping[str, float]) -> float:
        miss = 1.0
        for matcher in candidate.matchers:
            miss *= 1.0 - self.effective_weight(matcher, adjustments)
        confidence = 1.0 - miss
        own_signals = sum(1 for m in candidate.matchers if m.challenge_type is not None)
        if own_signals == 1:
            confidence = min(confidence, self._config.single_signal_ceiling)
        return min(max(confidence, 0.0), 1.0)

    def classify(
        self,
        headers: Mapping[str, str],
        body: str,
        domain_state=None,
        status_code: int = 200,
    ) -> DetectionResult:
        """
        Classify one response.

        Args:
            headers: Response headers (names matched case-insensitively)
            body: Decoded response body
            domain_state: Optional DomainStateSnapshot supplying weight adjustments
            status_code: HTTP status code

        Returns:
            DetectionResult with the winning type, its confidence, the markers
            its solver needs, and the ids of the matchers that voted for it
        """
        if status_code not in self._config.challenge_status_codes:
            return DetectionResult(
                challenge_type=ChallengeType.NONE,
                confidence=1.0,
                status_code=status_code,
            )

        lowered = {str(k).lower(): str(v) for k, v in headers.items()}
        adjustments: Mapping[str, float] = {}
        if domain_state is not None:
            adjustments = domain_state.weight_adjustments

        status_text = str(status_code)
        by_type: dict[ChallengeType, list[PatternMatcher]] = {}
        corroborating: list[PatternMatcher] = []
        for matcher in self._matchers:
            if not matcher.matches(status_text, lowered, body):
                continue
            if matcher.challenge_type is None:
                corroborating.append(matcher)
            else:
                by_type.setdefault(matcher.challenge_type, []).append(matcher)

        if not by_type:
            fallback = ChallengeType.RATE_LIMIT if status_code == 429 else ChallengeType.ACCESS_DENIED
            return DetectionResult(
                challenge_type=fallback,
                confidence=self._config.status_only_confidence,
                markers=extract_markers(fallback, body, lowered),
                matched_patterns=(),
                status_code=status_code,
            )

        candidates = []
        for challenge_type, matched in by_type.items():
            candidate = _Candidate(challenge_type, matched + corroborating)
            candidate.confidence = self._score(candidate, adjustments)
            candidates.append(candidate)

        best = max(c.confidence for c in candidates)
        contenders = [c for c in candidates if best - c.confidence <= self._config.tie_epsilon]
        winner = max(
            contenders,
            key=lambda c: (c.specificity, c.confidence, -TYPE_ORDER.index(c.challenge_type)),
        )

        return DetectionResult(
            challenge_type=winner.challenge_type,
            confidence=winner.confidence,
            markers=extract_markers(winner.challenge_type, body, lowered),
            matched_patterns=tuple(m.id for m in winner.matchers),
            status_code=status_code,
        )

    def classify_response(self, response: HttpResponse, domain_state=None) -> DetectionResult:
        return self.classify(response.headers, response.body, domain_state, response.status_code)


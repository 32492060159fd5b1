"""
Solver dispatcher.

Maps a DetectionResult to a SolveResult with one handler per ChallengeType.
Script-based challenges run in the sandbox; CAPTCHA gates go to the
configured provider; rate limits and blocks become mitigation requests.
Missing markers, unsupported scripts and budget breaches never escape as
exceptions: they are folded into FAILED or MITIGATE results.
"""

import json
import math
import random
from typing import Any, Optional
from urllib.parse import urljoin, urlsplit

from .audit_logger import AuditLogger
from .captcha import CaptchaProvider
from .challenge_parser import (
    IUAM_REQUIRED_FIELDS,
    MARKER_CAPTCHA,
    MARKER_CHL_CTX,
    MARKER_CHL_OPT,
    MARKER_DELAY_MS,
    MARKER_FORM_ACTION,
    MARKER_PUZZLE,
    MARKER_R_TOKEN,
    MARKER_RETRY_AFTER,
    MARKER_RETRY_HINT,
    MARKER_SCRIPT,
    MARKER_SITE_KEY,
    form_fields_from_markers,
    parse_retry_after,
)
from .config import SandboxLimits, SolverConfig
from .enums import ChallengeType, FailureReason, MitigationAction
from .exceptions import (
    CaptchaError,
    ConfigurationError,
    MalformedChallengeError,
    ResourceExceededError,
    UnsupportedConstructError,
)
from .fingerprint import FingerprintProfile
from .models import DetectionResult, SandboxScript, SolveResult, Submission
from .sandbox import UNDEFINED, SandboxEvaluator, js_to_string, to_python

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

ANSWER_EXPRESSION = (
    'typeof window._cf_chl_answer !== "undefined" ? window._cf_chl_answer : '
    '(typeof _cf_chl_answer !== "undefined" ? _cf_chl_answer : undefined)'
)

# Browser globals the challenge scripts expect, all derived from `window`
WINDOW_PRELUDE = """
window.self = window;
window.top = window;
window.parent = window;
window.setTimeout = function (fn) { return fn(); };
window.clearTimeout = function () { return true; };
window.addEventListener = function () { return true; };
window._cf_chl_enter = function () { return true; };
window.document = {
    getElementById: function () { return { value: "", style: {} }; },
    createElement: function () { return { firstChild: { href: window.location.href }, style: {} }; }
};
var document = window.document;
var navigator = window.navigator;
var location = window.location;
var _cf_chl_opt = window._cf_chl_opt;
var _cf_chl_ctx = window._cf_chl_ctx;
"""

V2_FIXED_FIELDS = {
    "cf_ch_verify": "plat",
    "vc": "",
    "captcha_vc": "",
    "cf_captcha_kind": "h",
    "h-captcha-response": "",
}

NAVIGATOR_PLATFORMS = {
    "windows": "Win32",
    "linux": "Linux x86_64",
    "darwin": "MacIntel",
    "android": "Linux armv8l",
    "ios": "iPhone",
}


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _require(markers: dict[str, str], key: str, challenge_type: ChallengeType) -> str:
    value = markers.get(key)
    if not value:
        raise MalformedChallengeError(
            code="missing_marker",
            message=f"{challenge_type.value} page is missing '{key}'",
            details={"marker": key, "challenge_type": challenge_type.value},
        )
    return value


def _marker_seconds(markers: dict[str, str], key: str, scale: float = 1.0) -> Optional[float]:
    """A non-negative finite number of seconds from a marker, or None if it is unusable."""
    value = markers.get(key)
    if value is None or not value.isascii():
        return None
    try:
        seconds = float(value) * scale
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds


class SolverDispatcher:
    """
    Exhaustive state machine over ChallengeType.

    The random source is injectable so submit delays are reproducible in
    tests; nothing else in solving is random.
    """

    def __init__(
        self,
        config: Optional[SolverConfig] = None,
        sandbox: Optional[SandboxEvaluator] = None,
        captcha_provider: Optional[CaptchaProvider] = None,
        rng: Optional[random.Random] = None,
        audit_logger: Optional[AuditLogger] = None,
        block_budget: Optional[SandboxLimits] = None,
    ) -> None:
        self._config = config or SolverConfig()
        self._block_budget = block_budget or SandboxLimits()
        self._sandbox = sandbox or SandboxEvaluator(audit_logger=audit_logger)
        self._captcha = captcha_provider
        self._rng = rng or random.Random()
        self._logger = audit_logger

        self._handlers = {
            ChallengeType.NONE: self._solve_none,
            ChallengeType.IUAM_V1: self._solve_iuam,
            ChallengeType.JS_CHALLENGE_V2: self._solve_js_v2,
            ChallengeType.MANAGED_V3: self._solve_managed_v3,
            ChallengeType.TURNSTILE: self._solve_turnstile,
            ChallengeType.RATE_LIMIT: self._solve_rate_limit,
            ChallengeType.ACCESS_DENIED: self._solve_blocked,
            ChallengeType.BOT_MANAGEMENT: self._solve_blocked,
        }
        missing = set(ChallengeType) - set(self._handlers)
        if missing:
            raise ConfigurationError(
                code="unhandled_challenge_type",
                message="Solver has no handler for some challenge types",
                details={"missing": sorted(t.value for t in missing)},
            )

    @property
    def has_captcha_provider(self) -> bool:
        return self._captcha is not None

    def _log_info(self, message: str, **context) -> None:
        if self._logger:
            self._logger.info("solver", message, context)

    def _log_error(self, message: str, error: Exception, **context) -> None:
        if self._logger:
            self._logger.log_error("solver", message, error=error, additional_data=context)

    async def solve(
        self,
        detection: DetectionResult,
        request_url: str,
        domain_state=None,
        fingerprint: Optional[FingerprintProfile] = None,
    ) -> SolveResult:
        """
        Solve one classified response.

        Args:
            detection: Classification with the markers the handler needs
            request_url: URL of the response that carried the challenge
            domain_state: DomainStateSnapshot of the host, if any
            fingerprint: Active fingerprint, used for navigator inputs

        Returns:
            SolveResult tagged SUCCESS, CAPTCHA_REQUIRED, MITIGATE or FAILED
        """
        challenge_type = detection.challenge_type
        handler = self._handlers[challenge_type]
        try:
            result = await handler(detection, request_url, domain_state, fingerprint)
        except MalformedChallengeError as e:
            self._log_error("Malformed challenge", e, challenge_type=challenge_type.value)
            return SolveResult.failed(FailureReason.MALFORMED_CHALLENGE, e.message)
        except UnsupportedConstructError as e:
            self._log_error("Unsupported challenge script", e, challenge_type=challenge_type.value)
            return SolveResult.failed(FailureReason.UNSUPPORTED_CONSTRUCT, e.message)
        except ResourceExceededError as e:
            self._log_error("Sandbox budget exceeded", e, challenge_type=challenge_type.value)
            if challenge_type == ChallengeType.MANAGED_V3:
                return SolveResult.mitigate(MitigationAction.ROTATE_FINGERPRINT_THEN_RETRY)
            return SolveResult.failed(FailureReason.RESOURCE_EXCEEDED, e.message)

        self._log_info(
            "Challenge handled",
            challenge_type=challenge_type.value,
            status=result.status.value,
        )
        return result

    # helpers

    def _submit_wait(self) -> float:
        return self._rng.uniform(
            self._config.submit_delay_min_seconds,
            self._config.submit_delay_max_seconds,
        )

    def _submission(
        self,
        request_url: str,
        action: Optional[str],
        fields: dict[str, str],
        wait_seconds: float,
    ) -> Submission:
        return Submission(
            method="POST",
            url=urljoin(request_url, action) if action else request_url,
            form_fields=fields,
            headers={
                "Content-Type": FORM_CONTENT_TYPE,
                "Referer": request_url,
                "Origin": _origin(request_url),
            },
            wait_seconds=wait_seconds,
        )

    def _window(
        self,
        request_url: str,
        fingerprint: Optional[FingerprintProfile],
        options: Any,
        context: Any,
    ) -> dict:
        parts = urlsplit(request_url)
        user_agent = fingerprint.user_agent if fingerprint else ""
        platform = NAVIGATOR_PLATFORMS.get(fingerprint.platform, "Win32") if fingerprint else "Win32"
        return {
            "location": {
                "href": request_url,
                "hostname": parts.hostname or "",
                "protocol": f"{parts.scheme}:",
                "pathname": parts.path or "/",
            },
            "navigator": {
                "userAgent": user_agent,
                "platform": platform,
                "language": "en-US",
            },
            "_cf_chl_opt": options,
            "_cf_chl_ctx": context,
        }

    async def _parse_block(self, raw: Optional[str]) -> Any:
        """Decode an embedded options/context block; JSON first, then JS object syntax."""
        if raw is None:
            return {}
        try:
            return json.loads(raw)
        except ValueError:
            pass
        value = await self._sandbox.evaluate_async(
            SandboxScript(source="", entry_expression=raw, budget=self._block_budget)
        )
        return to_python(value)

    async def _run_challenge_script(
        self,
        detection: DetectionResult,
        request_url: str,
        fingerprint: Optional[FingerprintProfile],
        budget: SandboxLimits,
        options: Any,
        context: Any,
    ) -> str:
        script = _require(detection.markers, MARKER_SCRIPT, detection.challenge_type)
        answer = await self._sandbox.evaluate_async(
            SandboxScript(
                source=WINDOW_PRELUDE + script,
                entry_expression=ANSWER_EXPRESSION,
                budget=budget,
                inputs={"window": self._window(request_url, fingerprint, options, context)},
            )
        )
        if answer is UNDEFINED or answer is None:
            raise MalformedChallengeError(
                code="missing_answer",
                message="Challenge script did not produce an answer",
                details={"challenge_type": detection.challenge_type.value},
            )
        return js_to_string(answer).strip()

    async def _solve_captcha(
        self,
        site_key: str,
        metadata: dict[str, str],
    ) -> Optional[str]:
        """Token from the provider, or None when no provider is configured."""
        if self._captcha is None:
            return None
        return await self._captcha.solve(site_key, metadata)

    # handlers

    async def _solve_none(self, detection, request_url, domain_state, fingerprint) -> SolveResult:
        return SolveResult.success()

    async def _solve_iuam(self, detection, request_url, domain_state, fingerprint) -> SolveResult:
        markers = detection.markers
        action = _require(markers, MARKER_FORM_ACTION, ChallengeType.IUAM_V1)
        fields = form_fields_from_markers(markers)
        for name in IUAM_REQUIRED_FIELDS:
            if name not in fields:
                raise MalformedChallengeError(
                    code="missing_marker",
                    message=f"iuam_v1 form is missing hidden field '{name}'",
                    details={"marker": name, "challenge_type": ChallengeType.IUAM_V1.value},
                )
        puzzle = _require(markers, MARKER_PUZZLE, ChallengeType.IUAM_V1)

        answer = await self._sandbox.evaluate_async(
            SandboxScript(
                source="",
                entry_expression=puzzle,
                budget=self._config.iuam_budget,
                inputs={"t": urlsplit(request_url).hostname or ""},
            )
        )
        if isinstance(answer, float) and not math.isfinite(answer):
            raise MalformedChallengeError(
                code="invalid_answer",
                message="Puzzle did not evaluate to a finite number",
                details={"answer": js_to_string(answer)},
            )

        payload = {name: fields[name] for name in fields}
        payload["jschl_answer"] = js_to_string(answer)

        wait = self._config.iuam_default_delay_seconds
        delay = _marker_seconds(markers, MARKER_DELAY_MS, scale=0.001)
        if delay is not None:
            wait = delay
        return SolveResult.success(self._submission(request_url, action, payload, wait))

    async def _solve_js_v2(self, detection, request_url, domain_state, fingerprint) -> SolveResult:
        markers = detection.markers
        budget = self._config.js_v2_budget
        action = _require(markers, MARKER_FORM_ACTION, ChallengeType.JS_CHALLENGE_V2)
        r_token = _require(markers, MARKER_R_TOKEN, ChallengeType.JS_CHALLENGE_V2)
        options = await self._parse_block(markers.get(MARKER_CHL_OPT))
        if not isinstance(options, dict):
            options = {}

        payload = {"r": r_token}
        if options.get("cvId"):
            payload["cv_chal_id"] = str(options["cvId"])
        if options.get("chlPageData"):
            payload["cf_chl_page_data"] = str(options["chlPageData"])

        if MARKER_CAPTCHA in markers:
            site_key = _require(markers, MARKER_SITE_KEY, ChallengeType.JS_CHALLENGE_V2)
            metadata = {"page_url": request_url}
            if "cv_chal_id" in payload:
                metadata["cv_id"] = payload["cv_chal_id"]
            try:
                token = await self._solve_captcha(site_key, metadata)
            except CaptchaError as e:
                self._log_error("Captcha provider failed", e, site_key=site_key)
                return SolveResult.failed(FailureReason.CAPTCHA_ERROR, e.message)
            if token is None:
                return SolveResult.captcha_required(site_key, metadata)
            payload.update(V2_FIXED_FIELDS)
            payload["h-captcha-response"] = token
            for name, value in form_fields_from_markers(markers).items():
                payload.setdefault(name, value)
            return SolveResult.success(
                self._submission(request_url, action, payload, self._submit_wait())
            )

        _require(markers, MARKER_CHL_OPT, ChallengeType.JS_CHALLENGE_V2)
        answer = await self._run_challenge_script(
            detection, request_url, fingerprint, budget, options, {}
        )
        for name, value in V2_FIXED_FIELDS.items():
            payload.setdefault(name, value)
        payload["jschl_answer"] = answer
        return SolveResult.success(
            self._submission(request_url, action, payload, self._submit_wait())
        )

    async def _solve_managed_v3(self, detection, request_url, domain_state, fingerprint) -> SolveResult:
        markers = detection.markers
        budget = self._config.managed_v3_budget
        action = _require(markers, MARKER_FORM_ACTION, ChallengeType.MANAGED_V3)
        r_token = _require(markers, MARKER_R_TOKEN, ChallengeType.MANAGED_V3)
        options = await self._parse_block(markers.get(MARKER_CHL_OPT))
        context = await self._parse_block(markers.get(MARKER_CHL_CTX))

        answer = await self._run_challenge_script(
            detection, request_url, fingerprint, budget, options, context
        )
        payload = {"r": r_token, "jschl_answer": answer}
        for name, value in form_fields_from_markers(markers).items():
            payload.setdefault(name, value)
        return SolveResult.success(
            self._submission(request_url, action, payload, self._submit_wait())
        )

    async def _solve_turnstile(self, detection, request_url, domain_state, fingerprint) -> SolveResult:
        markers = detection.markers
        site_key = _require(markers, MARKER_SITE_KEY, ChallengeType.TURNSTILE)
        metadata = {"page_url": request_url, "challenge_type": ChallengeType.TURNSTILE.value}
        try:
            token = await self._solve_captcha(site_key, metadata)
        except CaptchaError as e:
            self._log_error("Captcha provider failed", e, site_key=site_key)
            return SolveResult.failed(FailureReason.CAPTCHA_ERROR, e.message)
        if token is None:
            return SolveResult.captcha_required(site_key, metadata)

        payload = {"cf-turnstile-response": token}
        for name, value in form_fields_from_markers(markers).items():
            payload.setdefault(name, value)
        return SolveResult.success(
            self._submission(
                request_url, markers.get(MARKER_FORM_ACTION), payload, self._submit_wait()
            )
        )

    async def _solve_rate_limit(self, detection, request_url, domain_state, fingerprint) -> SolveResult:
        markers = detection.markers
        wait = parse_retry_after(markers.get(MARKER_RETRY_AFTER))
        if wait is None:
            wait = _marker_seconds(markers, MARKER_RETRY_HINT)
        if wait is None and domain_state is not None:
            wait = domain_state.suggested_delay_seconds
        if wait is None:
            wait = self._config.default_rate_limit_delay_seconds
        return SolveResult.mitigate(MitigationAction.WAIT_THEN_RETRY, wait)

    async def _solve_blocked(self, detection, request_url, domain_state, fingerprint) -> SolveResult:
        return SolveResult.mitigate(MitigationAction.ROTATE_PROXY_THEN_RETRY)

"""
Challenge page parsing helpers.

Pure functions that pull the pieces a solver needs out of a challenge page:
form actions, hidden inputs, tokens, site keys, embedded option blocks,
challenge scripts, page delays and rate-limit hints. The detector uses
extract_markers() to attach them to a DetectionResult.
"""

import html
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from .enums import ChallengeType
from .exceptions import MalformedChallengeError

# Marker keys carried in DetectionResult.markers
FIELD_PREFIX = "field."
MARKER_FORM_ACTION = "form_action"
MARKER_R_TOKEN = "r_token"
MARKER_PUZZLE = "puzzle"
MARKER_DELAY_MS = "delay_ms"
MARKER_SCRIPT = "script"
MARKER_CHL_OPT = "chl_opt"
MARKER_CHL_CTX = "chl_ctx"
MARKER_SITE_KEY = "site_key"
MARKER_CAPTCHA = "captcha"
MARKER_RETRY_AFTER = "retry_after"
MARKER_RETRY_HINT = "retry_hint"

IUAM_FORM_RE = re.compile(
    r"""<form[^>]*id=['"]challenge-form['"][^>]*action=['"](?P<action>[^"']*__cf_chl_f_tk=[^"']+)['"][^>]*>(?P<inputs>.*?)</form>""",
    re.IGNORECASE | re.DOTALL,
)
CHALLENGE_FORM_RE = re.compile(
    r"""<form[^>]*id=['"]challenge-form['"][^>]*action=['"](?P<action>[^'"]+)['"]""",
    re.IGNORECASE,
)
ANY_FORM_RE = re.compile(r"""<form[^>]*action=['"](?P<action>[^'"]+)['"]""", re.IGNORECASE)
INPUT_RE = re.compile(r"""<input\s+([^>]+?)/?>""", re.IGNORECASE | re.DOTALL)
ATTR_RE = re.compile(r"""(?P<name>[^\s=]+)=['"](?P<value>[^'"]*)['"]""", re.IGNORECASE | re.DOTALL)
R_TOKEN_RE = re.compile(r"""name=['"]r['"]\s+value=['"](?P<value>[^'"]+)['"]""", re.IGNORECASE)
SITE_KEY_RE = re.compile(r"""data-sitekey=['"](?P<value>[^'"]+)['"]""", re.IGNORECASE)
PUZZLE_RE = re.compile(r"""\ba\.value\s*=\s*(?P<puzzle>[^;]+?)\s*;""")
# Over-long digit runs do not match at all rather than being truncated
DELAY_RE = re.compile(r"""submit\(\);\r?\n\s*},\s*(?P<ms>[0-9]{1,9})(?![0-9])""", re.IGNORECASE)
RETRY_HINT_RE = re.compile(
    r"""(?<![0-9])(?P<amount>[0-9]{1,12})\s*(?P<unit>seconds?|minutes?|hours?)\b""",
    re.IGNORECASE,
)
SCRIPT_RE = re.compile(r"""<script\b[^>]*>(?P<body>.*?)</script>""", re.IGNORECASE | re.DOTALL)
CAPTCHA_TOKEN_MARKER = "__cf_chl_captcha_tk__"

UNIT_SECONDS = {"second": 1, "minute": 60, "hour": 3600}
DELTA_SECONDS_RE = re.compile(r"[0-9]{1,12}")

IUAM_REQUIRED_FIELDS = ("r", "jschl_vc", "pass")


def parse_hidden_inputs(fragment: str) -> dict[str, str]:
    """Collect name/value pairs of every <input> that carries both attributes."""
    fields: dict[str, str] = {}
    for match in INPUT_RE.finditer(fragment):
        name = value = None
        for attr in ATTR_RE.finditer(match.group(1)):
            attr_name = attr.group("name").lower()
            if attr_name == "name":
                name = html.unescape(attr.group("value"))
            elif attr_name == "value":
                value = html.unescape(attr.group("value"))
        if name is not None and value is not None and name not in fields:
            fields[name] = value
    return fields


def extract_iuam_form(body: str) -> Optional[tuple[str, dict[str, str]]]:
    """
    Locate the v1 challenge form.

    Returns:
        (action, hidden fields) or None when no v1 form is present
    """
    match = IUAM_FORM_RE.search(body)
    if not match:
        return None
    action = html.unescape(match.group("action"))
    fields = parse_hidden_inputs(match.group("inputs"))
    return action, fields


def extract_form_action(body: str, require_challenge_form: bool = True) -> Optional[str]:
    regex = CHALLENGE_FORM_RE if require_challenge_form else ANY_FORM_RE
    match = regex.search(body)
    return html.unescape(match.group("action")) if match else None


def extract_r_token(body: str) -> Optional[str]:
    match = R_TOKEN_RE.search(body)
    return html.unescape(match.group("value")) if match else None


def extract_site_key(body: str) -> Optional[str]:
    match = SITE_KEY_RE.search(body)
    return match.group("value") if match else None


def extract_puzzle(body: str) -> Optional[str]:
    """The arithmetic expression assigned to the answer field of a v1 page."""
    match = PUZZLE_RE.search(body)
    return match.group("puzzle") if match else None


def extract_delay_ms(body: str) -> Optional[int]:
    match = DELAY_RE.search(body)
    return int(match.group("ms")) if match else None


def extract_json_block(body: str, marker: str) -> Optional[str]:
    """
    Return the balanced {...} block that follows marker.

    Braces inside double-quoted strings are ignored.

    Raises:
        MalformedChallengeError: If the block is opened but never closed
    """
    start = body.find(marker)
    if start == -1:
        return None
    brace_start = body.find("{", start)
    if brace_start == -1:
        return None

    depth = 0
    in_string = False
    escape = False
    for offset, ch in enumerate(body[brace_start:]):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return body[brace_start:brace_start + offset + 1]

    raise MalformedChallengeError(
        code="unterminated_block",
        message=f"Unterminated object block after {marker}",
        details={"marker": marker},
    )


def extract_script_containing(body: str, needle: str) -> Optional[str]:
    """Body of the first inline <script> whose source contains needle."""
    for match in SCRIPT_RE.finditer(body):
        script = match.group("body")
        if needle in script:
            return script.strip()
    return None


def has_captcha_markers(body: str) -> bool:
    return CAPTCHA_TOKEN_MARKER in body and SITE_KEY_RE.search(body) is not None


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Interpret a Retry-After header value as seconds.

    Accepts delta-seconds or an HTTP date; dates in the past yield 0.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if DELTA_SECONDS_RE.fullmatch(value):
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def parse_retry_hint(body: str) -> Optional[float]:
    """Seconds from a 'try again in N minutes' style sentence in the page."""
    match = RETRY_HINT_RE.search(body)
    if not match:
        return None
    unit = match.group("unit").lower().rstrip("s")
    return float(int(match.group("amount")) * UNIT_SECONDS[unit])


def extract_markers(challenge_type: ChallengeType, body: str, headers: dict[str, str]) -> dict[str, str]:
    """
    Pull the raw markers the solver for challenge_type will look for.

    Absent markers are simply omitted; the solver decides whether that
    makes the challenge malformed.
    """
    markers: dict[str, str] = {}

    def put(key: str, value: Optional[object]) -> None:
        if value is not None:
            markers[key] = str(value)

    if challenge_type == ChallengeType.IUAM_V1:
        form = extract_iuam_form(body)
        if form is not None:
            action, fields = form
            put(MARKER_FORM_ACTION, action)
            for name, value in fields.items():
                put(FIELD_PREFIX + name, value)
        put(MARKER_PUZZLE, extract_puzzle(body))
        put(MARKER_DELAY_MS, extract_delay_ms(body))

    elif challenge_type in (ChallengeType.JS_CHALLENGE_V2, ChallengeType.MANAGED_V3):
        put(MARKER_FORM_ACTION, extract_form_action(body))
        put(MARKER_R_TOKEN, extract_r_token(body))
        try:
            put(MARKER_CHL_OPT, extract_json_block(body, "window._cf_chl_opt"))
            put(MARKER_CHL_CTX, extract_json_block(body, "window._cf_chl_ctx"))
        except MalformedChallengeError:
            pass
        if challenge_type == ChallengeType.MANAGED_V3:
            put(MARKER_SCRIPT, extract_script_containing(body, "window._cf_chl_enter"))
        else:
            put(MARKER_SCRIPT, extract_script_containing(body, "_cf_chl_answer"))
        for name, value in parse_hidden_inputs(body).items():
            put(FIELD_PREFIX + name, value)
        if has_captcha_markers(body):
            markers[MARKER_CAPTCHA] = "1"
            put(MARKER_SITE_KEY, extract_site_key(body))

    elif challenge_type == ChallengeType.TURNSTILE:
        put(MARKER_SITE_KEY, extract_site_key(body))
        put(MARKER_FORM_ACTION, extract_form_action(body, require_challenge_form=False))
        for name, value in parse_hidden_inputs(body).items():
            put(FIELD_PREFIX + name, value)

    elif challenge_type == ChallengeType.RATE_LIMIT:
        put(MARKER_RETRY_AFTER, headers.get("retry-after"))
        put(MARKER_RETRY_HINT, parse_retry_hint(body))

    return markers


def form_fields_from_markers(markers: dict[str, str]) -> dict[str, str]:
    """Hidden form fields previously stored with FIELD_PREFIX."""
    return {
        key[len(FIELD_PREFIX):]: value
        for key, value in markers.items()
        if key.startswith(FIELD_PREFIX)
    }

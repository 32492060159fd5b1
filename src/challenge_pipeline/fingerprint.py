"""
Browser fingerprint profiles.

Profiles are drawn from the bundled ``data/browsers.json`` catalog, which
maps device kind -> platform -> browser -> user agents, and carries the
default headers, header order and TLS cipher profile of every browser.
"""

import json
import random
import uuid
from dataclasses import dataclass, field
from importlib import resources
from typing import Optional

from .config import FingerprintOptions
from .exceptions import ConfigurationError

VALID_PLATFORMS = ("linux", "windows", "darwin", "android", "ios")

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
}


@dataclass(frozen=True)
class FingerprintProfile:
    """An immutable browser identity. Rotation builds a new one."""

    profile_id: str
    user_agent: str
    platform: str
    browser: str
    headers: tuple[tuple[str, str], ...] = ()
    header_order: tuple[str, ...] = ()
    tls_profile_id: Optional[str] = None
    cipher_suites: tuple[str, ...] = field(default=(), compare=False)

    def request_headers(self) -> dict[str, str]:
        """Headers in the browser's canonical order, User-Agent included."""
        merged = dict(self.headers)
        merged["User-Agent"] = self.user_agent
        ordered: dict[str, str] = {}
        for name in self.header_order:
            if name in merged:
                ordered[name] = merged.pop(name)
        ordered.update(merged)
        return ordered

    @property
    def is_mobile(self) -> bool:
        return self.platform in ("android", "ios")


def load_catalog(package: str = "challenge_pipeline.data", name: str = "browsers.json") -> dict:
    """
    Load the bundled browser catalog.

    Raises:
        ConfigurationError: If the catalog is missing or malformed
    """
    try:
        raw = resources.files(package).joinpath(name).read_text(encoding="utf-8")
    except (FileNotFoundError, ModuleNotFoundError, OSError) as e:
        raise ConfigurationError(
            code="catalog_missing",
            message=f"Browser catalog {name} could not be loaded: {e}",
            details={"package": package, "name": name},
        )

    try:
        catalog = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            code="catalog_invalid",
            message=f"Browser catalog {name} is not valid JSON: {e}",
            details={"package": package, "name": name},
        )

    for key in ("headers", "user_agents"):
        if not isinstance(catalog.get(key), dict):
            raise ConfigurationError(
                code="catalog_invalid",
                message=f"Browser catalog is missing the '{key}' section",
                details={"package": package, "name": name},
            )
    return catalog


def _strip_brotli(encoding: str) -> str:
    return ", ".join(
        part.strip() for part in encoding.split(",") if part.strip().lower() != "br"
    )


class FingerprintGenerator:
    """
    Builds FingerprintProfiles from the catalog according to FingerprintOptions.

    The random source is injectable so tests can make selection deterministic.
    """

    def __init__(
        self,
        options: Optional[FingerprintOptions] = None,
        catalog: Optional[dict] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._options = options or FingerprintOptions()
        self._catalog = catalog if catalog is not None else load_catalog()
        self._rng = rng or random.Random()

        if not self._options.desktop and not self._options.mobile:
            raise ConfigurationError(
                code="invalid_fingerprint_options",
                message="desktop and mobile cannot both be disabled",
                details={},
            )
        if self._options.platform and self._options.platform not in VALID_PLATFORMS:
            raise ConfigurationError(
                code="invalid_fingerprint_options",
                message=f"Invalid platform '{self._options.platform}'",
                details={"valid": list(VALID_PLATFORMS)},
            )
        if not self._candidates() and not self._options.custom_user_agent:
            raise ConfigurationError(
                code="invalid_fingerprint_options",
                message="No user agents match the fingerprint options",
                details={
                    "platform": self._options.platform,
                    "browser": self._options.browser,
                },
            )

    def _device_kinds(self) -> list[str]:
        kinds = []
        if self._options.desktop:
            kinds.append("desktop")
        if self._options.mobile:
            kinds.append("mobile")
        return kinds

    def _candidates(self) -> list[tuple[str, str, str]]:
        """All (platform, browser, user_agent) triples permitted by the options."""
        result = []
        for kind in self._device_kinds():
            platforms = self._catalog["user_agents"].get(kind, {})
            for platform, browsers in sorted(platforms.items()):
                if self._options.platform and platform != self._options.platform:
                    continue
                for browser, agents in sorted(browsers.items()):
                    if self._options.browser and browser != self._options.browser:
                        continue
                    for agent in agents:
                        result.append((platform, browser, agent))
        return result

    def _match_custom(self, user_agent: str) -> tuple[str, str]:
        for kind in ("desktop", "mobile"):
            for platform, browsers in self._catalog["user_agents"].get(kind, {}).items():
                for browser, agents in browsers.items():
                    if any(user_agent in agent or agent in user_agent for agent in agents):
                        return platform, browser
        return self._options.platform or "unknown", self._options.browser or "custom"

    def _build(self, platform: str, browser: str, user_agent: str) -> FingerprintProfile:
        headers = dict(self._catalog["headers"].get(browser, DEFAULT_HEADERS))
        headers.pop("User-Agent", None)
        if not self._options.allow_brotli and "Accept-Encoding" in headers:
            headers["Accept-Encoding"] = _strip_brotli(headers["Accept-Encoding"])

        ciphers = tuple(self._catalog.get("tls_profiles", {}).get(browser, ()))
        tls_profile_id = self._options.tls_profile_id or (browser if ciphers else None)
        return FingerprintProfile(
            profile_id=uuid.UUID(int=self._rng.getrandbits(128), version=4).hex,
            user_agent=user_agent,
            platform=platform,
            browser=browser,
            headers=tuple(headers.items()),
            header_order=tuple(self._catalog.get("header_order", {}).get(browser, ())),
            tls_profile_id=tls_profile_id,
            cipher_suites=ciphers,
        )

    def generate(self, exclude_user_agent: Optional[str] = None) -> FingerprintProfile:
        """
        Build a new profile.

        Args:
            exclude_user_agent: User agent to avoid when another candidate exists

        Returns:
            A fresh FingerprintProfile with a new profile_id
        """
        if self._options.custom_user_agent:
            platform, browser = self._match_custom(self._options.custom_user_agent)
            return self._build(platform, browser, self._options.custom_user_agent)

        candidates = self._candidates()
        if exclude_user_agent is not None:
            others = [c for c in candidates if c[2] != exclude_user_agent]
            if others:
                candidates = others
        platform, browser, user_agent = self._rng.choice(candidates)
        return self._build(platform, browser, user_agent)

    def rotate(self, current: Optional[FingerprintProfile]) -> FingerprintProfile:
        """Build a replacement for the given profile, avoiding its user agent."""
        return self.generate(exclude_user_agent=current.user_agent if current else None)

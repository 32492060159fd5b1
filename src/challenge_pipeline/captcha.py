"""
CAPTCHA provider interface.

Vendor integrations live outside this package; callers implement
CaptchaProvider (or wrap a coroutine function in CallbackCaptchaProvider)
and hand it to the solver dispatcher.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from .exceptions import CaptchaError


class CaptchaProvider(ABC):
    """Turns a site key plus page metadata into a response token."""

    name: str = "captcha"

    @abstractmethod
    async def solve(self, site_key: str, metadata: dict[str, str]) -> str:
        """
        Obtain a token for the widget identified by site_key.

        Args:
            site_key: The widget's public site key
            metadata: Page context such as page_url, action and cdata

        Returns:
            The token to submit with the challenge form

        Raises:
            CaptchaError: If no token could be obtained
        """


class CallbackCaptchaProvider(CaptchaProvider):
    """Adapts an async callable to the provider interface."""

    def __init__(self, callback: Callable[[str, dict[str, str]], Awaitable[str]], name: str = "callback") -> None:
        self._callback = callback
        self.name = name

    async def solve(self, site_key: str, metadata: dict[str, str]) -> str:
        token = await self._callback(site_key, metadata)
        if not token:
            raise CaptchaError(
                code="empty_token",
                message=f"Captcha provider '{self.name}' returned an empty token",
                details={"site_key": site_key},
            )
        return token

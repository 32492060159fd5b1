"""
HTTP transport for the challenge pipeline.

The orchestrator only depends on Transport.send(). HttpxTransport is the
default implementation: one httpx.AsyncClient per (proxy, TLS profile)
pair, all sharing a single cookie jar so clearance cookies survive proxy
and fingerprint rotation.
"""

import ssl
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .audit_logger import AuditLogger
from .exceptions import TransportError
from .models import HttpRequest, HttpResponse


class Transport(ABC):
    """Sends one HTTP request and returns the decoded response."""

    @abstractmethod
    async def send(self, request: HttpRequest) -> HttpResponse:
        """
        Send request.

        Raises:
            TransportError: On connection, TLS or timeout faults
        """

    async def aclose(self) -> None:
        """Release any pooled connections."""

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


class HttpxTransport(Transport):
    """
    httpx-backed transport.

    TLS profiles map a profile id to an ordered cipher list; TLS 1.3 suite
    names are skipped because OpenSSL does not let them be reordered.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        tls_profiles: Optional[dict[str, list[str]]] = None,
        verify: bool = True,
        audit_logger: Optional[AuditLogger] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._http_transport = http_transport
        self._tls_profiles = dict(tls_profiles or {})
        self._verify = verify
        self._logger = audit_logger
        self._cookies = httpx.Cookies()
        self._clients: dict[tuple[Optional[str], Optional[str]], httpx.AsyncClient] = {}

    @property
    def cookies(self) -> httpx.Cookies:
        return self._cookies

    def _ssl_context(self, tls_profile_id: Optional[str]):
        if not self._verify:
            return False
        ciphers = [
            c for c in self._tls_profiles.get(tls_profile_id or "", ())
            if not c.startswith("TLS_")
        ]
        if not ciphers:
            return True
        context = ssl.create_default_context()
        try:
            context.set_ciphers(":".join(ciphers))
        except ssl.SSLError as e:
            if self._logger:
                self._logger.warn(
                    "transport",
                    "TLS profile rejected by OpenSSL, using defaults",
                    {"tls_profile_id": tls_profile_id, "error": str(e)},
                )
            return True
        return context

    def _client_for(self, proxy: Optional[str], tls_profile_id: Optional[str]) -> httpx.AsyncClient:
        key = (proxy, tls_profile_id)
        client = self._clients.get(key)
        if client is None:
            client = httpx.AsyncClient(
                verify=self._ssl_context(tls_profile_id),
                timeout=httpx.Timeout(self._timeout),
                proxy=proxy,
                cookies=self._cookies,
                transport=self._http_transport,
            )
            self._clients[key] = client
        return client

    async def send(self, request: HttpRequest) -> HttpResponse:
        client = self._client_for(request.proxy, request.tls_profile_id)
        client.cookies.update(self._cookies)
        if request.cookies:
            client.cookies.update(request.cookies)

        start_time = time.perf_counter()
        try:
            response = await client.request(
                request.method,
                request.url,
                headers=request.headers,
                data=request.data,
                follow_redirects=request.follow_redirects,
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                code="timeout",
                message=f"Request timed out after {self._timeout}s",
                details={"url": request.url},
            ) from e
        except httpx.ConnectError as e:
            error_msg = str(e)
            code = "network_error"
            if "ssl" in error_msg.lower() or "certificate" in error_msg.lower():
                code = "tls_error"
            raise TransportError(
                code=code,
                message=f"Connection error: {error_msg}",
                details={"url": request.url},
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                code="network_error",
                message=f"HTTP error: {e}",
                details={"url": request.url},
            ) from e

        self._cookies.update(client.cookies)
        return HttpResponse(
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=response.text,
            url=str(response.url),
            elapsed_ms=(time.perf_counter() - start_time) * 1000,
        )

    async def aclose(self) -> None:
        """Close every pooled client."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

"""Upstream render service client."""

import asyncio
import ssl
from collections.abc import AsyncIterator

import httpx
from loguru import logger

from .config import Settings
from .exceptions import ConfigurationError, UpstreamFetchError, UpstreamRequestError

REQUEST_TIMEOUT = 30.0


def create_ssl_context(insecure: bool = False, cafile: str | None = None) -> ssl.SSLContext:
    """Build the TLS policy used for upstream requests.

    Starts from the system trust store and adds the certificates in
    ``cafile`` when given.

    Args:
        insecure: Skip certificate and hostname verification.
        cafile: Optional PEM file with extra trusted CA certificates.

    Raises:
        ConfigurationError: If the CA file cannot be read.
    """
    context = ssl.create_default_context()

    if cafile:
        try:
            with open(cafile, encoding="ascii", errors="ignore") as f:
                pem = f.read()
        except OSError as e:
            raise ConfigurationError(f"could not load CA file {cafile}: {e}") from e

        try:
            context.load_verify_locations(cadata=pem)
        except (ssl.SSLError, ValueError) as e:
            logger.warning("problem adding CA file to certificate pool", cafile=cafile, error=str(e))

    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context


class UpstreamResponse:
    """Status, content type and single-pass body of an upstream response."""

    def __init__(self, response: httpx.Response, deadline: float | None = None) -> None:
        self._response = response
        self._deadline = deadline
        self.status_code = response.status_code
        self.content_type: str | None = response.headers.get("Content-Type")

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Stream the body.

        Raises:
            UpstreamFetchError: If the body cannot be read to the end.
        """
        loop = asyncio.get_event_loop()
        chunks = self._response.aiter_bytes()
        try:
            while True:
                next_chunk = anext(chunks, None)
                if self._deadline is None:
                    chunk = await next_chunk
                else:
                    chunk = await asyncio.wait_for(next_chunk, self._deadline - loop.time())
                if chunk is None:
                    return
                yield chunk
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"error reading upstream body: {e}") from e
        except TimeoutError as e:
            raise UpstreamFetchError("timed out reading upstream body") from e

    async def aclose(self) -> None:
        await self._response.aclose()


class FetchClient:
    """Issues GET requests against the render service.

    The TLS policy is fixed at construction. Requests are never retried.
    ``timeout`` bounds the whole exchange, from sending the request to the
    last byte of the body, on top of httpx's per-phase timeouts.
    """

    def __init__(
        self,
        verify: ssl.SSLContext | bool = True,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            verify: SSL context or verification flag for upstream TLS.
            timeout: Overall deadline in seconds for each request and its body.
            transport: Optional transport override, used by tests.
        """
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            verify=verify,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "FetchClient":
        """Create a client with the TLS policy from startup settings."""
        return cls(verify=create_ssl_context(settings.insecure, settings.cafile))

    async def fetch(self, url: str, token: str | None = None) -> UpstreamResponse:
        """Send a GET request and return the response with its body unread.

        Args:
            url: Absolute URL to fetch.
            token: Bearer token, only sent when non-empty.

        Raises:
            UpstreamRequestError: If the request cannot be built.
            UpstreamFetchError: On connection failures and timeouts.
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        try:
            request = self._client.build_request("GET", url, headers=headers)
        except (httpx.InvalidURL, ValueError) as e:
            raise UpstreamRequestError(f"could not build request for {url}: {e}") from e

        deadline = asyncio.get_event_loop().time() + self.timeout
        try:
            response = await asyncio.wait_for(
                self._client.send(request, stream=True), timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"problem fetching {url}: {e}") from e
        except TimeoutError as e:
            raise UpstreamFetchError(f"timed out fetching {url}") from e

        return UpstreamResponse(response, deadline)

    async def aclose(self) -> None:
        await self._client.aclose()

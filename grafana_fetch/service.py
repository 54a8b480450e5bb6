"""Render request orchestration."""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field

from loguru import logger

from .config import SettingsProvider
from .exceptions import GatewayError, UpstreamFetchError
from .fetch import FetchClient, UpstreamResponse
from .models import RenderRequest
from .options import parse_options
from .storage import CacheHit, cache_key, create_cache
from .urls import build_render_url, final_query


def cache_control(max_age: float) -> str:
    return f"public, max-age={max_age:.0f}, immutable"


async def _nothing() -> None:
    return None


@dataclass
class RenderResult:
    """Status, headers and streamed body for one render response."""

    status_code: int
    body: AsyncIterator[bytes]
    headers: dict[str, str] = field(default_factory=dict)
    media_type: str | None = None
    on_close: Callable[[], Awaitable[None]] = _nothing

    async def aclose(self) -> None:
        """Release the body and its upstream connection or cache file."""
        aclose = getattr(self.body, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.on_close()


class RenderService:
    """Turns render requests into cached or freshly fetched panel images."""

    def __init__(self, settings_provider: SettingsProvider, fetch_client: FetchClient) -> None:
        """Initialize the service.

        Args:
            settings_provider: Source of the current configuration snapshot.
            fetch_client: Client for the upstream render service.
        """
        self.settings_provider = settings_provider
        self.fetch_client = fetch_client

    async def render(
        self,
        render_request: RenderRequest,
        *,
        request_id: str,
        method: str = "GET",
        path: str = "",
        remote: str | None = None,
    ) -> RenderResult:
        """Serve one render request from the cache or the upstream service.

        Args:
            render_request: Decoded request.
            request_id: Correlation id attached to every log event.
            method: HTTP method, for logging.
            path: Request path, for logging.
            remote: Client address, for logging.

        Returns:
            RenderResult whose status and headers are final before the body
            is streamed.

        Raises:
            GatewayError: If the request fails before a response is started.
        """
        started = time.perf_counter()
        log = logger.bind(
            uuid=request_id,
            method=method,
            path=path,
            query=render_request.raw_query,
            remote=remote,
        )
        settings = self.settings_provider.current

        try:
            options = parse_options(render_request.options)
            dashboard = settings.dashboard(render_request.dashboard)
        except GatewayError as e:
            log.warning(
                "request rejected",
                error=str(e),
                dashboard=render_request.dashboard,
                options=render_request.options,
                status=e.status_code,
            )
            raise

        url = build_render_url(
            settings,
            dashboard,
            render_request.raw_query,
            options,
            render_request.panel_id,
            render_request.time_from,
            render_request.time_to,
        )
        ttl = dashboard.ttl or settings.ttl

        cache = create_cache(settings.cache)
        cache_file = None
        if cache is not None:
            cache_file = cache.path_for(cache_key(render_request.dashboard, final_query(url)))
            hit = await cache.try_serve_cached(cache_file, ttl, log)
            if hit is not None:
                log.info(
                    "returned cached response",
                    cachefile=str(cache_file),
                    age=hit.age,
                    ttl=ttl,
                    status=200,
                    elapsed=time.perf_counter() - started,
                )
                return self._cached_result(hit)

        log.info("sending request", url=url)
        try:
            upstream = await self.fetch_client.fetch(url, dashboard.token or settings.token)
        except GatewayError as e:
            log.error(
                "problem fetching graph",
                error=str(e),
                dashboard=render_request.dashboard,
                url=url,
                status=e.status_code,
            )
            raise

        log.info(
            "request complete",
            url=url,
            status=upstream.status_code,
            content_type=upstream.content_type,
            elapsed=time.perf_counter() - started,
        )

        headers = {}
        if upstream.status_code == 200:
            headers["Cache-Control"] = cache_control(ttl)

        if cache is not None and cache_file is not None and upstream.status_code == 200:
            written = cache.write_through(cache_file, upstream.iter_bytes(), log)
            body = self._closing(upstream, written)
        else:
            body = self._passthrough(upstream, log)

        return RenderResult(
            status_code=upstream.status_code,
            body=body,
            headers=headers,
            media_type=upstream.content_type,
            on_close=upstream.aclose,
        )

    def _cached_result(self, hit: CacheHit) -> RenderResult:
        async def close() -> None:
            hit.close()

        return RenderResult(
            status_code=200,
            body=hit.iter_bytes(),
            headers={"Cache-Control": cache_control(hit.max_age)},
            media_type=hit.content_type,
            on_close=close,
        )

    @staticmethod
    async def _passthrough(upstream: UpstreamResponse, log) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.iter_bytes():
                yield chunk
        except UpstreamFetchError as e:
            log.error("error streaming upstream response", error=str(e))
        finally:
            await upstream.aclose()

    @staticmethod
    async def _closing(
        upstream: UpstreamResponse, body: AsyncIterator[bytes]
    ) -> AsyncIterator[bytes]:
        """Release the upstream connection as soon as the body is done or dropped."""
        try:
            async with aclosing(body):
                async for chunk in body:
                    yield chunk
        finally:
            await upstream.aclose()

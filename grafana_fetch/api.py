"""FastAPI application and route handlers."""

import asyncio
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from starlette.background import BackgroundTask
from starlette.types import Receive, Scope, Send

from .config import Settings, SettingsProvider, load_settings
from .exceptions import GatewayError
from .fetch import FetchClient
from .middleware import add_request_id
from .models import RenderRequest
from .service import RenderResult, RenderService

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level> | {extra}"
)


def configure_logging(settings: Settings) -> None:
    """Configure logging - should be called at startup, not import time."""
    logger.remove()
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=settings.log_level,
        serialize=settings.log_json,
    )
    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            level=settings.log_level,
            serialize=settings.log_json,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    provider = app.state.settings_provider or SettingsProvider(load_settings())
    app.state.settings_provider = provider
    settings = provider.current
    configure_logging(settings)

    if settings.cache:
        Path(settings.cache).mkdir(parents=True, exist_ok=True)

    fetch_client = FetchClient.from_settings(settings)
    app.state.render_service = RenderService(provider, fetch_client)

    logger.info("starting server", listen=settings.listen, url=settings.url, cache=settings.cache)

    yield

    await fetch_client.aclose()
    app.state.render_service = None
    logger.info("Application shutdown complete")


class RenderResponse(StreamingResponse):
    """Streams a render result and always releases it afterwards.

    Starlette skips the background task when the client disconnects
    mid-stream, so the result is also closed here once the response ends.
    """

    def __init__(self, result: RenderResult) -> None:
        super().__init__(
            result.body,
            status_code=result.status_code,
            headers=result.headers,
            media_type=result.media_type,
            background=BackgroundTask(result.aclose),
        )
        self.result = result

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await asyncio.shield(self.result.aclose())


async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Map domain errors to their HTTP status."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "type": exc.__class__.__name__},
    )


def get_render_service(request: Request) -> RenderService:
    """Get the render service from app state."""
    service = getattr(request.app.state, "render_service", None)
    if service is None:
        raise RuntimeError("Service not initialized")
    return service


async def _render(
    request: Request,
    service: RenderService,
    render_request: RenderRequest,
) -> RenderResponse:
    result = await service.render(
        render_request,
        request_id=getattr(request.state, "request_id", ""),
        method=request.method,
        path=request.url.path,
        remote=request.client.host if request.client else None,
    )
    return RenderResponse(result)


async def panel_endpoint(
    request: Request,
    service: Annotated[RenderService, Depends(get_render_service)],
    dashboard: str,
    panel: str,
    time_from: str,
    time_to: str,
) -> RenderResponse:
    """Render a panel with default options."""
    render_request = RenderRequest(
        dashboard=dashboard,
        panel_id=panel,
        time_from=time_from,
        time_to=time_to,
        raw_query=request.url.query,
    )
    return await _render(request, service, render_request)


async def panel_options_endpoint(
    request: Request,
    service: Annotated[RenderService, Depends(get_render_service)],
    dashboard: str,
    panel: str,
    options: str,
    time_from: str,
    time_to: str,
) -> RenderResponse:
    """Render a panel with inline ``k=v,k=v`` options."""
    render_request = RenderRequest(
        dashboard=dashboard,
        panel_id=panel,
        time_from=time_from,
        time_to=time_to,
        raw_query=request.url.query,
        options=options,
    )
    return await _render(request, service, render_request)


def create_app(settings_provider: SettingsProvider | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings_provider: Configuration to serve with. Loaded from the
            environment and config file at startup when omitted.
    """
    app = FastAPI(
        title="Grafana Fetch",
        version="1.0.0",
        description="Caching gateway for rendered Grafana panels",
        lifespan=lifespan,
    )
    app.state.settings_provider = settings_provider
    app.state.render_service = None

    app.middleware("http")(add_request_id)
    app.add_exception_handler(GatewayError, gateway_exception_handler)  # type: ignore[arg-type]

    app.get("/{dashboard}/{panel}/{time_from}/{time_to}/", tags=["render"])(panel_endpoint)
    app.get("/{dashboard}/{panel}/{options}/{time_from}/{time_to}/", tags=["render"])(
        panel_options_endpoint
    )
    return app


app = create_app()

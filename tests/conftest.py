"""Shared test fixtures."""

import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio

# Keep tests away from a real ~/grafana-fetch.yaml
os.environ["GF_FETCH_CONFIG"] = os.path.join(
    tempfile.gettempdir(), "grafana-fetch-tests", "missing.yaml"
)
os.environ["GF_FETCH_LOG_LEVEL"] = "ERROR"

from grafana_fetch.api import create_app  # noqa: E402
from grafana_fetch.config import Settings, SettingsProvider  # noqa: E402
from grafana_fetch.fetch import FetchClient  # noqa: E402
from grafana_fetch.service import RenderService  # noqa: E402

PNG_BODY = b"\x89PNG\r\n\x1a\n" + b"panel-image-bytes" * 10

DASHBOARDS: dict[str, Any] = {
    "overview": {"path": "d/abc123/overview", "ttl": 60, "token": "dash-token", "org": 2},
    "plain": {"path": "d/def456/plain"},
    "broken": {"path": "d/ghi789/broken", "ttl": "not-a-number"},
}


class FakeUpstream:
    """Records requests and replies like the render service."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.body = PNG_BODY
        self.content_type = "image/png"
        self.error: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(
            self.status_code,
            content=self.body,
            headers={"Content-Type": self.content_type},
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(cache_dir: Path) -> Callable[..., Settings]:
    """Build settings with test dashboards and caching enabled."""

    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "url": "http://grafana:3000",
            "cache": str(cache_dir),
            "dashboards": DASHBOARDS,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def fetch_client(upstream: FakeUpstream) -> AsyncGenerator[FetchClient, None]:
    client = FetchClient(transport=upstream.transport)
    yield client
    await client.aclose()


@pytest.fixture
def service(settings: Settings, fetch_client: FetchClient) -> RenderService:
    return RenderService(SettingsProvider(settings), fetch_client)


@pytest_asyncio.fixture
async def client(service: RenderService) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Test client fixture - service injected via app.state."""
    app = create_app(service.settings_provider)
    app.state.render_service = service

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

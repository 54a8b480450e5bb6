"""Storage protocol definitions using typing.Protocol."""

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Protocol

from .disk import CacheHit


class RenderCache(Protocol):
    """Cache protocol for rendered upstream responses."""

    def path_for(self, key: str) -> Path:
        """Map a cache key to its entry path."""
        ...

    async def try_serve_cached(self, path: Path, ttl: int, log: Any = ...) -> CacheHit | None:
        """Open a fresh entry, or return None on a miss."""
        ...

    def write_through(
        self, path: Path, chunks: AsyncIterator[bytes], log: Any = ...
    ) -> AsyncIterator[bytes]:
        """Stream a body to the caller while installing it as the entry."""
        ...

"""Disk-backed render cache.

File system calls run in the default executor so a slow disk never stalls
the event loop.
"""

import asyncio
import hashlib
import os
import tempfile
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from loguru import logger

from ..exceptions import UpstreamFetchError

CHUNK_SIZE = 64 * 1024
SNIFF_SIZE = 512
TEMP_PREFIX = ".cache-"

_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def cache_key(dashboard: str, query: str) -> str:
    """Derive the cache file name for a dashboard and its final query string."""
    return hashlib.sha256(f"{dashboard}{query}".encode()).hexdigest()


def sniff_content_type(head: bytes) -> str:
    """Guess the content type of a cached body from its first bytes."""
    for signature, content_type in _SIGNATURES:
        if head.startswith(signature):
            return content_type
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if b"<svg" in head.lstrip()[:256].lower():
        return "image/svg+xml"
    return "application/octet-stream"


@dataclass
class CacheHit:
    """A fresh cache entry opened for reading."""

    path: Path
    handle: BinaryIO
    head: bytes
    age: float
    ttl: int

    @property
    def content_type(self) -> str:
        return sniff_content_type(self.head)

    @property
    def max_age(self) -> float:
        return self.ttl - self.age

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Stream the entry, closing the file on every exit path."""
        try:
            if self.head:
                yield self.head
            loop = asyncio.get_event_loop()
            while chunk := await loop.run_in_executor(None, self.handle.read, CHUNK_SIZE):
                yield chunk
        finally:
            self.handle.close()

    def close(self) -> None:
        self.handle.close()


class DiskCache:
    """TTL-gated cache of upstream bodies stored as one file per key.

    Entries are written to a temporary file and renamed into place, so a
    reader never sees a partial entry. There is no locking per key: when two
    requests miss at once both fetch and the last rename wins.
    """

    def __init__(self, cache_dir: str | Path) -> None:
        self.cache_dir = Path(cache_dir)

    def path_for(self, key: str) -> Path:
        return self.cache_dir / key

    async def try_serve_cached(self, path: Path, ttl: int, log=logger) -> CacheHit | None:
        """Open the entry at ``path`` if it is younger than ``ttl`` seconds.

        Any filesystem error is logged and treated as a miss.

        Args:
            path: Cache file path.
            ttl: Freshness window in seconds; zero is never fresh.
            log: Logger bound to the current request.

        Returns:
            An open ``CacheHit``, or ``None`` on a miss.
        """
        loop = asyncio.get_event_loop()
        try:
            mtime = (await loop.run_in_executor(None, path.stat)).st_mtime
        except OSError as e:
            log.info("could not return cached response", cachefile=str(path), error=str(e))
            return None

        age = time.time() - mtime
        if ttl <= 0 or age >= ttl:
            log.info("cached response is stale", cachefile=str(path), age=age, ttl=ttl)
            return None

        try:
            handle = await loop.run_in_executor(None, path.open, "rb")
        except OSError as e:
            log.warning("error returning cached response", cachefile=str(path), error=str(e))
            return None

        try:
            head = await loop.run_in_executor(None, handle.read, SNIFF_SIZE)
        except OSError as e:
            handle.close()
            log.warning("error returning cached response", cachefile=str(path), error=str(e))
            return None

        return CacheHit(path=path, handle=handle, head=head, age=age, ttl=ttl)

    def _create_temp(self) -> tuple[BinaryIO, str]:
        fd, name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=self.cache_dir)
        return os.fdopen(fd, "wb"), name

    async def write_through(
        self, path: Path, chunks: AsyncIterator[bytes], log=logger
    ) -> AsyncIterator[bytes]:
        """Yield the upstream body to the client while caching it at ``path``.

        The body is copied to a temporary file in the cache directory and
        renamed over ``path`` only once it has been read completely. Cache
        write failures stop caching but not the stream to the client. An
        upstream read failure ends the stream early, since the status has
        already been sent.

        Args:
            path: Final cache file path.
            chunks: Upstream body.
            log: Logger bound to the current request.
        """
        loop = asyncio.get_event_loop()
        try:
            handle, temp_name = await loop.run_in_executor(None, self._create_temp)
        except OSError as e:
            log.error("error trying to cache file", cachefile=str(path), error=str(e))
            try:
                async for chunk in chunks:
                    yield chunk
            except UpstreamFetchError as e:
                log.error("error streaming upstream response", error=str(e))
            return

        caching = True
        installed = False
        try:
            try:
                async for chunk in chunks:
                    yield chunk
                    if caching:
                        try:
                            await loop.run_in_executor(None, handle.write, chunk)
                        except OSError as e:
                            log.error("error trying to cache file", cachefile=str(path), error=str(e))
                            caching = False
            except UpstreamFetchError as e:
                log.error("error trying to cache file", cachefile=str(path), error=str(e))
                return

            try:
                await loop.run_in_executor(None, handle.close)
            except OSError as e:
                log.error("error trying to cache file", cachefile=str(path), error=str(e))
                caching = False

            if caching:
                try:
                    await loop.run_in_executor(None, os.replace, temp_name, path)
                    installed = True
                    log.info("cached response", cachefile=str(path))
                except OSError as e:
                    log.error("error trying to rename temp file", cachefile=str(path), error=str(e))
        finally:
            # Runs on close or cancellation, so no awaits here
            if not handle.closed:
                handle.close()
            if not installed:
                try:
                    Path(temp_name).unlink(missing_ok=True)
                except OSError as e:
                    log.error("error removing temp file", tempfile=temp_name, error=str(e))

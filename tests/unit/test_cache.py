"""Unit tests for the disk cache."""

import io
import os
import threading
import time

import pytest

from grafana_fetch.exceptions import UpstreamFetchError
from grafana_fetch.storage import CacheHit, DiskCache, cache_key, create_cache, sniff_content_type

PNG_BODY = b"\x89PNG\r\n\x1a\n" + b"cached-panel" * 20


async def chunks_of(*parts: bytes):
    for part in parts:
        yield part


async def failing_after(*parts: bytes):
    for part in parts:
        yield part
    raise UpstreamFetchError("connection reset")


async def collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


def write_entry(path, content: bytes, age: float) -> None:
    path.write_bytes(content)
    stamp = time.time() - age
    os.utime(path, (stamp, stamp))


def leftover_temp_files(cache_dir):
    return [p.name for p in cache_dir.iterdir() if p.name.startswith(".cache-")]


class TestCacheKey:
    """Test cache key derivation."""

    def test_known_digest(self):
        assert (
            cache_key("overview", "a=1")
            == "de816496fc674e539483fb6d698a9b66f5ec711c12f884f448c69e7f7cc8d31b"
        )

    def test_fixed_width_hex(self):
        key = cache_key("plain", "from=now-1h&to=now")

        assert len(key) == 64
        assert all(c in "0123456789abcdef" for c in key)

    def test_dashboard_name_is_part_of_key(self):
        assert cache_key("one", "a=1") != cache_key("two", "a=1")


class TestCreateCache:
    """Test cache factory."""

    def test_disabled_without_directory(self):
        assert create_cache(None) is None
        assert create_cache("") is None

    def test_disk_cache_for_directory(self, cache_dir):
        cache = create_cache(str(cache_dir))

        assert isinstance(cache, DiskCache)
        assert cache.path_for("abc") == cache_dir / "abc"

    def test_one_instance_per_directory(self, cache_dir):
        assert create_cache(str(cache_dir)) is create_cache(str(cache_dir))


class TestTryServeCached:
    """Test the read path."""

    @pytest.mark.asyncio
    async def test_fresh_entry_is_a_hit(self, cache_dir):
        """An entry five seconds old with a ten second TTL is served."""
        cache = DiskCache(cache_dir)
        path = cache.path_for("entry")
        write_entry(path, PNG_BODY, age=5)

        hit = await cache.try_serve_cached(path, 10)

        assert hit is not None
        assert 4 <= hit.age < 10
        assert 0 < hit.max_age <= 6
        assert hit.content_type == "image/png"
        assert await collect(hit.iter_bytes()) == PNG_BODY
        assert hit.handle.closed

    @pytest.mark.asyncio
    async def test_zero_ttl_is_never_fresh(self, cache_dir):
        cache = DiskCache(cache_dir)
        path = cache.path_for("entry")
        write_entry(path, PNG_BODY, age=0)

        assert await cache.try_serve_cached(path, 0) is None

    @pytest.mark.asyncio
    async def test_stale_entry_is_a_miss(self, cache_dir):
        cache = DiskCache(cache_dir)
        path = cache.path_for("entry")
        write_entry(path, PNG_BODY, age=30)

        assert await cache.try_serve_cached(path, 10) is None

    @pytest.mark.asyncio
    async def test_missing_entry_is_a_miss(self, cache_dir):
        cache = DiskCache(cache_dir)

        assert await cache.try_serve_cached(cache.path_for("absent"), 10) is None

    @pytest.mark.asyncio
    async def test_open_failure_is_a_miss(self, cache_dir):
        """A path that stats but cannot be read degrades to a miss."""
        cache = DiskCache(cache_dir)
        path = cache.path_for("directory")
        path.mkdir()

        assert await cache.try_serve_cached(path, 3600) is None

    @pytest.mark.asyncio
    async def test_large_entry_is_streamed_completely(self, cache_dir):
        cache = DiskCache(cache_dir)
        path = cache.path_for("large")
        content = os.urandom(200 * 1024)
        write_entry(path, content, age=1)

        hit = await cache.try_serve_cached(path, 60)

        assert hit is not None
        assert await collect(hit.iter_bytes()) == content

    @pytest.mark.asyncio
    async def test_reads_run_off_the_event_loop(self, cache_dir):
        threads = set()

        class RecordingReader(io.BytesIO):
            def read(self, size=-1):
                threads.add(threading.get_ident())
                return super().read(size)

        handle = RecordingReader(b"rest-of-body")
        hit = CacheHit(path=cache_dir / "entry", handle=handle, head=b"head-", age=1, ttl=60)

        assert await collect(hit.iter_bytes()) == b"head-rest-of-body"
        assert threads
        assert threading.get_ident() not in threads
        assert handle.closed


class TestWriteThrough:
    """Test the write path."""

    @pytest.mark.asyncio
    async def test_body_is_streamed_and_installed(self, cache_dir):
        cache = DiskCache(cache_dir)
        path = cache.path_for("entry")

        body = await collect(cache.write_through(path, chunks_of(b"abc", b"def")))

        assert body == b"abcdef"
        assert path.read_bytes() == b"abcdef"
        assert leftover_temp_files(cache_dir) == []

    @pytest.mark.asyncio
    async def test_existing_entry_is_replaced(self, cache_dir):
        cache = DiskCache(cache_dir)
        path = cache.path_for("entry")
        write_entry(path, b"old", age=100)

        await collect(cache.write_through(path, chunks_of(b"new")))

        assert path.read_bytes() == b"new"
        assert time.time() - path.stat().st_mtime < 10

    @pytest.mark.asyncio
    async def test_upstream_failure_keeps_previous_entry(self, cache_dir):
        """A body that fails mid-stream is truncated and never installed."""
        cache = DiskCache(cache_dir)
        path = cache.path_for("entry")
        write_entry(path, b"previous", age=100)

        body = await collect(cache.write_through(path, failing_after(b"part")))

        assert body == b"part"
        assert path.read_bytes() == b"previous"
        assert leftover_temp_files(cache_dir) == []

    @pytest.mark.asyncio
    async def test_temp_file_failure_still_serves_body(self, tmp_path):
        """Without a usable cache directory the body passes straight through."""
        cache = DiskCache(tmp_path / "does-not-exist")
        path = cache.path_for("entry")

        body = await collect(cache.write_through(path, chunks_of(b"abc", b"def")))

        assert body == b"abcdef"
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_disk_write_failure_still_serves_body(self, cache_dir, monkeypatch):
        """A failed cache write stops caching but not the response."""

        class FullDisk(io.BytesIO):
            def write(self, data):
                raise OSError(28, "No space left on device")

        cache = DiskCache(cache_dir)
        temp_path = cache_dir / ".cache-full"
        temp_path.write_bytes(b"")
        monkeypatch.setattr(cache, "_create_temp", lambda: (FullDisk(), str(temp_path)))
        path = cache.path_for("entry")

        body = await collect(cache.write_through(path, chunks_of(b"abc", b"def")))

        assert body == b"abcdef"
        assert not path.exists()
        assert not temp_path.exists()

    @pytest.mark.asyncio
    async def test_writes_run_off_the_event_loop(self, cache_dir, monkeypatch):
        """Chunks are written from executor threads and the entry is still installed."""
        threads = set()

        class RecordingFile(io.FileIO):
            def write(self, data):
                threads.add(threading.get_ident())
                return super().write(data)

        cache = DiskCache(cache_dir)
        temp_path = cache_dir / ".cache-recorded"
        monkeypatch.setattr(
            cache, "_create_temp", lambda: (RecordingFile(temp_path, "wb"), str(temp_path))
        )
        path = cache.path_for("entry")
        parts = [os.urandom(64 * 1024) for _ in range(4)]

        body = await collect(cache.write_through(path, chunks_of(*parts)))

        assert body == b"".join(parts)
        assert path.read_bytes() == body
        assert threads
        assert threading.get_ident() not in threads
        assert leftover_temp_files(cache_dir) == []

    @pytest.mark.asyncio
    async def test_client_disconnect_removes_temp_file(self, cache_dir):
        """Closing the stream early leaves no entry and no temp file."""
        cache = DiskCache(cache_dir)
        path = cache.path_for("entry")

        stream = cache.write_through(path, chunks_of(b"abc", b"def", b"ghi"))
        assert await stream.__anext__() == b"abc"
        await stream.aclose()

        assert not path.exists()
        assert leftover_temp_files(cache_dir) == []


class TestSniffContentType:
    """Test content type detection for cached bodies."""

    @pytest.mark.parametrize(
        ("head", "expected"),
        [
            (PNG_BODY, "image/png"),
            (b"\xff\xd8\xff\xe0rest", "image/jpeg"),
            (b"GIF89a....", "image/gif"),
            (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
            (b'<?xml version="1.0"?>\n<svg xmlns="http://www.w3.org/2000/svg">', "image/svg+xml"),
            (b"plain text", "application/octet-stream"),
            (b"", "application/octet-stream"),
        ],
    )
    def test_signatures(self, head, expected):
        assert sniff_content_type(head) == expected

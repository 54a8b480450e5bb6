"""Storage module with factory for creating the render cache."""

from functools import lru_cache
from pathlib import Path

from loguru import logger

from .disk import CacheHit, DiskCache, cache_key, sniff_content_type
from .protocols import RenderCache


@lru_cache(maxsize=16)
def create_cache(cache_dir: str | Path | None) -> RenderCache | None:
    """Create the render cache for a configured directory.

    Cached per directory, so requests sharing a settings snapshot share one
    instance.

    Args:
        cache_dir: Cache directory, or None when caching is disabled.

    Returns:
        Cache instance, or None if caching is disabled.
    """
    if not cache_dir:
        return None

    logger.debug("Using disk cache", cache=str(cache_dir))
    return DiskCache(cache_dir)


__all__ = [
    "CacheHit",
    "DiskCache",
    "RenderCache",
    "cache_key",
    "create_cache",
    "sniff_content_type",
]

"""Grafana Fetch - a caching gateway for rendered Grafana panels."""

from .api import app, create_app
from .config import Settings, SettingsProvider, load_settings
from .options import parse_options
from .service import RenderService

__version__ = "1.0.0"

__all__ = [
    "RenderService",
    "Settings",
    "SettingsProvider",
    "app",
    "create_app",
    "load_settings",
    "parse_options",
]

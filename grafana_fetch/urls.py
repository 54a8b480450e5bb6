"""Upstream render URL construction."""

import posixpath
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .config import Settings
from .models import DashboardSpec, RenderOptions


def encode_query(params: dict[str, list[str]]) -> str:
    """Form-encode query parameters with keys in lexicographic order."""
    return urlencode(sorted(params.items()), doseq=True)


def _join_path(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    # normpath keeps a leading "//"
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def build_render_url(
    settings: Settings,
    dashboard: DashboardSpec,
    raw_query: str,
    options: RenderOptions,
    panel_id: str,
    time_from: str,
    time_to: str,
) -> str:
    """Compose the upstream render URL for one panel.

    The incoming query string is carried over, then the organisation, theme,
    panel, time range and size parameters are set on top of it. Keys are
    encoded in sorted order so the result is stable for cache keys.

    Args:
        settings: Configuration snapshot holding the base URL and defaults.
        dashboard: Dashboard being rendered.
        raw_query: Query string of the inbound request.
        options: Resolved render options.
        panel_id: Panel identifier from the request path.
        time_from: Start of the time range.
        time_to: End of the time range.

    Returns:
        Absolute URL of the render endpoint.
    """
    base = urlsplit(settings.url)

    params: dict[str, list[str]] = {}
    for key, value in parse_qsl(raw_query, keep_blank_values=True):
        params.setdefault(key, []).append(value)

    params["orgId"] = [str(dashboard.org or settings.org or 1)]
    params["theme"] = [dashboard.theme or settings.theme or "light"]
    params["panelId"] = [panel_id]
    params["from"] = [time_from]
    params["to"] = [time_to]
    params["width"] = [options["width"]]
    params["height"] = [options["height"]]

    path = _join_path(base.path, "render", dashboard.path)
    return urlunsplit((base.scheme, base.netloc, path, encode_query(params), ""))


def final_query(url: str) -> str:
    """Return the encoded query string of a built render URL."""
    return urlsplit(url).query

"""Inline render option parsing."""

from .exceptions import InvalidOptionsError
from .models import RenderOptions

DEFAULT_WIDTH = "1000"
DEFAULT_HEIGHT = "500"
DEFAULT_THEME = "light"


def parse_options(text: str) -> RenderOptions:
    """Decode ``k1=v1,k2=v2`` option text and fill in defaults.

    Pairs are only extracted when the text contains a comma, so a lone
    ``width=200`` is ignored and yields the defaults.

    Args:
        text: Raw option text from the request path, possibly empty.

    Returns:
        Mapping that always contains ``width``, ``height`` and ``theme``.

    Raises:
        InvalidOptionsError: If a token is not exactly one ``key=value`` pair.
    """
    options: RenderOptions = {}

    if "," in text:
        for token in text.split(","):
            pair = token.split("=")
            if len(pair) != 2:
                raise InvalidOptionsError(f"invalid option {token!r}")
            options[pair[0]] = pair[1]

    width = options.get("width")
    height = options.get("height")

    if width is None and height is not None:
        options["width"] = height
    elif height is None and width is not None:
        options["height"] = width
    elif width is None and height is None:
        options["width"] = DEFAULT_WIDTH
        options["height"] = DEFAULT_HEIGHT

    options.setdefault("theme", DEFAULT_THEME)
    return options

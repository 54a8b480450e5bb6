"""Domain-specific exceptions for the render gateway."""


class GatewayError(Exception):
    """Base exception for errors that end a request with an HTTP status."""

    status_code: int = 500


class InvalidOptionsError(GatewayError):
    """Option text in the request path could not be parsed."""

    status_code = 400


class DashboardNotFoundError(GatewayError):
    """No dashboard with the requested name is configured."""

    status_code = 404


class DashboardConfigError(GatewayError):
    """Dashboard is configured but its settings do not validate."""


class UpstreamRequestError(GatewayError):
    """Request to the render service could not be built."""


class UpstreamFetchError(GatewayError):
    """Render service could not be reached or its body could not be read."""


class ConfigurationError(Exception):
    """Error related to process configuration, fatal at startup."""

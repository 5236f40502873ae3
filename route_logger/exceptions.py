"""Exception types raised by route_logger itself."""


class RouteLoggerError(Exception):
    """Base class for errors raised by route_logger."""

    pass


class ConfigurationError(RouteLoggerError):
    """Raised when host-level configuration cannot be interpreted."""

    pass


__all__ = ["ConfigurationError", "RouteLoggerError"]

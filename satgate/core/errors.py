from __future__ import annotations


class SatgateError(Exception):
    """Base error for satgate."""


class ConfigurationError(SatgateError):
    """Missing or invalid deployment configuration, such as the signing secret."""


class StoreUnavailableError(SatgateError):
    """A durable store needed for an authorization decision could not be reached."""


class SessionNotConfiguredError(ConfigurationError):
    """The session layer has no secret to verify bearer sessions with."""

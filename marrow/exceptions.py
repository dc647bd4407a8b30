"""
Exception hierarchy for the mapping pipeline.
"""

from typing import Any, List, Optional


class MarrowError(Exception):
    """Base class for every error raised by marrow."""


class ConfigError(MarrowError):
    """Configuration is missing or invalid."""


class InvalidUrl(MarrowError, ValueError):
    """Input could not be interpreted as a web URL."""


class LaunchError(MarrowError):
    """The browser process could not be started."""


class PageNotReady(MarrowError):
    """A page operation was attempted before navigation completed."""


class NavigationError(MarrowError):
    """Navigation failed or timed out."""


class ProviderError(MarrowError):
    """The generative model backend failed to answer."""


class GenerationInvalid(MarrowError):
    """Model output could not be parsed or did not match the page schema."""

    def __init__(self, message: str, raw_response: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.raw_response = raw_response
        self.errors = errors or []


class RegistryError(MarrowError):
    """The map store could not be read or written."""


class SessionVaultError(MarrowError):
    """A session file could not be read or written."""


class MapNotFound(MarrowError):
    """No stored map exists for the requested URL."""


class AuthenticationRequired(MarrowError):
    """The target page sits behind a login wall."""

    def __init__(self, message: str, detection=None):
        super().__init__(message)
        self.detection = detection

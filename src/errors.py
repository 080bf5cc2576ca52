"""
Exception hierarchy shared by the gateway services.

Request handlers catch GatewayError at their boundary and turn it into an
empty or explanatory response; nothing here is meant to reach a client.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway failures."""


class ConfigurationError(GatewayError):
    """A required credential, API key or chain value is missing. Fatal."""


class UpstreamError(GatewayError):
    """An upstream call failed after the bounded retry."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None,
                 body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.body = body


class AuthRejectedError(UpstreamError):
    """Upstream rejected a credential (401/403 or an explicit login_required)."""


class BlackoutError(GatewayError):
    """Stream access for a media id is blacked out."""

    def __init__(self, media_id: str):
        super().__init__(f"media {media_id} is blacked out")
        self.media_id = media_id


class MalformedDataError(GatewayError):
    """Upstream content could not be parsed."""


class EncoderError(GatewayError):
    """The external encoder process could not be started."""


class InvalidRequestError(GatewayError):
    """A request parameter is missing or cannot be understood."""

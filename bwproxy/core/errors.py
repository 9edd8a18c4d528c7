"""
Failure kinds raised along the proxy pipeline.

Everything that can go wrong before the first body byte is sent resolves to a
redirect to the original image, except a malformed URL (400) and a missing URL
(banner). Failures after the body started cannot be recovered.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for every failure the proxy handles itself."""


class MissingURL(ProxyError):
    """The caller did not pass a `url` parameter."""


class InvalidURL(ProxyError):
    """The target URL cannot be requested at all."""


class RedirectableError(ProxyError):
    """Failures answered with a redirect to the original resource."""

    def __init__(self, message: str = "", location: Optional[str] = None):
        super().__init__(message)
        self.location = location


class FetchFailed(RedirectableError):
    """Connection, timeout or transport error while talking to the origin."""


class OriginError(RedirectableError):
    """The origin answered with a 4xx/5xx status."""

    def __init__(self, status_code: int, location: Optional[str] = None):
        super().__init__(f"origin responded {status_code}", location)
        self.status_code = status_code


class OriginRedirect(RedirectableError):
    """The origin answered with a 3xx pointing somewhere else."""


class MetadataReadFailed(RedirectableError):
    """The image header could not be identified."""


class TransformFailed(RedirectableError):
    """Decoding, resizing or encoding failed."""


class MidStreamWriteFailed(ProxyError):
    """A stage failed after the response body had started."""

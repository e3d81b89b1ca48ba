"""
Proxy Exceptions

Error kinds raised while handling a single proxied request. Each carries
the HTTP status the gateway answers with; none of them is fatal to the
server process.
"""


class ProxyError(Exception):
    """Base class for per-request proxy failures."""

    status_code = 500

    def __init__(self, message: str = "", headers=None):
        super().__init__(message)
        self.message = message
        self.headers = list(headers or [])


class MalformedRequest(ProxyError):
    """The request head could not be parsed."""

    status_code = 400


class AccessDenied(ProxyError):
    """Client IP is not within the allowed networks."""

    status_code = 403


class AuthRequired(ProxyError):
    """Proxy credentials are missing or invalid."""

    status_code = 407


class UpstreamUnreachable(ProxyError):
    """The upstream host could not be dialed."""

    status_code = 504


class UpstreamProtocolError(ProxyError):
    """Transport or protocol failure while relaying to the upstream."""

    status_code = 500


class HijackUnsupported(ProxyError):
    """The client transport cannot be taken over for a tunnel."""

    status_code = 500


class ProxyServerError(Exception):
    """The proxy server could not start (e.g. the port cannot be bound)."""

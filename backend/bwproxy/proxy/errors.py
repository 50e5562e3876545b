"""Proxy error taxonomy."""


class ProxyError(Exception):
    """Base class for failures the supervisor knows how to recover from."""


class InvalidURLError(ProxyError):
    """The requested URL is malformed or not an absolute http(s) URL."""

    def __init__(self, url: str, reason: str = "invalid URL"):
        super().__init__(f"{reason}: {url!r}")
        self.url = url
        self.reason = reason


class OriginFetchError(ProxyError):
    """The origin could not be reached or broke off mid-body."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class TranscodeError(ProxyError):
    """Decoding or encoding failed."""


class ClientDisconnected(ProxyError):
    """The downstream client went away; cancellation, not a failure."""


class HeadersAlreadySentError(RuntimeError):
    """A header mutation was attempted after the response started."""


class ResponseAborted(RuntimeError):
    """Raised out of the ASGI app so the server drops a half-sent response."""

"""ASGI response sink: the one place that knows whether headers went out."""
import logging
from urllib.parse import quote

from starlette.datastructures import MutableHeaders
from starlette.types import Send

from bwproxy.proxy.errors import ClientDisconnected, HeadersAlreadySentError

logger = logging.getLogger("bwproxy.sink")

# Characters JavaScript's encodeURI leaves alone
_URI_SAFE = ";,/?:@&=+$-_.!~*'()#"


class ResponseSink:
    """
    Accumulates status and headers until the first body write, then streams.

    The started flag flips in the same call that emits the first body chunk, so
    any later header mutation raises HeadersAlreadySentError instead of silently
    producing a corrupt response.
    """

    def __init__(self, send: Send):
        self._send = send
        self.status_code = 200
        self.headers = MutableHeaders()
        self.bytes_sent = 0
        self._started = False
        self._finished = False
        self.aborted = False

    @property
    def headers_sent(self) -> bool:
        return self._started

    @property
    def finished(self) -> bool:
        return self._finished or self.aborted

    def _ensure_mutable(self) -> None:
        if self._started:
            raise HeadersAlreadySentError("response headers already sent")

    def set_status(self, status_code: int) -> None:
        self._ensure_mutable()
        self.status_code = status_code

    def set_header(self, name: str, value) -> None:
        self._ensure_mutable()
        self.headers[name] = str(value)

    def clear_headers(self) -> None:
        self._ensure_mutable()
        self.headers = MutableHeaders()

    async def _emit(self, message: dict) -> None:
        try:
            await self._send(message)
        except OSError as e:
            raise ClientDisconnected(str(e)) from e

    async def _start(self) -> None:
        if self._started:
            return
        self._started = True
        await self._emit(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.headers.raw,
            }
        )

    async def write(self, chunk: bytes) -> None:
        """Send one body chunk; awaiting this is the backpressure point."""
        if self.finished:
            raise RuntimeError("write after response end")
        if not chunk:
            return
        await self._start()
        await self._emit({"type": "http.response.body", "body": chunk, "more_body": True})
        self.bytes_sent += len(chunk)

    async def end(self, body: bytes = b"") -> None:
        if self.finished:
            return
        await self._start()
        self._finished = True
        await self._emit({"type": "http.response.body", "body": body, "more_body": False})
        self.bytes_sent += len(body)

    async def send_text(self, status_code: int, text: str) -> None:
        body = text.encode("utf-8")
        self.set_status(status_code)
        self.set_header("content-type", "text/plain; charset=utf-8")
        self.set_header("content-length", len(body))
        await self.end(body)

    def abort(self) -> None:
        """Mark the response for a protocol-level abort; nothing more is written."""
        self.aborted = True


def encode_uri(url: str) -> str:
    return quote(url, safe=_URI_SAFE)


async def redirect(sink: ResponseSink, url: str) -> bool:
    """
    Bare 302 back to the original URL: any headers staged for a bypass or
    transcode are dropped. Returns False (and does nothing) once headers are out.
    """
    if sink.headers_sent or sink.finished:
        logger.debug("Redirect to %s skipped: response already started", url)
        return False
    sink.clear_headers()
    sink.set_header("location", encode_uri(url))
    sink.set_header("content-length", 0)
    sink.set_status(302)
    await sink.end()
    return True

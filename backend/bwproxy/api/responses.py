"""ASGI response that drives the proxy supervisor against a ResponseSink."""
import logging
from typing import Awaitable, Callable

import anyio
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from bwproxy.proxy.errors import ClientDisconnected, ResponseAborted
from bwproxy.proxy.models import ProxyState
from bwproxy.proxy.sink import ResponseSink

logger = logging.getLogger("bwproxy.api")

ProxyHandler = Callable[[ResponseSink], Awaitable[ProxyState]]


class ProxyResponse(Response):
    """
    Hands the raw ASGI send channel to a handler and cancels it when the client disconnects.

    If the handler marks the sink aborted, ResponseAborted is raised after it
    returns so the server drops the connection mid-body.
    """

    def __init__(self, handler: ProxyHandler, label: str = ""):
        self.handler = handler
        self.label = label
        self.status_code = 200
        self.background = None
        self.state = None

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                break

    async def _run(self, sink: ResponseSink) -> None:
        try:
            self.state = await self.handler(sink)
        except ClientDisconnected:
            self.state = ProxyState.CANCELLED
        except Exception:
            logger.exception("Proxy handler failed for %s", self.label)
            if sink.finished:
                self.state = ProxyState.ERROR
            elif sink.headers_sent:
                sink.abort()
                self.state = ProxyState.ABORT
            else:
                self.state = ProxyState.ERROR
                try:
                    await sink.send_text(500, "Internal Server Error")
                except ClientDisconnected:
                    self.state = ProxyState.CANCELLED

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        sink = ResponseSink(send)
        async with anyio.create_task_group() as task_group:

            async def wrap(func: Callable[[], Awaitable[None]]) -> None:
                await func()
                task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, lambda: self._run(sink))
            await wrap(lambda: self._listen_for_disconnect(receive))

        if self.state is None:
            self.state = ProxyState.CANCELLED
            logger.info("Client disconnected, cancelled %s after %s bytes", self.label, sink.bytes_sent)
        if sink.aborted:
            raise ResponseAborted(f"response for {self.label} aborted after {sink.bytes_sent} bytes")

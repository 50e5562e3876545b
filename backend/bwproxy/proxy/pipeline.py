"""
Streaming transcode pipeline.

    origin body --feed--> [input channel] --encode (worker thread)--> [output channel] --relay--> sink

Both channels are bounded anyio memory object streams. Every hop awaits the
next one, so a client that stops reading stalls the relay, the encoder thread
and finally the origin read, and memory stays bounded by the channel sizes plus
the header buffer.
"""
import concurrent.futures
import logging
from typing import AsyncIterator, Optional

import anyio
from anyio import from_thread, to_thread
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from bwproxy.config import ProxySettings
from bwproxy.proxy.codec import ImageTranscoder, PillowTranscoder
from bwproxy.proxy.errors import ClientDisconnected, TranscodeError
from bwproxy.proxy.headers import apply_transcode_headers
from bwproxy.proxy.models import OriginResponse, TranscodeRequest, TranscodeResult
from bwproxy.proxy.sink import ResponseSink

logger = logging.getLogger("bwproxy.pipeline")

# What a worker thread sees when the async side of a channel has gone away
_CHANNEL_GONE = (
    anyio.BrokenResourceError,
    anyio.ClosedResourceError,
    concurrent.futures.CancelledError,
)


class PipelineClosed(Exception):
    """The async end of a channel closed while a worker thread was using it."""


class ChannelReader:
    """Blocking iterator over an async channel, for use on anyio worker threads."""

    def __init__(self, stream: MemoryObjectReceiveStream):
        self._stream = stream

    def __iter__(self):
        while True:
            try:
                chunk = from_thread.run(self._stream.receive)
            except anyio.EndOfStream:
                return
            except _CHANNEL_GONE as e:
                raise PipelineClosed("input channel closed") from e
            yield chunk


class ChannelWriter:
    """Blocking file-like writer that splits output into fixed-size channel chunks."""

    def __init__(self, stream: MemoryObjectSendStream, chunk_size: int):
        self._stream = stream
        self._chunk_size = chunk_size

    def write(self, data) -> int:
        view = memoryview(data)
        for start in range(0, len(view), self._chunk_size):
            piece = bytes(view[start:start + self._chunk_size])
            try:
                from_thread.run(self._stream.send, piece)
            except _CHANNEL_GONE as e:
                raise PipelineClosed("output channel closed") from e
        return len(view)

    def flush(self) -> None:
        pass


async def pipe(body: AsyncIterator[bytes], sink: ResponseSink) -> int:
    """Bypass relay: one awaited write per origin chunk, no read-ahead."""
    total = 0
    async for chunk in body:
        await sink.write(chunk)
        total += len(chunk)
    return total


class TranscodePipeline:
    def __init__(self, settings: ProxySettings, transcoder: Optional[ImageTranscoder] = None):
        self.settings = settings
        self.transcoder = transcoder or PillowTranscoder(settings)
        self._limiter: Optional[anyio.CapacityLimiter] = None

    @property
    def limiter(self) -> anyio.CapacityLimiter:
        # created lazily so it binds to the running event loop
        if self._limiter is None:
            self._limiter = anyio.CapacityLimiter(self.settings.max_workers)
        return self._limiter

    async def run(
        self,
        origin: OriginResponse,
        request: TranscodeRequest,
        sink: ResponseSink,
    ) -> TranscodeResult:
        """
        Stream the transcoded image into sink.

        Raises TranscodeError for decode/encode/origin failures (check
        sink.headers_sent to choose between redirect and abort),
        ClientDisconnected when the client went away, and TimeoutError when
        transcode_timeout elapses.
        """
        result = TranscodeResult(
            content_type=request.output_content_type,
            original_size=origin.content_length,
        )
        failures: list[Exception] = []
        capacity = self.settings.stream_buffer_chunks
        in_send, in_recv = anyio.create_memory_object_stream(capacity)
        out_send, out_recv = anyio.create_memory_object_stream(capacity)
        disconnected = False

        # Children never raise; failures are collected and judged after the group exits.
        with anyio.fail_after(self.settings.transcode_timeout):
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._feed, origin.body, in_send, failures)
                tg.start_soon(self._encode, in_recv, out_send, request, result, failures)
                disconnected = await self._relay(out_recv, sink, result, failures)
                if disconnected:
                    tg.cancel_scope.cancel()

        if disconnected:
            raise ClientDisconnected(f"client left during transcode of {request.origin_url}")
        if failures:
            raise TranscodeError(f"{type(failures[0]).__name__}: {failures[0]}") from failures[0]
        return result

    async def _feed(
        self,
        body: AsyncIterator[bytes],
        in_send: MemoryObjectSendStream,
        failures: list[Exception],
    ) -> None:
        async with in_send:
            try:
                async for chunk in body:
                    await in_send.send(chunk)
            except anyio.BrokenResourceError:
                logger.debug("Decoder stopped reading the origin body")
            except Exception as e:
                failures.append(e)

    async def _encode(
        self,
        in_recv: MemoryObjectReceiveStream,
        out_send: MemoryObjectSendStream,
        request: TranscodeRequest,
        result: TranscodeResult,
        failures: list[Exception],
    ) -> None:
        async with in_recv, out_send:
            try:
                size = await to_thread.run_sync(
                    self.transcoder.transcode,
                    ChannelReader(in_recv),
                    request,
                    ChannelWriter(out_send, self.settings.stream_chunk_size),
                    limiter=self.limiter,
                )
            except PipelineClosed:
                logger.debug("Transcode of %s stopped: pipeline closed", request.origin_url)
            except Exception as e:
                failures.append(e)
            else:
                result.width, result.height = size

    async def _relay(
        self,
        out_recv: MemoryObjectReceiveStream,
        sink: ResponseSink,
        result: TranscodeResult,
        failures: list[Exception],
    ) -> bool:
        """Returns True when the client disconnected."""
        held: list[bytes] = []
        held_size = 0
        try:
            async with out_recv:
                async for chunk in out_recv:
                    result.processed_bytes += len(chunk)
                    if sink.headers_sent:
                        await sink.write(chunk)
                        continue
                    held.append(chunk)
                    held_size += len(chunk)
                    if held_size >= self.settings.header_buffer_bytes:
                        logger.debug(
                            "Output passed %s bytes, streaming without final size",
                            self.settings.header_buffer_bytes,
                        )
                        apply_transcode_headers(sink, result)
                        await self._flush(held, sink)
            if failures:
                return False
            result.processed_size = result.processed_bytes
            if not sink.headers_sent:
                apply_transcode_headers(sink, result)
                await self._flush(held, sink)
            await sink.end()
        except ClientDisconnected:
            return True
        return False

    @staticmethod
    async def _flush(held: list[bytes], sink: ResponseSink) -> None:
        for chunk in held:
            await sink.write(chunk)
        held.clear()

"""Proxy supervisor: fetch, decide, stream, and fall back to a redirect when it can."""
import logging
from typing import Optional

import anyio

from bwproxy.config import ProxySettings, get_settings
from bwproxy.proxy.codec import ImageTranscoder
from bwproxy.proxy.errors import (
    ClientDisconnected,
    InvalidURLError,
    OriginFetchError,
    TranscodeError,
)
from bwproxy.proxy.fetcher import (
    HttpxOriginFetcher,
    OriginFetcher,
    build_origin_headers,
    get_http_client,
)
from bwproxy.proxy.guard import is_loopback_request
from bwproxy.proxy.headers import apply_bypass_headers
from bwproxy.proxy.models import ClientHints, OriginResponse, ProxyState, TranscodeRequest
from bwproxy.proxy.pipeline import TranscodePipeline, pipe
from bwproxy.proxy.policy import should_compress
from bwproxy.proxy.sink import ResponseSink, redirect

logger = logging.getLogger("bwproxy.service")


class ProxyService:
    """
    Runs one request through FETCHING -> {BYPASS_STREAMING | TRANSCODE_STREAMING} -> DONE.

    Failures before the first body byte become a 302 to the original URL; after
    it, the connection is aborted. A vanished client is a cancellation.
    """

    def __init__(
        self,
        settings: Optional[ProxySettings] = None,
        fetcher: Optional[OriginFetcher] = None,
        transcoder: Optional[ImageTranscoder] = None,
    ):
        self.settings = settings or get_settings()
        self.fetcher = fetcher or HttpxOriginFetcher(get_http_client(self.settings), self.settings)
        self.pipeline = TranscodePipeline(self.settings, transcoder)
        logger.info("ProxyService initialized with max_workers=%s", self.settings.max_workers)

    async def handle(
        self,
        request: TranscodeRequest,
        client: ClientHints,
        sink: ResponseSink,
    ) -> ProxyState:
        url = request.origin_url
        if is_loopback_request(client, self.settings):
            logger.warning("Loopback request for %s from %s, redirecting", url, client.forwarded_for)
            return await self._redirect(request, sink)

        state = ProxyState.FETCHING
        try:
            async with self.fetcher.fetch(url, build_origin_headers(client, self.settings)) as origin:
                if origin.is_redirect_worthy:
                    logger.info("Origin %s answered %s, redirecting", url, origin.status_code)
                    return await self._redirect(request, sink)
                if should_compress(
                    origin.content_type,
                    origin.content_length,
                    request.prefer_webp,
                    request.has_range_header,
                    self.settings.min_compress_length,
                    self.settings.min_transparent_compress_length,
                ):
                    state = ProxyState.TRANSCODE_STREAMING
                    return await self._transcode(request, origin, sink)
                state = ProxyState.BYPASS_STREAMING
                return await self._bypass(request, origin, sink)
        except InvalidURLError as e:
            logger.info("Rejected origin URL %s: %s", url, e.reason)
            if sink.headers_sent:
                return self._abort(request, sink, state)
            await sink.send_text(400, "Invalid URL")
            return ProxyState.ERROR
        except OriginFetchError as e:
            logger.warning("Fetching %s failed: %s", url, e.reason)
            return await self._recover(request, sink, state)
        except ClientDisconnected:
            logger.info("Client disconnected while proxying %s", url)
            return ProxyState.CANCELLED
        except Exception as e:
            logger.exception("Unexpected failure proxying %s in state %s: %s", url, state.value, e)
            return await self._recover(request, sink, state)

    async def _bypass(
        self,
        request: TranscodeRequest,
        origin: OriginResponse,
        sink: ResponseSink,
    ) -> ProxyState:
        apply_bypass_headers(sink, origin)
        try:
            with anyio.fail_after(self.settings.bypass_timeout):
                sent = await pipe(origin.body, sink)
                await sink.end()
        except OriginFetchError as e:
            logger.warning("Origin body for %s broke off: %s", request.origin_url, e.reason)
            return await self._recover(request, sink, ProxyState.BYPASS_STREAMING)
        except TimeoutError:
            logger.warning("Bypass of %s exceeded %ss", request.origin_url, self.settings.bypass_timeout)
            return await self._recover(request, sink, ProxyState.BYPASS_STREAMING)
        logger.info(
            "Bypassed %s (%s, %s bytes)", request.origin_url, origin.content_type or "unknown type", sent
        )
        return ProxyState.DONE

    async def _transcode(
        self,
        request: TranscodeRequest,
        origin: OriginResponse,
        sink: ResponseSink,
    ) -> ProxyState:
        try:
            result = await self.pipeline.run(origin, request, sink)
        except TranscodeError as e:
            logger.warning("Transcoding %s failed: %s", request.origin_url, e)
            return await self._recover(request, sink, ProxyState.TRANSCODE_STREAMING)
        except TimeoutError:
            logger.warning(
                "Transcoding %s exceeded %ss", request.origin_url, self.settings.transcode_timeout
            )
            return await self._recover(request, sink, ProxyState.TRANSCODE_STREAMING)
        logger.info(
            "Transcoded %s to %s: %s -> %s bytes (saved %s)",
            request.origin_url,
            request.output_format.value,
            result.original_size,
            result.processed_size,
            result.bytes_saved,
        )
        return ProxyState.DONE

    async def _recover(self, request: TranscodeRequest, sink: ResponseSink, state: ProxyState) -> ProxyState:
        if sink.headers_sent:
            return self._abort(request, sink, state)
        return await self._redirect(request, sink)

    @staticmethod
    async def _redirect(request: TranscodeRequest, sink: ResponseSink) -> ProxyState:
        await redirect(sink, request.origin_url)
        return ProxyState.REDIRECT

    @staticmethod
    def _abort(request: TranscodeRequest, sink: ResponseSink, state: ProxyState) -> ProxyState:
        logger.error(
            "Aborting response for %s during %s after %s bytes",
            request.origin_url,
            state.value,
            sink.bytes_sent,
        )
        sink.abort()
        return ProxyState.ABORT


# Singleton
_proxy_service: Optional[ProxyService] = None


def get_proxy_service() -> ProxyService:
    global _proxy_service
    if _proxy_service is None:
        _proxy_service = ProxyService()
    return _proxy_service

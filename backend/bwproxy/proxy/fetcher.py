"""Origin fetcher backed by a shared httpx.AsyncClient."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

import anyio
import httpx

from bwproxy.config import ProxySettings, get_settings
from bwproxy.proxy.errors import InvalidURLError, OriginFetchError
from bwproxy.proxy.models import ClientHints, OriginResponse

logger = logging.getLogger("bwproxy.fetcher")

_client: Optional[httpx.AsyncClient] = None


def get_http_client(settings: Optional[ProxySettings] = None) -> httpx.AsyncClient:
    global _client
    if _client is None:
        settings = settings or get_settings()
        limits = httpx.Limits(
            max_connections=settings.http_max_connections,
            max_keepalive_connections=settings.http_max_keepalive,
            keepalive_expiry=settings.http_keepalive_expiry,
        )
        _client = httpx.AsyncClient(
            timeout=settings.fetch_timeout,
            limits=limits,
            follow_redirects=False,
        )
    return _client


async def close_http_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


class OriginFetcher(Protocol):
    def fetch(self, url: str, headers: dict[str, str]) -> AsyncContextManager[OriginResponse]:
        ...


def build_origin_headers(client: ClientHints, settings: ProxySettings) -> dict[str, str]:
    headers = dict(client.passthrough)
    headers["user-agent"] = settings.user_agent
    headers["x-forwarded-for"] = client.forwarded_for
    headers["via"] = settings.via_marker
    headers["accept-encoding"] = "identity"
    return headers


def _content_length(value: Optional[str]) -> int:
    try:
        return max(0, int(value or 0))
    except ValueError:
        return 0


class HttpxOriginFetcher:
    """Streams origin responses; the body must be consumed inside the context."""

    def __init__(self, client: httpx.AsyncClient, settings: ProxySettings):
        self._client = client
        self._settings = settings

    async def _iter_body(self, url: str, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(self._settings.stream_chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise OriginFetchError(url, f"body read failed: {e!s}") from e

    @asynccontextmanager
    async def fetch(self, url: str, headers: dict[str, str]) -> AsyncIterator[OriginResponse]:
        try:
            request = self._client.build_request("GET", url, headers=headers)
            response = await self._client.send(request, stream=True)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise InvalidURLError(url, str(e)) from e
        except httpx.HTTPError as e:
            raise OriginFetchError(url, str(e) or type(e).__name__) from e
        logger.debug("Origin %s answered %s", url, response.status_code)
        try:
            yield OriginResponse(
                status_code=response.status_code,
                content_type=response.headers.get("content-type", ""),
                content_length=_content_length(response.headers.get("content-length")),
                headers={k.lower(): v for k, v in response.headers.items()},
                body=self._iter_body(url, response),
            )
        finally:
            # release the pooled connection even when the request was cancelled
            with anyio.CancelScope(shield=True):
                await response.aclose()

# backend/tests/conftest.py
from __future__ import annotations

import asyncio
import inspect
import io
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterator, Optional

import pytest
from PIL import Image
from starlette.testclient import TestClient

from bwproxy.config import ProxySettings
from bwproxy.main import app
from bwproxy.proxy.models import OriginResponse
from bwproxy.proxy.service import ProxyService, get_proxy_service


class FakeOrigin:
    """In-memory origin fetcher; records every request it receives."""

    def __init__(
        self,
        status: int = 200,
        headers: Optional[dict[str, str]] = None,
        body: bytes = b"",
        chunk_size: int = 4096,
        error: Optional[Exception] = None,
        stream: Optional[AsyncIterator[bytes]] = None,
    ):
        self.status = status
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.body = body
        self.chunk_size = chunk_size
        self.error = error
        self.stream = stream
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.closed = False

    async def _chunks(self) -> AsyncIterator[bytes]:
        for start in range(0, len(self.body), self.chunk_size):
            yield self.body[start:start + self.chunk_size]

    @asynccontextmanager
    async def fetch(self, url: str, headers: dict[str, str]):
        self.requests.append((url, headers))
        if self.error is not None:
            raise self.error
        try:
            yield OriginResponse(
                status_code=self.status,
                content_type=self.headers.get("content-type", ""),
                content_length=int(self.headers.get("content-length", "0")),
                headers=dict(self.headers),
                body=self.stream if self.stream is not None else self._chunks(),
            )
        finally:
            self.closed = True


class RecordingSend:
    """ASGI send callable that keeps every message."""

    def __init__(self):
        self.messages: list[dict] = []

    async def __call__(self, message: dict) -> None:
        self.messages.append(message)

    @property
    def starts(self) -> list[dict]:
        return [m for m in self.messages if m["type"] == "http.response.start"]

    @property
    def body(self) -> bytes:
        return b"".join(m.get("body", b"") for m in self.messages if m["type"] == "http.response.body")

    def header(self, name: str) -> Optional[str]:
        for key, value in self.starts[0]["headers"]:
            if key.decode("latin-1") == name.lower():
                return value.decode("latin-1")
        return None


def image_bytes(
    size: tuple[int, int] = (64, 48),
    mode: str = "RGB",
    fmt: str = "PNG",
    color=None,
) -> bytes:
    if color is None:
        color = {"RGB": (200, 40, 90), "RGBA": (200, 40, 90, 128), "L": 120, "P": 3}.get(mode, 0)
    img = Image.new(mode, size, color)
    if mode in ("RGB", "RGBA"):
        # some texture so the encoders have real work to do
        for x in range(0, size[0], 4):
            for y in range(0, size[1], 4):
                img.putpixel((x, y), (x % 256, y % 256, (x + y) % 256) + (() if mode == "RGB" else (255,)))
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def settings() -> ProxySettings:
    return ProxySettings(
        default_quality=40,
        default_grayscale=True,
        min_compress_length=1024,
        min_transparent_compress_length=102400,
        max_workers=2,
        transcode_timeout=30,
        stream_chunk_size=4096,
        stream_buffer_chunks=4,
        header_buffer_bytes=4 * 1024 * 1024,
    )


@pytest.fixture()
def make_client(settings) -> Iterator:
    def _make(origin: FakeOrigin, transcoder=None, proxy_settings: Optional[ProxySettings] = None) -> TestClient:
        service = ProxyService(proxy_settings or settings, fetcher=origin, transcoder=transcoder)
        app.dependency_overrides[get_proxy_service] = lambda: service
        return TestClient(app, follow_redirects=False)

    try:
        yield _make
    finally:
        app.dependency_overrides.pop(get_proxy_service, None)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Minimal asyncio support without requiring pytest-asyncio."""

    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            call_kwargs = {
                name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
            }
            loop.run_until_complete(test_func(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None

import pytest

from conftest import RecordingSend
from bwproxy.proxy.errors import ClientDisconnected, HeadersAlreadySentError
from bwproxy.proxy.headers import apply_bypass_headers, apply_transcode_headers
from bwproxy.proxy.models import OriginResponse, TranscodeResult
from bwproxy.proxy.sink import ResponseSink, encode_uri, redirect


async def _empty():
    if False:
        yield b""


async def test_redirect_drops_staged_headers() -> None:
    send = RecordingSend()
    sink = ResponseSink(send)
    sink.set_header("cache-control", "max-age=60")
    sink.set_header("etag", '"abc"')
    sink.set_header("x-custom", "staged")

    assert await redirect(sink, "http://example.com/a b.png") is True

    assert len(send.starts) == 1
    assert send.starts[0]["status"] == 302
    assert send.header("location") == "http://example.com/a%20b.png"
    assert send.header("content-length") == "0"
    assert send.header("cache-control") is None
    assert send.header("etag") is None
    assert send.header("x-custom") is None
    assert send.body == b""


async def test_redirect_is_idempotent() -> None:
    send = RecordingSend()
    sink = ResponseSink(send)
    assert await redirect(sink, "http://example.com/a.png") is True
    assert await redirect(sink, "http://example.com/a.png") is False
    assert len(send.starts) == 1


async def test_redirect_after_body_started_is_a_no_op() -> None:
    send = RecordingSend()
    sink = ResponseSink(send)
    await sink.write(b"partial")
    assert await redirect(sink, "http://example.com/a.png") is False
    assert len(send.starts) == 1
    assert send.starts[0]["status"] == 200


async def test_header_changes_after_first_write_raise() -> None:
    sink = ResponseSink(RecordingSend())
    sink.set_header("content-type", "image/webp")
    await sink.write(b"x")
    assert sink.headers_sent is True
    with pytest.raises(HeadersAlreadySentError):
        sink.set_header("content-length", 10)
    with pytest.raises(HeadersAlreadySentError):
        sink.set_status(500)
    with pytest.raises(HeadersAlreadySentError):
        sink.clear_headers()


async def test_empty_writes_do_not_start_the_response() -> None:
    send = RecordingSend()
    sink = ResponseSink(send)
    await sink.write(b"")
    assert sink.headers_sent is False
    assert send.messages == []


async def test_write_after_end_raises() -> None:
    sink = ResponseSink(RecordingSend())
    await sink.end(b"done")
    assert sink.bytes_sent == 4
    with pytest.raises(RuntimeError):
        await sink.write(b"more")


async def test_transport_errors_become_client_disconnected() -> None:
    async def broken_send(message):
        raise OSError("connection reset")

    sink = ResponseSink(broken_send)
    with pytest.raises(ClientDisconnected):
        await sink.write(b"x")


def test_encode_uri_keeps_reserved_characters() -> None:
    url = "https://example.com/p/ä ö.png?a=1&b=[2]#frag"
    assert encode_uri(url) == "https://example.com/p/%C3%A4%20%C3%B6.png?a=1&b=%5B2%5D#frag"


def test_bypass_headers_copy_only_the_whitelist() -> None:
    sink = ResponseSink(RecordingSend())
    origin = OriginResponse(
        status_code=206,
        content_type="image/png",
        content_length=500,
        headers={
            "content-type": "image/png",
            "content-length": "500",
            "content-range": "bytes 0-499/9000",
            "accept-ranges": "bytes",
            "set-cookie": "session=secret",
            "cache-control": "max-age=3600",
            "etag": '"v1"',
        },
        body=_empty(),
    )
    apply_bypass_headers(sink, origin)

    assert sink.status_code == 206
    assert sink.headers["content-type"] == "image/png"
    assert sink.headers["content-length"] == "500"
    assert sink.headers["content-range"] == "bytes 0-499/9000"
    assert sink.headers["accept-ranges"] == "bytes"
    assert sink.headers["x-proxy-bypass"] == "1"
    assert sink.headers["access-control-allow-origin"] == "*"
    assert sink.headers["cross-origin-resource-policy"] == "cross-origin"
    assert sink.headers["content-encoding"] == "identity"
    for leaked in ("set-cookie", "cache-control", "etag"):
        assert leaked not in sink.headers


def test_bypass_drops_length_of_encoded_origin_body() -> None:
    sink = ResponseSink(RecordingSend())
    origin = OriginResponse(
        status_code=200,
        content_type="text/html",
        content_length=120,
        headers={"content-type": "text/html", "content-length": "120", "content-encoding": "gzip"},
        body=_empty(),
    )
    apply_bypass_headers(sink, origin)
    assert "content-length" not in sink.headers
    assert sink.headers["content-encoding"] == "identity"


def test_transcode_headers_report_sizes() -> None:
    sink = ResponseSink(RecordingSend())
    result = TranscodeResult(content_type="image/webp", original_size=5000, processed_bytes=1200, processed_size=1200)
    apply_transcode_headers(sink, result)
    assert sink.status_code == 200
    assert sink.headers["content-type"] == "image/webp"
    assert sink.headers["content-length"] == "1200"
    assert sink.headers["x-original-size"] == "5000"
    assert sink.headers["x-bytes-saved"] == "3800"


def test_transcode_headers_keep_negative_savings() -> None:
    sink = ResponseSink(RecordingSend())
    result = TranscodeResult(content_type="image/jpeg", original_size=1000, processed_size=1500)
    apply_transcode_headers(sink, result)
    assert sink.headers["x-bytes-saved"] == "-500"


def test_transcode_headers_without_final_size() -> None:
    sink = ResponseSink(RecordingSend())
    apply_transcode_headers(sink, TranscodeResult(content_type="image/webp", original_size=9000))
    assert "content-length" not in sink.headers
    assert "x-bytes-saved" not in sink.headers
    assert sink.headers["x-original-size"] == "9000"

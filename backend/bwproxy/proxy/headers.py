"""Outbound header sets for bypass and transcoded responses."""
from bwproxy.proxy.models import OriginResponse, TranscodeResult
from bwproxy.proxy.sink import ResponseSink

# Copied verbatim from the origin when the bytes pass through untouched
BYPASS_HEADERS = ("accept-ranges", "content-type", "content-length", "content-range")

COMMON_HEADERS = {
    "content-encoding": "identity",
    "access-control-allow-origin": "*",
    "cross-origin-resource-policy": "cross-origin",
}


def apply_common_headers(sink: ResponseSink) -> None:
    for name, value in COMMON_HEADERS.items():
        sink.set_header(name, value)


def apply_bypass_headers(sink: ResponseSink, origin: OriginResponse) -> None:
    # httpx hands us decoded bytes, so an encoded origin length no longer applies
    encoded = origin.headers.get("content-encoding", "identity").lower() not in ("", "identity")
    sink.set_status(origin.status_code)
    apply_common_headers(sink)
    for name in BYPASS_HEADERS:
        if name == "content-length" and encoded:
            continue
        value = origin.headers.get(name)
        if value:
            sink.set_header(name, value)
    sink.set_header("x-proxy-bypass", 1)


def apply_transcode_headers(sink: ResponseSink, result: TranscodeResult) -> None:
    """Size headers are only set once the encoder has reported the final size."""
    sink.set_status(200)
    apply_common_headers(sink)
    sink.set_header("content-type", result.content_type)
    sink.set_header("x-original-size", result.original_size)
    if result.processed_size is not None:
        sink.set_header("content-length", result.processed_size)
        sink.set_header("x-bytes-saved", result.bytes_saved)

"""Turn query parameters and inbound headers into a TranscodeRequest."""
import re
from typing import Mapping, Optional
from urllib.parse import unquote, urlsplit

from bwproxy.config import ProxySettings
from bwproxy.proxy.errors import InvalidURLError
from bwproxy.proxy.models import ClientHints, TranscodeRequest

MIN_QUALITY = 1
MAX_QUALITY = 100

# Inbound headers worth forwarding to the origin
PASSTHROUGH_HEADERS = ("cookie", "dnt", "referer", "range")

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def decode_url(raw: str) -> str:
    """Percent-decode strictly: broken escapes or non-UTF-8 bytes are rejected."""
    if _BAD_ESCAPE.search(raw):
        raise InvalidURLError(raw, "malformed percent-encoding")
    try:
        return unquote(raw, errors="strict")
    except UnicodeDecodeError as e:
        raise InvalidURLError(raw, "malformed percent-encoding") from e


def validate_url(url: str) -> str:
    parts = urlsplit(url.strip())
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise InvalidURLError(url)
    return parts.geturl()


def parse_quality(value: Optional[str], default: int) -> int:
    """Lenient leading-integer parse; missing, junk or 0 fall back to default."""
    quality = 0
    if value:
        m = _LEADING_INT.match(value)
        if m:
            quality = int(m.group(1))
    if quality == 0:
        quality = default
    return max(MIN_QUALITY, min(MAX_QUALITY, quality))


def parse_grayscale(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value != "0"


def resolve_request(
    query: Mapping[str, str],
    headers: Mapping[str, str],
    settings: ProxySettings,
) -> Optional[TranscodeRequest]:
    """
    Returns None when no url was given (the health/no-op case).
    Raises InvalidURLError for a url that cannot be decoded or is not absolute http(s).
    """
    raw = query.get("url")
    if not raw:
        return None
    url = validate_url(decode_url(raw))
    return TranscodeRequest(
        origin_url=url,
        prefer_webp="jpeg" not in query,
        grayscale=parse_grayscale(query.get("bw"), settings.default_grayscale),
        quality=parse_quality(query.get("l"), settings.default_quality),
        has_range_header=bool(headers.get("range")),
    )


def client_hints(headers: Mapping[str, str], peer_host: Optional[str]) -> ClientHints:
    """Collect the forwarded address, Via marker and passthrough headers."""
    forwarded = (headers.get("x-forwarded-for") or "").split(",", 1)[0].strip()
    passthrough = {}
    for name in PASSTHROUGH_HEADERS:
        value = headers.get(name)
        if value:
            passthrough[name] = value
    return ClientHints(
        forwarded_for=forwarded or peer_host or "",
        via=headers.get("via"),
        passthrough=passthrough,
    )

"""Request-scoped proxy models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional


class ProxyState(str, Enum):
    FETCHING = "fetching"
    BYPASS_STREAMING = "bypass_streaming"
    TRANSCODE_STREAMING = "transcode_streaming"
    DONE = "done"
    REDIRECT = "redirect"
    ABORT = "abort"
    CANCELLED = "cancelled"
    ERROR = "error"


class OutputFormat(str, Enum):
    WEBP = "webp"
    JPEG = "jpeg"


@dataclass(frozen=True)
class TranscodeRequest:
    """What the client asked for. Frozen so nothing changes once a pipeline starts."""

    origin_url: str
    prefer_webp: bool = True
    grayscale: bool = True
    quality: int = 40
    has_range_header: bool = False

    @property
    def output_format(self) -> OutputFormat:
        return OutputFormat.WEBP if self.prefer_webp else OutputFormat.JPEG

    @property
    def output_content_type(self) -> str:
        return f"image/{self.output_format.value}"


@dataclass(frozen=True)
class ClientHints:
    """Inbound facts used for the loopback guard and forwarded to the origin."""

    forwarded_for: str
    via: Optional[str] = None
    passthrough: dict[str, str] = field(default_factory=dict)


@dataclass
class OriginResponse:
    status_code: int
    content_type: str
    content_length: int
    headers: dict[str, str]
    body: AsyncIterator[bytes]

    @property
    def is_redirect_worthy(self) -> bool:
        """Errors and upstream redirects are handed back to the client."""
        if self.status_code >= 400:
            return True
        return self.status_code >= 300 and "location" in self.headers


@dataclass
class TranscodeResult:
    content_type: str
    original_size: int
    processed_bytes: int = 0  # updated as encoded chunks flow
    processed_size: Optional[int] = None  # final, once the encoder has flushed
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def bytes_saved(self) -> Optional[int]:
        if self.processed_size is None:
            return None
        return self.original_size - self.processed_size

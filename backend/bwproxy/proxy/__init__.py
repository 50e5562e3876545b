from .models import ClientHints, OriginResponse, ProxyState, TranscodeRequest, TranscodeResult
from .policy import should_compress
from .service import ProxyService, get_proxy_service

__all__ = [
    "ClientHints",
    "OriginResponse",
    "ProxyService",
    "ProxyState",
    "TranscodeRequest",
    "TranscodeResult",
    "get_proxy_service",
    "should_compress",
]

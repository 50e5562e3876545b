"""Proxy configuration. Loads from environment and .env file."""
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


# Identity: the Via marker sent to origins and checked by the loopback guard
PROXY_NAME = os.getenv("PROXY_NAME", "bandwidth-hero")
ORIGIN_USER_AGENT = os.getenv("ORIGIN_USER_AGENT", "Bandwidth-Hero Compressor")

# Request defaults (env overrides)
DEFAULT_QUALITY = int(os.getenv("DEFAULT_QUALITY", "40"))
DEFAULT_GRAYSCALE = _env_bool("DEFAULT_GRAYSCALE", True)

# Compression thresholds (bytes)
MIN_COMPRESS_LENGTH = int(os.getenv("MIN_COMPRESS_LENGTH", "1024"))
MIN_TRANSPARENT_COMPRESS_LENGTH = int(
    os.getenv("MIN_TRANSPARENT_COMPRESS_LENGTH", str(MIN_COMPRESS_LENGTH * 100))
)

# Encoder: 16383 is the largest side WebP can store; effort 0 favours throughput
MAX_DIMENSION = int(os.getenv("MAX_DIMENSION", "16383"))
ENCODER_EFFORT = int(os.getenv("ENCODER_EFFORT", "0"))
# Decoded pixel ceiling; 0 lifts Pillow's decompression-bomb limit so huge images get resized
MAX_INPUT_PIXELS = int(os.getenv("MAX_INPUT_PIXELS", "0"))

# Concurrency
MAX_WORKERS = int(os.getenv("MAX_WORKERS", str(os.cpu_count() or 4)))

# Timeouts (seconds)
FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "30"))
BYPASS_TIMEOUT = float(os.getenv("BYPASS_TIMEOUT", "300"))
TRANSCODE_TIMEOUT = float(os.getenv("TRANSCODE_TIMEOUT", "60"))

# Streaming buffers
STREAM_CHUNK_SIZE = int(os.getenv("STREAM_CHUNK_SIZE", str(64 * 1024)))
STREAM_BUFFER_CHUNKS = int(os.getenv("STREAM_BUFFER_CHUNKS", "4"))
HEADER_BUFFER_BYTES = int(os.getenv("HEADER_BUFFER_BYTES", str(4 * 1024 * 1024)))

# Origin connection pool
HTTPX_MAX_CONNECTIONS = int(os.getenv("HTTPX_MAX_CONNECTIONS", "200"))
HTTPX_MAX_KEEPALIVE = int(os.getenv("HTTPX_MAX_KEEPALIVE", "100"))
HTTPX_KEEPALIVE_S = float(os.getenv("HTTPX_KEEPALIVE_S", "20"))

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("bwproxy")


@dataclass(frozen=True)
class ProxySettings:
    """Immutable runtime settings, built once and handed to each component."""

    proxy_name: str = PROXY_NAME
    user_agent: str = ORIGIN_USER_AGENT
    default_quality: int = DEFAULT_QUALITY
    default_grayscale: bool = DEFAULT_GRAYSCALE
    min_compress_length: int = MIN_COMPRESS_LENGTH
    min_transparent_compress_length: int = MIN_TRANSPARENT_COMPRESS_LENGTH
    max_dimension: int = MAX_DIMENSION
    encoder_effort: int = ENCODER_EFFORT
    max_input_pixels: int = MAX_INPUT_PIXELS
    max_workers: int = MAX_WORKERS
    fetch_timeout: float = FETCH_TIMEOUT
    bypass_timeout: float = BYPASS_TIMEOUT
    transcode_timeout: float = TRANSCODE_TIMEOUT
    stream_chunk_size: int = STREAM_CHUNK_SIZE
    stream_buffer_chunks: int = STREAM_BUFFER_CHUNKS
    header_buffer_bytes: int = HEADER_BUFFER_BYTES
    http_max_connections: int = HTTPX_MAX_CONNECTIONS
    http_max_keepalive: int = HTTPX_MAX_KEEPALIVE
    http_keepalive_expiry: float = HTTPX_KEEPALIVE_S

    @property
    def via_marker(self) -> str:
        return f"1.1 {self.proxy_name}"


@lru_cache(maxsize=1)
def get_settings() -> ProxySettings:
    return ProxySettings()

"""Decide whether re-encoding an origin image is worth it."""
from bwproxy.config import MIN_COMPRESS_LENGTH, MIN_TRANSPARENT_COMPRESS_LENGTH

_TRANSPARENT_SUFFIXES = ("png", "gif")


def should_compress(
    content_type: str,
    content_length: int,
    prefer_webp: bool,
    has_range_header: bool,
    min_compress_length: int = MIN_COMPRESS_LENGTH,
    min_transparent_compress_length: int = MIN_TRANSPARENT_COMPRESS_LENGTH,
) -> bool:
    """
    Pure and total: no I/O, every input yields an answer.
    - non-images, unknown sizes and range requests are never transcoded
    - small WebP targets are not worth the container overhead
    - PNG/GIF going to JPEG need a much higher bar (sprites, transparency)
    """
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if not media_type.startswith("image"):
        return False
    if content_length == 0:
        return False
    if has_range_header:
        return False
    if prefer_webp and content_length < min_compress_length:
        return False
    if (
        not prefer_webp
        and media_type.endswith(_TRANSPARENT_SUFFIXES)
        and content_length < min_transparent_compress_length
    ):
        return False
    return True

"""Image codec backends. Runs on worker threads, never on the event loop."""
import logging
from typing import BinaryIO, Iterable, Protocol

from PIL import Image, ImageFile

from bwproxy.config import ProxySettings
from bwproxy.proxy.models import OutputFormat, TranscodeRequest
from bwproxy.proxy.resize import limit_dimensions

logger = logging.getLogger("bwproxy.codec")


class ImageTranscoder(Protocol):
    def transcode(
        self,
        chunks: Iterable[bytes],
        request: TranscodeRequest,
        output: BinaryIO,
    ) -> tuple[int, int]:
        """Decode chunks, write the encoded image to output, return its (width, height)."""
        ...


def _prepare_mode(img: Image.Image, fmt: OutputFormat, grayscale: bool) -> Image.Image:
    has_alpha = img.has_transparency_data
    if grayscale:
        target = "LA" if has_alpha and fmt == OutputFormat.WEBP else "L"
    elif fmt == OutputFormat.JPEG:
        target = "RGB"
    else:
        target = "RGBA" if has_alpha else "RGB"
    if img.mode not in ("RGB", "RGBA", "L", "LA"):
        # palette, CMYK and friends go through RGB(A) so colours map correctly
        img = img.convert("RGBA" if has_alpha else "RGB")
    if img.mode != target:
        img = img.convert(target)
    return img


class PillowTranscoder:
    """Incremental decode with ImageFile.Parser, re-encode with Pillow's WebP/JPEG writers."""

    def __init__(self, settings: ProxySettings):
        self._max_dimension = settings.max_dimension
        self._effort = settings.encoder_effort
        self._max_pixels = settings.max_input_pixels
        # Pillow only reads this global; 0 means no ceiling at all
        Image.MAX_IMAGE_PIXELS = self._max_pixels or None

    def _check_pixels(self, img: Image.Image) -> None:
        # Pillow warns below 2x its limit and only raises above it
        pixels = img.width * img.height
        if self._max_pixels and pixels > self._max_pixels:
            raise Image.DecompressionBombError(
                f"Image size ({pixels} pixels) exceeds limit of {self._max_pixels} pixels"
            )

    def transcode(
        self,
        chunks: Iterable[bytes],
        request: TranscodeRequest,
        output: BinaryIO,
    ) -> tuple[int, int]:
        parser = ImageFile.Parser()
        announced = False
        for chunk in chunks:
            parser.feed(chunk)
            if not announced and parser.image is not None:
                announced = True
                self._check_pixels(parser.image)
                logger.debug(
                    "Decoding %s %sx%s from %s",
                    parser.image.format, parser.image.width, parser.image.height, request.origin_url,
                )
        img = parser.close()
        try:
            work = limit_dimensions(img, self._max_dimension)
            work = _prepare_mode(work, request.output_format, request.grayscale)
            if request.output_format == OutputFormat.WEBP:
                save_kw = {"format": "WEBP", "quality": request.quality, "method": self._effort}
            else:
                save_kw = {"format": "JPEG", "quality": request.quality, "optimize": False}
            work.save(output, **save_kw)
            return work.size
        finally:
            img.close()

"""Keep decoded images within what the encoders can store."""
import logging

from PIL import Image

logger = logging.getLogger("bwproxy.resize")


def fit_dimensions(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """
    Scale (width, height) so neither side exceeds max_dimension.
    Aspect ratio is kept within rounding; never scales up.
    """
    longest = max(width, height)
    if longest <= max_dimension:
        return width, height
    scale = max_dimension / longest
    new_w = max(1, min(max_dimension, int(round(width * scale))))
    new_h = max(1, min(max_dimension, int(round(height * scale))))
    return new_w, new_h


def limit_dimensions(img: Image.Image, max_dimension: int) -> Image.Image:
    w, h = img.size
    target = fit_dimensions(w, h, max_dimension)
    if target == (w, h):
        return img
    logger.debug("Resizing %sx%s -> %sx%s", w, h, target[0], target[1])
    return img.resize(target, Image.Resampling.LANCZOS)

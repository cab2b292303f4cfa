"""
Image side of the pipeline: decode a picture, walk it as canvas pixels,
and drop whatever falls outside the canvas.
"""

import io
import logging
import os
from typing import Iterable, Iterator, List, Tuple

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from flutproto import CanvasBounds, ImageDecodeError, Pixel

logger = logging.getLogger(__name__)


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def load_image(source: str, scale: float = 1.0) -> Image.Image:
    """Open an image from a file path or an http(s) URL, optionally rescaled."""
    try:
        if _is_url(source):
            response = requests.get(source, timeout=10)
            response.raise_for_status()
            img = Image.open(io.BytesIO(response.content))
        else:
            if not os.path.exists(source):
                raise FileNotFoundError(f"Image file not found: {source}")
            img = Image.open(source)
        img.load()
    except (OSError, UnidentifiedImageError, requests.RequestException) as e:
        raise ImageDecodeError(f"Could not decode image {source}: {e}") from e

    logger.info("Image loaded: %dx%d, mode: %s", img.width, img.height, img.mode)
    if scale != 1.0:
        new_width = max(1, int(img.width * scale))
        new_height = max(1, int(img.height * scale))
        img = img.resize((new_width, new_height), Image.LANCZOS)
        logger.info("Scaled image to: %dx%d", new_width, new_height)
    return img


class RasterImage:
    """Pixels of a decoded image placed at an offset on the canvas.

    Iterating walks the image in row-major order: every pixel of row 0 from
    left to right, then row 1, and so on. Each iteration starts over, so the
    same raster can be consumed several times.

    With ``alpha`` the colors carry a fourth channel and fully transparent
    pixels are left out.
    """

    def __init__(self, array: np.ndarray, offset: Tuple[int, int] = (0, 0), alpha: bool = False):
        if array.ndim == 2:
            array = np.stack([array] * 3, axis=-1)
        channels = 4 if alpha else 3
        if array.shape[2] < channels:
            # RGB source asked for RGBA: fully opaque
            opaque = np.full(array.shape[:2] + (1,), 255, dtype=array.dtype)
            array = np.concatenate([array[:, :, :3], opaque], axis=2)
        self.array = np.ascontiguousarray(array[:, :, :channels], dtype=np.uint8)
        self.offset = offset
        self.alpha = alpha

    @classmethod
    def from_image(cls, img: Image.Image, offset: Tuple[int, int] = (0, 0), alpha: bool = False) -> "RasterImage":
        return cls(np.array(img.convert("RGBA" if alpha else "RGB")), offset, alpha)

    @property
    def width(self) -> int:
        return self.array.shape[1]

    @property
    def height(self) -> int:
        return self.array.shape[0]

    def __len__(self) -> int:
        if self.alpha:
            return int(np.count_nonzero(self.array[:, :, 3]))
        return self.width * self.height

    def __iter__(self) -> Iterator[Pixel]:
        offset_x, offset_y = self.offset
        for iy, row in enumerate(self.array):
            y = offset_y + iy
            for ix, color in enumerate(row.tolist()):
                if self.alpha and color[3] == 0:
                    continue
                yield Pixel(offset_x + ix, y, tuple(color))


def rasterize(source: str, offset: Tuple[int, int] = (0, 0), alpha: bool = False, scale: float = 1.0) -> RasterImage:
    """Decode ``source`` and return its pixels placed at ``offset``."""
    return RasterImage.from_image(load_image(source, scale), offset, alpha)


def clip_pixels(pixels: Iterable[Pixel], bounds: CanvasBounds) -> List[Pixel]:
    """Keep only the pixels that land on the canvas.

    Pixels outside ``bounds`` are dropped, and a single warning is logged if
    there were any. Partial painting is fine, so this never raises.
    """
    kept = []
    dropped = 0
    for pixel in pixels:
        if bounds.contains(pixel.x, pixel.y):
            kept.append(pixel)
        else:
            dropped += 1
    if dropped:
        logger.warning(
            "Image exceeds canvas bounds %dx%d, %d pixels outside the canvas were dropped",
            bounds.width, bounds.height, dropped,
        )
    return kept

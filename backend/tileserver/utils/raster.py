"""Raster tile decoding backed by rio-tiler.

Terrain tiles arrive as encoded PNG or WebP images. ``decode_rgb`` turns the
bytes into a ``(height, width, 3)`` uint8 array of red, green and blue
samples, which is what the elevation formulas consume.

Example:
    Decode a terrain tile:
        >>> from tileserver.utils import raster
        >>> pixels = raster.decode_rgb(png_bytes)
        >>> r, g, b = pixels[128, 128]
"""

from __future__ import annotations

import numpy
from rio_tiler import models as rio_tiler_models


class RasterDecodeError(ValueError):
    """Raised when tile bytes are not a decodable RGB image."""


def decode_rgb(data: bytes) -> numpy.ndarray:
    """Decode an encoded image into RGB pixel samples.

    Single band images are expanded to three identical channels; an alpha
    band, when present, is dropped.

    Args:
        data: Encoded PNG or WebP bytes.

    Returns:
        Array of shape (height, width, 3) with uint8 samples.

    Raises:
        RasterDecodeError: If the bytes cannot be decoded as an image.
    """
    try:
        image = rio_tiler_models.ImageData.from_bytes(data)
    except Exception as exc:  # rasterio raises driver-specific errors
        raise RasterDecodeError(f"cannot decode raster tile: {exc}") from exc

    bands = numpy.ma.getdata(image.array)
    if bands.shape[0] == 1:
        bands = numpy.repeat(bands, 3, axis=0)
    elif bands.shape[0] < 3:
        raise RasterDecodeError(f"expected RGB image, got {bands.shape[0]} bands")
    return numpy.moveaxis(bands[:3], 0, -1).astype(numpy.uint8, copy=False)

"""Spherical Web Mercator tile pyramid math.

Thin layer over ``mercantile`` converting between geographic coordinates
(degrees) and tile/pixel addresses of the standard XYZ tile pyramid, where
zoom ``z`` is a ``2**z`` by ``2**z`` grid of square tiles with tile (0, 0) at
the north-west corner. Only the pixel offset and tile extent scaling live
here; tile indices and bounds come from mercantile.

Example:
    Locate a point on the zoom 1 grid:
        >>> from tileserver.utils import mercator
        >>> mercator.lonlat_to_tile_pixel(45.5, 45.5, 1, 256)
        (1, 0, 64.71..., 183.17...)

    Bounds of a tile:
        >>> mercator.tile_to_lonlat_bounds(1, 0, 1)
        (0.0, 0.0, 180.0, 85.0511287798066)
"""

from __future__ import annotations

import mercantile

MAX_LATITUDE = 85.0511287798066


def tile_coords_valid(z: int, x: int, y: int) -> bool:
    """Return True when (z, x, y) addresses a tile of the pyramid."""
    if z < 0:
        return False
    low, high = mercantile.minmax(z)
    return low <= x <= high and low <= y <= high


def lonlat_to_tile_pixel(
    lon: float,
    lat: float,
    zoom: int,
    tile_size: int = 256,
) -> tuple[int, int, float, float]:
    """Project a geographic point onto the tile grid.

    Points beyond the grid (``|lon| >= 180`` or latitudes past the Mercator
    limit) resolve to the nearest edge tile, with the pixel offset held at
    that tile's edge.

    Args:
        lon: Longitude in degrees.
        lat: Latitude in degrees.
        zoom: Zoom level.
        tile_size: Tile side length in pixels.

    Returns:
        (tile_x, tile_y, pixel_x, pixel_y): the containing tile and the
        fractional pixel offset of the point inside it.

    Raises:
        ValueError: If ``|lat| >= 90``, which has no Mercator image.
    """
    if not -90.0 < lat < 90.0:
        raise ValueError(f"latitude {lat} has no Mercator projection")

    tile = mercantile.tile(lon, lat, zoom)
    left, bottom, right, top = mercantile.xy_bounds(tile)
    x, y = mercantile.xy(lon, lat)
    pixel_x = (x - left) / (right - left) * tile_size
    pixel_y = (top - y) / (top - bottom) * tile_size
    return (
        tile.x,
        tile.y,
        min(max(pixel_x, 0.0), float(tile_size)),
        min(max(pixel_y, 0.0), float(tile_size)),
    )


def tile_pixel_to_lonlat(
    x: int,
    y: int,
    zoom: int,
    pixel_x: float,
    pixel_y: float,
    extent: int,
) -> tuple[float, float]:
    """Inverse projection of a position given in tile-local units.

    Used to turn vector tile geometry (``extent`` units per tile side, y
    pointing down) into longitude/latitude.
    """
    left, bottom, right, top = mercantile.xy_bounds(x, y, zoom)
    projected_x = left + pixel_x / extent * (right - left)
    projected_y = top - pixel_y / extent * (top - bottom)
    lon, lat = mercantile.lnglat(projected_x, projected_y)
    return lon, lat


def tile_to_lonlat_bounds(
    x: int,
    y: int,
    zoom: int,
) -> tuple[float, float, float, float]:
    """Return (west, south, east, north) of a tile in degrees."""
    bounds = mercantile.bounds(x, y, zoom)
    return bounds.west, bounds.south, bounds.east, bounds.north


def tile_center(x: int, y: int, zoom: int) -> tuple[float, float]:
    """Return the (lon, lat) midpoint of a tile's bounding box."""
    west, south, east, north = tile_to_lonlat_bounds(x, y, zoom)
    return (west + east) / 2, (south + north) / 2

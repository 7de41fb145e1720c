"""Elevation queries against terrain RGB tiles.

Terrain sources store elevation in the red, green and blue channels of PNG
or WebP tiles, using one of two encodings:

- mapbox (Terrain-RGB): ``-10000 + (R * 65536 + G * 256 + B) * 0.1``
- terrarium: ``R * 256 + G + B / 256 - 32768``

A batch query projects every point onto the tile grid at its (clamped) zoom,
groups points by tile so each tile is fetched and decoded exactly once,
samples the pixel under each point and returns one result per input point,
in input order. A missing tile yields ``None`` for the points on it and does
not affect the other groups.

Single point queries come in two explicit flavours: by longitude/latitude
(``query_point``, zoom clamped into the source's range) and by integer tile
address (``query_tile``, address validated, tile center pixel sampled).

Example:
    Query three points, two of which share a tile:
        >>> from tileserver.services import elevation
        >>> points = [
        ...     elevation.ElevationPoint(lon=45.5, lat=45.5, z=1),
        ...     elevation.ElevationPoint(lon=90, lat=30, z=1),
        ...     elevation.ElevationPoint(lon=-45.5, lat=-45.5, z=1),
        ... ]
        >>> results = await elevation.query_elevations(descriptor, points)
        >>> [result.elevation for result in results]
        [500.0, 500.0, 1000.0]
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import math
import zlib
from typing import TYPE_CHECKING, Any

import pydantic

from tileserver.core import errors
from tileserver.services import fetcher, tiles
from tileserver.sources import models
from tileserver.utils import compression, mercator, raster

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    import numpy

    Fetch = Callable[..., Awaitable[models.TilePayload | None]]
    Decode = Callable[[bytes], numpy.ndarray]

logger = logging.getLogger(__name__)

TERRAIN_FORMATS = (models.TileFormat.PNG, models.TileFormat.WEBP)


class ElevationPoint(pydantic.BaseModel):
    """A geographic query point.

    Values must be JSON numbers; strings, booleans and non-finite values are
    rejected.
    """

    lon: float = pydantic.Field(strict=True, allow_inf_nan=False)
    lat: float = pydantic.Field(strict=True, allow_inf_nan=False)
    z: float = pydantic.Field(strict=True, allow_inf_nan=False)


@dataclasses.dataclass(frozen=True)
class ElevationResult:
    """Elevation of one query point.

    Attributes:
        index: Position of the point in the query.
        lon: Longitude reported for the point.
        lat: Latitude reported for the point.
        z: Zoom level the tile was read at.
        x: Tile column.
        y: Tile row.
        elevation: Elevation in meters, None when the tile is absent.
    """

    index: int
    lon: float
    lat: float
    z: int
    x: int
    y: int
    elevation: float | None


@dataclasses.dataclass(frozen=True)
class _Target:
    index: int
    lon: float
    lat: float
    z: int
    x: int
    y: int
    pixel_x: float
    pixel_y: float


def validate_terrain_source(
    descriptor: models.SourceDescriptor,
) -> models.TerrainEncoding:
    """Check that a source can answer elevation queries.

    Returns:
        The source's terrain encoding.

    Raises:
        UnsupportedSourceError: If the source has no terrain encoding or is
            not a PNG/WebP raster source.
    """
    metadata = descriptor.tile_metadata
    if metadata.encoding is None:
        raise errors.UnsupportedSourceError("Missing tileJSON.encoding")
    if metadata.format not in TERRAIN_FORMATS:
        raise errors.UnsupportedSourceError("Invalid data format")
    return metadata.encoding


def decode_elevation(
    encoding: models.TerrainEncoding,
    red: int,
    green: int,
    blue: int,
) -> float:
    """Convert one RGB sample into meters."""
    red, green, blue = int(red), int(green), int(blue)
    if encoding is models.TerrainEncoding.MAPBOX:
        # Terrain-RGB resolution is 0.1 m; rounding drops float noise.
        return round(-10000 + (red * 65536 + green * 256 + blue) * 0.1, 1)
    return red * 256 + green + blue / 256 - 32768


def parse_points(raw: Any) -> list[ElevationPoint]:
    """Validate a raw ``points`` array from a request body.

    Raises:
        InvalidRequestError: If ``raw`` is not a non-empty list or any point
            is malformed; the whole batch is rejected.
    """
    if not isinstance(raw, list) or not raw:
        raise errors.InvalidRequestError("Missing or empty points array")
    points = []
    for index, item in enumerate(raw):
        try:
            points.append(ElevationPoint.model_validate(item))
        except pydantic.ValidationError:
            raise errors.InvalidRequestError(
                f"Invalid point at index {index}"
            ) from None
    return points


def _locate(
    index: int,
    point: ElevationPoint,
    metadata: models.TileMetadata,
) -> _Target:
    if not all(math.isfinite(value) for value in (point.lon, point.lat, point.z)):
        raise errors.InvalidRequestError(f"Invalid point at index {index}")

    zoom = math.floor(min(max(point.z, metadata.min_zoom), metadata.max_zoom))
    lat = min(max(point.lat, -mercator.MAX_LATITUDE), mercator.MAX_LATITUDE)
    tile_x, tile_y, pixel_x, pixel_y = mercator.lonlat_to_tile_pixel(
        point.lon, lat, zoom, metadata.tile_size
    )
    return _Target(
        index=index,
        lon=point.lon,
        lat=point.lat,
        z=zoom,
        x=tile_x,
        y=tile_y,
        pixel_x=pixel_x,
        pixel_y=pixel_y,
    )


async def _sample_tile(
    descriptor: models.SourceDescriptor,
    encoding: models.TerrainEncoding,
    targets: list[_Target],
    fetch: Fetch,
    decode: Decode,
    timeout: float,
) -> dict[int, float | None]:
    first = targets[0]
    payload = await fetch(descriptor, first.z, first.x, first.y, timeout=timeout)
    if payload is None:
        return {target.index: None for target in targets}

    try:
        data = compression.gunzip_if_needed(payload.data)
        pixels = await asyncio.to_thread(decode, data)
    except (raster.RasterDecodeError, OSError, EOFError, zlib.error) as exc:
        logger.error(
            "Corrupt terrain tile %s/%d/%d/%d: %s",
            descriptor.id, first.z, first.x, first.y, exc,
        )
        raise errors.DecodeFailureError() from exc

    height, width = pixels.shape[:2]
    tile_size = descriptor.tile_metadata.tile_size
    samples: dict[int, float | None] = {}
    for target in targets:
        column = min(int(target.pixel_x * width / tile_size), width - 1)
        row = min(int(target.pixel_y * height / tile_size), height - 1)
        red, green, blue = pixels[row, column][:3]
        samples[target.index] = decode_elevation(encoding, red, green, blue)
    return samples


async def _query_targets(
    descriptor: models.SourceDescriptor,
    encoding: models.TerrainEncoding,
    targets: list[_Target],
    fetch: Fetch,
    decode: Decode,
    timeout: float,
) -> list[ElevationResult]:
    groups: dict[tuple[int, int, int], list[_Target]] = {}
    for target in targets:
        groups.setdefault((target.z, target.x, target.y), []).append(target)

    # A failing tile cancels its siblings; the first error is reported.
    try:
        async with asyncio.TaskGroup() as task_group:
            sampled = [
                task_group.create_task(
                    _sample_tile(descriptor, encoding, group, fetch, decode, timeout)
                )
                for group in groups.values()
            ]
    except ExceptionGroup as exc_group:
        raise exc_group.exceptions[0] from None
    elevations: dict[int, float | None] = {}
    for task in sampled:
        elevations.update(task.result())

    return [
        ElevationResult(
            index=target.index,
            lon=target.lon,
            lat=target.lat,
            z=target.z,
            x=target.x,
            y=target.y,
            elevation=elevations[target.index],
        )
        for target in targets
    ]


async def query_elevations(
    descriptor: models.SourceDescriptor,
    points: Sequence[ElevationPoint],
    *,
    timeout: float = fetcher.DEFAULT_TIMEOUT_SECONDS,
    fetch: Fetch = fetcher.fetch_tile,
    decode: Decode = raster.decode_rgb,
) -> list[ElevationResult]:
    """Elevations of many geographic points, in input order.

    Args:
        descriptor: Terrain source to query.
        points: Query points; zooms are clamped into the source's range.
        timeout: Archive read timeout in seconds, per tile.
        fetch: Tile fetcher, ``fetcher.fetch_tile`` by default.
        decode: Image decoder returning (height, width, channels) samples.

    Returns:
        One result per point; ``results[i]`` belongs to ``points[i]``.

    Raises:
        UnsupportedSourceError: If the source cannot serve terrain.
        InvalidRequestError: If any point has a non-finite coordinate.
        DecodeFailureError: If a fetched tile cannot be decoded.
        UpstreamIOError: If an archive read fails.
    """
    encoding = validate_terrain_source(descriptor)
    metadata = descriptor.tile_metadata
    targets = [_locate(index, point, metadata) for index, point in enumerate(points)]
    return await _query_targets(descriptor, encoding, targets, fetch, decode, timeout)


async def query_point(
    descriptor: models.SourceDescriptor,
    lon: float,
    lat: float,
    z: float,
    *,
    timeout: float = fetcher.DEFAULT_TIMEOUT_SECONDS,
    fetch: Fetch = fetcher.fetch_tile,
    decode: Decode = raster.decode_rgb,
) -> ElevationResult:
    """Elevation of one geographic point; a batch of one."""
    point = ElevationPoint.model_construct(lon=lon, lat=lat, z=z)
    [result] = await query_elevations(
        descriptor, [point], timeout=timeout, fetch=fetch, decode=decode
    )
    return result


async def query_tile(
    descriptor: models.SourceDescriptor,
    z: int,
    x: int,
    y: int,
    *,
    timeout: float = fetcher.DEFAULT_TIMEOUT_SECONDS,
    fetch: Fetch = fetcher.fetch_tile,
    decode: Decode = raster.decode_rgb,
) -> ElevationResult:
    """Elevation at the center pixel of tile (z, x, y).

    The reported longitude/latitude is the midpoint of the tile's bounding
    box; it plays no part in pixel addressing.

    Raises:
        UnsupportedSourceError: If the source cannot serve terrain.
        OutOfBoundsError: If the address is outside the source's zoom range
            or the tile grid.
    """
    encoding = validate_terrain_source(descriptor)
    metadata = descriptor.tile_metadata
    tiles.check_tile_bounds(metadata, z, x, y)
    lon, lat = mercator.tile_center(x, y, z)
    center = metadata.tile_size / 2
    target = _Target(
        index=0, lon=lon, lat=lat, z=z, x=x, y=y, pixel_x=center, pixel_y=center
    )
    [result] = await _query_targets(
        descriptor, encoding, [target], fetch, decode, timeout
    )
    return result

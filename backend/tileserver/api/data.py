"""Tile, TileJSON and elevation endpoints for registered data sources.

Every endpoint takes a lease on the current registry generation for the
whole request, so a configuration reload never closes an archive a request
is still reading from.

Example:
    List all sources:
        >>> response = client.get("/data.json")
        >>> [document["name"] for document in response.json()]
        ['openmaptiles', 'terrain']

    Request a vector tile as GeoJSON:
        >>> response = client.get("/data/openmaptiles/14/8580/5738.geojson")
        >>> response.headers["content-encoding"]
        'gzip'

    Query elevations:
        >>> client.get("/data/terrain/elevation?lon=8.54&lat=47.37&z=12")
        >>> client.get("/data/terrain/elevation/12/2145/1434")
        >>> client.post(
        ...     "/data/terrain/elevation",
        ...     json={"points": [{"lon": 8.54, "lat": 47.37, "z": 12}]},
        ... )
"""

from collections.abc import AsyncIterator
from typing import Any

import fastapi
from fastapi import responses

from tileserver.core import config
from tileserver.services import elevation, tilejson, tiles
from tileserver.sources import registry

router = fastapi.APIRouter(tags=["data"])


async def _lease(
    request: fastapi.Request,
) -> AsyncIterator[registry.RegistryGeneration]:
    """Lease the current registry generation for one request.

    Args:
        request: Incoming request; the registry lives on ``app.state``.

    Yields:
        The generation the request reads from.
    """
    source_registry: registry.SourceRegistry = request.app.state.registry
    async with source_registry.lease() as generation:
        yield generation


def _url_context(request: fastapi.Request) -> tilejson.UrlContext:
    return tilejson.UrlContext(
        scheme=request.headers.get("x-forwarded-proto", request.url.scheme),
        host=request.headers.get("host", request.url.netloc),
        forwarded_path=request.headers.get("x-forwarded-path"),
        key=request.query_params.get("key"),
    )


def _elevation_body(result: elevation.ElevationResult) -> dict[str, Any]:
    return {
        "z": result.z,
        "x": result.x,
        "y": result.y,
        "long": result.lon,
        "lat": result.lat,
        "elevation": result.elevation,
    }


@router.get("/data.json")
async def list_sources(
    request: fastapi.Request,
    generation: registry.RegistryGeneration = fastapi.Depends(_lease),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> list[dict[str, Any]]:
    """TileJSON documents of all registered sources.

    Returns:
        One TileJSON 2.0.0 document per source, in registration order.
    """
    context = _url_context(request)
    return [
        tilejson.build_tilejson(
            descriptor, context, settings.public_url, settings.pbf_alias
        )
        for descriptor in generation.all()
    ]


@router.get("/data/{source_id}.json")
async def source_tilejson(
    source_id: str,
    request: fastapi.Request,
    generation: registry.RegistryGeneration = fastapi.Depends(_lease),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """TileJSON document of one source.

    Raises:
        SourceNotFoundError: If the source is not registered (404).
    """
    descriptor = generation.resolve(source_id)
    return tilejson.build_tilejson(
        descriptor, _url_context(request), settings.public_url, settings.pbf_alias
    )


@router.get("/data/{source_id}/{z}/{x}/{y}.{tile_format}")
async def data_tile(
    source_id: str,
    z: int,
    x: int,
    y: int,
    tile_format: str,
    request: fastapi.Request,
    generation: registry.RegistryGeneration = fastapi.Depends(_lease),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> responses.Response:
    """Serve one tile in its native format or as GeoJSON.

    Args:
        source_id: Registered source id.
        z: Zoom level.
        x: Tile column.
        y: Tile row (XYZ scheme).
        tile_format: ``pbf``, ``png``, ``webp``, ``geojson`` or the
            configured pbf alias.
        request: Incoming request.
        generation: Leased registry generation (injected).
        settings: Application settings (injected).

    Returns:
        200 with the gzip compressed tile, 404 or 204 for an absent tile
        depending on the source's missing-tile policy.

    Raises:
        SourceNotFoundError: Unknown source (404).
        InvalidRequestError: Format not servable by the source (400).
        OutOfBoundsError: Address outside the source's range (404).
    """
    result = await tiles.get_tile(
        generation,
        source_id,
        z,
        x,
        y,
        tile_format,
        timeout=settings.fetch_timeout_seconds,
        decorator=request.app.state.data_decorator,
        pbf_alias=settings.pbf_alias,
    )
    match result.outcome:
        case tiles.TileOutcome.NOT_FOUND:
            return responses.JSONResponse(
                status_code=404, content={"detail": "Tile not found"}
            )
        case tiles.TileOutcome.EMPTY:
            return responses.Response(status_code=204)
    return responses.Response(content=result.content, headers=result.headers)


@router.get("/data/{source_id}/elevation/{z}/{x}/{y}")
async def tile_elevation(
    source_id: str,
    z: int,
    x: int,
    y: int,
    generation: registry.RegistryGeneration = fastapi.Depends(_lease),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """Elevation at the center of an integer tile address.

    Raises:
        SourceNotFoundError: Unknown source (404).
        UnsupportedSourceError: Source is not a terrain source (400).
        OutOfBoundsError: Address outside the source's range (404).
    """
    descriptor = generation.resolve(source_id)
    result = await elevation.query_tile(
        descriptor, z, x, y, timeout=settings.fetch_timeout_seconds
    )
    return _elevation_body(result)


@router.get("/data/{source_id}/elevation")
async def point_elevation(
    source_id: str,
    lon: float,
    lat: float,
    z: float,
    generation: registry.RegistryGeneration = fastapi.Depends(_lease),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """Elevation at a longitude/latitude; ``z`` is clamped to the source.

    Raises:
        SourceNotFoundError: Unknown source (404).
        UnsupportedSourceError: Source is not a terrain source (400).
        InvalidRequestError: Non-finite coordinate (400).
    """
    descriptor = generation.resolve(source_id)
    result = await elevation.query_point(
        descriptor, lon, lat, z, timeout=settings.fetch_timeout_seconds
    )
    return _elevation_body(result)


@router.post("/data/{source_id}/elevation")
async def batch_elevation(
    source_id: str,
    body: dict[str, Any] | None = fastapi.Body(default=None),  # noqa: B008
    generation: registry.RegistryGeneration = fastapi.Depends(_lease),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> list[float | None]:
    """Elevations of a batch of points.

    The body is ``{"points": [{"lon": ..., "lat": ..., "z": ...}, ...]}``.
    The answer holds one value per point in input order; points on absent
    tiles answer ``null``.

    Raises:
        SourceNotFoundError: Unknown source (404).
        UnsupportedSourceError: Source is not a terrain source (400).
        InvalidRequestError: Missing, empty or malformed points (400).
    """
    descriptor = generation.resolve(source_id)
    elevation.validate_terrain_source(descriptor)
    points = elevation.parse_points((body or {}).get("points"))
    results = await elevation.query_elevations(
        descriptor, points, timeout=settings.fetch_timeout_seconds
    )
    return [result.elevation for result in results]

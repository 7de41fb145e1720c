"""Tile response pipeline.

``get_tile`` turns a tile request into the bytes and headers to send:

1. validate: the source must exist, the requested format must be the
   source's native format (or ``geojson`` for vector sources), and the tile
   address must lie inside the source's zoom range and the tile grid;
2. fetch the tile through the unified fetcher; an absent tile is answered
   according to the source's missing-tile policy;
3. transcode: gunzip, run the optional data decorator on vector tiles,
   convert to GeoJSON when asked;
4. re-gzip, drop the archive's ETag and compute a fresh one.

The pipeline holds no state between requests and never mutates registry
state.

Example:
    Serve a vector tile as GeoJSON:
        >>> from tileserver.services import tiles
        >>> result = await tiles.get_tile(
        ...     generation, "openmaptiles", 14, 8580, 5738, "geojson"
        ... )
        >>> result.outcome, result.headers["Content-Type"]
        (<TileOutcome.OK: 'ok'>, 'application/json')
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import hashlib
import importlib
import json
import logging
import zlib
from typing import TYPE_CHECKING

from tileserver.core import errors
from tileserver.services import fetcher
from tileserver.sources import models
from tileserver.utils import compression, mercator, vector_tiles

if TYPE_CHECKING:
    from collections.abc import Callable

    from tileserver.sources import registry

    DataDecorator = Callable[[str, bytes, int, int, int], bytes]

logger = logging.getLogger(__name__)

GEOJSON = "geojson"
GEOJSON_MEDIA_TYPE = "application/json"


class TileOutcome(enum.Enum):
    """Kind of answer produced for a tile request."""

    OK = "ok"
    NOT_FOUND = "not_found"
    EMPTY = "empty"


@dataclasses.dataclass(frozen=True)
class TileResult:
    """Answer to a tile request.

    Attributes:
        outcome: ``OK`` with content, or one of the two absent-tile answers.
        content: gzip compressed body for ``OK``.
        headers: Response headers for ``OK``.
    """

    outcome: TileOutcome
    content: bytes = b""
    headers: dict[str, str] = dataclasses.field(default_factory=dict)


def resolve_format(
    requested: str,
    native: models.TileFormat,
    pbf_alias: str | None = None,
) -> str:
    """Check a requested format against a source's native format.

    Args:
        requested: Extension from the request.
        native: Native format of the source.
        pbf_alias: Extension accepted in place of ``pbf``.

    Returns:
        The effective format: the native format value or ``geojson``.

    Raises:
        InvalidRequestError: If the source cannot serve that format.
    """
    if pbf_alias and requested == pbf_alias:
        requested = models.TileFormat.PBF.value
    if requested == native.value:
        return requested
    if requested == GEOJSON and native.is_vector:
        return GEOJSON
    raise errors.InvalidRequestError("Invalid format")


def check_tile_bounds(
    metadata: models.TileMetadata,
    z: int,
    x: int,
    y: int,
) -> None:
    """Reject tile addresses outside the source's range or the tile grid.

    Raises:
        OutOfBoundsError: If ``z`` is outside [min_zoom, max_zoom] or x/y are
            outside [0, 2**z).
    """
    if not metadata.min_zoom <= z <= metadata.max_zoom:
        raise errors.OutOfBoundsError()
    if not mercator.tile_coords_valid(z, x, y):
        raise errors.OutOfBoundsError()


def load_data_decorator(import_path: str) -> DataDecorator:
    """Import a data decorator given as ``"package.module:function"``.

    Raises:
        ImportError: If the module cannot be imported.
        AttributeError: If the module has no such function.
    """
    module_name, _, attribute = import_path.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, attribute or "decorate")


def _etag(content: bytes) -> str:
    return f'"{hashlib.sha1(content, usedforsecurity=False).hexdigest()}"'


async def get_tile(
    generation: registry.RegistryGeneration,
    source_id: str,
    z: int,
    x: int,
    y: int,
    requested_format: str,
    *,
    timeout: float = fetcher.DEFAULT_TIMEOUT_SECONDS,
    decorator: DataDecorator | None = None,
    pbf_alias: str | None = None,
) -> TileResult:
    """Produce the response for one tile request.

    Args:
        generation: Registry generation leased for this request.
        source_id: Requested source.
        z: Zoom level.
        x: Tile column.
        y: Tile row.
        requested_format: Requested extension (``pbf``, ``png``, ``webp``,
            ``geojson`` or the pbf alias).
        timeout: Archive read timeout in seconds.
        decorator: Optional hook ``(source_id, data, z, x, y) -> data`` run
            on uncompressed vector tile bytes.
        pbf_alias: Extension accepted in place of ``pbf``.

    Returns:
        TileResult with gzip content and headers, or an absent-tile outcome.

    Raises:
        SourceNotFoundError: If the source is not registered.
        InvalidRequestError: If the format is not servable by the source.
        OutOfBoundsError: If the tile address is out of range.
        DecodeFailureError: If the archive returned undecodable bytes.
        UpstreamIOError: If the archive read failed.
    """
    descriptor = generation.resolve(source_id)
    native = descriptor.tile_metadata.format
    effective_format = resolve_format(requested_format, native, pbf_alias)
    check_tile_bounds(descriptor.tile_metadata, z, x, y)

    payload = await fetcher.fetch_tile(descriptor, z, x, y, timeout=timeout)
    if payload is None:
        if descriptor.missing_tile_policy is models.MissingTilePolicy.NOT_FOUND:
            return TileResult(TileOutcome.NOT_FOUND)
        return TileResult(TileOutcome.EMPTY)

    try:
        data = await asyncio.to_thread(compression.gunzip_if_needed, payload.data)
    except (OSError, EOFError, zlib.error) as exc:
        logger.error("Corrupt gzip data in %s/%d/%d/%d: %s", source_id, z, x, y, exc)
        raise errors.DecodeFailureError() from exc

    headers = {
        name: value
        for name, value in payload.headers.items()
        if name.lower() != "etag"
    }

    if native.is_vector and decorator is not None:
        data = decorator(source_id, data, z, x, y)

    if effective_format == GEOJSON:
        try:
            collection = await asyncio.to_thread(
                vector_tiles.to_feature_collection, data, z, x, y
            )
        except vector_tiles.VectorTileDecodeError as exc:
            logger.error("Corrupt vector tile %s/%d/%d/%d: %s", source_id, z, x, y, exc)
            raise errors.DecodeFailureError() from exc
        data = json.dumps(collection, separators=(",", ":")).encode("utf-8")
        headers["Content-Type"] = GEOJSON_MEDIA_TYPE
    else:
        headers["Content-Type"] = native.media_type

    content = await asyncio.to_thread(compression.gzip_bytes, data)
    headers["Content-Encoding"] = "gzip"
    headers["ETag"] = _etag(content)
    return TileResult(TileOutcome.OK, content, headers)

"""Data models for registered tile sources.

This module defines the structures every request reads: the closed set of
archive kinds and tile formats, the normalized tile metadata of a source,
and the source descriptor tying an id to its open archive handle and serving
policy. Descriptors are immutable; a configuration reload builds new ones.

Example:
    Describe a terrain source backed by an MBTiles archive:
        >>> from tileserver.sources import models
        >>> metadata = models.TileMetadata(
        ...     format=models.TileFormat.PNG,
        ...     min_zoom=0,
        ...     max_zoom=12,
        ...     bounds=(-180.0, -85.051129, 180.0, 85.051129),
        ...     encoding=models.TerrainEncoding.MAPBOX,
        ...     tile_size=512,
        ... )
        >>> descriptor = models.SourceDescriptor(
        ...     id="terrain",
        ...     container_kind=models.ContainerKind.MBTILES,
        ...     container=archive,
        ...     tile_metadata=metadata,
        ...     missing_tile_policy=models.MissingTilePolicy.NOT_FOUND,
        ... )
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Any

BBox = tuple[float, float, float, float]
Center = tuple[float, float, float]


class ContainerKind(enum.StrEnum):
    """Archive formats a source can be backed by."""

    PMTILES = "pmtiles"
    MBTILES = "mbtiles"


class TileFormat(enum.StrEnum):
    """Native tile formats; the value doubles as the URL extension."""

    PBF = "pbf"
    PNG = "png"
    WEBP = "webp"

    @property
    def media_type(self) -> str:
        return _MEDIA_TYPES[self]

    @property
    def is_vector(self) -> bool:
        return self is TileFormat.PBF


_MEDIA_TYPES = {
    TileFormat.PBF: "application/x-protobuf",
    TileFormat.PNG: "image/png",
    TileFormat.WEBP: "image/webp",
}


class TerrainEncoding(enum.StrEnum):
    """RGB elevation encodings understood by the elevation engine."""

    MAPBOX = "mapbox"
    TERRARIUM = "terrarium"


class MissingTilePolicy(enum.Enum):
    """How an absent tile is answered.

    ``NOT_FOUND`` lets capable clients overzoom from a coarser tile,
    ``EMPTY`` tells them the area is intentionally blank.
    """

    NOT_FOUND = "not_found"
    EMPTY = "empty"


def resolve_missing_tile_policy(
    source_sparse: bool | None,
    global_sparse: bool | None,
    tile_format: TileFormat,
) -> MissingTilePolicy:
    """Pick the missing-tile policy for a source.

    The per-source ``sparse`` flag wins over the global one. Without either,
    vector sources answer empty and raster sources answer not found.

    Args:
        source_sparse: ``sparse`` from the source configuration.
        global_sparse: ``sparse`` from the application settings.
        tile_format: Native format of the source.

    Returns:
        The resolved policy.
    """
    sparse = source_sparse if source_sparse is not None else global_sparse
    if sparse is None:
        sparse = not tile_format.is_vector
    return MissingTilePolicy.NOT_FOUND if sparse else MissingTilePolicy.EMPTY


@dataclasses.dataclass(frozen=True)
class TileMetadata:
    """Normalized metadata of a tile source.

    Attributes:
        format: Native tile format.
        min_zoom: Lowest zoom level served.
        max_zoom: Highest zoom level served.
        bounds: (west, south, east, north) in degrees, if known.
        center: (lon, lat, zoom), derived from ``bounds`` when absent.
        encoding: Terrain encoding; set only for elevation-capable sources.
        tile_size: Side length of a tile in pixels.
        tiles: Host names used when building tile URLs.
        extra: Remaining TileJSON fields (name, attribution, vector_layers,
            configured overrides) published as-is.
    """

    format: TileFormat
    min_zoom: int
    max_zoom: int
    bounds: BBox | None = None
    center: Center | None = None
    encoding: TerrainEncoding | None = None
    tile_size: int = 256
    tiles: tuple[str, ...] = ()
    extra: dict[str, Any] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.min_zoom > self.max_zoom:
            raise ValueError(
                f"min_zoom {self.min_zoom} is greater than max_zoom {self.max_zoom}"
            )
        if self.encoding is not None and self.format.is_vector:
            raise ValueError("terrain encoding requires a raster tile format")


@dataclasses.dataclass(frozen=True)
class TilePayload:
    """Raw tile bytes and the headers the archive reported for them."""

    data: bytes
    headers: dict[str, str] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class SourceDescriptor:
    """A registered tile source.

    Attributes:
        id: Unique source identifier used in URLs.
        container_kind: Which archive format backs the source.
        container: Open archive handle, owned by this descriptor.
        tile_metadata: Normalized metadata.
        missing_tile_policy: Answer for absent tiles.
        public_url: Prefix for externally visible URLs of this source.
    """

    id: str
    container_kind: ContainerKind
    container: Any
    tile_metadata: TileMetadata
    missing_tile_policy: MissingTilePolicy
    public_url: str | None = None

    @property
    def is_terrain(self) -> bool:
        return self.tile_metadata.encoding is not None

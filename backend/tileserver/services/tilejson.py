"""TileJSON metadata normalization and index document building.

Two steps turn an archive's own metadata into the public TileJSON 2.0.0
document of a source:

1. ``build_tile_metadata`` runs once while a source is registered. It merges
   the archive metadata, the source configuration (terrain encoding, tile
   size, domains) and the configured TileJSON overrides into a validated
   ``TileMetadata``. A missing center is derived from the bounds.
2. ``build_tilejson`` runs per request. It adds the externally visible tile
   URL templates, which depend on the request host, proxy headers and the
   configured public URL.

Example:
    Build the index document of a registered source:
        >>> from tileserver.services import tilejson
        >>> context = tilejson.UrlContext(scheme="https", host="tiles.example.com")
        >>> document = tilejson.build_tilejson(descriptor, context)
        >>> document["tiles"]
        ['https://tiles.example.com/data/terrain/{z}/{x}/{y}.png']
"""

from __future__ import annotations

import dataclasses
import logging
import math
import re
import urllib.parse
from typing import TYPE_CHECKING, Any

from tileserver.core import errors
from tileserver.sources import models

if TYPE_CHECKING:
    from tileserver.core import config
    from tileserver.sources import containers

logger = logging.getLogger(__name__)

TILEJSON_VERSION = "2.0.0"
DEFAULT_MIN_ZOOM = 0
DEFAULT_MAX_ZOOM = 22

_NEVER_PUBLISHED = {"filesize", "mtime", "scheme", "tilejson", "tiles"}
_IPV4_HOST = re.compile(r"^([0-9]{1,3}\.){3}[0-9]{1,3}(:[0-9]+)?$")


def derive_center(bounds: models.BBox) -> models.Center:
    """Center of ``bounds`` at a zoom where they fit a 1024 pixel viewport."""
    west, south, east, north = bounds
    span = east - west
    zoom = round(-math.log2(span / 360 / 4)) if span > 0 else 0
    return (west + east) / 2, (south + north) / 2, float(zoom)


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def build_tile_metadata(
    source_id: str,
    info: containers.ContainerInfo,
    source_config: config.DataSourceConfig,
    default_domains: list[str] | None = None,
) -> models.TileMetadata:
    """Normalize archive metadata and configuration into ``TileMetadata``.

    Precedence for every field is: TileJSON override from the configuration,
    then the source configuration, then the archive's own metadata.

    Args:
        source_id: Id of the source being registered.
        info: Metadata reported by the archive.
        source_config: Configuration entry of the source.
        default_domains: Global domains used when the source defines none.

    Returns:
        Validated tile metadata.

    Raises:
        SourceConfigError: If the format is unsupported, the terrain encoding
            is unknown or used with a vector format, or a terrain source has
            no zoom bounds.
    """
    overrides = dict(source_config.tilejson)
    archive_extra = dict(info.extra)

    format_name = overrides.pop("format", None) or info.format
    try:
        tile_format = models.TileFormat(format_name)
    except ValueError:
        raise errors.SourceConfigError(
            f"Source '{source_id}' has unsupported tile format {format_name!r}"
        ) from None

    encoding_name = (
        overrides.pop("encoding", None)
        or source_config.encoding
        or archive_extra.pop("encoding", None)
    )
    archive_extra.pop("encoding", None)
    try:
        encoding = models.TerrainEncoding(encoding_name) if encoding_name else None
    except ValueError:
        raise errors.SourceConfigError(
            f"Source '{source_id}' has unknown terrain encoding {encoding_name!r}"
        ) from None
    if encoding is not None and tile_format.is_vector:
        raise errors.SourceConfigError(
            f"Source '{source_id}' declares terrain encoding on vector tiles"
        )

    min_zoom = _optional_int(overrides.pop("minzoom", info.min_zoom))
    max_zoom = _optional_int(overrides.pop("maxzoom", info.max_zoom))
    if min_zoom is None or max_zoom is None:
        if encoding is not None:
            raise errors.SourceConfigError(
                f"Terrain source '{source_id}' has no minzoom/maxzoom"
            )
        logger.warning(
            "Source '%s' has no zoom range, assuming %d-%d",
            source_id,
            DEFAULT_MIN_ZOOM,
            DEFAULT_MAX_ZOOM,
        )
        min_zoom = DEFAULT_MIN_ZOOM if min_zoom is None else min_zoom
        max_zoom = DEFAULT_MAX_ZOOM if max_zoom is None else max_zoom

    bounds_value = overrides.pop("bounds", None)
    bounds = tuple(bounds_value) if bounds_value else info.bounds
    center_value = overrides.pop("center", None)
    center = tuple(center_value) if center_value else info.center
    if center is None and bounds is not None:
        center = derive_center(bounds)  # type: ignore[arg-type]

    extra: dict[str, Any] = {"name": source_id}
    extra.update(archive_extra)
    extra.update(overrides)
    for key in _NEVER_PUBLISHED:
        extra.pop(key, None)

    try:
        return models.TileMetadata(
            format=tile_format,
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            bounds=bounds,  # type: ignore[arg-type]
            center=center,  # type: ignore[arg-type]
            encoding=encoding,
            tile_size=source_config.tile_size,
            tiles=tuple(source_config.domains or default_domains or ()),
            extra=extra,
        )
    except ValueError as exc:
        raise errors.SourceConfigError(f"Source '{source_id}': {exc}") from exc


@dataclasses.dataclass(frozen=True)
class UrlContext:
    """Parts of the incoming request that shape public tile URLs.

    Attributes:
        scheme: Request scheme, ``http`` or ``https``.
        host: Host (and port) the client used.
        forwarded_path: ``X-Forwarded-Path`` prefix set by a reverse proxy.
        key: API key query parameter to pass through to tile URLs.
    """

    scheme: str
    host: str
    forwarded_path: str | None = None
    key: str | None = None


def _expand_domains(domains: tuple[str, ...], host: str) -> list[str]:
    host_parts = host.split(".")
    relative_usable = len(host_parts) > 1 and not _IPV4_HOST.match(host)
    expanded = []
    for domain in domains:
        if "*" in domain:
            if relative_usable:
                expanded.append(
                    ".".join([domain.replace("*", host_parts[0]), *host_parts[1:]])
                )
        else:
            expanded.append(domain)
    return expanded or [host]


def tile_urls(
    context: UrlContext,
    domains: tuple[str, ...],
    path: str,
    extension: str,
    public_url: str | None = None,
) -> list[str]:
    """Build XYZ URL templates for a tile endpoint.

    Args:
        context: Request derived URL parts.
        domains: Configured host names; ``*`` in a name is replaced by the
            first label of the request host.
        path: Endpoint path without leading slash, e.g. ``data/terrain``.
        extension: Tile extension appended to ``{y}``.
        public_url: Fixed URL prefix; replaces host based URLs when set.

    Returns:
        One URL template per domain, or a single one for ``public_url``.
    """
    query = f"?key={urllib.parse.quote(context.key)}" if context.key else ""
    suffix = f"{path}/{{z}}/{{x}}/{{y}}.{extension}{query}"
    if public_url:
        prefix = public_url if public_url.endswith("/") else f"{public_url}/"
        return [f"{prefix}{suffix}"]

    forwarded = ""
    if context.forwarded_path:
        forwarded = "/" + context.forwarded_path.strip("/")
    return [
        f"{context.scheme}://{domain}{forwarded}/{suffix}"
        for domain in _expand_domains(domains, context.host)
    ]


def build_tilejson(
    descriptor: models.SourceDescriptor,
    context: UrlContext,
    public_url: str | None = None,
    pbf_alias: str | None = None,
) -> dict[str, Any]:
    """Build the public TileJSON document of a source.

    Args:
        descriptor: Registered source.
        context: Request derived URL parts.
        public_url: Global public URL, used when the source sets none.
        pbf_alias: Extension advertised instead of ``pbf`` when configured.

    Returns:
        TileJSON 2.0.0 dictionary.
    """
    metadata = descriptor.tile_metadata
    document: dict[str, Any] = {"tilejson": TILEJSON_VERSION}
    document.update(metadata.extra)
    document.update(
        {
            "format": metadata.format.value,
            "minzoom": metadata.min_zoom,
            "maxzoom": metadata.max_zoom,
        }
    )
    if metadata.bounds is not None:
        document["bounds"] = list(metadata.bounds)
    if metadata.center is not None:
        document["center"] = list(metadata.center)
    if metadata.encoding is not None:
        document["encoding"] = metadata.encoding.value
    if not metadata.format.is_vector:
        document["tileSize"] = metadata.tile_size

    extension = metadata.format.value
    if metadata.format.is_vector and pbf_alias:
        extension = pbf_alias
    document["tiles"] = tile_urls(
        context,
        metadata.tiles,
        f"data/{descriptor.id}",
        extension,
        descriptor.public_url or public_url,
    )
    return document

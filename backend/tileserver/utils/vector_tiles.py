"""Mapbox Vector Tile to GeoJSON conversion.

Decodes a protocol buffer vector tile with ``mapbox_vector_tile`` and
projects every feature from tile-local units to longitude/latitude using the
tile's own (z, x, y) address. All layers end up in one FeatureCollection;
each feature carries its source layer name in ``properties["layer"]``.
Layer order and feature order follow the encoded tile.

Example:
    Convert a tile fetched from an archive:
        >>> from tileserver.utils import vector_tiles
        >>> collection = vector_tiles.to_feature_collection(pbf, 14, 8580, 5738)
        >>> collection["features"][0]["properties"]["layer"]
        'transportation'
"""

from __future__ import annotations

from typing import Any

import mapbox_vector_tile

from tileserver.utils import mercator

DEFAULT_EXTENT = 4096


class VectorTileDecodeError(ValueError):
    """Raised when bytes are not a decodable vector tile."""


def decode_layers(data: bytes) -> dict[str, Any]:
    """Decode a vector tile into its layers, geometry in y-down tile units.

    Raises:
        VectorTileDecodeError: If the bytes are not a valid vector tile.
    """
    try:
        return mapbox_vector_tile.decode(
            data,
            default_options={"y_coord_down": True, "geojson": True},
        )
    except Exception as exc:  # protobuf and geometry errors vary by backend
        raise VectorTileDecodeError(f"cannot decode vector tile: {exc}") from exc


def _project(coordinates: Any, z: int, x: int, y: int, extent: int) -> Any:
    if coordinates and isinstance(coordinates[0], int | float):
        lon, lat = mercator.tile_pixel_to_lonlat(
            x, y, z, coordinates[0], coordinates[1], extent
        )
        return [lon, lat]
    return [_project(part, z, x, y, extent) for part in coordinates]


def to_feature_collection(data: bytes, z: int, x: int, y: int) -> dict[str, Any]:
    """Convert a vector tile into a GeoJSON FeatureCollection.

    Args:
        data: Uncompressed vector tile bytes.
        z: Zoom level of the tile.
        x: Tile column.
        y: Tile row.

    Returns:
        GeoJSON FeatureCollection dictionary.

    Raises:
        VectorTileDecodeError: If the bytes are not a valid vector tile.
    """
    features: list[dict[str, Any]] = []
    for layer_name, layer in decode_layers(data).items():
        extent = layer.get("extent") or DEFAULT_EXTENT
        for feature in layer.get("features", []):
            geometry = feature.get("geometry")
            if not geometry:
                continue
            properties = dict(feature.get("properties") or {})
            properties["layer"] = layer_name
            converted: dict[str, Any] = {
                "type": "Feature",
                "geometry": {
                    "type": geometry["type"],
                    "coordinates": _project(
                        geometry["coordinates"], z, x, y, extent
                    ),
                },
                "properties": properties,
            }
            if feature.get("id") is not None:
                converted["id"] = feature["id"]
            features.append(converted)
    return {"type": "FeatureCollection", "features": features}

"""Tests for the tile response pipeline.

This module exercises tileserver.services.tiles.get_tile end to end against
real MBTiles archives:
    - validation order (source, format, bounds) and the error raised by each,
    - the missing-tile policy (not found vs empty),
    - gzip output with a regenerated ETag,
    - GeoJSON conversion preserving layer and feature order,
    - the data decorator hook and decode failures.
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import json
from typing import TYPE_CHECKING, Any

import pytest
import tile_archives

from tileserver.core import errors
from tileserver.services import tiles
from tileserver.sources import models, registry

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable


class FakeContainer:
    """Container serving a single raw tile at 0/0/0."""

    def __init__(self, data: bytes) -> None:
        self.data = data

    def read_tile(self, z: int, x: int, y: int) -> bytes | None:
        return self.data if (z, x, y) == (0, 0, 0) else None

    def close(self) -> None:
        pass


@pytest.fixture
def generation(
    terrain_source: models.SourceDescriptor,
    vector_source: models.SourceDescriptor,
) -> registry.RegistryGeneration:
    """Generation holding the terrain and vector sources."""
    return registry.SourceRegistry(
        {"terrain": terrain_source, "vector": vector_source}
    ).current


def _fake_generation(data: bytes) -> registry.RegistryGeneration:
    descriptor = models.SourceDescriptor(
        id="fake",
        container_kind=models.ContainerKind.PMTILES,
        container=FakeContainer(data),
        tile_metadata=models.TileMetadata(
            format=models.TileFormat.PBF, min_zoom=0, max_zoom=0
        ),
        missing_tile_policy=models.MissingTilePolicy.EMPTY,
    )
    return registry.SourceRegistry({"fake": descriptor}).current


def _get(
    generation: registry.RegistryGeneration, *args: Any, **kwargs: Any
) -> tiles.TileResult:
    return asyncio.run(tiles.get_tile(generation, *args, **kwargs))


def test_resolve_format() -> None:
    """Test native, GeoJSON and aliased format resolution."""
    assert tiles.resolve_format("pbf", models.TileFormat.PBF) == "pbf"
    assert tiles.resolve_format("geojson", models.TileFormat.PBF) == "geojson"
    assert tiles.resolve_format("mvt", models.TileFormat.PBF, "mvt") == "pbf"
    assert tiles.resolve_format("png", models.TileFormat.PNG) == "png"
    with pytest.raises(errors.InvalidRequestError, match="Invalid format"):
        tiles.resolve_format("geojson", models.TileFormat.PNG)
    with pytest.raises(errors.InvalidRequestError):
        tiles.resolve_format("png", models.TileFormat.WEBP)


def test_vector_tile_is_gzipped_with_new_etag(
    generation: registry.RegistryGeneration,
) -> None:
    """Test that vector tiles are served gzip compressed with a fresh ETag."""
    result = _get(generation, "vector", 0, 0, 0, "pbf")
    assert result.outcome is tiles.TileOutcome.OK
    assert gzip.decompress(result.content) == tile_archives.vector_tile()
    assert result.headers["Content-Type"] == "application/x-protobuf"
    assert result.headers["Content-Encoding"] == "gzip"
    expected = hashlib.sha1(result.content, usedforsecurity=False).hexdigest()
    assert result.headers["ETag"] == f'"{expected}"'


def test_raster_tile_is_gzipped(generation: registry.RegistryGeneration) -> None:
    """Test that raster tiles are passed through and compressed."""
    result = _get(generation, "terrain", 1, 1, 1, "png")
    assert result.outcome is tiles.TileOutcome.OK
    assert gzip.decompress(result.content).startswith(b"\x89PNG")
    assert result.headers["Content-Type"] == "image/png"


def test_output_is_deterministic(generation: registry.RegistryGeneration) -> None:
    """Test that the same tile always yields the same bytes and ETag."""
    first = _get(generation, "vector", 0, 0, 0, "pbf")
    second = _get(generation, "vector", 0, 0, 0, "pbf")
    assert first.content == second.content
    assert first.headers["ETag"] == second.headers["ETag"]


def test_geojson_conversion(generation: registry.RegistryGeneration) -> None:
    """Test GeoJSON output: layer tags, order and projected coordinates."""
    result = _get(generation, "vector", 0, 0, 0, "geojson")
    assert result.headers["Content-Type"] == "application/json"
    collection = json.loads(gzip.decompress(result.content))
    assert collection["type"] == "FeatureCollection"
    features = collection["features"]
    assert [f["properties"]["layer"] for f in features] == ["water", "water", "roads"]
    assert [f["id"] for f in features] == [1, 2, 3]
    assert features[0]["properties"]["kind"] == "lake"
    lon, lat = features[0]["geometry"]["coordinates"]
    assert lon == pytest.approx(0.0)
    assert lat == pytest.approx(0.0, abs=1e-9)
    lon, lat = features[1]["geometry"]["coordinates"]
    assert lon == pytest.approx(-90.0)
    assert lat == pytest.approx(66.51326, abs=1e-4)
    assert features[2]["geometry"]["type"] == "LineString"
    assert features[2]["geometry"]["coordinates"][0][0] == pytest.approx(-180.0)
    assert features[2]["geometry"]["coordinates"][1][0] == pytest.approx(180.0)


def test_pbf_alias(generation: registry.RegistryGeneration) -> None:
    """Test that the configured alias serves the native vector tile."""
    result = _get(generation, "vector", 0, 0, 0, "mvt", pbf_alias="mvt")
    assert result.outcome is tiles.TileOutcome.OK
    assert result.headers["Content-Type"] == "application/x-protobuf"


def test_unknown_source(generation: registry.RegistryGeneration) -> None:
    """Test that unknown sources are rejected first."""
    with pytest.raises(errors.SourceNotFoundError):
        _get(generation, "nope", 99, 0, 0, "jpg")


def test_format_checked_before_bounds(generation: registry.RegistryGeneration) -> None:
    """Test that an invalid format wins over an out of range address."""
    with pytest.raises(errors.InvalidRequestError):
        _get(generation, "terrain", 99, 0, 0, "geojson")


@pytest.mark.parametrize(
    ("z", "x", "y"), [(3, 0, 0), (1, 2, 0), (1, 0, 2), (1, 0, -1)]
)
def test_out_of_bounds(
    generation: registry.RegistryGeneration, z: int, x: int, y: int
) -> None:
    """Test addresses outside the zoom range or the tile grid."""
    with pytest.raises(errors.OutOfBoundsError, match="Out of bounds"):
        _get(generation, "vector", z, x, y, "pbf")


@pytest.fixture
def zoomed_generation(
    tmp_path: pathlib.Path,
    open_descriptor: Callable[..., models.SourceDescriptor],
) -> registry.RegistryGeneration:
    """Generation with a vector source limited to zoom 1-2."""
    tile = gzip.compress(tile_archives.vector_tile())
    tile_archives.write_mbtiles(
        tmp_path / "zoomed.mbtiles",
        {"name": "zoomed", "format": "pbf", "minzoom": "1", "maxzoom": "2"},
        {(1, 0, 0): tile, (2, 3, 3): tile},
    )
    descriptor = open_descriptor("zoomed", mbtiles="zoomed.mbtiles")
    return registry.SourceRegistry({"zoomed": descriptor}).current


@pytest.mark.parametrize(
    ("z", "x", "y", "accepted"),
    [
        (1, 0, 0, True),
        (0, 0, 0, False),
        (2, 3, 3, True),
        (3, 0, 0, False),
        (1, 0, 2, False),
        (2, 4, 0, False),
    ],
)
def test_zoom_range_boundaries(
    zoomed_generation: registry.RegistryGeneration,
    z: int,
    x: int,
    y: int,
    accepted: bool,
) -> None:
    """Test that min and max zoom are inclusive and the grid is exclusive."""
    if not accepted:
        with pytest.raises(errors.OutOfBoundsError):
            _get(zoomed_generation, "zoomed", z, x, y, "pbf")
        return
    result = _get(zoomed_generation, "zoomed", z, x, y, "pbf")
    assert result.outcome is tiles.TileOutcome.OK
    assert gzip.decompress(result.content) == tile_archives.vector_tile()


def test_absent_vector_tile_is_empty(generation: registry.RegistryGeneration) -> None:
    """Test that vector sources answer absent tiles as empty by default."""
    result = _get(generation, "vector", 1, 0, 0, "pbf")
    assert result.outcome is tiles.TileOutcome.EMPTY
    assert result.content == b""


def test_absent_tile_not_found_when_sparse(
    vector_mbtiles: pathlib.Path,
    open_descriptor: Callable[..., models.SourceDescriptor],
) -> None:
    """Test that sparse sources answer absent tiles as not found."""
    sparse = open_descriptor("sparse", mbtiles=vector_mbtiles.name, sparse=True)
    generation = registry.SourceRegistry({"sparse": sparse}).current
    result = _get(generation, "sparse", 2, 1, 1, "geojson")
    assert result.outcome is tiles.TileOutcome.NOT_FOUND


def test_data_decorator(generation: registry.RegistryGeneration) -> None:
    """Test that the decorator sees uncompressed vector bytes."""
    calls: list[tuple[str, int, int, int]] = []

    def decorate(source_id: str, data: bytes, z: int, x: int, y: int) -> bytes:
        calls.append((source_id, z, x, y))
        assert data == tile_archives.vector_tile()
        return b"decorated"

    result = _get(generation, "vector", 0, 0, 0, "pbf", decorator=decorate)
    assert gzip.decompress(result.content) == b"decorated"
    assert calls == [("vector", 0, 0, 0)]

    _get(generation, "terrain", 0, 0, 0, "png", decorator=decorate)
    assert len(calls) == 1


def test_load_data_decorator() -> None:
    """Test importing a decorator from a module:function path."""
    assert tiles.load_data_decorator("json:dumps") is json.dumps


def test_corrupt_gzip_is_decode_failure() -> None:
    """Test that broken gzip data is reported as a decode failure."""
    with pytest.raises(errors.DecodeFailureError) as exc_info:
        _get(_fake_generation(b"\x1f\x8bgarbage"), "fake", 0, 0, 0, "pbf")
    assert exc_info.value.status_code == 500


def test_corrupt_vector_tile_is_decode_failure() -> None:
    """Test that undecodable vector tiles fail GeoJSON conversion."""
    with pytest.raises(errors.DecodeFailureError):
        _get(_fake_generation(b"\x00\x00\x00"), "fake", 0, 0, 0, "geojson")

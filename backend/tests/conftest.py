"""Shared fixtures building real tile archives for the test suite.

See Also:
    - backend/tests/tile_archives.py for the archive writers.
"""

from __future__ import annotations

import gzip
import json
from typing import TYPE_CHECKING, Any

import pytest
import tile_archives

from tileserver.core import config
from tileserver.sources import registry

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable, Iterator

    from tileserver.sources import models


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    """Settings rooted in ``tmp_path`` and isolated from any .env file."""
    return config.Settings(
        _env_file=None,  # type: ignore[call-arg]
        config_file=tmp_path / "config.json",
        mbtiles_dir=tmp_path,
        pmtiles_dir=tmp_path,
    )


@pytest.fixture
def terrain_mbtiles(tmp_path: pathlib.Path) -> pathlib.Path:
    """Mapbox encoded 512 pixel terrain pyramid, zoom 0-1."""
    return tile_archives.write_mbtiles(
        tmp_path / "terrain.mbtiles",
        {
            "name": "terrain",
            "format": "png",
            "minzoom": "0",
            "maxzoom": "1",
            "bounds": "-180,-85.0511,180,85.0511",
        },
        {
            address: tile_archives.solid_png(
                tile_archives.mapbox_rgb(elevation), 512
            )
            for address, elevation in tile_archives.TERRAIN_ELEVATIONS.items()
        },
    )


@pytest.fixture
def vector_mbtiles(tmp_path: pathlib.Path) -> pathlib.Path:
    """Vector archive with a gzip compressed tile at 0/0/0 only."""
    return tile_archives.write_mbtiles(
        tmp_path / "vector.mbtiles",
        {
            "name": "Vector",
            "format": "pbf",
            "minzoom": "0",
            "maxzoom": "2",
            "bounds": "-180,-85,180,85",
            "attribution": "test data",
            "json": json.dumps(
                {"vector_layers": [{"id": "water"}, {"id": "roads"}]}
            ),
        },
        {(0, 0, 0): gzip.compress(tile_archives.vector_tile())},
    )


@pytest.fixture
def open_descriptor(
    settings: config.Settings,
) -> Iterator[Callable[..., models.SourceDescriptor]]:
    """Factory opening sources; archives are closed at teardown."""
    opened: list[models.SourceDescriptor] = []

    def _open(source_id: str, **source_config: Any) -> models.SourceDescriptor:
        descriptor = registry.open_source(
            source_id, config.DataSourceConfig(**source_config), settings
        )
        opened.append(descriptor)
        return descriptor

    yield _open
    for descriptor in opened:
        descriptor.container.close()


@pytest.fixture
def terrain_source(
    terrain_mbtiles: pathlib.Path,
    open_descriptor: Callable[..., models.SourceDescriptor],
) -> models.SourceDescriptor:
    """Registered terrain source backed by ``terrain_mbtiles``."""
    return open_descriptor(
        "terrain", mbtiles=terrain_mbtiles.name, encoding="mapbox", tile_size=512
    )


@pytest.fixture
def vector_source(
    vector_mbtiles: pathlib.Path,
    open_descriptor: Callable[..., models.SourceDescriptor],
) -> models.SourceDescriptor:
    """Registered vector source backed by ``vector_mbtiles``."""
    return open_descriptor("vector", mbtiles=vector_mbtiles.name)

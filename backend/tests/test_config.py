"""Tests for application settings and data source configuration.

This module contains unit tests for the Settings Pydantic model, the data
source configuration models and the configuration file loader in
tileserver.core.config. It ensures that default values, environment
overrides, archive validation and get_settings caching work as expected.

All tests are safe to run in isolation. Temporary directories are used
to verify filesystem interactions where needed.
"""

from __future__ import annotations

import json
import pathlib

import pydantic
import pytest

from tileserver.core import config


def test_settings_defaults() -> None:
    """Test that Settings has expected default values."""
    settings = config.Settings(_env_file=None)  # type: ignore[call-arg]
    assert settings.config_file == pathlib.Path("config.json")
    assert settings.sparse is None
    assert settings.domains == []
    assert settings.allow_origins == ["*"]
    assert settings.fetch_timeout_seconds == 10.0
    assert settings.data_decorator is None


def test_settings_environment_override(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that environment variables override defaults."""
    monkeypatch.setenv("SPARSE", "false")
    monkeypatch.setenv("FETCH_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("PBF_ALIAS", "mvt")
    settings = config.Settings(_env_file=None)  # type: ignore[call-arg]
    assert settings.sparse is False
    assert settings.fetch_timeout_seconds == 2.5
    assert settings.pbf_alias == "mvt"


def test_get_settings_cached() -> None:
    """Test that get_settings returns cached instance."""
    config.get_settings.cache_clear()
    settings1 = config.get_settings()
    settings2 = config.get_settings()
    assert settings1 is settings2
    config.get_settings.cache_clear()


def test_data_source_requires_exactly_one_archive() -> None:
    """Test that a source must name exactly one of mbtiles and pmtiles."""
    with pytest.raises(pydantic.ValidationError):
        config.DataSourceConfig()
    with pytest.raises(pydantic.ValidationError):
        config.DataSourceConfig(mbtiles="a.mbtiles", pmtiles="a.pmtiles")
    source = config.DataSourceConfig(pmtiles="https://example.com/a.pmtiles")
    assert source.mbtiles is None
    assert source.tile_size == 256


def test_data_source_rejects_unknown_encoding_and_tile_size() -> None:
    """Test that encoding and tile_size are restricted to known values."""
    with pytest.raises(pydantic.ValidationError):
        config.DataSourceConfig(mbtiles="a.mbtiles", encoding="lerc")
    with pytest.raises(pydantic.ValidationError):
        config.DataSourceConfig(mbtiles="a.mbtiles", tile_size=300)


def test_data_source_rejects_unknown_keys() -> None:
    """Test that typos in source entries are reported."""
    with pytest.raises(pydantic.ValidationError):
        config.DataSourceConfig(mbtiles="a.mbtiles", encodnig="mapbox")


def test_load_sources_config_missing_file(tmp_path: pathlib.Path) -> None:
    """Test that a missing configuration file yields no sources."""
    sources = config.load_sources_config(tmp_path / "absent.json")
    assert sources.data == {}


def test_load_sources_config_reads_file(tmp_path: pathlib.Path) -> None:
    """Test that the configuration file is parsed into source entries."""
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "data": {
                    "osm": {"mbtiles": "osm.mbtiles", "sparse": False},
                    "terrain": {
                        "pmtiles": "terrain.pmtiles",
                        "encoding": "terrarium",
                        "tile_size": 512,
                        "tilejson": {"attribution": "DEM"},
                    },
                }
            }
        ),
        encoding="utf-8",
    )
    sources = config.load_sources_config(path)
    assert list(sources.data) == ["osm", "terrain"]
    assert sources.data["osm"].sparse is False
    assert sources.data["terrain"].encoding == "terrarium"
    assert sources.data["terrain"].tile_size == 512
    assert sources.data["terrain"].tilejson == {"attribution": "DEM"}


def test_load_sources_config_invalid_file(tmp_path: pathlib.Path) -> None:
    """Test that a malformed configuration file raises a validation error."""
    path = tmp_path / "config.json"
    path.write_text('{"data": {"bad": {}}}', encoding="utf-8")
    with pytest.raises(pydantic.ValidationError):
        config.load_sources_config(path)

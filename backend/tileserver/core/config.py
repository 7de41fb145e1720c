"""Application settings and data source configuration.

This module provides Pydantic-based settings management that loads runtime
options from environment variables or a .env file, and the pydantic models
describing the JSON data source configuration file.

Example:
    Settings can be accessed via the cached get_settings() function:
        >>> from tileserver.core.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.config_file)

    Environment variables can override defaults:
        >>> CONFIG_FILE=/etc/tileserver/config.json
        >>> MBTILES_DIR=/data/mbtiles
        >>> SPARSE=true
        >>> FETCH_TIMEOUT_SECONDS=5

    A data source configuration file looks like:
        {
          "data": {
            "openmaptiles": {"mbtiles": "zurich.mbtiles"},
            "terrain": {
              "pmtiles": "https://example.com/terrain.pmtiles",
              "encoding": "mapbox",
              "tile_size": 512
            }
          }
        }
"""

from __future__ import annotations

import functools
import pathlib
from typing import Any, Literal

import pydantic
import pydantic_settings


class Settings(pydantic_settings.BaseSettings):
    """Runtime configuration pulled from environment variables or defaults.

    Attributes:
        config_file: JSON file declaring the data sources to serve.
        mbtiles_dir: Directory relative MBTiles paths are resolved against.
        pmtiles_dir: Directory relative PMTiles paths are resolved against.
        public_url: Prefix for externally visible tile URLs. When unset,
            URLs are built from the incoming request.
        sparse: Global missing-tile policy. ``True`` answers 404 for absent
            tiles (clients may overzoom), ``False`` answers 204. ``None``
            defers to the tile format.
        pbf_alias: Extra extension accepted in place of ``pbf``.
        domains: Host names used when building tile URLs.
        allow_origins: List of allowed CORS origins (["*"] allows all).
        fetch_timeout_seconds: Upper bound for a single archive read.
        log_level: Root log level.
        data_decorator: Optional ``module:function`` import path of a hook
            called as ``hook(source_id, data, z, x, y)`` on vector tile bytes.
    """

    config_file: pathlib.Path = pathlib.Path("config.json")
    mbtiles_dir: pathlib.Path = pathlib.Path("data")
    pmtiles_dir: pathlib.Path = pathlib.Path("data")
    public_url: str | None = None
    sparse: bool | None = None
    pbf_alias: str | None = None
    domains: list[str] = []
    allow_origins: list[str] = ["*"]
    fetch_timeout_seconds: float = 10.0
    log_level: str = "INFO"
    data_decorator: str | None = None

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


class DataSourceConfig(pydantic.BaseModel):
    """One entry of the ``data`` section of the configuration file.

    Exactly one of ``mbtiles`` and ``pmtiles`` must be given. PMTiles
    archives may be local paths or http(s) URLs; MBTiles must be local.
    """

    mbtiles: str | None = None
    pmtiles: str | None = None
    encoding: Literal["mapbox", "terrarium"] | None = None
    tile_size: Literal[256, 512] = 256
    sparse: bool | None = None
    public_url: str | None = None
    domains: list[str] | None = None
    tilejson: dict[str, Any] = {}

    model_config = pydantic.ConfigDict(extra="forbid")

    @pydantic.model_validator(mode="after")
    def _one_archive(self) -> DataSourceConfig:
        if (self.mbtiles is None) == (self.pmtiles is None):
            raise ValueError("exactly one of 'mbtiles' or 'pmtiles' is required")
        return self


class SourcesConfig(pydantic.BaseModel):
    """Top level of the data source configuration file."""

    data: dict[str, DataSourceConfig] = {}


def load_sources_config(path: pathlib.Path) -> SourcesConfig:
    """Read and validate a data source configuration file.

    Args:
        path: JSON file to read.

    Returns:
        Validated configuration. A missing file yields an empty
        configuration so the server can start without sources.

    Raises:
        pydantic.ValidationError: If the file content does not match the
            expected schema.
    """
    if not path.exists():
        return SourcesConfig()
    return SourcesConfig.model_validate_json(path.read_text(encoding="utf-8"))


@functools.lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded from environment variables or .env file and cached
    for the lifetime of the application. Subsequent calls return the same
    cached instance.

    Returns:
        Settings instance with all configuration values populated.
    """
    return Settings()

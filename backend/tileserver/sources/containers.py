"""Read-only adapters over MBTiles and PMTiles archives.

Both adapters expose the same two capabilities: ``info()`` returns the
archive's own metadata (zoom range, bounds, tile format, ...) and
``read_tile(z, x, y)`` returns raw tile bytes or ``None`` when the archive
has no such tile. Both calls block; the tile fetcher runs them in worker
threads.

MBTiles archives are SQLite databases read with the standard library
driver; rows use the TMS scheme, so the y axis is flipped on lookup.
PMTiles archives are read with the ``pmtiles`` package, either from a
memory-mapped local file or with HTTP range requests through httpx.

Example:
    Open an archive and read a tile:
        >>> from tileserver.sources import containers
        >>> archive = containers.MBTilesArchive(pathlib.Path("zurich.mbtiles"))
        >>> info = archive.info()
        >>> data = archive.read_tile(14, 8580, 5738)
        >>> archive.close()
"""

from __future__ import annotations

import dataclasses
import email.utils
import json
import logging
import pathlib
import sqlite3
import threading
import urllib.parse
from typing import Any

import httpx
from pmtiles import reader as pmtiles_reader
from pmtiles import tile as pmtiles_tile

from tileserver.sources import models

logger = logging.getLogger(__name__)

_PMTILES_FORMATS = {
    pmtiles_tile.TileType.MVT: "pbf",
    pmtiles_tile.TileType.PNG: "png",
    pmtiles_tile.TileType.JPEG: "jpg",
    pmtiles_tile.TileType.WEBP: "webp",
    pmtiles_tile.TileType.AVIF: "avif",
}

# Keys of the MBTiles metadata table that are not copied into TileJSON.
_MBTILES_INTERNAL_KEYS = {
    "format",
    "minzoom",
    "maxzoom",
    "bounds",
    "center",
    "json",
    "scheme",
    "filesize",
    "mtime",
}


@dataclasses.dataclass(frozen=True)
class ContainerInfo:
    """Metadata an archive reports about itself.

    ``format`` is the archive's own format string and has not been checked
    against the formats the server supports yet.
    """

    format: str | None
    min_zoom: int | None
    max_zoom: int | None
    bounds: models.BBox | None = None
    center: models.Center | None = None
    extra: dict[str, Any] = dataclasses.field(default_factory=dict)


def is_remote_url(location: str) -> bool:
    """Return True for http(s) URLs."""
    return urllib.parse.urlsplit(location).scheme in {"http", "https"}


def _parse_floats(value: str | None, count: int) -> tuple[float, ...] | None:
    if not value:
        return None
    try:
        numbers = tuple(float(part) for part in value.split(","))
    except ValueError:
        return None
    return numbers if len(numbers) == count else None


class MBTilesArchive:
    """An MBTiles (SQLite) archive opened read-only."""

    def __init__(self, path: pathlib.Path) -> None:
        self.path = path.resolve()
        self._conn = sqlite3.connect(
            f"{self.path.as_uri()}?mode=ro",
            uri=True,
            check_same_thread=False,
        )
        self._lock = threading.Lock()
        self.mtime = self.path.stat().st_mtime
        self.last_modified = email.utils.formatdate(self.mtime, usegmt=True)

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def info(self) -> ContainerInfo:
        """Read the ``metadata`` table.

        When ``minzoom``/``maxzoom`` are missing from the metadata they are
        computed from the ``tiles`` table.
        """
        rows = dict(self._query("SELECT name, value FROM metadata"))
        extra: dict[str, Any] = {
            name: value
            for name, value in rows.items()
            if name not in _MBTILES_INTERNAL_KEYS
        }
        if rows.get("json"):
            try:
                extra.update(json.loads(rows["json"]))
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed 'json' metadata in %s", self.path)

        min_zoom = int(rows["minzoom"]) if rows.get("minzoom") else None
        max_zoom = int(rows["maxzoom"]) if rows.get("maxzoom") else None
        if min_zoom is None or max_zoom is None:
            [(lowest, highest)] = self._query(
                "SELECT MIN(zoom_level), MAX(zoom_level) FROM tiles"
            )
            min_zoom = lowest if min_zoom is None else min_zoom
            max_zoom = highest if max_zoom is None else max_zoom

        return ContainerInfo(
            format=rows.get("format"),
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            bounds=_parse_floats(rows.get("bounds"), 4),  # type: ignore[arg-type]
            center=_parse_floats(rows.get("center"), 3),  # type: ignore[arg-type]
            extra=extra,
        )

    def read_tile(self, z: int, x: int, y: int) -> bytes | None:
        """Return the tile at XYZ address (z, x, y), or None if absent."""
        tms_y = (1 << z) - 1 - y
        rows = self._query(
            "SELECT tile_data FROM tiles "
            "WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?",
            (z, x, tms_y),
        )
        if not rows or rows[0][0] is None:
            return None
        return bytes(rows[0][0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class PMTilesArchive:
    """A PMTiles archive, local (memory-mapped) or remote (HTTP ranges)."""

    def __init__(self, location: str, timeout: float = 10.0) -> None:
        self.location = location
        self._file = None
        self._client: httpx.Client | None = None
        if is_remote_url(location):
            self._client = httpx.Client(timeout=timeout, follow_redirects=True)
            self._reader = pmtiles_reader.Reader(self._read_range)
        else:
            self._file = open(location, "rb")  # noqa: SIM115
            self._reader = pmtiles_reader.Reader(
                pmtiles_reader.MmapSource(self._file)
            )

    def _read_range(self, offset: int, length: int) -> bytes:
        assert self._client is not None
        response = self._client.get(
            self.location,
            headers={"Range": f"bytes={offset}-{offset + length - 1}"},
        )
        response.raise_for_status()
        return response.content

    def info(self) -> ContainerInfo:
        """Read the archive header and JSON metadata."""
        header = self._reader.header()
        metadata = self._reader.metadata() or {}
        extra = {
            key: value
            for key, value in metadata.items()
            if key not in {"format", "minzoom", "maxzoom", "bounds", "center"}
        }
        bounds = (
            header["min_lon_e7"] / 1e7,
            header["min_lat_e7"] / 1e7,
            header["max_lon_e7"] / 1e7,
            header["max_lat_e7"] / 1e7,
        )
        center = (
            header["center_lon_e7"] / 1e7,
            header["center_lat_e7"] / 1e7,
            float(header["center_zoom"]),
        )
        return ContainerInfo(
            format=_PMTILES_FORMATS.get(header["tile_type"]),
            min_zoom=header["min_zoom"],
            max_zoom=header["max_zoom"],
            bounds=bounds,
            center=center,
            extra=extra,
        )

    def read_tile(self, z: int, x: int, y: int) -> bytes | None:
        """Return the tile at XYZ address (z, x, y), or None if absent."""
        data = self._reader.get(z, x, y)
        return bytes(data) if data else None

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        if self._file is not None:
            self._file.close()

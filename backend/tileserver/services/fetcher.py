"""Unified tile fetching across archive formats.

``fetch_tile`` is the only place that knows which archive format backs a
source. It runs the blocking archive read in a worker thread, bounds it with
a timeout and normalizes the result:

- the tile exists: ``TilePayload`` with the archive's bytes and headers,
- the archive has no such tile: ``None``,
- the read failed or timed out: ``UpstreamIOError`` /
  ``UpstreamTimeoutError``, never ``None``.

Cancelling the awaiting task (client disconnect, request timeout) abandons
the read; the worker thread finishes on its own and the shared archive
handle stays usable for other requests.

Example:
    Fetch a tile from a registered source:
        >>> from tileserver.services import fetcher
        >>> payload = await fetcher.fetch_tile(descriptor, 0, 0, 0, timeout=5)
        >>> if payload is None:
        ...     print("tile absent")
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import TYPE_CHECKING

import httpx

from tileserver.core import errors
from tileserver.sources import models

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def _mbtiles_headers(
    descriptor: models.SourceDescriptor,
    data: bytes,
) -> dict[str, str]:
    container = descriptor.container
    return {
        "Content-Type": descriptor.tile_metadata.format.media_type,
        "Last-Modified": container.last_modified,
        "ETag": f'"{len(data):x}-{int(container.mtime):x}"',
    }


def _pmtiles_headers(
    descriptor: models.SourceDescriptor,
    data: bytes,
) -> dict[str, str]:
    return {"Content-Type": descriptor.tile_metadata.format.media_type}


async def fetch_tile(
    descriptor: models.SourceDescriptor,
    z: int,
    x: int,
    y: int,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> models.TilePayload | None:
    """Read one tile from the archive backing ``descriptor``.

    Args:
        descriptor: Source to read from.
        z: Zoom level.
        x: Tile column.
        y: Tile row (XYZ scheme, north at the top).
        timeout: Seconds before the read counts as failed.

    Returns:
        The tile payload, or None when the archive has no such tile.

    Raises:
        UpstreamTimeoutError: If the read exceeded ``timeout``.
        UpstreamIOError: If the archive could not be read.
    """
    headers_for: Callable[[models.SourceDescriptor, bytes], dict[str, str]]
    match descriptor.container_kind:
        case models.ContainerKind.MBTILES:
            headers_for = _mbtiles_headers
        case models.ContainerKind.PMTILES:
            headers_for = _pmtiles_headers

    try:
        data = await asyncio.wait_for(
            asyncio.to_thread(descriptor.container.read_tile, z, x, y),
            timeout=timeout,
        )
    except TimeoutError as exc:
        logger.warning(
            "Timed out reading %s/%d/%d/%d after %.1fs",
            descriptor.id, z, x, y, timeout,
        )
        raise errors.UpstreamTimeoutError() from exc
    except httpx.TimeoutException as exc:
        logger.warning(
            "Remote archive timed out for %s/%d/%d/%d", descriptor.id, z, x, y
        )
        raise errors.UpstreamTimeoutError() from exc
    except (OSError, sqlite3.Error, httpx.HTTPError) as exc:
        logger.error(
            "Failed reading %s/%d/%d/%d: %s", descriptor.id, z, x, y, exc
        )
        raise errors.UpstreamIOError() from exc

    if data is None:
        return None
    return models.TilePayload(data=data, headers=headers_for(descriptor, data))

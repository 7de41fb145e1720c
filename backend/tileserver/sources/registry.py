"""Source registry: opening configured archives and serving generations.

Sources are opened once at startup (and again on reload) into an immutable
``RegistryGeneration``, a mapping from source id to ``SourceDescriptor``.
Requests take a lease on the current generation for their whole lifetime.
Replacing the generation never touches descriptors in place: the old
generation is retired, and its archive handles are closed only after the
last request holding a lease on it has finished.

Example:
    Build a registry from configuration and resolve a source:
        >>> from tileserver.core import config
        >>> from tileserver.sources import registry
        >>> settings = config.get_settings()
        >>> sources = registry.open_sources(
        ...     config.load_sources_config(settings.config_file), settings
        ... )
        >>> source_registry = registry.SourceRegistry(sources)
        >>> async with source_registry.lease() as generation:
        ...     descriptor = generation.resolve("terrain")
"""

from __future__ import annotations

import contextlib
import logging
import pathlib
import types
from typing import TYPE_CHECKING

from tileserver.core import errors
from tileserver.services import tilejson
from tileserver.sources import containers, models

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping

    from tileserver.core import config

logger = logging.getLogger(__name__)


class RegistryGeneration:
    """An immutable set of sources valid for one configuration load."""

    def __init__(
        self,
        number: int,
        sources: Mapping[str, models.SourceDescriptor],
    ) -> None:
        self.number = number
        self._sources = types.MappingProxyType(dict(sources))
        self._leases = 0
        self._retired = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_leases(self) -> int:
        return self._leases

    def resolve(self, source_id: str) -> models.SourceDescriptor:
        """Return the descriptor registered under ``source_id``.

        Raises:
            SourceNotFoundError: If no source has that id.
        """
        descriptor = self._sources.get(source_id)
        if descriptor is None:
            raise errors.SourceNotFoundError()
        return descriptor

    def all(self) -> Iterable[models.SourceDescriptor]:
        return self._sources.values()

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._sources

    def __len__(self) -> int:
        return len(self._sources)

    def _acquire(self) -> None:
        self._leases += 1

    def _release(self) -> None:
        self._leases -= 1
        if self._retired and self._leases == 0:
            self._close()

    def _retire(self) -> None:
        self._retired = True
        if self._leases == 0:
            self._close()

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for descriptor in self._sources.values():
            try:
                descriptor.container.close()
            except Exception:
                logger.exception(
                    "Failed to close archive of source '%s'", descriptor.id
                )
        logger.info(
            "Released generation %d (%d sources)", self.number, len(self._sources)
        )


class SourceRegistry:
    """Holder of the current ``RegistryGeneration``."""

    def __init__(
        self,
        sources: Mapping[str, models.SourceDescriptor] | None = None,
    ) -> None:
        self._generation = RegistryGeneration(1, sources or {})

    @property
    def current(self) -> RegistryGeneration:
        return self._generation

    @contextlib.asynccontextmanager
    async def lease(self) -> AsyncIterator[RegistryGeneration]:
        """Hold the current generation open for the duration of a request."""
        generation = self._generation
        generation._acquire()
        try:
            yield generation
        finally:
            generation._release()

    def replace(
        self,
        sources: Mapping[str, models.SourceDescriptor],
    ) -> RegistryGeneration:
        """Install a new generation and retire the previous one.

        Requests already holding a lease keep using the previous generation
        until they finish; its archives are closed after that.

        Args:
            sources: Descriptors of the new generation.

        Returns:
            The newly installed generation.
        """
        previous = self._generation
        self._generation = RegistryGeneration(previous.number + 1, sources)
        logger.info(
            "Installed generation %d with %d sources",
            self._generation.number,
            len(self._generation),
        )
        previous._retire()
        return self._generation

    def close(self) -> None:
        """Retire the current generation, e.g. at shutdown."""
        self._generation._retire()


def _resolve_location(
    source_id: str,
    kind: models.ContainerKind,
    location: str,
    settings: config.Settings,
) -> str:
    if containers.is_remote_url(location):
        if kind is models.ContainerKind.MBTILES:
            raise errors.SourceConfigError(
                f"Source '{source_id}': MBTiles does not support web based "
                f"files, {location!r} is not a valid data file"
            )
        return location

    base_dir = (
        settings.pmtiles_dir
        if kind is models.ContainerKind.PMTILES
        else settings.mbtiles_dir
    )
    path = base_dir / pathlib.Path(location)
    if not path.is_file() or path.stat().st_size == 0:
        raise errors.SourceConfigError(
            f"Source '{source_id}': not a valid input file: {str(path)!r}"
        )
    return str(path)


def open_source(
    source_id: str,
    source_config: config.DataSourceConfig,
    settings: config.Settings,
) -> models.SourceDescriptor:
    """Open the archive of one configured source and describe it.

    Args:
        source_id: Id the source is served under.
        source_config: Configuration entry of the source.
        settings: Application settings (archive directories, timeouts,
            global missing-tile policy and domains).

    Returns:
        Descriptor owning the open archive.

    Raises:
        SourceConfigError: If the archive is missing, empty, cannot be
            opened, or its metadata is not servable.
    """
    if source_config.pmtiles is not None:
        kind = models.ContainerKind.PMTILES
        location = source_config.pmtiles
    else:
        kind = models.ContainerKind.MBTILES
        location = source_config.mbtiles or ""
    location = _resolve_location(source_id, kind, location, settings)

    container: containers.PMTilesArchive | containers.MBTilesArchive | None = None
    try:
        if kind is models.ContainerKind.PMTILES:
            container = containers.PMTilesArchive(
                location, timeout=settings.fetch_timeout_seconds
            )
        else:
            container = containers.MBTilesArchive(pathlib.Path(location))
        info = container.info()
        tile_metadata = tilejson.build_tile_metadata(
            source_id, info, source_config, settings.domains
        )
    except errors.SourceConfigError:
        if container is not None:
            container.close()
        raise
    except Exception as exc:
        if container is not None:
            container.close()
        raise errors.SourceConfigError(
            f"Source '{source_id}': cannot open {kind.value} archive "
            f"{location!r}: {exc}"
        ) from exc

    return models.SourceDescriptor(
        id=source_id,
        container_kind=kind,
        container=container,
        tile_metadata=tile_metadata,
        missing_tile_policy=models.resolve_missing_tile_policy(
            source_config.sparse, settings.sparse, tile_metadata.format
        ),
        public_url=source_config.public_url,
    )


def open_sources(
    sources_config: config.SourcesConfig,
    settings: config.Settings,
) -> dict[str, models.SourceDescriptor]:
    """Open every configured source, rejecting the ones that fail.

    A rejected source is logged with its error and left out of the result;
    the remaining sources are still served.

    Returns:
        Mapping of source id to descriptor for the sources that opened.
    """
    opened: dict[str, models.SourceDescriptor] = {}
    for source_id, source_config in sources_config.data.items():
        try:
            descriptor = open_source(source_id, source_config, settings)
        except errors.SourceConfigError as exc:
            logger.error("Rejected data source: %s", exc)
            continue
        opened[source_id] = descriptor
        logger.info(
            "Registered %s source '%s' (%s, zoom %d-%d)",
            descriptor.container_kind.value,
            source_id,
            descriptor.tile_metadata.format.value,
            descriptor.tile_metadata.min_zoom,
            descriptor.tile_metadata.max_zoom,
        )
    return opened

"""Tile sources: data models, archive adapters and the source registry.

Example:
    Resolve a source from the registry:
        >>> from tileserver.sources import registry
        >>> async with source_registry.lease() as generation:
        ...     descriptor = generation.resolve("terrain")
"""

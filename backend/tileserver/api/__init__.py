"""API router subpackage for the tile server.

Submodules:
    - data: TileJSON documents, tiles (native or GeoJSON) and elevation
      queries for registered data sources.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.
"""

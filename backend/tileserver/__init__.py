"""Tile server package: vector and raster tiles from MBTiles and PMTiles.

The service publishes tiles, TileJSON metadata and elevation lookups for a
configured set of tile archives.

- Sources are opened once at startup into an immutable registry generation
- MBTiles archives are read with SQLite, PMTiles locally or over HTTP ranges
- Vector tiles can be served as GeoJSON, converted on the fly
- Terrain RGB sources answer elevation queries for single points, tile
  centers and batches of points

See module sub-docstrings for details on architecture and usage.
"""

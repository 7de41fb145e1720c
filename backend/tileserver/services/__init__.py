"""Request-level services: tile fetching, the tile response pipeline,
TileJSON building and elevation queries.
"""

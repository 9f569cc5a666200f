"""
Geospatial operations for catalog search and raster processing.

This module contains:
- STAC operations (collection listing, item search, asset signing)
- Collection resolution and tile search
- Raster operations (windowed reads, mosaicking, resampling, sampling)
- Tile assembly and post-processing (gap-filling, temporal aggregation)
"""

from datetime import date
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import numpy as np
import pytest
import rasterio
from affine import Affine
from numpy.typing import NDArray

from getsat.models.models import CollectionDescriptor, SpatialExtent, TileDescriptor, TimeRange


def write_geotiff(
    path: Path,
    data: NDArray[np.floating],
    transform: Affine | None = None,
    crs: str = "EPSG:4326",
    nodata: float | None = None,
    scale: float | None = None,
    offset: float | None = None,
) -> Path:
    """
    Write a GeoTIFF for testing; 3-D data is written band by band.

    Args:
      path: Path to write the GeoTIFF
      data: NumPy array with raster data, 2-D or (bands, rows, cols)
      transform: Affine transform (defaults to one-degree pixels from (0, 0))
      crs: Coordinate reference system
      nodata: Optional nodata value
      scale: Optional band scale
      offset: Optional band offset

    Returns:
      The written path
    """
    bands = data if data.ndim == 3 else data[np.newaxis]
    count, height, width = bands.shape
    transform = transform or Affine.translation(0, 0) * Affine.scale(1, -1)
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=height,
        width=width,
        count=count,
        dtype=data.dtype,
        crs=crs,
        transform=transform,
        nodata=nodata,
    ) as dst:
        dst.write(bands)
        if scale is not None or offset is not None:
            dst.scales = (scale if scale is not None else 1.0,) * count
            dst.offsets = (offset if offset is not None else 0.0,) * count
    return path


def half_degree_grid(west: float = 0.0, north: float = 2.0) -> Affine:
    """Transform of a grid with 0.5 degree pixels whose top-left corner is (west, north)."""
    return Affine.translation(west, north) * Affine.scale(0.5, -0.5)


def make_tile(
    path: Path,
    day: date,
    tile_id: str = "h00v00",
    collection_id: str = "test-collection",
) -> TileDescriptor:
    """Tile descriptor pointing at a local raster."""
    return TileDescriptor(
        collection_id=collection_id,
        item_id=f"{tile_id}-{day.isoformat()}",
        acquisition_date=day,
        tile_id=tile_id,
        asset_href=str(path),
    )


class FakeCatalog:
    """In-memory catalog with the same surface as CatalogClient."""

    def __init__(
        self,
        collections: list[CollectionDescriptor] | None = None,
        tiles: dict[str, list[TileDescriptor]] | None = None,
    ) -> None:
        self.collections = collections or []
        self.tiles = tiles or {}
        self.list_calls = 0
        self.searches: list[dict[str, Any]] = []

    def list_collections(self) -> list[CollectionDescriptor]:
        self.list_calls += 1
        return list(self.collections)

    def search(
        self,
        collection_id: str,
        extent: SpatialExtent,
        time_range: TimeRange | None,
        limit: int,
        asset_key: str,
        naming: Any,
    ) -> list[TileDescriptor]:
        self.searches.append(
            {"collection": collection_id, "extent": extent, "time_range": time_range, "asset_key": asset_key}
        )
        return list(self.tiles.get(collection_id, []))

    def resolve_asset_locator(self, tile: TileDescriptor) -> str:
        return tile.asset_href


@pytest.fixture
def no_sleep() -> list[float]:
    """Collects requested sleeps instead of sleeping; pass ``no_sleep.append``."""
    return []


@pytest.fixture
def fake_context() -> Any:
    logger = SimpleNamespace(
        info=lambda *_, **__: None,
        debug=lambda *_, **__: None,
        error=lambda *_, **__: None,
        warning=lambda *_, **__: None,
    )
    return SimpleNamespace(log=logger, run_id="run-1")

"""Group tiles by date and mosaic them into a date-ordered raster stack."""

from datetime import date
from functools import partial
from typing import Any

from dagster import get_dagster_logger

from getsat.errors import FetchError, TileAssemblyError
from getsat.geospatial.raster_ops import RasterEngine
from getsat.models.models import Frame, RasterStack, SpatialExtent, TileDescriptor
from getsat.retry import RetryingFetcher

logger = get_dagster_logger(__name__)


def group_by_date(tiles: list[TileDescriptor]) -> dict[date, list[TileDescriptor]]:
    """Group tiles by acquisition date.

    Dates come out ascending; tiles keep their input order inside a group.

    :param tiles: Tile descriptors
    :returns: Mapping of date to tiles
    """
    groups: dict[date, list[TileDescriptor]] = {}
    for tile in tiles:
        groups.setdefault(tile.acquisition_date, []).append(tile)
    return {day: groups[day] for day in sorted(groups)}


class TileAssembler:
    """Open, clip and mosaic tiles into one frame per acquisition date.

    :param engine: Raster engine
    :param fetcher: Retry policy for opening assets
    :param reducer: Reducer for same-date tiles (``"mean"``, ``"mode"`` or ``"dominant"``)
    """

    def __init__(self, engine: RasterEngine, fetcher: RetryingFetcher, reducer: str = "mean") -> None:
        self.engine = engine
        self.fetcher = fetcher
        self.reducer = reducer

    def _open_group(
        self, tiles: list[TileDescriptor], extent: SpatialExtent | None
    ) -> tuple[list[Frame], list[tuple[date, str, Any]]]:
        frames = []
        failures: list[tuple[date, str, Any]] = []
        for tile in tiles:
            try:
                frame = self.fetcher.attempt(
                    partial(
                        self.engine.open, tile.asset_href, tile.acquisition_date, extent, tile.band, tile.subdataset
                    ),
                    description=f"open of {tile.item_id}",
                )
            except FetchError as e:
                failures.append((tile.acquisition_date, tile.tile_id, e.last_error))
                continue
            except Exception as e:
                failures.append((tile.acquisition_date, tile.tile_id, e))
                continue
            if frame is None:
                logger.debug(f"Tile {tile.tile_id} of {tile.acquisition_date} does not overlap the extent")
                continue
            frames.append(frame)
        return frames, failures

    def assemble(self, tiles: list[TileDescriptor], extent: SpatialExtent | None) -> RasterStack:
        """Build a raster stack with exactly one frame per acquisition date.

        :param tiles: Tiles carrying resolved locators
        :param extent: Extent to clip to, or None to keep whole tiles
        :returns: RasterStack ordered by date
        :raises TileAssemblyError: If any tile cannot be opened, or a date has no coverage
        """
        frames = []
        failures: list[tuple[date, str, Any]] = []
        for day, group in group_by_date(tiles).items():
            opened, group_failures = self._open_group(group, extent)
            failures.extend(group_failures)
            if group_failures:
                continue
            if not opened:
                failures.extend((day, tile.tile_id, "no overlap with the requested extent") for tile in group)
                continue
            frame = self.engine.mosaic(opened, self.reducer)
            logger.debug(f"Built frame for {day} from {len(opened)} tile(s)")
            frames.append(frame)

        if failures:
            raise TileAssemblyError("Tiles could not be assembled", failures)

        return RasterStack(frames=tuple(self.engine.align(frames)))

"""Gap-filling, temporal aggregation, cropping and point extraction."""

import geopandas as gpd
from dagster import get_dagster_logger

from getsat.config.constants import OUTPUT_CRS
from getsat.geospatial.raster_ops import RasterEngine
from getsat.models.models import PointSet, RasterStack, SpatialExtent

logger = get_dagster_logger(__name__)


class PostProcessor:
    """Apply optional processing steps to an assembled raster stack.

    Steps run in a fixed order: gap-fill, coarsening, temporal aggregation,
    then either point extraction or cropping to the requested extent.

    :param engine: Raster engine
    """

    def __init__(self, engine: RasterEngine) -> None:
        self.engine = engine

    def process(
        self,
        stack: RasterStack,
        extent: SpatialExtent | None = None,
        points: PointSet | None = None,
        gapfill_window: int | None = None,
        coarsen: int | None = None,
        agg_level: str | None = None,
        crop: bool = True,
        name: str = "value",
        reducer: str = "mean",
    ) -> RasterStack | gpd.GeoDataFrame:
        """Run the requested steps.

        :param stack: Assembled stack
        :param extent: Requested extent, used for cropping
        :param points: Points to sample; switches the result to a table
        :param gapfill_window: Odd window size for gap-filling, None to skip
        :param coarsen: Block size for spatial coarsening, None to skip
        :param agg_level: Bucket rule for temporal aggregation, None to skip
        :param crop: Clip the stack to ``extent``
        :param name: Value column name for extraction
        :param reducer: Reducer for coarsening and temporal aggregation
        :returns: RasterStack, or GeoDataFrame when points are given
        """
        frames = list(stack.frames)
        if gapfill_window:
            frames = [self.engine.fill_gaps(frame, gapfill_window) for frame in frames]
        if coarsen:
            frames = [self.engine.coarsen(frame, coarsen, reducer) for frame in frames]
        if agg_level:
            frames = self.engine.aggregate_time(frames, agg_level, reducer)
            logger.info(f"Aggregated {len(stack)} frame(s) into {len(frames)} '{agg_level}' bucket(s)")
        result = RasterStack(frames=tuple(frames))

        if points is not None:
            return self.extract(result, points, name)
        if crop and extent is not None:
            return self.crop(result, extent)
        return result

    def crop(self, stack: RasterStack, extent: SpatialExtent) -> RasterStack:
        """Clip every frame to ``extent``.

        :param stack: Raster stack
        :param extent: WGS84 extent
        :returns: Clipped stack
        """
        clipped = []
        for frame in stack.frames:
            frame_clip = self.engine.clip(frame, extent)
            if frame_clip is None:
                raise ValueError(f"Frame {frame.label} does not overlap bbox {extent.as_bbox()}")
            clipped.append(frame_clip)
        return RasterStack(frames=tuple(clipped))

    def extract(self, stack: RasterStack, points: PointSet, name: str = "value") -> gpd.GeoDataFrame:
        """Sample every frame at every point.

        One row per point, joined to its coordinates; one value column per
        frame (``name`` alone for a single frame, ``name_<label>`` otherwise).
        Points outside a frame get NaN for that frame only.

        :param stack: Raster stack
        :param points: Points to sample
        :param name: Value column name
        :returns: GeoDataFrame of sampled values
        """
        columns: dict[str, list[float]] = {"lon": points.lons, "lat": points.lats}
        for frame in stack.frames:
            column = name if len(stack) == 1 else f"{name}_{frame.label}"
            columns[column] = self.engine.sample(frame, points)
        return gpd.GeoDataFrame(columns, geometry=gpd.points_from_xy(points.lons, points.lats), crs=OUTPUT_CRS)

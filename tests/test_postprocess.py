from datetime import date

import numpy as np
import pytest
from conftest import half_degree_grid

from getsat.geospatial.postprocess import PostProcessor
from getsat.geospatial.raster_ops import RasterEngine
from getsat.models.models import Frame, PointSet, RasterStack, SpatialExtent


def _stack(*values: float) -> RasterStack:
    return RasterStack(
        frames=tuple(
            Frame(
                data=np.arange(16, dtype="float32").reshape(4, 4) + value,
                transform=half_degree_grid(),
                crs="EPSG:4326",
                date=date(2021, 1, 1 + 8 * i),
            )
            for i, value in enumerate(values)
        )
    )


def test_extract_one_column_per_frame() -> None:
    """
    Test point extraction.

    Verifies:
    - One row per point with lon/lat and a WGS84 point geometry
    - Columns are named by frame label when there are several frames
    - A point outside the coverage is NaN in every column, others are sampled
    """
    points = PointSet(points=((0.25, 1.75), (10.0, 10.0)))
    table = PostProcessor(RasterEngine()).extract(_stack(0.0, 100.0), points, name="LST_Day_1km")

    assert list(table.columns) == ["lon", "lat", "LST_Day_1km_2021-01-01", "LST_Day_1km_2021-01-09", "geometry"]
    assert table.crs.to_epsg() == 4326
    assert table["LST_Day_1km_2021-01-01"].iloc[0] == pytest.approx(0.0)
    assert table["LST_Day_1km_2021-01-09"].iloc[0] == pytest.approx(100.0)
    assert table.iloc[1][["LST_Day_1km_2021-01-01", "LST_Day_1km_2021-01-09"]].isna().all()


def test_extract_single_frame_uses_plain_name() -> None:
    table = PostProcessor(RasterEngine()).extract(_stack(0.0), PointSet(points=((1.75, 0.25),)), name="elevation")
    assert table["elevation"].tolist() == [15.0]


def test_process_crops_to_extent() -> None:
    result = PostProcessor(RasterEngine()).process(_stack(0.0), extent=SpatialExtent(west=0, south=1, east=1, north=2))
    assert isinstance(result, RasterStack)
    np.testing.assert_allclose(result[0].data, [[0, 1], [4, 5]])


def test_process_without_crop_keeps_full_frames() -> None:
    result = PostProcessor(RasterEngine()).process(
        _stack(0.0), extent=SpatialExtent(west=0, south=1, east=1, north=2), crop=False
    )
    assert result[0].shape == (4, 4)


def test_process_gapfills_before_aggregating() -> None:
    """
    Test that gap-filling runs before temporal aggregation.
    """
    stack = _stack(0.0, 0.0)
    stack[0].data[1, 1] = np.nan
    stack[1].data[1, 1] = np.nan

    result = PostProcessor(RasterEngine()).process(stack, gapfill_window=3, agg_level="month")
    assert len(result) == 1
    assert result[0].label == "2021-01"
    assert not np.isnan(result[0].data).any()
    assert result[0].data[1, 1] == pytest.approx(5.0)


def test_crop_outside_coverage_raises() -> None:
    with pytest.raises(ValueError):
        PostProcessor(RasterEngine()).crop(_stack(0.0), SpatialExtent(west=10, south=10, east=11, north=11))

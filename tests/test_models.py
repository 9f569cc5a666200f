from datetime import date
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from affine import Affine
from pydantic import ValidationError
from shapely.geometry import MultiPoint, Point, Polygon

from getsat.errors import CatalogError, InvalidRequestError
from getsat.models.models import (
    BoxQuery,
    CollectionDescriptor,
    Frame,
    PointSet,
    PointsQuery,
    RasterStack,
    RetrievalOptions,
    SpatialExtent,
    TimeRange,
    acquisition_date_from_item,
    spatial_query,
)


def _frame(day: date, value: float = 1.0) -> Frame:
    return Frame(
        data=np.full((2, 2), value, dtype="float32"),
        transform=Affine.translation(0, 2) * Affine.scale(1, -1),
        crs="EPSG:4326",
        date=day,
    )


def test_spatial_extent_rejects_inverted_bounds() -> None:
    with pytest.raises(ValidationError):
        SpatialExtent(west=10, south=0, east=5, north=1)
    with pytest.raises(ValidationError):
        SpatialExtent(west=0, south=0, east=1, north=95)


def test_spatial_extent_from_points_pads_and_clamps() -> None:
    """
    Test that point bounds are padded by the margin and clamped to the globe.
    """
    points = PointSet(points=((179.9, 10.0), (170.0, 20.0)))
    extent = SpatialExtent.from_points(points, margin=0.15)
    assert extent.west == pytest.approx(169.85)
    assert extent.south == pytest.approx(9.85)
    assert extent.east == 180.0
    assert extent.north == pytest.approx(20.15)


def test_point_set_validates_ranges() -> None:
    with pytest.raises(ValidationError):
        PointSet(points=())
    with pytest.raises(ValidationError):
        PointSet(points=((200.0, 0.0),))


def test_spatial_query_dispatches_on_shape() -> None:
    """
    Test that caller input becomes a tagged box or points query.

    Verifies:
    - Four numbers are a box
    - An (n, 2) array is a point set
    - Shapely polygons query their bounds, shapely points are point sets
    - Point GeoDataFrames are reprojected to WGS84
    """
    box = spatial_query([0, 0, 2, 2])
    assert isinstance(box, BoxQuery)
    assert box.extent.as_bbox() == [0.0, 0.0, 2.0, 2.0]

    points = spatial_query(np.array([[1.0, 2.0], [3.0, 4.0]]))
    assert isinstance(points, PointsQuery)
    assert points.points.points == ((1.0, 2.0), (3.0, 4.0))

    polygon = spatial_query(Polygon([(0, 0), (2, 0), (2, 1), (0, 1)]))
    assert isinstance(polygon, BoxQuery)
    assert polygon.extent.as_bbox() == [0.0, 0.0, 2.0, 1.0]

    assert isinstance(spatial_query(Point(1, 1)), PointsQuery)
    assert len(spatial_query(MultiPoint([(1, 1), (2, 2)])).points) == 2

    gdf = gpd.GeoDataFrame(geometry=[Point(1, 1)], crs="EPSG:4326").to_crs("EPSG:3857")
    from_gdf = spatial_query(gdf)
    assert isinstance(from_gdf, PointsQuery)
    lon, lat = from_gdf.points.points[0]
    assert lon == pytest.approx(1.0)
    assert lat == pytest.approx(1.0)


@pytest.mark.parametrize("where", [[0, 0, 1], [[1, 2, 3]], "somewhere"])
def test_spatial_query_rejects_other_shapes(where: object) -> None:
    with pytest.raises(InvalidRequestError):
        spatial_query(where)


def test_time_range_parse_and_contains() -> None:
    """
    Test that time ranges parse from strings, dates and pairs.
    """
    period = TimeRange.parse("2021-01-01/2021-03-31")
    assert period.start == date(2021, 1, 1)
    assert period.end == date(2021, 3, 31)
    assert period.to_stac() == "2021-01-01/2021-03-31"
    assert period.contains(date(2021, 3, 31))
    assert not period.contains(date(2021, 4, 1))

    single = TimeRange.parse(date(2021, 5, 1))
    assert single.to_stac() == "2021-05-01"
    assert single.contains(date(2021, 5, 1))

    assert TimeRange.parse(("2021-01-01", "2021-01-31")).end == date(2021, 1, 31)

    with pytest.raises(ValidationError):
        TimeRange.parse("2021-03-01/2021-01-01")
    with pytest.raises(InvalidRequestError):
        TimeRange.parse("2021/01/01/x")


def test_collection_descriptor_from_stac_uses_item_assets() -> None:
    """
    Test that collection variables are the keys of the item_assets mapping.
    """
    descriptor = CollectionDescriptor.from_stac(
        {
            "id": "modis-11A2-061",
            "title": "MODIS LST 8-day",
            "item_assets": {"LST_Day_1km": {}, "LST_Night_1km": {}},
        }
    )
    assert descriptor.id == "modis-11A2-061"
    assert descriptor.variables == frozenset({"LST_Day_1km", "LST_Night_1km"})
    assert descriptor.description == ""

    with pytest.raises(CatalogError):
        CollectionDescriptor.from_stac({"title": "no id"})


def test_acquisition_date_from_item_properties() -> None:
    assert acquisition_date_from_item({"properties": {"datetime": "2021-04-22T00:00:00Z"}}) == date(2021, 4, 22)
    assert acquisition_date_from_item(
        {"properties": {"datetime": None, "start_datetime": "2021-01-01T00:00:00Z"}}
    ) == date(2021, 1, 1)
    assert acquisition_date_from_item({"properties": {}}) is None


def test_frame_label_defaults_to_iso_date() -> None:
    frame = _frame(date(2021, 1, 9))
    assert frame.label == "2021-01-09"
    assert frame.shape == (2, 2)
    assert frame.resolution == (1.0, 1.0)
    assert frame.bounds == (0.0, 0.0, 2.0, 2.0)


def test_raster_stack_requires_strictly_ascending_dates() -> None:
    """
    Test that a stack never holds duplicate or out-of-order dates.
    """
    stack = RasterStack(frames=(_frame(date(2021, 1, 1)), _frame(date(2021, 1, 9))))
    assert stack.dates == [date(2021, 1, 1), date(2021, 1, 9)]
    assert stack.to_array().shape == (2, 2, 2)

    with pytest.raises(ValidationError):
        RasterStack(frames=(_frame(date(2021, 1, 9)), _frame(date(2021, 1, 1))))
    with pytest.raises(ValidationError):
        RasterStack(frames=(_frame(date(2021, 1, 1)), _frame(date(2021, 1, 1))))


def test_raster_stack_to_geotiff_writes_one_band_per_frame(tmp_path: Path) -> None:
    stack = RasterStack(frames=(_frame(date(2021, 1, 1), 10.0), _frame(date(2021, 1, 9), 20.0)))
    path = stack.to_geotiff(tmp_path / "stack.tif")

    with rasterio.open(path) as src:
        assert src.count == 2
        assert src.descriptions == ("2021-01-01", "2021-01-09")
        np.testing.assert_allclose(src.read(2), 20.0)


def test_retrieval_options_validation() -> None:
    """
    Test option validation.

    Verifies:
    - Gap-fill windows must be odd and at least 3
    - Aggregation levels must be known bucket rules
    """
    options = RetrievalOptions(gapfill_window=3, agg_level="month")
    assert options.crop is True
    assert options.download is False

    with pytest.raises(ValidationError):
        RetrievalOptions(gapfill_window=4)
    with pytest.raises(ValidationError):
        RetrievalOptions(agg_level="fortnight")
    with pytest.raises(ValidationError):
        RetrievalOptions(max_attempts=0)

from datetime import date
from pathlib import Path
from typing import Any

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from conftest import FakeCatalog, half_degree_grid, make_tile, write_geotiff

from getsat.errors import FetchError, NoDataFound, PipelineError, VariableNotFound
from getsat.models.models import (
    BoxQuery,
    CollectionDescriptor,
    PointSet,
    PointsQuery,
    RasterStack,
    RetrievalOptions,
    SpatialExtent,
)
from getsat.pipeline import DataSource, Pipeline, PipelineStage, RetrievalRequest

BOX = BoxQuery(extent=SpatialExtent(west=0, south=0, east=2, north=2))
FIXED = DataSource(name="elevation", collection="test-collection", asset_key="data")
FAMILY = DataSource(name="modis", family_prefix="modis")


def _catalog(tmp_path: Path) -> FakeCatalog:
    ten = write_geotiff(tmp_path / "ten.tif", np.full((4, 4), 10, dtype="float32"), half_degree_grid())
    twenty = write_geotiff(tmp_path / "twenty.tif", np.full((4, 4), 20, dtype="float32"), half_degree_grid())
    ramp = write_geotiff(tmp_path / "ramp.tif", np.arange(16, dtype="float32").reshape(4, 4), half_degree_grid())
    tiles = [
        make_tile(ramp, date(2021, 1, 9), "h01v01"),
        make_tile(ten, date(2021, 1, 1), "h01v01"),
        make_tile(twenty, date(2021, 1, 1), "h02v01"),
    ]
    return FakeCatalog(
        collections=[
            CollectionDescriptor(id="cop-dem-glo-30", variables=frozenset({"data"})),
            CollectionDescriptor(id="modis-11A2-061", variables=frozenset({"LST_Day_1km"})),
            CollectionDescriptor(id="modis-21A2-061", variables=frozenset({"LST_Day_1km"})),
        ],
        tiles={"test-collection": tiles, "modis-11A2-061": tiles},
    )


def _pipeline(catalog: FakeCatalog, sleeps: list[float], **kwargs: Any) -> Pipeline:
    return Pipeline(catalog, max_attempts=3, retry_delay=2, sleep=sleeps.append, **kwargs)


def test_box_request_returns_ascending_stack(tmp_path: Path, no_sleep: list[float]) -> None:
    """
    Test a full run for a bounding box with a fixed collection.

    Verifies:
    - Resolution is skipped when the source names its collection
    - Frames come out one per date in ascending order
    - Same-date tiles are averaged
    - The pipeline ends in the done state
    """
    catalog = _catalog(tmp_path)
    pipeline = _pipeline(catalog, no_sleep)

    stack = pipeline.run(RetrievalRequest(source=FIXED, query=BOX))
    assert isinstance(stack, RasterStack)
    assert stack.dates == [date(2021, 1, 1), date(2021, 1, 9)]
    np.testing.assert_allclose(stack[0].data, 15.0)
    assert catalog.list_calls == 0
    assert pipeline.resolution is None
    assert pipeline.stage is PipelineStage.DONE


def test_variable_is_resolved_to_first_matching_collection(tmp_path: Path, no_sleep: list[float]) -> None:
    catalog = _catalog(tmp_path)
    pipeline = _pipeline(catalog, no_sleep)

    pipeline.run(RetrievalRequest(source=FAMILY, query=BOX, variable="LST_Day_1km"))
    assert catalog.list_calls == 1
    assert pipeline.resolution is not None
    assert pipeline.resolution.selected.id == "modis-11A2-061"
    assert [c.id for c in pipeline.resolution.alternatives] == ["modis-21A2-061"]
    assert catalog.searches[0]["collection"] == "modis-11A2-061"
    assert catalog.searches[0]["asset_key"] == "LST_Day_1km"


def test_explicit_collection_skips_resolution(tmp_path: Path, no_sleep: list[float]) -> None:
    """
    Test that an explicit collection option bypasses the catalog index entirely.
    """
    catalog = _catalog(tmp_path)
    request = RetrievalRequest(
        source=FAMILY,
        query=BOX,
        variable="LST_Day_1km",
        options=RetrievalOptions(collection="test-collection"),
    )
    _pipeline(catalog, no_sleep).run(request)
    assert catalog.list_calls == 0
    assert catalog.searches[0]["collection"] == "test-collection"


def test_unknown_variable_fails_in_resolution_stage(tmp_path: Path, no_sleep: list[float]) -> None:
    pipeline = _pipeline(_catalog(tmp_path), no_sleep)
    with pytest.raises(PipelineError) as excinfo:
        pipeline.run(RetrievalRequest(source=FAMILY, query=BOX, variable="Emis_31"))

    assert excinfo.value.stage is PipelineStage.RESOLVING_COLLECTION
    assert isinstance(excinfo.value.__cause__, VariableNotFound)
    assert pipeline.stage is PipelineStage.FAILED


def test_empty_search_fails_in_query_stage(tmp_path: Path, no_sleep: list[float]) -> None:
    request = RetrievalRequest(source=DataSource(name="x", collection="empty", asset_key="data"), query=BOX)
    with pytest.raises(PipelineError) as excinfo:
        _pipeline(_catalog(tmp_path), no_sleep).run(request)
    assert excinfo.value.stage is PipelineStage.QUERYING
    assert isinstance(excinfo.value.cause, NoDataFound)


def test_persistent_catalog_outage_is_retried_then_reported(tmp_path: Path, no_sleep: list[float]) -> None:
    """
    Test that a catalog that keeps failing is retried with backoff and then fails the call.
    """

    class DownCatalog(FakeCatalog):
        def search(self, *args: Any, **kwargs: Any) -> Any:
            raise ConnectionError("connection reset")

    with pytest.raises(PipelineError) as excinfo:
        _pipeline(DownCatalog(), no_sleep).run(RetrievalRequest(source=FIXED, query=BOX))
    assert isinstance(excinfo.value.cause, FetchError)
    assert excinfo.value.cause.attempts == 3
    assert no_sleep == [2.0, 4.0]


def test_point_request_returns_table_with_nan_outside_coverage(tmp_path: Path, no_sleep: list[float]) -> None:
    """
    Test a point request where one point lies outside every tile.

    Verifies the outside point is NaN for every date while the other point
    is sampled normally.
    """
    query = PointsQuery(points=PointSet(points=((0.25, 1.75), (1.9, 1.9), (3.0, 1.0))))
    table = _pipeline(_catalog(tmp_path), no_sleep).run(RetrievalRequest(source=FIXED, query=query))

    assert isinstance(table, gpd.GeoDataFrame)
    assert list(table.columns) == ["lon", "lat", "elevation_2021-01-01", "elevation_2021-01-09", "geometry"]
    assert table["elevation_2021-01-01"].iloc[0] == pytest.approx(15.0)
    assert table["elevation_2021-01-09"].iloc[0] == pytest.approx(0.0)
    assert table["elevation_2021-01-09"].iloc[1] == pytest.approx(3.0)
    assert table.iloc[2][["elevation_2021-01-01", "elevation_2021-01-09"]].isna().all()


def test_box_and_corner_points_agree(tmp_path: Path, no_sleep: list[float]) -> None:
    """
    Test that the four corners of a box sample the same values as the box raster.
    """
    catalog = _catalog(tmp_path)
    stack = _pipeline(catalog, no_sleep).run(RetrievalRequest(source=FIXED, query=BOX))

    corners = PointSet(points=((0.0, 0.0), (0.0, 2.0), (2.0, 0.0), (2.0, 2.0)))
    table = _pipeline(catalog, no_sleep).run(RetrievalRequest(source=FIXED, query=PointsQuery(points=corners)))

    ramp = stack[1]
    inverse = ~ramp.transform
    expected = []
    for lon, lat in corners.points:
        col, row = inverse * (lon, lat)
        expected.append(float(ramp.data[min(int(row), 3), min(int(col), 3)]))
    np.testing.assert_allclose(table["elevation_2021-01-09"].to_numpy(), expected)
    assert expected == [12.0, 0.0, 15.0, 3.0]


def test_download_and_clean_only_removes_created_files(tmp_path: Path, no_sleep: list[float]) -> None:
    """
    Test persistent downloads into an existing directory with cleanup.

    Verifies downloaded tiles are removed afterwards while a file that was
    already in the directory, and the directory itself, are kept.
    """
    output_dir = tmp_path / "downloads"
    output_dir.mkdir()
    keep = output_dir / "notes.txt"
    keep.write_text("mine")

    tiles_dir = tmp_path / "tiles"
    tiles_dir.mkdir()
    pipeline = _pipeline(_catalog(tiles_dir), no_sleep)
    stack = pipeline.run(
        RetrievalRequest(
            source=FIXED,
            query=BOX,
            options=RetrievalOptions(download=True, output_dir=output_dir, clean_dir=True),
        )
    )

    assert len(stack) == 2
    assert all(Path(tile.asset_href).parent == output_dir for tile in pipeline.tiles)
    assert sorted(p.name for p in output_dir.iterdir()) == ["notes.txt"]
    assert keep.read_text() == "mine"


def test_download_without_clean_keeps_tiles(tmp_path: Path, no_sleep: list[float]) -> None:
    output_dir = tmp_path / "downloads"
    pipeline = _pipeline(_catalog(tmp_path), no_sleep)
    pipeline.run(
        RetrievalRequest(source=FIXED, query=BOX, options=RetrievalOptions(download=True, output_dir=output_dir))
    )
    assert len(list(output_dir.glob("*.tif"))) == 3


def test_request_timeout_is_scoped_to_the_call(tmp_path: Path, no_sleep: list[float]) -> None:
    """
    Test that the GDAL HTTP timeout is set during the run and restored afterwards.
    """
    seen: dict[str, Any] = {}

    class RecordingCatalog(FakeCatalog):
        def search(self, *args: Any, **kwargs: Any) -> Any:
            seen["timeout"] = rasterio.env.getenv().get("GDAL_HTTP_TIMEOUT")
            return super().search(*args, **kwargs)

    source = _catalog(tmp_path)
    catalog = RecordingCatalog(collections=source.collections, tiles=source.tiles)
    request = RetrievalRequest(source=FIXED, query=BOX, options=RetrievalOptions(timeout=12.5))
    _pipeline(catalog, no_sleep).run(request)

    assert seen["timeout"] in (13, "13")
    assert not rasterio.env.hasenv() or "GDAL_HTTP_TIMEOUT" not in rasterio.env.getenv()


def test_sources_need_a_collection_or_family() -> None:
    with pytest.raises(ValueError):
        DataSource(name="nowhere")


def test_variable_is_required_without_a_fixed_asset() -> None:
    with pytest.raises(ValueError):
        RetrievalRequest(source=FAMILY, query=BOX)


def test_sources_reject_unknown_aggregators() -> None:
    with pytest.raises(ValueError):
        DataSource(name="x", collection="c", aggregator="median")
    assert DataSource(name="x", collection="c", reducer="dominant", aggregator="mode").aggregation_reducer == "mode"

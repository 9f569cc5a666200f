from datetime import date
from pathlib import Path
from typing import Any

import numpy as np
import pytest
from conftest import FakeCatalog, half_degree_grid, make_tile, write_geotiff

from getsat import assets
from getsat.errors import InvalidRequestError
from getsat.geospatial.gridded import GMTED, FileCatalog
from getsat.models.models import Frame, RasterStack
from getsat.pipeline import Pipeline


def _stack() -> RasterStack:
    frames = tuple(
        Frame(data=np.ones((2, 2), dtype="float32"), transform=half_degree_grid(north=1), crs="EPSG:4326", date=day)
        for day in (date(2021, 1, 1), date(2021, 1, 9))
    )
    return RasterStack(frames=frames)


def test_request_options_only_forwards_set_values() -> None:
    config = assets.RasterRequestConfig(source="modis", bbox=[0, 0, 1, 1], agg_level="month")
    assert assets._request_options(config) == {"agg_level": "month"}
    config = assets.RasterRequestConfig(source="lccs", bbox=[0, 0, 1, 1], coarsen=4)
    assert assets._request_options(config) == {"coarsen": 4}


def test_run_request_dispatches_to_the_dem_source(tmp_path: Path) -> None:
    """
    Test that a DEM request config is routed to the DEM collection of its resolution.
    """
    path = write_geotiff(tmp_path / "dem.tif", np.full((4, 4), 7, dtype="float32"), half_degree_grid())
    catalog = FakeCatalog(tiles={"cop-dem-glo-90": [make_tile(path, date(2021, 4, 22))]})
    pipeline = Pipeline(catalog, sleep=lambda _: None)

    config = assets.RasterRequestConfig(source="dem", bbox=[0, 0, 2, 2], resolution=90)
    stack = assets._run_request(config, pipeline)
    assert len(stack) == 1
    np.testing.assert_allclose(stack[0].data, 7.0)


def test_run_request_dispatches_file_products(tmp_path: Path) -> None:
    """
    Test that a GMTED request config reads the product of its resolution in degrees, coarsened.
    """
    path = write_geotiff(tmp_path / "gmted.tif", np.full((4, 4), 250, dtype="float32"), half_degree_grid())
    product = GMTED[0.125].model_copy(update={"url_template": str(path), "netcdf": False})
    pipeline = Pipeline(FakeCatalog(), sleep=lambda _: None, files=FileCatalog([product]), tmp_dir=str(tmp_path))

    config = assets.RasterRequestConfig(source="dem2", bbox=[0, 0, 2, 2], degrees=0.125, coarsen=2)
    stack = assets._run_request(config, pipeline)
    assert stack[0].shape == (2, 2)
    np.testing.assert_allclose(stack[0].data, 250.0)


@pytest.mark.parametrize(
    "overrides",
    [{"source": "modis"}, {"source": "era5"}, {"source": "terraclimate"}],
)
def test_run_request_rejects_incomplete_configs(overrides: dict[str, Any]) -> None:
    """
    Test invalid request configurations.

    Args:
      overrides: Config fields that make the request invalid
    """
    config = assets.RasterRequestConfig(bbox=[0, 0, 1, 1], **overrides)
    with pytest.raises(InvalidRequestError):
        assets._run_request(config, Pipeline(FakeCatalog(), sleep=lambda _: None))


def test_output_path_is_inside_tmp_dir(tmp_path: Path) -> None:
    path = assets._output_path(str(tmp_path / "out"), "dem", "run-1")
    assert path == tmp_path / "out" / "dem_run-1.tif"
    assert path.parent.is_dir()


def test_create_success_output_reports_frames(tmp_path: Path) -> None:
    """
    Test that the asset output carries frame count, dates and the path as metadata.
    """
    output = assets._create_success_output(_stack(), tmp_path / "x.tif", collection="cop-dem-glo-30", tile_count=3)
    assert output.value == str(tmp_path / "x.tif")

    # Metadata values may be wrapped in Dagster metadata types
    def unwrap(value: Any) -> Any:
        return value.value if hasattr(value, "value") else value

    assert unwrap(output.metadata["frames"]) == 2
    assert unwrap(output.metadata["dates"]) == "2021-01-01, 2021-01-09"
    assert unwrap(output.metadata["collection"]) == "cop-dem-glo-30"
    assert unwrap(output.metadata["tiles"]) == 3

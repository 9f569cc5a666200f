"""Dagster assets for raster retrieval."""

from pathlib import Path
from typing import Any

import geopandas as gpd
from dagster import AssetExecutionContext, Config, Output, asset

from getsat.config.constants import DEFAULT_TMP_DIR
from getsat.connectors.settings import SettingsResource
from getsat.connectors.stac_client import STACResource
from getsat.errors import InvalidRequestError
from getsat.models.models import RasterStack
from getsat.pipeline import Pipeline
from getsat.sources import get_dem, get_dem2, get_lccs, get_lulc, get_modis, get_terraclimate

STAC_SOURCES = ("modis", "dem", "lulc")
FILE_SOURCES = ("terraclimate", "lccs", "dem2")


class RasterRequestConfig(Config):
    """Run configuration of the ``raster_stack`` asset.

    :param source: Data source, one of ``STAC_SOURCES`` or ``FILE_SOURCES``
    :param bbox: ``[west, south, east, north]`` in WGS84
    :param variable: MODIS asset name or TerraClimate variable
    :param dates: MODIS or TerraClimate period as ``"start/end"``
    :param resolution: Copernicus DEM resolution in metres
    :param degrees: GMTED2010 resolution in degrees
    :param year: Land cover year
    :param pft: LCCS class, None for the dominant class
    :param coarsen: Block size for spatial coarsening
    :param collection: Explicit collection id
    :param agg_level: Temporal aggregation rule
    :param gapfill_window: Odd gap-filling window size
    """

    source: str = "dem"
    bbox: list[float]
    variable: str | None = None
    dates: str | None = None
    resolution: int = 30
    degrees: float = 0.0625
    year: int = 2023
    pft: str | None = None
    coarsen: int | None = None
    collection: str | None = None
    agg_level: str | None = None
    gapfill_window: int | None = None


@asset
def raster_stack(
    context: AssetExecutionContext,
    config: RasterRequestConfig,
    stac: STACResource,
    settings: SettingsResource,
) -> Output[str]:
    """Retrieve a raster stack and write it as a multi-band GeoTIFF.

    :param context: Dagster context
    :param config: Request configuration
    :param stac: STAC resource
    :param settings: Settings resource
    :returns: Output with the GeoTIFF path
    """
    # File-served products never touch the STAC catalog
    catalog = stac.create_catalog() if config.source in STAC_SOURCES else None
    pipeline = Pipeline.from_settings(settings, catalog=catalog)
    context.log.info(f"Retrieving {config.source} for bbox {config.bbox}")

    stack = _run_request(config, pipeline)
    path = _output_path(settings.tmp_dir, config.source, context.run_id)
    stack.to_geotiff(path)
    context.log.info(f"Wrote {len(stack)} frame(s) to {path}")

    collection = pipeline.resolution.selected.id if pipeline.resolution is not None else config.collection
    return _create_success_output(stack, path, collection=collection, tile_count=len(pipeline.tiles))


def _request_options(config: RasterRequestConfig) -> dict[str, Any]:
    """Collect the retrieval options set in ``config``.

    :param config: Request configuration
    :returns: Keyword options for the source entry points
    """
    options = {
        "collection": config.collection,
        "agg_level": config.agg_level,
        "gapfill_window": config.gapfill_window,
        "coarsen": config.coarsen,
    }
    return {key: value for key, value in options.items() if value is not None}


def _run_request(config: RasterRequestConfig, pipeline: Pipeline) -> RasterStack:
    """Dispatch ``config`` to its source entry point.

    :param config: Request configuration
    :param pipeline: Pipeline to run on
    :returns: Raster stack
    """
    options = _request_options(config)
    result: RasterStack | gpd.GeoDataFrame
    if config.source == "modis":
        if config.variable is None or config.dates is None:
            raise InvalidRequestError("MODIS requests need 'variable' and 'dates'")
        result = get_modis(config.bbox, config.variable, config.dates, pipeline=pipeline, **options)
    elif config.source == "dem":
        result = get_dem(config.bbox, res=config.resolution, pipeline=pipeline, **options)
    elif config.source == "lulc":
        result = get_lulc(config.bbox, year=config.year, pipeline=pipeline, **options)
    elif config.source == "terraclimate":
        if config.dates is None:
            raise InvalidRequestError("TerraClimate requests need 'dates'")
        result = get_terraclimate(config.bbox, config.variable or "pet", config.dates, pipeline=pipeline, **options)
    elif config.source == "lccs":
        result = get_lccs(config.bbox, year=config.year, pft=config.pft, pipeline=pipeline, **options)
    elif config.source == "dem2":
        result = get_dem2(config.bbox, res=config.degrees, pipeline=pipeline, **options)
    else:
        raise InvalidRequestError(
            f"Unknown source '{config.source}', expected one of {', '.join(STAC_SOURCES + FILE_SOURCES)}"
        )

    if not isinstance(result, RasterStack):
        raise TypeError(f"Expected a raster stack for a bounding box request, got {type(result).__name__}")
    return result


def _output_path(tmp_dir: str, source: str, run_id: str) -> Path:
    """GeoTIFF path of a run inside the scratch directory.

    :param tmp_dir: Scratch directory from settings
    :param source: Data source name
    :param run_id: Dagster run id
    :returns: Output path, parent created
    """
    directory = Path(tmp_dir or DEFAULT_TMP_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{source}_{run_id}.tif"


def _create_success_output(
    stack: RasterStack,
    path: Path,
    collection: str | None = None,
    tile_count: int = 0,
) -> Output[str]:
    """Create Output for a written raster stack.

    :param stack: Written stack
    :param path: GeoTIFF path
    :param collection: Collection the tiles came from
    :param tile_count: Number of tiles assembled
    :returns: Output with frame metadata
    """
    return Output(
        str(path),
        metadata={
            "path": str(path),
            "frames": len(stack),
            "dates": ", ".join(stack.labels),
            "collection": collection or "",
            "tiles": tile_count,
        },
    )

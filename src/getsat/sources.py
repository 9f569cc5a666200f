"""Per-source entry points: MODIS, elevation, land cover and gridded climate."""

import time
from collections.abc import Callable
from datetime import date
from typing import Any

import geopandas as gpd
import numpy as np
from dagster import get_dagster_logger
from pydantic import ValidationError

from getsat.config.constants import (
    DEM_ASSET_KEY,
    DEM_COLLECTIONS,
    DEM_TILE_PATTERN,
    GMTED_MARGIN,
    GMTED_VARIABLE,
    LCCS_ALL_CLASSES,
    LCCS_CLASSES,
    LCCS_COLLECTION,
    LCCS_MARGIN,
    LCCS_YEARS,
    LULC_ASSET_KEY,
    LULC_CLASS_LABELS,
    LULC_COLLECTION,
    LULC_TILE_PATTERN,
    LULC_YEARS,
    MODIS_FAMILY_PREFIX,
    MODIS_TILE_PATTERN,
    TERRACLIMATE_COLLECTION,
    TERRACLIMATE_FIRST_YEAR,
    TERRACLIMATE_MARGIN,
    TERRACLIMATE_VARIABLES,
)
from getsat.connectors.settings import SettingsResource
from getsat.connectors.stac_client import STACResource
from getsat.errors import InvalidRequestError
from getsat.geospatial.collections import CollectionResolver
from getsat.geospatial.gridded import GMTED
from getsat.geospatial.stac_ops import CatalogClient, TileNaming
from getsat.models.models import CollectionDescriptor, RasterStack, RetrievalOptions, TimeRange, spatial_query
from getsat.pipeline import DataSource, Pipeline, RetrievalRequest
from getsat.retry import RetryingFetcher

logger = get_dagster_logger(__name__)

MODIS_SOURCE = DataSource(
    name="modis",
    family_prefix=MODIS_FAMILY_PREFIX,
    naming=TileNaming(pattern=MODIS_TILE_PATTERN),
)

DEM_SOURCES = {
    res: DataSource(
        name="elevation",
        collection=collection,
        asset_key=DEM_ASSET_KEY,
        naming=TileNaming(pattern=DEM_TILE_PATTERN),
    )
    for res, collection in DEM_COLLECTIONS.items()
}

LULC_SOURCE = DataSource(
    name="lulc",
    collection=LULC_COLLECTION,
    asset_key=LULC_ASSET_KEY,
    naming=TileNaming(pattern=LULC_TILE_PATTERN),
    reducer="mode",
)

TERRACLIMATE_SOURCE = DataSource(
    name="terraclimate",
    collection=TERRACLIMATE_COLLECTION,
    margin=TERRACLIMATE_MARGIN,
    file_based=True,
)

# Dominant class: position of the largest fractional cover among all classes
LCCS_DOMINANT_SOURCE = DataSource(
    name="lccs",
    collection=LCCS_COLLECTION,
    asset_key=LCCS_ALL_CLASSES,
    margin=LCCS_MARGIN,
    reducer="dominant",
    aggregator="mode",
    file_based=True,
)

LCCS_SOURCE = DataSource(name="lccs", collection=LCCS_COLLECTION, margin=LCCS_MARGIN, file_based=True)

LCCS_CLASS_LABELS = dict(enumerate(LCCS_CLASSES, start=1))

GMTED_SOURCES = {
    res: DataSource(
        name="elevation",
        collection=product.id,
        asset_key=GMTED_VARIABLE,
        margin=GMTED_MARGIN,
        file_based=True,
    )
    for res, product in GMTED.items()
}


def build_request(
    source: DataSource,
    where: Any,
    variable: str | None = None,
    time_range: Any = None,
    **options: Any,
) -> RetrievalRequest:
    """Validate caller input into a retrieval request.

    Nothing touches the network here, so every input error surfaces before
    any catalog call.

    :param source: Data source
    :param where: Bounding box, point coordinates or point GeoDataFrame
    :param variable: Variable name for sources without a fixed asset
    :param time_range: ``"start/end"`` string, date, pair or TimeRange
    :param options: RetrievalOptions fields
    :returns: RetrievalRequest
    :raises InvalidRequestError: On any invalid input
    """
    try:
        return RetrievalRequest(
            source=source,
            query=spatial_query(where),
            variable=variable,
            time_range=TimeRange.parse(time_range) if time_range is not None else None,
            options=RetrievalOptions(**options),
        )
    except ValidationError as e:
        raise InvalidRequestError(str(e)) from e


def fetch(
    source: DataSource,
    where: Any,
    variable: str | None = None,
    time_range: Any = None,
    pipeline: Pipeline | None = None,
    **options: Any,
) -> RasterStack | gpd.GeoDataFrame:
    """Run a retrieval for any data source.

    :param source: Data source
    :param where: Bounding box, point coordinates or point GeoDataFrame
    :param variable: Variable name for sources without a fixed asset
    :param time_range: Optional period
    :param pipeline: Pipeline to run on, built from environment settings if None
    :param options: RetrievalOptions fields
    :returns: RasterStack for boxes, GeoDataFrame for points
    """
    return run_request(build_request(source, where, variable, time_range, **options), pipeline)


def run_request(request: RetrievalRequest, pipeline: Pipeline | None = None) -> RasterStack | gpd.GeoDataFrame:
    """Run a validated request, on a pipeline built from environment settings if None."""
    if pipeline is None:
        pipeline = Pipeline.from_settings(SettingsResource.create())
    return pipeline.run(request)


def get_modis(
    where: Any, var: str, datetime: Any, pipeline: Pipeline | None = None, **options: Any
) -> RasterStack | gpd.GeoDataFrame:
    """Retrieve a MODIS variable.

    The collection is the first MODIS collection exposing ``var``, unless
    ``collection`` is passed explicitly.

    :param where: Bounding box, point coordinates or point GeoDataFrame
    :param var: Asset name, e.g. ``"LST_Day_1km"``
    :param datetime: Period, e.g. ``"2021-01-01/2021-03-31"``
    :param pipeline: Pipeline to run on
    :param options: RetrievalOptions fields
    :returns: RasterStack or GeoDataFrame
    """
    if not var:
        raise InvalidRequestError("A MODIS variable name is required")
    if datetime is None:
        raise InvalidRequestError("A MODIS time range is required")
    return fetch(MODIS_SOURCE, where, var, datetime, pipeline=pipeline, **options)


def get_dem(
    where: Any, res: int = 30, pipeline: Pipeline | None = None, **options: Any
) -> RasterStack | gpd.GeoDataFrame:
    """Retrieve Copernicus DEM elevations.

    :param where: Bounding box, point coordinates or point GeoDataFrame
    :param res: Resolution in metres, 30 or 90
    :param pipeline: Pipeline to run on
    :param options: RetrievalOptions fields
    :returns: RasterStack or GeoDataFrame
    """
    if res not in DEM_SOURCES:
        raise InvalidRequestError(f"DEM resolution must be one of {sorted(DEM_SOURCES)}, got {res}")
    return fetch(DEM_SOURCES[res], where, pipeline=pipeline, **options)


def get_lulc(
    where: Any, year: int = 2023, labels: bool = False, pipeline: Pipeline | None = None, **options: Any
) -> RasterStack | gpd.GeoDataFrame:
    """Retrieve annual 10 m land use / land cover.

    Overlapping tiles are combined with the modal class.

    :param where: Bounding box, point coordinates or point GeoDataFrame
    :param year: Map year
    :param labels: Replace class codes with class names in point results
    :param pipeline: Pipeline to run on
    :param options: RetrievalOptions fields
    :returns: RasterStack or GeoDataFrame
    """
    if year not in LULC_YEARS:
        raise InvalidRequestError(f"Land cover year must be between {LULC_YEARS[0]} and {LULC_YEARS[-1]}, got {year}")
    period = TimeRange(start=date(year, 1, 1), end=date(year, 12, 31))
    result = fetch(LULC_SOURCE, where, time_range=period, pipeline=pipeline, **options)
    if labels and isinstance(result, gpd.GeoDataFrame):
        return label_land_cover(result)
    return result


def label_land_cover(table: gpd.GeoDataFrame, labels: dict[int, str] = LULC_CLASS_LABELS) -> gpd.GeoDataFrame:
    """Map land-cover class codes to class names in every value column.

    :param table: Point extraction result
    :param labels: Class names by code
    :returns: Copy with labelled value columns; unknown or missing codes become None
    """
    labelled = table.copy()
    value_columns = [c for c in labelled.columns if c not in ("lon", "lat", labelled.geometry.name)]
    for column in value_columns:
        labelled[column] = [
            None if value is None or np.isnan(value) else labels.get(int(value))
            for value in labelled[column]
        ]
    return labelled


def get_terraclimate(
    where: Any, var: str = "pet", datetime: Any = None, pipeline: Pipeline | None = None, **options: Any
) -> RasterStack | gpd.GeoDataFrame:
    """Retrieve a TerraClimate monthly climate or water balance variable.

    Yearly files are downloaded once into the file cache and read for the
    requested window; every month whose first day lies in ``datetime`` is
    returned. Aggregate with ``agg_level="years"`` or ``"yearmonths"``.

    :param where: Bounding box, point coordinates or point GeoDataFrame
    :param var: Variable, e.g. ``"pet"``, ``"ppt"`` or ``"tmax"``
    :param datetime: Period, e.g. ``"2000-01-01/2001-12-31"``
    :param pipeline: Pipeline to run on
    :param options: RetrievalOptions fields
    :returns: RasterStack or GeoDataFrame
    """
    if var not in TERRACLIMATE_VARIABLES:
        raise InvalidRequestError(f"TerraClimate variable must be one of {sorted(TERRACLIMATE_VARIABLES)}, got {var!r}")
    if datetime is None:
        raise InvalidRequestError("A TerraClimate time range is required")
    request = build_request(TERRACLIMATE_SOURCE, where, var, datetime, **options)
    assert request.time_range is not None
    if request.time_range.start.year < TERRACLIMATE_FIRST_YEAR:
        raise InvalidRequestError(f"TerraClimate starts in {TERRACLIMATE_FIRST_YEAR}, got {request.time_range.start}")
    return run_request(request, pipeline)


def get_lccs(
    where: Any,
    year: int = 2020,
    pft: str | None = None,
    labels: bool = False,
    pipeline: Pipeline | None = None,
    **options: Any,
) -> RasterStack | gpd.GeoDataFrame:
    """Retrieve ESA CCI land cover as plant functional types.

    Without ``pft`` every class is read and each cell gets the code of its
    dominant class (1-based position in ``LCCS_CLASSES``); coarsening then
    keeps the modal class. With ``pft`` the fractional cover of that one
    class is returned and coarsening averages it.

    :param where: Bounding box, point coordinates or point GeoDataFrame
    :param year: Map year
    :param pft: Class name, e.g. ``"TREES-BD"``, None for the dominant class
    :param labels: Replace dominant class codes with class names in point results
    :param pipeline: Pipeline to run on
    :param options: RetrievalOptions fields, e.g. ``coarsen=10``
    :returns: RasterStack or GeoDataFrame
    """
    if year not in LCCS_YEARS:
        raise InvalidRequestError(f"LCCS year must be between {LCCS_YEARS[0]} and {LCCS_YEARS[-1]}, got {year}")
    if pft is not None and pft not in LCCS_CLASSES:
        raise InvalidRequestError(f"LCCS class must be one of {list(LCCS_CLASSES)}, got {pft!r}")
    period = TimeRange(start=date(year, 1, 1), end=date(year, 12, 31))
    if pft is not None:
        return fetch(LCCS_SOURCE, where, pft, period, pipeline=pipeline, **options)
    result = fetch(LCCS_DOMINANT_SOURCE, where, time_range=period, pipeline=pipeline, **options)
    if labels and isinstance(result, gpd.GeoDataFrame):
        return label_land_cover(result, LCCS_CLASS_LABELS)
    return result


def get_dem2(
    where: Any, res: float = 0.0625, pipeline: Pipeline | None = None, **options: Any
) -> RasterStack | gpd.GeoDataFrame:
    """Retrieve GMTED2010 elevations on a regular latitude/longitude grid.

    :param where: Bounding box, point coordinates or point GeoDataFrame
    :param res: Resolution in degrees, one of ``GMTED_URLS``
    :param pipeline: Pipeline to run on
    :param options: RetrievalOptions fields
    :returns: RasterStack or GeoDataFrame
    """
    if res not in GMTED_SOURCES:
        raise InvalidRequestError(f"GMTED resolution must be one of {sorted(GMTED_SOURCES)}, got {res}")
    return fetch(GMTED_SOURCES[res], where, pipeline=pipeline, **options)


def check_modis(
    max_attempts: int = 5,
    delay: float = 2,
    catalog: CatalogClient | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[CollectionDescriptor]:
    """List the MODIS collections of the catalog and the variables they expose.

    :param max_attempts: Attempts for the listing request
    :param delay: First backoff delay in seconds
    :param catalog: Catalog client, built from environment settings if None
    :param sleep: Sleep function used between retries
    :returns: Collection descriptors in catalog order
    """
    if catalog is None:
        catalog = STACResource(settings=SettingsResource.create()).create_catalog()
    fetcher = RetryingFetcher(max_attempts=max_attempts, initial_delay=delay, sleep=sleep)
    collections = CollectionResolver(catalog, fetcher, MODIS_FAMILY_PREFIX).list_family()
    logger.info(f"Found {len(collections)} MODIS collection(s)")
    return collections

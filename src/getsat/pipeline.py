"""Retrieval pipeline: resolve, query, fetch, assemble and post-process."""

import math
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from datetime import date
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any

import geopandas as gpd
import rasterio
from dagster import get_dagster_logger
from pydantic import BaseModel, ConfigDict, Field as PydanticField, model_validator

from getsat.config.constants import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POINT_MARGIN,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SEARCH_LIMIT,
    FILE_CACHE_DIRNAME,
)
from getsat.connectors.settings import SettingsResource
from getsat.connectors.stac_client import STACResource
from getsat.errors import FetchError, PipelineError, UnreachableAssetsError
from getsat.geospatial.assembly import TileAssembler
from getsat.geospatial.collections import CollectionResolver, Resolution
from getsat.geospatial.gridded import FileCatalog
from getsat.geospatial.postprocess import PostProcessor
from getsat.geospatial.raster_ops import REDUCERS, RasterEngine
from getsat.geospatial.stac_ops import CatalogClient, TileNaming
from getsat.geospatial.tiles import TileQuery, asset_exists
from getsat.models.models import (
    BoxQuery,
    PointSet,
    PointsQuery,
    RasterStack,
    RetrievalOptions,
    SpatialExtent,
    TileDescriptor,
    TimeRange,
)
from getsat.retry import RetryingFetcher
from getsat.storage import ScratchDirectory

logger = get_dagster_logger(__name__)


class PipelineStage(str, Enum):
    RESOLVING_COLLECTION = "resolving_collection"
    QUERYING = "querying"
    FETCHING = "fetching"
    ASSEMBLING = "assembling"
    POST_PROCESSING = "post_processing"
    DONE = "done"
    FAILED = "failed"


class DataSource(BaseModel):
    """How a dataset is found in the catalog and combined.

    A source either names a fixed collection or a family prefix whose
    collections are searched for the requested variable. Likewise the asset
    key is either fixed or taken from the variable name.

    :param name: Default value column name
    :param collection: Fixed collection id
    :param family_prefix: Collection id prefix used for variable resolution
    :param asset_key: Fixed asset key, None to use the variable name
    :param naming: Item id naming convention
    :param margin: Padding in degrees around point requests
    :param reducer: Mosaic reducer, also used for aggregation unless ``aggregator`` is set
    :param aggregator: Reducer for coarsening and temporal aggregation
    :param file_based: Served as whole files by the file catalog; files are
        always downloaded and kept for later calls
    """

    model_config = ConfigDict(frozen=True)

    name: str
    collection: str | None = None
    family_prefix: str | None = None
    asset_key: str | None = None
    naming: TileNaming = TileNaming()
    margin: float = PydanticField(default=DEFAULT_POINT_MARGIN, ge=0)
    reducer: str = "mean"
    aggregator: str | None = None
    file_based: bool = False

    @model_validator(mode="after")
    def _check_source(self) -> "DataSource":
        if self.collection is None and self.family_prefix is None:
            raise ValueError(f"Data source '{self.name}' needs a collection or a family prefix")
        for reducer in (self.reducer, self.aggregator):
            if reducer is not None and reducer not in REDUCERS:
                raise ValueError(f"Unknown reducer '{reducer}', expected one of {sorted(REDUCERS)}")
        return self

    @property
    def aggregation_reducer(self) -> str:
        return self.aggregator or self.reducer


class RetrievalRequest(BaseModel):
    """Validated request handed to the pipeline."""

    model_config = ConfigDict(frozen=True)

    source: DataSource
    query: BoxQuery | PointsQuery = PydanticField(..., discriminator="kind")
    variable: str | None = None
    time_range: TimeRange | None = None
    options: RetrievalOptions = PydanticField(default_factory=RetrievalOptions)

    @model_validator(mode="after")
    def _check_variable(self) -> "RetrievalRequest":
        if self.source.asset_key is None and not self.variable:
            raise ValueError(f"Data source '{self.source.name}' needs a variable name")
        return self

    @property
    def asset_key(self) -> str:
        return self.source.asset_key or self.variable  # type: ignore[return-value]

    @property
    def value_name(self) -> str:
        if self.source.asset_key is None and self.variable:
            return self.variable
        return self.source.name

    @property
    def extent(self) -> SpatialExtent:
        """Search extent: the box itself, or the padded bounds of the points."""
        if isinstance(self.query, BoxQuery):
            return self.query.extent
        return SpatialExtent.from_points(self.query.points, self.source.margin)

    @property
    def points(self) -> PointSet | None:
        return self.query.points if isinstance(self.query, PointsQuery) else None


class Pipeline:
    """Run retrieval requests against a catalog.

    ``stage`` tracks progress; any failure is re-raised as a
    ``PipelineError`` naming the stage it happened in. Sources marked
    ``file_based`` are searched in ``files`` instead of the STAC catalog.

    :param catalog: Catalog client, opened from ``settings`` on first use if None
    :param engine: Raster engine
    :param max_attempts: Default attempts per remote operation
    :param retry_delay: Default first backoff delay in seconds
    :param http_timeout: Default network timeout in seconds
    :param search_limit: Default catalog page size
    :param tmp_dir: Parent directory for temporary downloads and the file cache
    :param sleep: Sleep function used between retries
    :param exists: Asset reachability check
    :param files: Catalog of file-served products
    :param settings: Settings used to open the STAC catalog
    """

    def __init__(
        self,
        catalog: CatalogClient | None = None,
        engine: RasterEngine | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        search_limit: int = DEFAULT_SEARCH_LIMIT,
        tmp_dir: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        exists: Callable[[str, float], bool] = asset_exists,
        files: FileCatalog | None = None,
        settings: SettingsResource | None = None,
    ) -> None:
        self._catalog = catalog
        self.engine = engine or RasterEngine()
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.http_timeout = http_timeout
        self.search_limit = search_limit
        self.tmp_dir = tmp_dir
        self.sleep = sleep
        self.exists = exists
        self.files = files or FileCatalog()
        self.settings = settings
        self.stage: PipelineStage | None = None
        self.resolution: Resolution | None = None
        self.tiles: list[TileDescriptor] = []

    @classmethod
    def from_settings(
        cls, settings: SettingsResource, catalog: CatalogClient | None = None, **kwargs: Any
    ) -> "Pipeline":
        """Build a pipeline with the retry, timeout and scratch defaults of ``settings``.

        :param settings: Settings resource
        :param catalog: Catalog client, opened from ``settings`` when first needed if None
        :returns: Pipeline instance
        """
        return cls(
            catalog,
            max_attempts=settings.max_attempts,
            retry_delay=settings.retry_delay,
            http_timeout=settings.http_timeout,
            search_limit=settings.search_limit,
            tmp_dir=settings.tmp_dir or None,
            settings=settings,
            **kwargs,
        )

    @property
    def catalog(self) -> CatalogClient:
        if self._catalog is None:
            if self.settings is None:
                raise RuntimeError("Pipeline needs a catalog or the settings to open one")
            self._catalog = STACResource(settings=self.settings).create_catalog()
        return self._catalog

    @property
    def file_cache(self) -> Path:
        """Directory keeping file-served products between calls."""
        return Path(self.tmp_dir or tempfile.gettempdir()) / FILE_CACHE_DIRNAME

    def catalog_for(self, source: DataSource) -> CatalogClient | FileCatalog:
        return self.files if source.file_based else self.catalog

    @contextmanager
    def _stage(self, stage: PipelineStage) -> Iterator[None]:
        self.stage = stage
        logger.debug(f"Pipeline stage: {stage.value}")
        try:
            yield
        except PipelineError:
            self.stage = PipelineStage.FAILED
            raise
        except Exception as e:
            self.stage = PipelineStage.FAILED
            raise PipelineError(stage, e) from e

    def fetcher_for(self, options: RetrievalOptions) -> RetryingFetcher:
        return RetryingFetcher(
            max_attempts=options.max_attempts if options.max_attempts is not None else self.max_attempts,
            initial_delay=options.initial_delay if options.initial_delay is not None else self.retry_delay,
            sleep=self.sleep,
        )

    def _scratch(self, request: RetrievalRequest) -> ScratchDirectory:
        options = request.options
        if not request.source.file_based:
            return ScratchDirectory(options.output_dir, base_dir=self.tmp_dir, clean=options.clean_dir)
        return ScratchDirectory(options.output_dir or self.file_cache, clean=options.clean_dir, reuse=True)

    def run(self, request: RetrievalRequest) -> RasterStack | gpd.GeoDataFrame:
        """Execute a request.

        :param request: Retrieval request
        :returns: RasterStack for box queries, GeoDataFrame for point queries
        :raises PipelineError: Wrapping the failure of any stage
        """
        self.resolution = None
        self.tiles = []
        source = request.source
        options = request.options
        fetcher = self.fetcher_for(options)
        timeout = options.timeout or self.http_timeout
        limit = options.limit or self.search_limit
        extent = request.extent

        with rasterio.Env(GDAL_HTTP_TIMEOUT=int(math.ceil(timeout))):
            collection_id = options.collection or source.collection
            if collection_id is None:
                with self._stage(PipelineStage.RESOLVING_COLLECTION):
                    resolver = CollectionResolver(self.catalog_for(source), fetcher, source.family_prefix or "")
                    self.resolution = resolver.resolve(request.asset_key)
                    collection_id = self.resolution.selected.id
            else:
                logger.info(f"Using collection {collection_id}")

            with self._stage(PipelineStage.QUERYING):
                catalog = self.catalog_for(source)
                query = TileQuery(catalog, fetcher, request.asset_key, source.naming, timeout=timeout, exists=self.exists)
                tiles = query.search(collection_id, extent, request.time_range, limit)
                logger.info(f"Found {len(tiles)} tile(s) in {collection_id}")

            with ExitStack() as downloads:
                with self._stage(PipelineStage.FETCHING):
                    tiles = query.preflight(tiles)
                    if options.download or source.file_based:
                        scratch = downloads.enter_context(self._scratch(request))
                        tiles = self._download(scratch, tiles, fetcher, timeout)
                    self.tiles = tiles

                with self._stage(PipelineStage.ASSEMBLING):
                    stack = TileAssembler(self.engine, fetcher, source.reducer).assemble(
                        tiles, extent if options.crop else None
                    )

        with self._stage(PipelineStage.POST_PROCESSING):
            result = PostProcessor(self.engine).process(
                stack,
                extent=extent,
                points=request.points,
                gapfill_window=options.gapfill_window,
                coarsen=options.coarsen,
                agg_level=options.agg_level,
                crop=options.crop,
                name=request.value_name,
                reducer=source.aggregation_reducer,
            )

        self.stage = PipelineStage.DONE
        return result

    def _download(
        self,
        scratch: ScratchDirectory,
        tiles: list[TileDescriptor],
        fetcher: RetryingFetcher,
        timeout: float,
    ) -> list[TileDescriptor]:
        local = []
        failures: list[tuple[date, str, Any]] = []
        # Bands of one file share an asset and are fetched once
        outcomes: dict[str, Any] = {}
        for tile in tiles:
            if tile.asset_href not in outcomes:
                try:
                    outcomes[tile.asset_href] = fetcher.attempt(
                        partial(scratch.download, tile, tile.asset_href, timeout),
                        description=f"download of {tile.item_id}",
                    )
                except FetchError as e:
                    outcomes[tile.asset_href] = e.last_error
                except Exception as e:
                    outcomes[tile.asset_href] = e
            outcome = outcomes[tile.asset_href]
            if isinstance(outcome, BaseException):
                failures.append((tile.acquisition_date, tile.tile_id, outcome))
                continue
            local.append(tile.model_copy(update={"asset_href": str(outcome)}))

        if failures:
            raise UnreachableAssetsError("Tile assets could not be downloaded", failures)
        logger.info(f"Downloaded {len(set(outcomes))} asset file(s) for {len(local)} tile(s) to {scratch.path}")
        return local

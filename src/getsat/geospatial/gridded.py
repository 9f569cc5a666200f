"""Gridded products published as plain files, searched like catalog collections."""

from collections.abc import Iterable
from datetime import date
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from dagster import get_dagster_logger
from pydantic import BaseModel, ConfigDict

from getsat.config.constants import (
    GMTED_URLS,
    GMTED_VARIABLE,
    LCCS_ALL_CLASSES,
    LCCS_CLASSES,
    LCCS_COLLECTION,
    LCCS_URL_TEMPLATE,
    TERRACLIMATE_COLLECTION,
    TERRACLIMATE_URL_TEMPLATE,
    TERRACLIMATE_VARIABLES,
)
from getsat.errors import CatalogError, InvalidRequestError, VariableNotFound
from getsat.models.models import CollectionDescriptor, SpatialExtent, TileDescriptor, TimeRange

logger = get_dagster_logger(__name__)

GMTED_REFERENCE_DATE = date(2010, 1, 1)


class GriddedSource(BaseModel):
    """A product published as one file per year, or as a single file.

    Every layer of a file becomes one ``TileDescriptor``: a netCDF variable
    and, for monthly products, one of the twelve time steps.

    :param id: Collection id the product is searched under
    :param title: Human readable name
    :param url_template: File URL with ``{variable}``, ``{year}`` and ``{subdataset}`` placeholders
    :param variables: Layers the product offers
    :param all_variables: Variable name selecting every layer at once
    :param monthly: Files hold twelve monthly bands of one year
    :param reference_date: Date of a static product; yearly products are dated 1 January
    :param netcdf: Layers are netCDF variables of one file rather than separate files
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    url_template: str
    variables: tuple[str, ...] = ()
    all_variables: str | None = None
    monthly: bool = False
    reference_date: date | None = None
    netcdf: bool = True

    def descriptor(self) -> CollectionDescriptor:
        return CollectionDescriptor(id=self.id, title=self.title, variables=frozenset(self.variables))

    def _layer_names(self, variable: str) -> tuple[str, ...]:
        if self.all_variables is not None and variable == self.all_variables:
            return self.variables
        if self.variables and variable not in self.variables:
            raise VariableNotFound(variable)
        return (variable,)

    def _years(self, time_range: TimeRange | None) -> list[int | None]:
        if self.reference_date is not None:
            return [None]
        if time_range is None:
            raise InvalidRequestError(f"{self.id} is published per year and needs a time range")
        end = time_range.end or time_range.start
        return list(range(time_range.start.year, end.year + 1))

    def layers(self, variable: str, time_range: TimeRange | None) -> list[TileDescriptor]:
        """Layers of the files covering ``time_range``.

        Monthly layers are dated on the first day of their month.

        :param variable: Requested variable, or ``all_variables``
        :param time_range: Requested period; ignored for static products
        :returns: One descriptor per layer, by year, variable and month
        :raises VariableNotFound: If the product has no such variable
        """
        names = self._layer_names(variable)
        tiles = []
        for year in self._years(time_range):
            for name in names:
                url = self.url_template.format(variable=variable, year=year, subdataset=name)
                stem = Path(urlparse(url).path).stem
                for band in range(1, 13) if self.monthly else (1,):
                    if self.reference_date is not None:
                        acquired = self.reference_date
                    else:
                        assert year is not None
                        acquired = date(year, band if self.monthly else 1, 1)
                    tiles.append(
                        TileDescriptor(
                            collection_id=self.id,
                            item_id=stem,
                            acquisition_date=acquired,
                            tile_id=name,
                            asset_href=url,
                            band=band,
                            subdataset=name if self.netcdf else None,
                        )
                    )
        return tiles


TERRACLIMATE = GriddedSource(
    id=TERRACLIMATE_COLLECTION,
    title="TerraClimate monthly climate and climatic water balance",
    url_template=TERRACLIMATE_URL_TEMPLATE,
    variables=tuple(TERRACLIMATE_VARIABLES),
    monthly=True,
)

LCCS = GriddedSource(
    id=LCCS_COLLECTION,
    title="ESA CCI land cover plant functional types (300 m)",
    url_template=LCCS_URL_TEMPLATE,
    variables=LCCS_CLASSES,
    all_variables=LCCS_ALL_CLASSES,
)

GMTED = {
    res: GriddedSource(
        id=f"gmted2010-{res:g}deg",
        title=f"GMTED2010 elevation at {res:g} degrees",
        url_template=url,
        variables=(GMTED_VARIABLE,),
        reference_date=GMTED_REFERENCE_DATE,
    )
    for res, url in GMTED_URLS.items()
}


class FileCatalog:
    """Catalog interface over gridded products published as plain files.

    Searches need no network; every layer of the files covering the request
    is returned and the raster engine reads only the requested window.

    :param sources: Products to serve, the built-in ones by default
    """

    def __init__(self, sources: Iterable[GriddedSource] | None = None) -> None:
        if sources is None:
            sources = [TERRACLIMATE, LCCS, *GMTED.values()]
        self.sources = {source.id: source for source in sources}

    def list_collections(self) -> list[CollectionDescriptor]:
        return [source.descriptor() for source in self.sources.values()]

    def search(
        self,
        collection_id: str,
        extent: SpatialExtent,
        time_range: TimeRange | None,
        limit: int,
        asset_key: str,
        naming: Any,
    ) -> list[TileDescriptor]:
        """Layers of one product for a variable and period.

        :param collection_id: Product id
        :param extent: WGS84 extent, checked when the layers are read
        :param time_range: Optional period
        :param limit: Unused, files are not paged
        :param asset_key: Variable to read
        :param naming: Unused, layers are named by the product
        :returns: Tile descriptors
        :raises CatalogError: If the product is unknown
        """
        source = self.sources.get(collection_id)
        if source is None:
            raise CatalogError(f"Unknown gridded product '{collection_id}'. Available: {sorted(self.sources)}")
        tiles = source.layers(asset_key, time_range)
        logger.info(f"Found {len(tiles)} layer(s) of {collection_id} for bbox {extent.as_bbox()}")
        return tiles

    def resolve_asset_locator(self, tile: TileDescriptor) -> str:
        return tile.asset_href

"""Catalog tile search and asset reachability checks."""

from collections.abc import Callable
from datetime import date
from functools import partial
from pathlib import Path
from typing import Any

import requests
from dagster import get_dagster_logger

from getsat.config.constants import DEFAULT_HTTP_TIMEOUT, RETRYABLE_STATUS_CODES
from getsat.errors import FetchError, NoDataFound, TransientFetchError, UnreachableAssetsError
from getsat.geospatial.stac_ops import CatalogClient, TileNaming
from getsat.models.models import SpatialExtent, TileDescriptor, TimeRange
from getsat.retry import RetryingFetcher

logger = get_dagster_logger(__name__)


def asset_exists(uri: str, timeout: float = DEFAULT_HTTP_TIMEOUT) -> bool:
    """Check that an asset can be reached without downloading it.

    :param uri: URL or local path
    :param timeout: Request timeout in seconds
    :returns: True if the asset exists
    :raises TransientFetchError: On rate limiting or server errors
    """
    if not uri.startswith(("http://", "https://")):
        return Path(uri).exists()

    response = requests.head(uri, timeout=timeout, allow_redirects=True)
    if response.status_code == 405:
        with requests.get(uri, timeout=timeout, stream=True) as fallback:
            response = fallback
    if response.status_code in RETRYABLE_STATUS_CODES:
        raise TransientFetchError(f"HTTP {response.status_code} while checking {uri.split('?')[0]}")
    return response.status_code < 400


class TileQuery:
    """Search a collection for tiles and verify their assets.

    :param catalog: Catalog client
    :param fetcher: Retry policy for searches and checks
    :param asset_key: Asset holding the requested variable
    :param naming: Item id naming convention of the source
    :param timeout: Network timeout for asset checks
    :param exists: Reachability check, ``asset_exists`` by default
    """

    def __init__(
        self,
        catalog: CatalogClient,
        fetcher: RetryingFetcher,
        asset_key: str,
        naming: TileNaming,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        exists: Callable[[str, float], bool] = asset_exists,
    ) -> None:
        self.catalog = catalog
        self.fetcher = fetcher
        self.asset_key = asset_key
        self.naming = naming
        self.timeout = timeout
        self.exists = exists

    def search(
        self,
        collection_id: str,
        extent: SpatialExtent,
        time_range: TimeRange | None,
        limit: int,
    ) -> list[TileDescriptor]:
        """Tiles of ``collection_id`` matching the extent and period.

        :param collection_id: Collection to search
        :param extent: WGS84 extent
        :param time_range: Optional period; tiles dated outside it are dropped
        :param limit: Catalog page size; every matching item is returned
        :returns: Tile descriptors in catalog order
        :raises NoDataFound: If nothing matches
        """
        tiles = self.fetcher.attempt(
            lambda: self.catalog.search(collection_id, extent, time_range, limit, self.asset_key, self.naming),
            description=f"search of {collection_id}",
        )
        if time_range is not None:
            tiles = [tile for tile in tiles if time_range.contains(tile.acquisition_date)]

        if not tiles:
            period = f" during {time_range.to_stac()}" if time_range is not None else ""
            raise NoDataFound(f"No {collection_id} tiles found for bbox {extent.as_bbox()}{period}")
        return tiles

    def _locate(self, tile: TileDescriptor) -> tuple[str, bool]:
        uri = self.catalog.resolve_asset_locator(tile)
        return uri, self.exists(uri, self.timeout)

    def preflight(self, tiles: list[TileDescriptor]) -> list[TileDescriptor]:
        """Resolve every tile's locator and check that it is reachable.

        Locator resolution may itself be remote (Planetary Computer signing
        requests a token), so it is retried together with the check. Tiles
        sharing an asset, such as the bands of one file, are checked once.
        Every tile is checked before failing.

        :param tiles: Tiles returned by ``search``
        :returns: Copies of the tiles carrying resolved locators
        :raises UnreachableAssetsError: Listing every unreachable tile
        """
        located = []
        failures: list[tuple[date, str, Any]] = []
        outcomes: dict[str, Any] = {}
        for tile in tiles:
            if tile.asset_href not in outcomes:
                try:
                    outcomes[tile.asset_href] = self.fetcher.attempt(
                        partial(self._locate, tile), description=f"asset check of {tile.item_id}"
                    )
                except FetchError as e:
                    outcomes[tile.asset_href] = e.last_error
                except Exception as e:
                    outcomes[tile.asset_href] = e
            outcome = outcomes[tile.asset_href]
            if isinstance(outcome, BaseException):
                failures.append((tile.acquisition_date, tile.tile_id, outcome))
                continue
            uri, reachable = outcome
            if not reachable:
                failures.append((tile.acquisition_date, tile.tile_id, "asset not found"))
                continue
            logger.debug(f"Asset of {tile.item_id} is reachable")
            located.append(tile.model_copy(update={"asset_href": uri}))

        if failures:
            raise UnreachableAssetsError("Unreachable tile assets", failures)
        return located

"""STAC operations: collection listing, item search and asset signing."""

import re
from datetime import date, datetime, timedelta
from typing import Any

from dagster import get_dagster_logger
from planetary_computer import sign
from pydantic import BaseModel, ConfigDict

from getsat.errors import CatalogError
from getsat.models.models import (
    CollectionDescriptor,
    SpatialExtent,
    TileDescriptor,
    TimeRange,
    acquisition_date_from_item,
)

logger = get_dagster_logger(__name__)


class TileNaming(BaseModel):
    """Naming convention used to decode item ids.

    The pattern may define the named groups ``tile`` (grid cell), ``year``,
    ``doy`` (day of year) and ``date`` (``YYYYMMDD``). Missing date groups
    fall back to the item's ``datetime`` property.

    :param pattern: Regular expression searched in the item id
    """

    model_config = ConfigDict(frozen=True)

    pattern: str | None = None

    def decode(self, item_id: str) -> tuple[date | None, str | None]:
        """Decode acquisition date and grid cell from an item id.

        :param item_id: STAC item id
        :returns: Tuple of (date or None, tile token or None)
        """
        if self.pattern is None:
            return None, None
        match = re.search(self.pattern, item_id)
        if match is None:
            return None, None
        groups = match.groupdict()
        tile = groups.get("tile")
        if groups.get("date"):
            return datetime.strptime(groups["date"], "%Y%m%d").date(), tile
        if groups.get("year") and groups.get("doy"):
            return date(int(groups["year"]), 1, 1) + timedelta(days=int(groups["doy"]) - 1), tile
        if groups.get("year"):
            return date(int(groups["year"]), 1, 1), tile
        return None, tile


def parse_tile(item: dict[str, Any], collection_id: str, asset_key: str, naming: TileNaming) -> TileDescriptor:
    """Build a tile descriptor from a STAC item dictionary.

    :param item: STAC item as a dictionary
    :param collection_id: Collection searched
    :param asset_key: Asset holding the requested variable
    :param naming: Item id naming convention
    :returns: TileDescriptor
    :raises CatalogError: If the item lacks an id, a date or the asset
    """
    item_id = item.get("id")
    if not isinstance(item_id, str) or not item_id:
        raise CatalogError(f"Item without an id in collection {collection_id}")

    acquired, tile_id = naming.decode(item_id)
    if acquired is None:
        acquired = acquisition_date_from_item(item)
    if acquired is None:
        raise CatalogError(f"Cannot determine the acquisition date of item {item_id}")

    assets = item.get("assets") or {}
    asset = assets.get(asset_key)
    if not asset or not asset.get("href"):
        raise CatalogError(f"Item {item_id} has no '{asset_key}' asset. Available: {sorted(assets)}")

    return TileDescriptor(
        collection_id=item.get("collection") or collection_id,
        item_id=item_id,
        acquisition_date=acquired,
        tile_id=tile_id or item_id,
        asset_href=asset["href"],
    )


class CatalogClient:
    """Typed facade over a ``pystac_client.Client``.

    :param stac_client: Opened STAC API client
    :param sign_assets: Sign Planetary Computer asset URLs
    """

    def __init__(self, stac_client: Any, sign_assets: bool = True) -> None:
        self.stac_client = stac_client
        self.sign_assets = sign_assets

    def list_collections(self) -> list[CollectionDescriptor]:
        """List every collection of the catalog in catalog order.

        :returns: Collection descriptors
        """
        return [CollectionDescriptor.from_stac(c.to_dict()) for c in self.stac_client.get_collections()]

    def search(
        self,
        collection_id: str,
        extent: SpatialExtent,
        time_range: TimeRange | None,
        limit: int,
        asset_key: str,
        naming: TileNaming,
    ) -> list[TileDescriptor]:
        """Search items of one collection intersecting an extent and period.

        :param collection_id: Collection to search
        :param extent: WGS84 extent
        :param time_range: Optional period
        :param limit: Page size; pages are followed until the search is exhausted
        :param asset_key: Asset holding the variable
        :param naming: Item id naming convention
        :returns: Tile descriptors in catalog order
        """
        search_kwargs: dict[str, Any] = {
            "collections": [collection_id],
            "bbox": extent.as_bbox(),
            "limit": limit,
            "max_items": None,
        }
        if time_range is not None:
            search_kwargs["datetime"] = time_range.to_stac()

        items = list(self.stac_client.search(**search_kwargs).items_as_dicts())
        logger.info(f"Found {len(items)} item(s) in {collection_id} for bbox {extent.as_bbox()}")
        return [parse_tile(item, collection_id, asset_key, naming) for item in items]

    def resolve_asset_locator(self, tile: TileDescriptor) -> str:
        """Locator used to read a tile's asset, signed when required.

        :param tile: Tile descriptor
        :returns: URI
        """
        if self.sign_assets and tile.asset_href.startswith("http"):
            return str(sign(tile.asset_href))
        return tile.asset_href

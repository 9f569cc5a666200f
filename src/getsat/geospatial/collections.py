"""Resolve a variable name to the catalog collection exposing it."""

from dagster import get_dagster_logger
from pydantic import BaseModel, ConfigDict

from getsat.errors import CollectionNotFound, VariableNotFound
from getsat.geospatial.stac_ops import CatalogClient
from getsat.models.models import CollectionDescriptor
from getsat.retry import RetryingFetcher

logger = get_dagster_logger(__name__)


class Resolution(BaseModel):
    """Selected collection plus the other collections exposing the variable."""

    model_config = ConfigDict(frozen=True)

    variable: str
    selected: CollectionDescriptor
    alternatives: tuple[CollectionDescriptor, ...] = ()


class CollectionResolver:
    """Find the collection of a dataset family that exposes a variable.

    The catalog index is fetched on every call; nothing is cached.

    :param catalog: Catalog client
    :param fetcher: Retry policy for the index request
    :param family_prefix: Collection id prefix of the family (e.g. ``"modis"``)
    """

    def __init__(self, catalog: CatalogClient, fetcher: RetryingFetcher, family_prefix: str) -> None:
        self.catalog = catalog
        self.fetcher = fetcher
        self.family_prefix = family_prefix

    def list_family(self) -> list[CollectionDescriptor]:
        """Collections whose id starts with the family prefix, in catalog order.

        :returns: Collection descriptors
        :raises CollectionNotFound: If the family has no collection
        """
        collections = self.fetcher.attempt(self.catalog.list_collections, description="collection listing")
        family = [c for c in collections if c.id.startswith(self.family_prefix)]
        if not family:
            raise CollectionNotFound(self.family_prefix)
        return family

    def resolve(self, variable: str) -> Resolution:
        """Pick the collection exposing ``variable``.

        When several collections match, the first in catalog order wins and
        the others are returned as alternatives.

        :param variable: Variable (asset) name
        :returns: Resolution
        :raises VariableNotFound: If no collection exposes the variable
        """
        matches = [c for c in self.list_family() if variable in c.variables]
        if not matches:
            raise VariableNotFound(variable)

        resolution = Resolution(variable=variable, selected=matches[0], alternatives=tuple(matches[1:]))
        if resolution.alternatives:
            logger.info(
                f"{variable} has been found in collection(s): {', '.join(c.id for c in matches)}; "
                f"using {resolution.selected.id}"
            )
        else:
            logger.info(f"{variable} has been found in collection {resolution.selected.id}")
        return resolution

"""STAC client connector for STAC API operations."""

from typing import Any

from dagster import ConfigurableResource
from pystac_client import Client

from getsat.connectors.settings import SettingsResource
from getsat.geospatial.stac_ops import CatalogClient


class STACResource(ConfigurableResource[Any]):
    """STAC resource for creating STAC API clients."""

    settings: SettingsResource

    def create_client(self) -> Any:
        """Create STAC client.

        :returns: Configured STAC client
        """
        return Client.open(self.settings.stac_api_url, timeout=self.settings.http_timeout)

    def create_catalog(self) -> CatalogClient:
        """Create the typed catalog facade used by the retrieval pipeline.

        :returns: CatalogClient wrapping a new STAC client
        """
        return CatalogClient(self.create_client(), sign_assets=self.settings.sign_assets)

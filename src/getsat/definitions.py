"""Dagster definitions for the raster retrieval pipeline."""

from dagster import Definitions, load_assets_from_modules

from getsat import assets  # noqa: TID252
from getsat.connectors.settings import SettingsResource
from getsat.connectors.stac_client import STACResource
from getsat.triggers.jobs import raster_stack_job

all_assets = load_assets_from_modules([assets])

settings = SettingsResource.create(swallow_errors=True)

defs = Definitions(
    assets=all_assets,
    jobs=[raster_stack_job],
    resources={
        "stac": STACResource(settings=settings),
        "settings": settings,
    },
)

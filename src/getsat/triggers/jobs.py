"""Dagster job definitions for asset materialization."""

from dagster import define_asset_job

raster_stack_job = define_asset_job(name="raster_stack_job", selection=["raster_stack"])

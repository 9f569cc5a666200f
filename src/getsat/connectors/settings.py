"""Settings resource for managing configuration from environment variables."""

import os
from pathlib import Path
from typing import Any

from dagster import ConfigurableResource

from getsat.config.constants import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_STAC_API_URL,
    DEFAULT_TMP_DIR,
)


class SettingsResource(ConfigurableResource[Any]):
    """Catalog, retry and scratch settings, overridable from the environment."""

    stac_api_url: str = DEFAULT_STAC_API_URL
    tmp_dir: str = DEFAULT_TMP_DIR
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    search_limit: int = DEFAULT_SEARCH_LIMIT
    sign_assets: bool = True

    @staticmethod
    def create(swallow_errors: bool = False) -> "SettingsResource":
        """Create SettingsResource from environment variables.

        Each field is read from its upper-cased name (``STAC_API_URL``,
        ``MAX_ATTEMPTS``...); unset variables keep the defaults.

        :param swallow_errors: If True, ignore validation errors
        :returns: SettingsResource instance
        """
        env_values: dict[str, Any] = {}
        for attr_name, field in SettingsResource.model_fields.items():
            raw = os.environ.get(attr_name.upper())
            if raw is None or raw == "":
                continue
            if field.annotation is bool:
                env_values[attr_name] = raw.strip().lower() in ("true", "1", "yes", "y", "on")
            elif field.annotation is int:
                env_values[attr_name] = int(raw)
            elif field.annotation is float:
                env_values[attr_name] = float(raw)
            else:
                env_values[attr_name] = raw

        settings = SettingsResource(**env_values)
        try:
            settings._post_init()
        except (TypeError, ValueError):
            if not swallow_errors:
                raise
        return settings

    def create_tmp_dir(self) -> None:
        """Create temporary directory if missing."""
        if self.tmp_dir:
            Path(self.tmp_dir).mkdir(parents=True, exist_ok=True)

    def validate_settings(self) -> None:
        """Validate settings values."""
        problems = []
        if not self.stac_api_url:
            problems.append("STAC_API_URL must not be empty")
        if self.max_attempts < 1:
            problems.append(f"MAX_ATTEMPTS must be at least 1, got {self.max_attempts}")
        if self.retry_delay < 0:
            problems.append(f"RETRY_DELAY must be non-negative, got {self.retry_delay}")
        if self.http_timeout <= 0:
            problems.append(f"HTTP_TIMEOUT must be positive, got {self.http_timeout}")
        if self.search_limit < 1:
            problems.append(f"SEARCH_LIMIT must be at least 1, got {self.search_limit}")
        if problems:
            raise ValueError(f"Invalid settings: {'; '.join(problems)}")

    def _post_init(self) -> None:
        self.create_tmp_dir()
        self.validate_settings()

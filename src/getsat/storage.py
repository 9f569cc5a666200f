"""Local storage for downloaded tile assets."""

import shutil
import tempfile
from pathlib import Path
from types import TracebackType
from urllib.parse import urlparse

import requests
from dagster import get_dagster_logger

from getsat.config.constants import DEFAULT_HTTP_TIMEOUT, RETRYABLE_STATUS_CODES
from getsat.errors import TransientFetchError
from getsat.models.models import TileDescriptor

logger = get_dagster_logger(__name__)


def tile_filename(tile: TileDescriptor) -> str:
    """File name for a downloaded tile asset.

    :param tile: Tile descriptor
    :returns: ``<item_id>-<asset file name>``, or the file name alone when it
        already starts with the item id
    """
    name = Path(urlparse(tile.asset_href).path).name or "asset.tif"
    if name.startswith(tile.item_id):
        return name
    return f"{tile.item_id}-{name}"


def download_asset(uri: str, target: Path, timeout: float = DEFAULT_HTTP_TIMEOUT) -> Path:
    """Download (or copy) an asset to ``target``, overwriting it.

    The content is written to a temporary sibling first so an interrupted
    download never leaves a truncated file behind.

    :param uri: URL or local path
    :param target: Destination file
    :param timeout: Request timeout in seconds
    :returns: Destination path
    :raises TransientFetchError: On rate limiting or server errors
    """
    partial_path = target.with_name(target.name + ".part")
    try:
        if not uri.startswith(("http://", "https://")):
            shutil.copyfile(uri, partial_path)
        else:
            with requests.get(uri, stream=True, timeout=timeout) as response:
                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise TransientFetchError(f"HTTP {response.status_code} while downloading {uri.split('?')[0]}")
                response.raise_for_status()
                with open(partial_path, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=1 << 20):
                        fh.write(chunk)
    except BaseException:
        partial_path.unlink(missing_ok=True)
        raise
    partial_path.replace(target)
    return target


class ScratchDirectory:
    """Download directory that only ever removes what it created itself.

    :param directory: Directory to use, or None for a new temporary one
    :param base_dir: Parent of the temporary directory when ``directory`` is None
    :param clean: Remove created files (and the directory, if created) on exit
    :param reuse: Keep files already present instead of downloading them again
    """

    def __init__(
        self, directory: Path | None, base_dir: str | None = None, clean: bool = False, reuse: bool = False
    ) -> None:
        self.requested = directory
        self.base_dir = base_dir
        self.clean = clean
        self.reuse = reuse
        self.path: Path | None = None
        self.created_files: list[Path] = []
        self._created_dir = False

    def __enter__(self) -> "ScratchDirectory":
        if self.requested is None:
            if self.base_dir:
                Path(self.base_dir).mkdir(parents=True, exist_ok=True)
            self.path = Path(tempfile.mkdtemp(prefix="getsat-", dir=self.base_dir))
            self._created_dir = True
        else:
            self.path = Path(self.requested)
            self._created_dir = not self.path.exists()
            self.path.mkdir(parents=True, exist_ok=True)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self.clean:
            self.cleanup()

    def download(self, tile: TileDescriptor, uri: str, timeout: float = DEFAULT_HTTP_TIMEOUT) -> Path:
        """Download a tile asset into the directory and remember new files.

        :param tile: Tile descriptor
        :param uri: Resolved (signed) locator
        :param timeout: Request timeout in seconds
        :returns: Local path of the asset
        """
        if self.path is None:
            raise RuntimeError("ScratchDirectory must be entered before downloading")
        target = self.path / tile_filename(tile)
        existed = target.exists()
        if existed and self.reuse:
            logger.debug(f"Reusing {target}")
            return target
        download_asset(uri, target, timeout=timeout)
        if not existed and target not in self.created_files:
            self.created_files.append(target)
        logger.debug(f"Downloaded {tile.item_id} to {target}")
        return target

    def cleanup(self) -> None:
        """Delete created files, then the directory if it was created and is empty."""
        for path in self.created_files:
            path.unlink(missing_ok=True)
        self.created_files = []
        if self._created_dir and self.path is not None and self.path.exists() and not any(self.path.iterdir()):
            self.path.rmdir()

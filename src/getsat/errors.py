"""Exception hierarchy for catalog retrieval and raster assembly."""

from collections.abc import Iterable
from datetime import date
from typing import Any


class RetrievalError(Exception):
    """Base class for every error raised by getsat."""


class InvalidRequestError(RetrievalError, ValueError):
    """Request rejected before any network activity."""


class TransientFetchError(RetrievalError):
    """Marks a failure worth retrying (rate limits, 5xx, dropped connections)."""


class FetchError(RetrievalError):
    """Remote operation still failing after all retry attempts.

    :param description: Operation that was attempted
    :param attempts: Number of attempts made
    :param last_error: Cause of the final failed attempt
    """

    def __init__(self, description: str, attempts: int, last_error: BaseException) -> None:
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{description} failed after {attempts} attempt(s): {last_error}")


class CatalogError(RetrievalError):
    """Catalog returned an entry that cannot be parsed."""


class ResolutionError(RetrievalError):
    """Variable could not be mapped to a catalog collection."""


class CollectionNotFound(ResolutionError):
    """No collection of the requested family exists in the catalog."""

    def __init__(self, family: str) -> None:
        self.family = family
        super().__init__(f"No collections with prefix '{family}' found in the catalog")


class VariableNotFound(ResolutionError):
    """Variable is not exposed by any collection of the family."""

    def __init__(self, variable: str) -> None:
        self.variable = variable
        super().__init__(f"{variable} was not found in any collection")


class NoDataFound(RetrievalError):
    """Catalog search succeeded but matched no tiles."""


class PartialAssetError(RetrievalError):
    """Some tiles of a request could not be used.

    :param message: Summary of the failure
    :param failures: Tuples of (acquisition_date, tile_id, cause)
    """

    def __init__(self, message: str, failures: Iterable[tuple[date, str, Any]]) -> None:
        self.failures = list(failures)
        listing = "; ".join(f"{day.isoformat()} {tile_id}: {cause}" for day, tile_id, cause in self.failures)
        super().__init__(f"{message} ({len(self.failures)} tile(s)): {listing}")


class UnreachableAssetsError(PartialAssetError):
    """Preflight check found assets that cannot be reached."""


class TileAssemblyError(PartialAssetError):
    """Tiles could not be opened or clipped while building frames."""


class PipelineError(RetrievalError):
    """A pipeline stage failed; the original error is kept as ``cause``.

    :param stage: Stage that failed
    :param cause: Underlying exception
    """

    def __init__(self, stage: Any, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        stage_name = getattr(stage, "value", stage)
        super().__init__(f"Pipeline failed while {stage_name}: {cause}")

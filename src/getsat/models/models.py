"""Data models for spatial queries, catalog descriptors and raster stacks."""

from collections.abc import Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any, Literal

import geopandas as gpd
import numpy as np
import rasterio
from pydantic import BaseModel, ConfigDict, Field as PydanticField, field_validator, model_validator
from shapely.geometry import MultiPoint, Point
from shapely.geometry.base import BaseGeometry

from getsat.config.constants import OUTPUT_CRS
from getsat.errors import CatalogError, InvalidRequestError
from getsat.geospatial.temporal import parse_bucket_rule


class SpatialExtent(BaseModel):
    """Bounding box in WGS84 longitude/latitude.

    :param west: Minimum longitude
    :param south: Minimum latitude
    :param east: Maximum longitude
    :param north: Maximum latitude
    """

    model_config = ConfigDict(frozen=True)

    west: float = PydanticField(..., ge=-180, le=180)
    south: float = PydanticField(..., ge=-90, le=90)
    east: float = PydanticField(..., ge=-180, le=180)
    north: float = PydanticField(..., ge=-90, le=90)

    @model_validator(mode="after")
    def _check_order(self) -> "SpatialExtent":
        if self.west >= self.east or self.south >= self.north:
            raise ValueError(
                "Bounding box must be in the format (west, south, east, north) with west < east and south < north"
            )
        return self

    @classmethod
    def from_bbox(cls, bbox: Sequence[float]) -> "SpatialExtent":
        """Create extent from a ``(west, south, east, north)`` sequence.

        :param bbox: Four bounds
        :returns: SpatialExtent instance
        """
        if len(bbox) != 4:
            raise InvalidRequestError(f"Bounding box needs exactly 4 values, got {len(bbox)}")
        west, south, east, north = (float(v) for v in bbox)
        return cls(west=west, south=south, east=east, north=north)

    @classmethod
    def from_points(cls, points: "PointSet", margin: float) -> "SpatialExtent":
        """Bounds of a point set padded by ``margin`` degrees, clamped to the globe.

        :param points: Point set
        :param margin: Padding in degrees
        :returns: SpatialExtent instance
        """
        lons = [lon for lon, _ in points.points]
        lats = [lat for _, lat in points.points]
        return cls(
            west=max(min(lons) - margin, -180.0),
            south=max(min(lats) - margin, -90.0),
            east=min(max(lons) + margin, 180.0),
            north=min(max(lats) + margin, 90.0),
        )

    def as_bbox(self) -> list[float]:
        """Return ``[west, south, east, north]``."""
        return [self.west, self.south, self.east, self.north]


class PointSet(BaseModel):
    """Ordered WGS84 ``(lon, lat)`` points."""

    model_config = ConfigDict(frozen=True)

    points: tuple[tuple[float, float], ...]

    @field_validator("points")
    @classmethod
    def _check_points(cls, value: tuple[tuple[float, float], ...]) -> tuple[tuple[float, float], ...]:
        if not value:
            raise ValueError("Point set must contain at least one point")
        for lon, lat in value:
            if not (-180 <= lon <= 180 and -90 <= lat <= 90):
                raise ValueError(f"Point ({lon}, {lat}) is outside valid longitude/latitude ranges")
        return value

    def __len__(self) -> int:
        return len(self.points)

    @property
    def lons(self) -> list[float]:
        return [lon for lon, _ in self.points]

    @property
    def lats(self) -> list[float]:
        return [lat for _, lat in self.points]


class TimeRange(BaseModel):
    """Inclusive date range, or a single instant when ``end`` is None."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date | None = None

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.end is not None and self.end < self.start:
            raise ValueError(f"Time range start {self.start} is after end {self.end}")
        return self

    @classmethod
    def parse(cls, value: "str | date | Sequence[str | date] | TimeRange") -> "TimeRange":
        """Build a range from ``"start/end"``, a single date, or a pair.

        :param value: Range, single date, "start/end" string or pair
        :returns: TimeRange instance
        """
        if isinstance(value, TimeRange):
            return value
        if isinstance(value, date):
            return cls(start=value)
        if isinstance(value, str):
            parts = value.split("/")
            if len(parts) == 1:
                return cls(start=parts[0])
            if len(parts) == 2:
                return cls(start=parts[0], end=parts[1])
            raise InvalidRequestError(f"Cannot parse time range '{value}'")
        if len(value) == 2:
            return cls(start=value[0], end=value[1])
        raise InvalidRequestError(f"Cannot parse time range {value!r}")

    def to_stac(self) -> str:
        """Render as a STAC ``datetime`` search parameter."""
        if self.end is None:
            return self.start.isoformat()
        return f"{self.start.isoformat()}/{self.end.isoformat()}"

    def contains(self, day: date) -> bool:
        end = self.end if self.end is not None else self.start
        return self.start <= day <= end


class BoxQuery(BaseModel):
    """Area request: the result is a raster stack."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["box"] = "box"
    extent: SpatialExtent


class PointsQuery(BaseModel):
    """Point request: the result is a table of sampled values."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["points"] = "points"
    points: PointSet


SpatialQuery = BoxQuery | PointsQuery


def spatial_query(where: Any) -> SpatialQuery:
    """Convert caller input into a tagged spatial query.

    Four numbers are a ``(west, south, east, north)`` box; an ``(n, 2)``
    sequence or array, or a GeoDataFrame of points, is a point set. Shapely
    points and multipoints are point sets; other geometries query their bounds.

    :param where: Box, point coordinates, shapely geometry or point GeoDataFrame
    :returns: BoxQuery or PointsQuery
    """
    if isinstance(where, (BoxQuery, PointsQuery)):
        return where
    if isinstance(where, SpatialExtent):
        return BoxQuery(extent=where)
    if isinstance(where, PointSet):
        return PointsQuery(points=where)
    if isinstance(where, gpd.GeoDataFrame):
        if not (where.geometry.geom_type == "Point").all():
            raise InvalidRequestError("GeoDataFrame input must contain only point geometries")
        gdf = where.to_crs(OUTPUT_CRS) if where.crs is not None else where
        return PointsQuery(points=PointSet(points=tuple((g.x, g.y) for g in gdf.geometry)))
    if isinstance(where, BaseGeometry):
        if where.is_empty:
            raise InvalidRequestError("Geometry input must not be empty")
        if isinstance(where, Point):
            return PointsQuery(points=PointSet(points=((where.x, where.y),)))
        if isinstance(where, MultiPoint):
            return PointsQuery(points=PointSet(points=tuple((p.x, p.y) for p in where.geoms)))
        return BoxQuery(extent=SpatialExtent.from_bbox(where.bounds))

    try:
        array = np.asarray(where, dtype="float64")
    except (TypeError, ValueError) as e:
        raise InvalidRequestError(f"Cannot interpret {where!r} as coordinates") from e
    if array.ndim == 1 and array.shape[0] == 4:
        return BoxQuery(extent=SpatialExtent.from_bbox(array.tolist()))
    if array.ndim == 2 and array.shape[1] == 2:
        return PointsQuery(points=PointSet(points=tuple((float(x), float(y)) for x, y in array)))
    raise InvalidRequestError(
        "'where' must be 4 numbers (bounding box) or an (n, 2) collection of (longitude, latitude) points"
    )


class CollectionDescriptor(BaseModel):
    """Catalog collection and the variables (asset keys) it exposes."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    variables: frozenset[str] = frozenset()

    @classmethod
    def from_stac(cls, collection: dict[str, Any]) -> "CollectionDescriptor":
        """Parse a STAC collection document.

        :param collection: Collection as a dictionary
        :returns: CollectionDescriptor instance
        :raises CatalogError: If the collection has no id
        """
        collection_id = collection.get("id")
        if not isinstance(collection_id, str) or not collection_id:
            raise CatalogError(f"Collection entry without an id: {sorted(collection)}")
        item_assets = collection.get("item_assets") or {}
        return cls(
            id=collection_id,
            title=collection.get("title") or "",
            description=collection.get("description") or "",
            variables=frozenset(item_assets),
        )


class TileDescriptor(BaseModel):
    """One catalog item restricted to the asset being retrieved.

    ``band`` and ``subdataset`` select one layer of a multi-layer file
    (a netCDF variable and its time step); catalog tiles use the defaults.
    """

    model_config = ConfigDict(frozen=True)

    collection_id: str
    item_id: str
    acquisition_date: date
    tile_id: str
    asset_href: str
    band: int = 1
    subdataset: str | None = None


class Frame(BaseModel):
    """Single-date raster grid; NaN marks missing data.

    :param data: 2-D float32 array
    :param transform: Affine transform of the grid
    :param crs: Coordinate reference system
    :param date: Acquisition (or bucket start) date
    :param label: Band label, defaults to the ISO date
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: Any
    transform: Any
    crs: str
    date: date
    label: str = ""

    @model_validator(mode="before")
    @classmethod
    def _default_label(cls, values: Any) -> Any:
        if isinstance(values, dict) and not values.get("label"):
            day = values.get("date")
            values = {**values, "label": day.isoformat() if isinstance(day, date) else str(day)}
        return values

    @property
    def shape(self) -> tuple[int, int]:
        return tuple(self.data.shape)  # type: ignore[return-value]

    @property
    def resolution(self) -> tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """Return ``(left, bottom, right, top)`` in the frame CRS."""
        height, width = self.shape
        left, top = self.transform * (0, 0)
        right, bottom = self.transform * (width, height)
        return min(left, right), min(top, bottom), max(left, right), max(top, bottom)

    def replace(self, **changes: Any) -> "Frame":
        return self.model_copy(update=changes)


class RasterStack(BaseModel):
    """Frames ordered by strictly increasing date."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    frames: tuple[Frame, ...] = ()

    @field_validator("frames")
    @classmethod
    def _check_dates(cls, frames: tuple[Frame, ...]) -> tuple[Frame, ...]:
        for previous, current in zip(frames, frames[1:]):
            if current.date <= previous.date:
                raise ValueError(f"Frames must be strictly ascending by date: {previous.date} then {current.date}")
        return frames

    def __len__(self) -> int:
        return len(self.frames)

    def __getitem__(self, index: int) -> Frame:
        return self.frames[index]

    @property
    def dates(self) -> list[date]:
        return [frame.date for frame in self.frames]

    @property
    def labels(self) -> list[str]:
        return [frame.label for frame in self.frames]

    def to_array(self) -> np.ndarray:
        """Stack frame data into a ``(time, rows, cols)`` array."""
        if not self.frames:
            return np.empty((0, 0, 0), dtype="float32")
        return np.stack([frame.data for frame in self.frames])

    def to_geotiff(self, path: str | Path) -> Path:
        """Write the stack as a multi-band GeoTIFF, one band per frame.

        :param path: Output file path
        :returns: Path written
        """
        if not self.frames:
            raise ValueError("Cannot write an empty raster stack")
        first = self.frames[0]
        height, width = first.shape
        path = Path(path)
        with rasterio.open(
            path,
            "w",
            driver="GTiff",
            height=height,
            width=width,
            count=len(self.frames),
            dtype="float32",
            crs=first.crs,
            transform=first.transform,
            nodata=np.nan,
        ) as dst:
            for band, frame in enumerate(self.frames, start=1):
                dst.write(frame.data.astype("float32"), band)
                dst.set_band_description(band, frame.label)
        return path


class RetrievalOptions(BaseModel):
    """Per-call options shared by every data source entry point.

    :param collection: Explicit collection id, skips resolution
    :param crop: Clip results to the requested extent
    :param gapfill_window: Odd moving-window size used to fill missing cells
    :param coarsen: Block size for aggregating cells to a coarser grid, None to keep the grid
    :param agg_level: Temporal aggregation rule (e.g. ``"month"``)
    :param download: Persist tiles locally instead of streaming them
    :param output_dir: Directory for downloaded tiles
    :param clean_dir: Remove downloaded files created by this call
    :param max_attempts: Retry attempts per remote operation, None for the pipeline default
    :param initial_delay: First backoff delay in seconds, None for the pipeline default
    :param timeout: Network timeout in seconds, None for the pipeline default
    :param limit: Catalog page size for searches, None for the pipeline default
    """

    model_config = ConfigDict(frozen=True)

    collection: str | None = None
    crop: bool = True
    gapfill_window: int | None = None
    coarsen: int | None = PydanticField(default=None, ge=2)
    agg_level: str | None = None
    download: bool = False
    output_dir: Path | None = None
    clean_dir: bool = False
    max_attempts: int | None = PydanticField(default=None, ge=1)
    initial_delay: float | None = PydanticField(default=None, ge=0)
    timeout: float | None = PydanticField(default=None, gt=0)
    limit: int | None = PydanticField(default=None, ge=1)

    @field_validator("gapfill_window")
    @classmethod
    def _check_window(cls, value: int | None) -> int | None:
        if value is not None and (value < 3 or value % 2 == 0):
            raise ValueError(f"gapfill_window must be an odd integer >= 3, got {value}")
        return value

    @field_validator("agg_level")
    @classmethod
    def _check_agg_level(cls, value: str | None) -> str | None:
        if value is not None:
            parse_bucket_rule(value)
        return value


def acquisition_date_from_item(item: dict[str, Any]) -> date | None:
    """Read an item's ``datetime`` (or ``start_datetime``) property as a date."""
    properties = item.get("properties") or {}
    raw = properties.get("datetime") or properties.get("start_datetime")
    if not raw:
        return None
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).date()

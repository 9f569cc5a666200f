"""Raster operations: windowed reads, clipping, mosaicking and sampling."""

import math
from datetime import date
from typing import Any

import numpy as np
import rasterio
import rasterio.warp
from affine import Affine
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.transform import from_origin
from rasterio.windows import Window

from getsat.config.constants import OUTPUT_CRS
from getsat.geospatial.temporal import BucketRule, parse_bucket_rule
from getsat.models.models import Frame, PointSet, SpatialExtent

_EPS = 1e-6

Bounds = tuple[float, float, float, float]


class Grid(BaseModel):
    """Target raster grid: transform, size and CRS."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    transform: Any
    width: int
    height: int
    crs: str

    @classmethod
    def covering(cls, bounds: Bounds, resolution: tuple[float, float], crs: str) -> "Grid":
        """Smallest grid with the given resolution covering ``bounds``.

        :param bounds: (left, bottom, right, top)
        :param resolution: (x, y) pixel size
        :param crs: Grid CRS
        :returns: Grid instance
        """
        left, bottom, right, top = bounds
        xres, yres = resolution
        width = max(int(math.ceil((right - left) / xres - _EPS)), 1)
        height = max(int(math.ceil((top - bottom) / yres - _EPS)), 1)
        return cls(transform=from_origin(left, top, xres, yres), width=width, height=height, crs=crs)

    def matches(self, frame: Frame) -> bool:
        return (
            same_crs(frame.crs, self.crs)
            and frame.shape == (self.height, self.width)
            and frame.transform.almost_equals(self.transform)
        )


def same_crs(first: str, second: str) -> bool:
    """Compare two CRS definitions regardless of their spelling."""
    if first == second:
        return True
    return bool(CRS.from_user_input(first) == CRS.from_user_input(second))


def subdataset_uri(uri: str, subdataset: str | None) -> str:
    """GDAL name of a netCDF variable inside ``uri``; the file itself without one."""
    if subdataset is None:
        return uri
    return f'NETCDF:"{uri}":{subdataset}'


def _pixel_window(transform: Affine, shape: tuple[int, int], bounds: Bounds) -> Window | None:
    """Pixel window of ``bounds`` on a grid, clamped to the grid.

    :param transform: Grid transform
    :param shape: Grid (height, width)
    :param bounds: (left, bottom, right, top) in the grid CRS
    :returns: Window, or None when the bounds miss the grid
    """
    height, width = shape
    left, bottom, right, top = bounds
    inverse = ~transform
    col_a, row_a = inverse * (left, top)
    col_b, row_b = inverse * (right, bottom)
    col_lo, col_hi = sorted((col_a, col_b))
    row_lo, row_hi = sorted((row_a, row_b))

    col_off = max(int(math.floor(col_lo + _EPS)), 0)
    col_end = min(int(math.ceil(col_hi - _EPS)), width)
    row_off = max(int(math.floor(row_lo + _EPS)), 0)
    row_end = min(int(math.ceil(row_hi - _EPS)), height)
    if col_end <= col_off or row_end <= row_off:
        return None
    return Window(col_off, row_off, col_end - col_off, row_end - row_off)


def _cell_index(position: float, size: int) -> int | None:
    """Cell holding a fractional pixel position; outer grid edges belong to the edge cells."""
    index = int(math.floor(position))
    if index == size and position - size < _EPS:
        index = size - 1
    elif index == -1 and position > -_EPS:
        index = 0
    return index if 0 <= index < size else None


def _nanmean(layers: NDArray[np.floating]) -> NDArray[np.floating]:
    """Per-cell mean over the first axis, ignoring NaN; all-NaN cells stay NaN."""
    valid = ~np.isnan(layers)
    sums = np.where(valid, layers, 0).sum(axis=0, dtype="float64")
    counts = valid.sum(axis=0)
    out = np.full(sums.shape, np.nan, dtype="float64")
    np.divide(sums, counts, out=out, where=counts > 0)
    return out.astype("float32")


def _nanmode(layers: NDArray[np.floating]) -> NDArray[np.floating]:
    """Per-cell most frequent value over the first axis; ties go to the smaller value."""
    out = np.full(layers.shape[1:], np.nan, dtype="float32")
    best = np.zeros(layers.shape[1:], dtype="int64")
    for value in np.unique(layers[~np.isnan(layers)]):
        count = (layers == value).sum(axis=0)
        better = count > best
        out[better] = value
        best[better] = count[better]
    return out


def _dominant(layers: NDArray[np.floating]) -> NDArray[np.floating]:
    """Per-cell 1-based position of the largest layer; ties go to the first, all-NaN cells stay NaN."""
    valid = ~np.isnan(layers)
    out = (np.where(valid, layers, -np.inf).argmax(axis=0) + 1).astype("float32")
    out[~valid.any(axis=0)] = np.nan
    return out


def _box_sum(values: NDArray[np.floating], window: int) -> NDArray[np.floating]:
    """Sum over the ``window x window`` square centred on each cell; outside the grid counts as zero."""
    half = window // 2
    table = np.pad(values, ((half + 1, half), (half + 1, half))).cumsum(axis=0).cumsum(axis=1)
    return table[window:, window:] - table[:-window, window:] - table[window:, :-window] + table[:-window, :-window]


REDUCERS = {"mean": _nanmean, "mode": _nanmode, "dominant": _dominant}


class RasterEngine:
    """Raster primitives used by tile assembly and post-processing.

    :param output_crs: CRS every assembled stack is aligned to
    :param resampling: Resampling used when regridding
    """

    def __init__(self, output_crs: str = OUTPUT_CRS, resampling: Resampling = Resampling.nearest) -> None:
        self.output_crs = output_crs
        self.resampling = resampling

    def _extent_bounds(self, extent: SpatialExtent, crs: str) -> Bounds:
        bbox = extent.as_bbox()
        if same_crs(crs, OUTPUT_CRS):
            return bbox[0], bbox[1], bbox[2], bbox[3]
        return rasterio.warp.transform_bounds(OUTPUT_CRS, crs, *bbox, densify_pts=21)

    def _frame_bounds(self, frame: Frame, crs: str) -> Bounds:
        if same_crs(frame.crs, crs):
            return frame.bounds
        return rasterio.warp.transform_bounds(frame.crs, crs, *frame.bounds, densify_pts=21)

    def _resolution(self, frame: Frame, crs: str) -> tuple[float, float]:
        if same_crs(frame.crs, crs):
            return frame.resolution
        height, width = frame.shape
        transform, _, _ = rasterio.warp.calculate_default_transform(frame.crs, crs, width, height, *frame.bounds)
        return abs(transform.a), abs(transform.e)

    def open(
        self,
        uri: str,
        acquired: date,
        extent: SpatialExtent | None = None,
        band: int = 1,
        subdataset: str | None = None,
    ) -> Frame | None:
        """Read one band of a raster, restricted to ``extent`` when given.

        Only the window overlapping the extent is read, so the result never
        reaches beyond the raster's own coverage. Nodata becomes NaN and the
        band scale/offset are applied.

        :param uri: Local path or (signed) URL
        :param acquired: Acquisition date of the raster
        :param extent: Optional WGS84 extent
        :param band: 1-based band index
        :param subdataset: netCDF variable to read from ``uri``
        :returns: Frame, or None when the raster does not overlap the extent
        """
        with rasterio.open(subdataset_uri(uri, subdataset)) as src:
            crs = src.crs.to_string() if src.crs else OUTPUT_CRS
            window = None
            transform = src.transform
            if extent is not None:
                window = _pixel_window(src.transform, (src.height, src.width), self._extent_bounds(extent, crs))
                if window is None:
                    return None
                transform = src.window_transform(window)

            masked = src.read(band, window=window, masked=True)
            data = np.ma.filled(masked.astype("float32"), np.nan)
            scale = src.scales[band - 1] if src.scales else 1.0
            offset = src.offsets[band - 1] if src.offsets else 0.0
            if scale != 1.0 or offset != 0.0:
                data = data * np.float32(scale) + np.float32(offset)

        return Frame(data=data, transform=transform, crs=crs, date=acquired)

    def clip(self, frame: Frame, extent: SpatialExtent) -> Frame | None:
        """Clip a frame to ``extent`` intersected with the frame's coverage.

        :param frame: Frame to clip
        :param extent: WGS84 extent
        :returns: Clipped frame, or None when they do not overlap
        """
        window = _pixel_window(frame.transform, frame.shape, self._extent_bounds(extent, frame.crs))
        if window is None:
            return None
        rows = slice(window.row_off, window.row_off + window.height)
        cols = slice(window.col_off, window.col_off + window.width)
        transform = frame.transform * Affine.translation(window.col_off, window.row_off)
        return frame.replace(data=frame.data[rows, cols], transform=transform)

    def reproject(self, frame: Frame, grid: Grid) -> Frame:
        """Resample a frame onto ``grid``.

        Cells outside the frame's coverage are NaN; a frame already on the
        grid is returned unchanged.

        :param frame: Source frame
        :param grid: Target grid
        :returns: Frame on the target grid
        """
        if grid.matches(frame):
            return frame
        destination = np.full((grid.height, grid.width), np.nan, dtype="float32")
        rasterio.warp.reproject(
            source=np.ascontiguousarray(frame.data, dtype="float32"),
            destination=destination,
            src_transform=frame.transform,
            src_crs=frame.crs,
            dst_transform=grid.transform,
            dst_crs=grid.crs,
            src_nodata=np.nan,
            dst_nodata=np.nan,
            resampling=self.resampling,
        )
        return frame.replace(data=destination, transform=grid.transform, crs=grid.crs)

    def union_grid(self, frames: list[Frame], crs: str) -> Grid:
        """Grid covering every frame, at the first frame's resolution in ``crs``."""
        resolution = self._resolution(frames[0], crs)
        all_bounds = [self._frame_bounds(frame, crs) for frame in frames]
        union = (
            min(b[0] for b in all_bounds),
            min(b[1] for b in all_bounds),
            max(b[2] for b in all_bounds),
            max(b[3] for b in all_bounds),
        )
        return Grid.covering(union, resolution, crs)

    def mosaic(self, frames: list[Frame], reducer: str = "mean") -> Frame:
        """Combine same-date frames cell by cell.

        Frames are resampled onto their union grid (in the first frame's CRS)
        in the given order, then reduced, ignoring missing cells.

        :param frames: Frames sharing one date
        :param reducer: ``"mean"``, ``"mode"`` or ``"dominant"`` (1-based position of the largest frame)
        :returns: Mosaicked frame
        """
        if not frames:
            raise ValueError("Cannot mosaic an empty list of frames")
        if reducer not in REDUCERS:
            raise ValueError(f"Unknown mosaic reducer '{reducer}', expected one of {sorted(REDUCERS)}")
        if len(frames) == 1 and reducer != "dominant":
            return frames[0]

        grid = self.union_grid(frames, frames[0].crs)
        layers = np.stack([self.reproject(frame, grid).data for frame in frames])
        return frames[0].replace(data=REDUCERS[reducer](layers), transform=grid.transform, crs=grid.crs)

    def align(self, frames: list[Frame], crs: str | None = None) -> list[Frame]:
        """Resample frames onto one common grid so cells line up across dates.

        :param frames: Frames to align
        :param crs: Target CRS, defaults to the engine output CRS
        :returns: Frames on a shared grid
        """
        if not frames:
            return []
        grid = self.union_grid(frames, crs or self.output_crs)
        return [self.reproject(frame, grid) for frame in frames]

    def sample(self, frame: Frame, points: PointSet) -> list[float]:
        """Nearest-cell values at WGS84 points; NaN outside the frame.

        :param frame: Frame to sample
        :param points: Points to sample at
        :returns: One value per point
        """
        xs, ys = points.lons, points.lats
        if not same_crs(frame.crs, OUTPUT_CRS):
            xs, ys = rasterio.warp.transform(OUTPUT_CRS, frame.crs, xs, ys)

        height, width = frame.shape
        inverse = ~frame.transform
        values = []
        for x, y in zip(xs, ys):
            col, row = inverse * (x, y)
            col_idx, row_idx = _cell_index(col, width), _cell_index(row, height)
            if col_idx is None or row_idx is None:
                values.append(float("nan"))
            else:
                values.append(float(frame.data[row_idx, col_idx]))
        return values

    def fill_gaps(self, frame: Frame, window: int) -> Frame:
        """Replace missing cells with the mean of valid cells in a square window.

        Cells holding data are never changed; cells whose whole window is
        missing stay missing. Window sums come from summed-area tables, so
        memory does not grow with the window size.

        :param frame: Frame to fill
        :param window: Odd window size
        :returns: Filled frame
        """
        missing = np.isnan(frame.data)
        if not missing.any():
            return frame
        sums = _box_sum(np.where(missing, 0.0, frame.data).astype("float64"), window)
        counts = np.rint(_box_sum((~missing).astype("float64"), window))
        means = np.full(frame.shape, np.nan, dtype="float64")
        np.divide(sums, counts, out=means, where=counts > 0)
        filled = np.where(missing, means, frame.data).astype("float32")
        return frame.replace(data=filled)

    def coarsen(self, frame: Frame, factor: int, reducer: str = "mean") -> Frame:
        """Merge ``factor x factor`` blocks of cells into one cell.

        Partial blocks at the right and bottom edges are reduced over the
        cells they hold.

        :param frame: Frame to coarsen
        :param factor: Block size in cells
        :param reducer: ``"mean"`` or ``"mode"``
        :returns: Frame on the coarser grid
        """
        if factor <= 1:
            return frame
        height, width = frame.shape
        rows, cols = -(-height // factor), -(-width // factor)
        padded = np.full((rows * factor, cols * factor), np.nan, dtype="float32")
        padded[:height, :width] = frame.data
        blocks = padded.reshape(rows, factor, cols, factor).transpose(1, 3, 0, 2).reshape(factor * factor, rows, cols)
        transform = frame.transform * Affine.scale(factor)
        return frame.replace(data=REDUCERS[reducer](blocks), transform=transform)

    def aggregate_time(self, frames: list[Frame], rule: BucketRule | str, reducer: str = "mean") -> list[Frame]:
        """Reduce frames bucketed by a calendar rule, one frame per bucket.

        :param frames: Aligned frames
        :param rule: Bucket rule or its name
        :param reducer: ``"mean"`` or ``"mode"``
        :returns: Frames ordered by bucket start, dated at the bucket start
        """
        if isinstance(rule, str):
            rule = parse_bucket_rule(rule)
        buckets: dict[date, list[Frame]] = {}
        for frame in frames:
            buckets.setdefault(rule.start(frame.date), []).append(frame)

        aggregated = []
        for start in sorted(buckets):
            members = buckets[start]
            if len({member.shape for member in members}) != 1:
                raise ValueError("Frames must share one grid before temporal aggregation")
            layers = np.stack([member.data for member in members])
            aggregated.append(
                members[0].replace(data=REDUCERS[reducer](layers), date=start, label=rule.label(start))
            )
        return aggregated

#!/usr/bin/env python3
"""join.py

Join GEDI heights to composite predictors.

Three stages:
1. median_composite()  - per-pixel median of the target field across the
                         filtered scenes (one single-band height raster)
2. sample_targets()    - one point per valid pixel centre inside the ROI,
                         at the sampling scale (25 m GEDI footprint)
3. extract_predictors() - extended-raster values at every point by exact
                         nearest-pixel lookup, in chunks submitted as jobs

Points that land off the composite (or on its nodata) keep NaN in every
predictor column; they are not dropped here. Null targets are removed later
by the splitter.
"""

from __future__ import annotations

import math
import warnings
from typing import List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine, rowcol, xy
from rasterio.warp import Resampling, reproject, transform as warp_transform

from chm.features.indices import ExtendedRaster
from chm.ingest.assets import LidarScene, Roi
from chm.jobs import JobRunner


# -----------------------------------------------------------------------------
# 1. Temporal median
# -----------------------------------------------------------------------------

def median_composite(scenes: Sequence[LidarScene], field: str = "rh95") -> Tuple[np.ndarray, Affine, CRS]:
    """Per-pixel median of `field` across scenes sharing one grid.

    Cells that are NaN in every scene stay NaN.
    """
    if not scenes:
        raise ValueError("No lidar scenes to aggregate")

    ref = scenes[0]
    for s in scenes[1:]:
        if s.shape != ref.shape or s.transform != ref.transform or s.crs != ref.crs:
            raise ValueError(
                f"Lidar scenes are not on one grid: {ref.path.name} vs {s.path.name}. "
                "Warp them to a common grid before running."
            )

    stack = np.stack([s.bands[field] for s in scenes], axis=0)
    with warnings.catch_warnings():
        # all-NaN cells are expected (masked shots)
        warnings.simplefilter("ignore", category=RuntimeWarning)
        med = np.nanmedian(stack, axis=0)
    return med, ref.transform, ref.crs


# -----------------------------------------------------------------------------
# 2. Point sampling
# -----------------------------------------------------------------------------

def resample_to_scale(data: np.ndarray, transform: Affine, crs: CRS, scale: float) -> Tuple[np.ndarray, Affine]:
    """Nearest-neighbour resample onto a `scale`-sized grid covering the same bounds.

    Returns the input untouched when it is already at `scale`.
    """
    xres, yres = abs(transform.a), abs(transform.e)
    if math.isclose(xres, scale, rel_tol=1e-6) and math.isclose(yres, scale, rel_tol=1e-6):
        return data, transform

    height, width = data.shape
    left, top = transform.c, transform.f
    right = left + transform.a * width
    bottom = top + transform.e * height
    dst_w = max(1, int(math.ceil((right - left) / scale)))
    dst_h = max(1, int(math.ceil((top - bottom) / scale)))
    dst_transform = Affine(scale, 0.0, left, 0.0, -scale, top)

    dst = np.full((dst_h, dst_w), np.nan, dtype="float64")
    reproject(
        source=data.astype("float64"),
        destination=dst,
        src_transform=transform,
        src_crs=crs,
        src_nodata=np.nan,
        dst_transform=dst_transform,
        dst_crs=crs,
        dst_nodata=np.nan,
        resampling=Resampling.nearest,
    )
    return dst, dst_transform


def sample_targets(
    data: np.ndarray,
    transform: Affine,
    crs: CRS,
    *,
    roi: Optional[Roi],
    scale: float = 25.0,
    field: str = "rh95",
) -> gpd.GeoDataFrame:
    """One point per non-NaN pixel centre inside the ROI.

    `sample_id` is the row-major cell number on the sampling grid, so it is
    stable across runs and orders the points deterministically.
    """
    grid, grid_transform = resample_to_scale(data, transform, crs, scale)

    valid = np.isfinite(grid)
    if roi is not None:
        valid &= geometry_mask(
            [roi.to_crs(crs).geometry],
            out_shape=grid.shape,
            transform=grid_transform,
            invert=True,
        )

    rows, cols = np.nonzero(valid)
    if rows.size == 0:
        return gpd.GeoDataFrame(
            {"sample_id": pd.Series([], dtype="int64"), field: pd.Series([], dtype="float64")},
            geometry=gpd.GeoSeries([], crs=crs),
            crs=crs,
        )

    xs, ys = xy(grid_transform, rows, cols, offset="center")
    return gpd.GeoDataFrame(
        {
            "sample_id": (rows.astype("int64") * grid.shape[1] + cols).astype("int64"),
            field: grid[rows, cols],
        },
        geometry=gpd.points_from_xy(np.asarray(xs), np.asarray(ys)),
        crs=crs,
    )


# -----------------------------------------------------------------------------
# 3. Predictor extraction
# -----------------------------------------------------------------------------

def points_to_cells(points: gpd.GeoDataFrame, extended: ExtendedRaster) -> Tuple[np.ndarray, np.ndarray]:
    """(row, col) of the composite pixel containing each point."""
    xs = points.geometry.x.to_numpy()
    ys = points.geometry.y.to_numpy()
    if points.crs is not None and CRS.from_user_input(points.crs) != extended.crs:
        xs, ys = warp_transform(CRS.from_user_input(points.crs), extended.crs, xs, ys)
    rows, cols = rowcol(extended.transform, xs, ys)
    return np.asarray(rows, dtype="int64"), np.asarray(cols, dtype="int64")


def extract_predictors(
    points: gpd.GeoDataFrame,
    extended: ExtendedRaster,
    *,
    runner: JobRunner,
    chunk_size: int = 5000,
) -> gpd.GeoDataFrame:
    """Attach every extended-raster band to each point.

    Each chunk of points is one job that reads only the window it needs.
    Chunk results are reassembled in submission order.
    """
    out = points.copy()
    names = extended.band_names
    if out.empty:
        for name in names:
            out[name] = pd.Series([], dtype="float64")
        return out

    rows, cols = points_to_cells(points, extended)
    chunk_size = max(1, int(chunk_size))

    jobs = []
    for start in range(0, len(out), chunk_size):
        stop = min(start + chunk_size, len(out))
        jobs.append(
            runner.submit(f"join:{start}-{stop}", extended.read_cells, rows[start:stop], cols[start:stop])
        )

    parts: List[dict] = [job.wait() for job in jobs]
    for name in names:
        out[name] = np.concatenate([p[name] for p in parts])
    return out


def join_samples(
    scenes: Sequence[LidarScene],
    extended: ExtendedRaster,
    *,
    roi: Optional[Roi],
    runner: JobRunner,
    field: str = "rh95",
    sample_scale: float = 25.0,
    chunk_size: int = 5000,
) -> gpd.GeoDataFrame:
    """Median heights -> points -> predictor values. Returns the Sample table."""
    med, transform, crs = median_composite(scenes, field=field)
    points = sample_targets(med, transform, crs, roi=roi, scale=sample_scale, field=field)
    print(f"[JOIN] {len(points)} target points at {sample_scale:g} m")
    samples = extract_predictors(points, extended, runner=runner, chunk_size=chunk_size)
    n_missing = int(samples[extended.band_names].isna().any(axis=1).sum()) if len(samples) else 0
    if n_missing:
        print(f"  - {n_missing} point(s) have no composite value for at least one band (kept as NaN)")
    return samples

#!/usr/bin/env python3
"""writers.py

Write the run's artifacts to the output folder:

- training samples table     <training_prefix>.csv
- testing samples table      <testing_prefix>.csv
- predicted canopy height    <raster_prefix>.tif   (single band, float32)
- evaluation table           <eval_prefix>.csv
- feature importance         <raster_prefix>_feature_importance.csv
- run summary                <raster_prefix>_summary.json

Each artifact is its own job. A failed artifact is reported and the others
carry on; nothing is retried. The raster is planned before it is written:
if the destination grid exceeds max_pixels it is rejected before the file is
opened. Rendering goes to a `.part` file that is renamed only on success.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine, rowcol
from rasterio.warp import transform as warp_transform
from rasterio.windows import Window, transform as window_transform
from shapely.geometry import mapping

from chm.config import NODATA, OutputConfig
from chm.errors import ExportError
from chm.features.indices import ExtendedRaster
from chm.ingest.assets import Roi
from chm.jobs import JobRunner, wait_all
from chm.model.regressor import CanopyHeightModel, predict_block


@dataclass
class ExportResult:
    name: str
    path: str
    ok: bool
    error: Optional[str] = None


@dataclass
class Grid:
    transform: Affine
    width: int
    height: int
    crs: CRS

    @property
    def n_pixels(self) -> int:
        return self.width * self.height


# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------

def _geo_column(frame: pd.DataFrame) -> pd.DataFrame:
    """Replace the geometry column by a GeoJSON `.geo` column (lon/lat)."""
    if not isinstance(frame, gpd.GeoDataFrame):
        return pd.DataFrame(frame)
    geo = frame
    if frame.crs is not None:
        geo = frame.to_crs("EPSG:4326")
    out = pd.DataFrame(frame.drop(columns=frame.geometry.name))
    out[".geo"] = [json.dumps(mapping(g)) if g is not None else "" for g in geo.geometry]
    return out


def write_table(frame: pd.DataFrame, path: Path) -> Path:
    """Write a sample/evaluation table as CSV, geometry as GeoJSON text."""
    path.parent.mkdir(parents=True, exist_ok=True)
    _geo_column(frame).to_csv(path, index=False)
    return path


def write_summary(summary: Dict[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary, indent=2, default=str), encoding="utf-8")
    return path


# -----------------------------------------------------------------------------
# Prediction raster
# -----------------------------------------------------------------------------

def plan_prediction_grid(roi: Roi, crs: str, scale: float, max_pixels: float) -> Grid:
    """Destination grid covering the ROI, snapped to `scale` in `crs`.

    Raises ExportError if the pixel count exceeds `max_pixels`.
    """
    target = CRS.from_user_input(crs)
    xmin, ymin, xmax, ymax = roi.to_crs(target).bounds
    left = math.floor(xmin / scale) * scale
    bottom = math.floor(ymin / scale) * scale
    right = math.ceil(xmax / scale) * scale
    top = math.ceil(ymax / scale) * scale
    width = max(1, int(round((right - left) / scale)))
    height = max(1, int(round((top - bottom) / scale)))
    grid = Grid(
        transform=Affine(scale, 0.0, left, 0.0, -scale, top),
        width=width,
        height=height,
        crs=target,
    )
    if grid.n_pixels > max_pixels:
        raise ExportError(
            f"Prediction raster would have {grid.n_pixels:,} pixels "
            f"({width} x {height} at {scale:g} in {crs}), above max_pixels={max_pixels:g}"
        )
    return grid


def _tiles(grid: Grid, block_size: int):
    for row_off in range(0, grid.height, block_size):
        for col_off in range(0, grid.width, block_size):
            yield Window(
                col_off,
                row_off,
                min(block_size, grid.width - col_off),
                min(block_size, grid.height - row_off),
            )


def render_tile(
    model: CanopyHeightModel,
    extended: ExtendedRaster,
    grid: Grid,
    window: Window,
    roi_local: Roi,
    nodata: float = NODATA,
) -> np.ndarray:
    """Predict one destination tile by nearest-pixel lookup into the composite."""
    h, w = int(window.height), int(window.width)
    t = grid.transform
    cols = np.arange(int(window.col_off), int(window.col_off) + w)
    rows = np.arange(int(window.row_off), int(window.row_off) + h)
    cc, rr = np.meshgrid(cols, rows)
    xs = (t.c + (cc + 0.5) * t.a).ravel()
    ys = (t.f + (rr + 0.5) * t.e).ravel()

    if grid.crs != extended.crs:
        xs, ys = warp_transform(grid.crs, extended.crs, xs, ys)
    src_rows, src_cols = rowcol(extended.transform, xs, ys)
    bands = extended.read_cells(np.asarray(src_rows), np.asarray(src_cols))

    pred = predict_block(model, bands, nodata=nodata).reshape(h, w)
    inside = geometry_mask(
        [roi_local.geometry],
        out_shape=(h, w),
        transform=window_transform(window, t),
        invert=True,
    )
    pred[~inside] = nodata
    return pred.astype("float32")


def write_prediction_raster(
    model: CanopyHeightModel,
    extended: ExtendedRaster,
    roi: Roi,
    path: Path,
    *,
    crs: str = "EPSG:5070",
    scale: float = 10.0,
    max_pixels: float = 1e13,
    block_size: int = 256,
    nodata: float = NODATA,
) -> Path:
    """Render the model over the ROI and write a single-band GeoTIFF."""
    grid = plan_prediction_grid(roi, crs, scale, max_pixels)
    roi_local = roi.to_crs(grid.crs)

    profile = {
        "driver": "GTiff",
        "height": grid.height,
        "width": grid.width,
        "count": 1,
        "dtype": "float32",
        "crs": grid.crs,
        "transform": grid.transform,
        "nodata": nodata,
        "compress": "deflate",
    }

    path.parent.mkdir(parents=True, exist_ok=True)
    part = path.with_name(path.name + ".part")
    try:
        with rasterio.open(part, "w", **profile) as dst:
            dst.set_band_description(1, "classification")
            for window in _tiles(grid, max(1, int(block_size))):
                dst.write(render_tile(model, extended, grid, window, roi_local, nodata), 1, window=window)
        part.replace(path)
    except BaseException:
        part.unlink(missing_ok=True)
        raise
    return path


# -----------------------------------------------------------------------------
# Export orchestration
# -----------------------------------------------------------------------------

def artifact_paths(cfg: OutputConfig) -> Dict[str, Path]:
    folder = Path(cfg.folder)
    return {
        "training": folder / f"{cfg.training_prefix}.csv",
        "testing": folder / f"{cfg.testing_prefix}.csv",
        "prediction": folder / f"{cfg.raster_prefix}.tif",
        "evaluation": folder / f"{cfg.eval_prefix}.csv",
        "importance": folder / f"{cfg.raster_prefix}_feature_importance.csv",
        "summary": folder / f"{cfg.raster_prefix}_summary.json",
    }


def export_all(
    *,
    cfg: OutputConfig,
    runner: JobRunner,
    training: pd.DataFrame,
    testing: pd.DataFrame,
    evaluation: pd.DataFrame,
    importance: pd.DataFrame,
    model: CanopyHeightModel,
    extended: ExtendedRaster,
    roi: Roi,
    nodata: float = NODATA,
) -> List[ExportResult]:
    """Submit every artifact as a job, await them all, report each outcome."""
    paths = artifact_paths(cfg)

    tasks: List[Tuple[str, Callable[..., Any], tuple, dict]] = [
        ("training", write_table, (training, paths["training"]), {}),
        ("testing", write_table, (testing, paths["testing"]), {}),
        ("prediction", write_prediction_raster, (model, extended, roi, paths["prediction"]), {
            "crs": cfg.crs,
            "scale": cfg.scale,
            "max_pixels": cfg.max_pixels,
            "block_size": cfg.block_size,
            "nodata": nodata,
        }),
        ("evaluation", write_table, (evaluation, paths["evaluation"]), {}),
        ("importance", write_table, (importance, paths["importance"]), {}),
    ]

    print(f"[EXPORT] {len(tasks)} artifact(s) -> {cfg.folder}")
    jobs = [runner.submit(f"export:{name}", fn, *args, **kwargs) for name, fn, args, kwargs in tasks]
    wait_all(jobs)

    results = []
    for (name, _, _, _), job in zip(tasks, jobs):
        err = job.error
        results.append(ExportResult(
            name=name,
            path=str(paths[name]),
            ok=err is None,
            error=None if err is None else f"{type(err).__name__}: {err}",
        ))
    report(results)
    return results


def report(results: List[ExportResult]) -> None:
    for r in results:
        if r.ok:
            print(f"[OK] {r.name} -> {r.path}")
        else:
            print(f"[FAILED] {r.name}: {r.error}")


def results_as_dicts(results: List[ExportResult]) -> List[Dict[str, Any]]:
    return [asdict(r) for r in results]

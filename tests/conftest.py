#!/usr/bin/env python3
"""Synthetic inputs for the pipeline tests.

Everything lives in EPSG:5070 on a 200 m x 200 m square:
- composite: 20 x 20 pixels at 10 m, eight named spectral bands
- lidar: 8 x 8 pixels at 25 m, three monthly scenes (two inside the
  2019-06-01..2019-10-01 window, one outside)
- ROI: the whole square
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Sequence

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin
from shapely.geometry import box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

CRS = "EPSG:5070"
LEFT, TOP = 1000.0, 2000.0
SPECTRAL = [
    "B2_median", "B3_median", "B4_median", "B5_median",
    "B7_median", "B8_median", "B11_median", "B12_median",
]


def write_bands(path: Path, bands: Dict[str, np.ndarray], transform, *, nodata=None, tags=None, **creation) -> Path:
    names = list(bands)
    first = bands[names[0]]
    profile = {
        "driver": "GTiff",
        "height": first.shape[0],
        "width": first.shape[1],
        "count": len(names),
        "dtype": "float32",
        "crs": CRS,
        "transform": transform,
    }
    profile.update(creation)
    if nodata is not None:
        profile["nodata"] = nodata
    with rasterio.open(path, "w", **profile) as dst:
        for i, name in enumerate(names, start=1):
            dst.write(bands[name].astype("float32"), i)
            dst.set_band_description(i, name)
        if tags:
            dst.update_tags(**tags)
    return path


def composite_bands(size: int = 20) -> Dict[str, np.ndarray]:
    rows, cols = np.mgrid[0:size, 0:size].astype("float64")
    bands = {}
    for k, name in enumerate(SPECTRAL):
        bands[name] = 400.0 + 30.0 * k + 5.0 * cols + 3.0 * rows
    # NIR carries the height signal
    bands["B8_median"] = 2000.0 + 80.0 * cols
    return bands


def lidar_bands(seed: int, size: int = 8) -> Dict[str, np.ndarray]:
    rng = np.random.default_rng(seed)
    rows, cols = np.mgrid[0:size, 0:size].astype("float64")
    rh95 = 5.0 + 2.5 * cols + rng.normal(0.0, 0.3, (size, size))
    quality = np.ones((size, size))
    degrade = np.zeros((size, size))
    quality[0, :2] = 0
    degrade[7, 6:] = 1
    return {
        "rh95": rh95,
        "quality_flag": quality,
        "degrade_flag": degrade,
        "lat_highestreturn": 40.0 + rows * 1e-4,
        "lon_highestreturn": -75.0 + cols * 1e-4,
    }


@pytest.fixture
def roi_path(tmp_path: Path) -> Path:
    path = tmp_path / "roi.geojson"
    gpd.GeoDataFrame({"name": ["square"]}, geometry=[box(LEFT, TOP - 200.0, LEFT + 200.0, TOP)], crs=CRS).to_file(
        path, driver="GeoJSON"
    )
    return path


@pytest.fixture
def composite_path(tmp_path: Path) -> Path:
    return write_bands(tmp_path / "composite.tif", composite_bands(), from_origin(LEFT, TOP, 10.0, 10.0))


@pytest.fixture
def lidar_dir(tmp_path: Path) -> Path:
    d = tmp_path / "gedi"
    d.mkdir()
    dates: Sequence[str] = ("2019-06-01", "2019-07-01", "2019-12-01")
    for k, day in enumerate(dates):
        write_bands(
            d / f"GEDI02_A_{day.replace('-', '')}.tif",
            lidar_bands(seed=k),
            from_origin(LEFT, TOP, 25.0, 25.0),
            tags={"DATE": day},
        )
    return d


@pytest.fixture
def config_path(tmp_path: Path, roi_path: Path, composite_path: Path, lidar_dir: Path) -> Path:
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        "\n".join([
            "assets:",
            f"  roi: {roi_path.name}",
            f"  composite: {composite_path.name}",
            f"  lidar: {lidar_dir.name}",
            "join:",
            "  chunk_size: 7",
            "output:",
            "  folder: out",
            "  block_size: 8",
            "workers: 2",
            "",
        ]),
        encoding="utf-8",
    )
    return path

#!/usr/bin/env python3

from __future__ import annotations

from datetime import date
from pathlib import Path

import numpy as np
import pytest
from rasterio.crs import CRS as RioCRS
from rasterio.transform import from_origin
from shapely.geometry import box

from chm.config import IndexConfig
from chm.features.indices import ExtendedRaster
from chm.geo import join as jn
from chm.ingest.assets import LidarScene, Roi, load_roi
from chm.jobs import JobRunner

from conftest import SPECTRAL

CRS = RioCRS.from_epsg(5070)
T25 = from_origin(1000.0, 2000.0, 25.0, 25.0)


def _scene(rh95, transform=T25):
    return LidarScene(
        path=Path("scene.tif"),
        date=date(2019, 7, 1),
        bands={"rh95": np.asarray(rh95, dtype="float64")},
        transform=transform,
        crs=CRS,
        filtered=True,
    )


def test_median_ignores_masked_cells():
    a = _scene([[1.0, np.nan], [np.nan, np.nan]])
    b = _scene([[3.0, 4.0], [np.nan, np.nan]])
    c = _scene([[8.0, np.nan], [np.nan, np.nan]])
    med, transform, crs = jn.median_composite([a, b, c])
    assert med[0, 0] == 3.0
    assert med[0, 1] == 4.0
    assert np.isnan(med[1]).all()
    assert transform == T25


def test_median_rejects_mixed_grids():
    a = _scene([[1.0]])
    b = _scene([[1.0]], transform=from_origin(0.0, 0.0, 25.0, 25.0))
    with pytest.raises(ValueError):
        jn.median_composite([a, b])


def test_sample_targets_one_point_per_valid_cell():
    data = np.array([[1.0, np.nan], [3.0, 4.0]])
    pts = jn.sample_targets(data, T25, CRS, roi=None, scale=25.0)
    assert list(pts["sample_id"]) == [0, 2, 3]
    assert list(pts["rh95"]) == [1.0, 3.0, 4.0]
    # pixel centres
    assert pts.geometry.iloc[0].x == 1012.5
    assert pts.geometry.iloc[0].y == 1987.5


def test_sample_targets_respects_roi():
    data = np.ones((2, 2))
    roi = Roi(geometry=box(1000.0, 1975.0, 1025.0, 2000.0), crs=CRS)
    pts = jn.sample_targets(data, T25, CRS, roi=roi, scale=25.0)
    assert list(pts["sample_id"]) == [0]


def test_sample_targets_resamples_to_scale():
    data = np.arange(16, dtype="float64").reshape(4, 4)
    t = from_origin(1000.0, 2000.0, 12.5, 12.5)
    pts = jn.sample_targets(data, t, CRS, roi=None, scale=25.0)
    assert len(pts) == 4


def test_extract_keeps_points_off_the_composite(composite_path):
    ext = ExtendedRaster(composite_path, SPECTRAL, IndexConfig())
    data = np.full((1, 12), 10.0)
    # 12 x 25 m reaches 300 m east; the composite stops at 200 m
    pts = jn.sample_targets(data, T25, CRS, roi=None, scale=25.0)
    with JobRunner(workers=3) as runner:
        out = jn.extract_predictors(pts, ext, runner=runner, chunk_size=5)

    assert len(out) == 12
    assert set(ext.band_names) <= set(out.columns)
    on = out.geometry.x < 1200.0
    assert out.loc[on, ext.band_names].notna().all().all()
    assert out.loc[~on, ext.band_names].isna().all().all()
    assert out["rh95"].notna().all()


def test_extract_uses_nearest_pixel(composite_path):
    ext = ExtendedRaster(composite_path, SPECTRAL, IndexConfig())
    pts = jn.sample_targets(np.array([[5.0, 6.0]]), T25, CRS, roi=None, scale=25.0)
    with JobRunner(workers=1) as runner:
        out = jn.extract_predictors(pts, ext, runner=runner)
    # centres at x=1012.5 and 1037.5 fall in composite columns 1 and 3
    assert np.allclose(out["B8_median"], [2000.0 + 80.0, 2000.0 + 240.0])


def test_chunking_does_not_change_results(composite_path, roi_path):
    ext = ExtendedRaster(composite_path, SPECTRAL, IndexConfig())
    roi = load_roi(roi_path)
    data = np.arange(64, dtype="float64").reshape(8, 8)
    pts = jn.sample_targets(data, T25, CRS, roi=roi, scale=25.0)
    with JobRunner(workers=4) as runner:
        a = jn.extract_predictors(pts, ext, runner=runner, chunk_size=3)
        b = jn.extract_predictors(pts, ext, runner=runner, chunk_size=1000)
    assert a.drop(columns="geometry").equals(b.drop(columns="geometry"))

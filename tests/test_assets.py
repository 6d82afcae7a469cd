#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest
from rasterio.transform import from_origin

from chm.errors import AssetError, PipelineError
from chm.ingest import assets

from conftest import LEFT, TOP, write_bands


def test_roi_is_unioned_and_keeps_crs(roi_path):
    roi = assets.load_roi(roi_path)
    assert roi.crs.to_epsg() == 5070
    assert roi.bounds == pytest.approx((1000.0, 1800.0, 1200.0, 2000.0))


def test_missing_roi_is_an_asset_error(tmp_path):
    with pytest.raises(AssetError) as exc:
        assets.load_roi(tmp_path / "nope.gpkg")
    assert exc.value.step == "assets"
    assert isinstance(exc.value, PipelineError)
    assert isinstance(exc.value, FileNotFoundError)


def test_composite_band_check(tmp_path):
    path = write_bands(
        tmp_path / "partial.tif",
        {"B2_median": np.ones((4, 4)), "B8_median": np.ones((4, 4))},
        from_origin(LEFT, TOP, 10.0, 10.0),
    )
    with pytest.raises(AssetError, match="B4_median"):
        assets.open_composite(path, ["B2_median", "B4_median", "B8_median"])
    src = assets.open_composite(path, ["B8_median"])
    with src:
        assert assets.band_index(src, ["B8_median", "B2_median"]) == {"B8_median": 2, "B2_median": 1}


def test_lidar_glob_and_empty_collection(lidar_dir, tmp_path):
    found = assets.discover_lidar_scenes(str(lidar_dir / "GEDI02_A_201907*.tif"))
    assert [p.name for p in found] == ["GEDI02_A_20190701.tif"]
    with pytest.raises(AssetError):
        assets.discover_lidar_scenes(str(tmp_path / "empty" / "*.tif"))
    with pytest.raises(AssetError):
        assets.discover_lidar_scenes(None)


def test_masked_lidar_cells_read_as_nan(tmp_path):
    rh = np.full((3, 3), 12.0)
    rh[1, 1] = -1.0
    path = write_bands(
        tmp_path / "gedi_2019-07-15.tif",
        {"rh95": rh, "quality_flag": np.ones((3, 3)), "degrade_flag": np.zeros((3, 3))},
        from_origin(LEFT, TOP, 25.0, 25.0),
        nodata=-1.0,
    )
    scene = assets.load_lidar_scene(path, ["rh95", "quality_flag", "degrade_flag"])
    assert scene.date.isoformat() == "2019-07-15"
    assert scene.shape == (3, 3)
    assert np.isnan(scene.bands["rh95"][1, 1])
    assert np.nansum(scene.bands["rh95"]) == 8 * 12.0


def test_verify_reports_every_role(tmp_path, roi_path, lidar_dir):
    results = assets.verify_assets(roi_path, tmp_path / "missing.tif", str(lidar_dir))
    by_role = {r["asset"]: r for r in results}
    assert [r["asset"] for r in results] == ["roi", "composite", "lidar"]
    assert by_role["roi"]["ok"]
    assert not by_role["composite"]["ok"]
    assert "missing.tif" in by_role["composite"]["reason"]
    assert by_role["lidar"]["count"] == 3

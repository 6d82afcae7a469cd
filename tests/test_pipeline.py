#!/usr/bin/env python3

from __future__ import annotations

import json

import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin

from chm.config import NODATA, load_pipeline_config
from chm.pipeline.__main__ import main, run_pipeline

from conftest import LEFT, TOP, write_bands


def test_full_run_writes_every_artifact(config_path):
    cfg = load_pipeline_config(config_path)
    summary = run_pipeline(cfg)
    out = config_path.parent / "out"

    assert all(e["ok"] for e in summary["exports"])
    names = {e["name"] for e in summary["exports"]}
    assert names == {"training", "testing", "prediction", "evaluation", "importance"}

    # 8x8 grid, 4 cells knocked out by the quality/degrade flags
    s = summary["samples"]
    assert s["joined"] == 60
    assert s["training"] + s["testing"] == 60
    assert s["training"] > 0 and s["testing"] > 0

    m = summary["metrics"]
    assert m["n"] == s["testing"] - s["testing_masked"]
    assert m["rmse"] >= m["mae"] >= 0.0

    training = pd.read_csv(out / f"{cfg.output.training_prefix}.csv")
    testing = pd.read_csv(out / f"{cfg.output.testing_prefix}.csv")
    assert set(training["sample_id"]).isdisjoint(testing["sample_id"])
    assert (training["random"] < 0.7).all()
    assert (testing["random"] >= 0.7).all()
    for col in ["rh95", "ndvi", "nbr", "ndmi", ".geo"]:
        assert col in training.columns

    evaluation = pd.read_csv(out / f"{cfg.output.eval_prefix}.csv")
    assert list(evaluation.columns[:3]) == ["sample_id", "rh95", "classification"]
    assert len(evaluation) == m["n"]

    with rasterio.open(out / f"{cfg.output.raster_prefix}.tif") as src:
        assert src.crs.to_epsg() == 5070
        assert src.res == (10.0, 10.0)
        assert src.nodata == NODATA
        assert (src.width, src.height) == (20, 20)

    on_disk = json.loads((out / f"{cfg.output.raster_prefix}_summary.json").read_text(encoding="utf-8"))
    assert on_disk["model"]["numberOfTrees"] == 74
    assert on_disk["metrics"]["n"] == m["n"]


def test_reruns_are_identical(config_path):
    first = run_pipeline(load_pipeline_config(config_path))
    second = run_pipeline(load_pipeline_config(config_path))
    assert first["metrics"] == second["metrics"]
    assert first["samples"] == second["samples"]


def test_cli_verify_and_dry_run(config_path, capsys):
    assert main(["--config", str(config_path), "verify"]) == 0
    assert "Overall: OK" in capsys.readouterr().out

    assert main(["--config", str(config_path), "run", "--dry-run"]) == 0
    assert "[dry-run]" in capsys.readouterr().out
    assert not (config_path.parent / "out").exists()


def test_cli_verify_json_reports_missing(config_path, capsys):
    (config_path.parent / "composite.tif").unlink()
    assert main(["--config", str(config_path), "verify", "--json"]) == 2
    payload = json.loads(capsys.readouterr().out)
    assert payload["ok"] is False


def test_missing_asset_stops_before_any_work(config_path):
    (config_path.parent / "composite.tif").unlink()
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(config_path), "run"])
    assert str(exc.value).startswith("[assets]")
    assert not (config_path.parent / "out").exists()


def test_out_of_window_scenes_are_never_loaded(config_path, lidar_dir):
    # no lidar bands at all: reading its pixels would raise AssetError
    write_bands(
        lidar_dir / "GEDI02_A_20200115.tif",
        {"foo": np.zeros((2, 2))},
        from_origin(LEFT, TOP, 25.0, 25.0),
        tags={"DATE": "2020-01-15"},
    )
    summary = run_pipeline(load_pipeline_config(config_path))
    assert summary["samples"]["joined"] == 60


def test_summary_records_join_parameters(config_path):
    summary = run_pipeline(load_pipeline_config(config_path))
    assert summary["join"] == {"sample_scale": 25.0, "extraction_scale": 10.0, "chunk_size": 7}

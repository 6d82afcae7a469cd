#!/usr/bin/env python3

from __future__ import annotations

from datetime import date

import pytest

from chm import config as cf


def test_defaults_match_reference_run():
    cfg = cf.PipelineConfig.from_dict({})
    assert cfg.filter.start == date(2019, 6, 1)
    assert cfg.filter.end == date(2019, 10, 1)
    assert cfg.model.n_estimators == 74
    assert cfg.model.min_samples_leaf == 3
    assert cfg.model.seed == 123
    assert len(cfg.model.input_bands) == 11
    assert cfg.output.crs == "EPSG:5070"
    assert cfg.output.scale == 10.0
    assert cfg.join.sample_scale == 25.0


def test_relative_paths_resolve_against_config_dir(tmp_path):
    p = tmp_path / "run.yaml"
    p.write_text("assets:\n  roi: roi.gpkg\n  composite: /abs/s2.tif\n  lidar: gedi\n", encoding="utf-8")
    cfg = cf.load_pipeline_config(p)
    assert cfg.assets.roi == tmp_path / "roi.gpkg"
    assert str(cfg.assets.composite) == "/abs/s2.tif"
    assert cfg.assets.lidar == str(tmp_path / "gedi")
    assert cfg.output.folder == tmp_path / "outputs"


def test_missing_config_fails_fast(tmp_path):
    with pytest.raises(SystemExit):
        cf.load_yaml(tmp_path / "nope.yaml")


def test_non_mapping_config_fails_fast(tmp_path):
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        cf.load_yaml(p)


def test_bad_window_is_rejected():
    with pytest.raises(SystemExit):
        cf.PipelineConfig.from_dict({"filter": {"start": "2019-10-01", "end": "2019-06-01"}})


def test_target_is_always_kept():
    cfg = cf.PipelineConfig.from_dict({"filter": {"keep_fields": ["lat_highestreturn"]}})
    assert cfg.filter.keep_fields[0] == "rh95"

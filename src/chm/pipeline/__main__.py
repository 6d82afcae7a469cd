#!/usr/bin/env python3
"""chm.pipeline

Canopy height mapping from GEDI RH95 and a Sentinel-2 composite.

One run goes strictly forward through eight steps:
  1. assets   - ROI, composite, lidar scenes (all checked before any work)
  2. filter   - quality/degrade flags, date window, ROI clip
  3. indices  - ndvi, nbr, ndmi appended to the composite
  4. join     - median rh95 -> 25 m points -> predictor values per point
  5. split    - seeded 70/30 train/test split
  6. model    - random forest (74 trees, min leaf 3, seed 123)
  7. eval     - RMSE / MAE on the test split
  8. export   - sample tables, prediction GeoTIFF, evaluation table

Design notes:
- Config-driven via one YAML (see config/pipeline.yaml)
- Heavy steps run as jobs (submit, then await); results do not depend on
  the worker count
- Failures print as `[step] message` and exit 1; a run whose exports
  partly failed exits 2

Examples:
  # Check that every configured input exists
  python -m chm.pipeline verify --config config/pipeline.yaml

  # Full run
  python -m chm.pipeline run --config config/pipeline.yaml

  # Print the plan without computing anything
  python -m chm.pipeline run --config config/pipeline.yaml --dry-run
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import geopandas as gpd

from chm.config import (
    DEFAULT_PIPELINE_YAML,
    PipelineConfig,
    format_bbox,
    load_pipeline_config,
)
from chm.errors import AssetError, EmptySampleError, PipelineError


# -----------------------------------------------------------------------------
# Core run (importable)
# -----------------------------------------------------------------------------

def check_assets(cfg: PipelineConfig) -> List[Dict[str, Any]]:
    """Presence check for every input. Raises AssetError listing what is missing."""
    from chm.ingest.assets import verify_assets

    results = verify_assets(cfg.assets.roi, cfg.assets.composite, cfg.assets.lidar)
    bad = [r for r in results if not r.get("ok")]
    if bad:
        lines = "; ".join(f"{r['asset']}: {r.get('reason', 'missing')}" for r in bad)
        raise AssetError(f"Missing input asset(s): {lines}")
    return results


def run_pipeline(cfg: PipelineConfig) -> Dict[str, Any]:
    """Execute all steps once and return the run summary.

    Export failures do not raise; they are listed in summary["exports"].
    """
    # Lazy imports keep `verify` and `--help` fast
    from chm.export.writers import artifact_paths, export_all, results_as_dicts, write_summary
    from chm.features.indices import ExtendedRaster
    from chm.geo.join import join_samples
    from chm.ingest.assets import discover_lidar_scenes, load_lidar_scenes, load_roi
    from chm.ingest.quality import quality_filter, scenes_in_window
    from chm.jobs import JobRunner
    from chm.model.evaluate import evaluate
    from chm.model.regressor import describe, feature_importance, fit_regressor, predict_table
    from chm.model.split import split_samples

    target = cfg.filter.target

    # --- 1. Assets ---
    check_assets(cfg)
    roi = load_roi(cfg.assets.roi)
    extended = ExtendedRaster(cfg.assets.composite, cfg.assets.spectral_bands, cfg.indices)
    scene_paths = discover_lidar_scenes(cfg.assets.lidar)
    print(f"[ASSETS] ROI bounds {format_bbox(roi.bounds)} ({roi.crs})")
    print(f"  - composite: {extended.path} ({extended.width}x{extended.height}, {extended.crs})")
    print(f"  - lidar scenes: {len(scene_paths)}")

    missing_bands = [b for b in cfg.model.input_bands if b not in extended.band_names]
    if missing_bands:
        raise AssetError(f"Model input bands not produced by the composite/indices: {missing_bands}")

    # --- 2. Quality filter ---
    print(f"[FILTER] window [{cfg.filter.start}, {cfg.filter.end}), quality==1, degrade==0")
    # date query first: out-of-window scenes are never read
    dated = scenes_in_window(scene_paths, start=cfg.filter.start, end=cfg.filter.end)
    fields = list(dict.fromkeys(cfg.filter.keep_fields + [cfg.filter.quality_field, cfg.filter.degrade_field]))
    scenes = load_lidar_scenes(dated, fields)
    filtered = quality_filter(
        scenes,
        start=cfg.filter.start,
        end=cfg.filter.end,
        roi=roi,
        keep_fields=cfg.filter.keep_fields,
        quality_field=cfg.filter.quality_field,
        degrade_field=cfg.filter.degrade_field,
    )
    if not filtered:
        raise EmptySampleError(
            f"No lidar scenes inside [{cfg.filter.start}, {cfg.filter.end}) "
            f"out of {len(scene_paths)} found",
            step="filter",
        )
    print(f"  - kept {len(filtered)} of {len(scene_paths)} scene(s)")

    with JobRunner(workers=cfg.workers) as runner:
        # --- 3+4. Indices and join ---
        samples = join_samples(
            filtered,
            extended,
            roi=roi,
            runner=runner,
            field=target,
            sample_scale=cfg.join.sample_scale,
            chunk_size=cfg.join.chunk_size,
        )

        # --- 5. Split ---
        training, testing = split_samples(
            samples,
            target=target,
            seed=cfg.split.seed,
            train_fraction=cfg.split.train_fraction,
        )
        if training.empty:
            raise EmptySampleError("Split produced zero training samples", step="split")

        # --- 6. Model ---
        model = fit_regressor(training, cfg.model, target=target, nodata=cfg.indices.nodata, n_jobs=cfg.workers)
        importance = feature_importance(model)
        print("  - importance: " + ", ".join(f"{b}={v:.3f}" for b, v in importance.itertuples(index=False)))

        # --- 7. Evaluation ---
        predicted = testing.copy()
        predicted["classification"] = predict_table(model, testing)
        masked = predicted["classification"].isna()
        if masked.any():
            print(f"  - {int(masked.sum())} testing sample(s) have masked predictors and cannot be predicted; "
                  "excluded from evaluation")
        scored = predicted[~masked]
        if scored.empty:
            raise EmptySampleError("No testing samples with a usable prediction", step="eval")
        metrics, pairs = evaluate(scored, target=target, prediction="classification")
        evaluation = gpd.GeoDataFrame(pairs, geometry=scored.geometry.to_numpy(), crs=scored.crs)

        # --- 8. Export ---
        results = export_all(
            cfg=cfg.output,
            runner=runner,
            training=training,
            testing=testing,
            evaluation=evaluation,
            importance=importance,
            model=model,
            extended=extended,
            roi=roi,
            nodata=cfg.indices.nodata,
        )

    summary: Dict[str, Any] = {
        "samples": {
            "joined": int(len(samples)),
            "training": int(len(training)),
            "testing": int(len(testing)),
            "testing_masked": int(masked.sum()),
        },
        "metrics": {"rmse": metrics.rmse, "mae": metrics.mae, "n": metrics.n},
        "join": {
            "sample_scale": cfg.join.sample_scale,
            "extraction_scale": cfg.join.extraction_scale,
            "chunk_size": cfg.join.chunk_size,
        },
        "model": describe(model),
        "exports": results_as_dicts(results),
    }
    summary_path = artifact_paths(cfg.output)["summary"]
    try:
        write_summary(summary, summary_path)
        print(f"[OK] summary -> {summary_path}")
    except OSError as e:
        print(f"[FAILED] summary: {e}")
        summary["exports"].append({"name": "summary", "path": str(summary_path), "ok": False, "error": str(e)})
    return summary


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="chm.pipeline", description="GEDI + Sentinel-2 canopy height mapping")

    # Global args (available for all subcommands)
    ap.add_argument("--config", type=Path, default=DEFAULT_PIPELINE_YAML,
                    help=f"Path to pipeline YAML (default: {DEFAULT_PIPELINE_YAML})")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- run ---
    run = sub.add_parser("run", help="Run the full workflow once")
    run.add_argument("--out-dir", type=Path, default=None, help="Override output.folder")
    run.add_argument("--workers", type=int, default=None, help="Override worker count")
    run.add_argument("--dry-run", action="store_true", help="Check inputs and print the plan without computing")

    # --- verify ---
    ver = sub.add_parser("verify", help="Verify that every configured input exists")
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


def _print_plan(cfg: PipelineConfig) -> None:
    print("[dry-run] Would run:")
    print(f"  ROI: {cfg.assets.roi}")
    print(f"  Composite: {cfg.assets.composite} bands={cfg.assets.spectral_bands}")
    print(f"  Lidar: {cfg.assets.lidar} window=[{cfg.filter.start}, {cfg.filter.end})")
    print(f"  Sampling: {cfg.join.sample_scale:g} m, chunk={cfg.join.chunk_size}")
    print(f"  Split: seed={cfg.split.seed} train<{cfg.split.train_fraction}")
    print(f"  Model: trees={cfg.model.n_estimators} min_leaf={cfg.model.min_samples_leaf} "
          f"bag={cfg.model.bag_fraction} seed={cfg.model.seed}")
    print(f"  Output: {cfg.output.folder} ({cfg.output.scale:g} m, {cfg.output.crs}, max_pixels={cfg.output.max_pixels:g})")


def _handle_verify(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    from chm.ingest.assets import verify_assets

    results = verify_assets(cfg.assets.roi, cfg.assets.composite, cfg.assets.lidar)
    ok = all(r.get("ok") for r in results)
    if args.json:
        print(json.dumps({"ok": ok, "results": results}, indent=2))
    else:
        for r in results:
            status = "OK" if r.get("ok") else "MISSING"
            print(f"[{status}] {r['asset']} ({r.get('path', '?')})")
            if "reason" in r:
                print(f"  - reason: {r['reason']}")
            if "count" in r:
                print(f"  - count: {r['count']}")
            for s in r.get("sample") or []:
                print(f"    - {s}")
        print(f"Overall: {'OK' if ok else 'NOT OK'}")
    return 0 if ok else 2


def _handle_run(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    if args.out_dir is not None:
        cfg.output.folder = args.out_dir
    if args.workers is not None:
        cfg.workers = max(1, args.workers)

    if args.dry_run:
        check_assets(cfg)
        _print_plan(cfg)
        return 0

    summary = run_pipeline(cfg)
    failed = [e["name"] for e in summary["exports"] if not e["ok"]]
    m = summary["metrics"]
    print(f"Done: RMSE={m['rmse']:.3f} m, MAE={m['mae']:.3f} m on {m['n']} test sample(s)")
    if failed:
        print(f"Some exports failed: {failed}")
        return 2
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    # Load config only once, inside main (so import doesn't have side effects)
    cfg = load_pipeline_config(args.config)

    handlers = {
        "run": _handle_run,
        "verify": _handle_verify,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(cfg, args)
    except PipelineError as e:
        raise SystemExit(f"[{e.step}] {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""chm.config

Run configuration for the canopy height pipeline.

One YAML file describes a full run: where the inputs live, the quality
window, index band names, sampling scales, split and model parameters, and
where the outputs go. Every section has defaults matching the reference
New York 2019 run, so a minimal config only needs the three asset paths.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Relative asset/output paths resolve against the config file's directory.
- Unknown keys are ignored; missing keys fall back to defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast, before any data is touched.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    block = data.get(key)
    if block is None:
        return {}
    if not isinstance(block, dict):
        raise SystemExit(f"Config section '{key}' must be a mapping, got {type(block).__name__}")
    return block


def _coerce_date(x: Any, what: str) -> date:
    if isinstance(x, date):
        return x
    try:
        return date.fromisoformat(str(x))
    except ValueError as e:
        raise SystemExit(f"Invalid date for {what}: {x!r} (expected YYYY-MM-DD)") from e


def _resolve(base: Optional[Path], p: Any) -> Optional[Path]:
    if p is None or p == "":
        return None
    path = Path(str(p))
    if base is not None and not path.is_absolute():
        path = base / path
    return path


def format_bbox(b: Tuple[float, float, float, float], precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------

DEFAULT_PIPELINE_YAML = Path("config/pipeline.yaml")

DEFAULT_SPECTRAL_BANDS = [
    "B2_median", "B3_median", "B4_median", "B5_median",
    "B7_median", "B8_median", "B11_median", "B12_median",
]
DEFAULT_INDEX_BANDS = ["ndvi", "nbr", "ndmi"]
DEFAULT_LIDAR_FIELDS = ["rh95", "lat_highestreturn", "lon_highestreturn"]

# Nodata marker for indices with a zero denominator and for the output raster
NODATA = -9999.0


# -----------------------------------------------------------------------------
# Config sections
# -----------------------------------------------------------------------------

@dataclass
class AssetsConfig:
    roi: Optional[Path] = None
    composite: Optional[Path] = None
    # Directory of per-acquisition GeoTIFFs, or a glob like "gedi/*.tif"
    lidar: Optional[str] = None
    spectral_bands: List[str] = field(default_factory=lambda: list(DEFAULT_SPECTRAL_BANDS))


@dataclass
class FilterConfig:
    start: date = date(2019, 6, 1)
    end: date = date(2019, 10, 1)
    target: str = "rh95"
    keep_fields: List[str] = field(default_factory=lambda: list(DEFAULT_LIDAR_FIELDS))
    quality_field: str = "quality_flag"
    degrade_field: str = "degrade_flag"


@dataclass
class IndexConfig:
    nir: str = "B8_median"
    red: str = "B4_median"
    swir1: str = "B11_median"
    swir2: str = "B12_median"
    nodata: float = NODATA


@dataclass
class JoinConfig:
    sample_scale: float = 25.0
    extraction_scale: float = 10.0
    chunk_size: int = 5000


@dataclass
class SplitConfig:
    seed: int = 0
    train_fraction: float = 0.7


@dataclass
class ModelConfig:
    input_bands: List[str] = field(default_factory=lambda: DEFAULT_SPECTRAL_BANDS + DEFAULT_INDEX_BANDS)
    n_estimators: int = 74
    min_samples_leaf: int = 3
    bag_fraction: float = 1.0
    max_features: Any = "sqrt"
    seed: int = 123


@dataclass
class OutputConfig:
    folder: Path = Path("outputs")
    training_prefix: str = "gedi_training_samples_NY_2019"
    testing_prefix: str = "gedi_testing_samples_NY_2019"
    raster_prefix: str = "CHM_RF_NY_2019"
    eval_prefix: str = "S2CHM_RF_NY_2019_eval"
    scale: float = 10.0
    crs: str = "EPSG:5070"
    max_pixels: float = 1e13
    block_size: int = 256


@dataclass
class PipelineConfig:
    assets: AssetsConfig = field(default_factory=AssetsConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    indices: IndexConfig = field(default_factory=IndexConfig)
    join: JoinConfig = field(default_factory=JoinConfig)
    split: SplitConfig = field(default_factory=SplitConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    workers: int = 4

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "PipelineConfig":
        """Build a config from a parsed YAML mapping.

        `base_dir` anchors relative paths (normally the YAML file's folder).
        """
        a = _section(data, "assets")
        assets = AssetsConfig(
            roi=_resolve(base_dir, a.get("roi")),
            composite=_resolve(base_dir, a.get("composite")),
            lidar=str(_resolve(base_dir, a["lidar"])) if a.get("lidar") else None,
            spectral_bands=[str(b) for b in a.get("spectral_bands", DEFAULT_SPECTRAL_BANDS)],
        )

        f = _section(data, "filter")
        flt = FilterConfig(
            start=_coerce_date(f.get("start", FilterConfig.start), "filter.start"),
            end=_coerce_date(f.get("end", FilterConfig.end), "filter.end"),
            target=str(f.get("target", FilterConfig.target)),
            keep_fields=[str(x) for x in f.get("keep_fields", DEFAULT_LIDAR_FIELDS)],
            quality_field=str(f.get("quality_field", FilterConfig.quality_field)),
            degrade_field=str(f.get("degrade_field", FilterConfig.degrade_field)),
        )
        if flt.start >= flt.end:
            raise SystemExit(f"filter.start ({flt.start}) must be before filter.end ({flt.end})")
        if flt.target not in flt.keep_fields:
            flt.keep_fields.insert(0, flt.target)

        i = _section(data, "indices")
        idx = IndexConfig(
            nir=str(i.get("nir", IndexConfig.nir)),
            red=str(i.get("red", IndexConfig.red)),
            swir1=str(i.get("swir1", IndexConfig.swir1)),
            swir2=str(i.get("swir2", IndexConfig.swir2)),
            nodata=float(i.get("nodata", IndexConfig.nodata)),
        )

        j = _section(data, "join")
        join = JoinConfig(
            sample_scale=float(j.get("sample_scale", JoinConfig.sample_scale)),
            extraction_scale=float(j.get("extraction_scale", JoinConfig.extraction_scale)),
            chunk_size=int(j.get("chunk_size", JoinConfig.chunk_size)),
        )

        s = _section(data, "split")
        split = SplitConfig(
            seed=int(s.get("seed", SplitConfig.seed)),
            train_fraction=float(s.get("train_fraction", SplitConfig.train_fraction)),
        )
        if not 0.0 < split.train_fraction < 1.0:
            raise SystemExit(f"split.train_fraction must be in (0, 1), got {split.train_fraction}")

        m = _section(data, "model")
        model = ModelConfig(
            input_bands=[str(b) for b in m.get("input_bands", DEFAULT_SPECTRAL_BANDS + DEFAULT_INDEX_BANDS)],
            n_estimators=int(m.get("n_estimators", ModelConfig.n_estimators)),
            min_samples_leaf=int(m.get("min_samples_leaf", ModelConfig.min_samples_leaf)),
            bag_fraction=float(m.get("bag_fraction", ModelConfig.bag_fraction)),
            max_features=m.get("max_features", ModelConfig.max_features),
            seed=int(m.get("seed", ModelConfig.seed)),
        )

        o = _section(data, "output")
        out = OutputConfig(
            folder=_resolve(base_dir, o.get("folder", "outputs")) or Path("outputs"),
            training_prefix=str(o.get("training_prefix", OutputConfig.training_prefix)),
            testing_prefix=str(o.get("testing_prefix", OutputConfig.testing_prefix)),
            raster_prefix=str(o.get("raster_prefix", OutputConfig.raster_prefix)),
            eval_prefix=str(o.get("eval_prefix", OutputConfig.eval_prefix)),
            scale=float(o.get("scale", OutputConfig.scale)),
            crs=str(o.get("crs", OutputConfig.crs)),
            max_pixels=float(o.get("max_pixels", OutputConfig.max_pixels)),
            block_size=int(o.get("block_size", OutputConfig.block_size)),
        )

        return cls(
            assets=assets,
            filter=flt,
            indices=idx,
            join=join,
            split=split,
            model=model,
            output=out,
            workers=int(data.get("workers", 4)),
        )


def load_pipeline_config(path: Path) -> PipelineConfig:
    """Load and validate a pipeline YAML."""
    data = load_yaml(path)
    return PipelineConfig.from_dict(data, base_dir=path.resolve().parent)

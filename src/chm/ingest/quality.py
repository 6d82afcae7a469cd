#!/usr/bin/env python3
"""quality.py

Quality filter for GEDI lidar scenes.

A cell survives only if quality_flag == 1 and degrade_flag == 0, its scene
was acquired inside [start, end), and its centre falls inside the ROI.
Everything else becomes NaN. Only the height field and its companion
lat/lon fields are kept; the flags are dropped once applied.

Re-filtering an already filtered scene is a no-op.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
from rasterio.features import geometry_mask

from chm.ingest.assets import LidarScene, Roi, peek_scene_date


def in_window(d: date, start: date, end: date) -> bool:
    """Inclusive start, exclusive end."""
    return start <= d < end


def scenes_in_window(paths: Sequence[Path], *, start: date, end: date) -> List[Path]:
    """Date query over the lidar collection: keep files acquired in [start, end).

    Only tags are read, so out-of-window scenes never have pixels loaded.
    """
    out: List[Path] = []
    for path in paths:
        d = peek_scene_date(path)
        if not in_window(d, start, end):
            print(f"  - skip {Path(path).name}: {d} outside [{start}, {end})")
            continue
        out.append(path)
    return out


def roi_mask(roi: Roi, scene: LidarScene) -> np.ndarray:
    """True where a cell centre lies inside the ROI (in the scene's CRS)."""
    local = roi.to_crs(scene.crs)
    return geometry_mask(
        [local.geometry],
        out_shape=scene.shape,
        transform=scene.transform,
        invert=True,
    )


def filter_scene(
    scene: LidarScene,
    *,
    roi: Optional[Roi],
    keep_fields: Sequence[str],
    quality_field: str = "quality_flag",
    degrade_field: str = "degrade_flag",
) -> LidarScene:
    """Apply the flag and ROI masks to one scene and drop unneeded fields."""
    keep = np.ones(scene.shape, dtype=bool)

    if not scene.filtered:
        missing = [f for f in (quality_field, degrade_field) if f not in scene.bands]
        if missing:
            raise ValueError(f"Lidar scene {scene.path} has no {missing} band(s); cannot apply quality mask")
        q = scene.bands[quality_field]
        dg = scene.bands[degrade_field]
        keep &= (q == 1) & (dg == 0)

    if roi is not None:
        keep &= roi_mask(roi, scene)

    bands = {}
    for name in keep_fields:
        if name not in scene.bands:
            raise ValueError(f"Lidar scene {scene.path} has no '{name}' band")
        arr = scene.bands[name].copy()
        arr[~keep] = np.nan
        bands[name] = arr

    return LidarScene(
        path=scene.path,
        date=scene.date,
        bands=bands,
        transform=scene.transform,
        crs=scene.crs,
        filtered=True,
        tags=dict(scene.tags),
    )


def quality_filter(
    scenes: Sequence[LidarScene],
    *,
    start: date,
    end: date,
    roi: Optional[Roi],
    keep_fields: Sequence[str],
    quality_field: str = "quality_flag",
    degrade_field: str = "degrade_flag",
) -> List[LidarScene]:
    """Filter a scene collection by date window, shot quality and ROI.

    Scenes outside the window are dropped entirely. The result keeps input
    order.
    """
    out: List[LidarScene] = []
    for scene in scenes:
        if not in_window(scene.date, start, end):
            print(f"  - skip {scene.path.name}: {scene.date} outside [{start}, {end})")
            continue
        out.append(
            filter_scene(
                scene,
                roi=roi,
                keep_fields=keep_fields,
                quality_field=quality_field,
                degrade_field=degrade_field,
            )
        )
    return out

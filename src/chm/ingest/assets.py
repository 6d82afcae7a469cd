#!/usr/bin/env python3
"""assets.py

Load the three inputs of a run: the region of interest, the optical
composite, and the GEDI lidar scenes.

Nothing here computes anything. A missing or unreadable asset raises
AssetError naming the role and path, and the pipeline calls verify_assets()
before any step starts so the operator sees every problem up front.

Expected inputs:
- ROI: any vector file geopandas can read (GeoPackage, shapefile, GeoJSON).
  All features are unioned into one (multi)polygon.
- Composite: multi-band GeoTIFF with band descriptions (B2_median, ...).
- Lidar: one GeoTIFF per acquisition with named bands (rh95, quality_flag,
  degrade_flag, lat_highestreturn, lon_highestreturn). Acquisition date is
  read from the DATE tag, or parsed from the file name.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.errors import RasterioIOError
from shapely.geometry.base import BaseGeometry

from chm.errors import AssetError


# -----------------------------------------------------------------------------
# Data holders
# -----------------------------------------------------------------------------

@dataclass
class Roi:
    geometry: BaseGeometry
    crs: CRS

    @property
    def bounds(self):
        return self.geometry.bounds

    def to_crs(self, crs: Any) -> "Roi":
        """Return the ROI reprojected to `crs` (no-op when already there)."""
        target = CRS.from_user_input(crs)
        if target == self.crs:
            return self
        gs = gpd.GeoSeries([self.geometry], crs=self.crs).to_crs(target)
        return Roi(geometry=gs.iloc[0], crs=target)


@dataclass
class LidarScene:
    """One lidar acquisition on its native grid. NaN marks masked cells."""

    path: Path
    date: date
    bands: Dict[str, np.ndarray]
    transform: Any
    crs: CRS
    filtered: bool = False
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def shape(self):
        return next(iter(self.bands.values())).shape


# -----------------------------------------------------------------------------
# ROI
# -----------------------------------------------------------------------------

def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Repair invalid geometries, falling back to buffer(0) on old geopandas."""
    gdf = gdf.copy()
    if hasattr(gdf.geometry, "make_valid"):
        gdf["geometry"] = gdf.geometry.make_valid()
    else:
        gdf["geometry"] = gdf.geometry.buffer(0)
    return gdf


def load_roi(path: Path) -> Roi:
    """Read the ROI vector file and union its features into one geometry."""
    if path is None or not Path(path).exists():
        raise AssetError(f"ROI not found: {path}")

    gdf = gpd.read_file(path)
    if gdf.empty:
        raise AssetError(f"ROI file contains zero features: {path}")
    if gdf.crs is None:
        raise AssetError(
            f"ROI has no CRS ({path}). "
            "Everything downstream is clipped against it, so fix that first."
        )

    gdf = _make_valid(gdf)
    gdf = gdf[~gdf.geometry.is_empty & gdf.geometry.notna()]
    if gdf.empty:
        raise AssetError(f"ROI has no usable geometry after repair: {path}")

    # union_all() replaced unary_union in geopandas 1.0
    if hasattr(gdf.geometry, "union_all"):
        geom = gdf.geometry.union_all()
    else:
        geom = gdf.geometry.unary_union
    return Roi(geometry=geom, crs=CRS.from_user_input(gdf.crs))


# -----------------------------------------------------------------------------
# Composite
# -----------------------------------------------------------------------------

def band_index(src, names: Sequence[str]) -> Dict[str, int]:
    """Map band names to 1-based band indexes using the band descriptions."""
    descriptions = list(src.descriptions)
    lookup: Dict[str, int] = {}
    missing = []
    for name in names:
        if name in descriptions:
            lookup[name] = descriptions.index(name) + 1
        else:
            missing.append(name)
    if missing:
        raise AssetError(
            f"{src.name} is missing bands {missing}. "
            f"Available band descriptions: {descriptions}"
        )
    return lookup


def open_composite(path: Path, band_names: Sequence[str]):
    """Open the composite GeoTIFF and check every configured band is present.

    Returns the open rasterio dataset; the caller owns closing it.
    """
    if path is None or not Path(path).exists():
        raise AssetError(f"Composite raster not found: {path}")
    try:
        src = rasterio.open(path)
    except RasterioIOError as e:
        raise AssetError(f"Composite raster unreadable: {path}: {e}") from e
    if src.crs is None:
        src.close()
        raise AssetError(f"Composite raster has no CRS: {path}")
    try:
        band_index(src, band_names)
    except AssetError:
        src.close()
        raise
    return src


# -----------------------------------------------------------------------------
# Lidar scenes
# -----------------------------------------------------------------------------

_DATE_PATTERNS = [
    re.compile(r"(?P<y>\d{4})-(?P<m>\d{2})-(?P<d>\d{2})"),
    re.compile(r"(?P<y>\d{4})(?P<m>\d{2})(?P<d>\d{2})"),
    re.compile(r"(?P<y>\d{4})[-_](?P<m>\d{2})(?!\d)"),
    re.compile(r"(?<!\d)(?P<y>\d{4})(?P<m>\d{2})(?!\d)"),
]


def scene_date(path: Path, tags: Optional[Dict[str, str]] = None) -> date:
    """Acquisition date from the DATE tag, else from the file name.

    Month-only names (2019_07, 201907) map to the first of the month, which
    is how monthly GEDI rasters are stamped.
    """
    tags = tags or {}
    raw = tags.get("DATE") or tags.get("date")
    if raw:
        try:
            return date.fromisoformat(str(raw)[:10])
        except ValueError:
            pass

    name = Path(path).stem
    for pat in _DATE_PATTERNS:
        m = pat.search(name)
        if not m:
            continue
        parts = m.groupdict()
        try:
            return date(int(parts["y"]), int(parts["m"]), int(parts.get("d") or 1))
        except ValueError:
            continue
    raise AssetError(f"Cannot determine acquisition date for lidar scene {path} (no DATE tag, no date in name)")


def discover_lidar_scenes(source: Optional[str]) -> List[Path]:
    """Resolve the lidar asset to a sorted list of GeoTIFFs.

    `source` is a directory (all *.tif inside) or a glob pattern.
    """
    if not source:
        raise AssetError("No lidar collection configured (assets.lidar)")
    p = Path(source)
    if p.is_dir():
        matches = sorted(x for x in p.iterdir() if x.suffix.lower() in (".tif", ".tiff"))
    else:
        anchor = Path(p.anchor) if p.is_absolute() else Path()
        pattern = str(p.relative_to(anchor)) if p.is_absolute() else str(p)
        matches = sorted(anchor.glob(pattern))
    if not matches:
        raise AssetError(f"Lidar collection matched no files: {source}")
    return matches


def peek_scene_date(path: Path) -> date:
    """Acquisition date of a lidar GeoTIFF from its tags or name, without reading pixels."""
    try:
        with rasterio.open(path) as src:
            tags = src.tags()
    except RasterioIOError as e:
        raise AssetError(f"Lidar scene unreadable: {path}: {e}") from e
    return scene_date(path, tags)


def load_lidar_scene(path: Path, fields: Sequence[str]) -> LidarScene:
    """Read the named bands of one lidar GeoTIFF as float arrays (nodata -> NaN)."""
    try:
        src = rasterio.open(path)
    except RasterioIOError as e:
        raise AssetError(f"Lidar scene unreadable: {path}: {e}") from e

    with src:
        if src.crs is None:
            raise AssetError(f"Lidar scene has no CRS: {path}")
        idx = band_index(src, fields)
        tags = src.tags()
        bands: Dict[str, np.ndarray] = {}
        for name, i in idx.items():
            arr = src.read(i, masked=True).astype("float64")
            bands[name] = arr.filled(np.nan)
        return LidarScene(
            path=Path(path),
            date=scene_date(path, tags),
            bands=bands,
            transform=src.transform,
            crs=src.crs,
            tags=tags,
        )


def load_lidar_scenes(paths: Sequence[Path], fields: Sequence[str]) -> List[LidarScene]:
    return [load_lidar_scene(p, fields) for p in paths]


# -----------------------------------------------------------------------------
# Verify (presence only)
# -----------------------------------------------------------------------------

def verify_assets(roi: Optional[Path], composite: Optional[Path], lidar: Optional[str]) -> List[Dict[str, Any]]:
    """Check that each input exists. Does not read pixel data.

    Returns one result dict per asset role, in load order.
    """
    results: List[Dict[str, Any]] = []

    for role, path in (("roi", roi), ("composite", composite)):
        if path is None:
            results.append({"asset": role, "ok": False, "reason": "not configured"})
        elif not Path(path).exists():
            results.append({"asset": role, "ok": False, "path": str(path), "reason": f"missing file: {path}"})
        else:
            results.append({"asset": role, "ok": True, "path": str(path)})

    try:
        scenes = discover_lidar_scenes(lidar)
    except AssetError as e:
        results.append({"asset": "lidar", "ok": False, "path": lidar, "reason": str(e)})
    else:
        results.append({
            "asset": "lidar",
            "ok": True,
            "path": lidar,
            "count": len(scenes),
            "sample": [str(x) for x in scenes[:5]],
        })

    return results

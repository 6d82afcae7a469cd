#!/usr/bin/env python3
"""indices.py

Normalized-difference vegetation indices and the "extended raster" view of
the composite (spectral bands + indices).

  ndvi = (NIR - Red)   / (NIR + Red)     Rouse et al., 1974
  nbr  = (NIR - SWIR1) / (NIR + SWIR1)   Key & Benson, 2006
  ndmi = (NIR - SWIR2) / (NIR + SWIR2)   Gao, 1996

No-data policy:
- A zero denominator gives the `nodata` sentinel (default -9999.0).
- A missing input (NaN) gives NaN.
The two stay distinct so callers can tell "undefined ratio" from "no data
at this location". The model layer treats both as masked.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.windows import Window

from chm.config import NODATA, IndexConfig
from chm.ingest.assets import band_index, open_composite


def normalized_difference(a, b, nodata: float = NODATA) -> np.ndarray:
    """(a - b) / (a + b), elementwise, with the sentinel where a + b == 0."""
    a = np.asarray(a, dtype="float64")
    b = np.asarray(b, dtype="float64")
    denom = a + b
    zero = denom == 0
    with np.errstate(divide="ignore", invalid="ignore"):
        out = (a - b) / np.where(zero, 1.0, denom)
    return np.where(zero, nodata, out)


def index_definitions(cfg: IndexConfig) -> List[Tuple[str, str, str]]:
    """(name, numerator band, denominator band) for each index."""
    return [
        ("ndvi", cfg.nir, cfg.red),
        ("nbr", cfg.nir, cfg.swir1),
        ("ndmi", cfg.nir, cfg.swir2),
    ]


def add_indices(bands: Mapping[str, np.ndarray], cfg: IndexConfig) -> Dict[str, np.ndarray]:
    """Return a copy of `bands` with ndvi, nbr and ndmi appended."""
    out = dict(bands)
    for name, a, b in index_definitions(cfg):
        out[name] = normalized_difference(bands[a], bands[b], nodata=cfg.nodata)
    return out


class ExtendedRaster:
    """Composite bands plus indices, read lazily cell by cell.

    Holds only the composite's path and grid metadata. Every read opens its
    own dataset handle, so reads can run concurrently from job threads.
    Composite nodata (and anything off the raster) becomes NaN.
    """

    def __init__(self, path: Path, spectral_bands: Sequence[str], cfg: IndexConfig) -> None:
        self.path = Path(path)
        self.spectral_bands = list(spectral_bands)
        self.cfg = cfg
        with open_composite(self.path, self.spectral_bands) as src:
            self._idx = band_index(src, self.spectral_bands)
            self.crs = src.crs
            self.transform = src.transform
            self.width = src.width
            self.height = src.height
            self.block_shape = src.block_shapes[0]

    @property
    def band_names(self) -> List[str]:
        return self.spectral_bands + [name for name, _, _ in index_definitions(self.cfg)]

    def _read(self, src, name: str, window: Window) -> np.ndarray:
        arr = src.read(self._idx[name], window=window, masked=True)
        return np.ma.filled(arr.astype("float64"), np.nan)

    def _cell_windows(self, rows: np.ndarray, cols: np.ndarray, inside: np.ndarray):
        """Yield (cell indexes, window) per composite block touched by the cells."""
        bh, bw = self.block_shape
        n_block_cols = -(-self.width // bw)
        where = np.nonzero(inside)[0]
        keys = (rows[where] // bh) * n_block_cols + cols[where] // bw
        order = np.argsort(keys, kind="mergesort")
        keys, where = keys[order], where[order]
        bounds = np.flatnonzero(np.diff(keys)) + 1
        for idx in np.split(where, bounds):
            r0, r1 = int(rows[idx].min()), int(rows[idx].max())
            c0, c1 = int(cols[idx].min()), int(cols[idx].max())
            yield idx, Window(c0, r0, c1 - c0 + 1, r1 - r0 + 1)

    def read_cells(self, rows: np.ndarray, cols: np.ndarray) -> Dict[str, np.ndarray]:
        """Extended band values at integer (row, col) cells.

        Cells are grouped by composite block and each group reads only its own
        bounding window, so scattered points never pull in the raster between
        them. Cells outside the raster get NaN in every band.
        """
        rows = np.asarray(rows, dtype="int64")
        cols = np.asarray(cols, dtype="int64")
        inside = (rows >= 0) & (rows < self.height) & (cols >= 0) & (cols < self.width)

        bands = {name: np.full(rows.size, np.nan) for name in self.spectral_bands}
        if inside.any():
            with rasterio.open(self.path) as src:
                for idx, window in self._cell_windows(rows, cols, inside):
                    rr = rows[idx] - int(window.row_off)
                    cc = cols[idx] - int(window.col_off)
                    for name in self.spectral_bands:
                        bands[name][idx] = self._read(src, name, window)[rr, cc]
        return add_indices(bands, self.cfg)

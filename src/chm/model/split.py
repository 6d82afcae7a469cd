#!/usr/bin/env python3
"""split.py

Reproducible train/test split of the joined samples.

Null targets are dropped first. Each remaining sample (ordered by
sample_id) gets a uniform draw in [0, 1) from a seeded generator, stored in
the `random` column: draw < train_fraction -> training, else testing.
The ratio is approximate, as with any independent per-row draw.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
import pandas as pd

from chm.errors import EmptySampleError


def drop_null_targets(samples: pd.DataFrame, target: str = "rh95") -> pd.DataFrame:
    return samples[samples[target].notna()].copy()


def split_samples(
    samples: pd.DataFrame,
    *,
    target: str = "rh95",
    seed: int = 0,
    train_fraction: float = 0.7,
    id_col: str = "sample_id",
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Return (training, testing). Raises EmptySampleError if no valid target remains."""
    valid = drop_null_targets(samples, target)
    if valid.empty:
        raise EmptySampleError(
            f"No samples with a non-null '{target}' after quality filtering "
            f"({len(samples)} joined point(s) in total). Check the date window, ROI and quality flags.",
            step="split",
        )

    valid = valid.sort_values(id_col, kind="mergesort").reset_index(drop=True)
    rng = np.random.default_rng(seed)
    valid["random"] = rng.random(len(valid))

    training = valid[valid["random"] < train_fraction].reset_index(drop=True)
    testing = valid[valid["random"] >= train_fraction].reset_index(drop=True)
    print(f"[SPLIT] training={len(training)} testing={len(testing)} (seed={seed}, fraction={train_fraction})")
    return training, testing

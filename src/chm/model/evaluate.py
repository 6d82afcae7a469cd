#!/usr/bin/env python3
"""evaluate.py

Hold-out error metrics. Observed and predicted values must pair up
one-to-one by sample id; anything unpaired is an error, never skipped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd

from chm.errors import EmptySampleError, PairingError


@dataclass
class Evaluation:
    rmse: float
    mae: float
    n: int


def rmse(observed, predicted) -> float:
    obs = np.asarray(observed, dtype="float64")
    pred = np.asarray(predicted, dtype="float64")
    return float(np.sqrt(np.mean((pred - obs) ** 2)))


def mae(observed, predicted) -> float:
    obs = np.asarray(observed, dtype="float64")
    pred = np.asarray(predicted, dtype="float64")
    return float(np.mean(np.abs(pred - obs)))


def evaluate(
    frame: pd.DataFrame,
    *,
    target: str = "rh95",
    prediction: str = "classification",
    id_col: str = "sample_id",
) -> Tuple[Evaluation, pd.DataFrame]:
    """RMSE/MAE over the paired rows of `frame`.

    Returns the metrics and the per-point pairs table
    (id, observed, predicted, residual).
    """
    if frame.empty:
        raise EmptySampleError("No testing samples to evaluate", step="eval")

    dup = frame[id_col][frame[id_col].duplicated()]
    if not dup.empty:
        raise PairingError(f"Duplicate sample ids in evaluation set: {sorted(dup.unique().tolist())[:20]}")

    obs = frame[target].to_numpy(dtype="float64")
    pred = frame[prediction].to_numpy(dtype="float64")
    unpaired = ~(np.isfinite(obs) & np.isfinite(pred))
    if unpaired.any():
        ids = frame.loc[unpaired, id_col].tolist()
        raise PairingError(
            f"{len(ids)} sample(s) lack an observed or predicted value: {ids[:20]}"
            + (" ..." if len(ids) > 20 else "")
        )

    pairs = pd.DataFrame({
        id_col: frame[id_col].to_numpy(),
        target: obs,
        prediction: pred,
        "residual": pred - obs,
    })
    result = Evaluation(rmse=rmse(obs, pred), mae=mae(obs, pred), n=len(pairs))
    print(f"[EVAL] n={result.n} RMSE={result.rmse:.3f} MAE={result.mae:.3f}")
    return result, pairs

#!/usr/bin/env python3
"""regressor.py

Random forest regression of canopy height (rh95) on the 11 extended bands.

Fixed hyper-parameters from the reference workflow:
- 74 trees
- min leaf population 3
- bag fraction 1.0: each tree sees a bootstrap sample the size of the
  training set (no subsampling)
- sqrt(n_features) variables per split
- seed 123

A row is "masked" when any predictor is NaN or equals the index no-data
sentinel. Masked rows are left out of fitting and predict NaN, the same way
a masked pixel yields no classification on the hosted platform.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor

from chm.config import NODATA, ModelConfig
from chm.errors import EmptySampleError


@dataclass
class CanopyHeightModel:
    estimator: RandomForestRegressor
    input_bands: List[str]
    target: str
    nodata: float = NODATA
    n_train: int = 0


def valid_rows(X: np.ndarray, nodata: float = NODATA) -> np.ndarray:
    """True for rows with every predictor finite and not the sentinel."""
    X = np.asarray(X, dtype="float64")
    return np.isfinite(X).all(axis=1) & (X != nodata).all(axis=1)


def _max_samples(bag_fraction: float) -> Optional[float]:
    # None means "as many draws as there are rows". Below 1.0 scikit-learn still
    # draws with replacement: a smaller bootstrap, not a subsample without
    # replacement.
    if bag_fraction >= 1.0:
        return None
    return float(bag_fraction)


def build_estimator(cfg: ModelConfig, n_jobs: Optional[int] = None) -> RandomForestRegressor:
    return RandomForestRegressor(
        n_estimators=cfg.n_estimators,
        min_samples_leaf=cfg.min_samples_leaf,
        max_features=cfg.max_features,
        bootstrap=True,
        max_samples=_max_samples(cfg.bag_fraction),
        random_state=cfg.seed,
        n_jobs=n_jobs,
    )


def fit_regressor(
    training: pd.DataFrame,
    cfg: ModelConfig,
    *,
    target: str = "rh95",
    nodata: float = NODATA,
    n_jobs: Optional[int] = None,
) -> CanopyHeightModel:
    """Fit the forest on the training table. Fails fast on zero usable rows."""
    missing = [b for b in cfg.input_bands + [target] if b not in training.columns]
    if missing:
        raise ValueError(f"Training table is missing columns: {missing}")

    X = training[cfg.input_bands].to_numpy(dtype="float64")
    y = training[target].to_numpy(dtype="float64")
    keep = valid_rows(X, nodata) & np.isfinite(y)

    n_dropped = int((~keep).sum())
    if n_dropped:
        print(f"  - {n_dropped} training row(s) masked (missing predictor or target), not used for fitting")
    if not keep.any():
        raise EmptySampleError(
            f"No usable training rows: all {len(training)} have a missing predictor or target",
            step="model",
        )

    est = build_estimator(cfg, n_jobs=n_jobs)
    est.fit(X[keep], y[keep])
    # Parallel predict sums per-tree outputs in completion order; keep it single-threaded
    est.set_params(n_jobs=None)
    print(f"[MODEL] fitted {cfg.n_estimators} trees on {int(keep.sum())} rows x {len(cfg.input_bands)} bands")
    return CanopyHeightModel(
        estimator=est,
        input_bands=list(cfg.input_bands),
        target=target,
        nodata=nodata,
        n_train=int(keep.sum()),
    )


def _predict_matrix(model: CanopyHeightModel, X: np.ndarray) -> np.ndarray:
    out = np.full(X.shape[0], np.nan)
    keep = valid_rows(X, model.nodata)
    if keep.any():
        out[keep] = model.estimator.predict(X[keep])
    return out


def predict_table(model: CanopyHeightModel, frame: pd.DataFrame) -> np.ndarray:
    """One prediction per row (mean of per-tree predictions); NaN where masked."""
    X = frame[model.input_bands].to_numpy(dtype="float64")
    return _predict_matrix(model, X)


def predict_block(model: CanopyHeightModel, bands: Mapping[str, np.ndarray], nodata: float = NODATA) -> np.ndarray:
    """Predict a 2-D raster window given {band name: array}. Masked pixels -> nodata."""
    shape = np.shape(bands[model.input_bands[0]])
    X = np.column_stack([np.asarray(bands[b], dtype="float64").ravel() for b in model.input_bands])
    pred = _predict_matrix(model, X)
    pred[~np.isfinite(pred)] = nodata
    return pred.reshape(shape)


def feature_importance(model: CanopyHeightModel) -> pd.DataFrame:
    """Impurity-based importance per input band, highest first. Informational only."""
    return (
        pd.DataFrame({"band": model.input_bands, "importance": model.estimator.feature_importances_})
        .sort_values("importance", ascending=False, kind="mergesort")
        .reset_index(drop=True)
    )


def describe(model: CanopyHeightModel) -> dict:
    """Summary in the spirit of the platform's explain() output."""
    est: Any = model.estimator
    return {
        "numberOfTrees": len(est.estimators_),
        "minLeafPopulation": est.min_samples_leaf,
        "maxFeatures": est.max_features,
        "seed": est.random_state,
        "inputBands": list(model.input_bands),
        "target": model.target,
        "trainingRows": model.n_train,
        "importance": dict(zip(model.input_bands, map(float, est.feature_importances_))),
    }

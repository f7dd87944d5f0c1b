# src/canopy_pl/weights.py
from __future__ import annotations

import math
import sys
import warnings
from collections import defaultdict

import numpy as np
import cv2
from affine import Affine
from rasterio.transform import rowcol
from shapely.geometry.base import BaseGeometry

from .errors import DegenerateWeightWarning
from .records import ResponseVariable, TileAccuracy, TileWeight

# stands in for 1/0 when a tile fits its test split perfectly
MAX_MSE_INVERSE = sys.float_info.max


def regression_accuracy(observed, predicted) -> tuple[float, float]:
    """(R², RMSE) of predictions against held-out observations."""
    y = np.asarray(observed, dtype=float)
    yhat = np.asarray(predicted, dtype=float)
    if y.shape != yhat.shape or y.size == 0:
        raise ValueError("observed and predicted must be non-empty and the same shape")
    ss_res = float(np.sum((y - yhat) ** 2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    rmse = math.sqrt(ss_res / y.size)
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else float("nan")
    return r2, rmse


def mse_inverse(rmse: float) -> float:
    rmse = float(rmse)
    if not math.isfinite(rmse) or rmse < 0:
        raise ValueError(f"RMSE must be a finite non-negative number, got {rmse}")
    if rmse == 0:
        warnings.warn(
            "RMSE of 0; using the largest finite inverse MSE", DegenerateWeightWarning
        )
        return MAX_MSE_INVERSE
    mse = rmse**2
    if mse == 0:  # underflow
        return MAX_MSE_INVERSE
    return min(1.0 / mse, MAX_MSE_INVERSE)


def normalize_weights(accuracies: list[TileAccuracy]) -> list[TileWeight]:
    """Min-max normalise 1/RMSE² to [0, 1] within each response variable.

    A variable fitted on a single tile, or whose tiles all share one RMSE,
    gets weight 1.0 everywhere.
    """
    parts: dict[ResponseVariable, list[TileAccuracy]] = defaultdict(list)
    seen = set()
    for acc in accuracies:
        var = ResponseVariable(acc.response_variable)
        key = (acc.tile_id, var)
        if key in seen:
            raise ValueError(f"Duplicate accuracy for tile {acc.tile_id} / {var}")
        seen.add(key)
        parts[var].append(acc)

    out: list[TileWeight] = []
    for var in sorted(parts, key=lambda v: v.value):
        accs = sorted(parts[var], key=lambda a: a.tile_id)
        inv = np.array([mse_inverse(a.rmse) for a in accs], dtype=float)
        lo, hi = float(inv.min()), float(inv.max())
        if len(accs) == 1 or hi == lo:
            warnings.warn(
                f"{var}: {len(accs)} tile(s) with identical inverse MSE; weights set to 1.0",
                DegenerateWeightWarning,
            )
            norm = np.ones_like(inv)
        else:
            norm = (inv - lo) / (hi - lo)
        for a, m, w in zip(accs, inv, norm):
            out.append(TileWeight(a.tile_id, var, float(m), float(w)))
    return out


def weights_by_variable(weights: list[TileWeight]) -> dict[ResponseVariable, dict[int, float]]:
    out: dict[ResponseVariable, dict[int, float]] = defaultdict(dict)
    for w in weights:
        out[ResponseVariable(w.response_variable)][w.tile_id] = w.normalized_weight
    return dict(out)


def location_weight(
    shape: tuple[int, int],
    transform: Affine,
    geometry: BaseGeometry,
    max_distance_px: float = 1415,
) -> np.ndarray:
    """Per-pixel weight falling linearly from 1 at the tile centroid to 0 at max_distance_px."""
    h, w = shape
    ctr = geometry.centroid
    r0, c0 = rowcol(transform, ctr.x, ctr.y)
    if not (0 <= r0 < h and 0 <= c0 < w):
        raise ValueError("Tile centroid falls outside the raster")

    seed = np.full((h, w), 255, dtype=np.uint8)
    seed[r0, c0] = 0
    dist_px = cv2.distanceTransform(seed, cv2.DIST_L2, cv2.DIST_MASK_PRECISE)
    d = float(max(max_distance_px, 1e-6))
    return np.clip((d - dist_px) / d, 0.0, 1.0).astype(np.float32)

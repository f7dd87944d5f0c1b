# src/canopy_pl/fitting.py
"""Per-tile model fitting: the learner is a black box behind ``ModelFitter``."""
from __future__ import annotations

import os
import random
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
import pandas as pd
import rasterio
import rasterio.mask
from rasterio.errors import RasterioIOError
from shapely.geometry import mapping
from sklearn.ensemble import RandomForestRegressor

from .counting import TILE_FIELD
from .errors import TransientFitError
from .records import (
    FitResult,
    PredictionRaster,
    ResponseVariable,
    Tile,
    TileAccuracy,
)
from .util import log
from .weights import regression_accuracy


class ModelFitter(Protocol):
    def fit(
        self, tile: Tile, response_variable: ResponseVariable, samples: pd.DataFrame
    ) -> FitResult: ...


class RandomForestFitter:
    """Random-forest regression on a tile's samples, predicted over a predictor stack.

    ``predictors_tif`` is a multi-band raster whose bands line up with
    ``predictor_names`` (band descriptions are used when names are omitted).
    Sample tables need one column per predictor plus the response variable.
    """

    def __init__(
        self,
        predictors_tif,
        predictor_names: list[str] | None = None,
        n_trees: int = 100,
        train_ratio: float = 0.8,
        seed: int = 17,
        min_samples_leaf: int = 1,
    ):
        self.predictors_tif = str(predictors_tif)
        self.predictor_names = list(predictor_names) if predictor_names else None
        self.n_trees = n_trees
        self.train_ratio = train_ratio
        self.seed = seed
        self.min_samples_leaf = min_samples_leaf

    def _names(self, src) -> list[str]:
        if self.predictor_names:
            if len(self.predictor_names) != src.count:
                raise ValueError(
                    f"{len(self.predictor_names)} predictor names for {src.count} bands"
                )
            return self.predictor_names
        names = list(src.descriptions)
        if any(n is None for n in names):
            raise ValueError("Predictor bands have no descriptions; pass predictor_names")
        return names

    def fit(self, tile, response_variable, samples):
        var = ResponseVariable(response_variable)
        try:
            with rasterio.open(self.predictors_tif) as src:
                names = self._names(src)
                img, T = rasterio.mask.mask(
                    src, [mapping(tile.geometry)], crop=True, filled=False
                )
                crs = src.crs.to_string()
        except RasterioIOError as e:
            raise TransientFitError(f"Reading predictors for tile {tile.tile_id}: {e}") from e

        df = samples.dropna(subset=names + [var.value])
        split = np.random.default_rng(self.seed).random(len(df)) < self.train_ratio
        train, test = df[split], df[~split]
        if train.empty or test.empty:
            raise ValueError(
                f"Tile {tile.tile_id}: {len(df)} samples are too few to split for {var}"
            )

        model = RandomForestRegressor(
            n_estimators=self.n_trees,
            min_samples_leaf=self.min_samples_leaf,
            random_state=self.seed,
            n_jobs=1,
        )
        model.fit(train[names].to_numpy(), train[var.value].to_numpy())
        r2, rmse = regression_accuracy(
            test[var.value].to_numpy(), model.predict(test[names].to_numpy())
        )

        # predict every pixel where all predictors are defined
        bands, h, w = img.shape
        data = np.ma.getdata(img).reshape(bands, -1).T.astype(np.float64)
        ok = ~np.ma.getmaskarray(img).reshape(bands, -1).any(axis=0)
        ok &= np.isfinite(data).all(axis=1)
        pred = np.full(h * w, np.nan, dtype=np.float32)
        if ok.any():
            pred[ok] = model.predict(data[ok])
        values = np.ma.MaskedArray(pred.reshape(h, w), mask=~ok.reshape(h, w))

        acc = TileAccuracy(tile.tile_id, var, r2, rmse)
        raster = PredictionRaster(tile.tile_id, var, values, T, crs)
        return FitResult(acc, raster)


@dataclass
class FitBatch:
    accuracies: list[TileAccuracy] = field(default_factory=list)
    rasters: list[PredictionRaster] = field(default_factory=list)
    failed: list[tuple[int, ResponseVariable, str]] = field(default_factory=list)


# ---------------------------
# Worker (module scope so it pickles)
# ---------------------------
def _fit_one(fitter, tile, var, samples, max_tries, base_sleep):
    last_err = None
    for attempt in range(1, max_tries + 1):
        try:
            return fitter.fit(tile, var, samples), None
        except TransientFitError as e:
            last_err = e
            if attempt < max_tries:
                sleep = base_sleep * (2 ** (attempt - 1)) + random.uniform(0, 0.5)
                log(f"[fit] tile {tile.tile_id}/{var} attempt {attempt}/{max_tries} failed; retrying in {sleep:.1f}s")
                time.sleep(sleep)
    return None, f"{max_tries} tries: {last_err}"


def fit_tiles(
    tiles: list[Tile],
    variables,
    fitter: ModelFitter,
    samples: pd.DataFrame,
    *,
    n_workers: int | None = None,
    max_tries: int = 3,
    base_sleep: float = 1.0,
) -> FitBatch:
    """Fit every (tile, variable) independently; transient failures are retried per job.

    Jobs that still fail after ``max_tries`` are reported in ``failed`` and do
    not stop the others. Any other exception propagates.
    """
    variables = [ResponseVariable(v) for v in variables]
    by_tile = {tid: grp for tid, grp in samples.groupby(TILE_FIELD)}
    jobs = []
    for t in tiles:
        tile_samples = by_tile.get(t.tile_id, samples.iloc[0:0])
        for v in variables:
            jobs.append((t, v, tile_samples))

    if n_workers is None:
        n_workers = max(1, (os.cpu_count() or 2) - 1)

    batch = FitBatch()

    def _collect(tile, var, res, err):
        if res is None:
            batch.failed.append((tile.tile_id, var, err))
            log(f"[fit] tile {tile.tile_id}/{var} gave up after {err}")
            return
        batch.accuracies.append(res.accuracy)
        batch.rasters.append(res.raster)

    if n_workers == 1:
        for t, v, s in jobs:
            _collect(t, v, *_fit_one(fitter, t, v, s, max_tries, base_sleep))
    else:
        with ProcessPoolExecutor(max_workers=n_workers) as ex:
            futs = {
                ex.submit(_fit_one, fitter, t, v, s, max_tries, base_sleep): (t, v)
                for t, v, s in jobs
            }
            for i, fut in enumerate(as_completed(futs), 1):
                t, v = futs[fut]
                _collect(t, v, *fut.result())
                if i % 8 == 0 or i == len(futs):
                    log(f"[fit] jobs done: {i}/{len(futs)}")

    batch.accuracies.sort(key=lambda a: (a.response_variable.value, a.tile_id))
    batch.rasters.sort(key=lambda r: (r.response_variable.value, r.tile_id))
    return batch

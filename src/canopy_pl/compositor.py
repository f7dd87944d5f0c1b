# src/canopy_pl/compositor.py
from __future__ import annotations

import os
from collections import defaultdict
from concurrent.futures import ProcessPoolExecutor, as_completed

import numpy as np
import geopandas as gpd
from affine import Affine
from rasterio.features import geometry_mask
from shapely.geometry import mapping as shp_mapping

from .records import (
    CompositeRaster,
    PredictionRaster,
    ResponseVariable,
    Tile,
    TileWeight,
)
from .util import log
from .weights import location_weight, weights_by_variable

METHODS = ("weighted", "mean")


# ---------------------------
# Output grid
# ---------------------------
def output_grid(rasters: list[PredictionRaster]) -> tuple[Affine, int, int]:
    """Smallest grid (transform, width, height) holding every raster."""
    if not rasters:
        raise ValueError("No prediction rasters given")
    t0 = rasters[0].transform
    crs0 = rasters[0].crs
    if t0.b != 0 or t0.d != 0:
        raise ValueError("Rotated rasters are not supported")
    resx, resy = t0.a, t0.e
    for r in rasters[1:]:
        if r.crs != crs0:
            raise ValueError(f"CRS mismatch: {r.crs} != {crs0} (tile {r.tile_id})")
        if not (np.isclose(r.transform.a, resx) and np.isclose(r.transform.e, resy)):
            raise ValueError(f"Pixel size mismatch for tile {r.tile_id}")

    west = min(r.bounds[0] for r in rasters)
    south = min(r.bounds[1] for r in rasters)
    east = max(r.bounds[2] for r in rasters)
    north = max(r.bounds[3] for r in rasters)
    width = int(round((east - west) / abs(resx)))
    height = int(round((north - south) / abs(resy)))
    return Affine(resx, 0.0, west, 0.0, resy, north), width, height


def _window(raster: PredictionRaster, grid: Affine) -> tuple[slice, slice]:
    """Row/col slices of the output grid occupied by a pixel-aligned raster."""
    t = raster.transform
    if not (np.isclose(t.a, grid.a) and np.isclose(t.e, grid.e)):
        raise ValueError(f"Pixel size mismatch for tile {raster.tile_id}")
    col_f = (t.c - grid.c) / grid.a
    row_f = (t.f - grid.f) / grid.e
    col, row = int(round(col_f)), int(round(row_f))
    if abs(col_f - col) > 1e-6 or abs(row_f - row) > 1e-6:
        raise ValueError(f"Tile {raster.tile_id} is not pixel-aligned with the output grid")
    h, w = raster.shape
    return slice(row, row + h), slice(col, col + w)


def _valid_in_tile(raster: PredictionRaster, geometry) -> np.ndarray:
    inside = geometry_mask(
        [shp_mapping(geometry)],
        transform=raster.transform,
        out_shape=raster.shape,
        invert=True,
    )
    data = np.ma.getdata(raster.values)
    return inside & ~np.ma.getmaskarray(raster.values) & np.isfinite(data)


# ---------------------------
# Worker (module scope so it pickles)
# ---------------------------
def _composite_variable(
    variable: ResponseVariable,
    rasters: list[PredictionRaster],
    tile_weights: dict[int, float],
    geometries: dict,
    grid: tuple[Affine, int, int],
    method: str,
    location_weighting: bool,
    max_distance_px: float,
) -> CompositeRaster:
    transform, width, height = grid
    num = np.zeros((height, width), dtype=np.float64)
    den = np.zeros((height, width), dtype=np.float64)
    raw = np.zeros((height, width), dtype=np.float64)
    cnt = np.zeros((height, width), dtype=np.int32)

    for r in rasters:
        if r.tile_id not in tile_weights:
            raise KeyError(f"No weight for tile {r.tile_id} / {variable}")
        geom = geometries[r.tile_id]
        valid = _valid_in_tile(r, geom)
        if not valid.any():
            continue
        rows, cols = _window(r, transform)
        if rows.start < 0 or cols.start < 0 or rows.stop > height or cols.stop > width:
            raise ValueError(f"Tile {r.tile_id} extends past the output grid")

        vals = np.ma.getdata(r.values).astype(np.float64)
        w = np.full(r.shape, tile_weights[r.tile_id], dtype=np.float64)
        if location_weighting:
            w = w * location_weight(r.shape, r.transform, geom, max_distance_px)

        n_sub, d_sub = num[rows, cols], den[rows, cols]
        raw_sub, c_sub = raw[rows, cols], cnt[rows, cols]
        n_sub[valid] += w[valid] * vals[valid]
        d_sub[valid] += w[valid]
        raw_sub[valid] += vals[valid]
        c_sub[valid] += 1

    covered = cnt > 0
    out = np.full((height, width), np.nan, dtype=np.float64)
    mean = np.divide(raw, cnt, out=np.zeros_like(raw), where=covered)
    if method == "mean":
        out[covered] = mean[covered]
    else:
        weighted = np.divide(num, den, out=np.zeros_like(num), where=den > 0)
        # zero total weight: fall back to the plain mean of the contributors
        out[covered] = np.where(den[covered] > 0, weighted[covered], mean[covered])
        # one contributor: its own value, untouched by w*v/w rounding
        single = cnt == 1
        out[single] = raw[single]

    # float32 at least, float64 when any prediction is float64
    dtype = np.result_type(np.float32, *(r.values.dtype for r in rasters))
    values = np.ma.MaskedArray(out.astype(dtype), mask=~covered)
    return CompositeRaster(
        response_variable=variable,
        values=values,
        transform=transform,
        crs=rasters[0].crs,
        tile_count=cnt,
    )


def _prepare(prediction_rasters, weights, tile_geometries, method):
    if method not in METHODS:
        raise ValueError(f"method must be one of {METHODS}")
    if isinstance(tile_geometries, dict):
        geoms = dict(tile_geometries)
    else:
        geoms = {t.tile_id: t.geometry for t in tile_geometries}

    by_var: dict[ResponseVariable, list[PredictionRaster]] = defaultdict(list)
    for r in prediction_rasters:
        if r.tile_id not in geoms:
            raise KeyError(f"No geometry for tile {r.tile_id}")
        by_var[ResponseVariable(r.response_variable)].append(r)

    if method == "mean":
        w_by_var = {v: {r.tile_id: 1.0 for r in rs} for v, rs in by_var.items()}
    else:
        w_by_var = weights_by_variable(weights)
    return by_var, w_by_var, geoms


# ---------------------------
# Public API
# ---------------------------
def composite(
    prediction_rasters: list[PredictionRaster],
    weights: list[TileWeight],
    tile_geometries: dict | list[Tile],
    *,
    method: str = "weighted",
    location_weighting: bool = False,
    max_distance_px: float = 1415,
    grid: tuple[Affine, int, int] | None = None,
) -> dict[ResponseVariable, CompositeRaster]:
    """Merge per-tile predictions into one raster per response variable.

    Each pixel is the weight-weighted mean of every tile whose prediction is
    defined there; pixels no tile covers stay masked.
    """
    by_var, w_by_var, geoms = _prepare(prediction_rasters, weights, tile_geometries, method)
    out = {}
    for var, rasters in by_var.items():
        g = grid or output_grid(rasters)
        out[var] = _composite_variable(
            var, rasters, w_by_var.get(var, {}), geoms, g,
            method, location_weighting, max_distance_px,
        )
    return out


def composite_all(
    prediction_rasters: list[PredictionRaster],
    weights: list[TileWeight],
    tile_geometries: dict | list[Tile],
    *,
    method: str = "weighted",
    location_weighting: bool = False,
    max_distance_px: float = 1415,
    grid: tuple[Affine, int, int] | None = None,
    n_workers: int | None = None,
) -> dict[ResponseVariable, CompositeRaster]:
    """Same as ``composite`` with one worker process per response variable."""
    by_var, w_by_var, geoms = _prepare(prediction_rasters, weights, tile_geometries, method)
    if n_workers is None:
        n_workers = max(1, (os.cpu_count() or 2) - 1)
    if n_workers == 1 or len(by_var) <= 1:
        return composite(
            prediction_rasters, weights, geoms, method=method,
            location_weighting=location_weighting,
            max_distance_px=max_distance_px, grid=grid,
        )

    out = {}
    with ProcessPoolExecutor(max_workers=n_workers) as ex:
        futs = {}
        for var, rasters in by_var.items():
            used = {r.tile_id: geoms[r.tile_id] for r in rasters}
            fut = ex.submit(
                _composite_variable,
                var, rasters, w_by_var.get(var, {}), used, grid or output_grid(rasters),
                method, location_weighting, max_distance_px,
            )
            futs[fut] = var
        for i, fut in enumerate(as_completed(futs), 1):
            out[futs[fut]] = fut.result()
            log(f"[composite] {futs[fut]} done ({i}/{len(futs)})")
    return out


def sample_composites(
    composites: dict[ResponseVariable, CompositeRaster],
    points: gpd.GeoDataFrame,
    prefix: str = "W_",
) -> gpd.GeoDataFrame:
    """Read every composite at every point; NaN where a composite is masked."""
    out = points.copy()
    xs = points.geometry.x.to_numpy()
    ys = points.geometry.y.to_numpy()
    for var in sorted(composites, key=lambda v: v.value):
        comp = composites[var]
        cols, rows = ~comp.transform * (xs, ys)
        rows = np.floor(np.asarray(rows)).astype(int)
        cols = np.floor(np.asarray(cols)).astype(int)
        h, w = comp.values.shape
        inside = (rows >= 0) & (rows < h) & (cols >= 0) & (cols < w)
        vals = np.full(len(points), np.nan, dtype=np.float64)
        data = np.ma.getdata(comp.values)
        mask = np.ma.getmaskarray(comp.values)
        r_in, c_in = rows[inside], cols[inside]
        picked = data[r_in, c_in].astype(np.float64)
        picked[mask[r_in, c_in]] = np.nan
        vals[inside] = picked
        out[f"{prefix}{var.value}"] = vals
    return out

# src/canopy_pl/data_io.py
from __future__ import annotations

import dataclasses
import re
from enum import Enum
from pathlib import Path

import numpy as np
import pandas as pd
import geopandas as gpd
import rasterio

# write GPKG via pyogrio (avoids Fiona/GDAL hangs in containers)
from pyogrio import write_dataframe

from .grid import frame_to_cells, frame_to_tiles
from .records import (
    CellSampleCount,
    CompositeRaster,
    PredictionRaster,
    ResponseVariable,
    SampleCount,
    Tile,
    TileAccuracy,
    TileWeight,
)

ESTIMATE_RE = re.compile(r"^Est_(?P<var>.+)_(?P<tile>\d+)\.tif$")


# -------------------------
# Vector inputs
# -------------------------
def _read_table(path) -> pd.DataFrame:
    path = Path(path)
    if path.suffix.lower() == ".csv":
        return pd.read_csv(path)
    return pd.DataFrame(gpd.read_file(path).drop(columns="geometry", errors="ignore"))


def read_points(path, layer: str | None = None) -> gpd.GeoDataFrame:
    return gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)


def read_tiles(path, layer: str = "tiles") -> list[Tile]:
    return frame_to_tiles(gpd.read_file(path, layer=layer))


def read_cells(path, layer: str):
    return frame_to_cells(gpd.read_file(path, layer=layer))


def read_accuracies(path) -> list[TileAccuracy]:
    """Accuracy table with columns Tile_ID, Response_Var, R_squared, RMSE."""
    df = _read_table(path)
    missing = {"Tile_ID", "Response_Var", "R_squared", "RMSE"} - set(df.columns)
    if missing:
        raise ValueError(f"{path}: missing columns {sorted(missing)}")
    return [
        TileAccuracy(
            int(r.Tile_ID), ResponseVariable(r.Response_Var), float(r.R_squared), float(r.RMSE)
        )
        for r in df.itertuples()
    ]


def write_accuracies(accuracies: list[TileAccuracy], path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(
        {
            "Tile_ID": [a.tile_id for a in accuracies],
            "Response_Var": [ResponseVariable(a.response_variable).value for a in accuracies],
            "R_squared": [a.r_squared for a in accuracies],
            "RMSE": [a.rmse for a in accuracies],
        }
    )
    df.to_csv(path, index=False)
    return path


def read_weights(path) -> list[TileWeight]:
    df = _read_table(path)
    return [
        TileWeight(int(r.tile_id), ResponseVariable(r.response_variable),
                   float(r.mse_inverse), float(r.normalized_weight))
        for r in df.itertuples()
    ]


def read_counts(path) -> list[SampleCount]:
    df = _read_table(path)
    return [SampleCount(int(t), int(n)) for t, n in zip(df["tile_id"], df["count"])]


def read_cell_counts(path) -> list[CellSampleCount]:
    df = _read_table(path)
    return [
        CellSampleCount(int(t), int(n), int(c))
        for t, n, c in zip(df["tile_id"], df["tile_count"], df["cell_count"])
    ]


# -------------------------
# Vector outputs
# -------------------------
def records_to_frame(records) -> pd.DataFrame:
    rows = []
    for rec in records:
        row = {}
        for k, v in dataclasses.asdict(rec).items():
            row[k] = v.value if isinstance(v, Enum) else v
        rows.append(row)
    return pd.DataFrame(rows)


def write_table(records, path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    records_to_frame(records).to_csv(path, index=False)
    return path


def write_layer(gdf: gpd.GeoDataFrame, path, layer: str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    write_dataframe(gdf, path, layer=layer, driver="GPKG")
    return path


def join_to_tiles(records, tiles: list[Tile], crs) -> gpd.GeoDataFrame:
    """Attach tile geometry to tile-keyed records (weights, counts) for mapping."""
    df = records_to_frame(records)
    geoms = {t.tile_id: t.geometry for t in tiles}
    df = df[df["tile_id"].isin(geoms)]
    return gpd.GeoDataFrame(df, geometry=[geoms[i] for i in df["tile_id"]], crs=crs)


# -------------------------
# Rasters
# -------------------------
def write_raster(raster, path) -> Path:
    """Single-band float32 GeoTIFF, masked pixels written as NaN nodata."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    arr = np.ma.filled(raster.values.astype(np.float32), np.nan)
    h, w = arr.shape
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=h,
        width=w,
        count=1,
        dtype="float32",
        crs=raster.crs,
        transform=raster.transform,
        nodata=np.nan,
    ) as dst:
        dst.write(arr, 1)
    return path


def read_masked(path):
    """(masked values, transform, crs string) of band 1."""
    with rasterio.open(path) as src:
        arr = src.read(1, masked=True).astype(np.float32)
        transform, crs = src.transform, src.crs.to_string()
    arr = np.ma.masked_invalid(arr)
    return arr, transform, crs


def read_prediction_raster(path, tile_id: int, variable):
    values, transform, crs = read_masked(path)
    return PredictionRaster(int(tile_id), ResponseVariable(variable), values, transform, crs)


def read_composite_dir(root) -> dict:
    """Load ``<var>.tif`` composites; the per-pixel tile count is not stored, only coverage."""
    out = {}
    for p in sorted(Path(root).glob("*.tif")):
        try:
            var = ResponseVariable(p.stem)
        except ValueError:
            continue
        values, transform, crs = read_masked(p)
        covered = (~np.ma.getmaskarray(values)).astype(np.int32)
        out[var] = CompositeRaster(var, values, transform, crs, covered)
    return out


def prediction_path(root, tile_id: int, variable) -> Path:
    var = ResponseVariable(variable).value
    return Path(root) / var / f"Est_{var}_{int(tile_id)}.tif"


def read_prediction_dir(root, variables=None) -> list:
    """Load every ``<var>/Est_<var>_<tile_id>.tif`` under root."""
    root = Path(root)
    wanted = {ResponseVariable(v) for v in variables} if variables else None
    out = []
    for p in sorted(root.glob("*/Est_*.tif")):
        m = ESTIMATE_RE.match(p.name)
        if not m:
            continue
        try:
            var = ResponseVariable(m.group("var"))
        except ValueError:
            continue
        if wanted is not None and var not in wanted:
            continue
        out.append(read_prediction_raster(p, int(m.group("tile")), var))
    return out

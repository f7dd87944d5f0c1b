from __future__ import annotations

from collections.abc import Iterable

import numpy as np
import pandas as pd
import geopandas as gpd
import shapely

from .grid import tiles_to_frame
from .records import CellSampleCount, GridCell, SampleCount, Tile

TILE_FIELD = "Tile_ID"
SAMPLE_FIELD = "Sample_ID"


def tag_samples(points: gpd.GeoDataFrame, tiles: list[Tile], seed: int = 17) -> gpd.GeoDataFrame:
    """One row per (point, covering tile) pair, tagged with Tile_ID and a random Sample_ID.

    A point inside an overlap zone is duplicated once per tile, since each
    tile trains on everything it covers.
    """
    pts = points.drop(columns=[c for c in (TILE_FIELD, SAMPLE_FIELD) if c in points.columns])
    pts = pts.copy()
    pts["Point_ID"] = np.arange(len(pts))
    tiles_gdf = tiles_to_frame(tiles, pts.crs)[[TILE_FIELD, "geometry"]]

    tagged = gpd.sjoin(pts, tiles_gdf, how="inner", predicate="intersects")
    tagged = tagged.drop(columns=["index_right"], errors="ignore")
    tagged = tagged.sort_values([TILE_FIELD, "Point_ID"]).reset_index(drop=True)
    tagged[TILE_FIELD] = tagged[TILE_FIELD].astype(int)
    tagged[SAMPLE_FIELD] = np.random.default_rng(seed).random(len(tagged))
    return tagged


def count_samples(points: pd.DataFrame, tiles: list[Tile]) -> list[SampleCount]:
    """Count tagged observations per tile; tiles without any get an explicit 0."""
    tags = pd.Series(points[TILE_FIELD]).dropna().astype(int)
    counts = tags.value_counts()
    return [SampleCount(t.tile_id, int(counts.get(t.tile_id, 0))) for t in tiles]


def _core_cell_mask(points: gpd.GeoDataFrame, coarse_cells: Iterable[GridCell]) -> np.ndarray:
    """True where a point lies inside the coarse cell its tile was grown from."""
    by_id = {c.cell_id: c.geometry for c in coarse_cells}
    tags = points[TILE_FIELD].to_numpy()
    cells = np.array([by_id.get(int(t)) for t in tags], dtype=object)
    has_cell = np.array([g is not None for g in cells], dtype=bool)
    out = np.zeros(len(points), dtype=bool)
    if has_cell.any():
        geoms = np.asarray(points.geometry.values)[has_cell]
        out[has_cell] = shapely.intersects(geoms, cells[has_cell])
    return out


def count_cell_samples(
    points: gpd.GeoDataFrame, tiles: list[Tile], coarse_cells: list[GridCell]
) -> list[CellSampleCount]:
    """Per tile: all its tagged samples, and those inside its own core cell."""
    tile_counts = {c.tile_id: c.count for c in count_samples(points, tiles)}
    inside = points.loc[_core_cell_mask(points, coarse_cells), TILE_FIELD].astype(int)
    cell_counts = inside.value_counts()
    return [
        CellSampleCount(t.tile_id, tile_counts[t.tile_id], int(cell_counts.get(t.tile_id, 0)))
        for t in tiles
    ]


def collect_samples(
    points: gpd.GeoDataFrame,
    coarse_cells: list[GridCell],
    tile_ids: Iterable[int],
    per_tile: int,
) -> gpd.GeoDataFrame:
    """Take up to ``per_tile`` samples from each tile's core cell, in Sample_ID order."""
    wanted = set(int(t) for t in tile_ids)
    pts = points[points[TILE_FIELD].astype(int).isin(wanted)]
    pts = pts[_core_cell_mask(pts, coarse_cells)]
    pts = pts.sort_values([TILE_FIELD, SAMPLE_FIELD])
    return pts.groupby(TILE_FIELD, sort=True).head(per_tile).reset_index(drop=True)

# src/canopy_pl/grid.py
from __future__ import annotations

import math

import numpy as np
import geopandas as gpd
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.strtree import STRtree

from .errors import GeometryGapError
from .records import GridCell, Tile
from .util import log


# ---------------------------
# Lattices
# ---------------------------
def _lattice(bounds, scale: float):
    """Integer (row, col) ranges of a scale-sized lattice anchored at 0,0 covering bounds."""
    minx, miny, maxx, maxy = bounds
    c0, c1 = math.floor(minx / scale), math.ceil(maxx / scale)
    r0, r1 = math.floor(miny / scale), math.ceil(maxy / scale)
    # degenerate (zero-width) bounds still get one cell
    return range(r0, max(r1, r0 + 1)), range(c0, max(c1, c0 + 1))


def _cell_polygon(row: int, col: int, scale: float):
    return box(col * scale, row * scale, (col + 1) * scale, (row + 1) * scale)


def _lattice_cells(region: BaseGeometry, scale: float) -> list[tuple[int, int, BaseGeometry]]:
    rows, cols = _lattice(region.bounds, scale)
    # north-most row first, like a raster; cells merely touching the region are dropped
    out = []
    for r in reversed(rows):
        for c in cols:
            poly = _cell_polygon(r, c, scale)
            if poly.intersects(region) and not poly.touches(region):
                out.append((r, c, poly))
    return out


def build_fine_grid(aoi: BaseGeometry, scale: float) -> list[GridCell]:
    """Base grid covering the AOI plus a margin of one grid step.

    Cells are squares of side ``scale`` in CRS units, ids are row-major from 1.
    """
    if scale <= 0:
        raise ValueError("scale must be positive")
    if aoi is None or aoi.is_empty:
        raise GeometryGapError("AOI is empty")
    padded = aoi.buffer(scale, join_style=2)
    cells = _lattice_cells(padded, scale)
    return [GridCell(i, poly, r, c) for i, (r, c, poly) in enumerate(cells, 1)]


def build_coarse_grid(
    aoi: BaseGeometry, scale: float, seed: int | None = None
) -> list[GridCell]:
    """Non-overlapping grid over the AOI; one tile is grown from each cell.

    With a seed, ids 1..N are shuffled so that id order carries no spatial
    pattern (tile subsets taken "by id" are then spatially random).
    """
    if scale <= 0:
        raise ValueError("scale must be positive")
    if aoi is None or aoi.is_empty:
        raise GeometryGapError("AOI is empty")
    cells = _lattice_cells(aoi, scale)
    ids = np.arange(1, len(cells) + 1)
    if seed is not None:
        ids = np.random.default_rng(seed).permutation(ids)
    return [
        GridCell(int(i), poly, r, c) for i, (r, c, poly) in zip(ids, cells)
    ]


# ---------------------------
# Overlapping tiles
# ---------------------------
def build_overlapping_tiles(
    fine_cells: list[GridCell], coarse_cells: list[GridCell], strict: bool = False
) -> list[Tile]:
    """Union the fine cells intersecting each coarse cell into one tile.

    Touching counts as intersecting, so a tile reaches one fine step past its
    coarse cell on every side; that padding is the overlap between neighbours.
    """
    fine_geoms = [c.geometry for c in fine_cells]
    tree = STRtree(fine_geoms)

    tiles: list[Tile] = []
    skipped = []
    for cell in coarse_cells:
        idxs = np.asarray(tree.query(cell.geometry, predicate="intersects"), dtype=int)
        if idxs.size == 0:
            if strict:
                raise GeometryGapError(
                    f"Coarse cell {cell.cell_id} intersects no fine cell"
                )
            skipped.append(cell.cell_id)
            continue
        merged = unary_union([fine_geoms[i] for i in idxs])
        tiles.append(Tile(tile_id=cell.cell_id, geometry=merged))

    if skipped:
        log(f"[grid] {len(skipped)} coarse cells without fine cells skipped: {skipped[:10]}")
    tiles.sort(key=lambda t: t.tile_id)
    return tiles


def check_coverage(aoi: BaseGeometry, tiles: list[Tile], tolerance: float = 0.0):
    """Raise GeometryGapError unless the tiles jointly cover the AOI."""
    if not tiles:
        raise GeometryGapError("No tiles were built")
    covered = unary_union([t.geometry for t in tiles])
    if tolerance > 0:
        covered = covered.buffer(tolerance)
    if not covered.covers(aoi):
        gap = aoi.difference(covered)
        raise GeometryGapError(f"Tiles leave {gap.area:.3f} units² of the AOI uncovered")


def build_tiles(aoi: BaseGeometry, config) -> tuple[list[GridCell], list[GridCell], list[Tile]]:
    """Fine grid, coarse grid and coverage-checked tiles for one PipelineConfig."""
    fine = build_fine_grid(aoi, config.fine_cell_m)
    coarse = build_coarse_grid(aoi, config.coarse_cell_m, seed=config.tile_id_seed)
    tiles = build_overlapping_tiles(fine, coarse)
    check_coverage(aoi, tiles)
    log(f"[grid] {len(fine)} fine cells, {len(coarse)} coarse cells, {len(tiles)} tiles")
    return fine, coarse, tiles


# ---------------------------
# Frames for export
# ---------------------------
def cells_to_frame(cells: list[GridCell], crs) -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {
            "Cell_ID": [c.cell_id for c in cells],
            "row": [c.row for c in cells],
            "col": [c.col for c in cells],
        },
        geometry=[c.geometry for c in cells],
        crs=crs,
    )


def tiles_to_frame(tiles: list[Tile], crs) -> gpd.GeoDataFrame:
    counts = [t.sample_count for t in tiles]
    data = {"Tile_ID": [t.tile_id for t in tiles]}
    if any(c is not None for c in counts):
        data["Sample_Count"] = [-1 if c is None else c for c in counts]
    return gpd.GeoDataFrame(data, geometry=[t.geometry for t in tiles], crs=crs)


def frame_to_tiles(gdf: gpd.GeoDataFrame) -> list[Tile]:
    has_count = "Sample_Count" in gdf.columns
    out = []
    for row in gdf.itertuples():
        count = None
        if has_count and int(row.Sample_Count) >= 0:
            count = int(row.Sample_Count)
        out.append(Tile(int(row.Tile_ID), row.geometry, count))
    return sorted(out, key=lambda t: t.tile_id)


def frame_to_cells(gdf: gpd.GeoDataFrame) -> list[GridCell]:
    out = []
    for row in gdf.itertuples():
        out.append(
            GridCell(
                int(row.Cell_ID),
                row.geometry,
                int(getattr(row, "row", 0)),
                int(getattr(row, "col", 0)),
            )
        )
    return out

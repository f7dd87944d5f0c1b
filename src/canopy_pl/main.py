import json
from pathlib import Path
from typing import Tuple

import click
import geopandas as gpd
from shapely.geometry import box
from shapely.ops import unary_union

from .config import CRS, DEFAULTS, RESPONSE_VARIABLES, PipelineConfig
from .compositor import composite_all, sample_composites
from .counting import count_cell_samples, count_samples, tag_samples, TILE_FIELD
from .data_io import (
    join_to_tiles,
    prediction_path,
    read_accuracies,
    read_cell_counts,
    read_cells,
    read_composite_dir,
    read_counts,
    read_points,
    read_prediction_dir,
    read_tiles,
    read_weights,
    write_accuracies,
    write_layer,
    write_raster,
    write_table,
)
from .fitting import RandomForestFitter, fit_tiles
from .grid import build_tiles, cells_to_frame, tiles_to_frame
from .selection import select_tiles
from .weights import normalize_weights


def _echo(s: str, quiet: bool):
    if not quiet:
        click.echo(s)


def _summary(summary: dict, quiet: bool):
    if not quiet:
        click.echo(json.dumps(summary, indent=2, ensure_ascii=False))


out_option = click.option(
    "--out",
    "out_dir",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
    default="outputs",
    help="Output directory",
)
quiet_option = click.option("--quiet", is_flag=True, help="Less console output")
grid_option = click.option(
    "--grid",
    "grid_gpkg",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="GeoPackage written by the grid command",
)


@click.group(context_settings={"show_default": True})
def cli():
    """Overlapping-tile grids, per-tile weights, and weighted composites."""


@cli.command()
@click.option(
    "--aoi",
    "aoi_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Vector file with the AOI polygon(s)",
)
@click.option(
    "--bbox",
    type=click.Tuple([float, float, float, float]),
    help="AOI bbox as (minx,miny,maxx,maxy) in --crs units",
)
@click.option("--crs", default=CRS, help="CRS the grids are built in")
@click.option("--fine-m", "fine_m", type=float, default=DEFAULTS["FINE_CELL_M"])
@click.option("--coarse-m", "coarse_m", type=float, default=DEFAULTS["COARSE_CELL_M"])
@click.option("--seed", type=int, default=DEFAULTS["TILE_ID_SEED"], help="Tile id shuffle seed")
@out_option
@quiet_option
def grid(
    aoi_path: Path | None,
    bbox: Tuple[float, float, float, float] | None,
    crs: str,
    fine_m: float,
    coarse_m: float,
    seed: int,
    out_dir: Path,
    quiet: bool,
) -> None:
    """Build the fine grid, the coarse grid, and the overlapping tiles."""
    if (aoi_path is None) == (bbox is None):
        raise click.UsageError("Specify exactly one of --aoi or --bbox")
    if aoi_path is not None:
        aoi = unary_union(list(gpd.read_file(aoi_path).to_crs(crs).geometry))
    else:
        aoi = box(*bbox)

    cfg = PipelineConfig.from_defaults(
        crs=crs, fine_cell_m=fine_m, coarse_cell_m=coarse_m, tile_id_seed=seed
    )
    _echo(f"[1/2] Tiles from {cfg.fine_cell_m} fine / {cfg.coarse_cell_m} coarse cells", quiet)
    fine, coarse, tiles = build_tiles(aoi, cfg)

    _echo("[2/2] Writing layers", quiet)
    out_gpkg = out_dir / "grid.gpkg"
    write_layer(cells_to_frame(fine, cfg.crs), out_gpkg, "fine_cells")
    write_layer(cells_to_frame(coarse, cfg.crs), out_gpkg, "coarse_cells")
    write_layer(tiles_to_frame(tiles, cfg.crs), out_gpkg, "tiles")

    _summary(
        {
            "grid_gpkg": str(out_gpkg),
            "n_fine_cells": len(fine),
            "n_coarse_cells": len(coarse),
            "n_tiles": len(tiles),
        },
        quiet,
    )


@cli.command()
@grid_option
@click.option(
    "--points",
    "points_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Sample points; re-tagged to tiles unless they carry Tile_ID",
)
@click.option("--seed", type=int, default=DEFAULTS["SAMPLE_ID_SEED"], help="Sample_ID seed")
@out_option
@quiet_option
def count(grid_gpkg: Path, points_path: Path, seed: int, out_dir: Path, quiet: bool) -> None:
    """Count samples per tile and per tile core cell."""
    cfg = PipelineConfig.from_defaults(sample_id_seed=seed)
    tiles = read_tiles(grid_gpkg, layer="tiles")
    coarse = read_cells(grid_gpkg, layer="coarse_cells")
    crs = gpd.read_file(grid_gpkg, layer="tiles").crs
    points = read_points(points_path).to_crs(crs)

    if TILE_FIELD not in points.columns:
        _echo(f"[count] tagging {len(points)} points to {len(tiles)} tiles", quiet)
        points = tag_samples(points, tiles, seed=cfg.sample_id_seed)
        write_layer(points, out_dir / "samples.gpkg", "samples")

    counts = count_samples(points, tiles)
    cell_counts = count_cell_samples(points, tiles, coarse)
    counted = [t.with_count(c.count) for t, c in zip(tiles, counts)]

    counts_csv = write_table(counts, out_dir / "sample_counts.csv")
    cells_csv = write_table(cell_counts, out_dir / "cell_counts.csv")
    counted_gpkg = write_layer(tiles_to_frame(counted, crs), out_dir / "counted_tiles.gpkg", "tiles")

    _summary(
        {
            "sample_counts": str(counts_csv),
            "cell_counts": str(cells_csv),
            "counted_tiles": str(counted_gpkg),
            "n_samples": int(len(points)),
            "n_empty_tiles": sum(1 for c in counts if c.count == 0),
        },
        quiet,
    )


@cli.command(name="select")
@grid_option
@click.option(
    "--counts",
    "counts_csv",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option(
    "--cell-counts",
    "cell_counts_csv",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Drop tiles whose samples mostly sit outside their core cell first",
)
@click.option("--min-count", type=int, default=DEFAULTS["SELECT_MIN_SAMPLES"])
@click.option("--max-tiles", type=int, default=DEFAULTS["MAX_TILES"])
@click.option("--min-core-ratio", type=float, default=DEFAULTS["MIN_CORE_RATIO"])
@click.option(
    "--min-tile-samples",
    type=int,
    default=DEFAULTS["MIN_TILE_SAMPLES"],
    help="Core-share filter: minimum samples per tile",
)
@click.option("--dedupe", is_flag=True, help="Remove the --exclude tile ids")
@click.option(
    "--exclude",
    type=int,
    multiple=True,
    default=DEFAULTS["OVERLAPPING_TILE_IDS"],
    help="Known overlapping tile ids",
)
@out_option
@quiet_option
def select_cmd(
    grid_gpkg: Path,
    counts_csv: Path,
    cell_counts_csv: Path | None,
    min_count: int,
    max_tiles: int,
    min_core_ratio: float,
    min_tile_samples: int,
    dedupe: bool,
    exclude: Tuple[int, ...],
    out_dir: Path,
    quiet: bool,
) -> None:
    """Choose the tiles to model."""
    tiles = read_tiles(grid_gpkg, layer="tiles")
    crs = gpd.read_file(grid_gpkg, layer="tiles").crs
    cfg = PipelineConfig.from_defaults(
        select_min_samples=min_count,
        max_tiles=max_tiles,
        min_core_ratio=min_core_ratio,
        min_tile_samples=min_tile_samples,
        overlapping_tile_ids=tuple(exclude),
    )
    cell_counts = None
    if cell_counts_csv is not None:
        cell_counts = read_cell_counts(cell_counts_csv)
        _echo(
            f"[select] core-share filter: >= {cfg.min_tile_samples} samples, ratio >= {cfg.min_core_ratio}",
            quiet,
        )

    result = select_tiles(tiles, read_counts(counts_csv), cfg, cell_counts, dedupe_overlaps=dedupe)
    if result.undersized:
        _echo(f"[select] only {len(result.tiles)} of {cfg.max_tiles} tiles qualify", quiet)

    out_gpkg = write_layer(tiles_to_frame(list(result.tiles), crs), out_dir / "selected.gpkg", "selected_tiles")
    _summary(
        {
            "selected_gpkg": str(out_gpkg),
            "n_selected": len(result.tiles),
            "requested": result.requested,
            "undersized": result.undersized,
            "tile_ids": result.tile_ids,
        },
        quiet,
    )


@cli.command()
@click.option(
    "--selected",
    "selected_gpkg",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option(
    "--samples",
    "samples_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Tagged samples with predictor and response columns",
)
@click.option(
    "--predictors",
    "predictors_tif",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option("--var", "variables", multiple=True, type=click.Choice(RESPONSE_VARIABLES))
@click.option("--n-trees", type=int, default=DEFAULTS["N_TREES"])
@click.option("--train-ratio", type=float, default=DEFAULTS["TRAIN_RATIO"])
@click.option("--workers", type=int, default=None)
@click.option("--max-tries", type=int, default=3)
@out_option
@quiet_option
def fit(
    selected_gpkg: Path,
    samples_path: Path,
    predictors_tif: Path,
    variables: Tuple[str, ...],
    n_trees: int,
    train_ratio: float,
    workers: int | None,
    max_tries: int,
    out_dir: Path,
    quiet: bool,
) -> None:
    """Fit one random forest per (tile, variable) and write predictions + accuracy."""
    tiles = read_tiles(selected_gpkg, layer="selected_tiles")
    samples = read_points(samples_path)
    variables = variables or RESPONSE_VARIABLES
    cfg = PipelineConfig.from_defaults(n_trees=n_trees, train_ratio=train_ratio)
    fitter = RandomForestFitter(predictors_tif, n_trees=cfg.n_trees, train_ratio=cfg.train_ratio)

    _echo(f"[fit] {len(tiles)} tiles x {len(variables)} variables", quiet)
    batch = fit_tiles(tiles, variables, fitter, samples, n_workers=workers, max_tries=max_tries)

    pred_dir = out_dir / "predictions"
    for r in batch.rasters:
        write_raster(r, prediction_path(pred_dir, r.tile_id, r.response_variable))
    acc_csv = write_accuracies(batch.accuracies, out_dir / "accuracy.csv")

    _summary(
        {
            "predictions_dir": str(pred_dir),
            "accuracy_csv": str(acc_csv),
            "n_fitted": len(batch.rasters),
            "failed": [[t, str(v), e] for t, v, e in batch.failed],
        },
        quiet,
    )


@cli.command()
@click.option(
    "--accuracy",
    "accuracy_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Table with Tile_ID, Response_Var, R_squared, RMSE",
)
@click.option(
    "--tiles",
    "tiles_gpkg",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Also write weights joined to tile geometry",
)
@out_option
@quiet_option
def weights(accuracy_path: Path, tiles_gpkg: Path | None, out_dir: Path, quiet: bool) -> None:
    """Turn per-tile RMSE into normalized weights."""
    tile_weights = normalize_weights(read_accuracies(accuracy_path))
    out_csv = write_table(tile_weights, out_dir / "tile_weights.csv")
    summary = {"weights_csv": str(out_csv), "n_weights": len(tile_weights)}

    if tiles_gpkg is not None:
        crs = gpd.read_file(tiles_gpkg, layer="tiles").crs
        gdf = join_to_tiles(tile_weights, read_tiles(tiles_gpkg, layer="tiles"), crs)
        summary["weights_gpkg"] = str(write_layer(gdf, out_dir / "tile_weights.gpkg", "tile_weights"))
    _summary(summary, quiet)


@cli.command(name="composite")
@grid_option
@click.option(
    "--predictions",
    "pred_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
    help="Directory of <var>/Est_<var>_<tile_id>.tif",
)
@click.option(
    "--weights",
    "weights_csv",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option("--var", "variables", multiple=True, type=click.Choice(RESPONSE_VARIABLES))
@click.option("--method", type=click.Choice(["weighted", "mean"]), default="weighted")
@click.option("--distance-weighting", is_flag=True, help="Scale weights down away from tile centroids")
@click.option("--max-distance-px", type=float, default=DEFAULTS["MAX_DISTANCE_PX"])
@click.option("--workers", type=int, default=None)
@out_option
@quiet_option
def composite_cmd(
    grid_gpkg: Path,
    pred_dir: Path,
    weights_csv: Path,
    variables: Tuple[str, ...],
    method: str,
    distance_weighting: bool,
    max_distance_px: float,
    workers: int | None,
    out_dir: Path,
    quiet: bool,
) -> None:
    """Merge per-tile predictions into one raster per variable."""
    tiles = read_tiles(grid_gpkg, layer="tiles")
    rasters = read_prediction_dir(pred_dir, variables or None)
    if not rasters:
        raise click.UsageError(f"No Est_*.tif rasters under {pred_dir}")
    _echo(f"[composite] {len(rasters)} rasters, method={method}", quiet)

    results = composite_all(
        rasters,
        read_weights(weights_csv),
        tiles,
        method=method,
        location_weighting=distance_weighting,
        max_distance_px=max_distance_px,
        n_workers=workers,
    )
    written = {}
    for var, comp in sorted(results.items(), key=lambda kv: kv[0].value):
        written[var.value] = str(write_raster(comp, out_dir / f"{var.value}.tif"))
    _summary({"composites": written}, quiet)


@cli.command()
@click.option(
    "--composites",
    "comp_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
)
@click.option(
    "--points",
    "points_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option("--prefix", default="W_")
@out_option
@quiet_option
def sample(comp_dir: Path, points_path: Path, prefix: str, out_dir: Path, quiet: bool) -> None:
    """Read composite values at sample points."""
    composites = read_composite_dir(comp_dir)
    if not composites:
        raise click.UsageError(f"No composites under {comp_dir}")
    crs = next(iter(composites.values())).crs
    points = read_points(points_path).to_crs(crs)
    sampled = sample_composites(composites, points, prefix=prefix)
    out_gpkg = write_layer(sampled, out_dir / "sampled_estimates.gpkg", "sampled_estimates")
    _summary({"sampled_gpkg": str(out_gpkg), "n_points": int(len(sampled))}, quiet)

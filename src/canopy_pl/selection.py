from __future__ import annotations

from collections.abc import Iterable

from .records import CellSampleCount, SampleCount, SelectionResult, Tile


def select(
    tiles: list[Tile],
    sample_counts: list[SampleCount],
    min_count: int,
    max_tiles: int,
    dedupe_overlaps: bool = False,
    excluded_ids: Iterable[int] = (),
) -> SelectionResult:
    """Pick up to ``max_tiles`` tiles with at least ``min_count`` samples.

    Best-sampled tiles first, ties on ascending tile id. ``excluded_ids`` is a
    hand-curated list of overlapping tiles, applied only with ``dedupe_overlaps``.
    Asking for more tiles than qualify is not an error; check ``undersized``.
    """
    if max_tiles < 0:
        raise ValueError("max_tiles must be >= 0")
    counts = {c.tile_id: c.count for c in sample_counts}
    excluded = set(int(i) for i in excluded_ids) if dedupe_overlaps else set()

    kept = []
    for t in tiles:
        n = counts.get(t.tile_id, 0)
        if n < min_count or t.tile_id in excluded:
            continue
        kept.append(t.with_count(n))

    kept.sort(key=lambda t: (-t.sample_count, t.tile_id))
    return SelectionResult(tiles=tuple(kept[:max_tiles]), requested=max_tiles)


def filter_by_core_share(
    tiles: list[Tile],
    cell_counts: list[CellSampleCount],
    min_count: int = 1250,
    min_ratio: float = 0.1,
) -> list[Tile]:
    """Keep well-sampled tiles whose samples are not all in the overlap margin."""
    by_id = {c.tile_id: c for c in cell_counts}
    out = []
    for t in tiles:
        c = by_id.get(t.tile_id)
        if c is None:
            continue
        if c.tile_count >= min_count and c.ratio >= min_ratio:
            out.append(t.with_count(c.tile_count))
    return out


def select_tiles(
    tiles: list[Tile],
    sample_counts: list[SampleCount],
    config,
    cell_counts: list[CellSampleCount] | None = None,
    dedupe_overlaps: bool = False,
) -> SelectionResult:
    """Core-share filter (when cell counts are given) then ``select``, both driven by a PipelineConfig."""
    if cell_counts is not None:
        tiles = filter_by_core_share(
            tiles, cell_counts, min_count=config.min_tile_samples, min_ratio=config.min_core_ratio
        )
    return select(
        tiles,
        sample_counts,
        config.select_min_samples,
        config.max_tiles,
        dedupe_overlaps=dedupe_overlaps,
        excluded_ids=config.overlapping_tile_ids,
    )

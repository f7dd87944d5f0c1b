# tests/test_selection.py
import pytest
from shapely.geometry import box

from canopy_pl.config import PipelineConfig
from canopy_pl.errors import InsufficientSampleError
from canopy_pl.records import CellSampleCount, SampleCount, Tile
from canopy_pl.selection import filter_by_core_share, select, select_tiles


def _tiles(n):
    return [Tile(i, box(i, 0, i + 1, 1)) for i in range(1, n + 1)]


def test_best_sampled_first_ties_on_tile_id():
    tiles = _tiles(5)
    counts = [SampleCount(1, 10), SampleCount(2, 50), SampleCount(3, 30), SampleCount(4, 50), SampleCount(5, 5)]

    result = select(tiles, counts, min_count=10, max_tiles=3)

    assert result.tile_ids == [2, 4, 3]
    assert [t.sample_count for t in result.tiles] == [50, 50, 30]
    assert not result.undersized


def test_undersized_selection_is_flagged_not_raised():
    tiles = _tiles(3)
    counts = [SampleCount(1, 100), SampleCount(2, 1)]

    result = select(tiles, counts, min_count=50, max_tiles=40)

    assert result.tile_ids == [1]
    assert result.undersized
    with pytest.raises(InsufficientSampleError):
        result.raise_if_undersized()


def test_excluded_ids_only_apply_when_deduping():
    tiles = _tiles(4)
    counts = [SampleCount(i, 100 + i) for i in range(1, 5)]

    assert select(tiles, counts, 0, 10, excluded_ids=[4]).tile_ids == [4, 3, 2, 1]
    assert select(tiles, counts, 0, 10, dedupe_overlaps=True, excluded_ids=[4, 2]).tile_ids == [3, 1]


def test_negative_max_tiles():
    with pytest.raises(ValueError):
        select(_tiles(1), [], 0, -1)


def test_filter_by_core_share():
    tiles = _tiles(4)
    cell_counts = [
        CellSampleCount(1, 2000, 1000),
        CellSampleCount(2, 2000, 100),  # 5% in core
        CellSampleCount(3, 1000, 900),  # too few overall
        CellSampleCount(4, 1250, 125),
    ]

    kept = filter_by_core_share(tiles, cell_counts)

    assert [(t.tile_id, t.sample_count) for t in kept] == [(1, 2000), (4, 1250)]


def test_select_tiles_takes_thresholds_from_config():
    tiles = _tiles(4)
    counts = [SampleCount(i, 100 * i) for i in range(1, 5)]
    cell_counts = [CellSampleCount(i, 100 * i, 50 if i != 3 else 1) for i in range(1, 5)]
    cfg = PipelineConfig.from_defaults(
        min_tile_samples=150, min_core_ratio=0.1, select_min_samples=100, max_tiles=5,
        overlapping_tile_ids=(4,),
    )

    assert select_tiles(tiles, counts, cfg).tile_ids == [4, 3, 2, 1]
    # tile 1 too small for the filter, tile 3 has almost nothing in its core
    assert select_tiles(tiles, counts, cfg, cell_counts).tile_ids == [4, 2]
    result = select_tiles(tiles, counts, cfg, cell_counts, dedupe_overlaps=True)
    assert result.tile_ids == [2]
    assert result.undersized

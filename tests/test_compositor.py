# tests/test_compositor.py
import math

import numpy as np
import geopandas as gpd
import pytest
from rasterio.transform import from_origin
from shapely.geometry import Point, box

from canopy_pl.compositor import composite, composite_all, output_grid, sample_composites
from canopy_pl.errors import MissingCoverageError
from canopy_pl.records import PredictionRaster, ResponseVariable, Tile, TileWeight

CRS = "EPSG:5070"
COVER = ResponseVariable.COVER
PAI = ResponseVariable.PAI


def _raster(tile_id, x0, value, var=COVER, width=4, height=2, dtype=np.float32):
    values = np.ma.MaskedArray(np.full((height, width), value, dtype=dtype))
    return PredictionRaster(tile_id, var, values, from_origin(x0, height, 1, 1), CRS)


def _tiles():
    # A: x 0..4, B: x 2..6 (overlap 2..4), C: x 8..10 (gap 6..8)
    return [Tile(1, box(0, 0, 4, 2)), Tile(2, box(2, 0, 6, 2)), Tile(3, box(8, 0, 10, 2))]


def _weights(pairs, var=COVER):
    return [TileWeight(t, var, 1.0, w) for t, w in pairs]


def test_zero_weight_tile_drops_out_of_overlap():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0)]
    out = composite(rasters, _weights([(1, 1.0), (2, 0.0)]), _tiles())
    comp = out[COVER]

    assert comp.values.shape == (2, 6)
    assert list(comp.values[0]) == [10.0, 10.0, 10.0, 10.0, 20.0, 20.0]
    assert list(comp.tile_count[0]) == [1, 1, 2, 2, 1, 1]


def test_equal_weights_give_the_mean():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0)]
    comp = composite(rasters, _weights([(1, 0.4), (2, 0.4)]), _tiles())[COVER]

    assert comp.values[1, 2] == 15.0
    assert comp.values[1, 3] == 15.0


def test_single_cover_pixel_is_exact():
    rasters = [_raster(1, 0, 0.1), _raster(2, 2, 0.7)]
    comp = composite(rasters, _weights([(1, 0.3), (2, 0.9)]), _tiles())[COVER]

    assert comp.values[0, 0] == np.float32(0.1)
    assert comp.values[0, 5] == np.float32(0.7)


def test_single_cover_pixel_is_exact_for_float64():
    rasters = [_raster(1, 0, 0.1, dtype=np.float64), _raster(2, 2, 0.7, dtype=np.float64)]
    comp = composite(rasters, _weights([(1, 0.3), (2, 0.9)]), _tiles())[COVER]

    assert comp.values.dtype == np.float64
    assert comp.values[0, 0] == 0.1
    assert comp.values[0, 5] == 0.7
    assert comp.values[0, 2] == pytest.approx((0.3 * 0.1 + 0.9 * 0.7) / (0.3 + 0.9), abs=1e-15)


def test_weighted_mean_over_three_tiles():
    tiles = [Tile(1, box(0, 0, 2, 2)), Tile(2, box(0, 0, 2, 2)), Tile(3, box(0, 0, 2, 2))]
    rasters = [_raster(t, 0, v, width=2) for t, v in [(1, 1.0), (2, 2.0), (3, 4.0)]]
    comp = composite(rasters, _weights([(1, 1.0), (2, 0.5), (3, 0.5)]), tiles)[COVER]

    assert comp.values[0, 0] == pytest.approx((1.0 + 1.0 + 2.0) / 2.0)
    assert (comp.tile_count == 3).all()


def test_pixels_outside_every_tile_stay_masked():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0), _raster(3, 8, 30.0, width=2)]
    comp = composite(rasters, _weights([(1, 1.0), (2, 0.5), (3, 0.0)]), _tiles())[COVER]

    mask = np.ma.getmaskarray(comp.values)
    assert comp.values.shape == (2, 10)
    assert mask[:, 6:8].all()
    assert not mask[:, :6].any() and not mask[:, 8:].any()
    assert math.isnan(comp.value_at(7.5, 1.5))
    with pytest.raises(MissingCoverageError):
        comp.value_at(7.5, 1.5, strict=True)
    assert comp.value_at(9.5, 0.5) == 30.0


def test_prediction_masked_outside_its_tile_is_ignored():
    values = np.ma.MaskedArray(np.full((2, 4), 20.0, dtype=np.float32))
    values[:, 2:] = np.ma.masked
    rasters = [_raster(1, 0, 10.0), PredictionRaster(2, COVER, values, from_origin(2, 2, 1, 1), CRS)]
    comp = composite(rasters, _weights([(1, 1.0), (2, 1.0)]), _tiles())[COVER]

    assert list(comp.values[0, :4]) == [10.0, 10.0, 15.0, 15.0]
    assert np.ma.getmaskarray(comp.values)[0, 4:].all()


def test_plain_mean_ignores_weights():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0)]
    comp = composite(rasters, _weights([(1, 1.0), (2, 0.0)]), _tiles(), method="mean")[COVER]

    assert comp.values[0, 2] == 15.0
    with pytest.raises(ValueError):
        composite(rasters, [], _tiles(), method="median")


def test_all_zero_weights_fall_back_to_mean():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0)]
    comp = composite(rasters, _weights([(1, 0.0), (2, 0.0)]), _tiles())[COVER]

    assert comp.values[0, 3] == 15.0


def test_location_weighting_favours_the_nearer_centroid():
    # centroids land on cols 2 and 4; col 3 is equidistant
    tiles = [Tile(1, box(0, 0, 5, 1)), Tile(2, box(2, 0, 7, 1))]
    rasters = [_raster(1, 0, 10.0, width=5, height=1), _raster(2, 2, 20.0, width=5, height=1)]
    comp = composite(
        rasters, _weights([(1, 1.0), (2, 1.0)]), tiles,
        location_weighting=True, max_distance_px=10,
    )[COVER]

    assert 10.0 < comp.values[0, 2] < 15.0 < comp.values[0, 4] < 20.0
    assert comp.values[0, 3] == pytest.approx(15.0)


def test_misaligned_raster_rejected():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2.5, 20.0)]
    tiles = [Tile(1, box(0, 0, 4, 2)), Tile(2, box(2.5, 0, 6.5, 2))]
    with pytest.raises(ValueError):
        composite(rasters, _weights([(1, 1.0), (2, 1.0)]), tiles)


def test_missing_weight_or_geometry():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0)]
    with pytest.raises(KeyError):
        composite(rasters, _weights([(1, 1.0)]), _tiles())
    with pytest.raises(KeyError):
        composite(rasters, _weights([(1, 1.0), (2, 1.0)]), _tiles()[:1])


def test_output_grid_spans_all_rasters():
    transform, width, height = output_grid([_raster(1, 0, 1.0), _raster(3, 8, 1.0, width=2)])
    assert (transform.c, transform.f, width, height) == (0.0, 2.0, 10, 2)
    with pytest.raises(ValueError):
        output_grid([])


def test_composite_all_serial_matches_composite():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0), _raster(1, 0, 1.0, var=PAI), _raster(2, 2, 3.0, var=PAI)]
    weights = _weights([(1, 1.0), (2, 1.0)]) + _weights([(1, 1.0), (2, 0.0)], var=PAI)

    out = composite_all(rasters, weights, _tiles(), n_workers=1)

    assert set(out) == {COVER, PAI}
    assert out[COVER].values[0, 2] == 15.0
    assert out[PAI].values[0, 2] == 1.0


def test_sample_composites_adds_prefixed_columns():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0), _raster(3, 8, 30.0, width=2)]
    comps = composite(rasters, _weights([(1, 1.0), (2, 1.0), (3, 1.0)]), _tiles())
    points = gpd.GeoDataFrame(
        {"id": [1, 2, 3, 4]},
        geometry=[Point(0.5, 1.5), Point(3.5, 0.5), Point(7.0, 1.0), Point(50, 50)],
        crs=CRS,
    )

    out = sample_composites(comps, points)

    vals = list(out["W_cover"])
    assert vals[:2] == [10.0, 15.0]
    assert math.isnan(vals[2]) and math.isnan(vals[3])
    assert list(out["id"]) == [1, 2, 3, 4]


def test_composite_all_in_worker_processes():
    rasters = [_raster(1, 0, 10.0), _raster(2, 2, 20.0), _raster(1, 0, 1.0, var=PAI), _raster(2, 2, 3.0, var=PAI)]
    weights = _weights([(1, 1.0), (2, 1.0)]) + _weights([(1, 1.0), (2, 0.0)], var=PAI)

    pooled = composite_all(rasters, weights, _tiles(), n_workers=2)
    serial = composite(rasters, weights, _tiles())

    assert set(pooled) == {COVER, PAI}
    for var in (COVER, PAI):
        assert np.ma.allequal(pooled[var].values, serial[var].values)
        assert (pooled[var].tile_count == serial[var].tile_count).all()
    assert list(pooled[COVER].values[0]) == [10.0, 10.0, 15.0, 15.0, 20.0, 20.0]

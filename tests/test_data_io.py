# tests/test_data_io.py
import numpy as np
import pandas as pd
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

from canopy_pl.data_io import (
    join_to_tiles,
    prediction_path,
    read_accuracies,
    read_composite_dir,
    read_counts,
    read_prediction_dir,
    read_weights,
    write_accuracies,
    write_raster,
    write_table,
)
from canopy_pl.records import (
    CompositeRaster,
    PredictionRaster,
    ResponseVariable,
    SampleCount,
    Tile,
    TileAccuracy,
    TileWeight,
)

COVER = ResponseVariable.COVER


def test_accuracy_table_columns(tmp_path):
    accs = [TileAccuracy(3, COVER, 0.7, 1.5), TileAccuracy(4, ResponseVariable.RH98, 0.2, 3.0)]
    path = write_accuracies(accs, tmp_path / "acc.csv")

    assert list(pd.read_csv(path).columns) == ["Tile_ID", "Response_Var", "R_squared", "RMSE"]
    assert read_accuracies(path) == accs

    pd.DataFrame({"Tile_ID": [1], "RMSE": [1.0]}).to_csv(tmp_path / "bad.csv", index=False)
    with pytest.raises(ValueError):
        read_accuracies(tmp_path / "bad.csv")


def test_weight_and_count_tables(tmp_path):
    weights = [TileWeight(1, COVER, 1.0, 1.0), TileWeight(2, COVER, 0.25, 0.0)]
    counts = [SampleCount(1, 60), SampleCount(2, 40)]

    w_csv = write_table(weights, tmp_path / "w.csv")
    c_csv = write_table(counts, tmp_path / "c.csv")

    assert pd.read_csv(w_csv)["response_variable"].tolist() == ["cover", "cover"]
    assert read_weights(w_csv) == weights
    assert read_counts(c_csv) == counts


def test_join_to_tiles_drops_unknown_ids():
    tiles = [Tile(1, box(0, 0, 1, 1)), Tile(2, box(1, 0, 2, 1))]
    gdf = join_to_tiles([SampleCount(2, 5), SampleCount(9, 1)], tiles, "EPSG:5070")

    assert gdf["tile_id"].tolist() == [2]
    assert gdf.geometry.iloc[0].equals(box(1, 0, 2, 1))


def test_prediction_rasters_round_trip_through_directory(tmp_path):
    values = np.ma.MaskedArray(np.arange(6, dtype=np.float32).reshape(2, 3), mask=[[0, 0, 1], [0, 0, 0]])
    raster = PredictionRaster(12, COVER, values, from_origin(100, 50, 30, 30), "EPSG:5070")
    path = write_raster(raster, prediction_path(tmp_path, 12, "cover"))

    assert path == tmp_path / "cover" / "Est_cover_12.tif"
    (got,) = read_prediction_dir(tmp_path)
    assert (got.tile_id, got.response_variable) == (12, COVER)
    assert got.transform == raster.transform
    assert np.ma.getmaskarray(got.values).tolist() == [[False, False, True], [False, False, False]]
    assert got.values[1, 2] == 5.0
    assert read_prediction_dir(tmp_path, ["pai"]) == []


def test_composite_directory_reads_known_variables_only(tmp_path):
    values = np.ma.MaskedArray(np.ones((2, 2), dtype=np.float32), mask=[[1, 0], [0, 0]])
    comp = CompositeRaster(COVER, values, from_origin(0, 2, 1, 1), "EPSG:5070", np.array([[0, 1], [2, 1]]))
    write_raster(comp, tmp_path / "cover.tif")
    write_raster(comp, tmp_path / "notes.tif")

    got = read_composite_dir(tmp_path)

    assert list(got) == [COVER]
    assert got[COVER].tile_count.tolist() == [[0, 1], [1, 1]]
    assert got[COVER].value_at(1.5, 1.5) == 1.0

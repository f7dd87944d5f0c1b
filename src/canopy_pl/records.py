"""Immutable records passed between pipeline stages.

Everything downstream of the grid is keyed by ``tile_id`` (and, for
accuracies and weights, by response variable) so stages join on keys rather
than on geometry.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

import numpy as np
from affine import Affine
from rasterio.transform import array_bounds, rowcol
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry

from .errors import InsufficientSampleError, MissingCoverageError


class ResponseVariable(str, Enum):
    RHD_25TO50 = "RHD_25to50"
    RHD_50TO75 = "RHD_50to75"
    RHD_75TO98 = "RHD_75to98"
    RH98 = "rh98"
    COVER = "cover"
    FHD_NORMAL = "fhd_normal"
    PAI = "pai"
    PAVD_0_10M = "PAVD_0_10m"
    PAVD_10_20M = "PAVD_10_20m"
    PAVD_20_30M = "PAVD_20_30m"
    PAVD_30_40M = "PAVD_30_40m"
    PAVD_40_50M = "PAVD_40_50m"
    PAVD_50_60M = "PAVD_50_60m"
    PAVD_OVER60M = "PAVD_over60m"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class GridCell:
    cell_id: int
    geometry: BaseGeometry
    row: int
    col: int


@dataclass(frozen=True)
class Tile:
    tile_id: int
    geometry: BaseGeometry
    sample_count: int | None = None

    @property
    def centroid(self) -> Point:
        return self.geometry.centroid

    def with_count(self, count: int) -> "Tile":
        return replace(self, sample_count=int(count))


@dataclass(frozen=True)
class SampleCount:
    tile_id: int
    count: int


@dataclass(frozen=True)
class CellSampleCount:
    """Samples of a tile, and how many of them sit inside its core cell."""

    tile_id: int
    tile_count: int
    cell_count: int

    @property
    def ratio(self) -> float:
        if self.tile_count <= 0:
            return 0.0
        return self.cell_count / self.tile_count


@dataclass(frozen=True)
class TileAccuracy:
    tile_id: int
    response_variable: ResponseVariable
    r_squared: float
    rmse: float


@dataclass(frozen=True)
class TileWeight:
    tile_id: int
    response_variable: ResponseVariable
    mse_inverse: float
    normalized_weight: float


@dataclass(frozen=True, eq=False)
class PredictionRaster:
    """One tile's predictions for one variable; masked outside the tile."""

    tile_id: int
    response_variable: ResponseVariable
    values: np.ma.MaskedArray
    transform: Affine
    crs: str

    @property
    def shape(self) -> tuple[int, int]:
        return self.values.shape

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        h, w = self.values.shape
        west, south, east, north = array_bounds(h, w, self.transform)
        return west, south, east, north


@dataclass(frozen=True, eq=False)
class CompositeRaster:
    response_variable: ResponseVariable
    values: np.ma.MaskedArray
    transform: Affine
    crs: str
    tile_count: np.ndarray  # contributing tiles per pixel

    def value_at(self, x: float, y: float, strict: bool = False) -> float:
        r, c = rowcol(self.transform, x, y)
        h, w = self.values.shape
        inside = 0 <= r < h and 0 <= c < w
        if not inside or np.ma.getmaskarray(self.values)[r, c]:
            if strict:
                raise MissingCoverageError(
                    f"No tile covers ({x}, {y}) for {self.response_variable}"
                )
            return float("nan")
        return float(self.values[r, c])


@dataclass(frozen=True)
class SelectionResult:
    tiles: tuple[Tile, ...]
    requested: int

    @property
    def undersized(self) -> bool:
        return len(self.tiles) < self.requested

    @property
    def tile_ids(self) -> list[int]:
        return [t.tile_id for t in self.tiles]

    def raise_if_undersized(self) -> "SelectionResult":
        if self.undersized:
            raise InsufficientSampleError(
                f"Only {len(self.tiles)} of {self.requested} requested tiles qualify"
            )
        return self


@dataclass(frozen=True, eq=False)
class FitResult:
    accuracy: TileAccuracy
    raster: PredictionRaster

from dataclasses import dataclass, field, fields

# equal-area CRS the grids are built in (metres)
CRS = "EPSG:5070"

# response variables modelled per tile
RESPONSE_VARIABLES = (
    "RHD_25to50",
    "RHD_50to75",
    "RHD_75to98",
    "rh98",
    "cover",
    "fhd_normal",
    "pai",
    "PAVD_0_10m",
    "PAVD_10_20m",
    "PAVD_20_30m",
    "PAVD_30_40m",
    "PAVD_40_50m",
    "PAVD_50_60m",
    "PAVD_over60m",
)


DEFAULTS = dict(
    FINE_CELL_M=15_000.0,  # base grid step; tiles are unions of these
    COARSE_CELL_M=30_000.0,  # one tile per coarse cell, ~2x wider once padded
    TILE_ID_SEED=17,  # shuffles tile ids so id order is not spatial order
    SAMPLE_ID_SEED=17,
    MIN_TILE_SAMPLES=1250,  # below this a tile is not modelled at all
    MIN_CORE_RATIO=0.1,  # share of a tile's samples inside its own core cell
    SELECT_MIN_SAMPLES=12_500,
    MAX_TILES=40,
    OVERLAPPING_TILE_IDS=(2022, 2033, 2055, 2066, 2091),  # curated by hand
    PIXEL_M=30.0,
    MAX_DISTANCE_PX=1415,  # ~ half diagonal of a 60 km tile at 30 m
    N_TREES=100,
    TRAIN_RATIO=0.8,
    SAMPLES_PER_TILE=10,
)


@dataclass(frozen=True)
class PipelineConfig:
    """Explicit settings handed to each stage instead of module globals."""

    crs: str = CRS
    fine_cell_m: float = DEFAULTS["FINE_CELL_M"]
    coarse_cell_m: float = DEFAULTS["COARSE_CELL_M"]
    tile_id_seed: int | None = DEFAULTS["TILE_ID_SEED"]
    sample_id_seed: int = DEFAULTS["SAMPLE_ID_SEED"]
    min_tile_samples: int = DEFAULTS["MIN_TILE_SAMPLES"]
    min_core_ratio: float = DEFAULTS["MIN_CORE_RATIO"]
    select_min_samples: int = DEFAULTS["SELECT_MIN_SAMPLES"]
    max_tiles: int = DEFAULTS["MAX_TILES"]
    overlapping_tile_ids: tuple[int, ...] = DEFAULTS["OVERLAPPING_TILE_IDS"]
    pixel_m: float = DEFAULTS["PIXEL_M"]
    max_distance_px: int = DEFAULTS["MAX_DISTANCE_PX"]
    n_trees: int = DEFAULTS["N_TREES"]
    train_ratio: float = DEFAULTS["TRAIN_RATIO"]
    samples_per_tile: int = DEFAULTS["SAMPLES_PER_TILE"]
    response_variables: tuple[str, ...] = field(default=RESPONSE_VARIABLES)

    @classmethod
    def from_defaults(cls, **overrides) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**overrides)

"""
Trait surface construction for Pyrodiv.

For one landscape, the weighted fire records affecting it are overlaid
into four trait rasters on the landscape grid:

- frequency   : sum of weights of fires covering the cell
- seasonality : weighted circular mean of ignition day-of-year
- severity    : weighted mean of the fire's severity at the cell
- patch_size  : weighted mean of the (log) area of the cell's patch

All four share one builder parameterized by a per-pixel accumulator. The
accumulators are commutative and associative, so records can be folded in
any order or in independent chunks that are merged afterwards.

Cells never covered by a contributing fire are NaN (NoData) in every trait.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from functools import reduce
from typing import Callable, Sequence

import numpy as np
from rasterio.errors import RasterioIOError

from pyrodiv.config import TRAITS, PyrodivConfig
from pyrodiv.errors import AlignmentError, MissingDataWarning, log_warning
from pyrodiv.fire_history import Landscape, WeightedRecord
from pyrodiv.io import GridSpec, RasterData, rasterize_geometries, window_onto
from pyrodiv.patches import patch_size_surface

logger = logging.getLogger(__name__)


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True)
class TraitSettings:
    """Parameters of trait surface construction."""

    class_breaks: tuple[float, ...] = (0.1, 1.25, 2.25)
    connectivity: int = 8
    area_transform: str = "log"
    seasonality_period: float = 360.0

    @classmethod
    def from_config(cls, config: PyrodivConfig) -> "TraitSettings":
        return cls(
            class_breaks=tuple(config.severity.class_breaks),
            connectivity=config.patches.connectivity,
            area_transform=config.patches.area_transform,
            seasonality_period=config.seasonality.period,
        )


# =============================================================================
# Accumulators
# =============================================================================


class TraitAccumulator(ABC):
    """Per-pixel partial sums for one trait over one landscape grid."""

    def __init__(self, shape: tuple[int, int]):
        self.shape = tuple(shape)

    @abstractmethod
    def add(self, weight: float, values: np.ndarray | float | None, footprint: np.ndarray) -> None:
        """Fold one record's contribution into the partial sums."""

    @abstractmethod
    def _arrays(self) -> tuple[np.ndarray, ...]:
        """Partial-sum arrays, in a fixed order."""

    @abstractmethod
    def finalize(self) -> np.ndarray:
        """Trait values, NaN where nothing was accumulated."""

    def merge(self, other: "TraitAccumulator") -> "TraitAccumulator":
        """Add ``other``'s partial sums into this accumulator and return it."""
        if type(other) is not type(self) or other.shape != self.shape:
            raise ValueError(
                f"Cannot merge {type(other).__name__}{other.shape} into "
                f"{type(self).__name__}{self.shape}"
            )
        for mine, theirs in zip(self._arrays(), other._arrays()):
            mine += theirs
        return self

    @staticmethod
    def _values_in(values: np.ndarray | float, footprint: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Cells inside ``footprint`` with a finite value, and those values."""
        values = np.broadcast_to(np.asarray(values, dtype=np.float64), footprint.shape)
        cells = footprint & np.isfinite(values)
        return cells, values[cells]


class FrequencyAccumulator(TraitAccumulator):
    """Weighted fire exposure count: sum of weights."""

    def __init__(self, shape: tuple[int, int]):
        super().__init__(shape)
        self.total = np.zeros(self.shape, dtype=np.float64)
        self.count = np.zeros(self.shape, dtype=np.int64)

    def add(self, weight, values, footprint):
        self.total[footprint] += weight
        self.count[footprint] += 1

    def _arrays(self):
        return (self.total, self.count)

    def finalize(self):
        return np.where(self.count > 0, self.total, np.nan)


class WeightedMeanAccumulator(TraitAccumulator):
    """Weighted arithmetic mean: sum(w * v) / sum(w)."""

    def __init__(self, shape: tuple[int, int]):
        super().__init__(shape)
        self.weighted_sum = np.zeros(self.shape, dtype=np.float64)
        self.weight_sum = np.zeros(self.shape, dtype=np.float64)

    def add(self, weight, values, footprint):
        if values is None:
            return
        cells, vals = self._values_in(values, footprint)
        self.weighted_sum[cells] += weight * vals
        self.weight_sum[cells] += weight

    def _arrays(self):
        return (self.weighted_sum, self.weight_sum)

    def finalize(self):
        out = np.full(self.shape, np.nan, dtype=np.float64)
        has = self.weight_sum > 0
        out[has] = self.weighted_sum[has] / self.weight_sum[has]
        return out


class CircularMeanAccumulator(TraitAccumulator):
    """
    Weighted circular mean of a periodic quantity (day-of-year).

    Values are mapped to angles ``2*pi*v/period``, averaged as unit vectors
    weighted by ``w``, and mapped back to ``[0, period)``. Where the
    weighted resultant vanishes the mean direction is undefined (NaN).
    """

    def __init__(self, shape: tuple[int, int], period: float = 360.0):
        super().__init__(shape)
        if period <= 0:
            raise ValueError(f"Period must be positive, got {period}")
        self.period = float(period)
        self.sin_sum = np.zeros(self.shape, dtype=np.float64)
        self.cos_sum = np.zeros(self.shape, dtype=np.float64)
        self.weight_sum = np.zeros(self.shape, dtype=np.float64)

    def add(self, weight, values, footprint):
        if values is None:
            return
        cells, vals = self._values_in(values, footprint)
        theta = 2.0 * np.pi * vals / self.period
        self.sin_sum[cells] += weight * np.sin(theta)
        self.cos_sum[cells] += weight * np.cos(theta)
        self.weight_sum[cells] += weight

    def merge(self, other):
        if isinstance(other, CircularMeanAccumulator) and other.period != self.period:
            raise ValueError(f"Cannot merge periods {other.period} and {self.period}")
        return super().merge(other)

    def _arrays(self):
        return (self.sin_sum, self.cos_sum, self.weight_sum)

    def finalize(self):
        out = np.full(self.shape, np.nan, dtype=np.float64)
        has = self.weight_sum > 0
        resultant = np.hypot(self.sin_sum[has], self.cos_sum[has]) / self.weight_sum[has]
        angle = np.arctan2(self.sin_sum[has], self.cos_sum[has])
        day = np.mod(angle * self.period / (2.0 * np.pi), self.period)
        # snap values that round to the period back to zero
        day[np.isclose(day, self.period)] = 0.0
        day[resultant < 1e-9] = np.nan
        out[has] = day
        return out


# =============================================================================
# Prepared Records
# =============================================================================


@dataclass
class PreparedRecord:
    """One fire record resampled onto a landscape grid."""

    fire_id: str
    weight: float
    rank: int
    day_of_year: int
    footprint: np.ndarray = field(repr=False)
    severity: np.ndarray = field(repr=False)
    patch_size: np.ndarray = field(repr=False)


def landscape_mask(landscape: Landscape) -> np.ndarray:
    """Cells of the landscape grid inside its boundary."""
    if landscape.boundary is None:
        return np.ones(landscape.grid.shape, dtype=bool)
    return rasterize_geometries([landscape.boundary], landscape.grid)


def prepare_record(
    weighted: WeightedRecord,
    grid: GridSpec,
    inside: np.ndarray,
    settings: TraitSettings,
) -> PreparedRecord:
    """
    Resample one weighted fire record onto a landscape grid.

    Patches are segmented on the record's full severity raster (restricted
    to its perimeter) before windowing, so they are not cut at the
    landscape edge.

    Raises
    ------
    AlignmentError
        If the severity raster is not co-registered with ``grid``.
    """
    record = weighted.record
    severity = record.load_severity()

    full = severity.data
    if record.perimeter is not None:
        in_perimeter = rasterize_geometries([record.perimeter], severity.grid)
        full = np.where(in_perimeter, full, np.nan)
    fire_severity = RasterData(data=full, transform=severity.transform, crs=severity.crs)

    patches = patch_size_surface(
        fire_severity,
        settings.class_breaks,
        connectivity=settings.connectivity,
        area_transform=settings.area_transform,
    )

    sev_window = window_onto(fire_severity, grid)
    patch_window = window_onto(patches, grid)

    if record.perimeter is not None:
        footprint = rasterize_geometries([record.perimeter], grid)
    else:
        footprint = np.isfinite(sev_window)
    footprint &= inside

    return PreparedRecord(
        fire_id=record.fire_id,
        weight=weighted.weight,
        rank=weighted.rank,
        day_of_year=record.day_of_year,
        footprint=footprint,
        severity=np.where(footprint, sev_window, np.nan),
        patch_size=np.where(footprint, patch_window, np.nan),
    )


def prepare_records(
    weighted_records: Sequence[WeightedRecord],
    landscape: Landscape,
    settings: TraitSettings,
    workers: int = 1,
) -> list[PreparedRecord]:
    """
    Prepare every record for ``landscape``, skipping records that fail.

    Misaligned or unreadable rasters are logged with the fire id and
    dropped; processing continues with the remaining records. Records
    with zero weight contribute nothing and are dropped up front.
    """
    grid = landscape.grid
    inside = landscape_mask(landscape)
    lid = landscape.landscape_id

    active = []
    for wr in weighted_records:
        if wr.weight > 0:
            active.append(wr)
        else:
            logger.debug(f"Landscape {lid}: fire {wr.fire_id} has zero weight, ignored")

    def _prepare(wr: WeightedRecord) -> PreparedRecord | None:
        try:
            return prepare_record(wr, grid, inside, settings)
        except AlignmentError as e:
            logger.warning(f"Landscape {lid}: fire {wr.fire_id} skipped, misaligned raster: {e}")
        except (RasterioIOError, FileNotFoundError, OSError) as e:
            log_warning(
                logger, MissingDataWarning,
                f"Landscape {lid}: fire {wr.fire_id} skipped, unreadable severity raster: {e}",
            )
        return None

    if workers > 1 and len(active) > 1:
        prepared_by_id: dict[str, PreparedRecord | None] = {}
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(_prepare, wr): wr.fire_id for wr in active}
            for future in as_completed(futures):
                prepared_by_id[futures[future]] = future.result()
        prepared = [prepared_by_id[wr.fire_id] for wr in active]
    else:
        prepared = [_prepare(wr) for wr in active]

    kept = [p for p in prepared if p is not None and p.footprint.any()]
    logger.debug(f"Landscape {lid}: {len(kept)}/{len(weighted_records)} fire(s) contribute")
    return kept


# =============================================================================
# Builder
# =============================================================================


@dataclass
class TraitSurfaceBuilder:
    """
    Overlay prepared records into one trait raster.

    Parameters
    ----------
    trait : str
        Trait name.
    make_accumulator : callable
        ``shape -> TraitAccumulator``.
    value_of : callable
        ``PreparedRecord -> values`` passed to the accumulator.
    """

    trait: str
    make_accumulator: Callable[[tuple[int, int]], TraitAccumulator]
    value_of: Callable[[PreparedRecord], np.ndarray | float | None]

    def accumulate(self, shape: tuple[int, int], prepared: Sequence[PreparedRecord]) -> TraitAccumulator:
        acc = self.make_accumulator(shape)
        for rec in prepared:
            acc.add(rec.weight, self.value_of(rec), rec.footprint)
        return acc

    def build(
        self,
        grid: GridSpec,
        prepared: Sequence[PreparedRecord],
        n_chunks: int = 1,
    ) -> RasterData:
        """
        Build the trait raster on ``grid``.

        With ``n_chunks > 1`` the records are folded in independent chunks
        whose partial sums are merged, which gives the same result as a
        single pass.
        """
        n_chunks = max(1, min(n_chunks, len(prepared)))
        chunks = [prepared[i::n_chunks] for i in range(n_chunks)]
        partials = [self.accumulate(grid.shape, chunk) for chunk in chunks]
        acc = reduce(lambda a, b: a.merge(b), partials)
        return RasterData(data=acc.finalize(), transform=grid.transform, crs=grid.crs)


def trait_builders(settings: TraitSettings) -> dict[str, TraitSurfaceBuilder]:
    """The four trait builders, keyed by trait name."""
    period = settings.seasonality_period
    return {
        "frequency": TraitSurfaceBuilder(
            "frequency", FrequencyAccumulator, lambda rec: None,
        ),
        "seasonality": TraitSurfaceBuilder(
            "seasonality",
            lambda shape: CircularMeanAccumulator(shape, period=period),
            lambda rec: float(rec.day_of_year),
        ),
        "severity": TraitSurfaceBuilder(
            "severity", WeightedMeanAccumulator, lambda rec: rec.severity,
        ),
        "patch_size": TraitSurfaceBuilder(
            "patch_size", WeightedMeanAccumulator, lambda rec: rec.patch_size,
        ),
    }


@dataclass
class TraitStack:
    """The four trait surfaces of one landscape."""

    landscape_id: str
    surfaces: dict[str, RasterData]
    n_fires: int = 0

    def __getitem__(self, trait: str) -> RasterData:
        return self.surfaces[trait]

    @property
    def burned(self) -> np.ndarray:
        """Cells touched by at least one contributing fire."""
        return np.isfinite(self.surfaces["frequency"].data)


def build_trait_surfaces(
    landscape: Landscape,
    weighted_records: Sequence[WeightedRecord],
    settings: TraitSettings | None = None,
    record_workers: int = 1,
    n_chunks: int = 1,
) -> TraitStack:
    """
    Build the frequency, seasonality, severity and patch-size surfaces.

    Parameters
    ----------
    landscape : Landscape
        Landscape whose grid defines the output extent.
    weighted_records : sequence of WeightedRecord
        Records affecting the landscape with their decay weights.
    settings : TraitSettings, optional
        Segmentation and seasonality parameters.
    record_workers : int
        Threads used to prepare records (patch segmentation).
    n_chunks : int
        Number of partial reductions merged per trait.

    Returns
    -------
    TraitStack
        One raster per trait; all NaN when no record contributes.
    """
    settings = settings or TraitSettings()
    grid = landscape.grid

    prepared = prepare_records(weighted_records, landscape, settings, workers=record_workers)
    if not prepared:
        log_warning(
            logger, MissingDataWarning,
            f"Landscape {landscape.landscape_id}: no contributing fire records, "
            f"trait surfaces are all NoData",
        )
        return TraitStack(
            landscape_id=landscape.landscape_id,
            surfaces={trait: RasterData.empty(grid) for trait in TRAITS},
            n_fires=0,
        )

    builders = trait_builders(settings)
    surfaces = {trait: builders[trait].build(grid, prepared, n_chunks=n_chunks) for trait in TRAITS}
    stack = TraitStack(landscape_id=landscape.landscape_id, surfaces=surfaces, n_fires=len(prepared))

    logger.info(
        f"Landscape {landscape.landscape_id}: trait surfaces from {stack.n_fires} fire(s), "
        f"{int(stack.burned.sum())} burned cell(s)"
    )
    return stack

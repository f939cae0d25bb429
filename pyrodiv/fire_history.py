"""
Fire records, landscapes and recency weighting for Pyrodiv.

This module holds the already-parsed inputs of the pyrodiversity core: the
fire history of a region (one :class:`FireRecord` per fire event) and the
landscape units it is summarized over. Ingestion from vector and raster
files is a thin adapter (:meth:`FireHistory.from_files`,
:func:`load_landscapes`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

import numpy as np
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from pyrodiv.config import PyrodivConfig, WeightingConfig
from pyrodiv.decay import decay_weights, recency_ranks
from pyrodiv.errors import ConfigurationError, MissingDataWarning, log_warning
from pyrodiv.io import GridSpec, RasterData, read_raster, read_vector, subgrid_for_bounds

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class FireRecord:
    """A single fire event with its severity raster and perimeter."""

    fire_id: str
    year: int
    day_of_year: int
    severity: RasterData | None = field(default=None, compare=False, repr=False)
    severity_path: Path | None = None
    perimeter: BaseGeometry | None = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if not 1 <= int(self.day_of_year) <= 366:
            raise ValueError(
                f"Fire {self.fire_id}: day_of_year must be in 1..366, got {self.day_of_year}"
            )
        if self.severity is None and self.severity_path is None:
            raise ValueError(f"Fire {self.fire_id}: no severity raster or path")

    def load_severity(self) -> RasterData:
        """Return the severity raster, reading it from disk if needed."""
        if self.severity is not None:
            return self.severity
        return read_raster(self.severity_path)

    def footprint_bounds(self) -> tuple[float, float, float, float] | None:
        """Bounds of the perimeter, or of the in-memory severity raster."""
        if self.perimeter is not None and not self.perimeter.is_empty:
            return tuple(self.perimeter.bounds)
        if self.severity is not None:
            return self.severity.bounds
        return None


@dataclass
class Landscape:
    """A landscape unit (e.g. a watershed) and its output grid."""

    landscape_id: str
    grid: GridSpec
    boundary: BaseGeometry | None = field(default=None, repr=False)
    mask: RasterData | None = field(default=None, repr=False)
    mask_path: Path | None = None

    def load_mask(self) -> RasterData | None:
        """Return the flammability mask, reading it from disk if needed."""
        if self.mask is not None:
            return self.mask
        if self.mask_path is None:
            return None
        return read_raster(self.mask_path)

    def intersects(self, record: FireRecord) -> bool:
        """Whether ``record`` can affect this landscape."""
        area = self.boundary if self.boundary is not None else box(*self.grid.bounds)
        if record.perimeter is not None and not record.perimeter.is_empty:
            return bool(area.intersects(record.perimeter))
        bounds = record.footprint_bounds()
        if bounds is None:
            # Unknown extent until the raster is read; keep it
            return True
        return bool(area.intersects(box(*bounds)))


@dataclass(frozen=True)
class WeightedRecord:
    """A fire record with its recency rank and decay weight for one landscape."""

    record: FireRecord
    rank: int
    weight: float

    @property
    def fire_id(self) -> str:
        return self.record.fire_id


# =============================================================================
# Fire History
# =============================================================================


@dataclass
class FireHistory:
    """Collection of fire records for a region."""

    records: list[FireRecord] = field(default_factory=list)

    def __post_init__(self):
        ids = [r.fire_id for r in self.records]
        if len(ids) != len(set(ids)):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise ConfigurationError(f"Duplicate fire ids: {dupes}")

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[FireRecord]:
        return iter(self.records)

    def within_window(self, start_year: int | None = None, end_year: int | None = None) -> "FireHistory":
        """Records with ``start_year <= year <= end_year``."""
        kept = [
            r for r in self.records
            if (start_year is None or r.year >= start_year)
            and (end_year is None or r.year <= end_year)
        ]
        return FireHistory(kept)

    def for_landscape(self, landscape: Landscape) -> list[FireRecord]:
        """Records that spatially intersect ``landscape``."""
        return [r for r in self.records if landscape.intersects(r)]

    def weighted_for_landscape(
        self,
        landscape: Landscape,
        weighting: WeightingConfig,
    ) -> list[WeightedRecord]:
        """
        Select, rank and weight the records affecting ``landscape``.

        Recency ranks are computed among the landscape's own records within
        the temporal window, so the most recent fire affecting the landscape
        has weight 1.

        Returns
        -------
        list[WeightedRecord]
            Ordered by recency, most recent first.
        """
        window = self.within_window(weighting.start_year, weighting.end_year)
        selected = window.for_landscape(landscape)
        if not selected:
            log_warning(
                logger, MissingDataWarning,
                f"Landscape {landscape.landscape_id}: no fire records intersect",
            )
            return []

        ranks = recency_ranks(
            [r.year for r in selected],
            [r.day_of_year for r in selected],
            basis=weighting.rank_basis,
            reference_year=weighting.end_year,
        )
        weights = decay_weights(weighting.decay_rate, ranks)

        weighted = [
            WeightedRecord(record=r, rank=int(k), weight=float(w))
            for r, k, w in zip(selected, ranks, weights)
        ]
        weighted.sort(key=lambda wr: (wr.rank, wr.fire_id))

        logger.debug(
            f"Landscape {landscape.landscape_id}: {len(weighted)} fire(s), "
            f"weights {[round(wr.weight, 4) for wr in weighted]}"
        )
        return weighted

    @classmethod
    def from_files(cls, config: PyrodivConfig, target_crs=None) -> "FireHistory":
        """
        Build a fire history from a perimeter vector file and a directory
        of per-fire severity rasters.

        Severity rasters are located with ``fire_history.severity_pattern``
        and read lazily. Fires whose raster is missing are dropped with a
        warning.
        """
        fh_cfg = config.fire_history
        if fh_cfg.perimeter_path is None or fh_cfg.severity_dir is None:
            raise ConfigurationError("fire_history.perimeter_path and severity_dir are required")

        gdf = read_vector(fh_cfg.perimeter_path, target_crs=target_crs)
        for name in (fh_cfg.id_field, fh_cfg.year_field, fh_cfg.doy_field):
            if name not in gdf.columns:
                raise ConfigurationError(
                    f"Field {name!r} not found in {fh_cfg.perimeter_path}; "
                    f"available: {list(gdf.columns)}"
                )

        records = []
        for row in gdf.itertuples(index=False):
            fire_id = str(getattr(row, fh_cfg.id_field))
            path = Path(fh_cfg.severity_dir) / fh_cfg.severity_pattern.format(fire_id=fire_id)
            if not path.exists():
                log_warning(
                    logger, MissingDataWarning,
                    f"Fire {fire_id}: severity raster not found at {path}, skipping",
                )
                continue
            try:
                record = FireRecord(
                    fire_id=fire_id,
                    year=int(getattr(row, fh_cfg.year_field)),
                    day_of_year=int(getattr(row, fh_cfg.doy_field)),
                    severity_path=path,
                    perimeter=row.geometry,
                )
            except ValueError as e:
                logger.warning(f"Fire {fire_id}: invalid record, skipping: {e}")
                continue
            records.append(record)

        logger.info(f"Loaded {len(records)} fire record(s) from {fh_cfg.perimeter_path}")
        return cls(records)


# =============================================================================
# Landscapes
# =============================================================================


def load_landscapes(
    config: PyrodivConfig,
    reference_grid: GridSpec,
) -> list[Landscape]:
    """
    Build landscapes from a boundary vector file.

    Each landscape's grid is the sub-grid of ``reference_grid`` covering its
    boundary. Masks are attached when ``landscapes.mask_dir`` holds a file
    matching ``landscapes.mask_pattern``.

    Raises
    ------
    ConfigurationError
        If the identifier field is missing or identifiers are not unique.
    """
    ls_cfg = config.landscapes
    if ls_cfg.path is None:
        raise ConfigurationError("landscapes.path is required")

    gdf = read_vector(ls_cfg.path, target_crs=reference_grid.crs)
    if ls_cfg.id_field not in gdf.columns:
        raise ConfigurationError(
            f"Identifier field {ls_cfg.id_field!r} not found in {ls_cfg.path}; "
            f"available: {list(gdf.columns)}"
        )

    ids = gdf[ls_cfg.id_field].astype(str)
    if ids.duplicated().any():
        raise ConfigurationError(
            f"Identifier field {ls_cfg.id_field!r} is not unique: "
            f"{sorted(ids[ids.duplicated()].unique().tolist())}"
        )

    landscapes = []
    for landscape_id, geom in zip(ids, gdf.geometry):
        if geom is None or geom.is_empty:
            logger.warning(f"Landscape {landscape_id}: empty boundary, skipping")
            continue
        mask_path = None
        if ls_cfg.mask_dir is not None:
            candidate = Path(ls_cfg.mask_dir) / ls_cfg.mask_pattern.format(landscape_id=landscape_id)
            if candidate.exists():
                mask_path = candidate
        landscapes.append(
            Landscape(
                landscape_id=landscape_id,
                grid=subgrid_for_bounds(reference_grid, geom.bounds),
                boundary=geom,
                mask_path=mask_path,
            )
        )

    logger.info(f"Loaded {len(landscapes)} landscape(s) from {ls_cfg.path}")
    return landscapes


def landscape_from_grid(
    landscape_id: str,
    grid: GridSpec,
    boundary: BaseGeometry | None = None,
    mask: RasterData | np.ndarray | None = None,
) -> Landscape:
    """Convenience constructor for in-memory landscapes."""
    if isinstance(mask, np.ndarray):
        mask = RasterData(data=mask.astype(np.float64), transform=grid.transform, crs=grid.crs)
    return Landscape(landscape_id=landscape_id, grid=grid, boundary=boundary, mask=mask)


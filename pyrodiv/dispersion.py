"""
Pyrodiversity aggregation: functional dispersion of fire-history traits.

The valid pixels of a landscape are treated as a community: each distinct
quantized (frequency, seasonality, severity, patch_size) tuple is a trait
class ("species") whose abundance is its pixel count. Pyrodiversity is the
functional dispersion (FDis) of that community:

1. Gower dissimilarity between trait classes, each trait scaled by its
   observed range and averaged over the four traits.
2. Principal coordinates (PCoA) of the dissimilarity matrix.
3. Abundance-weighted centroid of the classes in PCoA space.
4. FDis = abundance-weighted mean distance of the classes to the centroid.

When the dissimilarities are not Euclidean, PCoA yields negative
eigenvalues. Their axes are kept and subtract from the squared distance to
the centroid, so no correction of the dissimilarities is needed.

References
----------
- Laliberte, E. and Legendre, P. (2010). A distance-based framework for
  measuring functional diversity from multiple traits. Ecology 91: 299-305.
- Anderson, M.J. (2006). Distance-based tests for homogeneity of
  multivariate dispersions. Biometrics 62: 245-253.
- Gower, J.C. (1971). A general coefficient of similarity and some of its
  properties. Biometrics 27: 857-871.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Literal, Mapping, Sequence

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist

from pyrodiv.config import TRAITS
from pyrodiv.errors import AlignmentError, DegenerateInputWarning, MissingDataWarning, log_warning
from pyrodiv.io import RasterData, check_alignment

logger = logging.getLogger(__name__)

# Relative eigenvalue tolerance below which PCoA axes are dropped
EIG_TOL = 1e-7


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class PyrodiversityResult:
    """Pyrodiversity of one landscape."""

    landscape_id: str
    fdis: float | None
    richness: int = 0
    evenness: float | None = None
    n_valid_pixels: int = 0
    n_fires: int = 0
    status: str = "ok"

    @property
    def defined(self) -> bool:
        """False when the landscape had no valid pixels."""
        return self.fdis is not None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PCoAResult:
    """Principal coordinates of a dissimilarity matrix."""

    vectors: np.ndarray
    eigenvalues: np.ndarray

    @property
    def positive(self) -> np.ndarray:
        """Boolean selector of axes with positive eigenvalues."""
        return self.eigenvalues > 0


# =============================================================================
# Trait Classes
# =============================================================================


def valid_pixel_mask(
    surfaces: Mapping[str, RasterData],
    mask: RasterData | None = None,
) -> np.ndarray:
    """
    Cells with data in every trait surface and, if given, flammable in ``mask``.

    The mask is flammable where its value is 1; 0 and NoData cells are
    excluded.

    Raises
    ------
    AlignmentError
        If the mask or any surface is not on the same grid.
    """
    missing = [t for t in TRAITS if t not in surfaces]
    if missing:
        raise KeyError(f"Missing trait surfaces: {missing}")

    reference = surfaces[TRAITS[0]].grid
    valid = np.ones(reference.shape, dtype=bool)
    for trait in TRAITS:
        raster = surfaces[trait]
        if raster.shape != reference.shape or check_alignment(raster.grid, reference) != (0, 0):
            raise AlignmentError(f"Trait surface {trait} is not on the landscape grid")
        valid &= np.isfinite(raster.data)

    if mask is not None:
        if mask.shape != reference.shape or check_alignment(mask.grid, reference) != (0, 0):
            raise AlignmentError("Flammability mask is not on the landscape grid")
        valid &= np.isfinite(mask.data) & (mask.data == 1)

    return valid


def trait_class_table(
    surfaces: Mapping[str, RasterData],
    valid: np.ndarray,
) -> pd.DataFrame:
    """
    Group valid pixels into trait classes.

    Returns
    -------
    DataFrame
        One row per distinct trait tuple, columns ``frequency``,
        ``seasonality``, ``severity``, ``patch_size`` and ``abundance``,
        sorted by trait values. Abundances sum to ``valid.sum()``.
    """
    pixels = pd.DataFrame({trait: surfaces[trait].data[valid] for trait in TRAITS})
    if pixels.empty:
        return pd.DataFrame(columns=[*TRAITS, "abundance"]).astype({"abundance": "int64"})

    table = (
        pixels.groupby(list(TRAITS), sort=True)
        .size()
        .rename("abundance")
        .reset_index()
    )
    return table


# =============================================================================
# Distances and Ordination
# =============================================================================


def gower_distance(traits: np.ndarray | pd.DataFrame) -> np.ndarray:
    """
    Gower dissimilarity between rows of a numeric trait matrix.

    Each trait contributes ``|x_ik - x_jk| / range_k``; traits with zero
    observed range contribute 0. Contributions are averaged over all traits,
    so distances lie in [0, 1].
    """
    x = np.asarray(traits, dtype=np.float64)
    if x.ndim != 2:
        raise ValueError(f"Trait matrix must be 2-D, got shape {x.shape}")
    n, p = x.shape
    if n == 0 or p == 0:
        return np.zeros((n, n), dtype=np.float64)

    ranges = x.max(axis=0) - x.min(axis=0)
    scale = np.where(ranges > 0, ranges, 1.0)
    scaled = x / scale
    scaled[:, ranges == 0] = 0.0

    d = cdist(scaled, scaled, metric="cityblock") / p
    np.fill_diagonal(d, 0.0)
    return d


def pcoa(distance: np.ndarray, weights: np.ndarray | None = None) -> PCoAResult:
    """
    Principal coordinates analysis of a dissimilarity matrix.

    The matrix ``A = -D**2 / 2`` is double-centred (with ``weights``, if
    given) and eigen-decomposed. Axes whose eigenvalue magnitude is below
    ``EIG_TOL`` times the largest are dropped; the rest are scaled by
    ``sqrt(|eigenvalue|)``.

    Returns
    -------
    PCoAResult
        Coordinates (n x r) and signed eigenvalues, sorted descending.
    """
    d = np.asarray(distance, dtype=np.float64)
    n = d.shape[0]
    if d.shape != (n, n):
        raise ValueError(f"Distance matrix must be square, got {d.shape}")
    if n < 2:
        return PCoAResult(vectors=np.zeros((n, 0)), eigenvalues=np.zeros(0))

    if weights is None:
        w = np.full(n, 1.0 / n)
    else:
        w = np.asarray(weights, dtype=np.float64)
        w = w / w.sum()

    a = -0.5 * d ** 2
    # double centring: G = (I - 1 w') A (I - w 1')
    centring = np.eye(n) - np.outer(np.ones(n), w)
    g = centring @ a @ centring.T
    g = 0.5 * (g + g.T)

    eigenvalues, eigenvectors = np.linalg.eigh(g)
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues, eigenvectors = eigenvalues[order], eigenvectors[:, order]

    largest = np.abs(eigenvalues).max()
    if largest == 0:
        return PCoAResult(vectors=np.zeros((n, 0)), eigenvalues=np.zeros(0))
    keep = np.abs(eigenvalues) > EIG_TOL * largest
    eigenvalues, eigenvectors = eigenvalues[keep], eigenvectors[:, keep]

    vectors = eigenvectors * np.sqrt(np.abs(eigenvalues))
    return PCoAResult(vectors=vectors, eigenvalues=eigenvalues)


def functional_dispersion(
    distance: np.ndarray,
    abundances: Sequence[float] | np.ndarray,
    correction: Literal["none", "sqrt"] = "none",
) -> float:
    """
    Functional dispersion (FDis) of a weighted community.

    Parameters
    ----------
    distance : np.ndarray
        Dissimilarities between classes (n x n).
    abundances : array-like
        Non-negative class abundances.
    correction : {"none", "sqrt"}
        ``"sqrt"`` takes the square root of the dissimilarities first.

    Returns
    -------
    float
        Abundance-weighted mean distance to the abundance-weighted centroid;
        0 for a single class.
    """
    a = np.asarray(abundances, dtype=np.float64)
    if a.ndim != 1 or a.size == 0:
        raise ValueError("At least one abundance is required")
    if np.any(a < 0) or a.sum() <= 0:
        raise ValueError("Abundances must be non-negative with a positive total")
    if a.size == 1:
        return 0.0

    d = np.asarray(distance, dtype=np.float64)
    if correction == "sqrt":
        d = np.sqrt(d)
    elif correction != "none":
        raise ValueError(f"Unknown correction: {correction!r}")

    ordination = pcoa(d)
    if ordination.vectors.shape[1] == 0:
        return 0.0

    w = a / a.sum()
    x = ordination.vectors
    centroid = w @ x
    sq = (x - centroid) ** 2
    pos = ordination.positive
    dist_sq = sq[:, pos].sum(axis=1) - sq[:, ~pos].sum(axis=1)
    z = np.sqrt(np.abs(dist_sq))
    return float(w @ z)


# =============================================================================
# Aggregation
# =============================================================================


def pielou_evenness(abundances: Sequence[float] | np.ndarray) -> float | None:
    """Shannon evenness H / ln(S) of class abundances; None when S < 2."""
    a = np.asarray(abundances, dtype=np.float64)
    a = a[a > 0]
    if a.size < 2:
        return None
    p = a / a.sum()
    return float(-(p * np.log(p)).sum() / np.log(a.size))


def compute_pyrodiversity(
    landscape_id: str,
    surfaces: Mapping[str, RasterData],
    mask: RasterData | None = None,
    n_fires: int = 0,
    correction: Literal["none", "sqrt"] = "none",
) -> PyrodiversityResult:
    """
    Pyrodiversity of one landscape from its quantized trait surfaces.

    Parameters
    ----------
    landscape_id : str
        Landscape identifier.
    surfaces : mapping
        Quantized, co-registered trait rasters keyed by trait name.
    mask : RasterData, optional
        Flammability mask (1 = flammable) on the same grid.
    n_fires : int
        Number of fires that contributed to the surfaces.
    correction : {"none", "sqrt"}
        Dissimilarity correction before ordination.

    Returns
    -------
    PyrodiversityResult
        ``fdis`` is None when there are no valid pixels, 0 when the valid
        pixels form a single trait class.
    """
    valid = valid_pixel_mask(surfaces, mask)
    n_valid = int(valid.sum())

    if n_valid == 0:
        log_warning(
            logger, MissingDataWarning,
            f"Landscape {landscape_id}: no valid pixels, pyrodiversity undefined",
        )
        return PyrodiversityResult(
            landscape_id=landscape_id, fdis=None, n_fires=n_fires, status="no_data",
        )

    table = trait_class_table(surfaces, valid)
    abundances = table["abundance"].to_numpy()
    richness = len(table)

    if richness < 2:
        log_warning(
            logger, DegenerateInputWarning,
            f"Landscape {landscape_id}: {n_valid} valid pixel(s) in a single trait class, FDis = 0",
        )
        return PyrodiversityResult(
            landscape_id=landscape_id,
            fdis=0.0,
            richness=richness,
            evenness=None,
            n_valid_pixels=n_valid,
            n_fires=n_fires,
            status="degenerate",
        )

    distance = gower_distance(table[list(TRAITS)].to_numpy())
    fdis = functional_dispersion(distance, abundances, correction=correction)

    logger.info(
        f"Landscape {landscape_id}: FDis = {fdis:.6f} "
        f"({richness} trait classes, {n_valid} valid pixels)"
    )
    return PyrodiversityResult(
        landscape_id=landscape_id,
        fdis=fdis,
        richness=richness,
        evenness=pielou_evenness(abundances),
        n_valid_pixels=n_valid,
        n_fires=n_fires,
        status="ok",
    )


def results_to_dataframe(results: Sequence[PyrodiversityResult]) -> pd.DataFrame:
    """Tabulate results; undefined FDis becomes NaN."""
    columns = ["landscape_id", "fdis", "richness", "evenness", "n_valid_pixels", "n_fires", "status"]
    df = pd.DataFrame([r.to_dict() for r in results], columns=columns)
    df["fdis"] = pd.to_numeric(df["fdis"], errors="coerce")
    df["evenness"] = pd.to_numeric(df["evenness"], errors="coerce")
    return df

"""
Severity patch segmentation for Pyrodiv.

A patch is a maximal connected set of cells in one fire's severity raster
sharing a severity class. Each burned cell is assigned the (transformed)
area of its enclosing patch, which feeds the patch-size trait.

Patches are segmented on the fire's full severity raster; only the
resulting per-cell values are later windowed onto a landscape grid, so
patches are not truncated at landscape boundaries.
"""

from __future__ import annotations

import logging
from typing import Literal, Sequence

import numpy as np
from scipy import ndimage

from pyrodiv.errors import ConfigurationError
from pyrodiv.io import RasterData

logger = logging.getLogger(__name__)

UNCLASSIFIED = -1


def classify_severity(severity: np.ndarray, breaks: Sequence[float]) -> np.ndarray:
    """
    Discretize continuous severity into ordinal classes.

    Parameters
    ----------
    severity : np.ndarray
        Severity values (e.g. CBI), NaN where unburned or unmapped.
    breaks : sequence of float
        Strictly increasing class boundaries. A value ``v`` falls in class
        ``i`` when ``breaks[i-1] <= v < breaks[i]``.

    Returns
    -------
    np.ndarray
        int16 classes in ``0..len(breaks)``, ``UNCLASSIFIED`` where NaN.
    """
    breaks = np.asarray(breaks, dtype=np.float64)
    if breaks.ndim != 1 or breaks.size == 0 or np.any(np.diff(breaks) <= 0):
        raise ConfigurationError(f"Severity class breaks must be strictly increasing: {breaks.tolist()}")

    sev = np.asarray(severity, dtype=np.float64)
    classes = np.full(sev.shape, UNCLASSIFIED, dtype=np.int16)
    valid = np.isfinite(sev)
    classes[valid] = np.digitize(sev[valid], breaks)
    return classes


def connectivity_structure(connectivity: int) -> np.ndarray:
    """Structuring element for 4- or 8-connected labeling."""
    if connectivity == 4:
        return ndimage.generate_binary_structure(2, 1)
    if connectivity == 8:
        return ndimage.generate_binary_structure(2, 2)
    raise ConfigurationError(f"Connectivity must be 4 or 8, got {connectivity}")


def label_patches(classes: np.ndarray, connectivity: int = 8) -> tuple[np.ndarray, int]:
    """
    Label connected patches of equal severity class.

    Returns
    -------
    labels : np.ndarray
        int32 patch ids, 1..n; 0 for unclassified cells.
    n_patches : int
        Number of patches.
    """
    structure = connectivity_structure(connectivity)
    labels = np.zeros(classes.shape, dtype=np.int32)
    n_patches = 0

    for cls in np.unique(classes[classes != UNCLASSIFIED]):
        class_labels, n = ndimage.label(classes == cls, structure=structure)
        in_class = class_labels > 0
        labels[in_class] = class_labels[in_class] + n_patches
        n_patches += n

    return labels, n_patches


def transform_area(
    area_ha: np.ndarray,
    area_transform: Literal["log", "log10", "none"] = "log",
) -> np.ndarray:
    """Apply the configured transform to patch areas in hectares."""
    if area_transform == "log":
        return np.log(area_ha)
    if area_transform == "log10":
        return np.log10(area_ha)
    if area_transform == "none":
        return area_ha
    raise ConfigurationError(f"Unknown area transform: {area_transform!r}")


def patch_size_surface(
    severity: RasterData,
    breaks: Sequence[float],
    connectivity: int = 8,
    area_transform: Literal["log", "log10", "none"] = "log",
) -> RasterData:
    """
    Assign every classified cell the area of its enclosing patch.

    Parameters
    ----------
    severity : RasterData
        One fire's full severity raster.
    breaks : sequence of float
        Severity class boundaries (see :func:`classify_severity`).
    connectivity : {4, 8}
        Pixel connectivity.
    area_transform : {"log", "log10", "none"}
        Transform applied to the area in hectares.

    Returns
    -------
    RasterData
        Transformed patch area on the severity raster's grid, NaN outside
        any patch.
    """
    classes = classify_severity(severity.data, breaks)
    labels, n_patches = label_patches(classes, connectivity)

    out = np.full(severity.shape, np.nan, dtype=np.float64)
    if n_patches == 0:
        return RasterData(data=out, transform=severity.transform, crs=severity.crs)

    cell_area_ha = severity.grid.cell_area_ha
    counts = np.bincount(labels.ravel(), minlength=n_patches + 1)
    patched = labels > 0
    area_ha = counts[labels[patched]] * cell_area_ha
    out[patched] = transform_area(area_ha, area_transform)

    logger.debug(
        f"Segmented {n_patches} patch(es), largest {counts[1:].max() * cell_area_ha:.2f} ha"
    )
    return RasterData(data=out, transform=severity.transform, crs=severity.crs)

"""
Precision quantization of trait surfaces.

Rounding every trait to a configured increment collapses near-identical
ecological states into one trait class; otherwise floating-point noise
would make every pixel a distinct class.

Default increments: frequency 1, seasonality 0.1, severity 0.5 (the
nearest multiple of 5 on a x10 CBI scale), patch size 1 log-hectare.
"""

from __future__ import annotations

import logging
from typing import Mapping

import numpy as np

from pyrodiv.config import DEFAULT_INCREMENTS, TRAITS
from pyrodiv.errors import ConfigurationError
from pyrodiv.io import RasterData

logger = logging.getLogger(__name__)


def quantize(values: np.ndarray, increment: float) -> np.ndarray:
    """
    Round ``values`` to the nearest multiple of ``increment``.

    Halves round away from zero; NaN is preserved.

    Raises
    ------
    ConfigurationError
        If ``increment`` is not positive.
    """
    increment = float(increment)
    if not np.isfinite(increment) or increment <= 0:
        raise ConfigurationError(f"Quantization increment must be > 0, got {increment}")

    values = np.asarray(values, dtype=np.float64)
    scaled = values / increment
    # round half away from zero, tolerant of representation error in the scaling
    steps = np.sign(scaled) * np.floor(np.abs(scaled) + 0.5 + 1e-9)
    out = steps * increment
    # avoid -0.0 so equal classes compare equal as tuples and in output
    out[out == 0] = 0.0
    return out


def quantize_surfaces(
    surfaces: Mapping[str, RasterData],
    increments: Mapping[str, float] | None = None,
    seasonality_period: float | None = None,
) -> dict[str, RasterData]:
    """
    Quantize each trait surface with its increment.

    Parameters
    ----------
    surfaces : mapping
        Trait name to raster.
    increments : mapping, optional
        Trait name to increment; missing traits use the defaults.
    seasonality_period : float, optional
        Length of the seasonal cycle. Quantized seasonality is folded back
        into ``[0, period)`` so a mean just below the period joins the
        class at 0.

    Returns
    -------
    dict[str, RasterData]
        New rasters with quantized values.
    """
    incs = dict(DEFAULT_INCREMENTS)
    if increments:
        unknown = set(increments) - set(TRAITS)
        if unknown:
            raise ConfigurationError(f"Unknown traits in increments: {sorted(unknown)}")
        incs.update(increments)

    if seasonality_period is not None and not seasonality_period > 0:
        raise ConfigurationError(f"Seasonality period must be > 0, got {seasonality_period}")

    out = {}
    for trait, raster in surfaces.items():
        if trait not in incs:
            raise ConfigurationError(f"No quantization increment for trait {trait!r}")
        values = quantize(raster.data, incs[trait])
        if trait == "seasonality" and seasonality_period is not None:
            values = np.mod(values, seasonality_period)
        out[trait] = RasterData(
            data=values,
            transform=raster.transform,
            crs=raster.crs,
            nodata=raster.nodata,
        )
        logger.debug(f"Quantized {trait} to {incs[trait]}")
    return out

"""
Recency decay weighting for Pyrodiv.

A fire's influence on the present-day mosaic is discounted geometrically
with its recency rank: the most recent fire affecting a landscape has
rank 0 and weight 1, the next rank 1 and weight ``r``, and so on.

    w = r ** k,   0 <= r < 1

``r = 0`` keeps only the most recent fire; ``r`` close to 1 approaches an
unweighted fire history.
"""

from __future__ import annotations

from typing import Literal, Sequence

import numpy as np

from pyrodiv.errors import ConfigurationError


def check_decay_rate(rate: float) -> float:
    """Validate a decay rate and return it as a float."""
    rate = float(rate)
    if not np.isfinite(rate) or not 0.0 <= rate < 1.0:
        raise ConfigurationError(f"Decay rate must be in [0, 1), got {rate}")
    return rate


def decay_weight(rate: float, rank: int) -> float:
    """
    Weight of a fire with recency ``rank`` under decay ``rate``.

    Parameters
    ----------
    rate : float
        Decay rate in [0, 1).
    rank : int
        Ordinal recency rank, 0 for the most recent fire.

    Returns
    -------
    float
        ``rate ** rank``.

    Raises
    ------
    ConfigurationError
        If ``rate`` is outside [0, 1) or ``rank`` is negative.
    """
    rate = check_decay_rate(rate)
    if rank < 0 or int(rank) != rank:
        raise ConfigurationError(f"Recency rank must be a non-negative integer, got {rank}")
    # 0 ** 0 == 1, so r = 0 keeps only the most recent fire
    return float(rate ** int(rank))


def decay_weights(rate: float, ranks: Sequence[int] | np.ndarray) -> np.ndarray:
    """Vectorized :func:`decay_weight`."""
    rate = check_decay_rate(rate)
    ranks = np.asarray(ranks, dtype=np.int64)
    if np.any(ranks < 0):
        raise ConfigurationError("Recency ranks must be non-negative")
    return np.power(rate, ranks).astype(np.float64)


def recency_ranks(
    years: Sequence[int],
    days: Sequence[int] | None = None,
    basis: Literal["ordinal", "years"] = "ordinal",
    reference_year: int | None = None,
) -> np.ndarray:
    """
    Rank fire events by recency, 0 for the most recent.

    Parameters
    ----------
    years : sequence of int
        Ignition years.
    days : sequence of int, optional
        Ignition day-of-year; breaks ties between fires of the same year.
    basis : {"ordinal", "years"}
        ``"ordinal"`` ranks distinct (year, day) events densely, newest
        first; events sharing a date share a rank. ``"years"`` uses the
        age in years relative to ``reference_year``.
    reference_year : int, optional
        Reference for ``basis="years"``; defaults to the newest year.

    Returns
    -------
    np.ndarray
        Integer ranks in input order.
    """
    years = np.asarray(years, dtype=np.int64)
    if years.size == 0:
        return np.zeros(0, dtype=np.int64)

    if basis == "years":
        ref = int(years.max()) if reference_year is None else int(reference_year)
        ages = ref - years
        if np.any(ages < 0):
            raise ConfigurationError(
                f"Fire years after the reference year {ref}: {sorted(set(years[ages < 0].tolist()))}"
            )
        return ages

    if basis != "ordinal":
        raise ConfigurationError(f"Unknown rank basis: {basis!r}")

    days = np.zeros_like(years) if days is None else np.asarray(days, dtype=np.int64)
    # Encode (year, day) as one sortable key, newest first
    keys = years * 1000 + days
    distinct = np.unique(keys)[::-1]
    return np.searchsorted(-distinct, -keys).astype(np.int64)

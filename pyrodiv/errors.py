"""
Error and warning taxonomy for Pyrodiv.

Configuration errors abort a run. Alignment errors are raised for a single
fire record or mask and are caught by the caller, which skips that input.
The warning categories classify recoverable conditions; they are logged,
not raised.
"""

from __future__ import annotations


class PyrodivError(Exception):
    """Base class for Pyrodiv errors."""


class ConfigurationError(PyrodivError, ValueError):
    """Invalid run configuration supplied by the caller."""


class AlignmentError(PyrodivError):
    """A raster does not share the common grid (CRS, resolution, origin)."""


class MissingDataWarning(UserWarning):
    """A fire record or landscape has no usable data."""


class DegenerateInputWarning(UserWarning):
    """A landscape collapsed to a single trait class."""


def log_warning(logger, category: type[Warning], message: str) -> None:
    """Log a recoverable condition under its warning category name."""
    logger.warning(f"{category.__name__}: {message}")

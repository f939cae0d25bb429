"""
Shared synthetic grids and fire records for the test suite.
"""

import numpy as np
import pytest
from rasterio.crs import CRS
from rasterio.transform import from_origin
from shapely.geometry import box

from pyrodiv.config import build_config
from pyrodiv.fire_history import FireRecord, Landscape
from pyrodiv.io import GridSpec, RasterData

CELL = 100.0  # metres, 1 ha per cell
CRS_METRIC = CRS.from_epsg(5070)


def make_grid(height=4, width=4, x0=0.0, y0=400.0, cell=CELL):
    """North-up grid with its top-left corner at (x0, y0)."""
    return GridSpec(transform=from_origin(x0, y0, cell, cell), shape=(height, width), crs=CRS_METRIC)


def cell_box(grid, row0, col0, row1, col1):
    """Box covering cells [row0:row1, col0:col1] of ``grid``."""
    x0, y0 = grid.transform.c, grid.transform.f
    xres, yres = grid.resolution
    return box(x0 + col0 * xres, y0 - row1 * yres, x0 + col1 * xres, y0 - row0 * yres)


def severity_raster(grid, value, rows, cols):
    """Severity ``value`` on cells [rows, cols] of ``grid``, NaN elsewhere."""
    data = np.full(grid.shape, np.nan)
    data[rows, cols] = value
    return RasterData(data=data, transform=grid.transform, crs=grid.crs)


def uniform_fire(fire_id, year, doy, grid, value, row0, col0, row1, col1):
    """A fire with uniform severity on a rectangular block of cells."""
    return FireRecord(
        fire_id=fire_id,
        year=year,
        day_of_year=doy,
        severity=severity_raster(grid, value, slice(row0, row1), slice(col0, col1)),
        perimeter=cell_box(grid, row0, col0, row1, col1),
    )


@pytest.fixture
def grid():
    return make_grid()


@pytest.fixture
def landscape(grid):
    return Landscape(landscape_id="L1", grid=grid)


@pytest.fixture
def two_fires(grid):
    """
    Fire A (2000, CBI 2.0) on rows 0-1, cols 0-2 and fire B (2010, CBI 4.0)
    on rows 0-1, cols 1-3. They overlap on cols 1-2; rows 2-3 never burn.
    """
    fire_a = uniform_fire("A", 2000, 200, grid, 2.0, 0, 0, 2, 3)
    fire_b = uniform_fire("B", 2010, 200, grid, 4.0, 0, 1, 2, 4)
    return [fire_a, fire_b]


@pytest.fixture
def config(tmp_path):
    return build_config(
        {
            "project": {"name": "test", "output_dir": str(tmp_path / "out")},
            "weighting": {"decay_rate": 0.5, "end_year": 2010},
        }
    )

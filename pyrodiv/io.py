"""
Raster and vector I/O utilities for Pyrodiv.

This module provides the raster container shared by every component,
GeoTIFF reading and writing, grid alignment checks, and thin adapters for
vector boundaries and tabular results.

In memory, NoData is always NaN. The on-disk sentinel is only used when
writing rasters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterio.crs import CRS
from rasterio.features import rasterize
from rasterio.transform import Affine, from_origin

from pyrodiv.errors import AlignmentError

logger = logging.getLogger(__name__)

# Tolerance (in cells) for origin offsets and resolution comparisons
ALIGN_TOL = 1e-6


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class GridSpec:
    """Geometry of a north-up raster grid."""

    transform: Affine
    shape: tuple[int, int]
    crs: CRS | None = None

    @property
    def height(self) -> int:
        return self.shape[0]

    @property
    def width(self) -> int:
        return self.shape[1]

    @property
    def resolution(self) -> tuple[float, float]:
        """Return (x_res, y_res) cell size."""
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """Return (left, bottom, right, top) bounds."""
        top, left = self.transform.f, self.transform.c
        bottom, right = top + self.height * self.transform.e, left + self.width * self.transform.a
        return (left, bottom, right, top)

    @property
    def cell_area_ha(self) -> float:
        """Area of one cell in hectares (map units assumed to be metres)."""
        xres, yres = self.resolution
        return xres * yres / 10_000.0


@dataclass
class RasterData:
    """Container for raster data with metadata."""

    data: np.ndarray
    transform: Affine
    crs: CRS | None
    nodata: float | None = None

    @property
    def shape(self) -> tuple[int, int]:
        """Return (height, width) of the raster."""
        return self.data.shape

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def grid(self) -> GridSpec:
        return GridSpec(transform=self.transform, shape=self.data.shape, crs=self.crs)

    @property
    def resolution(self) -> tuple[float, float]:
        return self.grid.resolution

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return self.grid.bounds

    @property
    def valid(self) -> np.ndarray:
        """Boolean array of cells holding data."""
        return np.isfinite(self.data)

    @classmethod
    def empty(cls, grid: GridSpec) -> "RasterData":
        """All-NoData raster on ``grid``."""
        return cls(
            data=np.full(grid.shape, np.nan, dtype=np.float64),
            transform=grid.transform,
            crs=grid.crs,
        )


# =============================================================================
# Raster I/O
# =============================================================================


def read_raster(path: str | Path, band: int = 1, masked: bool = True) -> RasterData:
    """
    Read a raster file into a RasterData container.

    Parameters
    ----------
    path : str or Path
        Path to the raster file.
    band : int
        Band number to read (1-indexed).
    masked : bool
        If True, mask nodata values with NaN.

    Returns
    -------
    RasterData
        Container with raster data (float64, NaN for nodata) and metadata.
    """
    path = Path(path)
    logger.debug(f"Reading raster: {path}")

    with rasterio.open(path) as src:
        data = src.read(band, masked=masked)
        nodata = src.nodata

        if masked and hasattr(data, "filled"):
            data = data.astype(np.float64).filled(np.nan)
        else:
            data = data.astype(np.float64)
            if nodata is not None:
                data[data == nodata] = np.nan

        return RasterData(
            data=data,
            transform=src.transform,
            crs=src.crs,
            nodata=nodata,
        )


def read_grid(path: str | Path) -> GridSpec:
    """Read only the grid geometry of a raster."""
    with rasterio.open(path) as src:
        return GridSpec(transform=src.transform, shape=(src.height, src.width), crs=src.crs)


def write_raster(
    path: str | Path,
    data: np.ndarray,
    transform: Affine,
    crs: CRS | str | None,
    nodata: float | None = -9999.0,
    dtype: str = "float32",
) -> None:
    """
    Write a numpy array to a GeoTIFF file.

    NaN cells are written as ``nodata``.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    logger.debug(f"Writing raster: {path}")

    if isinstance(crs, str):
        crs = CRS.from_string(crs)

    out = np.asarray(data, dtype=np.float64)
    if nodata is not None:
        out = np.where(np.isfinite(out), out, nodata)

    profile = {
        "driver": "GTiff",
        "dtype": dtype,
        "width": out.shape[1],
        "height": out.shape[0],
        "count": 1,
        "crs": crs,
        "transform": transform,
        "nodata": nodata,
        "compress": "lzw",
    }

    with rasterio.open(path, "w", **profile) as dst:
        dst.write(out.astype(dtype), 1)


# =============================================================================
# Grid Alignment
# =============================================================================


def _offset_cells(src: GridSpec, dst: GridSpec) -> tuple[int, int]:
    """Row/col offset of ``src`` origin within ``dst``, in whole cells."""
    xres, yres = dst.resolution
    col = (src.transform.c - dst.transform.c) / xres
    row = (dst.transform.f - src.transform.f) / yres
    if abs(col - round(col)) > ALIGN_TOL or abs(row - round(row)) > ALIGN_TOL:
        raise AlignmentError(
            f"Grid origin offset ({row:.4f}, {col:.4f}) is not a whole number of cells"
        )
    return int(round(row)), int(round(col))


def check_alignment(src: GridSpec, dst: GridSpec) -> tuple[int, int]:
    """
    Check that two grids share CRS, resolution and cell registration.

    Returns
    -------
    tuple[int, int]
        (row, col) offset of ``src``'s origin in ``dst``'s cell coordinates.

    Raises
    ------
    AlignmentError
        If the grids are not co-registered.
    """
    if src.crs is not None and dst.crs is not None and src.crs != dst.crs:
        raise AlignmentError(f"CRS mismatch: {src.crs} vs {dst.crs}")
    if (src.crs is None) != (dst.crs is None):
        raise AlignmentError("CRS mismatch: one grid has no CRS")

    if src.transform.b != 0 or src.transform.d != 0 or dst.transform.b != 0 or dst.transform.d != 0:
        raise AlignmentError("Rotated grids are not supported")

    for a, b in zip(src.resolution, dst.resolution):
        if abs(a - b) > ALIGN_TOL * max(a, b):
            raise AlignmentError(f"Resolution mismatch: {src.resolution} vs {dst.resolution}")

    return _offset_cells(src, dst)


def window_onto(raster: RasterData, grid: GridSpec) -> np.ndarray:
    """
    Copy an aligned raster onto ``grid``.

    Cells of ``grid`` not covered by ``raster`` are NaN.

    Raises
    ------
    AlignmentError
        If ``raster`` is not co-registered with ``grid``.
    """
    row_off, col_off = check_alignment(grid, raster.grid)
    out = np.full(grid.shape, np.nan, dtype=np.float64)

    # Overlap in raster coordinates
    r0, c0 = max(row_off, 0), max(col_off, 0)
    r1 = min(row_off + grid.height, raster.height)
    c1 = min(col_off + grid.width, raster.width)
    if r1 <= r0 or c1 <= c0:
        return out

    out[r0 - row_off:r1 - row_off, c0 - col_off:c1 - col_off] = raster.data[r0:r1, c0:c1]
    return out


def subgrid_for_bounds(
    grid: GridSpec,
    bounds: tuple[float, float, float, float],
) -> GridSpec:
    """
    Snap ``bounds`` outward to ``grid`` cells and return the covering sub-grid.

    The result is clipped to the extent of ``grid``.
    """
    left, bottom, right, top = bounds
    xres, yres = grid.resolution
    x0, y0 = grid.transform.c, grid.transform.f

    c0 = max(int(np.floor((left - x0) / xres + ALIGN_TOL)), 0)
    c1 = min(int(np.ceil((right - x0) / xres - ALIGN_TOL)), grid.width)
    r0 = max(int(np.floor((y0 - top) / yres + ALIGN_TOL)), 0)
    r1 = min(int(np.ceil((y0 - bottom) / yres - ALIGN_TOL)), grid.height)

    height, width = max(r1 - r0, 0), max(c1 - c0, 0)
    transform = from_origin(x0 + c0 * xres, y0 - r0 * yres, xres, yres)
    return GridSpec(transform=transform, shape=(height, width), crs=grid.crs)


def rasterize_geometries(
    geometries: Iterable[Any],
    grid: GridSpec,
    all_touched: bool = False,
) -> np.ndarray:
    """
    Rasterize geometries to a boolean coverage mask on ``grid``.

    Parameters
    ----------
    geometries : iterable
        Shapely geometries (or GeoJSON-like mappings) in the grid's CRS.
    grid : GridSpec
        Target grid.
    all_touched : bool
        Burn every cell touched by a geometry rather than cell centres.

    Returns
    -------
    np.ndarray
        Boolean array of shape ``grid.shape``.
    """
    shapes = [(geom, 1) for geom in geometries if geom is not None and not geom.is_empty]
    if not shapes or grid.height == 0 or grid.width == 0:
        return np.zeros(grid.shape, dtype=bool)

    burned = rasterize(
        shapes=shapes,
        out_shape=grid.shape,
        transform=grid.transform,
        fill=0,
        all_touched=all_touched,
        dtype="uint8",
    )
    return burned.astype(bool)


# =============================================================================
# Vector I/O
# =============================================================================


def read_vector(
    path: str | Path,
    target_crs: str | CRS | None = None,
) -> gpd.GeoDataFrame:
    """
    Read a vector file into a GeoDataFrame.

    Parameters
    ----------
    path : str or Path
        Path to vector file (shapefile, GeoJSON, etc.).
    target_crs : str or CRS, optional
        Target CRS to reproject to.

    Returns
    -------
    GeoDataFrame
        Vector data with geometries.
    """
    path = Path(path)
    logger.debug(f"Reading vector: {path}")

    gdf = gpd.read_file(path)

    if target_crs is not None:
        if gdf.crs is None:
            logger.warning(f"Vector has no CRS, assuming {target_crs}")
            gdf = gdf.set_crs(target_crs)
        else:
            gdf = gdf.to_crs(target_crs)

    return gdf


# =============================================================================
# CSV I/O
# =============================================================================


def write_csv(
    df: pd.DataFrame,
    path: str | Path,
    **kwargs: Any,
) -> None:
    """
    Write a DataFrame to CSV.

    Parameters
    ----------
    df : DataFrame
        Data to write.
    path : str or Path
        Output file path.
    **kwargs
        Additional arguments passed to df.to_csv.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    logger.debug(f"Writing CSV: {path}")

    kwargs.setdefault("index", False)
    df.to_csv(path, **kwargs)

"""
Tests for fire records, landscapes and their weighting.
"""

import geopandas as gpd
import numpy as np
import pytest

from pyrodiv.config import build_config
from pyrodiv.errors import ConfigurationError
from pyrodiv.fire_history import (
    FireHistory,
    FireRecord,
    Landscape,
    load_landscapes,
)
from pyrodiv.io import write_raster

from conftest import CRS_METRIC, cell_box, make_grid, uniform_fire


class TestFireRecord:
    """Tests for record validation."""

    def test_day_of_year_range(self, grid):
        with pytest.raises(ValueError):
            uniform_fire("X", 2000, 0, grid, 1.0, 0, 0, 1, 1)
        with pytest.raises(ValueError):
            uniform_fire("X", 2000, 367, grid, 1.0, 0, 0, 1, 1)

    def test_needs_severity(self):
        with pytest.raises(ValueError):
            FireRecord(fire_id="X", year=2000, day_of_year=100)

    def test_duplicate_ids(self, two_fires):
        with pytest.raises(ConfigurationError):
            FireHistory([two_fires[0], two_fires[0]])


class TestWeighting:
    """Tests for per-landscape selection and weights."""

    def test_weights_newest_first(self, config, landscape, two_fires):
        weighted = FireHistory(two_fires).weighted_for_landscape(landscape, config.weighting)

        assert [wr.fire_id for wr in weighted] == ["B", "A"]
        assert [wr.rank for wr in weighted] == [0, 1]
        assert [wr.weight for wr in weighted] == pytest.approx([1.0, 0.5])

    def test_ranks_are_per_landscape(self, config, grid, two_fires):
        # Only fire A reaches the west column, so it is the most recent there
        west = Landscape(landscape_id="W", grid=grid, boundary=cell_box(grid, 0, 0, 4, 1).buffer(-1.0))

        weighted = FireHistory(two_fires).weighted_for_landscape(west, config.weighting)

        assert [wr.fire_id for wr in weighted] == ["A"]
        assert weighted[0].weight == 1.0

    def test_window(self, config, landscape, two_fires):
        config.weighting.end_year = 2005
        weighted = FireHistory(two_fires).weighted_for_landscape(landscape, config.weighting)
        assert [wr.fire_id for wr in weighted] == ["A"]

    def test_none_intersect(self, config, two_fires):
        far = Landscape(landscape_id="far", grid=make_grid(x0=10_000.0))
        assert FireHistory(two_fires).weighted_for_landscape(far, config.weighting) == []

    def test_years_basis(self, config, landscape, two_fires):
        config.weighting.rank_basis = "years"
        weighted = FireHistory(two_fires).weighted_for_landscape(landscape, config.weighting)
        assert [wr.rank for wr in weighted] == [0, 10]
        assert weighted[1].weight == pytest.approx(0.5 ** 10)


class TestFromFiles:
    """Tests for ingestion from vector and raster files."""

    @pytest.fixture
    def inputs(self, tmp_path, grid):
        cbi = tmp_path / "cbi"
        data = np.full(grid.shape, np.nan)
        data[0:2, 0:3] = 2.0
        write_raster(cbi / "A_cbi.tif", data, grid.transform, grid.crs)

        perims = gpd.GeoDataFrame(
            {"Event_ID": ["A", "MISSING"], "Ig_Year": [2000, 2005], "Ig_DOY": [200, 150]},
            geometry=[cell_box(grid, 0, 0, 2, 3), cell_box(grid, 2, 0, 4, 4)],
            crs=CRS_METRIC.to_wkt(),
        )
        perims.to_file(tmp_path / "perims.gpkg", driver="GPKG")

        hucs = gpd.GeoDataFrame(
            {"HUC12": ["180100000001", "180100000002"]},
            geometry=[cell_box(grid, 0, 0, 4, 2), cell_box(grid, 0, 2, 4, 4)],
            crs=CRS_METRIC.to_wkt(),
        )
        hucs.to_file(tmp_path / "hucs.gpkg", driver="GPKG")

        return build_config({
            "weighting": {"decay_rate": 0.5},
            "landscapes": {"path": str(tmp_path / "hucs.gpkg")},
            "fire_history": {
                "perimeter_path": str(tmp_path / "perims.gpkg"),
                "severity_dir": str(cbi),
            },
        })

    def test_missing_raster_skipped(self, inputs, grid):
        history = FireHistory.from_files(inputs, target_crs=grid.crs)

        assert [r.fire_id for r in history] == ["A"]
        record = history.records[0]
        assert record.year == 2000
        assert record.day_of_year == 200
        assert np.nansum(record.load_severity().data) == pytest.approx(12.0)

    def test_missing_field(self, inputs, grid):
        inputs.fire_history.year_field = "FireYear"
        with pytest.raises(ConfigurationError):
            FireHistory.from_files(inputs, target_crs=grid.crs)

    def test_load_landscapes(self, inputs, grid):
        landscapes = load_landscapes(inputs, grid)

        assert [ls.landscape_id for ls in landscapes] == ["180100000001", "180100000002"]
        assert landscapes[0].grid.shape == (4, 2)
        assert landscapes[1].grid.transform.c == pytest.approx(200.0)

    def test_landscape_id_field(self, inputs, grid):
        inputs.landscapes.id_field = "HUC8"
        with pytest.raises(ConfigurationError):
            load_landscapes(inputs, grid)

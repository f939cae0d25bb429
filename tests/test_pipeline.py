"""
End-to-end tests for the pipeline module.
"""

import time

import numpy as np
import pandas as pd
import pytest

from pyrodiv.decay import decay_weight
from pyrodiv.errors import ConfigurationError
from pyrodiv.fire_history import FireHistory, Landscape, landscape_from_grid
from pyrodiv.io import RasterData, read_raster, write_raster
from pyrodiv.pipeline import (
    load_landscape_mask,
    map_with_timeout,
    process_landscape,
    run_pyrodiversity,
    write_results,
    write_trait_surfaces,
)
from pyrodiv.traits import TraitStack, build_trait_surfaces

from conftest import make_grid

# Gower distances between the three trait classes of the two-fire scenario
SCENARIO_D = np.array([
    [0.0, 0.25, 0.4375],
    [0.25, 0.0, 0.3125],
    [0.4375, 0.3125, 0.0],
])


def scenario_fdis():
    w = np.array([2.0, 2.0, 4.0]) / 8.0
    d2 = SCENARIO_D ** 2
    z2 = d2 @ w - 0.5 * w @ d2 @ w
    return float(w @ np.sqrt(z2))


class TestProcessLandscape:
    """Tests for the single-landscape pipeline."""

    def test_two_fire_scenario(self, config, landscape, two_fires):
        history = FireHistory(two_fires)

        result = process_landscape(landscape, history, config)

        assert result.status == "ok"
        assert result.n_fires == 2
        assert result.n_valid_pixels == 8
        assert result.richness == 3
        assert result.fdis == pytest.approx(scenario_fdis(), abs=1e-6)

    def test_surfaces_written(self, config, landscape, two_fires):
        process_landscape(landscape, FireHistory(two_fires), config)

        out = config.project.output_dir / "surfaces"
        for prefix in ("freq", "seas", "sev", "patch"):
            assert (out / f"{prefix}_L1.tif").exists()

        freq = read_raster(out / "freq_L1.tif")
        assert np.allclose(freq.data[0:2, 0], 0.5)
        assert np.allclose(freq.data[0:2, 1:3], 1.5)
        assert np.allclose(freq.data[0:2, 3], 1.0)
        assert np.all(np.isnan(freq.data[2:, :]))

    def test_surfaces_not_written(self, config, landscape, two_fires):
        config.output.write_surfaces = False
        process_landscape(landscape, FireHistory(two_fires), config)
        assert not (config.project.output_dir / "surfaces").exists()

    def test_only_latest_fire(self, config, landscape, two_fires):
        config.weighting.decay_rate = 0.0

        result = process_landscape(landscape, FireHistory(two_fires), config)

        # Fire B alone: one class over 6 cells
        assert result.status == "degenerate"
        assert result.fdis == 0.0
        assert result.n_fires == 1
        assert result.n_valid_pixels == 6

    def test_window_excludes_old_fire(self, config, landscape, two_fires):
        config.weighting.start_year = 2005
        result = process_landscape(landscape, FireHistory(two_fires), config)
        assert result.n_fires == 1

    def test_no_fires(self, config, landscape):
        result = process_landscape(landscape, FireHistory([]), config)
        assert result.fdis is None
        assert result.status == "no_data"

    def test_mask_applied(self, config, grid, two_fires):
        mask = np.ones(grid.shape)
        mask[:, 0] = 0
        landscape = landscape_from_grid("L1", grid, mask=mask)

        result = process_landscape(landscape, FireHistory(two_fires), config)

        assert result.n_valid_pixels == 6
        assert result.richness == 2

    def test_misaligned_mask_ignored(self, config, grid, two_fires):
        shifted = make_grid(4, 4, x0=50.0)
        landscape = Landscape(
            landscape_id="L1",
            grid=grid,
            mask=landscape_from_grid("M", shifted, mask=np.zeros(grid.shape)).mask,
        )

        assert load_landscape_mask(landscape) is None
        result = process_landscape(landscape, FireHistory(two_fires), config)
        assert result.n_valid_pixels == 8

    def test_mask_from_file(self, tmp_path, grid):
        path = tmp_path / "mask_L1.tif"
        write_raster(path, np.ones(grid.shape), grid.transform, grid.crs)
        landscape = Landscape(landscape_id="L1", grid=grid, mask_path=path)

        mask = load_landscape_mask(landscape)

        assert mask is not None
        assert np.all(mask.data == 1)

    def test_year_end_seasonality_single_class(self, config, monkeypatch):
        grid = make_grid(1, 2)
        ones = np.ones(grid.shape)

        def year_end(landscape, *args, **kwargs):
            data = {trait: ones for trait in ("frequency", "severity", "patch_size")}
            data["seasonality"] = np.array([[359.97, 0.0]])
            surfaces = {
                trait: RasterData(data=values, transform=grid.transform, crs=grid.crs)
                for trait, values in data.items()
            }
            return TraitStack(landscape_id=landscape.landscape_id, surfaces=surfaces, n_fires=2)

        monkeypatch.setattr("pyrodiv.pipeline.build_trait_surfaces", year_end)
        config.output.write_surfaces = False

        result = process_landscape(landscape_from_grid("Y", grid), FireHistory([]), config)

        assert result.richness == 1
        assert result.fdis == 0.0


class TestRunPyrodiversity:
    """Tests for multi-landscape execution."""

    def _landscapes(self):
        west = landscape_from_grid("W", make_grid(4, 2))
        east = landscape_from_grid("E", make_grid(4, 2, x0=200.0))
        south = landscape_from_grid("S", make_grid(2, 4, y0=200.0))
        return [west, east, south]

    def test_results_in_input_order(self, config, two_fires):
        results = run_pyrodiversity(config, FireHistory(two_fires), self._landscapes())

        assert [r.landscape_id for r in results] == ["W", "E", "S"]
        assert results[2].fdis is None

    def test_failure_isolated(self, config, two_fires, monkeypatch):
        def flaky(landscape, *args, **kwargs):
            if landscape.landscape_id == "E":
                raise RuntimeError("boom")
            return build_trait_surfaces(landscape, *args, **kwargs)

        monkeypatch.setattr("pyrodiv.pipeline.build_trait_surfaces", flaky)

        results = run_pyrodiversity(config, FireHistory(two_fires), self._landscapes())

        assert results[1].status == "failed"
        assert results[1].fdis is None
        assert results[0].status != "failed"

    def test_configuration_error_aborts(self, config, two_fires, monkeypatch):
        def bad(*args, **kwargs):
            raise ConfigurationError("bad breaks")

        monkeypatch.setattr("pyrodiv.pipeline.build_trait_surfaces", bad)

        with pytest.raises(ConfigurationError):
            run_pyrodiversity(config, FireHistory(two_fires), self._landscapes())

    def test_process_pool_matches_serial(self, config, two_fires):
        serial = run_pyrodiversity(config, FireHistory(two_fires), self._landscapes())

        config.processing.n_workers = 2
        parallel = run_pyrodiversity(config, FireHistory(two_fires), self._landscapes())

        assert [r.to_dict() for r in parallel] == [r.to_dict() for r in serial]

    def test_timeout_runs_on_pool(self, config, two_fires):
        serial = run_pyrodiversity(config, FireHistory(two_fires), self._landscapes())

        config.processing.landscape_timeout = 60.0
        pooled = run_pyrodiversity(config, FireHistory(two_fires), self._landscapes())

        assert [r.to_dict() for r in pooled] == [r.to_dict() for r in serial]


class TestMapWithTimeout:
    """Tests for pooled tasks with per-task deadlines."""

    def test_overrun_does_not_hold_the_run(self):
        start = time.monotonic()

        outcomes = map_with_timeout(
            time.sleep, [(30,), (0,)], ["slow", "fast"], n_workers=2, timeout=0.5
        )

        assert [o.status for o in outcomes] == ["timeout", "ok"]
        assert time.monotonic() - start < 10.0

    def test_pending_tasks_resubmitted(self):
        start = time.monotonic()

        outcomes = map_with_timeout(
            time.sleep, [(30,), (0,), (0,)], ["slow", "a", "b"], n_workers=1, timeout=1.0
        )

        assert [o.status for o in outcomes] == ["timeout", "ok", "ok"]
        assert time.monotonic() - start < 15.0

    def test_deadline_is_per_task(self):
        # Three one-second tasks on one worker fit a two-second deadline each
        outcomes = map_with_timeout(
            time.sleep, [(1,), (1,), (1,)], ["a", "b", "c"], n_workers=1, timeout=2.0
        )
        assert [o.status for o in outcomes] == ["ok", "ok", "ok"]

    def test_values_and_failures(self):
        outcomes = map_with_timeout(int, [("x",), ("7",)], ["bad", "good"], n_workers=2)

        assert outcomes[0].status == "failed"
        assert outcomes[1].status == "ok"
        assert outcomes[1].value == 7

    def test_configuration_error_raised(self):
        with pytest.raises(ConfigurationError):
            map_with_timeout(decay_weight, [(0.5, -1)], ["bad"], n_workers=1, timeout=5.0)


class TestWriteResults:
    """Tests for tabular output."""

    def test_csv(self, config, landscape, two_fires):
        results = run_pyrodiversity(config, FireHistory(two_fires), [landscape])

        path = write_results(results, config)
        df = pd.read_csv(path)

        assert path.name == "pyrodiversity.csv"
        assert df["landscape_id"].astype(str).tolist() == ["L1"]
        assert df["fdis"].iloc[0] == pytest.approx(scenario_fdis(), abs=1e-6)
        assert df["status"].iloc[0] == "ok"

    def test_surfaces_custom_prefix(self, config, landscape, two_fires):
        config.output.trait_prefixes["frequency"] = "frq"
        stack = build_trait_surfaces(landscape, FireHistory(two_fires).weighted_for_landscape(
            landscape, config.weighting
        ))

        paths = write_trait_surfaces(stack, config)

        assert paths[0].name == "frq_L1.tif"

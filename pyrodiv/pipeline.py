"""
Pyrodiversity pipeline orchestration.

This module provides the main entry points for computing pyrodiversity,
coordinating fire selection and weighting, trait surface construction,
quantization and aggregation for every landscape.

Landscapes are independent: each is one task, run serially or on a
process pool. A failure in one landscape is logged and recorded in its
result without affecting the others; configuration errors abort the run.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

import pandas as pd
from rasterio.errors import RasterioIOError

from pyrodiv.config import TRAITS, PyrodivConfig, load_config, setup_logging, validate_paths
from pyrodiv.dispersion import PyrodiversityResult, compute_pyrodiversity, results_to_dataframe
from pyrodiv.errors import AlignmentError, ConfigurationError, MissingDataWarning, log_warning
from pyrodiv.fire_history import FireHistory, Landscape, load_landscapes
from pyrodiv.io import RasterData, check_alignment, read_grid, write_csv, write_raster
from pyrodiv.quantize import quantize_surfaces
from pyrodiv.traits import TraitSettings, TraitStack, build_trait_surfaces

logger = logging.getLogger(__name__)


# =============================================================================
# Single Landscape
# =============================================================================


def load_landscape_mask(landscape: Landscape) -> RasterData | None:
    """
    Load a landscape's flammability mask, or None.

    A mask that cannot be read or is not on the landscape grid is ignored
    with a warning.
    """
    lid = landscape.landscape_id
    try:
        mask = landscape.load_mask()
    except (RasterioIOError, OSError) as e:
        log_warning(logger, MissingDataWarning, f"Landscape {lid}: mask unreadable, ignored: {e}")
        return None
    if mask is None:
        return None

    try:
        offset = check_alignment(mask.grid, landscape.grid)
        if offset != (0, 0) or mask.shape != landscape.grid.shape:
            raise AlignmentError(f"mask extent {mask.shape} at offset {offset}")
    except AlignmentError as e:
        logger.warning(f"Landscape {lid}: mask not on the landscape grid, ignored: {e}")
        return None
    return mask


def write_trait_surfaces(stack: TraitStack, config: PyrodivConfig) -> list[Path]:
    """Write one GeoTIFF per trait named ``{trait_prefix}_{landscape_id}.tif``."""
    out_dir = Path(config.project.output_dir) / "surfaces"
    paths = []
    for trait in TRAITS:
        raster = stack[trait]
        path = out_dir / f"{config.surface_name(trait, stack.landscape_id)}.tif"
        write_raster(path, raster.data, raster.transform, raster.crs, nodata=config.output.nodata)
        paths.append(path)
    return paths


def process_landscape(
    landscape: Landscape,
    fire_history: FireHistory,
    config: PyrodivConfig,
) -> PyrodiversityResult:
    """
    Run the full pipeline for one landscape.

    Steps: select and weight fires, build trait surfaces, optionally write
    them, quantize, and aggregate into a :class:`PyrodiversityResult`.
    """
    lid = landscape.landscape_id
    logger.info(f"Landscape {lid}: processing")

    weighted = fire_history.weighted_for_landscape(landscape, config.weighting)
    stack = build_trait_surfaces(
        landscape,
        weighted,
        settings=TraitSettings.from_config(config),
        record_workers=config.processing.record_workers,
    )

    if config.output.write_surfaces:
        write_trait_surfaces(stack, config)

    quantized = quantize_surfaces(
        stack.surfaces,
        config.quantization.increments,
        seasonality_period=config.seasonality.period,
    )
    mask = load_landscape_mask(landscape)

    return compute_pyrodiversity(lid, quantized, mask=mask, n_fires=stack.n_fires)


def _failed(landscape_id: str, status: str = "failed") -> PyrodiversityResult:
    return PyrodiversityResult(landscape_id=landscape_id, fdis=None, status=status)


# =============================================================================
# Process Pool
# =============================================================================

# Seconds between deadline checks while tasks run
POLL_INTERVAL = 0.05


@dataclass
class TaskOutcome:
    """Outcome of one pooled task: ``"ok"``, ``"failed"`` or ``"timeout"``."""

    status: str
    value: Any = None


def _terminate(executor: ProcessPoolExecutor) -> None:
    """Shut the pool down without waiting, stopping workers still running."""
    processes = list((executor._processes or {}).values())
    for process in processes:
        if process.is_alive():
            process.terminate()
    for process in processes:
        process.join(timeout=5)
    executor.shutdown(wait=False, cancel_futures=True)


def map_with_timeout(
    fn: Callable[..., Any],
    tasks: Sequence[tuple],
    labels: Sequence[str],
    n_workers: int,
    timeout: float | None = None,
) -> list[TaskOutcome]:
    """
    Run ``fn(*task)`` for every task on a process pool.

    Each task gets its own deadline of ``timeout`` seconds, counted from
    when it starts on a worker. When a task overruns, the pool is torn
    down, its worker processes are terminated, and the tasks still pending
    are resubmitted to a fresh pool.

    Parameters
    ----------
    fn : callable
        Picklable task function.
    tasks : sequence of tuple
        Positional arguments per task.
    labels : sequence of str
        Identifier per task, used in log messages.
    n_workers : int
        Worker processes.
    timeout : float, optional
        Seconds allowed per task; unbounded if None.

    Returns
    -------
    list[TaskOutcome]
        One outcome per task, in input order.

    Raises
    ------
    ConfigurationError
        Raised by any task; the pool is terminated first.
    """
    outcomes: dict[int, TaskOutcome] = {}
    remaining = list(range(len(tasks)))

    while remaining:
        executor = ProcessPoolExecutor(max_workers=n_workers)
        order = [executor.submit(fn, *tasks[i]) for i in remaining]
        index = dict(zip(order, remaining))
        started: dict[Future, float] = {}
        pending = set(order)
        expired: list[Future] = []

        try:
            while pending and not expired:
                done, pending = wait(
                    pending,
                    timeout=None if timeout is None else POLL_INTERVAL,
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    i = index[future]
                    try:
                        outcomes[i] = TaskOutcome("ok", future.result())
                    except ConfigurationError:
                        raise
                    except Exception:
                        logger.exception(f"{labels[i]}: failed")
                        outcomes[i] = TaskOutcome("failed")

                if timeout is not None:
                    now = time.monotonic()
                    # Work is handed to workers in submission order, so the
                    # first n_workers running futures are the executing ones
                    executing = [f for f in order if f in pending and f.running()][:n_workers]
                    for future in executing:
                        started.setdefault(future, now)
                    expired = [f for f in executing if now - started[f] > timeout]
        except BaseException:
            _terminate(executor)
            raise

        if not expired:
            executor.shutdown()
            break

        for future in expired:
            i = index[future]
            logger.error(f"{labels[i]}: timed out after {timeout} s")
            outcomes[i] = TaskOutcome("timeout")
        _terminate(executor)
        remaining = [index[f] for f in order if f in pending and f not in expired]
        if remaining:
            logger.info(f"Restarting pool for {len(remaining)} pending task(s)")

    return [outcomes[i] for i in range(len(tasks))]


# =============================================================================
# All Landscapes
# =============================================================================


def run_pyrodiversity(
    config: PyrodivConfig,
    fire_history: FireHistory,
    landscapes: Sequence[Landscape],
) -> list[PyrodiversityResult]:
    """
    Compute pyrodiversity for every landscape.

    Landscapes run serially when ``processing.n_workers`` is 1 and no
    ``landscape_timeout`` is set; otherwise each landscape is a task on a
    process pool with its own deadline (see :func:`map_with_timeout`).
    A landscape that overruns gets ``status="timeout"``.

    Parameters
    ----------
    config : PyrodivConfig
        Run configuration.
    fire_history : FireHistory
        Fire records of the region.
    landscapes : sequence of Landscape
        Landscape units.

    Returns
    -------
    list[PyrodiversityResult]
        One result per landscape, in input order.

    Raises
    ------
    ConfigurationError
        Raised by any landscape; aborts the run.
    """
    n_workers = config.processing.n_workers
    timeout = config.processing.landscape_timeout
    logger.info(f"Computing pyrodiversity for {len(landscapes)} landscape(s), {n_workers} worker(s)")

    if timeout is None and (n_workers <= 1 or len(landscapes) <= 1):
        results = []
        for landscape in landscapes:
            try:
                results.append(process_landscape(landscape, fire_history, config))
            except ConfigurationError:
                raise
            except Exception:
                logger.exception(f"Landscape {landscape.landscape_id}: failed")
                results.append(_failed(landscape.landscape_id))
        return results

    outcomes = map_with_timeout(
        process_landscape,
        [(landscape, fire_history, config) for landscape in landscapes],
        [f"Landscape {landscape.landscape_id}" for landscape in landscapes],
        n_workers=n_workers,
        timeout=timeout,
    )
    return [
        outcome.value if outcome.status == "ok" else _failed(landscape.landscape_id, outcome.status)
        for landscape, outcome in zip(landscapes, outcomes)
    ]


def write_results(results: Sequence[PyrodiversityResult], config: PyrodivConfig) -> Path:
    """Write results to ``{output_dir}/{results_filename}``."""
    path = Path(config.project.output_dir) / config.output.results_filename
    write_csv(results_to_dataframe(results), path)
    logger.info(f"Results written to {path}")
    return path


def run_from_config(config_path: str | Path) -> pd.DataFrame:
    """
    Load a configuration file and run the whole workflow from files.

    Returns
    -------
    DataFrame
        One row per landscape.
    """
    config = load_config(config_path)
    setup_logging(config)

    for warning in validate_paths(config):
        logger.warning(warning)

    grid = read_grid(config.landscapes.grid_path)
    landscapes = load_landscapes(config, grid)
    fire_history = FireHistory.from_files(config, target_crs=grid.crs)

    results = run_pyrodiversity(config, fire_history, landscapes)
    write_results(results, config)

    n_defined = sum(r.defined for r in results)
    logger.info(f"Done: {n_defined}/{len(results)} landscape(s) with defined pyrodiversity")
    return results_to_dataframe(results)

"""
Configuration loading and validation for Pyrodiv.

This module provides Pydantic models for validating the pyrodiv.yaml
configuration file and utility functions for loading configurations.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from pyrodiv.errors import ConfigurationError

logger = logging.getLogger(__name__)


TRAITS: tuple[str, ...] = ("frequency", "seasonality", "severity", "patch_size")

DEFAULT_INCREMENTS: dict[str, float] = {
    "frequency": 1.0,
    "seasonality": 0.1,
    "severity": 0.5,
    "patch_size": 1.0,
}

DEFAULT_PREFIXES: dict[str, str] = {
    "frequency": "freq",
    "seasonality": "seas",
    "severity": "sev",
    "patch_size": "patch",
}


# =============================================================================
# Configuration Models
# =============================================================================


class ProjectConfig(BaseModel):
    """Project metadata configuration."""

    name: str = Field("pyrodiversity", description="Project name")
    description: str = Field("", description="Project description")
    output_dir: Path = Field(Path("./output"), description="Output directory")


class WeightingConfig(BaseModel):
    """Recency decay weighting and temporal window."""

    decay_rate: float = Field(..., description="Per-rank multiplicative discount in [0, 1)")
    start_year: int | None = Field(None, description="First fire year considered")
    end_year: int | None = Field(None, description="Last fire year considered (recency reference)")
    rank_basis: Literal["ordinal", "years"] = Field(
        "ordinal",
        description="'ordinal' ranks distinct fire events; 'years' uses age in years",
    )

    @field_validator("decay_rate")
    @classmethod
    def check_rate(cls, v: float) -> float:
        if not 0.0 <= v < 1.0:
            raise ValueError(f"decay_rate must be in [0, 1), got {v}")
        return v

    @model_validator(mode="after")
    def check_window(self) -> "WeightingConfig":
        """Validate that the temporal window is ordered."""
        if self.start_year is not None and self.end_year is not None:
            if self.start_year > self.end_year:
                raise ValueError(
                    f"start_year ({self.start_year}) is after end_year ({self.end_year})"
                )
        return self


class SeverityConfig(BaseModel):
    """Severity classification scheme (CBI breaks)."""

    class_breaks: list[float] = Field(
        default_factory=lambda: [0.1, 1.25, 2.25],
        description="Upper bounds of unchanged, low and moderate CBI classes",
    )

    @field_validator("class_breaks")
    @classmethod
    def check_breaks(cls, v: list[float]) -> list[float]:
        if not v:
            raise ValueError("class_breaks must not be empty")
        if any(hi <= lo for lo, hi in zip(v, v[1:])):
            raise ValueError(f"class_breaks must be strictly increasing: {v}")
        return v


class PatchConfig(BaseModel):
    """Patch segmentation configuration."""

    connectivity: Literal[4, 8] = Field(8, description="Pixel connectivity for patches")
    area_transform: Literal["log", "log10", "none"] = Field(
        "log", description="Transform applied to patch area in hectares"
    )


class SeasonalityConfig(BaseModel):
    """Circular averaging of ignition day-of-year."""

    period: float = Field(360.0, gt=0, description="Length of the seasonal cycle in days")


class QuantizationConfig(BaseModel):
    """Per-trait rounding increments."""

    increments: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_INCREMENTS))

    @field_validator("increments")
    @classmethod
    def check_increments(cls, v: dict[str, float]) -> dict[str, float]:
        unknown = set(v) - set(TRAITS)
        if unknown:
            raise ValueError(f"Unknown traits in increments: {sorted(unknown)}")
        for trait, inc in v.items():
            if inc <= 0:
                raise ValueError(f"Quantization increment for {trait} must be > 0, got {inc}")
        merged = dict(DEFAULT_INCREMENTS)
        merged.update(v)
        return merged


class LandscapeConfig(BaseModel):
    """Landscape boundary input configuration."""

    path: Path | None = Field(None, description="Boundary vector file (e.g. watersheds)")
    id_field: str = Field("HUC12", description="Unique identifier field name")
    grid_path: Path | None = Field(None, description="Reference raster defining the common grid")
    mask_dir: Path | None = Field(None, description="Directory of flammability masks")
    mask_pattern: str = Field("mask_{landscape_id}.tif", description="Mask filename pattern")


class FireHistoryConfig(BaseModel):
    """Fire record input configuration."""

    perimeter_path: Path | None = Field(None, description="Fire perimeter vector file")
    id_field: str = Field("Event_ID", description="Fire identifier field")
    year_field: str = Field("Ig_Year", description="Ignition year field")
    doy_field: str = Field("Ig_DOY", description="Ignition day-of-year field")
    severity_dir: Path | None = Field(None, description="Directory of per-fire severity rasters")
    severity_pattern: str = Field("{fire_id}_cbi.tif", description="Severity filename pattern")


class OutputConfig(BaseModel):
    """Output configuration."""

    write_surfaces: bool = Field(True)
    trait_prefixes: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_PREFIXES))
    nodata: float = Field(-9999.0, description="NoData sentinel written to rasters")
    results_filename: str = Field("pyrodiversity.csv")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field("INFO")
    log_file: Path | None = Field(None)

    @field_validator("trait_prefixes")
    @classmethod
    def fill_prefixes(cls, v: dict[str, str]) -> dict[str, str]:
        merged = dict(DEFAULT_PREFIXES)
        merged.update(v)
        return merged


class ProcessingConfig(BaseModel):
    """Parallel execution configuration."""

    n_workers: int = Field(1, ge=1, description="Processes, one landscape per task")
    record_workers: int = Field(1, ge=1, description="Threads for per-record preparation")
    landscape_timeout: float | None = Field(None, gt=0, description="Seconds per landscape")


class PyrodivConfig(BaseModel):
    """Root configuration model for Pyrodiv."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    weighting: WeightingConfig
    severity: SeverityConfig = Field(default_factory=SeverityConfig)
    patches: PatchConfig = Field(default_factory=PatchConfig)
    seasonality: SeasonalityConfig = Field(default_factory=SeasonalityConfig)
    quantization: QuantizationConfig = Field(default_factory=QuantizationConfig)
    landscapes: LandscapeConfig = Field(default_factory=LandscapeConfig)
    fire_history: FireHistoryConfig = Field(default_factory=FireHistoryConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)

    @field_validator("project", mode="before")
    @classmethod
    def ensure_output_dir(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Ensure output_dir is a Path."""
        if isinstance(v, dict) and "output_dir" in v:
            v["output_dir"] = Path(v["output_dir"])
        return v

    def surface_name(self, trait: str, landscape_id: str) -> str:
        """Return the output identifier ``{trait_prefix}_{landscape_id}``."""
        return f"{self.output.trait_prefixes[trait]}_{landscape_id}"


# =============================================================================
# Loading Functions
# =============================================================================


def build_config(raw_config: dict[str, Any]) -> PyrodivConfig:
    """
    Validate a configuration mapping.

    Raises
    ------
    ConfigurationError
        If the mapping fails validation.
    """
    try:
        return PyrodivConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e


def load_config(config_path: str | Path) -> PyrodivConfig:
    """
    Load and validate configuration from a YAML file.

    Parameters
    ----------
    config_path : str or Path
        Path to the pyrodiv.yaml configuration file.

    Returns
    -------
    PyrodivConfig
        Validated configuration object.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    ConfigurationError
        If the configuration is invalid.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    with open(config_path, "r") as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        raise ConfigurationError(f"Empty configuration file: {config_path}")

    # Resolve relative paths relative to config file location
    raw_config = _resolve_paths(raw_config, config_path.parent)

    config = build_config(raw_config)

    logger.info(f"Configuration loaded: {config.project.name}")

    return config


def _resolve_paths(config: dict[str, Any], base_dir: Path) -> dict[str, Any]:
    """
    Recursively resolve relative paths in configuration.

    Only strings starting with ``./`` or ``../`` are treated as paths.
    """

    def resolve(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: resolve(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [resolve(item) for item in obj]
        elif isinstance(obj, str):
            if obj.startswith("./") or obj.startswith("../"):
                return str(base_dir / obj)
            return obj
        return obj

    return resolve(config)


def validate_paths(config: PyrodivConfig) -> list[str]:
    """
    Validate that configured input files exist.

    Returns
    -------
    list[str]
        List of validation warnings (empty if all paths valid).

    Raises
    ------
    FileNotFoundError
        If required files are missing.
    """
    errors = []
    warnings = []

    required = [
        ("landscapes.path", config.landscapes.path),
        ("landscapes.grid_path", config.landscapes.grid_path),
        ("fire_history.perimeter_path", config.fire_history.perimeter_path),
        ("fire_history.severity_dir", config.fire_history.severity_dir),
    ]
    for name, path in required:
        if path is None:
            errors.append(f"Required path not set: {name}")
        elif not Path(path).exists():
            errors.append(f"Required file not found: {name} = {path}")

    mask_dir = config.landscapes.mask_dir
    if mask_dir is not None and not Path(mask_dir).exists():
        warnings.append(f"Mask directory not found, masks disabled: {mask_dir}")

    if errors:
        raise FileNotFoundError("\n".join(errors))

    return warnings


def setup_logging(config: PyrodivConfig) -> None:
    """
    Configure logging based on configuration.

    Parameters
    ----------
    config : PyrodivConfig
        Configuration object.
    """
    level = getattr(logging, config.output.log_level)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if config.output.log_file:
        log_path = Path(config.output.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

"""
Pyrodiv: Pyrodiversity from Fire-History Trait Surfaces
=======================================================

Quantifies pyrodiversity, the heterogeneity of historical fire effects
across a landscape, following the "invisible mosaic" principle: the
present-day fire-effects pattern is dominated by recent fires, with older
fires' influence decaying geometrically with recency.

The system integrates:
- Recency decay weighting of overlapping fire records
- Severity patch segmentation (connected components per CBI class)
- Frequency, seasonality, severity and patch-size trait surfaces
- Precision quantization of trait values into trait classes
- Functional dispersion (Gower distance, PCoA, weighted centroid)

Modules
-------
config : Configuration loading and validation
errors : Error and warning taxonomy
io : Raster and vector I/O, grid alignment
decay : Recency ranks and decay weights
fire_history : Fire records, landscapes and their selection
patches : Severity patch segmentation
traits : Trait surface builders
quantize : Trait quantization
dispersion : Trait classes and functional dispersion
pipeline : Per-landscape orchestration and parallel execution

References
----------
- Laliberte, E. and Legendre, P. (2010). A distance-based framework for
  measuring functional diversity from multiple traits. Ecology 91: 299-305.
- Steel, Z.L. et al. (2021). Quantifying pyrodiversity and its drivers.
  Proceedings of the Royal Society B 288: 20203202.
"""

__version__ = "0.1.0"

from pyrodiv.config import (
    TRAITS,
    PyrodivConfig,
    WeightingConfig,
    build_config,
    load_config,
    setup_logging,
)
from pyrodiv.decay import decay_weight, decay_weights, recency_ranks
from pyrodiv.dispersion import (
    PyrodiversityResult,
    compute_pyrodiversity,
    functional_dispersion,
    gower_distance,
    pcoa,
)
from pyrodiv.errors import (
    AlignmentError,
    ConfigurationError,
    DegenerateInputWarning,
    MissingDataWarning,
    PyrodivError,
)
from pyrodiv.fire_history import FireHistory, FireRecord, Landscape, WeightedRecord
from pyrodiv.io import GridSpec, RasterData
from pyrodiv.patches import classify_severity, label_patches, patch_size_surface
from pyrodiv.pipeline import process_landscape, run_from_config, run_pyrodiversity
from pyrodiv.quantize import quantize, quantize_surfaces
from pyrodiv.traits import TraitSettings, TraitSurfaceBuilder, build_trait_surfaces

__all__ = [
    "__version__",
    "TRAITS",
    "PyrodivConfig",
    "WeightingConfig",
    "build_config",
    "load_config",
    "setup_logging",
    "decay_weight",
    "decay_weights",
    "recency_ranks",
    "PyrodiversityResult",
    "compute_pyrodiversity",
    "functional_dispersion",
    "gower_distance",
    "pcoa",
    "AlignmentError",
    "ConfigurationError",
    "DegenerateInputWarning",
    "MissingDataWarning",
    "PyrodivError",
    "FireHistory",
    "FireRecord",
    "Landscape",
    "WeightedRecord",
    "GridSpec",
    "RasterData",
    "classify_severity",
    "label_patches",
    "patch_size_surface",
    "process_landscape",
    "run_from_config",
    "run_pyrodiversity",
    "quantize",
    "quantize_surfaces",
    "TraitSettings",
    "TraitSurfaceBuilder",
    "build_trait_surfaces",
]

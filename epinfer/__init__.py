"""
Simulation-based inference for stochastic compartmental epidemic models.

Subpackages
-----------
- models: process (SIR/SEIR) and measurement models, parameter transforms
- filters: particle filter, resampling, iterated filtering (IF2)
- inference: multi-start search and MCAP profile-likelihood intervals
- data: observation series, scenarios and synthetic data
- utils: run context, logging, caching, worker pool, linear algebra
"""

from epinfer.exceptions import (
    EpinferError,
    FilterCollapse,
    InvalidTransform,
    DegenerateProfile,
    SearchFailed,
)

__version__ = "0.1.0"

__all__ = [
    "EpinferError",
    "FilterCollapse",
    "InvalidTransform",
    "DegenerateProfile",
    "SearchFailed",
    "__version__",
]

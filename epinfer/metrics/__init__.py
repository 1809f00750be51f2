"""
Particle filter diagnostics and likelihood reductions.

This package provides:
- Weight degeneracy: ESS, weight entropy
- Replicate reduction: log-mean-exp with standard error
"""

from __future__ import annotations

from epinfer.metrics.particle_filter_metrics import (
    normalize_log_weights,
    compute_effective_sample_size,
    compute_weight_entropy,
    logmeanexp,
)

__all__ = [
    "normalize_log_weights",
    "compute_effective_sample_size",
    "compute_weight_entropy",
    "logmeanexp",
]

"""
Run configuration and random substream derivation.

A RunContext travels from the search controller through the iterated filter
down to the particle filter. It carries every tuning knob plus the root seed
from which all worker-local random generators are derived.
"""

from __future__ import annotations

import dataclasses
import math
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple

import tensorflow as tf


# Smallest log-weight that still maps to a nonzero float64 weight
UNDERFLOW_LOG_WEIGHT = math.log(sys.float_info.min)

# Purpose tags keep substreams of different pipeline stages disjoint
PURPOSE_SEARCH = 1
PURPOSE_LOCAL = 2
PURPOSE_PROFILE = 3
PURPOSE_DESIGN = 4
PURPOSE_SIMULATION = 5


@dataclass(frozen=True)
class RunContext:
    """
    Immutable configuration for one inference run.

    Parameters
    ----------
    seed : int
        Root seed. Every random stream in a run is derived from it.
    num_particles : int
        Particles per filtering pass.
    dt : float
        Euler sub-step size of the process model.
    num_iterations : int
        IF2 iterations of the main (search) pass.
    cooling_fraction : float
        Fraction of the random-walk sd left after ``cooling_horizon`` iterations.
    cooling_horizon : int
        Iteration count over which ``cooling_fraction`` is reached.
    rw_sd : dict
        Random-walk sd per free parameter, on the estimation scale.
    ivp_names : tuple of str
        Initial-value parameters, perturbed only at the start of a pass.
    num_replicates : int
        Replicate filter passes used to evaluate a converged point.
    max_workers : int
        Worker threads; 1 runs tasks sequentially in the calling thread.
    resample_method : str
        'systematic', 'multinomial', 'stratified' or 'residual'.
    resample_threshold : float
        Resample when ESS < threshold * N. 1.0 resamples every step.
    min_log_weight : float
        Log-weights below this count as underflowed.
    refine_iterations : int
        IF2 iterations of the profile refinement pass.
    refine_cooling_fraction : float
        Cooling fraction of the profile refinement pass.
    profdes_len : int
        Grid values per profiled parameter.
    nprof : int
        Starts per profile grid value.
    near_optimal_window : float
        Log-likelihood units below the best that still count as near optimal.
    min_profile_points : int
        Minimum collapsed profile points required for MCAP.
    mcap_lambda : float
        Loess span and quadratic-neighbourhood quantile.
    mcap_n_grid : int
        Fine grid size for the smoothed profile.
    confidence : float
        Confidence level of the intervals.
    """

    seed: int = 42
    num_particles: int = 1000
    dt: float = 0.1
    num_iterations: int = 50
    cooling_fraction: float = 0.5
    cooling_horizon: int = 50
    rw_sd: Mapping[str, float] = field(default_factory=dict)
    ivp_names: Tuple[str, ...] = ()
    num_replicates: int = 10
    max_workers: int = 1
    resample_method: str = "systematic"
    resample_threshold: float = 1.0
    min_log_weight: float = UNDERFLOW_LOG_WEIGHT
    refine_iterations: int = 20
    refine_cooling_fraction: float = 0.1
    profdes_len: int = 20
    nprof: int = 2
    near_optimal_window: float = 20.0
    min_profile_points: int = 8
    mcap_lambda: float = 0.75
    mcap_n_grid: int = 1000
    confidence: float = 0.95

    def __post_init__(self):
        if self.num_particles < 1:
            raise ValueError(f"num_particles must be positive, got {self.num_particles}")
        if self.dt <= 0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        if not 0.0 < self.cooling_fraction <= 1.0:
            raise ValueError(f"cooling_fraction must lie in (0, 1], got {self.cooling_fraction}")
        if self.cooling_horizon < 1:
            raise ValueError(f"cooling_horizon must be positive, got {self.cooling_horizon}")
        if self.num_replicates < 1:
            raise ValueError(f"num_replicates must be positive, got {self.num_replicates}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")
        for name, sd in self.rw_sd.items():
            if sd < 0:
                raise ValueError(f"rw_sd[{name!r}] must be non-negative, got {sd}")
        object.__setattr__(self, "rw_sd", dict(self.rw_sd))
        object.__setattr__(self, "ivp_names", tuple(self.ivp_names))

    @staticmethod
    def from_config(cfg: Mapping[str, Any]) -> "RunContext":
        """
        Construct a RunContext from a configuration dictionary.

        Unknown keys raise ``ValueError`` so that typos do not silently fall
        back to defaults.
        """
        known = {f.name for f in dataclasses.fields(RunContext)}
        unknown = set(cfg) - known
        if unknown:
            raise ValueError(f"Unknown run configuration keys: {sorted(unknown)}")
        return RunContext(**dict(cfg))

    def to_config(self) -> Dict[str, Any]:
        """Plain-dict view, suitable for JSON and for cache keys."""
        cfg = dataclasses.asdict(self)
        cfg["rw_sd"] = dict(sorted(self.rw_sd.items()))
        cfg["ivp_names"] = list(self.ivp_names)
        return cfg

    def replace(self, **changes: Any) -> "RunContext":
        return dataclasses.replace(self, **changes)

    def substream_seed(self, purpose: int, *indices: int) -> int:
        """
        Derive a generator seed from (root seed, purpose, task indices).

        The derivation folds the purpose and each index into the root key, so
        a task always gets the same stream regardless of how many tasks run
        or in which order they are scheduled.
        """
        key = tf.constant([self.seed, 0], dtype=tf.int64)
        key = tf.random.experimental.stateless_fold_in(key, purpose)
        for index in indices:
            key = tf.random.experimental.stateless_fold_in(key, index)
        lo, hi = (int(v) for v in key.numpy())
        return (lo & 0xFFFFFFFF) | ((hi & 0x7FFFFFFF) << 32)

    def substream(self, purpose: int, *indices: int) -> tf.random.Generator:
        """Independent ``tf.random.Generator`` for one worker task."""
        return tf.random.Generator.from_seed(self.substream_seed(purpose, *indices))

"""
Profile-likelihood confidence intervals.

For a free parameter p, the profile log-likelihood at p = v is the maximum of
the log-likelihood over the remaining free parameters with p held at v. It is
traced on a grid of values: each grid point is started several times from
points drawn around the search optimum, climbed by IF2 with p frozen, refined
with a faster-cooling IF2 pass, and evaluated by replicate filtering. The
best value per grid point feeds MCAP.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import tensorflow as tf

from epinfer.data.observations import ObservationSeries
from epinfer.exceptions import DegenerateProfile, SearchFailed
from epinfer.filters.iterated_filter import IteratedFilter
from epinfer.filters.particle_filter import ParticleFilter
from epinfer.inference.mcap import MCAPResult, mcap
from epinfer.inference.search import SearchResult, SearchRow, fit_and_evaluate
from epinfer.models.parameters import ParameterVector
from epinfer.utils.cache import ResultCache, make_key
from epinfer.utils.context import PURPOSE_DESIGN, PURPOSE_PROFILE, RunContext
from epinfer.utils.logging_config import get_logger
from epinfer.utils.parallel import run_tasks, split_outcomes

logger = get_logger(__name__)

Rows = Union[SearchResult, Sequence[SearchRow]]


@dataclass(frozen=True)
class ProfilePoint:
    """Profiled value with its log-likelihood estimate."""
    value: float
    loglik: float
    loglik_se: float = 0.0


@dataclass
class ProfileResult:
    """
    Profile of one parameter.

    Attributes
    ----------
    name : str
        Profiled parameter.
    rows : list of SearchRow
        Converged design rows, sorted by design index.
    num_failed : int
        Design rows whose filter collapsed.
    points : list of ProfilePoint
        One point per grid value (best row), filled in by collapsing.
    interval : MCAPResult, optional
        Set when MCAP succeeded.
    error : str, optional
        Why no interval could be computed.
    """
    name: str
    rows: List[SearchRow]
    num_failed: int = 0
    points: List[ProfilePoint] = field(default_factory=list)
    interval: Optional[MCAPResult] = None
    error: Optional[str] = None

    def raw_points(self) -> List[ProfilePoint]:
        return [ProfilePoint(row.params[self.name], row.loglik, row.loglik_se) for row in self.rows]


def _as_rows(rows: Rows) -> List[SearchRow]:
    return list(rows.rows) if isinstance(rows, SearchResult) else list(rows)


def near_optimal_rows(rows: Rows, window: float = 20.0) -> List[SearchRow]:
    rows = _as_rows(rows)
    if not rows:
        raise ValueError("No search rows to profile around")
    top = max(row.loglik for row in rows)
    return [row for row in rows if row.loglik >= top - window]


def collapse_profile(points: Sequence[ProfilePoint], tolerance: float,
                     min_points: int = 8) -> List[ProfilePoint]:
    """
    Keep the best point per profiled value.

    Points are sorted by value; a run of points whose values lie within
    ``tolerance`` of the first value of the run counts as one grid value.

    Raises
    ------
    DegenerateProfile
        If fewer than ``min_points`` values survive.
    """
    collapsed: List[ProfilePoint] = []
    group_start = None
    for point in sorted(points, key=lambda p: p.value):
        if group_start is not None and point.value - group_start <= tolerance:
            if point.loglik > collapsed[-1].loglik:
                collapsed[-1] = point
        else:
            group_start = point.value
            collapsed.append(point)
    if len(collapsed) < min_points:
        raise DegenerateProfile(
            f"Only {len(collapsed)} profile points survived; need at least {min_points}")
    return collapsed


class ProfileLikelihoodCI:
    """
    Profile traces and MCAP intervals for free parameters.

    Parameters
    ----------
    iterated_filter : IteratedFilter
        Search optimizer; its space and random-walk sizes are reused with the
        profiled parameter frozen.
    particle_filter : ParticleFilter
        Filter for the replicate evaluation of profile points.
    context : RunContext
        Seed, profile grid, refinement and MCAP settings.
    cache : ResultCache, optional
        Memoizes profiles by configuration.
    """

    def __init__(self, iterated_filter: IteratedFilter, particle_filter: ParticleFilter,
                 context: RunContext, cache: Optional[ResultCache] = None):
        self.iterated_filter = iterated_filter
        self.particle_filter = particle_filter
        self.context = context
        self.cache = cache
        self.progress = False
        self.results: Dict[str, ProfileResult] = {}

    def _parameter_index(self, name: str) -> int:
        free = self.iterated_filter.space.free_names
        if name not in free:
            raise ValueError(f"{name!r} is not a free parameter; free parameters are {free}")
        return free.index(name)

    def profile_design(self, name: str, lo: float, hi: float, profdes_len: int, nprof: int,
                       rows: Rows, generator: tf.random.Generator) -> List[ParameterVector]:
        """
        Starting points for a profile over ``name``.

        ``profdes_len`` evenly spaced values over ``[lo, hi]``, each repeated
        ``nprof`` times. The other free parameters are drawn uniformly from
        the box spanned by the near-optimal search rows; all remaining
        parameters come from the best row.
        """
        self._parameter_index(name)
        if profdes_len < 1 or nprof < 1:
            raise ValueError("profdes_len and nprof must be positive")
        if not lo <= hi:
            raise ValueError(f"Empty profile range ({lo}, {hi})")

        near = near_optimal_rows(rows, self.context.near_optimal_window)
        best = max(near, key=lambda row: row.loglik).params
        others = [n for n in self.iterated_filter.space.free_names if n != name]

        values = tf.linspace(tf.constant(lo, tf.float64), tf.constant(hi, tf.float64), profdes_len)
        values = tf.repeat(values, nprof).numpy()
        total = len(values)

        if others:
            lows = tf.constant([min(r.params[n] for r in near) for n in others], tf.float64)
            highs = tf.constant([max(r.params[n] for r in near) for n in others], tf.float64)
            u = generator.uniform([total, len(others)], dtype=tf.float64)
            draws = (lows + u * (highs - lows)).numpy()
        else:
            draws = [[] for _ in range(total)]

        design = []
        for value, row in zip(values, draws):
            point = dict(zip(others, (float(v) for v in row)))
            point[name] = float(value)
            design.append(best.replace(point))
        return design

    def _stages(self, name: str) -> List[IteratedFilter]:
        search = self.iterated_filter
        space = search.space.without(name)
        rw_sd = {k: v for k, v in search.rw_sd.items() if k != name}
        ivp_names = [k for k in search.ivp_names if k != name]

        stages = [IteratedFilter(search.particle_filter, space, rw_sd,
                                 num_iterations=self.context.num_iterations,
                                 cooling_fraction=self.context.cooling_fraction,
                                 cooling_horizon=self.context.cooling_horizon,
                                 ivp_names=ivp_names)]
        if self.context.refine_iterations > 0:
            stages.append(IteratedFilter(search.particle_filter, space, rw_sd,
                                         num_iterations=self.context.refine_iterations,
                                         cooling_fraction=self.context.refine_cooling_fraction,
                                         cooling_horizon=self.context.cooling_horizon,
                                         ivp_names=ivp_names))
        return stages

    def _run_point(self, index: int, start: ParameterVector, stages: Sequence[IteratedFilter],
                   observations: ObservationSeries, param_index: int) -> SearchRow:
        generator = self.context.substream(PURPOSE_PROFILE, param_index, index)
        params, loglik, loglik_se, trace = fit_and_evaluate(
            stages, self.particle_filter, start, observations,
            self.context.num_replicates, generator)
        return SearchRow(start_index=index, params=params, loglik=loglik,
                         loglik_se=loglik_se, start=start, trace=trace)

    def profile(self, name: str, lo: float, hi: float, rows: Rows,
                observations: ObservationSeries) -> ProfileResult:
        """
        Trace the profile of ``name`` over ``[lo, hi]``.

        Raises
        ------
        SearchFailed
            If every design row collapses.
        """
        param_index = self._parameter_index(name)
        ctx = self.context

        def compute() -> ProfileResult:
            generator = ctx.substream(PURPOSE_DESIGN, PURPOSE_PROFILE, param_index)
            design = self.profile_design(name, lo, hi, ctx.profdes_len, ctx.nprof, rows, generator)
            stages = self._stages(name)
            outcomes = run_tasks(
                lambda index, start: self._run_point(index, start, stages, observations, param_index),
                design,
                max_workers=ctx.max_workers,
                progress=self.progress,
                desc=f"Profile {name}",
            )
            succeeded, failed = split_outcomes(outcomes)
            logger.info("Profile %s: %d of %d design rows succeeded, %d collapsed",
                        name, len(succeeded), len(design), len(failed))
            if not succeeded:
                raise SearchFailed(f"Profile {name}: all {len(design)} design rows collapsed",
                                   num_failed=len(failed))
            return ProfileResult(name=name, rows=[row for _, row in succeeded],
                                 num_failed=len(failed))

        if self.cache is None:
            return compute()
        key = make_key({
            "kind": "profile",
            "name": name,
            "range": [lo, hi],
            "context": ctx.to_config(),
            "rows": [row.to_record() for row in _as_rows(rows)],
            "observations": observations.to_rows(),
            "process": repr(self.particle_filter.process),
            "measurement": repr(self.particle_filter.measurement),
            "transforms": dict(self.iterated_filter.space.transforms),
        })
        return self.cache.get_or_compute(key, compute)

    def mcap(self, loglik, parameter, confidence: Optional[float] = None,
             lambda_: Optional[float] = None, n_grid: Optional[int] = None) -> MCAPResult:
        return mcap(
            loglik, parameter,
            confidence=self.context.confidence if confidence is None else confidence,
            lambda_=self.context.mcap_lambda if lambda_ is None else lambda_,
            n_grid=self.context.mcap_n_grid if n_grid is None else n_grid,
        )

    def interval(self, name: str, lo: float, hi: float, rows: Rows,
                 observations: ObservationSeries) -> ProfileResult:
        """Profile ``name`` and compute its MCAP interval."""
        result = self.profile(name, lo, hi, rows, observations)
        grid_step = (hi - lo) / max(self.context.profdes_len - 1, 1)
        result.points = collapse_profile(result.raw_points(), tolerance=1e-6 * grid_step,
                                         min_points=self.context.min_profile_points)
        result.interval = self.mcap([p.loglik for p in result.points],
                                    [p.value for p in result.points])
        logger.info("%s: %.0f%% CI [%.4g, %.4g], MLE %.4g (se %.3g, mc se %.3g)",
                    name, 100 * self.context.confidence, result.interval.lower,
                    result.interval.upper, result.interval.quadratic_max,
                    result.interval.se_stat, result.interval.se_mc)
        return result

    def confidence_intervals(self, names: Sequence[str], ranges: Mapping[str, Tuple[float, float]],
                             rows: Rows, observations: ObservationSeries
                             ) -> Dict[str, Optional[MCAPResult]]:
        """
        MCAP intervals for several parameters.

        A parameter whose profile is degenerate or entirely collapsed gets
        ``None``; the others are unaffected.
        """
        intervals: Dict[str, Optional[MCAPResult]] = {}
        for name in names:
            lo, hi = ranges[name]
            try:
                result = self.interval(name, lo, hi, rows, observations)
            except (DegenerateProfile, SearchFailed) as exc:
                logger.warning("No confidence interval for %s: %s", name, exc)
                result = ProfileResult(name=name, rows=[], error=str(exc))
            self.results[name] = result
            intervals[name] = result.interval
        return intervals

    def ci_table(self) -> List[Tuple[str, Optional[float], Optional[float]]]:
        """Rows (name, lower, upper); bounds are None where no interval exists."""
        table = []
        for name, result in self.results.items():
            if result.interval is None:
                table.append((name, None, None))
            else:
                table.append((name, result.interval.lower, result.interval.upper))
        return table

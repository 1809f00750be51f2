"""
Multi-start maximum-likelihood search with IF2.

A global search draws starting points uniformly from a box over the free
parameters, runs one IF2 climb per start on the worker pool, and then
evaluates every converged point with replicate particle-filter passes reduced
by log-mean-exp. Starts whose filter collapses are dropped and counted; the
search fails only if every start collapses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import tensorflow as tf

from epinfer.data.observations import ObservationSeries
from epinfer.exceptions import SearchFailed
from epinfer.filters.iterated_filter import IteratedFilter, TraceEntry
from epinfer.filters.particle_filter import ParticleFilter, estimate_loglik
from epinfer.metrics.particle_filter_metrics import logmeanexp
from epinfer.models.parameters import ParameterVector
from epinfer.utils.cache import ResultCache, make_key
from epinfer.utils.context import PURPOSE_DESIGN, PURPOSE_LOCAL, PURPOSE_SEARCH, RunContext
from epinfer.utils.logging_config import get_logger
from epinfer.utils.parallel import run_tasks, split_outcomes

logger = get_logger(__name__)

Box = Mapping[str, Tuple[float, float]]


@dataclass
class SearchRow:
    """One converged start: estimate, replicate log-likelihood and its se."""
    start_index: int
    params: ParameterVector
    loglik: float
    loglik_se: float
    start: Optional[ParameterVector] = None
    trace: List[TraceEntry] = field(default_factory=list)

    def to_record(self) -> Dict[str, float]:
        return dict(start_index=self.start_index, loglik=self.loglik,
                    loglik_se=self.loglik_se, **self.params.as_dict())


@dataclass
class SearchResult:
    """
    Rows of a search, sorted by start index.

    Attributes
    ----------
    rows : list of SearchRow
        Successful starts.
    num_failed : int
        Starts dropped because their filter collapsed.
    failures : list of (int, str)
        Start index and message of every dropped start.
    """
    rows: List[SearchRow]
    num_failed: int = 0
    failures: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def num_succeeded(self) -> int:
        return len(self.rows)

    @property
    def best(self) -> SearchRow:
        if not self.rows:
            raise SearchFailed("Search result has no rows", num_failed=self.num_failed)
        return max(self.rows, key=lambda row: row.loglik)

    def near_optimal(self, within: float = 20.0) -> List[SearchRow]:
        """Rows whose log-likelihood is within ``within`` units of the best."""
        top = self.best.loglik
        return [row for row in self.rows if row.loglik >= top - within]

    def to_records(self) -> List[Dict[str, float]]:
        return [row.to_record() for row in self.rows]


def sample_starts(box: Box, num_guesses: int, base: Mapping[str, float],
                  generator: tf.random.Generator) -> List[ParameterVector]:
    """
    Uniform starting points over ``box``.

    Parameters
    ----------
    box : mapping
        Free parameter -> (lo, hi) on the natural scale.
    num_guesses : int
        Number of starts.
    base : mapping
        Values of the parameters not in ``box``.
    generator : tf.random.Generator
        Source of the uniform draws.

    Returns
    -------
    list of ParameterVector
    """
    if num_guesses < 1:
        raise ValueError(f"num_guesses must be positive, got {num_guesses}")
    base = ParameterVector(base)
    names = list(box)
    if not names:
        return [base] * num_guesses
    lo = tf.constant([box[name][0] for name in names], dtype=tf.float64)
    hi = tf.constant([box[name][1] for name in names], dtype=tf.float64)
    u = generator.uniform([num_guesses, len(names)], dtype=tf.float64)
    draws = (lo + u * (hi - lo)).numpy()
    return [base.replace(dict(zip(names, (float(v) for v in row)))) for row in draws]


def fit_and_evaluate(
    stages: Sequence[IteratedFilter],
    particle_filter: ParticleFilter,
    start: Mapping[str, float],
    observations: ObservationSeries,
    num_replicates: int,
    generator: tf.random.Generator
) -> Tuple[ParameterVector, float, float, List[TraceEntry]]:
    """
    Run IF2 stages in sequence from ``start`` and evaluate the result.

    Each stage starts from the previous stage's estimate. The final estimate
    is evaluated with ``num_replicates`` passes of ``particle_filter``.

    Returns
    -------
    params, loglik, loglik_se, trace
    """
    params = ParameterVector(start)
    trace: List[TraceEntry] = []
    for stage in stages:
        fit = stage.run(params, observations, generator)
        params = fit.params
        trace.extend(fit.trace)
    loglik, loglik_se = estimate_loglik(particle_filter, observations, params, num_replicates, generator)
    return params, loglik, loglik_se, trace


class SearchController:
    """
    Parallel multi-start IF2 search.

    Parameters
    ----------
    iterated_filter : IteratedFilter
        Optimizer run from every start.
    particle_filter : ParticleFilter
        Filter used for the replicate evaluation of converged points.
    context : RunContext
        Seed, replicates and worker count.
    cache : ResultCache, optional
        Memoizes global searches by configuration.
    """

    def __init__(self, iterated_filter: IteratedFilter, particle_filter: ParticleFilter,
                 context: RunContext, cache: Optional[ResultCache] = None):
        self.iterated_filter = iterated_filter
        self.particle_filter = particle_filter
        self.context = context
        self.cache = cache
        self.progress = False

    logmeanexp = staticmethod(logmeanexp)
    sample_starts = staticmethod(sample_starts)

    def _run_start(self, index: int, start: ParameterVector, observations: ObservationSeries,
                   purpose: int) -> SearchRow:
        generator = self.context.substream(purpose, index)
        params, loglik, loglik_se, trace = fit_and_evaluate(
            [self.iterated_filter], self.particle_filter, start, observations,
            self.context.num_replicates, generator)
        logger.debug("Start %d: loglik=%.3f (se %.3f)", index, loglik, loglik_se)
        return SearchRow(start_index=index, params=params, loglik=loglik,
                         loglik_se=loglik_se, start=start, trace=trace)

    def _collect(self, starts: Sequence[ParameterVector], observations: ObservationSeries,
                 purpose: int, label: str) -> SearchResult:
        outcomes = run_tasks(
            lambda index, start: self._run_start(index, start, observations, purpose),
            starts,
            max_workers=self.context.max_workers,
            progress=self.progress,
            desc=label,
        )
        succeeded, failed = split_outcomes(outcomes)
        logger.info("%s: %d of %d starts succeeded, %d collapsed",
                    label, len(succeeded), len(starts), len(failed))
        if not succeeded:
            raise SearchFailed(f"{label}: all {len(starts)} starts collapsed",
                               num_failed=len(failed))
        return SearchResult(
            rows=[row for _, row in succeeded],
            num_failed=len(failed),
            failures=[(index, str(error)) for index, error in failed],
        )

    def local_search(self, start: Mapping[str, float], observations: ObservationSeries,
                     num_runs: int) -> SearchResult:
        """
        Repeat IF2 from one start.

        The spread of the resulting rows shows how much of the variation in a
        global search is Monte Carlo noise rather than start dependence.
        """
        if num_runs < 1:
            raise ValueError(f"num_runs must be positive, got {num_runs}")
        starts = [ParameterVector(start)] * num_runs
        return self._collect(starts, observations, PURPOSE_LOCAL, "Local search")

    def cache_key(self, box: Box, base: Mapping[str, float], observations: ObservationSeries,
                  num_guesses: int) -> str:
        config: Dict[str, Any] = {
            "kind": "global_search",
            "context": self.context.to_config(),
            "box": {k: list(v) for k, v in box.items()},
            "base": dict(ParameterVector(base).as_dict()),
            "num_guesses": num_guesses,
            "observations": observations.to_rows(),
            "process": repr(self.particle_filter.process),
            "measurement": repr(self.particle_filter.measurement),
            "transforms": dict(self.iterated_filter.space.transforms),
            "num_iterations": self.iterated_filter.num_iterations,
            "cooling_fraction": self.iterated_filter.cooling_fraction,
        }
        return make_key(config)

    def global_search(self, box: Box, base: Mapping[str, float],
                      observations: ObservationSeries, num_guesses: int) -> SearchResult:
        """
        One IF2 climb per uniform start in ``box``.

        Returns
        -------
        SearchResult
            Rows sorted by start index; identical for any worker count.

        Raises
        ------
        SearchFailed
            If every start collapses.
        """
        def compute() -> SearchResult:
            starts = sample_starts(box, num_guesses, base,
                                   self.context.substream(PURPOSE_DESIGN, PURPOSE_SEARCH))
            return self._collect(starts, observations, PURPOSE_SEARCH, "Global search")

        if self.cache is None:
            return compute()
        return self.cache.get_or_compute(self.cache_key(box, base, observations, num_guesses),
                                         compute)

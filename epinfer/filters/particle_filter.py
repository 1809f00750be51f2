"""
Bootstrap particle filter for stochastic compartmental models.

This module implements Sequential Importance Resampling (SIR) / the bootstrap
filter: particles are propagated through the process model between
observations, weighted by the measurement density, and resampled. The sum of
the per-step log mean weights is an unbiased-on-the-natural-scale estimate of
the log-likelihood.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Union

import tensorflow as tf

from epinfer.data.observations import ObservationSeries
from epinfer.exceptions import FilterCollapse
from epinfer.filters.resampling import resample_particles, should_resample
from epinfer.metrics.particle_filter_metrics import (
    compute_effective_sample_size,
    compute_weight_entropy,
    logmeanexp,
    normalize_log_weights,
)
from epinfer.models.base import MeasurementModel, ProcessModel
from epinfer.utils.context import UNDERFLOW_LOG_WEIGHT, RunContext
from epinfer.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class WeightedStep:
    """Weights of one observation step."""
    log_weights: tf.Tensor
    weights: tf.Tensor
    cond_loglik: float
    ess: float
    entropy: float


@dataclass
class FilterOutput:
    """
    Result of one particle-filter pass.

    Attributes
    ----------
    loglik : float
        Sum of conditional log-likelihoods.
    particles : tf.Tensor
        Final particle cloud of shape (N, state_dim).
    log_weights : tf.Tensor
        Normalized log-weights of the final cloud (uniform after resampling).
    cond_logliks : list of float
        Per-observation log-likelihood contributions.
    ess : list of float
        Per-observation effective sample size before resampling.
    entropy : list of float
        Per-observation normalized weight entropy in [0, 1].
    filter_means : tf.Tensor, optional
        Weighted state means per observation, shape (T, state_dim), when
        history was requested.
    num_resamples : int
        Number of resampling events.
    """
    loglik: float
    particles: tf.Tensor
    log_weights: tf.Tensor
    cond_logliks: List[float] = field(default_factory=list)
    ess: List[float] = field(default_factory=list)
    entropy: List[float] = field(default_factory=list)
    filter_means: Optional[tf.Tensor] = None
    num_resamples: int = 0


def as_param_tensors(params: Mapping[str, Union[float, tf.Tensor]]) -> Dict[str, tf.Tensor]:
    """Convert parameter values to float64 tensors."""
    return {k: tf.convert_to_tensor(v, dtype=tf.float64) for k, v in params.items()}


class ParticleFilter:
    """
    Bootstrap particle filter.

    Parameters
    ----------
    process : ProcessModel
        Latent dynamics.
    measurement : MeasurementModel
        Observation density and sampler.
    num_particles : int, optional
        Number of particles. Defaults to 1000.
    dt : float, optional
        Euler sub-step size. Defaults to 0.1.
    resample_method : str, optional
        'systematic' (default), 'multinomial', 'stratified' or 'residual'.
    resample_threshold : float, optional
        Resample when ESS < threshold * N. The default 1.0 resamples at
        every observation.
    min_log_weight : float, optional
        Log-weights below this value count as underflowed. If every particle
        is below it the pass raises FilterCollapse.

    Attributes
    ----------
    process, measurement, num_particles, dt, resample_method, resample_threshold,
    min_log_weight
        As passed in.
    """

    def __init__(self, process: ProcessModel, measurement: MeasurementModel,
                 num_particles: int = 1000, dt: float = 0.1,
                 resample_method: str = 'systematic',
                 resample_threshold: float = 1.0,
                 min_log_weight: float = UNDERFLOW_LOG_WEIGHT):
        if num_particles < 1:
            raise ValueError(f"num_particles must be positive, got {num_particles}")
        self.process = process
        self.measurement = measurement
        self.num_particles = num_particles
        self.dt = dt
        self.resample_method = resample_method
        self.resample_threshold = resample_threshold
        self.min_log_weight = min_log_weight

    @staticmethod
    def from_context(process: ProcessModel, measurement: MeasurementModel,
                     context: RunContext) -> "ParticleFilter":
        return ParticleFilter(
            process, measurement,
            num_particles=context.num_particles,
            dt=context.dt,
            resample_method=context.resample_method,
            resample_threshold=context.resample_threshold,
            min_log_weight=context.min_log_weight,
        )

    def with_particles(self, num_particles: int) -> "ParticleFilter":
        return ParticleFilter(self.process, self.measurement, num_particles, self.dt,
                              self.resample_method, self.resample_threshold,
                              self.min_log_weight)

    def uniform_log_weights(self) -> tf.Tensor:
        return tf.fill([self.num_particles], tf.constant(-math.log(self.num_particles), tf.float64))

    def weigh(
        self,
        observation: float,
        state: tf.Tensor,
        params: Mapping[str, tf.Tensor],
        prior_log_weights: tf.Tensor,
        time_index: Optional[int] = None,
        time: Optional[float] = None
    ) -> WeightedStep:
        """
        Weight the propagated cloud by one observation.

        Parameters
        ----------
        observation : float
            Observed count.
        state : tf.Tensor
            Propagated particles of shape (N, state_dim).
        params : mapping
            Parameter tensors, scalar or per particle.
        prior_log_weights : tf.Tensor
            Normalized log-weights carried from the previous step.
        time_index, time : optional
            Reported in FilterCollapse.

        Returns
        -------
        WeightedStep

        Raises
        ------
        FilterCollapse
            If the weight of every particle with non-zero prior weight
            underflows to zero.
        """
        log_lik = self.measurement.density(observation, self.process.named(state), params, log=True)
        log_lik = tf.where(tf.math.is_nan(log_lik),
                           tf.constant(-float("inf"), dtype=tf.float64), log_lik)

        # Particles already carrying zero weight cannot support the observation
        supported = tf.where(tf.math.is_finite(prior_log_weights), log_lik,
                             tf.constant(-float("inf"), dtype=tf.float64))
        combined = prior_log_weights + log_lik
        total = float(tf.reduce_logsumexp(combined))
        if not (float(tf.reduce_max(supported)) >= self.min_log_weight and math.isfinite(total)):
            raise FilterCollapse(
                f"All {self.num_particles} particle weights underflowed at observation "
                f"{time_index} (t={time}, y={observation})",
                time_index=time_index, time=time,
            )

        log_weights = combined - total
        weights = normalize_log_weights(combined)
        return WeightedStep(
            log_weights=log_weights,
            weights=weights,
            cond_loglik=total,
            ess=float(compute_effective_sample_size(weights)),
            entropy=float(compute_weight_entropy(weights)),
        )

    def run(
        self,
        observations: ObservationSeries,
        params: Mapping[str, Union[float, tf.Tensor]],
        generator: Optional[tf.random.Generator] = None,
        return_history: bool = False
    ) -> FilterOutput:
        """
        Estimate the log-likelihood of ``observations`` at ``params``.

        Parameters
        ----------
        observations : ObservationSeries
            Data; ``t0`` is where particles are initialized.
        params : mapping
            Natural-scale parameter values.
        generator : tf.random.Generator, optional
            Source of randomness. A non-deterministic generator is created
            when omitted.
        return_history : bool, optional
            Record weighted state means per observation. Default False.

        Returns
        -------
        FilterOutput

        Raises
        ------
        FilterCollapse
            If all weights underflow at some observation.
        """
        if generator is None:
            generator = tf.random.Generator.from_non_deterministic_state()
        params = as_param_tensors(params)

        state = self.process.init(params, self.num_particles)
        log_weights = self.uniform_log_weights()
        loglik = 0.0
        cond_logliks: List[float] = []
        ess_history: List[float] = []
        entropy_history: List[float] = []
        means: List[tf.Tensor] = []
        num_resamples = 0

        t_prev = observations.t0
        for k, (t, y) in enumerate(observations):
            state = self.process.advance(state, params, t_prev, t, self.dt, generator)
            step = self.weigh(y, state, params, log_weights, time_index=k, time=t)

            loglik += step.cond_loglik
            cond_logliks.append(step.cond_loglik)
            ess_history.append(step.ess)
            entropy_history.append(step.entropy)
            if return_history:
                means.append(tf.reduce_sum(step.weights[:, tf.newaxis] * state, axis=0))

            if should_resample(step.weights, self.resample_threshold):
                (state,), _ = resample_particles([state], step.weights, generator,
                                                 self.resample_method)
                log_weights = self.uniform_log_weights()
                num_resamples += 1
            else:
                log_weights = step.log_weights
            t_prev = t

        logger.debug("Particle filter: N=%d, T=%d, loglik=%.3f, min ESS=%.1f",
                     self.num_particles, len(observations), loglik, min(ess_history))

        return FilterOutput(
            loglik=loglik,
            particles=state,
            log_weights=log_weights,
            cond_logliks=cond_logliks,
            ess=ess_history,
            entropy=entropy_history,
            filter_means=tf.stack(means, axis=0) if return_history else None,
            num_resamples=num_resamples,
        )

    def replicate_logliks(
        self,
        observations: ObservationSeries,
        params: Mapping[str, Union[float, tf.Tensor]],
        num_replicates: int,
        generator: tf.random.Generator
    ) -> List[float]:
        """Log-likelihoods of ``num_replicates`` independent passes."""
        return [self.run(observations, params, generator).loglik for _ in range(num_replicates)]


def estimate_loglik(
    particle_filter: ParticleFilter,
    observations: ObservationSeries,
    params: Mapping[str, Union[float, tf.Tensor]],
    num_replicates: int,
    generator: tf.random.Generator
) -> tuple[float, float]:
    """
    Replicate-averaged log-likelihood and its standard error.

    Runs ``num_replicates`` independent filter passes and reduces them with
    log-mean-exp, the natural-scale average that keeps the estimate
    consistent with the unbiased likelihood.

    Returns
    -------
    loglik : float
    loglik_se : float
    """
    logliks = particle_filter.replicate_logliks(observations, params, num_replicates, generator)
    return logmeanexp(logliks, se=True)

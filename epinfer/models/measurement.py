"""
Measurement models for reported case counts.

Both models read a single accumulator (transitions since the previous
observation) and a reporting probability rho.

- BinomialMeasurement: y ~ Binomial(C, rho)
- NormalMeasurement:   y ~ Normal(m, v) with m = rho * C and
                       v = m * (1 - rho + psi^2 * m) + floor
"""

from __future__ import annotations

from typing import Mapping, Optional

import tensorflow as tf
import tensorflow_probability as tfp

from epinfer.models.base import MeasurementModel, ParamsLike, get_param

tfd = tfp.distributions


class BinomialMeasurement(MeasurementModel):
    """
    Binomial reporting of accumulated transitions.

    Parameters
    ----------
    accumulator : str, optional
        Accumulator compartment read. Default 'C'.
    rho : str, optional
        Reporting-probability parameter name. Default 'Rho'.
    """

    def __init__(self, accumulator: str = "C", rho: str = "Rho") -> None:
        self.accumulator = accumulator
        self.rho = rho

    def __repr__(self) -> str:
        return f"BinomialMeasurement(accumulator={self.accumulator!r}, rho={self.rho!r})"

    def _distribution(self, state: Mapping[str, tf.Tensor], params: ParamsLike) -> tfd.Binomial:
        total = tf.convert_to_tensor(state[self.accumulator], dtype=tf.float64)
        rho = tf.broadcast_to(get_param(params, self.rho), tf.shape(total))
        return tfd.Binomial(total_count=total, probs=rho)

    def density(self, observation, state, params, log=True):
        y = tf.constant(float(observation), dtype=tf.float64)
        dist = self._distribution(state, params)
        log_prob = dist.log_prob(y)
        # More reports than transitions is impossible
        log_prob = tf.where(y <= dist.total_count, log_prob,
                            tf.constant(-float("inf"), dtype=tf.float64))
        return log_prob if log else tf.exp(log_prob)

    def sample(self, state, params, generator):
        total = tf.convert_to_tensor(state[self.accumulator], dtype=tf.float64)
        rho = tf.clip_by_value(tf.broadcast_to(get_param(params, self.rho), tf.shape(total)), 0.0, 1.0)
        return generator.binomial(shape=tf.shape(total), counts=total, probs=rho, dtype=tf.float64)


class NormalMeasurement(MeasurementModel):
    """
    Overdispersed Gaussian approximation to binomial reporting.

    Parameters
    ----------
    accumulator : str, optional
        Accumulator compartment read. Default 'C'.
    rho : str, optional
        Reporting-probability parameter name. Default 'Rho'.
    overdispersion : str, optional
        Overdispersion parameter name (psi). None means psi = 0. Default None.
    variance_floor : float, optional
        Added to the variance so a zero accumulator has finite density.
        Default 1e-6.
    """

    def __init__(self, accumulator: str = "C", rho: str = "Rho",
                 overdispersion: Optional[str] = None,
                 variance_floor: float = 1e-6) -> None:
        if variance_floor <= 0:
            raise ValueError(f"variance_floor must be positive, got {variance_floor}")
        self.accumulator = accumulator
        self.rho = rho
        self.overdispersion = overdispersion
        self.variance_floor = variance_floor

    def __repr__(self) -> str:
        return (f"NormalMeasurement(accumulator={self.accumulator!r}, rho={self.rho!r}, "
                f"overdispersion={self.overdispersion!r})")

    def moments(self, state: Mapping[str, tf.Tensor], params: ParamsLike) -> tuple[tf.Tensor, tf.Tensor]:
        """Mean and variance of the reported count for every particle."""
        total = tf.convert_to_tensor(state[self.accumulator], dtype=tf.float64)
        rho = get_param(params, self.rho)
        if self.overdispersion is None:
            psi = tf.zeros_like(rho)
        else:
            psi = get_param(params, self.overdispersion)
        mean = rho * total
        variance = mean * (1.0 - rho + tf.square(psi) * mean) + self.variance_floor
        return mean, variance

    def density(self, observation, state, params, log=True):
        y = tf.constant(float(observation), dtype=tf.float64)
        mean, variance = self.moments(state, params)
        dist = tfd.Normal(loc=mean, scale=tf.sqrt(variance))
        log_prob = dist.log_prob(y)
        return log_prob if log else tf.exp(log_prob)

    def sample(self, state, params, generator):
        mean, variance = self.moments(state, params)
        noise = generator.normal(shape=tf.shape(mean), dtype=tf.float64)
        draws = tf.round(mean + tf.sqrt(variance) * noise)
        return tf.maximum(draws, 0.0)

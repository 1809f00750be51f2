"""
Base classes for compartmental process and measurement models.

This module defines abstract base classes that establish the interface the
particle filter relies on, so that concrete epidemic models are strategy
objects chosen at construction time.

Classes:
    ProcessModel: latent-state initialization and Euler transition dynamics
    MeasurementModel: observation density and sampler given latent state
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Tuple, Union

import tensorflow as tf

ParamsLike = Mapping[str, Union[float, tf.Tensor]]


def get_param(params: ParamsLike, name: str) -> tf.Tensor:
    """Fetch a parameter as a float64 tensor, scalar or per-particle."""
    try:
        value = params[name]
    except KeyError:
        raise KeyError(f"Model parameter {name!r} not provided") from None
    return tf.convert_to_tensor(value, dtype=tf.float64)


def binomial_transitions(
    generator: tf.random.Generator,
    counts: tf.Tensor,
    rate: tf.Tensor,
    dt: float
) -> tf.Tensor:
    """
    Draw transition counts out of a compartment over one Euler step.

    Each of ``counts`` individuals leaves independently with probability
    ``1 - exp(-rate * dt)``, so the draw never exceeds the occupancy.

    Parameters
    ----------
    generator : tf.random.Generator
        Source of randomness.
    counts : tf.Tensor
        Source-compartment occupancy of shape (N,).
    rate : tf.Tensor
        Per-capita exit rate, scalar or shape (N,).
    dt : float
        Step length.

    Returns
    -------
    tf.Tensor
        Transition counts of shape (N,), float64.
    """
    counts = tf.convert_to_tensor(counts, dtype=tf.float64)
    rate = tf.convert_to_tensor(rate, dtype=tf.float64)
    probs = -tf.math.expm1(-rate * dt)
    # 0 * inf rates (empty infectious compartment) produce NaN
    probs = tf.where(tf.math.is_nan(probs), tf.zeros_like(probs), probs)
    probs = tf.clip_by_value(probs, 0.0, 1.0)
    probs = tf.broadcast_to(probs, tf.shape(counts))
    return generator.binomial(
        shape=tf.shape(counts), counts=counts, probs=probs, dtype=tf.float64
    )


class ProcessModel(ABC):
    """
    Abstract stochastic compartmental process.

    The latent state of N particles is a float64 tensor of shape
    (N, len(state_names)). Accumulator columns count transitions since the
    last observation and are what measurement models read.

    Attributes
    ----------
    state_names : tuple of str
        Column names of the state tensor.
    accumulator_names : tuple of str
        Columns reset to zero at every observation boundary.
    """

    state_names: Tuple[str, ...] = ()
    accumulator_names: Tuple[str, ...] = ()

    @property
    def state_dim(self) -> int:
        return len(self.state_names)

    def index(self, name: str) -> int:
        return self.state_names.index(name)

    def named(self, state: tf.Tensor) -> Dict[str, tf.Tensor]:
        """Column view of a state tensor keyed by compartment name."""
        columns = tf.unstack(state, num=self.state_dim, axis=-1)
        return dict(zip(self.state_names, columns))

    @abstractmethod
    def init(self, params: ParamsLike, num_particles: int) -> tf.Tensor:
        """
        Initial state of ``num_particles`` particles.

        Fractional seed values are rounded to the nearest integer and
        accumulators start at zero.

        Returns
        -------
        tf.Tensor
            Shape (num_particles, state_dim), float64.
        """

    @abstractmethod
    def step(
        self,
        state: tf.Tensor,
        params: ParamsLike,
        t: float,
        dt: float,
        generator: tf.random.Generator
    ) -> tf.Tensor:
        """
        Advance the state by one Euler increment of length ``dt``.

        Parameters
        ----------
        state : tf.Tensor
            Shape (N, state_dim).
        params : mapping
            Parameter name -> scalar or (N,) tensor.
        t : float
            Time at the start of the increment.
        dt : float
            Increment length.
        generator : tf.random.Generator
            Source of randomness.

        Returns
        -------
        tf.Tensor
            New state of shape (N, state_dim).
        """

    def reset_accumulators(self, state: tf.Tensor) -> tf.Tensor:
        if not self.accumulator_names:
            return state
        keep = [0.0 if name in self.accumulator_names else 1.0 for name in self.state_names]
        return state * tf.constant(keep, dtype=state.dtype)

    def advance(
        self,
        state: tf.Tensor,
        params: ParamsLike,
        t_start: float,
        t_end: float,
        dt: float,
        generator: tf.random.Generator
    ) -> tf.Tensor:
        """
        Propagate from ``t_start`` to ``t_end`` in equal Euler sub-steps.

        Accumulators are zeroed first. The number of sub-steps is
        ``ceil((t_end - t_start) / dt)``; the sub-step length is the span
        divided by that number so the last step lands on ``t_end``.
        """
        span = float(t_end) - float(t_start)
        if span <= 0:
            raise ValueError(f"t_end ({t_end}) must be after t_start ({t_start})")
        num_steps = max(1, int(math.ceil(span / dt - 1e-9)))
        h = span / num_steps

        state = self.reset_accumulators(state)
        for k in range(num_steps):
            state = self.step(state, params, float(t_start) + k * h, h, generator)
        return state


class MeasurementModel(ABC):
    """
    Abstract observation model for one count given the latent state.

    ``density`` and ``sample`` must describe the same distributional family so
    that filtering and simulation agree.
    """

    @abstractmethod
    def density(
        self,
        observation: float,
        state: Mapping[str, tf.Tensor],
        params: ParamsLike,
        log: bool = True
    ) -> tf.Tensor:
        """
        (Log-)likelihood of ``observation`` for every particle.

        Parameters
        ----------
        observation : float
            Observed count.
        state : mapping
            Compartment name -> tensor of shape (N,).
        params : mapping
            Parameter name -> scalar or (N,) tensor.
        log : bool
            Return the log-density. Default True.

        Returns
        -------
        tf.Tensor
            Shape (N,), float64.
        """

    @abstractmethod
    def sample(
        self,
        state: Mapping[str, tf.Tensor],
        params: ParamsLike,
        generator: tf.random.Generator
    ) -> tf.Tensor:
        """Simulated observations of shape (N,), non-negative integers as float64."""

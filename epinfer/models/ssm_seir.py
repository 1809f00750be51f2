"""
Stochastic SEIR model with a latent (exposed) compartment.

    dN_SE ~ Binomial(S, 1 - exp(-beta(t) * I / N * dt))
    dN_EI ~ Binomial(E, 1 - exp(-sigma * dt))
    dN_IR ~ Binomial(I, 1 - exp(-gamma * dt))
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import tensorflow as tf

from epinfer.models.base import ParamsLike, ProcessModel, binomial_transitions, get_param
from epinfer.models.ssm_sir import TransmissionSchedule

_ACCUMULATE = ("exposure", "onset", "removal")


class SEIRModel(ProcessModel):
    """
    Closed-population stochastic SEIR model.

    Parameters
    ----------
    windows : sequence of (start, end), optional
        Intervals in which the alternate transmission rate applies.
    accumulate : str, optional
        Transition counted in C: 'exposure' (S->E), 'onset' (E->I) or
        'removal' (I->R). Default 'onset'.
    beta, beta_alt, sigma, gamma, population, initial_exposed, initial_infected : str
        Parameter names read from the parameter mapping.
    initial_recovered : str, optional
        Parameter name of the initial removed count. Default None (zero).
    """

    state_names = ("S", "E", "I", "R", "C")
    accumulator_names = ("C",)

    def __init__(self,
                 windows: Sequence[Tuple[float, float]] = (),
                 accumulate: str = "onset",
                 beta: str = "Beta0",
                 beta_alt: str = "Beta1",
                 sigma: str = "Sigma",
                 gamma: str = "Gamma",
                 population: str = "N",
                 initial_exposed: str = "E0",
                 initial_infected: str = "I0",
                 initial_recovered: Optional[str] = None) -> None:
        if accumulate not in _ACCUMULATE:
            raise ValueError(f"accumulate must be one of {_ACCUMULATE}, got {accumulate!r}")
        self.schedule = TransmissionSchedule(beta, beta_alt, tuple(windows))
        self.accumulate = accumulate
        self.sigma = sigma
        self.gamma = gamma
        self.population = population
        self.initial_exposed = initial_exposed
        self.initial_infected = initial_infected
        self.initial_recovered = initial_recovered

    def __repr__(self) -> str:
        return (f"SEIRModel(windows={self.schedule.windows}, "
                f"accumulate={self.accumulate!r})")

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        names = self.schedule.parameter_names() + (
            self.sigma, self.gamma, self.population,
            self.initial_exposed, self.initial_infected,
        )
        if self.initial_recovered is not None:
            names += (self.initial_recovered,)
        return names

    def init(self, params: ParamsLike, num_particles: int) -> tf.Tensor:
        shape = [num_particles]
        pop = tf.round(get_param(params, self.population))
        E0 = tf.round(get_param(params, self.initial_exposed))
        I0 = tf.round(get_param(params, self.initial_infected))
        if self.initial_recovered is not None:
            R0 = tf.round(get_param(params, self.initial_recovered))
        else:
            R0 = tf.zeros_like(I0)
        S0 = tf.maximum(pop - E0 - I0 - R0, 0.0)

        columns = [S0, E0, I0, R0, tf.zeros_like(I0)]
        columns = [tf.broadcast_to(c, shape) for c in columns]
        return tf.stack(columns, axis=-1)

    def step(self, state, params, t, dt, generator):
        S, E, I, R, C = tf.unstack(state, num=5, axis=-1)
        pop = get_param(params, self.population)
        beta = self.schedule.rate(params, t)

        dN_SE = binomial_transitions(generator, S, beta * I / pop, dt)
        dN_EI = binomial_transitions(generator, E, get_param(params, self.sigma), dt)
        dN_IR = binomial_transitions(generator, I, get_param(params, self.gamma), dt)

        S = S - dN_SE
        E = E + dN_SE - dN_EI
        I = I + dN_EI - dN_IR
        R = R + dN_IR
        counted = {"exposure": dN_SE, "onset": dN_EI, "removal": dN_IR}[self.accumulate]
        C = C + counted
        return tf.stack([S, E, I, R, C], axis=-1)

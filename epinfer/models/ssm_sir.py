"""
Stochastic SIR model with a piecewise transmission rate.

Transitions over an Euler step of length dt are binomial draws:

    dN_SI ~ Binomial(S, 1 - exp(-beta(t) * I / N * dt))
    dN_IR ~ Binomial(I, 1 - exp(-gamma * dt))

beta(t) switches from its base value to an alternate value inside configured
time windows (e.g. school closures). The accumulator C counts either new
infections or removals since the last observation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import tensorflow as tf

from epinfer.models.base import ParamsLike, ProcessModel, binomial_transitions, get_param


@dataclass(frozen=True)
class TransmissionSchedule:
    """
    Piecewise-constant transmission rate.

    Parameters
    ----------
    base : str
        Name of the rate parameter used outside the windows.
    alternate : str
        Name of the rate parameter used inside the windows.
    windows : sequence of (start, end)
        Closed time intervals in which the alternate rate applies.
    """

    base: str = "Beta0"
    alternate: str = "Beta1"
    windows: Tuple[Tuple[float, float], ...] = ()

    def __post_init__(self):
        windows = tuple((float(a), float(b)) for a, b in self.windows)
        for a, b in windows:
            if b < a:
                raise ValueError(f"Window ({a}, {b}) ends before it starts")
        object.__setattr__(self, "windows", windows)

    def in_window(self, t: float) -> bool:
        return any(a <= t <= b for a, b in self.windows)

    def rate(self, params: ParamsLike, t: float) -> tf.Tensor:
        if self.in_window(t):
            return get_param(params, self.alternate)
        return get_param(params, self.base)

    def parameter_names(self) -> Tuple[str, ...]:
        if self.windows:
            return (self.base, self.alternate)
        return (self.base,)


class SIRModel(ProcessModel):
    """
    Closed-population stochastic SIR model.

    Parameters
    ----------
    windows : sequence of (start, end), optional
        Intervals in which the alternate transmission rate applies.
    accumulate : str, optional
        'incidence' counts S->I transitions in C, 'removal' counts I->R.
        Default 'incidence'.
    beta, beta_alt, gamma, population, initial_infected : str, optional
        Parameter names read from the parameter mapping.
    initial_recovered : str, optional
        Parameter name of the initial removed count. Default None (zero).

    Attributes
    ----------
    state_names : tuple
        ('S', 'I', 'R', 'C').
    accumulator_names : tuple
        ('C',).
    """

    state_names = ("S", "I", "R", "C")
    accumulator_names = ("C",)

    def __init__(self,
                 windows: Sequence[Tuple[float, float]] = (),
                 accumulate: str = "incidence",
                 beta: str = "Beta0",
                 beta_alt: str = "Beta1",
                 gamma: str = "Gamma",
                 population: str = "N",
                 initial_infected: str = "I0",
                 initial_recovered: Optional[str] = None) -> None:
        if accumulate not in ("incidence", "removal"):
            raise ValueError(f"accumulate must be 'incidence' or 'removal', got {accumulate!r}")
        self.schedule = TransmissionSchedule(beta, beta_alt, tuple(windows))
        self.accumulate = accumulate
        self.gamma = gamma
        self.population = population
        self.initial_infected = initial_infected
        self.initial_recovered = initial_recovered

    def __repr__(self) -> str:
        return (f"SIRModel(windows={self.schedule.windows}, "
                f"accumulate={self.accumulate!r})")

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        names = self.schedule.parameter_names() + (self.gamma, self.population, self.initial_infected)
        if self.initial_recovered is not None:
            names += (self.initial_recovered,)
        return names

    def init(self, params: ParamsLike, num_particles: int) -> tf.Tensor:
        shape = [num_particles]
        pop = tf.round(get_param(params, self.population))
        I0 = tf.round(get_param(params, self.initial_infected))
        if self.initial_recovered is not None:
            R0 = tf.round(get_param(params, self.initial_recovered))
        else:
            R0 = tf.zeros_like(I0)
        S0 = tf.maximum(pop - I0 - R0, 0.0)

        columns = [S0, I0, R0, tf.zeros_like(I0)]
        columns = [tf.broadcast_to(c, shape) for c in columns]
        return tf.stack(columns, axis=-1)

    def step(self, state, params, t, dt, generator):
        S, I, R, C = tf.unstack(state, num=4, axis=-1)
        pop = get_param(params, self.population)
        beta = self.schedule.rate(params, t)
        gamma = get_param(params, self.gamma)

        dN_SI = binomial_transitions(generator, S, beta * I / pop, dt)
        dN_IR = binomial_transitions(generator, I, gamma, dt)

        S = S - dN_SI
        I = I + dN_SI - dN_IR
        R = R + dN_IR
        C = C + (dN_SI if self.accumulate == "incidence" else dN_IR)
        return tf.stack([S, I, R, C], axis=-1)

"""
Parameter vectors and estimation-scale transforms.

Free parameters are optimized on an unconstrained scale. Each declares one
of three transforms, expressed as TensorFlow Probability bijectors whose
forward direction maps the estimation scale back to the natural scale:

- identity : all reals   <-> all reals     (tfb.Identity)
- log      : (0, inf)    <-> all reals     (tfb.Exp)
- logit    : (0, 1)      <-> all reals     (tfb.Sigmoid)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Dict, Iterator, Mapping, Sequence, Tuple, Union

import tensorflow as tf
import tensorflow_probability as tfp

from epinfer.exceptions import InvalidTransform

tfb = tfp.bijectors

TensorLike = Union[float, tf.Tensor]

TRANSFORMS = ("identity", "log", "logit")


def get_bijector(transform: str) -> tfb.Bijector:
    """
    Bijector mapping estimation scale (forward) to natural scale.

    Parameters
    ----------
    transform : str
        One of 'identity', 'log', 'logit'.

    Returns
    -------
    tfb.Bijector
    """
    if transform == "identity":
        return tfb.Identity()
    if transform == "log":
        return tfb.Exp()
    if transform == "logit":
        return tfb.Sigmoid()
    raise InvalidTransform(f"Unknown transform {transform!r}; expected one of {TRANSFORMS}")


def check_domain(name: str, transform: str, value: TensorLike) -> None:
    """Raise InvalidTransform if ``value`` lies outside the transform's domain."""
    x = tf.convert_to_tensor(value, dtype=tf.float64)
    if not bool(tf.reduce_all(tf.math.is_finite(x))):
        raise InvalidTransform(f"Parameter {name!r} is not finite: {x.numpy()}")
    if transform == "log" and not bool(tf.reduce_all(x > 0.0)):
        raise InvalidTransform(f"log transform of {name!r} requires positive values, got {x.numpy()}")
    if transform == "logit" and not bool(tf.reduce_all((x > 0.0) & (x < 1.0))):
        raise InvalidTransform(f"logit transform of {name!r} requires values in (0, 1), got {x.numpy()}")


def to_estimation_scale(value: TensorLike, transform: str, name: str = "parameter") -> tf.Tensor:
    """Map a natural-scale value to the unconstrained estimation scale."""
    bijector = get_bijector(transform)
    check_domain(name, transform, value)
    return bijector.inverse(tf.convert_to_tensor(value, dtype=tf.float64))


# Largest natural-scale values still strictly inside each open domain
_FLOAT64_MAX = sys.float_info.max
_FLOAT64_TINY = sys.float_info.min
_NATURAL_BOUNDS = {
    "identity": (-_FLOAT64_MAX, _FLOAT64_MAX),
    "log": (_FLOAT64_TINY, _FLOAT64_MAX),
    "logit": (_FLOAT64_TINY, 1.0 - 2.0 ** -53),
}


def from_estimation_scale(value: TensorLike, transform: str) -> tf.Tensor:
    """
    Map an estimation-scale value back to the natural scale.

    Large estimation-scale values saturate in float64 (exp overflows, the
    sigmoid rounds to 1), so the result is clipped into the open domain of
    the transform and always passes ``check_domain``.
    """
    natural = get_bijector(transform).forward(tf.convert_to_tensor(value, dtype=tf.float64))
    lower, upper = _NATURAL_BOUNDS[transform]
    return tf.clip_by_value(natural, lower, upper)



class ParameterVector(Mapping[str, float]):
    """
    Immutable mapping from parameter name to real value.

    Examples
    --------
    >>> theta = ParameterVector({"Beta0": 1.5, "Gamma": 0.5})
    >>> theta.replace(Gamma=0.4)["Gamma"]
    0.4
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, TensorLike] = (), **kwargs: TensorLike):
        merged = dict(values)
        merged.update(kwargs)
        self._values = {name: float(v) for name, v in merged.items()}

    def __getitem__(self, name: str) -> float:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v:.6g}" for k, v in self._values.items())
        return f"ParameterVector({inner})"

    def replace(self, values: Mapping[str, TensorLike] = (), **kwargs: TensorLike) -> "ParameterVector":
        """Copy with some values replaced or added."""
        merged = dict(self._values)
        merged.update({k: float(v) for k, v in dict(values).items()})
        merged.update({k: float(v) for k, v in kwargs.items()})
        return ParameterVector(merged)

    def as_dict(self) -> Dict[str, float]:
        return dict(self._values)

    def as_tensors(self) -> Dict[str, tf.Tensor]:
        """Scalar float64 tensors, the form process and measurement models read."""
        return {k: tf.constant(v, dtype=tf.float64) for k, v in self._values.items()}


@dataclass(frozen=True)
class ParameterSpace:
    """
    Partition of parameters into free (estimated) and fixed subsets.

    Parameters
    ----------
    transforms : dict
        Free parameter name -> transform name. Every other parameter in a
        ParameterVector is treated as fixed.
    """

    transforms: Mapping[str, str]

    def __post_init__(self):
        for name, transform in self.transforms.items():
            if transform not in TRANSFORMS:
                raise InvalidTransform(
                    f"Unknown transform {transform!r} for {name!r}; expected one of {TRANSFORMS}"
                )
        object.__setattr__(self, "transforms", dict(self.transforms))

    @property
    def free_names(self) -> Tuple[str, ...]:
        return tuple(self.transforms)

    @property
    def dim(self) -> int:
        return len(self.transforms)

    def fixed_names(self, params: Mapping[str, float]) -> Tuple[str, ...]:
        return tuple(name for name in params if name not in self.transforms)

    def without(self, names: Union[str, Sequence[str]]) -> "ParameterSpace":
        """Space with ``names`` moved to the fixed subset."""
        if isinstance(names, str):
            names = (names,)
        return ParameterSpace({k: v for k, v in self.transforms.items() if k not in names})

    def validate(self, params: Mapping[str, TensorLike]) -> None:
        """Check that every free parameter is present and inside its domain."""
        for name, transform in self.transforms.items():
            if name not in params:
                raise KeyError(f"Free parameter {name!r} missing from parameter vector")
            check_domain(name, transform, params[name])

    def to_estimation(self, params: Mapping[str, TensorLike]) -> tf.Tensor:
        """
        Stack free parameters on the estimation scale.

        Parameters
        ----------
        params : mapping
            Natural-scale values, scalars or tensors of shape (N,).

        Returns
        -------
        tf.Tensor
            Shape (n_free,) for scalar input, (N, n_free) for per-particle input.
        """
        columns = [
            to_estimation_scale(params[name], transform, name)
            for name, transform in self.transforms.items()
        ]
        if not columns:
            return tf.zeros([0], dtype=tf.float64)
        return tf.stack(columns, axis=-1)

    def from_estimation(self, theta: tf.Tensor) -> Dict[str, tf.Tensor]:
        """
        Split an estimation-scale tensor into natural-scale columns.

        Parameters
        ----------
        theta : tf.Tensor
            Shape (n_free,) or (N, n_free).

        Returns
        -------
        dict
            Free parameter name -> natural-scale tensor of shape () or (N,).
        """
        theta = tf.convert_to_tensor(theta, dtype=tf.float64)
        return {
            name: from_estimation_scale(theta[..., j], transform)
            for j, (name, transform) in enumerate(self.transforms.items())
        }

    def vector(self, theta: tf.Tensor, base: Mapping[str, float]) -> ParameterVector:
        """ParameterVector from a 1-D estimation-scale point, fixed values from ``base``."""
        return ParameterVector(base).replace(
            {name: float(v) for name, v in self.from_estimation(theta).items()}
        )

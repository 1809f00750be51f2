"""
Monte Carlo adjusted profile (MCAP) confidence intervals.

Profile log-likelihood points estimated by particle filtering are noisy. MCAP
smooths them with a local quadratic loess, fits a weighted quadratic near the
smoothed maximum, and widens the usual chi-square cutoff by the Monte Carlo
variance of the quadratic's vertex.

References
----------
- Ionides, E. L., Breto, C., Park, J., Smith, R. A., & King, A. A. (2017).
  "Monte Carlo profile confidence intervals for dynamic systems".
  J. R. Soc. Interface 14: 20170126.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence, Union

import tensorflow as tf
import tensorflow_probability as tfp

from epinfer.exceptions import DegenerateProfile
from epinfer.utils.linalg import local_quadratic_smooth, tricube, weighted_least_squares

tfd = tfp.distributions

ArrayLike = Union[Sequence[float], tf.Tensor]


@dataclass
class MCAPResult:
    """
    Smoothed profile and the interval derived from it.

    Attributes
    ----------
    lower, upper : float
        Confidence interval bounds.
    delta : float
        Log-likelihood drop that defines the interval.
    quadratic_max : float
        Vertex b / (2a) of the local quadratic.
    smooth_arg_max : float
        Grid point maximizing the loess smooth.
    se_stat, se_mc, se : float
        Statistical, Monte Carlo and total standard errors.
    parameter_grid, smoothed, quadratic : tf.Tensor
        Fine grid with the loess smooth and the fitted quadratic on it.
    """
    lower: float
    upper: float
    delta: float
    quadratic_max: float
    smooth_arg_max: float
    se_stat: float
    se_mc: float
    se: float
    parameter_grid: tf.Tensor
    smoothed: tf.Tensor
    quadratic: tf.Tensor


def chi2_quantile_1df(confidence: float) -> float:
    """Quantile of the chi-square distribution with one degree of freedom."""
    z = tfd.Normal(tf.constant(0.0, tf.float64), tf.constant(1.0, tf.float64)).quantile(
        tf.constant((1.0 + confidence) / 2.0, tf.float64))
    return float(z) ** 2


def mcap(loglik: ArrayLike, parameter: ArrayLike, confidence: float = 0.95,
         lambda_: float = 0.75, n_grid: int = 1000) -> MCAPResult:
    """
    MCAP interval from profile points.

    Parameters
    ----------
    loglik : array-like
        Profile log-likelihood estimates.
    parameter : array-like
        Profiled parameter values, same length as ``loglik``.
    confidence : float, optional
        Confidence level. Default 0.95.
    lambda_ : float, optional
        Loess span, also the fraction of points used in the quadratic fit.
        Default 0.75.
    n_grid : int, optional
        Resolution of the smoothing grid. Default 1000.

    Returns
    -------
    MCAPResult

    Raises
    ------
    DegenerateProfile
        Too few points for the smoother or the quadratic, or a quadratic that
        is not concave.
    """
    loglik = tf.reshape(tf.convert_to_tensor(loglik, dtype=tf.float64), [-1])
    parameter = tf.reshape(tf.convert_to_tensor(parameter, dtype=tf.float64), [-1])
    if int(tf.size(loglik)) != int(tf.size(parameter)):
        raise ValueError(f"{int(tf.size(loglik))} log-likelihoods for "
                         f"{int(tf.size(parameter))} parameter values")
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must lie in (0, 1), got {confidence}")

    finite = tf.math.is_finite(loglik) & tf.math.is_finite(parameter)
    loglik = tf.boolean_mask(loglik, finite)
    parameter = tf.boolean_mask(parameter, finite)
    n = int(tf.size(loglik))
    if int(lambda_ * n) < 4:
        raise DegenerateProfile(f"{n} profile points are too few for span {lambda_}")

    grid = tf.linspace(tf.reduce_min(parameter), tf.reduce_max(parameter), n_grid)
    smoothed = local_quadratic_smooth(parameter, loglik, grid, lambda_)
    arg_max = int(tf.argmax(smoothed))
    smooth_arg_max = float(grid[arg_max])

    # Quadratic neighbourhood: distances strictly below the lambda-quantile
    dist = tf.abs(parameter - smooth_arg_max)
    cutoff = tf.sort(dist)[int(lambda_ * n) - 1]
    included = dist < cutoff
    if int(tf.math.count_nonzero(included)) < 2:
        raise DegenerateProfile("Too few profile points near the smoothed maximum")
    max_dist = tf.reduce_max(tf.boolean_mask(dist, included))
    weights = tf.where(included, tricube(dist / max_dist), tf.zeros_like(dist))

    design = tf.stack([tf.ones_like(parameter), parameter, -parameter ** 2], axis=1)
    beta, vcov, _, df = weighted_least_squares(design, loglik, weights)
    if df < 1:
        raise DegenerateProfile(f"Only {df + 3} weighted points for a three-term quadratic")
    b, a = float(beta[1]), float(beta[2])
    if not a > 0.0:
        raise DegenerateProfile(f"Profile is not concave near its maximum (a={a:.4g})")

    var_b, var_a, cov_ab = float(vcov[1, 1]), float(vcov[2, 2]), float(vcov[1, 2])
    se_mc2 = (var_b - 2.0 * (b / a) * cov_ab + (b / a) ** 2 * var_a) / (4.0 * a ** 2)
    se_mc2 = max(se_mc2, 0.0)
    se_stat2 = 1.0 / (2.0 * a)
    delta = chi2_quantile_1df(confidence) * (a * se_mc2 + 0.5)

    inside = tf.boolean_mask(grid, tf.reduce_max(smoothed) - smoothed < delta)
    quadratic = float(beta[0]) + b * grid - a * grid ** 2

    return MCAPResult(
        lower=float(tf.reduce_min(inside)),
        upper=float(tf.reduce_max(inside)),
        delta=delta,
        quadratic_max=b / (2.0 * a),
        smooth_arg_max=smooth_arg_max,
        se_stat=math.sqrt(se_stat2),
        se_mc=math.sqrt(se_mc2),
        se=math.sqrt(se_stat2 + se_mc2),
        parameter_grid=grid,
        smoothed=smoothed,
        quadratic=quadratic,
    )

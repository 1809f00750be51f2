"""
Particle filter metrics: weight degeneracy and likelihood reductions.

This module provides the effective sample size (ESS), weight entropy, and the
log-mean-exp reduction used to combine replicate log-likelihood estimates.
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple, Union

import tensorflow as tf

ArrayLike = Union[Sequence[float], tf.Tensor]


def normalize_log_weights(log_weights: ArrayLike) -> tf.Tensor:
    """
    Normalized weights from log-weights (a numerically stable softmax).

    Parameters
    ----------
    log_weights : tf.Tensor
        Unnormalized log-weights of shape (N,). Entries may be -inf.

    Returns
    -------
    tf.Tensor
        Weights of shape (N,) summing to one.
    """
    log_weights = tf.convert_to_tensor(log_weights, dtype=tf.float64)
    return tf.nn.softmax(log_weights)


def compute_effective_sample_size(weights: ArrayLike) -> tf.Tensor:
    """
    Compute Effective Sample Size (ESS) for normalized particle weights.

        ESS = 1 / sum(w_i^2)

    ESS ranges from 1 (one particle has all weight) to N (uniform weights).

    Examples
    --------
    >>> weights = tf.constant([0.1, 0.2, 0.3, 0.4], dtype=tf.float64)
    >>> print(f"ESS: {float(compute_effective_sample_size(weights)):.2f}")
    ESS: 3.33
    """
    weights = tf.convert_to_tensor(weights, dtype=tf.float64)
    return 1.0 / tf.reduce_sum(weights ** 2)


def compute_weight_entropy(weights: ArrayLike, normalize: bool = True) -> tf.Tensor:
    """
    Shannon entropy of the particle weight distribution.

    Parameters
    ----------
    weights : tf.Tensor
        Normalized particle weights of shape (num_particles,).
    normalize : bool, optional
        If True, returns H / log(N) in [0, 1]. Defaults to True.
    """
    weights = tf.convert_to_tensor(weights, dtype=tf.float64)
    entropy = -tf.reduce_sum(tf.math.xlogy(weights, weights))
    if normalize:
        num_particles = tf.cast(tf.size(weights), tf.float64)
        max_entropy = tf.math.log(num_particles)
        if float(max_entropy) <= 0.0:
            return tf.constant(0.0, dtype=tf.float64)
        entropy = entropy / max_entropy
    return entropy


def logmeanexp(x: ArrayLike, se: bool = False) -> Union[float, Tuple[float, float]]:
    """
    Log of the mean of exponentials, computed stably.

        logmeanexp(x) = log(mean(exp(x - max(x)))) + max(x)

    Parameters
    ----------
    x : array-like
        Replicate log-likelihood estimates (or per-particle log-weights).
    se : bool, optional
        Also return a delta-method standard error,
        sd(exp(x - m)) / mean(exp(x - m)), using the sample standard
        deviation. Zero for a single replicate. Default False.

    Returns
    -------
    float or (float, float)
        The estimate, or the estimate and its standard error.
    """
    x = tf.reshape(tf.convert_to_tensor(x, dtype=tf.float64), [-1])
    n = int(tf.size(x))
    if n == 0:
        raise ValueError("logmeanexp of an empty sequence")

    m = tf.reduce_max(x)
    if not math.isfinite(float(m)):
        # All -inf (or a +inf/NaN entry): nothing to rescale by
        value = float(m)
        return (value, float("nan")) if se else value

    scaled = tf.exp(x - m)
    mean = tf.reduce_mean(scaled)
    value = float(tf.math.log(mean) + m)
    if not se:
        return value

    if n < 2:
        return value, 0.0
    sd = tf.math.sqrt(tf.reduce_sum(tf.square(scaled - mean)) / (n - 1))
    return value, float(sd / mean)

"""
Resampling algorithms for particle filters.

This module provides the resampling strategies used by the particle filter
and the iterated filter to address weight degeneracy.

Supported Methods
-----------------
- Systematic: Low variance, O(N), most commonly used
- Multinomial: Simple but higher variance
- Stratified: Balance between systematic and multinomial
- Residual: Deterministic + stochastic hybrid

Every function draws from an explicit ``tf.random.Generator`` so that a
worker's results depend only on its own random substream.

Key Concept: Effective Sample Size (ESS)
----------------------------------------
ESS = 1 / Σᵢ(wᵢ)² measures how many particles have significant weight.
- ESS = N: All weights equal (ideal)
- ESS = 1: One particle has all weight (severe degeneracy)

References
----------
- Douc, R., Cappe, O., & Moulines, E. (2005). "Comparison of resampling schemes"
- Liu, J. S., & Chen, R. (1998). "Sequential Monte Carlo methods"
"""

from __future__ import annotations

from typing import Sequence

import tensorflow as tf


def _normalize(weights: tf.Tensor) -> tf.Tensor:
    weights = tf.convert_to_tensor(weights, dtype=tf.float64)
    return weights / tf.reduce_sum(weights)


def _search(weights: tf.Tensor, positions: tf.Tensor) -> tf.Tensor:
    """Indices whose cumulative-weight interval contains each position."""
    N = tf.shape(weights)[0]
    cumsum = tf.cumsum(weights)
    indices = tf.searchsorted(cumsum, positions, side='right', out_type=tf.int32)
    return tf.minimum(indices, N - 1)


def systematic_resample(weights: tf.Tensor, generator: tf.random.Generator) -> tf.Tensor:
    """
    Systematic resampling with low variance.

    Parameters
    ----------
    weights : tf.Tensor
        Particle weights of shape (N,); normalized internally.
    generator : tf.random.Generator
        Source of the single uniform offset.

    Returns
    -------
    tf.Tensor
        Resampled indices of shape (N,), dtype int32.

    Notes
    -----
    Positions are ``(u + i) / N`` with a single ``u ~ Uniform(0, 1)``.
    """
    weights = _normalize(weights)
    N = tf.shape(weights)[0]
    N_float = tf.cast(N, tf.float64)
    u = generator.uniform([], dtype=tf.float64)
    positions = (u + tf.cast(tf.range(N), tf.float64)) / N_float
    return _search(weights, positions)


def multinomial_resample(weights: tf.Tensor, generator: tf.random.Generator) -> tf.Tensor:
    """
    Multinomial resampling.

    Draws N independent indices with probability proportional to weight,
    by inverting the cumulative weights at N uniform positions.
    """
    weights = _normalize(weights)
    N = tf.shape(weights)[0]
    positions = generator.uniform([N], dtype=tf.float64)
    return _search(weights, positions)


def stratified_resample(weights: tf.Tensor, generator: tf.random.Generator) -> tf.Tensor:
    """
    Stratified resampling.

    Divides the CDF into N equal strata and samples one particle per stratum.
    """
    weights = _normalize(weights)
    N = tf.shape(weights)[0]
    N_float = tf.cast(N, tf.float64)
    u = generator.uniform([N], dtype=tf.float64)
    positions = (tf.cast(tf.range(N), tf.float64) + u) / N_float
    return _search(weights, positions)


def residual_resample(weights: tf.Tensor, generator: tf.random.Generator) -> tf.Tensor:
    """
    Residual resampling (Liu & Chen, 1998).

    Copies floor(N * w_i) of each particle deterministically, then fills the
    remaining slots multinomially from the residual weights.
    """
    weights = _normalize(weights)
    N = tf.shape(weights)[0]
    expected = tf.cast(N, tf.float64) * weights
    copies = tf.cast(tf.floor(expected), tf.int32)

    deterministic = tf.repeat(tf.range(N, dtype=tf.int32), copies)
    n_residual = N - tf.shape(deterministic)[0]
    if int(n_residual) == 0:
        return deterministic

    residual = expected - tf.cast(copies, tf.float64)
    residual = residual / tf.reduce_sum(residual)
    positions = generator.uniform([n_residual], dtype=tf.float64)
    stochastic = _search(residual, positions)
    return tf.concat([deterministic, stochastic], axis=0)


RESAMPLERS = {
    'systematic': systematic_resample,
    'multinomial': multinomial_resample,
    'stratified': stratified_resample,
    'residual': residual_resample,
}


def resample_indices(weights: tf.Tensor, generator: tf.random.Generator,
                     method: str = 'systematic') -> tf.Tensor:
    """
    Resampling indices using the named method.

    Raises
    ------
    ValueError
        If ``method`` is unknown.
    """
    try:
        resampler = RESAMPLERS[method]
    except KeyError:
        raise ValueError(f"Unknown resampling method: {method}") from None
    return resampler(weights, generator)


def resample_particles(
    particles: Sequence[tf.Tensor],
    weights: tf.Tensor,
    generator: tf.random.Generator,
    method: str = 'systematic'
) -> tuple[list[tf.Tensor], tf.Tensor]:
    """
    Resample one or more aligned particle arrays.

    The same indices are applied to every array, so state particles and
    parameter particles stay paired.

    Parameters
    ----------
    particles : sequence of tf.Tensor
        Arrays with leading dimension N.
    weights : tf.Tensor
        Particle weights of shape (N,).
    generator : tf.random.Generator
        Source of randomness.
    method : str, optional
        Resampling method. Default 'systematic'.

    Returns
    -------
    resampled : list of tf.Tensor
        Resampled arrays, same shapes as the inputs.
    indices : tf.Tensor
        The ancestor indices used.
    """
    indices = resample_indices(weights, generator, method)
    return [tf.gather(p, indices) for p in particles], indices


def compute_ess(weights: tf.Tensor) -> tf.Tensor:
    """
    Compute Effective Sample Size (ESS) of (possibly unnormalized) weights.

    ESS = 1 / sum(w_i^2) for normalized weights; ranges from 1 (complete
    degeneracy) to N (uniform weights).
    """
    weights = _normalize(weights)
    return 1.0 / tf.reduce_sum(tf.square(weights))


def should_resample(weights: tf.Tensor, threshold: float = 0.5) -> bool:
    """
    True when ESS falls below ``threshold * N``.

    A threshold of 1.0 or more resamples at every step.
    """
    if threshold >= 1.0:
        return True
    N = tf.shape(weights)[0]
    ess = compute_ess(weights)
    return bool(ess < threshold * tf.cast(N, tf.float64))

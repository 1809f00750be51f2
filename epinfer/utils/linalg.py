"""
Linear algebra utilities for profile smoothing and quadratic fitting.

This module provides the weighted least-squares solve and the local
quadratic (loess) smoother used by the Monte Carlo adjusted profile.
All computations are in float64.
"""

from __future__ import annotations

from typing import Tuple

import tensorflow as tf


def tricube(u: tf.Tensor) -> tf.Tensor:
    """
    Tricube kernel (1 - |u|^3)^3 for |u| < 1, zero elsewhere.

    Parameters
    ----------
    u : tf.Tensor
        Scaled distances.

    Returns
    -------
    tf.Tensor
        Kernel weights with the shape of ``u``.
    """
    u = tf.abs(tf.convert_to_tensor(u, dtype=tf.float64))
    w = (1.0 - u ** 3) ** 3
    return tf.where(u < 1.0, w, tf.zeros_like(w))


def ensure_symmetric(matrix: tf.Tensor) -> tf.Tensor:
    """Symmetrize a matrix: 0.5 * (A + A^T)."""
    return 0.5 * (matrix + tf.linalg.matrix_transpose(matrix))


def weighted_least_squares(
    X: tf.Tensor,
    y: tf.Tensor,
    w: tf.Tensor
) -> Tuple[tf.Tensor, tf.Tensor, float, int]:
    """
    Solve min_beta sum_i w_i (y_i - X_i beta)^2.

    Rows with zero weight do not count towards the residual degrees of
    freedom.

    Parameters
    ----------
    X : tf.Tensor
        Design matrix of shape (n, p).
    y : tf.Tensor
        Responses of shape (n,).
    w : tf.Tensor
        Non-negative weights of shape (n,).

    Returns
    -------
    beta : tf.Tensor
        Coefficients of shape (p,).
    vcov : tf.Tensor
        sigma^2 (X^T W X)^{-1}, shape (p, p). NaN when there are no residual
        degrees of freedom.
    sigma2 : float
        Weighted residual variance sum(w r^2) / (n_pos - p).
    df : int
        Residual degrees of freedom n_pos - p.
    """
    X = tf.convert_to_tensor(X, dtype=tf.float64)
    y = tf.convert_to_tensor(y, dtype=tf.float64)
    w = tf.convert_to_tensor(w, dtype=tf.float64)

    XtW = tf.transpose(X) * w[tf.newaxis, :]
    gram = ensure_symmetric(XtW @ X)
    beta = tf.linalg.solve(gram, (XtW @ y[:, tf.newaxis]))[:, 0]

    residuals = y - tf.linalg.matvec(X, beta)
    n_pos = int(tf.math.count_nonzero(w > 0.0))
    df = n_pos - int(X.shape[1])
    if df > 0:
        sigma2 = float(tf.reduce_sum(w * residuals ** 2)) / df
    else:
        sigma2 = float("nan")
    vcov = sigma2 * ensure_symmetric(tf.linalg.inv(gram))
    return beta, vcov, sigma2, df


def local_quadratic_smooth(
    x: tf.Tensor,
    y: tf.Tensor,
    x_new: tf.Tensor,
    span: float
) -> tf.Tensor:
    """
    Degree-2 loess with tricube weights, evaluated at ``x_new``.

    Each evaluation point uses its ``q = floor(span * n)`` nearest
    neighbours; the bandwidth is the distance to the q-th of them. All
    evaluation points are solved as one batch.

    Parameters
    ----------
    x, y : tf.Tensor
        Data of shape (n,).
    x_new : tf.Tensor
        Evaluation points of shape (m,).
    span : float
        Fraction of points in each neighbourhood.

    Returns
    -------
    tf.Tensor
        Smoothed values of shape (m,).

    Raises
    ------
    ValueError
        If the neighbourhood holds fewer than four points.
    """
    x = tf.convert_to_tensor(x, dtype=tf.float64)
    y = tf.convert_to_tensor(y, dtype=tf.float64)
    x_new = tf.convert_to_tensor(x_new, dtype=tf.float64)
    n = int(tf.size(x))
    q = min(int(span * n), n)
    if q < 4:
        raise ValueError(f"Neighbourhood of {q} points is too small for a local quadratic")

    dx = x[tf.newaxis, :] - x_new[:, tf.newaxis]                      # (m, n)
    dist = tf.abs(dx)
    h = tf.sort(dist, axis=1)[:, q - 1]
    h = tf.maximum(h, tf.constant(1e-12, tf.float64))
    w = tricube(dist / h[:, tf.newaxis])                               # (m, n)

    u = dx / h[:, tf.newaxis]
    design = tf.stack([tf.ones_like(u), u, u ** 2], axis=-1)           # (m, n, 3)
    XtW = tf.linalg.matrix_transpose(design) * w[:, tf.newaxis, :]     # (m, 3, n)
    gram = XtW @ design                                                # (m, 3, 3)
    rhs = XtW @ tf.broadcast_to(y[tf.newaxis, :, tf.newaxis], [tf.shape(x_new)[0], n, 1])
    beta = tf.linalg.solve(gram, rhs)                                  # (m, 3, 1)
    return beta[:, 0, 0]

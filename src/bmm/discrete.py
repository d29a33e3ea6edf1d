"""
Discrete (categorical) and Bernoulli helpers.

A responsibility is a normalised probability vector over the K clusters,
stored as the last axis of an (N, K) array. Hard labels only appear when the
final assignment is extracted with ``most_likely``.
"""

import jax
import jax.numpy as jnp
from jax.nn import logsumexp
from typing import Tuple

# Smallest positive normal float64; responsibilities never drop below it.
TINY = float(jnp.finfo(jnp.float64).tiny)


def normalize_log_weights(log_w: jnp.ndarray, axis: int = -1) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Normalise unnormalised log-weights with the log-sum-exp trick.

    The maximum along ``axis`` is subtracted before exponentiating, so rows
    with very negative log-weights do not underflow to all zeros.

    Args:
        log_w: unnormalised log-weights, shape (..., K)
        axis: axis holding the K categories

    Returns:
        probs: normalised probabilities, all entries > 0, shape (..., K)
        log_norm: log Σₖ exp(log_w), shape (...)
    """
    max_w = jnp.max(log_w, axis=axis, keepdims=True)
    w = jnp.exp(log_w - max_w)
    probs = w / jnp.sum(w, axis=axis, keepdims=True)
    # An extremely unlikely cluster can still underflow; keep it strictly positive.
    probs = jnp.maximum(probs, TINY)
    probs = probs / jnp.sum(probs, axis=axis, keepdims=True)
    log_norm = logsumexp(log_w, axis=axis)
    return probs, log_norm


def uniform(num_points: int, num_categories: int) -> jnp.ndarray:
    """Responsibilities that put equal mass 1/K on every cluster."""
    return jnp.full((num_points, num_categories), 1.0 / num_categories, dtype=jnp.float64)


def point_mass(index, num_categories: int) -> jnp.ndarray:
    """One-hot distribution(s) at ``index``."""
    return jax.nn.one_hot(index, num_categories, dtype=jnp.float64)


def random_point_masses(key: jax.Array, num_points: int, num_categories: int) -> jnp.ndarray:
    """Assign every point to a uniformly random cluster, as one-hot responsibilities."""
    labels = jax.random.randint(key, (num_points,), 0, num_categories)
    return point_mass(labels, num_categories)


def most_likely(responsibilities: jnp.ndarray) -> jnp.ndarray:
    """Most likely cluster per row."""
    return jnp.argmax(responsibilities, axis=-1)


def bernoulli_log_prob(x: jnp.ndarray, theta: jnp.ndarray) -> jnp.ndarray:
    """
    Log-likelihood of binary rows under independent Bernoulli features.

    Args:
        x: (N, D) binary data
        theta: (K, D) success probabilities, strictly inside (0, 1)

    Returns:
        (N, K) array of Σ_d [x log θ + (1 - x) log(1 - θ)]
    """
    return x @ jnp.log(theta).T + (1.0 - x) @ jnp.log1p(-theta).T

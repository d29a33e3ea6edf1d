"""
E-step: per-point responsibilities under the current global posterior.

For cluster k the unnormalised log-weight of a binary row x is

    log wₖ = E[log πₖ] + Σ_d [ x_d E[log θₖd] + (1 - x_d) E[log(1 - θₖd)] ]

with digamma expectations under the Dirichlet and Beta posteriors. Rows only
read the global state, so the row function is vmapped over the batch.
"""

import jax
import jax.numpy as jnp
import numpy as np
from typing import Optional, Tuple

from src.bmm import beta, dirichlet
from src.bmm.discrete import normalize_log_weights
from src.bmm.errors import InferenceDiverged
from src.bmm.state import GlobalState


def expected_log_params(state: GlobalState) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    """
    Returns:
        E_log_pi: (K,)
        E_log_theta: (K, D)
        E_log_1m_theta: (K, D)
    """
    E_log_pi = dirichlet.expected_log_mixing_weights(state.pi)
    stats = beta.expected_sufficient_stats(state.theta)
    return E_log_pi, stats.E_log_theta, stats.E_log_1m_theta


def row_log_weights(
    x_row: jnp.ndarray,
    E_log_pi: jnp.ndarray,
    E_log_theta: jnp.ndarray,
    E_log_1m_theta: jnp.ndarray,
) -> jnp.ndarray:
    """Unnormalised log-weights (K,) of one row x_row (D,)."""
    ll = jnp.sum(x_row * E_log_theta + (1.0 - x_row) * E_log_1m_theta, axis=-1)  # (K,)
    return E_log_pi + ll


_batched_log_weights = jax.jit(jax.vmap(row_log_weights, in_axes=(0, None, None, None)))


def compute_log_weights(x: jnp.ndarray, state: GlobalState) -> jnp.ndarray:
    """
    Args:
        x: (N, D) binary data as floats
        state: global posterior

    Returns:
        (N, K) unnormalised log-weights
    """
    return _batched_log_weights(jnp.asarray(x, dtype=jnp.float64), *expected_log_params(state))


def compute_responsibilities(
    x: jnp.ndarray,
    state: GlobalState,
    iteration: Optional[int] = None,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Responsibilities of every row.

    Args:
        x: (N, D) binary data
        state: global posterior, read only
        iteration: iteration index reported if inference diverges

    Returns:
        r: (N, K) responsibilities, rows sum to one, entries > 0
        log_norm: (N,) log normaliser of each row

    Raises:
        InferenceDiverged: if a log-weight or normaliser is NaN or infinite.
    """
    log_w = compute_log_weights(x, state)
    if not np.all(np.isfinite(np.asarray(log_w))):
        raise InferenceDiverged("non-finite log-weight in E-step", iteration=iteration)
    r, log_norm = normalize_log_weights(log_w)
    if not np.all(np.isfinite(np.asarray(log_norm))):
        raise InferenceDiverged("non-finite normaliser in E-step", iteration=iteration)
    return r, log_norm

"""
M-step: aggregate expected sufficient statistics and apply conjugate updates.

    Nₖ   = Σᵢ rᵢₖ
    Sₖd  = Σᵢ rᵢₖ xᵢd
    Fₖd  = Nₖ - Sₖd

    α' = α + N,   a' = a + S,   b' = b + F

The updates are a reduction over rows and always produce a fresh
GlobalState; the prior passed in is never modified.
"""

import jax.numpy as jnp
import numpy as np
from typing import NamedTuple

from src.bmm import beta, dirichlet
from src.bmm.beta import BetaParams
from src.bmm.errors import DegenerateBatch
from src.bmm.state import GlobalState, clamp_state


class SufficientStats(NamedTuple):
    """Expected sufficient statistics of one batch."""
    counts: jnp.ndarray     # (K,)
    successes: jnp.ndarray  # (K, D)
    failures: jnp.ndarray   # (K, D)


def expected_sufficient_stats(x: jnp.ndarray, r: jnp.ndarray) -> SufficientStats:
    """
    Args:
        x: (N, D) binary data
        r: (N, K) responsibilities

    Returns:
        SufficientStats
    """
    x = jnp.asarray(x, dtype=jnp.float64)
    counts = jnp.sum(r, axis=0)
    successes = r.T @ x
    # Rounding can leave Nₖ - Sₖd a hair below zero.
    failures = jnp.maximum(counts[:, None] - successes, 0.0)
    return SufficientStats(counts=counts, successes=successes, failures=failures)


def degenerate_features(x: jnp.ndarray, num_clusters: int) -> np.ndarray:
    """
    Features a batch cannot inform.

    Every feature is degenerate when the batch has fewer than K rows;
    otherwise the constant columns are.

    Returns:
        (D,) boolean mask, True where the prior must be kept.
    """
    x = np.asarray(x)
    num_rows, num_features = x.shape
    if num_rows < num_clusters:
        return np.ones(num_features, dtype=bool)
    return np.all(x == x[:1], axis=0)


def check_batch(x: jnp.ndarray, num_clusters: int) -> None:
    """Raise DegenerateBatch if some features cannot be updated from this batch."""
    mask = degenerate_features(x, num_clusters)
    if not mask.any():
        return
    num_rows = np.asarray(x).shape[0]
    if num_rows < num_clusters:
        raise DegenerateBatch(
            f"batch has {num_rows} rows, fewer than {num_clusters} clusters", features=mask
        )
    raise DegenerateBatch(
        f"constant feature columns {np.flatnonzero(mask).tolist()}", features=mask
    )


def update_state(
    prior: GlobalState,
    x: jnp.ndarray,
    r: jnp.ndarray,
    skip_degenerate: bool = False,
    eps: float = 1e-6,
) -> GlobalState:
    """
    Conjugate update of pi and theta from one batch.

    Args:
        prior: prior for this batch (global prior in batch mode, the running
            posterior in online mode)
        x: (N, D) binary data
        r: (N, K) responsibilities
        skip_degenerate: keep the prior for features flagged by
            ``degenerate_features``
        eps: floor applied to the prior before updating

    Returns:
        Posterior GlobalState
    """
    prior = clamp_state(prior, eps)
    stats = expected_sufficient_stats(x, r)

    pi = dirichlet.update(prior.pi, stats.counts)
    theta = beta.update(prior.theta, stats.successes, stats.failures)

    if skip_degenerate:
        mask = degenerate_features(x, prior.num_clusters)
        if mask.any():
            mask = jnp.asarray(mask)[None, :]
            theta = BetaParams(
                a=jnp.where(mask, prior.theta.a, theta.a),
                b=jnp.where(mask, prior.theta.b, theta.b),
            )

    return GlobalState(pi=pi, theta=theta)

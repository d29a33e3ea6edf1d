"""Inference results and helpers to read them."""

import enum
import itertools

import jax.numpy as jnp
import numpy as np
from scipy.optimize import linear_sum_assignment
from typing import NamedTuple, Tuple

from src.bmm.beta import BetaParams
from src.bmm.dirichlet import DirichletParams
from src.bmm.discrete import bernoulli_log_prob, most_likely
from src.bmm.state import GlobalState, state_means


class InferenceStatus(enum.Enum):
    CONVERGED = "converged"
    ITERATION_LIMIT = "iteration_limit"
    INTERRUPTED = "interrupted"  # stopped between iterations by the caller


class EPTrace(NamedTuple):
    """Convergence history of one batch."""
    num_iterations: int
    deltas: Tuple[float, ...]  # max relative parameter change per iteration
    elbo: Tuple[float, ...]    # empty unless compute_elbo was set
    status: InferenceStatus


class BMMResult(NamedTuple):
    """Posterior over the mixture plus per-point responsibilities."""
    pi: DirichletParams            # (K,) posterior over mixing weights
    theta: BetaParams              # (K, D) posterior over feature probabilities
    responsibilities: jnp.ndarray  # (N, K), rows sum to one
    status: InferenceStatus
    num_iterations: int            # summed over batches in online mode
    traces: Tuple[EPTrace, ...]    # one per batch

    @property
    def state(self) -> GlobalState:
        return GlobalState(pi=self.pi, theta=self.theta)

    @property
    def converged(self) -> bool:
        return self.status is InferenceStatus.CONVERGED


def assigned_clusters(result: BMMResult) -> np.ndarray:
    """Most likely cluster of every point."""
    return np.asarray(most_likely(result.responsibilities))


def posterior_means(result: BMMResult) -> Tuple[np.ndarray, np.ndarray]:
    """(K,) expected mixing weights and (K, D) expected feature probabilities."""
    weights, theta = state_means(result.state)
    return np.asarray(weights), np.asarray(theta)


def heldout_log_likelihood(x, result: BMMResult) -> float:
    """
    Mean log predictive probability of held-out rows.

    Uses the posterior means as plug-in parameters, which keeps the value
    invariant to cluster relabelling.

    Args:
        x: (M, D) binary rows not used for fitting
        result: fitted mixture

    Returns:
        (1/M) Σᵢ log Σₖ E[πₖ] p(xᵢ | E[θₖ])
    """
    x = jnp.asarray(x, dtype=jnp.float64)
    weights, theta = posterior_means(result)
    log_px = bernoulli_log_prob(x, jnp.asarray(theta)) + jnp.log(jnp.asarray(weights))[None, :]
    max_px = jnp.max(log_px, axis=1, keepdims=True)
    per_row = max_px[:, 0] + jnp.log(jnp.sum(jnp.exp(log_px - max_px), axis=1))
    return float(jnp.mean(per_row))


def match_clusters(predicted, true, num_clusters: int) -> Tuple[np.ndarray, float]:
    """
    Relabel predicted clusters to best agree with reference labels.

    Args:
        predicted: (N,) predicted cluster ids
        true: (N,) reference labels in [0, num_clusters)
        num_clusters: K

    Returns:
        mapping: (K,) mapping[predicted_id] = reference id
        accuracy: fraction of points whose relabelled cluster matches
    """
    predicted = np.asarray(predicted)
    true = np.asarray(true)
    confusion = np.zeros((num_clusters, num_clusters), dtype=np.int64)
    np.add.at(confusion, (predicted, true), 1)
    rows, cols = linear_sum_assignment(-confusion)
    mapping = np.empty(num_clusters, dtype=np.int64)
    mapping[rows] = cols
    accuracy = float(np.mean(mapping[predicted] == true))
    return mapping, accuracy


def max_permuted_difference(a: np.ndarray, b: np.ndarray) -> float:
    """
    Smallest max-abs difference between two (K, ...) arrays over row permutations of b.

    Exhaustive over permutations, meant for the small K used in diagnostics.
    """
    a = np.asarray(a)
    b = np.asarray(b)
    return min(
        float(np.max(np.abs(a - b[list(perm)])))
        for perm in itertools.permutations(range(a.shape[0]))
    )


def format_summary(result: BMMResult, digits: int = 2) -> str:
    """
    Human-readable posterior: the Dirichlet over weights, then one line of
    feature means per cluster.
    """
    alpha = np.asarray(result.pi.alpha)
    weights, theta = posterior_means(result)
    lines = [
        "Dirichlet(" + " ".join(f"{a:.{digits}f}" for a in alpha) + ")",
        "weights: " + " ".join(f"{w:.{digits}f}" for w in weights),
    ]
    for k in range(theta.shape[0]):
        lines.append(f"cluster {k}: " + " ".join(f"{t:.{digits}f}" for t in theta[k]))
    return "\n".join(lines)

"""
Beta distribution in exponential family form.

The Beta is the conjugate prior for a Bernoulli probability θ. A Bernoulli
mixture carries one Beta per (cluster, feature) pair, so every function here
works elementwise on arrays of shape (K, D) or any other batch shape.

Exponential Family Form:
    p(θ | a, b) ∝ θ^(a - 1) (1 - θ)^(b - 1) = exp(⟨η, T(θ)⟩ - A(η))

where:
    Standard parameters: (a, b), a > 0, b > 0
    Natural parameters: η = (a - 1, b - 1)
    Sufficient statistics: T(θ) = (log θ, log(1 - θ))
    Expected sufficient statistics:
        E[log θ] = ψ(a) - ψ(a + b)
        E[log(1 - θ)] = ψ(b) - ψ(a + b)
    Log partition: A(η) = log Γ(a) + log Γ(b) - log Γ(a + b)
"""

import jax.numpy as jnp
import numpy as np
from jax.scipy.special import digamma, gammaln
from typing import NamedTuple, Tuple

from src.bmm.errors import InvalidParameter


class BetaParams(NamedTuple):
    """Standard parameters of Beta distributions."""
    a: jnp.ndarray  # pseudo-count of successes, shape (...), all > 0
    b: jnp.ndarray  # pseudo-count of failures, shape (...), all > 0


class BetaNaturalParams(NamedTuple):
    """Natural parameters of Beta distributions."""
    eta1: jnp.ndarray  # a - 1
    eta2: jnp.ndarray  # b - 1


class BetaSufficientStats(NamedTuple):
    """Expected sufficient statistics of Beta distributions."""
    E_log_theta: jnp.ndarray      # E[log θ]
    E_log_1m_theta: jnp.ndarray   # E[log(1 - θ)]


# =============================================================================
# Construction and Validation
# =============================================================================

def uniform(shape: Tuple[int, ...], a: float = 1.0, b: float = 1.0) -> BetaParams:
    """Array of identical Beta(a, b) distributions; Beta(1, 1) is uniform on [0, 1]."""
    return BetaParams(
        a=jnp.full(shape, a, dtype=jnp.float64),
        b=jnp.full(shape, b, dtype=jnp.float64),
    )


def check_positive(params: BetaParams, name: str = "Beta") -> BetaParams:
    """Raise InvalidParameter unless every shape parameter is finite and > 0."""
    for label, value in (("a", params.a), ("b", params.b)):
        value = np.asarray(value)
        if not np.all(np.isfinite(value)) or np.any(value <= 0):
            raise InvalidParameter(
                f"{name} parameter {label} must be finite and strictly positive, "
                f"got min={np.nanmin(value):.3e}"
            )
    return params


def clamp(params: BetaParams, eps: float = 1e-6) -> BetaParams:
    """Floor both shape parameters at eps."""
    return BetaParams(a=jnp.maximum(params.a, eps), b=jnp.maximum(params.b, eps))


# =============================================================================
# Parameter Conversions
# =============================================================================

def standard_to_natural(params: BetaParams) -> BetaNaturalParams:
    """η = (a - 1, b - 1)"""
    return BetaNaturalParams(eta1=params.a - 1, eta2=params.b - 1)


def natural_to_standard(eta: BetaNaturalParams) -> BetaParams:
    """(a, b) = (η₁ + 1, η₂ + 1)"""
    return BetaParams(a=eta.eta1 + 1, b=eta.eta2 + 1)


# =============================================================================
# Moments and Expected Sufficient Statistics
# =============================================================================

def mean(params: BetaParams) -> jnp.ndarray:
    """E[θ] = a / (a + b)"""
    return params.a / (params.a + params.b)


def expected_sufficient_stats(params: BetaParams) -> BetaSufficientStats:
    """
    Compute E[log θ] and E[log(1 - θ)] under Beta(a, b).

    These digamma expectations, not log of the mean, enter the variational
    responsibilities of the mixture.

    Args:
        params: standard parameters of any shape

    Returns:
        Expected sufficient statistics with the same shape
    """
    psi_total = digamma(params.a + params.b)
    return BetaSufficientStats(
        E_log_theta=digamma(params.a) - psi_total,
        E_log_1m_theta=digamma(params.b) - psi_total,
    )


# =============================================================================
# Log Partition Function and KL Divergence
# =============================================================================

def log_partition(params: BetaParams) -> jnp.ndarray:
    """A(a, b) = log Γ(a) + log Γ(b) - log Γ(a + b), elementwise."""
    return gammaln(params.a) + gammaln(params.b) - gammaln(params.a + params.b)


def kl_divergence(q_params: BetaParams, p_params: BetaParams) -> jnp.ndarray:
    """
    Elementwise KL(q || p) between Beta distributions.

    KL(q || p) = A(p) - A(q) + (a_q - a_p) E_q[log θ] + (b_q - b_p) E_q[log(1 - θ)]

    Args:
        q_params: query distribution parameters
        p_params: prior distribution parameters (broadcastable)

    Returns:
        KL divergence with the broadcast shape
    """
    stats = expected_sufficient_stats(q_params)
    inner = (
        (q_params.a - p_params.a) * stats.E_log_theta
        + (q_params.b - p_params.b) * stats.E_log_1m_theta
    )
    return log_partition(p_params) - log_partition(q_params) + inner


# =============================================================================
# Conjugate Updates
# =============================================================================

def update(
    prior: BetaParams,
    expected_successes: jnp.ndarray,
    expected_failures: jnp.ndarray,
) -> BetaParams:
    """
    Conjugate Beta-Bernoulli update.

    a' = a + E[#successes],  b' = b + E[#failures]

    Args:
        prior: prior Beta parameters
        expected_successes: expected count of x = 1 (broadcastable to prior)
        expected_failures: expected count of x = 0 (broadcastable to prior)

    Returns:
        Posterior Beta parameters

    Raises:
        InvalidParameter: if the prior or the posterior has a parameter <= 0.
    """
    check_positive(prior, name="prior Beta")
    posterior = BetaParams(a=prior.a + expected_successes, b=prior.b + expected_failures)
    return check_positive(posterior, name="posterior Beta")

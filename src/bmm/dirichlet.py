"""
Dirichlet distribution in exponential family form.

The Dirichlet is the conjugate prior for categorical/multinomial distributions,
used for the mixing weights π of a Bernoulli mixture.

Exponential Family Form:
    p(π | α) ∝ ∏ₖ πₖ^(αₖ - 1) = exp(⟨η, T(π)⟩ - A(η))

where:
    Standard parameter: α = (α₁, ..., αₖ), αₖ > 0
    Natural parameter: η = α - 1
    Sufficient statistic: T(π) = log π
    Expected sufficient statistic: E[log πₖ] = ψ(αₖ) - ψ(α₀) where α₀ = Σₖ αₖ
    Log partition: A(η) = Σₖ log Γ(αₖ) - log Γ(α₀)

All functions support arbitrary batch shapes via [..., ] indexing.
The K components are always the last dimension.
"""

import jax.numpy as jnp
import numpy as np
from jax.scipy.special import digamma, gammaln
from typing import NamedTuple

from src.bmm.errors import InvalidParameter


class DirichletParams(NamedTuple):
    """Standard parameters of Dirichlet distribution."""
    alpha: jnp.ndarray  # concentration parameters, shape (..., K), all > 0


class DirichletNaturalParams(NamedTuple):
    """Natural parameters of Dirichlet distribution."""
    eta: jnp.ndarray  # η = α - 1, shape (..., K)


class DirichletSufficientStats(NamedTuple):
    """Expected sufficient statistics of Dirichlet distribution."""
    E_log_pi: jnp.ndarray  # E[log πₖ] = ψ(αₖ) - ψ(α₀), shape (..., K)


# =============================================================================
# Construction and Validation
# =============================================================================

def uniform(num_components: int, concentration: float = 1.0) -> DirichletParams:
    """Symmetric Dirichlet, Dir(c, ..., c). With c = 1 this is uniform on the simplex."""
    return DirichletParams(alpha=jnp.full((num_components,), concentration, dtype=jnp.float64))


def check_positive(params: DirichletParams, name: str = "alpha") -> DirichletParams:
    """Raise InvalidParameter unless every concentration is finite and > 0."""
    alpha = np.asarray(params.alpha)
    if alpha.size == 0:
        raise InvalidParameter(f"Dirichlet {name} is empty")
    if not np.all(np.isfinite(alpha)) or np.any(alpha <= 0):
        raise InvalidParameter(
            f"Dirichlet {name} must be finite and strictly positive, got min={np.nanmin(alpha):.3e}"
        )
    return params


def clamp(params: DirichletParams, eps: float = 1e-6) -> DirichletParams:
    """Floor every concentration at eps."""
    return DirichletParams(alpha=jnp.maximum(params.alpha, eps))


# =============================================================================
# Parameter Conversions
# =============================================================================

def standard_to_natural(params: DirichletParams) -> DirichletNaturalParams:
    """
    Convert standard Dirichlet parameters to natural parameters.

    η = α - 1

    Args:
        params: standard parameters with alpha shape (..., K)

    Returns:
        Natural parameters with same shape
    """
    return DirichletNaturalParams(eta=params.alpha - 1)


def natural_to_standard(eta: DirichletNaturalParams) -> DirichletParams:
    """
    Convert natural Dirichlet parameters to standard parameters.

    α = η + 1

    Args:
        eta: natural parameters with eta shape (..., K)

    Returns:
        Standard parameters with same shape
    """
    return DirichletParams(alpha=eta.eta + 1)


# =============================================================================
# Moments and Expected Sufficient Statistics
# =============================================================================

def mean(params: DirichletParams) -> jnp.ndarray:
    """
    Mean of the Dirichlet, E[πₖ] = αₖ / α₀.

    Args:
        params: standard parameters with alpha shape (..., K)

    Returns:
        Mean probability vector, shape (..., K)
    """
    alpha = params.alpha
    return alpha / jnp.sum(alpha, axis=-1, keepdims=True)


def expected_sufficient_stats(params: DirichletParams) -> DirichletSufficientStats:
    """
    Compute expected sufficient statistics E[T(π)] given standard parameters.

    E[log πₖ] = ψ(αₖ) - ψ(α₀)

    where α₀ = Σₖ αₖ and ψ is the digamma function.

    Args:
        params: standard parameters with alpha shape (..., K)

    Returns:
        Expected sufficient statistics with same shape
    """
    alpha = params.alpha
    alpha0 = jnp.sum(alpha, axis=-1, keepdims=True)  # (..., 1)
    E_log_pi = digamma(alpha) - digamma(alpha0)  # (..., K)
    return DirichletSufficientStats(E_log_pi=E_log_pi)


def expected_log_mixing_weights(params: DirichletParams) -> jnp.ndarray:
    """
    Compute E[log πₖ] for use in the mixture E-step.

    Args:
        params: Dirichlet parameters with alpha shape (..., K)

    Returns:
        E[log πₖ], shape (..., K)
    """
    return expected_sufficient_stats(params).E_log_pi


# =============================================================================
# Log Partition Function
# =============================================================================

def log_partition(params: DirichletParams) -> jnp.ndarray:
    """
    Compute log partition function A(α) of Dirichlet.

    A(α) = Σₖ log Γ(αₖ) - log Γ(α₀)

    where α₀ = Σₖ αₖ.

    Args:
        params: standard parameters with alpha shape (..., K)

    Returns:
        A(α), shape (...,)
    """
    alpha = params.alpha
    alpha0 = jnp.sum(alpha, axis=-1)  # (...,)
    return jnp.sum(gammaln(alpha), axis=-1) - gammaln(alpha0)


# =============================================================================
# KL Divergence
# =============================================================================

def kl_divergence(
    q_params: DirichletParams,
    p_params: DirichletParams
) -> jnp.ndarray:
    """
    Compute KL divergence KL(q || p) between two Dirichlet distributions.

    KL(q || p) = A(αₚ) - A(αq) + ⟨αq - αp, E_q[log π]⟩

    Args:
        q_params: query distribution parameters, alpha shape (..., K)
        p_params: prior distribution parameters, same shape (broadcastable)

    Returns:
        KL divergence, shape (...,)
    """
    E_log_pi = expected_sufficient_stats(q_params).E_log_pi  # (..., K)

    A_q = log_partition(q_params)
    A_p = log_partition(p_params)

    inner = jnp.sum((q_params.alpha - p_params.alpha) * E_log_pi, axis=-1)

    return A_p - A_q + inner


# =============================================================================
# Conjugate Updates
# =============================================================================

def update(prior: DirichletParams, expected_counts: jnp.ndarray) -> DirichletParams:
    """
    Conjugate Dirichlet-Categorical update.

    α_post = α_prior + Nₖ

    Args:
        prior: prior Dirichlet parameters, alpha shape (K,)
        expected_counts: expected number of points per component Nₖ, shape (K,)

    Returns:
        Posterior Dirichlet parameters

    Raises:
        InvalidParameter: if the prior or the posterior has a concentration <= 0.
    """
    check_positive(prior, name="prior alpha")
    posterior = DirichletParams(alpha=prior.alpha + expected_counts)
    return check_positive(posterior, name="posterior alpha")

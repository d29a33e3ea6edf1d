"""
Global posterior state of a Bernoulli mixture and online-EP messages.

GlobalState holds one Dirichlet over the K mixing weights and a (K, D) array
of Betas over the feature probabilities. A Message has the same shape but
stores a natural-parameter difference (posterior minus the prior used for a
batch), so its entries may be zero or negative.
"""

import jax.numpy as jnp
from typing import NamedTuple, Tuple

from src.bmm import beta, dirichlet
from src.bmm.beta import BetaNaturalParams, BetaParams
from src.bmm.dirichlet import DirichletNaturalParams, DirichletParams


class GlobalState(NamedTuple):
    """Posterior over all global parameters."""
    pi: DirichletParams   # alpha: (K,)
    theta: BetaParams     # a, b: (K, D)

    @property
    def num_clusters(self) -> int:
        return int(self.pi.alpha.shape[-1])

    @property
    def num_features(self) -> int:
        return int(self.theta.a.shape[-1])


class Message(NamedTuple):
    """Contribution of one batch: posterior minus prior, in natural parameters."""
    pi: jnp.ndarray       # (K,)
    theta_a: jnp.ndarray  # (K, D)
    theta_b: jnp.ndarray  # (K, D)


def prior_state(
    num_clusters: int,
    num_features: int,
    pi_concentration: float = 1.0,
    theta_a: float = 1.0,
    theta_b: float = 1.0,
) -> GlobalState:
    """Dir(c, ..., c) mixing weights and Beta(a, b) feature probabilities."""
    return GlobalState(
        pi=dirichlet.uniform(num_clusters, pi_concentration),
        theta=beta.uniform((num_clusters, num_features), theta_a, theta_b),
    )


def check_state(state: GlobalState) -> GlobalState:
    """Raise InvalidParameter if any parameter is not strictly positive."""
    dirichlet.check_positive(state.pi, name="pi")
    beta.check_positive(state.theta, name="theta")
    return state


def clamp_state(state: GlobalState, eps: float = 1e-6) -> GlobalState:
    return GlobalState(pi=dirichlet.clamp(state.pi, eps), theta=beta.clamp(state.theta, eps))


def state_means(state: GlobalState) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Posterior means: (K,) mixing weights and (K, D) feature probabilities."""
    return dirichlet.mean(state.pi), beta.mean(state.theta)


# =============================================================================
# Messages
# =============================================================================

def compute_message(posterior: GlobalState, prior: GlobalState) -> Message:
    """Posterior divided by prior: the difference of natural parameters."""
    post_theta = beta.standard_to_natural(posterior.theta)
    prior_theta = beta.standard_to_natural(prior.theta)
    return Message(
        pi=dirichlet.standard_to_natural(posterior.pi).eta - dirichlet.standard_to_natural(prior.pi).eta,
        theta_a=post_theta.eta1 - prior_theta.eta1,
        theta_b=post_theta.eta2 - prior_theta.eta2,
    )


def apply_message(state: GlobalState, message: Message, eps: float = 1e-6) -> GlobalState:
    """Multiply a message into the state, i.e. add natural parameters."""
    eta_pi = dirichlet.standard_to_natural(state.pi)
    eta_theta = beta.standard_to_natural(state.theta)
    updated = GlobalState(
        pi=dirichlet.natural_to_standard(DirichletNaturalParams(eta=eta_pi.eta + message.pi)),
        theta=beta.natural_to_standard(
            BetaNaturalParams(
                eta1=eta_theta.eta1 + message.theta_a,
                eta2=eta_theta.eta2 + message.theta_b,
            )
        ),
    )
    return clamp_state(updated, eps)


def remove_message(state: GlobalState, message: Message, eps: float = 1e-6) -> GlobalState:
    """Divide a previously applied message out of the state."""
    negated = Message(pi=-message.pi, theta_a=-message.theta_a, theta_b=-message.theta_b)
    return apply_message(state, negated, eps)


# =============================================================================
# Convergence
# =============================================================================

def max_relative_change(old: GlobalState, new: GlobalState) -> float:
    """Largest |new - old| / |old| over every Dirichlet and Beta parameter."""
    deltas = [
        jnp.max(jnp.abs(n - o) / jnp.abs(o))
        for o, n in (
            (old.pi.alpha, new.pi.alpha),
            (old.theta.a, new.theta.a),
            (old.theta.b, new.theta.b),
        )
    ]
    return float(jnp.max(jnp.stack(deltas)))

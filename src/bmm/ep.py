"""
Expectation-propagation driver for the Bernoulli mixture.

Batch mode runs the conjugate E/M loop on one matrix:

    Init:      random one-hot responsibilities (symmetry breaking), M-step
    Iterating: E-step -> M-step -> max relative parameter change
    Stop:      change < tolerance (converged) or max_iterations reached

Online mode streams ordered, disjoint batches. Each batch is fitted against
the running posterior as its prior; the batch message (posterior / prior,
a subtraction in natural parameters) is multiplied into the running state and
kept, so a batch can later be revised or forgotten by dividing it back out.
"""

from typing import Callable, Dict, NamedTuple, Optional

import jax
import jax.numpy as jnp
import numpy as np
from tqdm import tqdm

from src.bmm import beta, dirichlet, discrete
from src.bmm.config import EPConfig, make_key, validate_config
from src.bmm.data import iter_batches, validate_matrix
from src.bmm.errors import InferenceDiverged, PreconditionViolation
from src.bmm.estep import compute_responsibilities
from src.bmm.mstep import update_state
from src.bmm.results import BMMResult, EPTrace, InferenceStatus
from src.bmm.state import (
    GlobalState,
    Message,
    apply_message,
    compute_message,
    max_relative_change,
    prior_state,
    remove_message,
)

# Polled between iterations with (completed iterations, current state).
StopCallback = Callable[[int, GlobalState], bool]


class BatchFit(NamedTuple):
    state: GlobalState
    responsibilities: jnp.ndarray
    trace: EPTrace


def compute_elbo(log_norm: jnp.ndarray, state: GlobalState, prior: GlobalState) -> float:
    """
    Evidence lower bound with responsibilities at their optimum for ``state``.

    ELBO = Σₙ log Σₖ wₙₖ - KL(q(π) || p(π)) - Σₖd KL(q(θₖd) || p(θₖd))
    """
    kl_pi = dirichlet.kl_divergence(state.pi, prior.pi)
    kl_theta = jnp.sum(beta.kl_divergence(state.theta, prior.theta))
    return float(jnp.sum(log_norm) - kl_pi - kl_theta)


def initial_responsibilities(
    key: jax.Array,
    num_points: int,
    num_clusters: int,
    init: str = "random",
) -> jnp.ndarray:
    if init == "random":
        return discrete.random_point_masses(key, num_points, num_clusters)
    if init == "uniform":
        return discrete.uniform(num_points, num_clusters)
    raise PreconditionViolation(f"Unknown init '{init}'")


def run_batch(
    x: jnp.ndarray,
    prior: GlobalState,
    config: EPConfig,
    key: jax.Array,
    batch_index: int = 0,
    should_stop: Optional[StopCallback] = None,
    skip_degenerate: bool = False,
    show_progress: Optional[bool] = None,
    restart: int = 0,
) -> BatchFit:
    """
    Fit one batch against ``prior`` from a single random initialisation.

    Args:
        x: (N, D) float64 binary data, already validated
        prior: prior for this batch
        config: iteration budget, tolerance, init method and epsilon
        key: run key; the init key is ``fold_in(fold_in(key, batch_index), restart)``
        batch_index: position of the batch in the stream (0 in batch mode)
        should_stop: optional callback polled before every iteration
        skip_degenerate: keep the prior for features the batch cannot inform
        show_progress: defaults to ``config.verbose``
        restart: index of the random initialisation

    Returns:
        BatchFit with the posterior, the last E-step responsibilities and the
        convergence trace.

    Raises:
        InferenceDiverged: on a NaN or infinite log-weight, normaliser or
            parameter change.
    """
    num_clusters = prior.num_clusters
    eps = config.epsilon
    if show_progress is None:
        show_progress = config.verbose

    init_key = jax.random.fold_in(jax.random.fold_in(key, batch_index), restart)
    r = initial_responsibilities(init_key, x.shape[0], num_clusters, config.init)
    state = update_state(prior, x, r, skip_degenerate=skip_degenerate, eps=eps)

    status = InferenceStatus.ITERATION_LIMIT
    deltas = []
    elbo = []
    num_iterations = 0

    pbar = tqdm(
        range(1, config.max_iterations + 1),
        desc=f"EP batch {batch_index}",
        disable=not show_progress,
        leave=False,
    )
    for iteration in pbar:
        if should_stop is not None and should_stop(num_iterations, state):
            status = InferenceStatus.INTERRUPTED
            break

        # --- E-step ---
        r, log_norm = compute_responsibilities(x, state, iteration=iteration)
        if config.compute_elbo:
            elbo.append(compute_elbo(log_norm, state, prior))

        # --- M-step ---
        new_state = update_state(prior, x, r, skip_degenerate=skip_degenerate, eps=eps)

        delta = max_relative_change(state, new_state)
        if not np.isfinite(delta):
            raise InferenceDiverged("non-finite parameter change in M-step", iteration=iteration)

        state = new_state
        num_iterations = iteration
        deltas.append(delta)
        pbar.set_postfix(delta=f"{delta:.2e}")

        if delta < config.tolerance:
            status = InferenceStatus.CONVERGED
            break
    pbar.close()

    trace = EPTrace(
        num_iterations=num_iterations,
        deltas=tuple(deltas),
        elbo=tuple(elbo),
        status=status,
    )
    return BatchFit(state=state, responsibilities=r, trace=trace)


def run_batch_with_restarts(
    x: jnp.ndarray,
    prior: GlobalState,
    config: EPConfig,
    key: jax.Array,
    batch_index: int = 0,
    should_stop: Optional[StopCallback] = None,
    skip_degenerate: bool = False,
    show_progress: Optional[bool] = None,
) -> BatchFit:
    """Run ``config.num_restarts`` initialisations and keep the highest final ELBO."""
    if config.num_restarts == 1:
        return run_batch(
            x, prior, config, key, batch_index, should_stop, skip_degenerate, show_progress
        )

    best = None
    best_elbo = -np.inf
    for restart in range(config.num_restarts):
        candidate = run_batch(
            x, prior, config, key, batch_index, should_stop, skip_degenerate, show_progress,
            restart=restart,
        )
        _, log_norm = compute_responsibilities(x, candidate.state)
        value = compute_elbo(log_norm, candidate.state, prior)
        if best is None or value > best_elbo:
            best, best_elbo = candidate, value
        if candidate.trace.status is InferenceStatus.INTERRUPTED:
            break
    return best


class OnlineBMM:
    """
    Streaming Bernoulli mixture built from per-batch messages.

    The running state is the prior times every stored message. Batches whose
    rows cannot inform a feature (fewer rows than clusters, or a constant
    column) leave that feature's Beta unchanged.
    """

    def __init__(
        self,
        num_clusters: int,
        num_features: int,
        config: Optional[EPConfig] = None,
        key: Optional[jax.Array] = None,
    ):
        if num_clusters < 2:
            raise PreconditionViolation(f"num_clusters must be >= 2, got {num_clusters}")
        if num_features < 1:
            raise PreconditionViolation(f"num_features must be >= 1, got {num_features}")
        self.config = validate_config(config if config is not None else EPConfig())
        self.num_clusters = int(num_clusters)
        self.num_features = int(num_features)
        self.key = make_key(self.config, key)
        self.prior = prior_state(
            self.num_clusters,
            self.num_features,
            self.config.prior_pi,
            self.config.prior_a,
            self.config.prior_b,
        )
        self.state = self.prior
        self.messages: Dict[int, Message] = {}
        self.traces: Dict[int, EPTrace] = {}
        self._next_id = 0

    @property
    def num_batches(self) -> int:
        return len(self.messages)

    def _validate_batch(self, batch) -> jnp.ndarray:
        x = validate_matrix(batch, self.num_clusters, min_rows=1)
        if x.shape[1] != self.num_features:
            raise PreconditionViolation(
                f"batch has {x.shape[1]} features, expected {self.num_features}"
            )
        return x

    def _absorb(
        self,
        batch_id: int,
        x: jnp.ndarray,
        should_stop: Optional[StopCallback] = None,
    ) -> BatchFit:
        try:
            batch_fit = run_batch_with_restarts(
                x,
                self.state,
                self.config,
                self.key,
                batch_index=batch_id,
                should_stop=should_stop,
                skip_degenerate=True,
                show_progress=False,
            )
        except InferenceDiverged as exc:
            raise InferenceDiverged(
                "non-finite value during online update", iteration=exc.iteration, batch=batch_id
            ) from exc
        message = compute_message(batch_fit.state, self.state)
        self.state = apply_message(self.state, message, self.config.epsilon)
        self.messages[batch_id] = message
        self.traces[batch_id] = batch_fit.trace
        return batch_fit

    def partial_fit(self, batch, should_stop: Optional[StopCallback] = None) -> int:
        """Absorb a new batch and return its id."""
        x = self._validate_batch(batch)
        batch_id = self._next_id
        self._next_id += 1
        self._absorb(batch_id, x, should_stop=should_stop)
        return batch_id

    def revise(self, batch_id: int, batch) -> None:
        """Replace the contribution of an earlier batch with a corrected one."""
        if batch_id not in self.messages:
            raise KeyError(f"unknown batch id {batch_id}")
        x = self._validate_batch(batch)
        self.state = remove_message(self.state, self.messages.pop(batch_id), self.config.epsilon)
        self._absorb(batch_id, x)

    def forget(self, batch_id: int) -> None:
        """Divide a batch's message out of the running state."""
        if batch_id not in self.messages:
            raise KeyError(f"unknown batch id {batch_id}")
        self.state = remove_message(self.state, self.messages.pop(batch_id), self.config.epsilon)
        self.traces.pop(batch_id, None)

    def responsibilities(self, x, batch_size: Optional[int] = None) -> jnp.ndarray:
        """Responsibilities of rows under the running state, computed batch by batch."""
        x = validate_matrix(x, self.num_clusters, min_rows=1)
        batch_size = batch_size or self.config.batch_size or x.shape[0]
        chunks = [
            compute_responsibilities(rows, self.state)[0]
            for _, rows in iter_batches(x, batch_size)
        ]
        return jnp.concatenate(chunks, axis=0)


# =============================================================================
# Entry point
# =============================================================================

def fit(
    x,
    num_clusters: int,
    config: Optional[EPConfig] = None,
    key: Optional[jax.Array] = None,
    should_stop: Optional[StopCallback] = None,
) -> BMMResult:
    """
    Fit a Bernoulli mixture to binary data.

    Args:
        x: (N, D) booleans or 0/1 numbers, N >= num_clusters
        num_clusters: K >= 2
        config: EPConfig; defaults to batch mode, 50 iterations, tol 1e-4
        key: explicit random key, overrides ``config.seed``
        should_stop: callback polled between iterations; returning True ends
            inference with status INTERRUPTED and the latest posterior

    Returns:
        BMMResult with responsibilities computed against the final posterior

    Raises:
        PreconditionViolation: invalid data or configuration
        InferenceDiverged: NaN or infinity during inference
    """
    config = validate_config(config if config is not None else EPConfig())
    x = validate_matrix(x, num_clusters)
    key = make_key(config, key)

    if config.mode == "online":
        result = _fit_online(x, num_clusters, config, key, should_stop)
    else:
        result = _fit_batch(x, num_clusters, config, key, should_stop)

    if config.verbose:
        print(f"EP finished: status={result.status.value} iterations={result.num_iterations}")
    return result


def _fit_batch(x, num_clusters, config, key, should_stop) -> BMMResult:
    prior = prior_state(
        num_clusters, x.shape[1], config.prior_pi, config.prior_a, config.prior_b
    )
    batch_fit = run_batch_with_restarts(
        x, prior, config, key, should_stop=should_stop, skip_degenerate=True
    )
    r, _ = compute_responsibilities(x, batch_fit.state)
    return BMMResult(
        pi=batch_fit.state.pi,
        theta=batch_fit.state.theta,
        responsibilities=r,
        status=batch_fit.trace.status,
        num_iterations=batch_fit.trace.num_iterations,
        traces=(batch_fit.trace,),
    )


def _fit_online(x, num_clusters, config, key, should_stop) -> BMMResult:
    model = OnlineBMM(num_clusters, x.shape[1], config=config, key=key)
    num_batches = -(-x.shape[0] // config.batch_size)

    for _, rows in tqdm(
        iter_batches(x, config.batch_size),
        total=num_batches,
        desc="EP online",
        disable=not config.verbose,
    ):
        batch_id = model.partial_fit(rows, should_stop=should_stop)
        if model.traces[batch_id].status is InferenceStatus.INTERRUPTED:
            break

    traces = tuple(model.traces[b] for b in sorted(model.traces))
    statuses = {t.status for t in traces}
    if InferenceStatus.INTERRUPTED in statuses or len(traces) < num_batches:
        status = InferenceStatus.INTERRUPTED
    elif statuses == {InferenceStatus.CONVERGED}:
        status = InferenceStatus.CONVERGED
    else:
        status = InferenceStatus.ITERATION_LIMIT

    return BMMResult(
        pi=model.state.pi,
        theta=model.state.theta,
        responsibilities=model.responsibilities(x),
        status=status,
        num_iterations=sum(t.num_iterations for t in traces),
        traces=traces,
    )

"""Binary data validation, batching and synthetic mixture sampling."""

import jax
import jax.numpy as jnp
import numpy as np
from typing import Iterator, Optional, Sequence, Tuple

from src.bmm.errors import PreconditionViolation

# Demo generator: 5 clusters over 10 binary features.
DEMO_WEIGHTS = (0.2, 0.15, 0.15, 0.4, 0.1)
DEMO_TEMPLATES = (
    (0.1, 0.1, 0.9, 0.9, 0.5, 0.5, 0.2, 0.1, 0.9, 0.2),
    (0.5, 0.9, 0.5, 0.1, 0.1, 0.2, 0.5, 0.1, 0.4, 0.9),
    (0.9, 0.9, 0.1, 0.1, 0.1, 0.5, 0.5, 0.5, 0.1, 0.7),
    (0.1, 0.2, 0.3, 0.3, 0.7, 0.1, 0.9, 0.9, 0.3, 0.1),
    (0.7, 0.3, 0.9, 0.2, 0.2, 0.1, 0.2, 0.3, 0.4, 0.5),
)


def validate_matrix(x, num_clusters: int, min_rows: Optional[int] = None) -> jnp.ndarray:
    """
    Check a feature matrix and convert it to float64.

    Args:
        x: (N, D) array-like of booleans or 0/1 numbers
        num_clusters: K
        min_rows: minimum number of rows, K by default; online batches pass 1

    Returns:
        (N, D) float64 array of zeros and ones

    Raises:
        PreconditionViolation: K < 2, empty or ragged matrix, D = 0, N < K,
            or values other than 0 and 1.
    """
    if int(num_clusters) != num_clusters or num_clusters < 2:
        raise PreconditionViolation(f"num_clusters must be an integer >= 2, got {num_clusters}")
    try:
        arr = np.asarray(x)
    except ValueError as exc:
        raise PreconditionViolation(f"feature matrix is not rectangular: {exc}") from exc
    if arr.dtype == object or arr.ndim != 2:
        raise PreconditionViolation(f"expected a rectangular 2D matrix, got shape {arr.shape}")
    num_rows, num_features = arr.shape
    if num_rows == 0:
        raise PreconditionViolation("feature matrix is empty")
    if num_features == 0:
        raise PreconditionViolation("feature matrix has no columns")
    if min_rows is None:
        min_rows = num_clusters
    if num_rows < min_rows:
        raise PreconditionViolation(
            f"need at least {min_rows} rows for {num_clusters} clusters, got N={num_rows}"
        )
    if arr.dtype != bool:
        if not np.all((arr == 0) | (arr == 1)):
            raise PreconditionViolation("feature matrix must contain only 0/1 or boolean values")
    return jnp.asarray(arr, dtype=jnp.float64)


def iter_batches(x: jnp.ndarray, batch_size: int) -> Iterator[Tuple[int, jnp.ndarray]]:
    """Yield (batch index, rows) for ordered, disjoint batches. The last may be short."""
    num_rows = x.shape[0]
    for b, start in enumerate(range(0, num_rows, batch_size)):
        yield b, x[start:start + batch_size]


def sample_bernoulli_mixture(
    key: jax.Array,
    weights: Sequence[float],
    templates: Sequence[Sequence[float]],
    num_points: int,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Draw binary points from a Bernoulli mixture.

    Args:
        key: random key
        weights: (K,) mixing proportions
        templates: (K, D) per-cluster feature probabilities
        num_points: N

    Returns:
        x: (N, D) boolean data
        labels: (N,) generating cluster of each point
    """
    weights = jnp.asarray(weights, dtype=jnp.float64)
    templates = jnp.asarray(templates, dtype=jnp.float64)
    k1, k2 = jax.random.split(key)
    labels = jax.random.categorical(k1, jnp.log(weights), shape=(num_points,))
    x = jax.random.bernoulli(k2, templates[labels])
    return x, labels

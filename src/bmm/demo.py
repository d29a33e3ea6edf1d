"""
Stream synthetic Bernoulli-mixture data through online EP and print the posterior.

    python -m src.bmm.demo
"""

import jax

from src.bmm.config import EPConfig
from src.bmm.data import DEMO_TEMPLATES, DEMO_WEIGHTS, sample_bernoulli_mixture
from src.bmm.ep import fit
from src.bmm.results import BMMResult, format_summary


def run_demo(
    num_points: int = 10000,
    num_clusters: int = 7,
    batch_size: int = 200,
    max_iterations: int = 50,
    seed: int = 0,
    verbose: bool = True,
) -> BMMResult:
    data_key, fit_key = jax.random.split(jax.random.PRNGKey(seed))
    x, _ = sample_bernoulli_mixture(data_key, DEMO_WEIGHTS, DEMO_TEMPLATES, num_points)
    # Streamed batches should not follow generation order.
    x = jax.random.permutation(jax.random.fold_in(data_key, 1), x, axis=0)

    config = EPConfig(
        mode="online",
        batch_size=batch_size,
        max_iterations=max_iterations,
        verbose=verbose,
    )
    result = fit(x, num_clusters, config, key=fit_key)
    if verbose:
        print(format_summary(result))
    return result


if __name__ == "__main__":
    run_demo()

"""Inference configuration and random-key handling."""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import chex
import jax
import numpy as np
import yaml

from src.bmm.errors import PreconditionViolation

MODES = ("batch", "online")
INIT_METHODS = ("random", "uniform")


@chex.dataclass(frozen=True)
class EPConfig:
    max_iterations: int = 50
    tolerance: float = 1e-4
    mode: str = "batch"               # 'batch' or 'online'
    batch_size: Optional[int] = None  # rows per batch, online mode only
    seed: Optional[int] = None        # None draws a fresh seed per run
    init: str = "random"              # 'random' one-hot or 'uniform' (no symmetry breaking)
    epsilon: float = 1e-6             # floor for Beta/Dirichlet parameters
    prior_pi: float = 1.0             # symmetric Dirichlet concentration
    prior_a: float = 1.0              # Beta prior pseudo-successes
    prior_b: float = 1.0              # Beta prior pseudo-failures
    num_restarts: int = 1             # independent random inits, best final ELBO is kept
    compute_elbo: bool = False
    verbose: bool = False


def validate_config(config: EPConfig) -> EPConfig:
    if config.mode not in MODES:
        raise PreconditionViolation(f"Unknown mode '{config.mode}'. Supported: {', '.join(MODES)}.")
    if config.init not in INIT_METHODS:
        raise PreconditionViolation(
            f"Unknown init '{config.init}'. Supported: {', '.join(INIT_METHODS)}."
        )
    if int(config.max_iterations) < 1:
        raise PreconditionViolation(f"max_iterations must be >= 1, got {config.max_iterations}")
    if int(config.num_restarts) < 1:
        raise PreconditionViolation(f"num_restarts must be >= 1, got {config.num_restarts}")
    if not config.tolerance > 0:
        raise PreconditionViolation(f"tolerance must be > 0, got {config.tolerance}")
    if not config.epsilon > 0:
        raise PreconditionViolation(f"epsilon must be > 0, got {config.epsilon}")
    for name in ("prior_pi", "prior_a", "prior_b"):
        if not getattr(config, name) > 0:
            raise PreconditionViolation(f"{name} must be > 0, got {getattr(config, name)}")
    if config.mode == "online":
        if config.batch_size is None or int(config.batch_size) < 1:
            raise PreconditionViolation(
                f"online mode needs a batch_size >= 1, got {config.batch_size}"
            )
    return config


def config_from_dict(values: Dict[str, Any]) -> EPConfig:
    """Build a validated EPConfig, rejecting unknown keys."""
    known = set(EPConfig.__dataclass_fields__)
    unknown = sorted(set(values) - known)
    if unknown:
        raise PreconditionViolation(f"Unknown configuration keys: {', '.join(unknown)}")
    return validate_config(EPConfig(**values))


def load_config(path: Union[str, Path]) -> EPConfig:
    """Read an EPConfig from a YAML mapping. An empty file gives the defaults."""
    with open(path, "r") as f:
        values = yaml.safe_load(f)
    if values is None:
        values = {}
    if not isinstance(values, dict):
        raise PreconditionViolation(f"Expected a mapping in {path}, got {type(values).__name__}")
    return config_from_dict(values)


def make_key(config: EPConfig, key: Optional[jax.Array] = None) -> jax.Array:
    """
    Random key used for symmetry breaking.

    An explicit key wins over ``config.seed``. Without either, a seed is drawn
    from numpy's entropy source and the run is not reproducible.
    """
    if key is not None:
        return key
    seed = config.seed
    if seed is None:
        seed = int(np.random.default_rng().integers(0, 2**31 - 1))
    return jax.random.PRNGKey(seed)

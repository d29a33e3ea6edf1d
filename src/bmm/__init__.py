"""
Bernoulli mixture model with conjugate EP/VB inference.

Responsibilities must sum to one within 1e-9, so JAX runs in float64.
"""

import jax

jax.config.update("jax_enable_x64", True)

from src.bmm.config import EPConfig, load_config
from src.bmm.ep import OnlineBMM, fit, run_batch
from src.bmm.errors import (
    BMMError,
    DegenerateBatch,
    InferenceDiverged,
    InvalidParameter,
    PreconditionViolation,
)
from src.bmm.results import (
    BMMResult,
    InferenceStatus,
    assigned_clusters,
    format_summary,
    heldout_log_likelihood,
    posterior_means,
)
from src.bmm.state import GlobalState, Message

__all__ = [
    'EPConfig',
    'load_config',
    'fit',
    'run_batch',
    'OnlineBMM',
    'BMMResult',
    'InferenceStatus',
    'GlobalState',
    'Message',
    'assigned_clusters',
    'posterior_means',
    'heldout_log_likelihood',
    'format_summary',
    'BMMError',
    'InvalidParameter',
    'PreconditionViolation',
    'DegenerateBatch',
    'InferenceDiverged',
]

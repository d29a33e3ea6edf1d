"""Exceptions raised by the Bernoulli mixture inference engine."""

from typing import Optional


class BMMError(Exception):
    """Base class for all inference errors."""


class InvalidParameter(BMMError, ValueError):
    """A Beta or Dirichlet parameter reached a primitive while not strictly positive."""


class PreconditionViolation(BMMError, ValueError):
    """Input data or configuration cannot be used for inference."""


class DegenerateBatch(BMMError):
    """A batch cannot inform some feature parameters.

    Raised by ``mstep.check_batch``. The drivers never raise it: they read
    ``mstep.degenerate_features`` and keep the prior for the affected features.
    """

    def __init__(self, message: str, features=None):
        super().__init__(message)
        self.features = features


class InferenceDiverged(BMMError, RuntimeError):
    """A log-weight or normaliser became NaN or infinite."""

    def __init__(self, message: str, iteration: Optional[int] = None, batch: Optional[int] = None):
        location = []
        if batch is not None:
            location.append(f"batch {batch}")
        if iteration is not None:
            location.append(f"iteration {iteration}")
        if location:
            message = f"{message} ({', '.join(location)})"
        super().__init__(message)
        self.iteration = iteration
        self.batch = batch

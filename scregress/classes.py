"""
Core data classes for scregress.

Model variants, the resolved run configuration, per-gene fit outcomes and
the error/warning taxonomy shared by the regression modules.
"""

from dataclasses import dataclass, field

import numpy as np


MODELS = ('linear', 'poisson', 'negbinom')


class InvalidArgumentError(ValueError):
    """Structural misconfiguration detected before any fitting starts."""


class WorkerPoolError(RuntimeError):
    """The worker pool could not be created or stopped responding."""


class FitConvergenceWarning(UserWarning):
    """A gene's model fit failed and its residuals were replaced."""


class ResourceExhaustionWarning(UserWarning):
    """More workers were requested than the machine provides."""


@dataclass(frozen=True)
class Model:
    """Regression model applied to every gene.

    ``kind`` is one of 'linear', 'poisson' or 'negbinom'. For 'negbinom',
    ``theta`` pins the dispersion of the family; ``None`` means theta is
    estimated jointly with the coefficients.
    """
    kind: str
    theta: float = None

    def __post_init__(self):
        if self.kind not in MODELS:
            raise InvalidArgumentError(
                f"{self.kind} is not a valid model. Please use one the "
                f"following: {', '.join(MODELS)}."
            )
        if self.theta is not None and self.kind != 'negbinom':
            raise InvalidArgumentError("theta only applies to the negbinom model")

    @classmethod
    def linear(cls):
        return cls('linear')

    @classmethod
    def poisson(cls):
        return cls('poisson')

    @classmethod
    def negbinom(cls, theta=None):
        if theta is not None:
            theta = float(theta)
        return cls('negbinom', theta)

    def describe(self):
        if self.kind == 'negbinom' and self.theta is not None:
            return f"family=negative.binomial(theta={self.theta:f})"
        if self.kind == 'negbinom':
            return "family=negative.binomial"
        if self.kind == 'poisson':
            return "family=poisson"
        return "lm"


@dataclass(frozen=True)
class RegressionConfig:
    """Run parameters, resolved once per call by ``make_config``."""
    model: Model
    bin_size: int
    n_workers: int = 1
    backend: str = 'process'
    display_progress: bool = True
    verbose: bool = True


@dataclass
class SolverResult:
    """Outcome of one solver call. Failures are values, not exceptions."""
    residuals: np.ndarray = None
    fitted: np.ndarray = None
    converged: bool = False
    error: str = None
    theta: float = None
    messages: list = field(default_factory=list)

    @property
    def failed(self):
        if not self.converged or self.residuals is None:
            return True
        return not np.all(np.isfinite(self.residuals))


@dataclass
class GeneFit:
    """Residual row for one gene after fallback substitution."""
    gene: str
    residuals: np.ndarray
    message: str = None
    fallback: bool = False

"""
scregress: regress unwanted variation out of single-cell expression.

Per-gene linear, Poisson and negative binomial regression on latent cell
covariates, with binned parallel execution and regularized dispersion.
"""

__version__ = "0.1.0"

# --- Classes ---
from .classes import (
    Model,
    RegressionConfig,
    SolverResult,
    GeneFit,
    InvalidArgumentError,
    WorkerPoolError,
    FitConvergenceWarning,
    ResourceExhaustionWarning,
)
from .labeled_matrix import LabeledMatrix

# --- Regression ---
from .regression import regress_out, regress_out_nb, regress_residuals

# --- Dispersion ---
from .theta import estimate_theta, loess_trend, smooth_theta, regularized_theta

# --- Solvers ---
from .solvers import (
    fit_model,
    fit_linear,
    fit_poisson,
    fit_negbinom,
    fit_negbinom_joint,
    theta_ml,
)

# --- Parallelism ---
from .parallel import (
    make_config,
    resolve_workers,
    NullProgress,
    TqdmProgress,
)

# --- Post-processing & normalization ---
from .postprocess import clip_residuals, shift_log1p, postprocess_residuals
from .normalization import custom_normalize

# --- Utilities ---
from .utils import make_bins, model_matrix, covariate_design, scaled_log10

"""
Regularized negative binomial dispersion (theta) estimation.

Pass 1 fits a Poisson GLM per gene and estimates theta by maximum
likelihood from its fitted means. The gene-wise estimates are then pooled:
a LOESS curve of log10 variance against log10 mean is fitted across genes
and inverted to give one regularized theta per gene, floored at
``min_theta``.
"""

import warnings

import numpy as np
import pandas as pd
from skmisc.loess import loess

from . import solvers
from .classes import FitConvergenceWarning, InvalidArgumentError
from .labeled_matrix import LabeledMatrix
from .parallel import iter_bins

THETA_SPAN = 0.33
MIN_THETA = 0.01


def _theta_task(y, design):
    return solvers.fit_poisson_theta(y, design)


def estimate_theta(counts, design, config, progress=None):
    """Gene-wise theta from a Poisson fit, binned and parallel.

    Parameters
    ----------
    counts : LabeledMatrix or array-like
        Raw counts (genes x cells).
    design : ndarray
        Design matrix (cells x coefficients).
    config : RegressionConfig
        Bin size and parallelism. ``config.model`` is not used; pass 1 is
        always Poisson.
    progress : observer, optional
        Progress observer, one tick per bin.

    Returns
    -------
    Series of raw theta estimates indexed by gene. Genes whose Poisson
    fit failed are NaN.
    """
    counts = LabeledMatrix.from_any(counts)
    theta = {}
    for fits in iter_bins(counts, _theta_task, config, lambda gene: (design,),
                          progress=progress, desc="Poisson/theta"):
        for gene, _y, res in fits:
            for msg in res.messages:
                warnings.warn(f"{msg} for gene {gene}", stacklevel=2)
            if res.failed or res.theta is None:
                warnings.warn(
                    f"glm and family=poisson failed for gene {gene}; "
                    f"theta set to NaN ({res.error})",
                    FitConvergenceWarning, stacklevel=2,
                )
                theta[gene] = np.nan
            else:
                theta[gene] = res.theta
    return pd.Series(theta, name='theta').reindex(counts.row_names)


def loess_trend(x, y, span=THETA_SPAN):
    """Fit a degree-2 LOESS of ``y`` on ``x``.

    Returns the fitted ``skmisc.loess.loess`` model.
    """
    model = loess(np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64),
                  span=span, degree=2)
    model.fit()
    return model


def smooth_theta(mean, theta_raw, span=THETA_SPAN, min_theta=MIN_THETA):
    """Regularize gene-wise theta through the mean-variance trend.

    ``variance = mean + mean^2 / theta`` is smoothed on the log10 scale
    against log10 mean and converted back with
    ``theta = mean^2 / (10^fitted - mean)``.

    Genes without a finite log mean or log variance are left out of the
    LOESS fit; those whose log mean lies inside the fitted range are read
    off the curve. Any theta that is non-finite or ``<= min_theta`` is set
    to ``min_theta``.

    Returns
    -------
    dict with 'theta', 'fitted' (log10 variance trend) and 'n_clamped'.
    """
    if not min_theta > 0:
        raise InvalidArgumentError("min_theta must be positive")
    if not span > 0:
        raise InvalidArgumentError("span must be positive")
    mean = np.asarray(mean, dtype=np.float64)
    theta_raw = np.asarray(theta_raw, dtype=np.float64)
    if mean.shape != theta_raw.shape:
        raise InvalidArgumentError("mean and theta_raw must have the same length")

    with np.errstate(divide='ignore', invalid='ignore'):
        variance = mean + mean ** 2 / theta_raw
        log_mean = np.log10(mean)
        log_var = np.log10(variance)

    ok = np.isfinite(log_mean) & np.isfinite(log_var)
    fitted = np.full(mean.shape, np.nan)
    if np.sum(ok) >= 2:
        model = loess_trend(log_mean[ok], log_var[ok], span=span)
        fitted[ok] = model.outputs.fitted_values
        # No extrapolation outside the fitted range
        lo, hi = log_mean[ok].min(), log_mean[ok].max()
        extra = ~ok & np.isfinite(log_mean) & (log_mean >= lo) & (log_mean <= hi)
        if np.any(extra):
            fitted[extra] = model.predict(log_mean[extra], stderror=False).values

    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        theta = mean ** 2 / (10 ** fitted - mean)
    to_fix = ~np.isfinite(theta) | (theta <= min_theta)
    theta[to_fix] = min_theta

    return {'theta': theta, 'fitted': fitted, 'n_clamped': int(np.sum(to_fix))}


def regularized_theta(counts, design, config, span=THETA_SPAN, min_theta=MIN_THETA,
                      progress=None):
    """Two-pass regularized theta for every gene of ``counts``.

    Returns
    -------
    Series of regularized theta indexed by gene.
    """
    if not min_theta > 0:
        raise InvalidArgumentError("min_theta must be positive")
    counts = LabeledMatrix.from_any(counts)
    if config.verbose:
        print("First run Poisson regression (to get initial mean), and estimate theta per gene")
    theta_raw = estimate_theta(counts, design, config, progress=progress)

    smoothed = smooth_theta(counts.row_means(), theta_raw.values,
                            span=span, min_theta=min_theta)
    if smoothed['n_clamped'] > 0 and config.verbose:
        print(f"Fitted theta below {min_theta} for {smoothed['n_clamped']} genes, "
              f"setting them to {min_theta}")
    return pd.Series(smoothed['theta'], index=counts.row_names, name='theta')

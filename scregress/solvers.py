"""
Per-gene model fitting.

Thin adapters over statsmodels' OLS and GLM fitters, plus the maximum
likelihood estimator of the negative binomial theta used by the
regularized dispersion path. Every adapter returns a ``SolverResult``;
fit failures are reported in the result rather than raised.
"""

import warnings

import numpy as np
import statsmodels.api as sm
from scipy.special import digamma, polygamma
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .classes import SolverResult


_EPS = np.finfo(np.float64).eps
MIN_ALPHA = 1e-8


def fit_model(y, design, model, maxit=100):
    """Fit ``model`` to one gene and return its residuals.

    Parameters
    ----------
    y : ndarray
        Expression of one gene across cells.
    design : ndarray
        Design matrix (cells x coefficients), intercept included.
    model : Model
        Model variant. Linear fits return raw residuals, GLM fits return
        Pearson residuals.
    maxit : int
        Maximum IRLS / optimizer iterations.

    Returns
    -------
    SolverResult
    """
    if model.kind == 'linear':
        return fit_linear(y, design)
    if model.kind == 'poisson':
        return fit_poisson(y, design, maxit=maxit)
    if model.theta is None:
        return fit_negbinom_joint(y, design, maxit=maxit)
    return fit_negbinom(y, design, model.theta, maxit=maxit)


def _run(fit, y, design):
    """Call ``fit`` for one gene; any exception it raises becomes a failed result."""
    y = np.asarray(y, dtype=np.float64)
    design = np.asarray(design, dtype=np.float64)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        with np.errstate(all='ignore'):
            try:
                result = fit(y, design)
            except Exception as exc:
                result = SolverResult(converged=False,
                                      error=f"{type(exc).__name__}: {exc}")
    for w in caught:
        if issubclass(w.category, ConvergenceWarning):
            result.converged = False
            if result.error is None:
                result.error = str(w.message)
    return result


def fit_linear(y, design):
    """Ordinary least squares; residuals are ``y - fitted``."""
    def fit(y, design):
        res = sm.OLS(y, design).fit()
        return SolverResult(residuals=np.asarray(res.resid),
                            fitted=np.asarray(res.fittedvalues),
                            converged=True)
    return _run(fit, y, design)


def _glm_result(res):
    converged = bool(getattr(res, 'converged', True))
    return SolverResult(
        residuals=np.asarray(res.resid_pearson),
        fitted=np.asarray(res.fittedvalues),
        converged=converged,
        error=None if converged else "IRLS did not converge",
    )


def fit_poisson(y, design, maxit=100):
    """Poisson GLM with log link; Pearson residuals."""
    def fit(y, design):
        res = sm.GLM(y, design, family=sm.families.Poisson()).fit(maxiter=maxit)
        return _glm_result(res)
    return _run(fit, y, design)


def fit_negbinom(y, design, theta, maxit=100):
    """Negative binomial GLM with dispersion pinned at ``theta``.

    statsmodels parameterizes the family by ``alpha = 1 / theta``.
    """
    theta = float(theta)

    def fit(y, design):
        if not np.isfinite(theta) or theta <= 0:
            return SolverResult(converged=False, error=f"invalid theta {theta}")
        family = sm.families.NegativeBinomial(alpha=1.0 / theta)
        res = sm.GLM(y, design, family=family).fit(maxiter=maxit)
        out = _glm_result(res)
        out.theta = theta
        return out
    return _run(fit, y, design)


def fit_negbinom_joint(y, design, maxit=100):
    """Negative binomial regression estimating theta jointly per gene.

    The NB2 likelihood is maximized over coefficients and dispersion; the
    Pearson residuals then come from the GLM refit at that dispersion.
    A gene without overdispersion drives the dispersion to its boundary;
    it is floored at ``MIN_ALPHA`` (theta capped at ``1 / MIN_ALPHA``) and
    the refit decides convergence.
    """
    def fit(y, design):
        # The likelihood step only supplies the dispersion; its optimizer
        # diagnostics at the boundary are not fit failures
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            nb = sm.NegativeBinomial(y, design, loglike_method='nb2').fit(
                disp=0, maxiter=maxit)
        alpha = float(nb.params[-1])
        if not np.isfinite(alpha):
            return SolverResult(converged=False,
                                error=f"invalid dispersion estimate {alpha}")
        alpha = max(alpha, MIN_ALPHA)
        start = np.asarray(nb.params[:-1])
        if not np.all(np.isfinite(start)):
            start = None
        family = sm.families.NegativeBinomial(alpha=alpha)
        res = sm.GLM(y, design, family=family).fit(start_params=start, maxiter=maxit)
        out = _glm_result(res)
        out.theta = 1.0 / alpha
        if not nb.mle_retvals.get('converged', True):
            out.messages.append("NB likelihood optimization did not converge")
        return out
    return _run(fit, y, design)


def theta_ml(y, mu, weights=None, limit=10, eps=_EPS ** 0.25):
    """Maximum likelihood estimate of the negative binomial theta.

    Newton-Raphson on the score of the NB log-likelihood with the means
    held fixed, started from the method-of-moments value
    ``n / sum((y / mu - 1)^2)``. Equivalent to MASS's ``theta.ml``.

    Parameters
    ----------
    y : ndarray
        Observed counts.
    mu : ndarray
        Fitted means (e.g. from a Poisson GLM).
    weights : ndarray, optional
        Case weights (default all ones).
    limit : int
        Iteration limit; at most ``limit - 1`` Newton steps are taken.
    eps : float
        Convergence tolerance on the step size.

    Returns
    -------
    float
        Theta estimate; may be ``inf`` when there is no overdispersion.
    """
    y = np.asarray(y, dtype=np.float64)
    mu = np.asarray(mu, dtype=np.float64)
    w = np.ones_like(y) if weights is None else np.asarray(weights, dtype=np.float64)
    n = np.sum(w)

    def score(th):
        return np.sum(w * (digamma(th + y) - digamma(th) + np.log(th) + 1
                           - np.log(th + mu) - (y + th) / (mu + th)))

    def info(th):
        return np.sum(w * (-polygamma(1, th + y) + polygamma(1, th) - 1 / th
                           + 2 / (mu + th) - (y + th) / (mu + th) ** 2))

    with np.errstate(divide='ignore', invalid='ignore'):
        t0 = n / np.sum(w * (y / mu - 1) ** 2)
    if not np.isfinite(t0):
        return np.inf
    # At most limit - 1 Newton steps, as in MASS
    it = 1
    delta = 1.0
    while it < limit and abs(delta) > eps:
        t0 = abs(t0)
        with np.errstate(all='ignore'):
            delta = score(t0) / info(t0)
        if not np.isfinite(delta):
            break
        t0 = t0 + delta
        it += 1

    if t0 < 0:
        t0 = 0.0
        warnings.warn("theta estimate truncated at zero")
    if it == limit:
        warnings.warn("theta estimation reached the iteration limit")
    return float(t0)


def fit_poisson_theta(y, design, maxit=100):
    """Poisson fit followed by ``theta_ml`` on its fitted means."""
    def fit(y, design):
        res = sm.GLM(y, design, family=sm.families.Poisson()).fit(maxiter=maxit)
        out = _glm_result(res)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            out.theta = theta_ml(y, out.fitted)
        out.messages.extend(str(w.message) for w in caught)
        return out
    return _run(fit, y, design)

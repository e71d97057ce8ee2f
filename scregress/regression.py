"""Regress latent covariates out of single-cell expression.

Implements ``regress_out()`` (linear, Poisson or negative binomial
residuals) and ``regress_out_nb()`` (negative binomial Pearson residuals
with a selectable dispersion strategy), both built on the binned driver
``regress_residuals()``.
"""

import time
import warnings
from dataclasses import replace

import numpy as np
import pandas as pd

from . import solvers
from .classes import FitConvergenceWarning, GeneFit, InvalidArgumentError, Model
from .labeled_matrix import LabeledMatrix
from .parallel import iter_bins, make_config
from .postprocess import clip_residuals, postprocess_residuals, validate_clip_range
from .theta import MIN_THETA, THETA_SPAN, regularized_theta
from .utils import covariate_design, resolve_genes, scaled_log10

BIN_SIZE_DEFAULT = 100
BIN_SIZE_NB = 5
BIN_SIZE_NB_REG = 128
PR_CLIP_RANGE = (-30, 30)
THETA_METHODS = ('regularized', 'genewise')


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def _fit_task(y, design, model):
    return solvers.fit_model(y, design, model)


def _gene_model(model, theta, gene):
    if theta is None:
        return model
    return Model.negbinom(theta[gene])


def _resolve_fit(gene, y, model, res):
    """Keep the residuals of a good fit, or substitute the fallback."""
    if not res.failed:
        return _gene_fit(gene, res.residuals)
    name = "lm" if model.kind == 'linear' else f"glm and {model.describe()}"
    message = (f"{name} failed for gene {gene}; "
               f"falling back to scale(log10(y+1))")
    if res.error:
        message += f" ({res.error})"
    return _gene_fit(gene, scaled_log10(y), message=message, fallback=True)


def _gene_fit(gene, residuals, message=None, fallback=False):
    return GeneFit(gene=gene, residuals=np.asarray(residuals, dtype=np.float64),
                   message=message, fallback=fallback)


def regress_residuals(expr, design, config, theta=None, progress=None):
    """Fit every gene against ``design`` and collect the residuals.

    Genes are split into bins of ``config.bin_size``. Bins run in order;
    the genes of one bin are fitted in parallel on ``config.n_workers``
    workers. A gene whose fit fails or does not converge gets
    ``scale(log10(y + 1))`` instead and a ``FitConvergenceWarning`` is
    issued once its bin completes.

    Parameters
    ----------
    expr : LabeledMatrix or array-like
        Expression (genes x cells) to regress.
    design : ndarray
        Design matrix (cells x coefficients), intercept included.
    config : RegressionConfig
        Resolved run configuration.
    theta : Series, optional
        Gene -> theta. When given, each gene is fitted with
        ``Model.negbinom(theta[gene])``.
    progress : observer, optional
        Receives one update per bin.

    Returns
    -------
    DataFrame of residuals (genes x cells) in the row order of ``expr``.
    """
    expr = LabeledMatrix.from_any(expr)
    design = np.asarray(design, dtype=np.float64)
    if design.shape[0] != expr.ncol:
        raise InvalidArgumentError(
            "Design matrix rows must equal number of cells."
        )
    if theta is not None:
        missing = expr.row_names.difference(pd.Index(theta.index).astype(str))
        if len(missing) > 0:
            raise InvalidArgumentError(f"No theta for genes: {list(missing[:5])}")

    def task_args(gene):
        return design, _gene_model(config.model, theta, gene)

    rows = {}
    for fits in iter_bins(expr, _fit_task, config, task_args, progress=progress,
                          desc="Regressing"):
        resolved = [_resolve_fit(gene, y, _gene_model(config.model, theta, gene), res)
                    for gene, y, res in fits]
        messages = [f.message for f in resolved if f.message is not None]
        if messages:
            warnings.warn("\n".join(messages), FitConvergenceWarning, stacklevel=2)
        for f in resolved:
            rows[f.gene] = f.residuals

    genes = list(expr.row_names)
    values = np.vstack([rows[g] for g in genes])
    return pd.DataFrame(values, index=expr.row_names.copy(), columns=expr.col_names.copy())


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def regress_out(data, latent_data, vars_to_regress, genes_regress=None,
                model='linear', use_umi=False, raw_data=None,
                display_progress=True, do_par=False, num_cores=1,
                clip_range=None, bin_size=None, backend='process',
                progress=None, available_cores=None, verbose=None):
    """Regress out technical effects and cell cycle.

    Parameters
    ----------
    data : array-like, DataFrame, sparse matrix or LabeledMatrix
        Normalized expression (genes x cells).
    latent_data : DataFrame
        Cell-level covariates (cells x variables).
    vars_to_regress : str or list of str
        Columns of ``latent_data`` to regress out.
    genes_regress : list of str, optional
        Genes to regress (default all). Intersected with the rows of
        ``data``, order kept.
    model : str
        'linear' (default), 'poisson' or 'negbinom'.
    use_umi : bool
        Regress raw UMI counts instead of ``data``. Always on for the
        Poisson and negative binomial models.
    raw_data : matrix, optional
        Raw counts; columns are matched to the cells of ``data``. When
        omitted, ``data`` itself is taken as the counts.
    display_progress : bool
        Show a console progress bar.
    do_par : bool
        Fit genes in parallel.
    num_cores : int
        Workers for ``do_par``; 1 means half of the available cores.
    clip_range : pair of float, optional
        Clamp residuals to this range before the UMI transform.
    bin_size : int, optional
        Genes per bin (100 by default, 5 for 'negbinom').
    backend : str
        'process' or 'thread' workers.
    progress : observer, optional
        Custom progress observer; replaces the console bar.
    available_cores : int, optional
        Overrides ``os.cpu_count()`` when resolving workers.
    verbose : bool, optional
        Print the covariates and the elapsed time. Defaults to
        ``display_progress``.

    Returns
    -------
    DataFrame of residuals (genes x cells). With ``use_umi`` each gene is
    shifted by its minimum and ``log1p`` transformed.
    """
    if not isinstance(model, Model):
        model = Model(model)
    if clip_range is not None:
        validate_clip_range(clip_range)
    if bin_size is None:
        bin_size = BIN_SIZE_NB if model.kind == 'negbinom' else BIN_SIZE_DEFAULT
    if verbose is None:
        verbose = display_progress
    config = make_config(model, bin_size, do_par=do_par, num_cores=num_cores,
                         backend=backend, display_progress=display_progress,
                         verbose=verbose, available_cores=available_cores)

    data = LabeledMatrix.from_any(data)
    genes = resolve_genes(genes_regress, data.row_names)
    if model.kind != 'linear':
        use_umi = True
    if use_umi and raw_data is not None:
        expr = LabeledMatrix.from_any(raw_data).subset(rows=genes, cols=data.col_names)
    else:
        expr = data.subset(rows=genes)
    design = covariate_design(latent_data, vars_to_regress, cells=expr.col_names)

    if verbose:
        names = [vars_to_regress] if isinstance(vars_to_regress, str) else list(vars_to_regress)
        print(f"Regressing out {', '.join(names)}")
    start = time.perf_counter()
    resid = regress_residuals(expr, design, config, progress=progress)
    if verbose:
        print(f"Time Elapsed: {time.perf_counter() - start:.2f} secs")

    return postprocess_residuals(resid, clip_range=clip_range, use_umi=use_umi)


def regress_out_nb(raw_data, latent_data, latent_vars, genes_regress=None,
                   cells=None, pr_clip_range=PR_CLIP_RANGE, min_theta=MIN_THETA,
                   theta_method='regularized', span=THETA_SPAN,
                   bin_size=BIN_SIZE_NB_REG, do_par=False, num_cores=1,
                   backend='process', display_progress=True, progress=None,
                   available_cores=None, verbose=None):
    """Negative binomial Pearson residuals of UMI counts.

    Parameters
    ----------
    raw_data : array-like, DataFrame, sparse matrix or LabeledMatrix
        UMI counts (genes x cells).
    latent_data : DataFrame
        Cell-level covariates.
    latent_vars : str or list of str
        Covariates to regress out.
    genes_regress : list of str, optional
        Genes to regress (default all).
    cells : list of str, optional
        Cells to use, in order (default all columns of ``raw_data``).
    pr_clip_range : pair of float
        Residuals are clipped to this range.
    min_theta : float
        Floor for the dispersion.
    theta_method : str
        'regularized': a Poisson pass estimates theta per gene, which is
        smoothed across genes and then held fixed. 'genewise': each gene's
        theta is estimated jointly with its coefficients.
    span : float
        LOESS span for the regularized theta trend.
    bin_size : int
        Genes per bin.
    verbose : bool, optional
        Print progress messages. Defaults to ``display_progress``.

    Returns
    -------
    DataFrame of clipped Pearson residuals (genes x cells).
    """
    if theta_method not in THETA_METHODS:
        raise InvalidArgumentError(
            f"theta_method must be one of {', '.join(THETA_METHODS)}, got {theta_method!r}")
    validate_clip_range(pr_clip_range)
    if not min_theta > 0:
        raise InvalidArgumentError("min_theta must be positive")
    if verbose is None:
        verbose = display_progress
    config = make_config(Model.negbinom(), bin_size, do_par=do_par,
                         num_cores=num_cores, backend=backend,
                         display_progress=display_progress,
                         verbose=verbose, available_cores=available_cores)

    raw = LabeledMatrix.from_any(raw_data)
    genes = resolve_genes(genes_regress, raw.row_names)
    cm = raw.subset(rows=genes, cols=raw.col_names if cells is None else cells)
    design = covariate_design(latent_data, latent_vars, cells=cm.col_names)

    if verbose:
        names = [latent_vars] if isinstance(latent_vars, str) else list(latent_vars)
        print(f"Regressing out {', '.join(names)} for {len(genes)} genes")

    theta = None
    if theta_method == 'regularized':
        theta = regularized_theta(cm, design, replace(config, model=Model.poisson()),
                                  span=span, min_theta=min_theta, progress=progress)
        if verbose:
            print("Second run NB regression with fixed theta")
    resid = regress_residuals(cm, design, config, theta=theta, progress=progress)
    return clip_residuals(resid, pr_clip_range)

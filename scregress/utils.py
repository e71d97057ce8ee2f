"""
Utility functions for scregress.

Covariate design construction, cell alignment, gene binning and the
fallback residual used when a model fit fails.
"""

import numpy as np
import pandas as pd

from .classes import InvalidArgumentError


def model_matrix(formula, data=None):
    """Create a design matrix from an R-style formula.

    Uses patsy to parse the formula and build the design matrix. Numeric
    columns enter as-is; object and categorical columns are dummy coded
    against their first level.

    Parameters
    ----------
    formula : str
        R-style formula, e.g. ``'~ nUMI'`` or ``'~ Q("percent.mito") + batch'``.
    data : DataFrame, dict, or Series
        Cell-level covariates. Column names are used as variables in the
        formula.

    Returns
    -------
    ndarray
        Design matrix (cells x coefficients), dtype float64.

    Examples
    --------
    >>> df = pd.DataFrame({'batch': ['a', 'a', 'b'], 'depth': [1., 2., 3.]})
    >>> model_matrix('~ batch + depth', df)
    array([[1., 0., 1.],
           [1., 0., 2.],
           [1., 1., 3.]])
    """
    import patsy

    if data is None:
        raise InvalidArgumentError("data must be provided for formula-based design")
    if isinstance(data, dict):
        data = pd.DataFrame(data)
    elif isinstance(data, pd.Series):
        name = data.name if data.name is not None else 'x0'
        data = pd.DataFrame({name: data.values})

    design = patsy.dmatrix(formula, data=data, return_type='dataframe',
                           NA_action='raise')
    return np.asarray(design, dtype=np.float64)


def regression_formula(vars_to_regress):
    """Right-hand side formula quoting each covariate name."""
    terms = [f'Q("{v}")' for v in vars_to_regress]
    return "~ " + " + ".join(terms)


def covariate_design(latent_data, vars_to_regress, cells=None):
    """Build the regression design for a set of latent covariates.

    Parameters
    ----------
    latent_data : DataFrame
        Cells x covariates. If ``cells`` is given and the index holds cell
        names, rows are aligned to ``cells``; otherwise rows must already
        be in cell order.
    vars_to_regress : str or sequence of str
        Covariate columns to regress out.
    cells : sequence of str, optional
        Cell identifiers in expression-matrix column order.

    Returns
    -------
    ndarray
        Intercept plus covariate columns (cells x coefficients).
    """
    if isinstance(vars_to_regress, str):
        vars_to_regress = [vars_to_regress]
    vars_to_regress = list(vars_to_regress)
    if len(vars_to_regress) == 0:
        raise InvalidArgumentError("No variables to regress out")

    if not isinstance(latent_data, pd.DataFrame):
        latent_data = pd.DataFrame(latent_data)
    missing = [v for v in vars_to_regress if v not in latent_data.columns]
    if missing:
        raise InvalidArgumentError(f"Covariates not found in latent data: {missing}")

    latent = latent_data[vars_to_regress]
    if cells is not None:
        cells = [str(c) for c in cells]
        index = latent.index.astype(str)
        if set(cells).issubset(index):
            latent = latent.set_axis(index, axis=0).loc[cells]
        elif len(latent) != len(cells):
            raise InvalidArgumentError(
                "Latent data rows must match cells in the expression matrix"
            )
    return model_matrix(regression_formula(vars_to_regress), latent.reset_index(drop=True))


def resolve_genes(genes_regress, row_names):
    """Intersect requested genes with the matrix rows, keeping request order."""
    row_names = [str(r) for r in row_names]
    if genes_regress is None:
        genes = row_names
    else:
        if isinstance(genes_regress, str):
            genes_regress = [genes_regress]
        present = set(row_names)
        genes = [str(g) for g in genes_regress if str(g) in present]
    genes = list(dict.fromkeys(genes))
    if len(genes) == 0:
        raise InvalidArgumentError("None of the requested genes are in the matrix")
    return genes


def make_bins(genes, bin_size):
    """Partition ``genes`` into contiguous bins of at most ``bin_size``.

    Examples
    --------
    >>> make_bins(['a', 'b', 'c'], 2)
    [['a', 'b'], ['c']]
    """
    bin_size = int(bin_size)
    if bin_size < 1:
        raise InvalidArgumentError("bin_size must be at least 1")
    genes = list(genes)
    return [genes[i:i + bin_size] for i in range(0, len(genes), bin_size)]


def scaled_log10(y):
    """Z-scored ``log10(y + 1)``, the residual used when a fit fails.

    Uses the sample standard deviation. A constant row has zero spread and
    is returned as zeros.
    """
    z = np.log10(np.asarray(y, dtype=np.float64) + 1)
    z = z - z.mean()
    if z.size < 2:
        return z
    sd = np.std(z, ddof=1)
    if not np.isfinite(sd) or sd == 0:
        return np.zeros_like(z)
    return z / sd

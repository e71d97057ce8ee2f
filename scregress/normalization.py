"""
Custom per-cell or per-gene normalization of count matrices.
"""

import numpy as np
import pandas as pd

from .classes import InvalidArgumentError
from .labeled_matrix import LabeledMatrix


def custom_normalize(data, custom_function, across):
    """Apply a user-supplied transform to each cell or each gene.

    Parameters
    ----------
    data : array-like, DataFrame, sparse matrix or LabeledMatrix
        Count matrix (genes x cells). Converted once to a sparse
        ``LabeledMatrix``.
    custom_function : callable
        Takes a 1-D array and returns an array of the same length.
    across : str
        'cells' to transform each column, 'genes' to transform each row.

    Returns
    -------
    DataFrame with the same shape and labels as ``data``.
    """
    if across == 'cells':
        axis = 1
    elif across == 'genes':
        axis = 0
    else:
        raise InvalidArgumentError("'across' must be either 'cells' or 'genes'")

    mat = LabeledMatrix.from_any(data)
    dense = mat.to_dense()
    out = np.empty_like(dense)
    n = dense.shape[axis]
    for k in range(n):
        vec = dense[:, k] if axis == 1 else dense[k, :]
        res = np.asarray(custom_function(vec), dtype=np.float64).ravel()
        if res.size != vec.size:
            raise InvalidArgumentError(
                f"custom_function returned {res.size} values for a vector of "
                f"length {vec.size}"
            )
        if axis == 1:
            out[:, k] = res
        else:
            out[k, :] = res

    return pd.DataFrame(out, index=mat.row_names.copy(), columns=mat.col_names.copy())

"""
LabeledMatrix: sparse expression matrix with gene and cell labels.

All expression input is converted into this representation once, when it
enters the package. Downstream code never inspects the caller's matrix
class again.
"""

import numpy as np
import pandas as pd
from scipy import sparse

from .classes import InvalidArgumentError


class LabeledMatrix:
    """Genes x cells matrix stored as CSR with row and column labels.

    Parameters
    ----------
    x : scipy.sparse matrix or 2-D array
        Values (genes x cells).
    row_names : sequence of str, optional
        Gene identifiers. Defaults to ``Gene1, Gene2, ...``.
    col_names : sequence of str, optional
        Cell identifiers. Defaults to ``Cell1, Cell2, ...``.
    """

    def __init__(self, x, row_names=None, col_names=None):
        if sparse.issparse(x):
            data = sparse.csr_matrix(x, dtype=np.float64)
        else:
            x = np.asarray(x, dtype=np.float64)
            if x.ndim == 1:
                x = x.reshape(1, -1)
            if x.ndim != 2:
                raise InvalidArgumentError("x must be a 2-D matrix")
            data = sparse.csr_matrix(x)
        nr, nc = data.shape

        if row_names is None:
            row_names = [f"Gene{i + 1}" for i in range(nr)]
        if col_names is None:
            col_names = [f"Cell{j + 1}" for j in range(nc)]
        row_names = pd.Index([str(r) for r in row_names])
        col_names = pd.Index([str(c) for c in col_names])
        if len(row_names) != nr:
            raise InvalidArgumentError("length of row_names differs from number of rows")
        if len(col_names) != nc:
            raise InvalidArgumentError("length of col_names differs from number of columns")

        self._data = data
        self.row_names = row_names
        self.col_names = col_names

    @classmethod
    def from_any(cls, x, row_names=None, col_names=None):
        """Coerce a DataFrame, array, sparse matrix or LabeledMatrix.

        Labels are taken from the input where it carries them (DataFrame
        index/columns) unless given explicitly.
        """
        if isinstance(x, cls):
            if row_names is None and col_names is None:
                return x
            return cls(x.data,
                       row_names=x.row_names if row_names is None else row_names,
                       col_names=x.col_names if col_names is None else col_names)
        if isinstance(x, pd.DataFrame):
            numeric = x.dtypes.apply(lambda dt: np.issubdtype(dt, np.number))
            if not numeric.all():
                bad = list(x.columns[~numeric])
                raise InvalidArgumentError(f"non-numeric columns in matrix: {bad}")
            return cls(x.to_numpy(dtype=np.float64),
                       row_names=x.index if row_names is None else row_names,
                       col_names=x.columns if col_names is None else col_names)
        if hasattr(x, 'toarray') and not sparse.issparse(x):
            x = x.toarray()
        return cls(x, row_names=row_names, col_names=col_names)

    @property
    def data(self):
        """Underlying CSR matrix."""
        return self._data

    @property
    def shape(self):
        return self._data.shape

    @property
    def nrow(self):
        return self._data.shape[0]

    @property
    def ncol(self):
        return self._data.shape[1]

    def __repr__(self):
        nr, nc = self.shape
        return f"LabeledMatrix with {nr} rows and {nc} columns ({self._data.nnz} non-zero)"

    def subset(self, rows=None, cols=None):
        """Subset by label, keeping the order given."""
        data = self._data
        row_names = self.row_names
        col_names = self.col_names
        if rows is not None:
            ri = self._locate(self.row_names, rows, 'rows')
            data = data[ri, :]
            row_names = self.row_names[ri]
        if cols is not None:
            ci = self._locate(self.col_names, cols, 'columns')
            data = data[:, ci]
            col_names = self.col_names[ci]
        return LabeledMatrix(data, row_names=row_names, col_names=col_names)

    @staticmethod
    def _locate(index, labels, what):
        if not index.is_unique:
            raise InvalidArgumentError(f"{what} labels of the matrix are not unique")
        labels = pd.Index([str(v) for v in labels])
        pos = index.get_indexer(labels)
        if np.any(pos < 0):
            missing = list(labels[pos < 0][:5])
            raise InvalidArgumentError(f"{what} not found in matrix: {missing}")
        return pos

    def row(self, i):
        """Dense 1-D copy of row ``i``."""
        return np.asarray(self._data[i, :].toarray()).ravel()

    def col(self, j):
        """Dense 1-D copy of column ``j``."""
        return np.asarray(self._data[:, j].toarray()).ravel()

    def to_dense(self):
        return self._data.toarray()

    def to_frame(self):
        return pd.DataFrame(self.to_dense(), index=self.row_names.copy(),
                            columns=self.col_names.copy())

    def row_means(self):
        return np.asarray(self._data.mean(axis=1)).ravel()

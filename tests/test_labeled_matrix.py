"""Tests for LabeledMatrix ingestion and subsetting."""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

import scregress as sr


class TestConstruction:

    def test_default_names(self):
        m = sr.LabeledMatrix(np.arange(6).reshape(2, 3))
        assert list(m.row_names) == ['Gene1', 'Gene2']
        assert list(m.col_names) == ['Cell1', 'Cell2', 'Cell3']
        assert sparse.isspmatrix_csr(m.data)
        assert m.data.dtype == np.float64

    def test_from_dataframe_keeps_labels(self, sc_counts):
        m = sr.LabeledMatrix.from_any(sc_counts)
        assert m.shape == sc_counts.shape
        assert list(m.row_names) == list(sc_counts.index)
        assert list(m.col_names) == list(sc_counts.columns)
        np.testing.assert_array_equal(m.to_dense(), sc_counts.values)

    def test_from_sparse(self):
        x = sparse.random(5, 4, density=0.3, format='csc', random_state=0)
        m = sr.LabeledMatrix.from_any(x)
        np.testing.assert_allclose(m.to_dense(), x.toarray())

    def test_passthrough(self, sc_counts):
        m = sr.LabeledMatrix.from_any(sc_counts)
        assert sr.LabeledMatrix.from_any(m) is m

    def test_non_numeric_frame(self):
        df = pd.DataFrame({'a': [1, 2], 'b': ['x', 'y']})
        with pytest.raises(sr.InvalidArgumentError, match="non-numeric"):
            sr.LabeledMatrix.from_any(df)

    def test_label_length_mismatch(self):
        with pytest.raises(sr.InvalidArgumentError):
            sr.LabeledMatrix(np.zeros((2, 2)), row_names=['a'])

    def test_three_dimensional(self):
        with pytest.raises(sr.InvalidArgumentError):
            sr.LabeledMatrix(np.zeros((2, 2, 2)))


class TestSubset:

    def test_order_follows_request(self, sc_counts):
        m = sr.LabeledMatrix.from_any(sc_counts)
        sub = m.subset(rows=['G3', 'G1'], cols=['C5', 'C2'])
        assert list(sub.row_names) == ['G3', 'G1']
        np.testing.assert_array_equal(
            sub.to_dense(), sc_counts.loc[['G3', 'G1'], ['C5', 'C2']].values)

    def test_missing_label(self, sc_counts):
        m = sr.LabeledMatrix.from_any(sc_counts)
        with pytest.raises(sr.InvalidArgumentError, match="not found"):
            m.subset(cols=['nope'])

    def test_duplicate_labels(self):
        m = sr.LabeledMatrix(np.eye(2), row_names=['a', 'a'])
        with pytest.raises(sr.InvalidArgumentError, match="not unique"):
            m.subset(rows=['a'])


class TestAccessors:

    def test_row_col_means(self):
        x = np.array([[1., 0., 3.], [0., 2., 0.]])
        m = sr.LabeledMatrix(x)
        np.testing.assert_array_equal(m.row(0), x[0])
        np.testing.assert_array_equal(m.col(1), x[:, 1])
        np.testing.assert_allclose(m.row_means(), x.mean(axis=1))

    def test_to_frame(self):
        m = sr.LabeledMatrix(np.eye(2), row_names=['a', 'b'], col_names=['x', 'y'])
        df = m.to_frame()
        assert list(df.index) == ['a', 'b']
        assert list(df.columns) == ['x', 'y']

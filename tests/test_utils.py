"""Tests for design construction, gene selection, binning and the fallback residual."""

import numpy as np
import pandas as pd
import pytest

import scregress as sr
from scregress.utils import regression_formula, resolve_genes


# ── model_matrix ────────────────────────────────────────────────────

class TestModelMatrix:

    def test_numeric_and_factor(self):
        df = pd.DataFrame({'batch': ['a', 'a', 'b'], 'depth': [1., 2., 3.]})
        X = sr.model_matrix('~ batch + depth', df)
        np.testing.assert_array_equal(X, [[1, 0, 1], [1, 0, 2], [1, 1, 3]])

    def test_quoted_names(self):
        df = pd.DataFrame({'percent.mito': [0.1, 0.2, 0.3]})
        X = sr.model_matrix(regression_formula(['percent.mito']), df)
        assert X.shape == (3, 2)
        np.testing.assert_allclose(X[:, 1], [0.1, 0.2, 0.3])

    def test_missing_values_raise(self):
        df = pd.DataFrame({'depth': [1., np.nan, 3.]})
        with pytest.raises(Exception):
            sr.model_matrix('~ depth', df)

    def test_no_data(self):
        with pytest.raises(sr.InvalidArgumentError):
            sr.model_matrix('~ x')


# ── covariate_design ────────────────────────────────────────────────

class TestCovariateDesign:

    def test_intercept_first(self, latent):
        X = sr.covariate_design(latent, 'nUMI', cells=latent.index)
        assert X.shape == (len(latent), 2)
        np.testing.assert_array_equal(X[:, 0], 1.0)
        np.testing.assert_allclose(X[:, 1], latent['nUMI'].values)

    def test_aligns_by_cell_name(self, latent):
        cells = list(latent.index[::-1])
        X = sr.covariate_design(latent, ['nUMI'], cells=cells)
        np.testing.assert_allclose(X[:, 1], latent['nUMI'].values[::-1])

    def test_positional_when_unnamed(self, latent):
        unnamed = latent.reset_index(drop=True)
        X = sr.covariate_design(unnamed, ['nUMI'], cells=latent.index)
        np.testing.assert_allclose(X[:, 1], latent['nUMI'].values)

    def test_row_count_mismatch(self, latent):
        unnamed = latent.reset_index(drop=True).iloc[:10]
        with pytest.raises(sr.InvalidArgumentError):
            sr.covariate_design(unnamed, ['nUMI'], cells=latent.index)

    def test_missing_covariate(self, latent):
        with pytest.raises(sr.InvalidArgumentError, match="percent.mito"):
            sr.covariate_design(latent, ['nUMI', 'percent.mito'])

    def test_factor_covariate(self, latent):
        X = sr.covariate_design(latent, ['nUMI', 'batch'])
        assert X.shape == (len(latent), 3)
        assert set(np.unique(X[:, 2])) == {0.0, 1.0}


# ── resolve_genes ───────────────────────────────────────────────────

class TestResolveGenes:

    def test_default_all(self):
        assert resolve_genes(None, ['a', 'b']) == ['a', 'b']

    def test_intersection_keeps_request_order(self):
        assert resolve_genes(['c', 'x', 'a', 'c'], ['a', 'b', 'c']) == ['c', 'a']

    def test_empty_intersection(self):
        with pytest.raises(sr.InvalidArgumentError):
            resolve_genes(['x'], ['a', 'b'])


# ── make_bins ───────────────────────────────────────────────────────

class TestMakeBins:

    @pytest.mark.parametrize("n,size", [(0, 1), (1, 1), (7, 3), (20, 5), (10, 100), (128, 128)])
    def test_exhaustive_non_overlapping(self, n, size):
        genes = [f"g{i}" for i in range(n)]
        bins = sr.make_bins(genes, size)
        flat = [g for b in bins for g in b]
        assert flat == genes
        assert all(1 <= len(b) <= size for b in bins)
        assert len(bins) == -(-n // size)

    def test_last_bin_shorter(self):
        assert sr.make_bins(range(5), 2) == [[0, 1], [2, 3], [4]]

    @pytest.mark.parametrize("size", [0, -3])
    def test_invalid_size(self, size):
        with pytest.raises(sr.InvalidArgumentError):
            sr.make_bins(['a'], size)


# ── scaled_log10 ────────────────────────────────────────────────────

class TestScaledLog10:

    def test_zscore(self):
        y = np.array([0., 1., 3., 9., 99.])
        z = sr.scaled_log10(y)
        assert abs(z.mean()) < 1e-12
        assert abs(np.std(z, ddof=1) - 1.0) < 1e-12
        assert np.all(np.diff(z) > 0)

    def test_constant_row_is_zero(self):
        np.testing.assert_array_equal(sr.scaled_log10(np.full(6, 4.0)), 0.0)

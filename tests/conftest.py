"""Shared fixtures for scregress tests."""

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture
def sc_counts(rng):
    """20 genes x 50 cells, Poisson counts scaled by a per-cell depth factor."""
    ngenes, ncells = 20, 50
    depth = rng.uniform(0.5, 2.0, ncells)
    base = rng.uniform(2, 20, ngenes)
    counts = rng.poisson(np.outer(base, depth)).astype(np.float64)
    return pd.DataFrame(
        counts,
        index=[f"G{i + 1}" for i in range(ngenes)],
        columns=[f"C{j + 1}" for j in range(ncells)],
    )


@pytest.fixture
def latent(sc_counts):
    """Cell covariates: library size and a two-level batch."""
    ncells = sc_counts.shape[1]
    return pd.DataFrame({
        'nUMI': sc_counts.sum(axis=0).values,
        'batch': np.tile(['a', 'b'], ncells // 2),
    }, index=sc_counts.columns)


@pytest.fixture
def nb_counts(rng):
    """40 genes x 120 cells, negative binomial with theta in [1, 10]."""
    ngenes, ncells = 40, 120
    depth = rng.uniform(0.5, 2.0, ncells)
    base = np.exp(rng.uniform(np.log(1), np.log(50), ngenes))
    theta = rng.uniform(1, 10, ngenes)
    mu = np.outer(base, depth)
    p = theta[:, None] / (theta[:, None] + mu)
    counts = rng.negative_binomial(np.repeat(theta[:, None], ncells, axis=1), p)
    # No all-zero genes
    counts[:, 0] += 1
    return pd.DataFrame(
        counts.astype(np.float64),
        index=[f"Gene{i + 1}" for i in range(ngenes)],
        columns=[f"Cell{j + 1}" for j in range(ncells)],
    )


@pytest.fixture
def nb_latent(nb_counts):
    return pd.DataFrame({'log_umi': np.log10(nb_counts.sum(axis=0).values)},
                        index=nb_counts.columns)


class RecordingProgress:
    """Progress observer that remembers every call."""

    def __init__(self):
        self.started = []
        self.ticks = 0
        self.closed = 0

    def start(self, total):
        self.started.append(total)

    def update(self, n=1):
        self.ticks += n

    def close(self):
        self.closed += 1


@pytest.fixture
def recorder():
    return RecordingProgress()

"""
Shared pytest fixtures for omicsnet tests.

Data Generation Fixtures:
├── block_expression (40 samples × 100 variables: 3 co-expressed blocks of 30 + 10 noise)
├── block_traits (clinical traits aligned to block_expression)
├── block_adata (AnnData built from the two above)
├── make_block_adata (factory: the same scenario under any seed)
└── small_expression (20 samples × 12 variables with two blocks)

All random data is generated from fixed seeds so repeated runs are identical.
"""

import logging

import anndata
import numpy as np
import pandas as pd
import pytest

from omicsnet.core.expression import build_network_adata

logging.getLogger("anndata").setLevel(logging.ERROR)

N_SAMPLES = 40
BLOCK_SIZE = 30
N_BLOCKS = 3
N_NOISE = 10
NOISE_SD = 0.3


def make_block_matrix(
    n_samples: int,
    block_sizes,
    n_noise: int,
    noise_sd: float = NOISE_SD,
    seed: int = 42,
):
    """Samples × variables matrix with one shared signal per block plus pure-noise columns."""
    rng = np.random.RandomState(seed)
    signals = rng.randn(n_samples, len(block_sizes))
    columns = []
    for b, size in enumerate(block_sizes):
        for _ in range(size):
            columns.append(signals[:, b] + rng.randn(n_samples) * noise_sd)
    for _ in range(n_noise):
        columns.append(rng.randn(n_samples))
    return np.column_stack(columns), signals


def block_membership():
    """True block index per variable (-1 for noise)."""
    truth = []
    for b in range(N_BLOCKS):
        truth.extend([b] * BLOCK_SIZE)
    truth.extend([-1] * N_NOISE)
    return np.array(truth)


@pytest.fixture
def block_expression():
    """Expression frame with 3 implanted blocks of 30 variables and 10 noise variables."""
    X, _ = make_block_matrix(N_SAMPLES, [BLOCK_SIZE] * N_BLOCKS, N_NOISE)
    columns = [f"B{b}_{i:02d}" for b in range(N_BLOCKS) for i in range(BLOCK_SIZE)]
    columns += [f"N_{i:02d}" for i in range(N_NOISE)]
    index = pd.Index([f"P{i:03d}" for i in range(N_SAMPLES)], name="patient_id")
    return pd.DataFrame(X, index=index, columns=columns)


@pytest.fixture
def block_signals():
    """Latent block signals used to generate block_expression."""
    _, signals = make_block_matrix(N_SAMPLES, [BLOCK_SIZE] * N_BLOCKS, N_NOISE)
    return signals


@pytest.fixture
def block_traits(block_expression, block_signals):
    """
    Clinical traits for block_expression.

    - signal_trait: follows block 0 closely
    - cca_binary: 0/1 split on block 1 signal
    - alp: unrelated continuous trait with two missing values
    - constant_trait: the same value for every patient
    """
    rng = np.random.RandomState(7)
    alp = rng.normal(120, 30, N_SAMPLES)
    alp[[3, 11]] = np.nan
    return pd.DataFrame(
        {
            "signal_trait": block_signals[:, 0] + rng.randn(N_SAMPLES) * 0.2,
            "cca_binary": (block_signals[:, 1] > 0).astype(int),
            "alp": alp,
            "constant_trait": np.zeros(N_SAMPLES, dtype=int),
        },
        index=block_expression.index,
    )


@pytest.fixture
def block_adata(block_expression, block_traits) -> anndata.AnnData:
    """AnnData with block_expression in X and block_traits in obs."""
    return build_network_adata(block_expression, block_traits)


@pytest.fixture
def make_block_adata():
    """Factory for the 3-block scenario AnnData under a given random seed."""

    def _make(seed: int) -> anndata.AnnData:
        X, _ = make_block_matrix(N_SAMPLES, [BLOCK_SIZE] * N_BLOCKS, N_NOISE, seed=seed)
        columns = [f"B{b}_{i:02d}" for b in range(N_BLOCKS) for i in range(BLOCK_SIZE)]
        columns += [f"N_{i:02d}" for i in range(N_NOISE)]
        index = pd.Index([f"P{i:03d}" for i in range(N_SAMPLES)], name="patient_id")
        return build_network_adata(pd.DataFrame(X, index=index, columns=columns))

    return _make


@pytest.fixture
def small_expression():
    """20 samples × 12 variables: two blocks of 5 plus 2 noise variables."""
    X, _ = make_block_matrix(20, [5, 5], 2, seed=3)
    columns = [f"V{i:02d}" for i in range(X.shape[1])]
    return pd.DataFrame(X, index=[f"S{i:02d}" for i in range(20)], columns=columns)

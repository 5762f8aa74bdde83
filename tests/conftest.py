import matplotlib
matplotlib.use('Agg')

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from microbiome_tools import MicrobiomeDataset


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close('all')


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def abundance_df(rng):
    """Counts for 8 taxa in 12 samples, taxa as index."""
    rates = np.array([200, 120, 80, 40, 20, 5, 2, 1])[:, None]
    counts = rng.poisson(rates, size=(8, 12))
    # One taxon present in a single sample only
    counts[7] = 0
    counts[7, 0] = 3
    return pd.DataFrame(
        counts,
        index=[f'Taxon_{i}' for i in range(8)],
        columns=[f'S{j:02d}' for j in range(12)]
    )


@pytest.fixture
def metadata_df(abundance_df, rng):
    samples = abundance_df.columns
    return pd.DataFrame({
        'group': ['control' if i % 2 == 0 else 'case' for i in range(len(samples))],
        'age': rng.integers(20, 70, size=len(samples)).astype(float),
    }, index=samples)


@pytest.fixture
def dataset(abundance_df, metadata_df):
    return MicrobiomeDataset(abundance_df, metadata_df)


@pytest.fixture
def normal_table(rng):
    """100 rows of independent standard normal coordinates."""
    return pd.DataFrame({
        'PC1': rng.normal(size=100),
        'PC2': rng.normal(size=100),
    })

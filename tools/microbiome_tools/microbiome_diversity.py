"""
Functions for calculating richness, diversity, evenness, dominance and rarity
indices of microbiome samples.
"""

import logging

import numpy as np
import pandas as pd
from scipy import stats
from skbio.diversity.alpha import chao1, fisher_alpha

from .microbiome_stats import core_abundance, core_members
from .microbiome_utils import abundances, transform_abundance

logger = logging.getLogger(__name__)


def _proportions(counts):
    total = counts.sum()
    if total <= 0:
        return np.full(len(counts), np.nan)
    return counts / total


def _shannon(counts):
    p = _proportions(counts)
    p = p[p > 0]
    return -np.sum(p * np.log(p))


def _coverage(counts, threshold=0.5):
    """Number of most abundant taxa needed to cover the threshold share."""
    p = np.sort(_proportions(counts))[::-1]
    if np.isnan(p).all():
        return np.nan
    return int(np.searchsorted(np.cumsum(p), threshold) + 1)


def _fisher(counts):
    try:
        return fisher_alpha(np.round(counts).astype(int))
    except Exception as e:
        # Fisher's alpha has no solution for some count vectors
        logger.warning(f"Fisher's alpha could not be estimated: {str(e)}")
        return np.nan


def _camargo(counts):
    p = _proportions(counts)
    p = p[p > 0]
    n = len(p)
    if n == 0:
        return np.nan
    # Each pair counted once
    return 1 - np.abs(p[:, None] - p[None, :]).sum() / 2 / n


def _pielou(counts):
    richness = np.sum(counts > 0)
    if richness <= 1:
        return np.nan
    return _shannon(counts) / np.log(richness)


def _simpson_evenness(counts):
    richness = np.sum(counts > 0)
    if richness == 0:
        return np.nan
    return (1 / np.sum(_proportions(counts) ** 2)) / richness


def _evar(counts):
    present = counts[counts > 0]
    if len(present) == 0:
        return np.nan
    return 1 - 2 / np.pi * np.arctan(np.var(np.log(present)))


def _bulla(counts):
    p = _proportions(counts)
    richness = np.sum(p > 0)
    if richness <= 1:
        return np.nan
    overlap = np.sum(np.minimum(p[p > 0], 1 / richness))
    return (overlap - 1 / richness) / (1 - 1 / richness)


def _top(values, rank, aggregate):
    ordered = np.sort(values)[::-1]
    if rank > len(ordered):
        raise ValueError(f"Rank {rank} exceeds the number of taxa ({len(ordered)})")
    return ordered[:rank].sum() if aggregate else ordered[rank - 1]


def _gini(counts):
    values = np.sort(counts.astype(float))
    n = len(values)
    total = values.sum()
    if n == 0 or total == 0:
        return np.nan
    ranks = np.arange(1, n + 1)
    return 2 * np.sum(ranks * values) / (n * total) - (n + 1) / n


def _log_modulo_skewness(counts, q=0.5, n=50):
    """Skewness of the log-modulo transformed low-abundance quantiles."""
    quantiles = np.quantile(counts, np.linspace(0, q, n))
    transformed = np.sign(quantiles) * np.log1p(np.abs(quantiles))
    if np.all(transformed == transformed[0]):
        return 0.0
    return stats.skew(transformed)


RICHNESS_INDICES = ['observed', 'chao1']
DIVERSITY_INDICES = ['inverse_simpson', 'gini_simpson', 'shannon', 'fisher', 'coverage']
EVENNESS_INDICES = ['camargo', 'pielou', 'simpson', 'evar', 'bulla']
DOMINANCE_INDICES = ['dbp', 'dmn', 'absolute', 'relative', 'simpson', 'core_abundance', 'gini']
RARITY_INDICES = ['log_modulo_skewness', 'low_abundance', 'rare_abundance', 'noncore_abundance']


def _check_index(index, available, family):
    if index == 'all' or index is None:
        return list(available)
    if isinstance(index, str):
        index = [index]
    unknown = [i for i in index if i not in available]
    if unknown:
        raise ValueError(f"Unknown {family} index: {', '.join(unknown)}. "
                         f"Available: {', '.join(available)}")
    return list(index)


def _per_sample(abundance_df, func):
    return pd.Series(
        [func(abundance_df[col].values.astype(float)) for col in abundance_df.columns],
        index=abundance_df.columns
    )


def richness(x, index='all', detection=0):
    """
    Calculate richness indices for each sample.

    Parameters:
    -----------
    x : pandas.DataFrame or MicrobiomeDataset
        Taxa abundance DataFrame with taxa as index, samples as columns
    index : str or list
        'observed', 'chao1' or 'all'
    detection : float or list
        Detection threshold(s) for the observed richness

    Returns:
    --------
    pandas.DataFrame
        Richness indices with samples as index
    """
    abundance_df = abundances(x)
    indices = _check_index(index, RICHNESS_INDICES, 'richness')

    result = pd.DataFrame(index=abundance_df.columns)
    for name in indices:
        if name == 'observed':
            if np.ndim(detection) == 0:
                result['observed'] = (abundance_df > detection).sum(axis=0)
            else:
                for d in detection:
                    result[f'observed_{d}'] = (abundance_df > d).sum(axis=0)
        elif name == 'chao1':
            # Chao1 is defined on integer counts
            result['chao1'] = _per_sample(abundance_df, lambda c: chao1(np.round(c).astype(int)))

    return result


def diversity(x, index='all'):
    """
    Calculate diversity indices for each sample.

    Index definitions:
    - inverse_simpson: 1 / sum(p^2)
    - gini_simpson: 1 - sum(p^2)
    - shannon: -sum(p log p)
    - fisher: Fisher's alpha
    - coverage: number of taxa needed to cover 50% of the sample
    """
    abundance_df = abundances(x)
    indices = _check_index(index, DIVERSITY_INDICES, 'diversity')

    funcs = {
        'inverse_simpson': lambda c: 1 / np.sum(_proportions(c) ** 2),
        'gini_simpson': lambda c: 1 - np.sum(_proportions(c) ** 2),
        'shannon': _shannon,
        'fisher': _fisher,
        'coverage': _coverage,
    }

    result = pd.DataFrame(index=abundance_df.columns)
    for name in indices:
        result[name] = _per_sample(abundance_df, funcs[name])

    return result


def evenness(x, index='all'):
    """
    Calculate evenness indices for each sample.

    All indices are computed over the taxa present in the sample.
    """
    abundance_df = abundances(x)
    indices = _check_index(index, EVENNESS_INDICES, 'evenness')

    funcs = {
        'camargo': _camargo,
        'pielou': _pielou,
        'simpson': _simpson_evenness,
        'evar': _evar,
        'bulla': _bulla,
    }

    result = pd.DataFrame(index=abundance_df.columns)
    for name in indices:
        result[name] = _per_sample(abundance_df, funcs[name])

    return result


def dominance(x, index='all', rank=1, aggregate=True):
    """
    Calculate dominance indices for each sample.

    Parameters:
    -----------
    x : pandas.DataFrame or MicrobiomeDataset
        Taxa abundance DataFrame with taxa as index, samples as columns
    index : str or list
        Dominance indices to calculate, or 'all'
    rank : int
        Abundance rank used by the 'absolute' and 'relative' indices
    aggregate : bool
        Sum over the top `rank` taxa instead of taking the rank-th taxon

    Returns:
    --------
    pandas.DataFrame
        Dominance indices with samples as index
    """
    abundance_df = abundances(x)
    indices = _check_index(index, DOMINANCE_INDICES, 'dominance')

    funcs = {
        'dbp': lambda c: np.max(_proportions(c)),
        'dmn': lambda c: _top(_proportions(c), 2, aggregate=True),
        'absolute': lambda c: _top(c, rank, aggregate),
        'relative': lambda c: _top(_proportions(c), rank, aggregate),
        'simpson': lambda c: np.sum(_proportions(c) ** 2),
        'gini': _gini,
    }

    result = pd.DataFrame(index=abundance_df.columns)
    for name in indices:
        if name == 'core_abundance':
            result[name] = core_abundance(abundance_df)
        else:
            result[name] = _per_sample(abundance_df, funcs[name])

    return result


def rarity(x, index='all', detection=0.2/100, prevalence=20/100):
    """
    Calculate rarity indices for each sample.

    Index definitions:
    - log_modulo_skewness: skewness of the log-modulo transformed lower
      half of the abundance distribution
    - low_abundance: relative abundance held by taxa below `detection`
    - rare_abundance: relative abundance held by taxa that are not core at
      (`detection`, `prevalence`)
    - noncore_abundance: relative abundance held by non-core taxa at the
      default core thresholds
    """
    abundance_df = abundances(x)
    indices = _check_index(index, RARITY_INDICES, 'rarity')

    rel_abundance = transform_abundance(abundance_df, 'compositional')

    result = pd.DataFrame(index=abundance_df.columns)
    for name in indices:
        if name == 'log_modulo_skewness':
            result[name] = _per_sample(abundance_df, _log_modulo_skewness)
        elif name == 'low_abundance':
            result[name] = rel_abundance.where(rel_abundance < detection, 0).sum(axis=0)
        elif name == 'rare_abundance':
            members = core_members(rel_abundance, detection, prevalence, relative=False)
            result[name] = rel_abundance.drop(members).sum(axis=0)
        elif name == 'noncore_abundance':
            result[name] = 1 - core_abundance(abundance_df)

    return result


ALPHA_FAMILIES = [
    ('richness', RICHNESS_INDICES, richness),
    ('diversity', DIVERSITY_INDICES, diversity),
    ('evenness', EVENNESS_INDICES, evenness),
    ('dominance', DOMINANCE_INDICES, dominance),
    ('rarity', RARITY_INDICES, rarity),
]


def alpha(x, index='all'):
    """
    Calculate alpha indices from all index families.

    Index names may be prefixed with their family ('diversity_shannon',
    'evenness_simpson') or given short ('shannon'); a short name shared by
    several families resolves to the first family listing it. Richness
    columns keep their short names, the others are prefixed.

    Returns:
    --------
    pandas.DataFrame
        Alpha indices with samples as index
    """
    requested = {family: [] for family, _, _ in ALPHA_FAMILIES}

    if index == 'all' or index is None:
        for family, available, _ in ALPHA_FAMILIES:
            requested[family] = list(available)
    else:
        if isinstance(index, str):
            index = [index]
        for name in index:
            for family, available, _ in ALPHA_FAMILIES:
                prefix = f'{family}_'
                if name.startswith(prefix) and name[len(prefix):] in available:
                    requested[family].append(name[len(prefix):])
                    break
                if name in available:
                    requested[family].append(name)
                    break
            else:
                raise ValueError(f"Unknown alpha index: {name}")

    results = []
    for family, _, func in ALPHA_FAMILIES:
        if not requested[family]:
            continue
        logger.debug(f"Calculating {family} indices: {', '.join(requested[family])}")
        family_df = func(x, index=requested[family])
        if family != 'richness':
            family_df = family_df.add_prefix(f'{family}_')
        results.append(family_df)

    return pd.concat(results, axis=1)

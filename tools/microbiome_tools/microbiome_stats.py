"""
Statistical analysis functions for microbiome data: core microbiota,
cross-correlation tables, bimodality scores and ordination.
"""

import logging

import numpy as np
import pandas as pd
from scipy import stats
from scipy.cluster.hierarchy import leaves_list, linkage
from skbio.diversity import beta_diversity
from skbio.stats.ordination import pcoa
from sklearn.manifold import MDS
from statsmodels.stats.multitest import multipletests

from .microbiome_utils import MicrobiomeDataset, abundances, transform_abundance

logger = logging.getLogger(__name__)


# R p.adjust names mapped to statsmodels multipletests methods
P_ADJUST_METHODS = {
    'fdr': 'fdr_bh',
    'BH': 'fdr_bh',
    'BY': 'fdr_by',
    'holm': 'holm',
    'hochberg': 'simes-hochberg',
    'hommel': 'hommel',
    'bonferroni': 'bonferroni',
}

# Distance names accepted by get_ordination, as scikit-bio metric names
ORDINATION_DISTANCES = {
    'bray': 'braycurtis',
    'braycurtis': 'braycurtis',
    'jaccard': 'jaccard',
    'euclidean': 'euclidean',
    'manhattan': 'cityblock',
    'cityblock': 'cityblock',
    'canberra': 'canberra',
    'cosine': 'cosine',
}


def _relative_if_needed(abundance_df, relative):
    if relative and (abundance_df.sum() > 1 + 1e-9).any():
        return transform_abundance(abundance_df, 'compositional')
    return abundance_df


def prevalence(x, detection=0, sort=False, count=False, include_lowest=False):
    """
    Calculate the prevalence of each taxon.

    Parameters:
    -----------
    x : pandas.DataFrame or MicrobiomeDataset
        Taxa abundance DataFrame with taxa as index, samples as columns
    detection : float
        Detection threshold for presence
    sort : bool
        Sort taxa by decreasing prevalence
    count : bool
        Return sample counts instead of fractions
    include_lowest : bool
        Count abundances equal to the detection threshold as present

    Returns:
    --------
    pandas.Series
        Prevalence for each taxon
    """
    result = _taxa_prevalence(abundances(x), detection, count, include_lowest)

    if sort:
        result = result.sort_values(ascending=False)

    return result


def _taxa_prevalence(abundance_df, detection, count=False, include_lowest=False):
    if include_lowest:
        present = abundance_df >= detection
    else:
        present = abundance_df > detection

    result = present.sum(axis=1)
    if count:
        return result

    n_samples = abundance_df.shape[1]
    return result / n_samples if n_samples > 0 else result.astype(float)


def core_members(x, detection=1/10000, prevalence=50/100, include_lowest=False, relative=True):
    """
    Determine the members of the core microbiota.

    A taxon is core when its prevalence at the given detection threshold
    exceeds the prevalence threshold.

    Parameters:
    -----------
    x : pandas.DataFrame or MicrobiomeDataset
        Taxa abundance DataFrame with taxa as index, samples as columns
    detection : float
        Detection threshold for absence/presence
    prevalence : float
        Prevalence threshold, as a fraction of samples
    include_lowest : bool
        Use >= instead of > for both thresholds
    relative : bool
        Apply thresholds to relative abundances when the table holds counts

    Returns:
    --------
    list
        Names of the core taxa
    """
    abundance_df = _relative_if_needed(abundances(x), relative)
    prev = _taxa_prevalence(abundance_df, detection, include_lowest=include_lowest)

    if include_lowest:
        taxa = prev[prev >= prevalence].index
    else:
        taxa = prev[prev > prevalence].index

    return list(taxa)


def core(x, detection=1/10000, prevalence=50/100, include_lowest=False, relative=True):
    """
    Filter the data to the core microbiota.

    Returns the same type as the input, keeping the original (untransformed)
    abundances of the core taxa.
    """
    members = core_members(x, detection, prevalence, include_lowest, relative)
    logger.info(f"Core microbiota: {len(members)} of {abundances(x).shape[0]} taxa "
                f"(detection {detection}, prevalence {prevalence})")

    if isinstance(x, MicrobiomeDataset):
        return x.subset_taxa(members)
    return abundances(x).loc[members]


def core_abundance(x, detection=0.1/100, prevalence=50/100, include_lowest=False):
    """
    Calculate the relative abundance of the core microbiota in each sample.

    Returns:
    --------
    pandas.Series
        Core abundance for each sample
    """
    rel_abundance = transform_abundance(abundances(x), 'compositional')
    members = core_members(rel_abundance, detection, prevalence, include_lowest, relative=False)
    return rel_abundance.loc[members].sum(axis=0)


def noncore_abundance(x, detection=0.1/100, prevalence=50/100, include_lowest=False):
    """Relative abundance of the non-core taxa in each sample."""
    return 1 - core_abundance(x, detection, prevalence, include_lowest)


def _correlation_test(method):
    if method == 'pearson':
        return stats.pearsonr
    elif method == 'spearman':
        return stats.spearmanr
    elif method == 'kendall':
        return stats.kendalltau
    raise ValueError(f"Unknown correlation method: {method}. Use 'pearson', 'spearman' or 'kendall'.")


def cluster_order(matrix):
    """Hierarchical clustering order of the rows of a matrix."""
    values = np.nan_to_num(np.asarray(matrix, dtype=float))
    if values.shape[0] < 3:
        return list(range(values.shape[0]))
    return list(leaves_list(linkage(values, method='average')))


def associate(x, y=None, method='spearman', p_adj_method='fdr_bh', p_adj_threshold=np.inf,
              n_signif=0, mode='table', filter_self_correlations=False, order=False):
    """
    Cross-correlate the features of two data matrices.

    Parameters:
    -----------
    x : pandas.DataFrame
        Samples x features matrix
    y : pandas.DataFrame, optional
        Second samples x features matrix (default: x)
    method : str
        'pearson', 'spearman' or 'kendall'
    p_adj_method : str
        Multiple testing correction, any statsmodels multipletests method,
        an R p.adjust name ('fdr', 'BH', 'BY', 'holm', ...) or 'none'
    p_adj_threshold : float
        Drop pairs with adjusted p-value above this threshold
    n_signif : int
        Keep only features with at least this many significant pairs
    mode : str
        'table' for a long table, 'matrix' for a dict of matrices
    filter_self_correlations : bool
        Drop pairs of identically named features
    order : bool
        Order matrix rows and columns by hierarchical clustering

    Returns:
    --------
    pandas.DataFrame or dict
        Table with columns X1, X2, Correlation, p.adj; or dict with
        'cor', 'pval' and 'p.adj' matrices
    """
    if y is None:
        y = x
    x = pd.DataFrame(x)
    y = pd.DataFrame(y)

    # Get common samples
    common_samples = [s for s in x.index if s in set(y.index)]
    if len(common_samples) < 3:
        raise ValueError(f"Need at least 3 common samples for correlation (found {len(common_samples)})")
    if len(common_samples) < len(x.index) or len(common_samples) < len(y.index):
        logger.info(f"Using {len(common_samples)} samples shared by both matrices")

    x = x.loc[common_samples].apply(pd.to_numeric, errors='coerce')
    y = y.loc[common_samples].apply(pd.to_numeric, errors='coerce')

    test = _correlation_test(method)

    cor = pd.DataFrame(np.nan, index=x.columns, columns=y.columns)
    pval = pd.DataFrame(np.nan, index=x.columns, columns=y.columns)

    for xi in x.columns:
        for yj in y.columns:
            # Use pairwise complete observations
            valid = x[xi].notna() & y[yj].notna()
            if valid.sum() < 3:
                continue
            xv = x.loc[valid, xi].values
            yv = y.loc[valid, yj].values
            if np.all(xv == xv[0]) or np.all(yv == yv[0]):
                # Correlation is undefined for constant input
                continue
            r, p = test(xv, yv)
            cor.loc[xi, yj] = r
            pval.loc[xi, yj] = p

    if filter_self_correlations:
        for name in set(x.columns).intersection(set(y.columns)):
            cor.loc[name, name] = np.nan
            pval.loc[name, name] = np.nan

    # Apply multiple testing correction over all tested pairs
    padj = pval.copy()
    tested = pval.notna().values
    if p_adj_method not in (None, 'none') and tested.any():
        statsmodels_method = P_ADJUST_METHODS.get(p_adj_method, p_adj_method)
        adjusted = multipletests(pval.values[tested], method=statsmodels_method)[1]
        values = padj.values.copy()
        values[tested] = adjusted
        padj = pd.DataFrame(values, index=pval.index, columns=pval.columns)

    significant = padj < p_adj_threshold

    if n_signif > 0:
        keep_x = significant.sum(axis=1) >= n_signif
        keep_y = significant.sum(axis=0) >= n_signif
        cor = cor.loc[keep_x, keep_y]
        pval = pval.loc[keep_x, keep_y]
        padj = padj.loc[keep_x, keep_y]
        significant = significant.loc[keep_x, keep_y]

    if mode == 'matrix':
        if order and cor.shape[0] > 0 and cor.shape[1] > 0:
            rows = cor.index[cluster_order(cor.values)]
            cols = cor.columns[cluster_order(cor.values.T)]
            cor = cor.loc[rows, cols]
            pval = pval.loc[rows, cols]
            padj = padj.loc[rows, cols]
        return {'cor': cor, 'pval': pval, 'p.adj': padj}

    elif mode == 'table':
        results = []
        for xi in cor.index:
            for yj in cor.columns:
                if pd.isna(cor.loc[xi, yj]):
                    continue
                if not padj.loc[xi, yj] <= p_adj_threshold:
                    continue
                results.append({
                    'X1': xi,
                    'X2': yj,
                    'Correlation': cor.loc[xi, yj],
                    'p.adj': padj.loc[xi, yj],
                })

        results_df = pd.DataFrame(results, columns=['X1', 'X2', 'Correlation', 'p.adj'])
        if not results_df.empty:
            results_df['abs_cor'] = results_df['Correlation'].abs()
            results_df = results_df.sort_values(['p.adj', 'abs_cor'], ascending=[True, False])
            results_df = results_df.drop(columns='abs_cor').reset_index(drop=True)

        return results_df

    raise ValueError(f"Unknown mode: {mode}. Use 'table' or 'matrix'.")


def _count_modes(values, bw_adjust=1, peak_threshold=0.1, grid_size=512):
    """Count local maxima of a Gaussian KDE of the values."""
    kde = stats.gaussian_kde(values)
    kde.set_bandwidth(kde.factor * bw_adjust)

    # Pad the grid so that modes at the data extremes are interior maxima
    spread = values.max() - values.min()
    grid = np.linspace(values.min() - 0.1 * spread, values.max() + 0.1 * spread, grid_size)
    density = kde(grid)

    # Peaks must reach the given share of the highest peak
    is_peak = (density[1:-1] > density[:-2]) & (density[1:-1] >= density[2:])
    peaks = density[1:-1][is_peak]
    return int((peaks >= peak_threshold * density.max()).sum())


def _sarle(values, finite_sample=True):
    n = len(values)
    g = stats.skew(values, bias=False)
    k = stats.kurtosis(values, bias=False)

    if finite_sample:
        if n < 4:
            return np.nan
        return (g ** 2 + 1) / (k + 3 * (n - 1) ** 2 / ((n - 2) * (n - 3)))
    return (g ** 2 + 1) / (k + 3)


def bimodality(x, method='sarle_finite_sample', bs_iter=500, peak_threshold=0.1, bw_adjust=1,
               seed=None):
    """
    Estimate the bimodality of each taxon, or of a single abundance vector.

    Parameters:
    -----------
    x : pandas.DataFrame, MicrobiomeDataset or array-like
        Taxa abundance DataFrame (taxa as index) or a numeric vector
    method : str
        'sarle_finite_sample', 'sarle_asymptotic' or 'potential_analysis'
    bs_iter : int
        Bootstrap iterations for potential analysis
    peak_threshold : float
        Share of the highest density peak a mode must reach (potential analysis)
    bw_adjust : float
        Kernel bandwidth multiplier (potential analysis)
    seed : int, optional
        Random seed for the bootstrap

    Returns:
    --------
    pandas.Series or float
        Bimodality score per taxon, or a single score
    """
    if method not in ('sarle_finite_sample', 'sarle_asymptotic', 'potential_analysis'):
        raise ValueError(f"Unknown bimodality method: {method}")

    if isinstance(x, (pd.DataFrame, MicrobiomeDataset)):
        abundance_df = abundances(x)
        scores = {
            taxon: bimodality(abundance_df.loc[taxon].values, method, bs_iter, peak_threshold,
                              bw_adjust, seed)
            for taxon in abundance_df.index
        }
        return pd.Series(scores, name='bimodality')

    values = np.asarray(x, dtype=float)
    values = values[~np.isnan(values)]
    if len(values) < 3 or np.all(values == values[0]):
        return np.nan

    if method == 'sarle_finite_sample':
        return _sarle(values, finite_sample=True)
    elif method == 'sarle_asymptotic':
        return _sarle(values, finite_sample=False)

    # Fraction of bootstrap resamples with multiple density modes
    rng = np.random.default_rng(seed)
    multimodal = 0
    for _ in range(bs_iter):
        resample = rng.choice(values, size=len(values), replace=True)
        if np.all(resample == resample[0]):
            continue
        if _count_modes(resample, bw_adjust, peak_threshold) > 1:
            multimodal += 1

    return multimodal / bs_iter


def get_ordination(dataset, method='NMDS', distance='bray', random_state=42):
    """
    Project the samples of a dataset onto two ordination axes.

    Parameters:
    -----------
    dataset : MicrobiomeDataset
        Dataset with abundances and sample metadata
    method : str
        Ordination method ('PCoA', 'NMDS' or 'MDS')
    distance : str
        Dissimilarity ('bray', 'jaccard', 'euclidean', ...)
    random_state : int
        Seed for the NMDS/MDS optimizer

    Returns:
    --------
    pandas.DataFrame
        Samples as index, 'Comp.1' and 'Comp.2' followed by metadata columns
    """
    if not isinstance(dataset, MicrobiomeDataset):
        dataset = MicrobiomeDataset(abundances(dataset))

    if distance not in ORDINATION_DISTANCES:
        raise ValueError(f"Unknown ordination distance: {distance}")

    method_upper = method.upper()
    if method_upper not in ('PCOA', 'NMDS', 'MDS'):
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA', 'NMDS' or 'MDS'.")

    # Transpose to get samples as rows for beta_diversity function
    abundance_matrix = dataset.abundances.T.astype(float)
    metric = ORDINATION_DISTANCES[distance]
    if metric == 'jaccard':
        abundance_matrix = (abundance_matrix > 0).astype(float)

    beta_dm = beta_diversity(metric, abundance_matrix.values, list(abundance_matrix.index),
                             validate=False)

    if method_upper == 'PCOA':
        # Perform PCoA
        pcoa_results = pcoa(beta_dm)
        coords = pcoa_results.samples.iloc[:, :2].values

    else:
        # Non-metric scaling for NMDS, metric scaling for MDS
        mds = MDS(n_components=2, dissimilarity='precomputed', random_state=random_state,
                  metric=(method_upper == 'MDS'), n_init=4, max_iter=300)
        coords = mds.fit_transform(beta_dm.data)

        stress = getattr(mds, 'stress_', None)
        if stress is not None:
            logger.info(f"{method} stress: {stress:.3f}")

    proj = pd.DataFrame(coords, index=abundance_matrix.index, columns=['Comp.1', 'Comp.2'])
    return pd.concat([proj, dataset.metadata.loc[proj.index]], axis=1)

"""
Visualization functions for microbiome data: composition, correlation
heatmaps and tipping points.
"""

import logging

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .microbiome_stats import bimodality, cluster_order
from .microbiome_utils import MicrobiomeDataset, abundances, transform_abundance

logger = logging.getLogger(__name__)


def _neatmap_order(plot_data):
    """Order samples by their angle on the first two principal components."""
    values = plot_data.T.values.astype(float)
    values = values - values.mean(axis=0)
    if values.shape[0] < 3:
        return list(range(values.shape[0]))
    u, s, _ = np.linalg.svd(values, full_matrices=False)
    coords = u[:, :2] * s[:2]
    return list(np.argsort(np.arctan2(coords[:, 1], coords[:, 0])))


def _sample_order(x, plot_data, sample_sort):
    """Resolve a sample_sort option to an ordered list of samples."""
    samples = list(plot_data.columns)

    if sample_sort is None:
        return samples

    if isinstance(sample_sort, str):
        if sample_sort == 'hclust':
            return [samples[i] for i in cluster_order(plot_data.T.values)]
        if sample_sort == 'neatmap':
            return [samples[i] for i in _neatmap_order(plot_data)]
        if isinstance(x, MicrobiomeDataset) and sample_sort in x.metadata.columns:
            return list(x.metadata.loc[samples, sample_sort].sort_values(kind='stable').index)
        if sample_sort in plot_data.index:
            return list(plot_data.loc[sample_sort].sort_values(kind='stable').index)
        raise ValueError(f"Unknown sample_sort: '{sample_sort}'")

    order = list(sample_sort)
    unknown = [s for s in order if s not in samples]
    if unknown:
        raise ValueError(f"Samples not found in the data: {', '.join(map(str, unknown))}")
    return order


def _otu_order(plot_data, otu_sort):
    """Resolve an otu_sort option to an ordered list of taxa."""
    taxa = list(plot_data.index)

    if otu_sort is None:
        return taxa
    if isinstance(otu_sort, str):
        if otu_sort == 'abundance':
            return list(plot_data.mean(axis=1).sort_values(ascending=False).index)
        if otu_sort == 'hclust':
            return [taxa[i] for i in cluster_order(plot_data.values)]
        raise ValueError(f"Unknown otu_sort: '{otu_sort}'")

    order = list(otu_sort)
    unknown = [t for t in order if t not in taxa]
    if unknown:
        raise ValueError(f"Taxa not found in the data: {', '.join(map(str, unknown))}")
    return order


def plot_composition(x, plot_type='heatmap', transform=None, sample_sort=None, otu_sort=None,
                     group_by=None, top_n=None, cmap=None, figsize=(12, 10)):
    """
    Plot the taxonomic composition of the samples.

    Parameters:
    -----------
    x : MicrobiomeDataset or pandas.DataFrame
        Taxa abundance data with taxa as index, samples as columns
    plot_type : str
        'heatmap' or 'barplot'
    transform : str, optional
        Abundance transformation applied before plotting (e.g. 'Z', 'compositional')
    sample_sort : str or list, optional
        Metadata field, taxon name, 'hclust', 'neatmap' or explicit sample order
    otu_sort : str or list, optional
        'abundance', 'hclust' or explicit taxa order
    group_by : str, optional
        Metadata field; the barplot then shows group means
    top_n : int, optional
        Number of most abundant taxa to include
    cmap : str, optional
        Colormap for the heatmap
    figsize : tuple
        Figure size

    Returns:
    --------
    matplotlib.figure.Figure
        Composition figure
    """
    if plot_type not in ('heatmap', 'barplot'):
        raise ValueError(f"Unknown plot type: {plot_type}. Use 'heatmap' or 'barplot'.")
    if group_by is not None and not isinstance(x, MicrobiomeDataset):
        raise ValueError("group_by requires a MicrobiomeDataset with sample metadata")

    abundance_df = abundances(x)

    # Select top taxa if specified
    if top_n is not None and top_n < len(abundance_df):
        mean_abundance = transform_abundance(abundance_df, 'compositional').mean(axis=1)
        top_taxa = mean_abundance.nlargest(top_n).index.tolist()
        abundance_df = abundance_df.loc[top_taxa]

    if plot_type == 'barplot' and transform is None:
        transform = 'compositional'
    plot_data = transform_abundance(abundance_df, transform) if transform else abundance_df

    plot_data = plot_data.loc[_otu_order(plot_data, otu_sort), _sample_order(x, plot_data, sample_sort)]

    if plot_type == 'heatmap':
        if cmap is None:
            cmap = 'RdBu_r' if transform == 'Z' else 'YlGnBu'

        fig, ax = plt.subplots(figsize=figsize)
        sns.heatmap(
            plot_data,
            cmap=cmap,
            center=0 if transform == 'Z' else None,
            xticklabels=True,
            yticklabels=True,
            cbar_kws={"label": "Abundance" if transform is None else f"Abundance ({transform})"},
            ax=ax
        )
        ax.set_xlabel('Sample')
        ax.set_ylabel('Taxa')
        plt.setp(ax.get_yticklabels(), rotation=0)
        plt.setp(ax.get_xticklabels(), rotation=90)
        ax.set_title('Taxonomic Composition')

    else:
        if group_by is not None:
            # Calculate mean abundance by group
            group_info = x.meta(group_by).loc[plot_data.columns]
            group_means = {}
            for group in group_info.dropna().unique():
                group_samples = group_info[group_info == group].index
                group_means[group] = plot_data[group_samples].mean(axis=1)
            bar_data = pd.DataFrame(group_means).T
            xlabel = group_by
        else:
            bar_data = plot_data.T
            xlabel = 'Sample'

        fig, ax = plt.subplots(figsize=figsize)
        bar_data.plot(kind='bar', stacked=True, ax=ax, colormap='tab20', width=0.9)

        ax.set_xlabel(xlabel)
        ax.set_ylabel('Relative Abundance' if transform == 'compositional' else 'Abundance')
        ax.set_title('Taxonomic Composition')
        ax.legend(title='Taxa', bbox_to_anchor=(1.05, 1), loc='upper left')

    plt.tight_layout()

    return fig


def plot_correlation_heatmap(df, x_var='X1', y_var='X2', fill='Correlation', star='p.adj',
                             p_adj_threshold=1, association_threshold=0, limits=(-1, 1),
                             plot_values=False, order_rows=True, order_cols=True,
                             cmap='RdBu_r', figsize=(10, 8)):
    """
    Heatmap of a cross-correlation table.

    Cells whose `star` value is below `p_adj_threshold` are marked with '+'.
    Associations weaker than `association_threshold` are shown as zero.

    Parameters:
    -----------
    df : pandas.DataFrame
        Long table as returned by associate(mode='table')
    x_var, y_var : str
        Columns holding the feature names for the X and Y axes
    fill : str
        Column holding the association values
    star : str or None
        Column holding the adjusted p-values used for marking
    limits : tuple
        Color scale limits

    Returns:
    --------
    matplotlib.figure.Figure
        Heatmap figure
    """
    required = [x_var, y_var, fill] + ([star] if star else [])
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Columns not found in the correlation table: {', '.join(missing)}")
    if df.empty:
        raise ValueError("Correlation table is empty")

    table = df.copy()
    weak = table[fill].abs() < association_threshold
    table.loc[weak, fill] = 0

    matrix = table.pivot_table(index=y_var, columns=x_var, values=fill, aggfunc='first')

    if order_rows and matrix.shape[0] > 2:
        matrix = matrix.iloc[cluster_order(matrix.values)]
    if order_cols and matrix.shape[1] > 2:
        matrix = matrix.iloc[:, cluster_order(matrix.values.T)]

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(
        matrix,
        cmap=cmap,
        vmin=limits[0],
        vmax=limits[1],
        center=0,
        annot=plot_values,
        fmt='.2f',
        cbar_kws={"label": fill},
        ax=ax
    )

    # Mark significant associations
    if star:
        stars = table.pivot_table(index=y_var, columns=x_var, values=star, aggfunc='first')
        stars = stars.reindex(index=matrix.index, columns=matrix.columns)
        for i, row_name in enumerate(matrix.index):
            for j, col_name in enumerate(matrix.columns):
                value = stars.loc[row_name, col_name]
                if pd.notna(value) and value < p_adj_threshold:
                    ax.text(j + 0.5, i + (0.8 if plot_values else 0.5), '+', ha='center',
                            va='center', fontsize=14, color='black')

    ax.set_xlabel(x_var)
    ax.set_ylabel(y_var)
    plt.setp(ax.get_xticklabels(), rotation=90)
    plt.setp(ax.get_yticklabels(), rotation=0)

    plt.tight_layout()

    return fig


def plot_tipping(x, taxon, tipping_point=None, lims=None, bins=30, figsize=(10, 6)):
    """
    Plot the abundance distribution of a taxon around a tipping point.

    Abundances are shown on a log10 scale; samples below and above the
    tipping point are colored separately. The title reports the Sarle
    bimodality coefficient of the log10 abundances.

    Parameters:
    -----------
    x : MicrobiomeDataset or pandas.DataFrame
        Taxa abundance data with taxa as index, samples as columns
    taxon : str
        Taxon to plot
    tipping_point : float, optional
        Abundance threshold (default: median of the non-zero abundances)
    lims : tuple, optional
        Abundance range to show
    bins : int
        Number of histogram bins

    Returns:
    --------
    matplotlib.figure.Figure
        Tipping point figure
    """
    abundance_df = abundances(x)
    if taxon not in abundance_df.index:
        raise ValueError(f"Taxon '{taxon}' not found in abundance data")

    values = abundance_df.loc[taxon].astype(float)
    positive = values[values > 0]
    if positive.empty:
        raise ValueError(f"Taxon '{taxon}' has no non-zero abundances")
    if len(positive) < len(values):
        logger.info(f"Omitting {len(values) - len(positive)} samples with zero abundance of {taxon}")

    if tipping_point is None:
        tipping_point = positive.median()
    if tipping_point <= 0:
        raise ValueError("tipping_point must be positive")

    log_values = np.log10(positive)
    log_tipping = np.log10(tipping_point)

    below = log_values[positive < tipping_point]
    above = log_values[positive >= tipping_point]

    if lims is not None:
        edges = np.linspace(np.log10(lims[0]), np.log10(lims[1]), bins + 1)
    else:
        edges = np.histogram_bin_edges(log_values, bins=bins)

    score = bimodality(log_values.values, method='sarle_finite_sample')

    fig, ax = plt.subplots(figsize=figsize)
    colors = sns.color_palette('Set1', 2)
    ax.hist([below, above], bins=edges, stacked=True, color=[colors[1], colors[0]],
            label=['Below tipping point', 'Above tipping point'])
    ax.axvline(log_tipping, color='black', linestyle='--', linewidth=1.5)

    ax.set_xlabel(f'log10 abundance ({taxon})')
    ax.set_ylabel('Samples')
    ax.set_title(f'{taxon} (bimodality {score:.2f})')
    ax.legend(loc='upper right')

    if lims is not None:
        ax.set_xlim(np.log10(lims[0]), np.log10(lims[1]))

    plt.tight_layout()

    return fig

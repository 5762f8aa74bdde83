"""
Microbiome analysis toolkit for taxonomic profiling data.

This package provides alpha indices, core microbiota, cross-correlation
tables and plots (density landscapes, composition and correlation heatmaps,
tipping points) for taxa x samples abundance tables.

Usage:
    from microbiome_tools import load_dataset, alpha, core_members, plot_landscape, ...
"""

from .microbiome_utils import (
    MicrobiomeDataset,
    abundances,
    load_metadata,
    load_abundance_table,
    load_dataset,
    read_biom,
    export_biom_format,
    transform_abundance,
    load_config,
    setup_logger
)

from .microbiome_diversity import (
    alpha,
    richness,
    diversity,
    evenness,
    dominance,
    rarity
)

from .microbiome_stats import (
    prevalence,
    core_members,
    core,
    core_abundance,
    noncore_abundance,
    associate,
    bimodality,
    get_ordination
)

from .microbiome_landscape import (
    PlotStyle,
    PointEncoding,
    RawProjection,
    StructuredDataset,
    bandwidth,
    landscape_bandwidth,
    kde2d,
    drop_missing,
    plot_density,
    plot_landscape
)

from .microbiome_viz import (
    plot_composition,
    plot_correlation_heatmap,
    plot_tipping
)

__version__ = "0.1.0"

__all__ = [
    'MicrobiomeDataset',
    'abundances',
    'load_metadata',
    'load_abundance_table',
    'load_dataset',
    'read_biom',
    'export_biom_format',
    'transform_abundance',
    'load_config',
    'setup_logger',
    'alpha',
    'richness',
    'diversity',
    'evenness',
    'dominance',
    'rarity',
    'prevalence',
    'core_members',
    'core',
    'core_abundance',
    'noncore_abundance',
    'associate',
    'bimodality',
    'get_ordination',
    'PlotStyle',
    'PointEncoding',
    'RawProjection',
    'StructuredDataset',
    'bandwidth',
    'landscape_bandwidth',
    'kde2d',
    'drop_missing',
    'plot_density',
    'plot_landscape',
    'plot_composition',
    'plot_correlation_heatmap',
    'plot_tipping'
]

#!/usr/bin/env python3
"""
Run the standard microbiome analyses on an abundance table.

This script:
1. Loads the abundance table and metadata
2. Calculates alpha indices (richness, diversity, evenness, dominance, rarity)
3. Identifies the core microbiota and its abundance per sample
4. Cross-correlates core taxa with the numeric metadata variables
5. Scores the bimodality of the core taxa
6. Generates composition, correlation and tipping point figures

Usage:
    python scripts/run_analysis.py --abundance-file ABUNDANCE [--metadata METADATA] [--config CONFIG_FILE]
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import pandas as pd

from microbiome_tools import (
    load_config,
    load_dataset,
    setup_logger,
    transform_abundance,
    alpha,
    core,
    core_members,
    core_abundance,
    prevalence,
    associate,
    bimodality,
    plot_composition,
    plot_correlation_heatmap,
    plot_tipping
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Run microbiome index, core and correlation analyses')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration file (YAML)')
    parser.add_argument('--abundance-file', type=str, required=True,
                        help='Path to taxa x samples abundance table (CSV, TSV or BIOM)')
    parser.add_argument('--metadata', type=str, default=None,
                        help='Path to metadata file (default: from config file)')
    parser.add_argument('--output-dir', type=str, default='results',
                        help='Directory for output files (default: results)')
    parser.add_argument('--skip-plots', action='store_true',
                        help='Skip all plotting steps')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def save_figure(fig, path, dpi, logger):
    fig.savefig(path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Figure saved to {path}")


def main():
    """Main function to run the analyses."""
    args = parse_args()
    logger = setup_logger(args.log_file, getattr(logging, args.log_level))

    # Load configuration
    config = load_config(args.config)

    # Set up paths
    results_dir = Path(args.output_dir)
    figures_dir = results_dir / 'figures'
    tables_dir = results_dir / 'tables'
    figures_dir.mkdir(exist_ok=True, parents=True)
    tables_dir.mkdir(exist_ok=True, parents=True)

    metadata_file = args.metadata or config['metadata']['filename']
    if not Path(metadata_file).exists():
        if args.metadata:
            logger.error(f"Metadata file not found at {metadata_file}")
            return 1
        logger.warning(f"Metadata file not found at {metadata_file}, continuing without metadata")
        metadata_file = None

    dataset = load_dataset(args.abundance_file, metadata_file, config['metadata']['sample_id_column'])
    logger.info(f"Loaded {dataset}")
    dpi = config['visualization']['figure_dpi']

    # Alpha indices
    logger.info("Calculating alpha indices...")
    alpha_df = alpha(dataset, index=config['diversity']['alpha_metrics'])
    alpha_file = tables_dir / 'alpha_indices.csv'
    alpha_df.to_csv(alpha_file)
    logger.info(f"Alpha indices saved to {alpha_file}")

    # Core microbiota
    detection = config['core']['detection']
    min_prevalence = config['core']['prevalence']
    members = core_members(dataset, detection=detection, prevalence=min_prevalence)
    logger.info(f"Found {len(members)} core taxa (detection {detection}, prevalence {min_prevalence})")

    rel_abundance = transform_abundance(dataset.abundances, 'compositional')
    core_summary = pd.DataFrame({
        'Prevalence': prevalence(rel_abundance, detection=detection),
        'Mean Abundance': rel_abundance.mean(axis=1),
    }).loc[members].sort_values('Prevalence', ascending=False)
    core_summary.to_csv(tables_dir / 'core_members.csv')

    core_abundance(dataset, detection=detection, prevalence=min_prevalence).rename(
        'Core Abundance').to_csv(tables_dir / 'core_abundance.csv')

    if not members:
        logger.warning("No core taxa found; skipping correlation and bimodality analyses")
        return 0

    core_dataset = core(dataset, detection=detection, prevalence=min_prevalence)

    # Bimodality of the core taxa
    bimodality_scores = bimodality(transform_abundance(core_dataset, 'log10')).sort_values(ascending=False)
    bimodality_scores.to_csv(tables_dir / 'core_bimodality.csv')

    # Cross-correlation of core taxa with numeric metadata
    numeric_meta = dataset.metadata.select_dtypes('number')
    correlations = None
    if numeric_meta.shape[1] > 0:
        assoc = config['associate']
        correlations = associate(
            transform_abundance(core_dataset.abundances, 'clr').T,
            numeric_meta,
            method=assoc['method'],
            p_adj_method=assoc['p_adj_method']
        )
        correlations.to_csv(tables_dir / 'core_metadata_correlations.csv', index=False)
        n_significant = (correlations['p.adj'] < assoc['p_adj_threshold']).sum()
        logger.info(f"Found {n_significant} significant taxon-variable correlations "
                    f"(adj. p < {assoc['p_adj_threshold']})")
    else:
        logger.info("No numeric metadata variables; skipping cross-correlation")

    if args.skip_plots:
        return 0

    fig = plot_composition(core_dataset, plot_type='heatmap', transform='Z',
                           otu_sort='abundance', sample_sort='hclust',
                           top_n=config['visualization']['top_n'],
                           cmap=config['visualization']['heatmap_colormap'])
    save_figure(fig, figures_dir / 'core_composition_heatmap.png', dpi, logger)

    if correlations is not None and not correlations.empty:
        fig = plot_correlation_heatmap(correlations,
                                       p_adj_threshold=config['associate']['p_adj_threshold'])
        save_figure(fig, figures_dir / 'core_metadata_correlations.png', dpi, logger)

    # Tipping point plots for the most bimodal core taxa
    for taxon in bimodality_scores.dropna().head(3).index:
        try:
            fig = plot_tipping(core_dataset, taxon)
        except ValueError as e:
            logger.warning(f"Skipping tipping point plot for {taxon}: {str(e)}")
            continue
        safe_name = str(taxon).replace(' ', '_').replace('/', '_')
        save_figure(fig, figures_dir / f"tipping_{safe_name}.png", dpi, logger)

    logger.info("Analysis complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Plot the sample density landscape of a microbiome dataset.

This script:
1. Loads the abundance table and metadata
2. Optionally transforms the abundances
3. Projects the samples with the configured ordination method and distance
4. Draws the 2D density landscape, colored by a metadata variable
5. Saves the figure and the projected coordinates

Usage:
    python scripts/plot_landscape.py --abundance-file ABUNDANCE --metadata METADATA [--config CONFIG_FILE]
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from microbiome_tools import (
    load_config,
    load_dataset,
    setup_logger,
    transform_abundance,
    plot_landscape,
    StructuredDataset
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Plot the density landscape of microbiome samples')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration file (YAML)')
    parser.add_argument('--abundance-file', type=str, required=True,
                        help='Path to taxa x samples abundance table (CSV, TSV or BIOM)')
    parser.add_argument('--metadata', type=str, default=None,
                        help='Path to metadata file (default: from config file)')
    parser.add_argument('--output-dir', type=str, default='results/landscape',
                        help='Directory to save the figure and coordinates')
    parser.add_argument('--method', type=str, default=None,
                        help='Ordination method (NMDS, PCoA, MDS)')
    parser.add_argument('--distance', type=str, default=None,
                        help='Ordination distance (bray, jaccard, euclidean, ...)')
    parser.add_argument('--color', type=str, default=None,
                        help='Metadata variable used to color the samples')
    parser.add_argument('--transform', type=str, default=None,
                        help='Abundance transformation applied before ordination')
    parser.add_argument('--title', type=str, default=None,
                        help='Plot title')
    parser.add_argument('--legend', action='store_true',
                        help='Show the legend')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def main():
    """Main function to plot the landscape."""
    args = parse_args()
    logger = setup_logger(args.log_file, getattr(logging, args.log_level))

    # Load configuration
    config = load_config(args.config)
    landscape = config['landscape']

    # Command line options override the configuration
    method = args.method or landscape['method']
    distance = args.distance or landscape['distance']
    color = args.color or landscape['color_variable']
    legend = args.legend or landscape['legend']

    output_dir = Path(args.output_dir)
    output_dir.mkdir(exist_ok=True, parents=True)

    metadata_file = args.metadata or config['metadata']['filename']
    if not Path(metadata_file).exists():
        if args.metadata:
            logger.error(f"Metadata file not found at {metadata_file}")
            return 1
        logger.warning(f"Metadata file not found at {metadata_file}, continuing without metadata")
        metadata_file = None

    dataset = load_dataset(args.abundance_file, metadata_file, config['metadata']['sample_id_column'])
    logger.info(f"Loaded {dataset}")

    if args.transform:
        logger.info(f"Applying {args.transform} transformation")
        dataset = transform_abundance(dataset, args.transform)

    # Ordinate once; the coordinates are saved and reused for the plot
    source = StructuredDataset(dataset, method, distance)
    source.project()
    coords_file = output_dir / f"landscape_{method}_{distance}_coordinates.csv"
    source.ordination.to_csv(coords_file)
    logger.info(f"Coordinates saved to {coords_file}")

    fig = plot_landscape(
        source,
        col=color,
        main=args.title,
        x_ticks=landscape['x_ticks'],
        rounding=landscape['rounding'],
        add_points=landscape['add_points'],
        adjust=landscape['adjust'],
        size=landscape['size'],
        legend=legend
    )

    fig_file = output_dir / f"landscape_{method}_{distance}.png"
    fig.savefig(fig_file, dpi=config['visualization']['figure_dpi'], bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Landscape plot saved to {fig_file}")

    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Utility functions for loading, holding and transforming microbiome abundance data.
"""

import logging
import os

import numpy as np
import pandas as pd
import yaml

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    'metadata': {
        'filename': 'metadata.csv',
        'sample_id_column': 'SampleID',
    },
    'landscape': {
        'method': 'NMDS',
        'distance': 'bray',
        'color_variable': None,
        'x_ticks': 10,
        'rounding': 0,
        'add_points': True,
        'adjust': 1.0,
        'size': 1.0,
        'legend': False,
    },
    'core': {
        'detection': 0.001,
        'prevalence': 0.5,
    },
    'associate': {
        'method': 'spearman',
        'p_adj_method': 'fdr_bh',
        'p_adj_threshold': 0.05,
    },
    'diversity': {
        'alpha_metrics': 'all',
    },
    'visualization': {
        'figure_dpi': 300,
        'heatmap_colormap': 'RdBu_r',
        'top_n': 30,
    },
}


def setup_logger(log_file=None, log_level=logging.INFO):
    """Set up the package logger with console and optional file output."""
    logger = logging.getLogger('microbiome_tools')
    logger.setLevel(log_level)

    # Clear any existing handlers
    logger.handlers.clear()

    # Create formatter
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Create console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Create file handler if log_file specified
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def load_config(config_path=None):
    """
    Load a YAML configuration file merged over the built-in defaults.

    Parameters:
    -----------
    config_path : str or Path, optional
        Path to the YAML file. If None, only the defaults are returned.

    Returns:
    --------
    dict
        Configuration with one dict per section
    """
    config = {section: dict(values) for section, values in DEFAULT_CONFIG.items()}
    if config_path is None:
        return config

    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    for section, values in user_config.items():
        if isinstance(values, dict) and isinstance(config.get(section), dict):
            config[section].update(values)
        else:
            config[section] = values

    return config


class MicrobiomeDataset:
    """
    Abundance table with row-aligned sample metadata.

    Abundances are kept with taxa as index and samples as columns. Metadata is
    reindexed to the sample columns so that lookups always line up with the
    abundance table.
    """

    def __init__(self, abundances, metadata=None, taxonomy=None):
        if not isinstance(abundances, pd.DataFrame):
            abundances = pd.DataFrame(abundances)
        self.abundances = abundances

        if metadata is None:
            metadata = pd.DataFrame(index=abundances.columns)
        missing = set(abundances.columns) - set(metadata.index)
        if missing and len(metadata.columns) > 0:
            logger.warning(f"{len(missing)} samples have no metadata")
        self.metadata = metadata.reindex(abundances.columns)

        if taxonomy is not None:
            taxonomy = taxonomy.reindex(abundances.index)
        self.taxonomy = taxonomy

    def __repr__(self):
        return (f"MicrobiomeDataset({self.abundances.shape[0]} taxa, "
                f"{self.abundances.shape[1]} samples, "
                f"{self.metadata.shape[1]} sample variables)")

    @property
    def sample_names(self):
        return list(self.abundances.columns)

    @property
    def taxa_names(self):
        return list(self.abundances.index)

    def meta(self, field=None):
        """Return the sample metadata, or one field aligned to the samples."""
        if field is None:
            return self.metadata
        if field not in self.metadata.columns:
            raise KeyError(f"Metadata field '{field}' not found")
        return self.metadata[field]

    def subset_taxa(self, taxa):
        taxa = list(taxa)
        return MicrobiomeDataset(self.abundances.loc[taxa], self.metadata,
                                 self.taxonomy.loc[taxa] if self.taxonomy is not None else None)

    def subset_samples(self, samples):
        samples = list(samples)
        return MicrobiomeDataset(self.abundances[samples], self.metadata.loc[samples], self.taxonomy)

    def with_abundances(self, abundances):
        """Return a copy of the dataset carrying a new abundance table."""
        return MicrobiomeDataset(abundances, self.metadata, self.taxonomy)


def abundances(x):
    """Return the taxa x samples table of a dataset or DataFrame."""
    if isinstance(x, MicrobiomeDataset):
        return x.abundances
    if isinstance(x, pd.DataFrame):
        return x
    return pd.DataFrame(x)


def load_metadata(filepath, sample_id_column='SampleID'):
    """
    Load metadata from a CSV file.

    Parameters:
    -----------
    filepath : str
        Path to the metadata file
    sample_id_column : str
        Column name for sample IDs

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index
    """
    metadata_df = pd.read_csv(filepath)

    # Check if the sample ID column exists
    if sample_id_column not in metadata_df.columns:
        raise ValueError(f"Sample ID column '{sample_id_column}' not found in metadata")

    # Set index and remove any duplicate sample IDs
    metadata_df = metadata_df.set_index(sample_id_column)
    if metadata_df.index.duplicated().any():
        logger.warning(f"Found {metadata_df.index.duplicated().sum()} duplicate sample IDs in metadata")
        metadata_df = metadata_df[~metadata_df.index.duplicated(keep='first')]

    # Convert categorical variables to string, keeping missing values missing
    for col in metadata_df.columns:
        if metadata_df[col].dtype == 'object' or metadata_df[col].dtype.name == 'category':
            values = metadata_df[col].astype(object)
            metadata_df[col] = values.where(values.isna(), values.astype(str))

    return metadata_df


def load_abundance_table(filepath, sep=None):
    """
    Load a taxa x samples abundance table from CSV or TSV.

    The separator is guessed from the file extension when not given.
    """
    if sep is None:
        sep = '\t' if os.path.splitext(str(filepath))[1].lower() in ('.tsv', '.txt') else ','

    abundance_df = pd.read_csv(filepath, sep=sep, index_col=0)

    # Replace NaNs with zeros
    abundance_df = abundance_df.fillna(0)
    logger.info(f"Loaded {abundance_df.shape[0]} taxa, {abundance_df.shape[1]} samples from {filepath}")

    return abundance_df


def load_dataset(abundance_file, metadata_file=None, sample_id_column='SampleID'):
    """Load an abundance table and optional metadata into a MicrobiomeDataset."""
    taxonomy_df = None
    if str(abundance_file).endswith('.biom'):
        dataset = read_biom(abundance_file)
        if metadata_file is None:
            return dataset
        abundance_df = dataset.abundances
        taxonomy_df = dataset.taxonomy
    else:
        abundance_df = load_abundance_table(abundance_file)

    metadata_df = None
    if metadata_file is not None:
        metadata_df = load_metadata(metadata_file, sample_id_column)

        # Check sample overlap
        common_samples = set(abundance_df.columns).intersection(set(metadata_df.index))
        logger.info(f"Samples with both abundance and metadata: {len(common_samples)}")

    return MicrobiomeDataset(abundance_df, metadata_df, taxonomy_df)


def read_biom(filepath):
    """
    Read a BIOM file into a MicrobiomeDataset.

    Sample metadata and observation metadata (taxonomy) stored in the BIOM
    table are carried over when present.
    """
    from biom import load_table

    table = load_table(str(filepath))
    abundance_df = table.to_dataframe(dense=True)

    return MicrobiomeDataset(abundance_df, _biom_metadata(table, 'sample'),
                             _biom_metadata(table, 'observation'))


def _biom_metadata(table, axis):
    metadata = table.metadata(axis=axis)
    if metadata is None or not any(metadata):
        return None
    return table.metadata_to_dataframe(axis)


def export_biom_format(x, output_file):
    """
    Export abundance data to BIOM format.

    Parameters:
    -----------
    x : pandas.DataFrame or MicrobiomeDataset
        Taxa abundance table with taxa as index, samples as columns; the
        taxonomy of a dataset is written as observation metadata
    output_file : str
        Path to save BIOM file

    Returns:
    --------
    str
        Path of the written file
    """
    from biom import Table
    from biom.util import biom_open

    abundance_df = abundances(x)

    # Taxonomy ranks become observation metadata, one entry per rank
    observation_metadata = None
    taxonomy = x.taxonomy if isinstance(x, MicrobiomeDataset) else None
    if taxonomy is not None:
        observation_metadata = [
            {str(rank): ('' if pd.isna(value) else str(value)) for rank, value in row.items()}
            for _, row in taxonomy.iterrows()
        ]

    # Create BIOM table
    table = Table(
        abundance_df.values,
        observation_ids=[str(i) for i in abundance_df.index],
        sample_ids=[str(s) for s in abundance_df.columns],
        observation_metadata=observation_metadata
    )

    # Write to file
    with biom_open(str(output_file), 'w') as f:
        table.to_hdf5(f, "microbiome_tools abundance data")

    logger.info(f"Exported abundance data to BIOM format: {output_file}")
    return output_file


def transform_abundance(x, transform='compositional', shift=0, scale=1):
    """
    Transform abundance data.

    Parameters:
    -----------
    x : pandas.DataFrame or MicrobiomeDataset
        Taxa abundance DataFrame with taxa as index, samples as columns
    transform : str
        One of 'identity', 'compositional', 'Z', 'log10', 'log10p',
        'hellinger', 'clr', 'shift', 'scale'
    shift : float
        Constant added with transform='shift'
    scale : float
        Constant multiplied with transform='scale'

    Returns:
    --------
    pandas.DataFrame or MicrobiomeDataset
        Transformed data, same type as the input
    """
    abundance_df = abundances(x)
    processed_df = abundance_df.astype(float).copy()

    if transform in (None, 'identity'):
        pass

    elif transform == 'compositional':
        # Normalize to relative abundance; empty samples stay at zero
        sample_sums = processed_df.sum()
        sample_sums[sample_sums == 0] = 1
        processed_df = processed_df / sample_sums

    elif transform == 'Z':
        # Standardize each taxon across samples
        means = processed_df.mean(axis=1)
        sds = processed_df.std(axis=1)
        sds[sds == 0] = 1
        processed_df = processed_df.sub(means, axis=0).div(sds, axis=0)

    elif transform in ('log10', 'log10p'):
        if (processed_df.values < 0).any():
            raise ValueError("log10 transformation requires non-negative abundances")
        processed_df = np.log10(1 + processed_df)

    elif transform == 'hellinger':
        processed_df = np.sqrt(transform_abundance(processed_df, 'compositional'))

    elif transform == 'clr':
        # CLR transformation requires compositional data
        from skbio.stats.composition import clr

        # Add small pseudocount to zeros
        positive = processed_df[processed_df > 0].min().min()
        if pd.isna(positive):
            raise ValueError("clr transformation requires at least one positive abundance")
        processed_df = processed_df.replace(0, positive / 2)

        # Apply CLR transformation (samples as rows)
        processed_df = pd.DataFrame(
            clr(processed_df.T.values),
            index=processed_df.columns,
            columns=processed_df.index
        ).T

    elif transform == 'shift':
        processed_df = processed_df + shift

    elif transform == 'scale':
        processed_df = processed_df * scale

    else:
        raise ValueError(f"Unknown transform: {transform}")

    if isinstance(x, MicrobiomeDataset):
        return x.with_abundances(processed_df)
    return processed_df

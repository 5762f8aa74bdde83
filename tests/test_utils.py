import logging

import numpy as np
import pandas as pd
import pytest

from microbiome_tools import (
    MicrobiomeDataset,
    export_biom_format,
    load_config,
    load_dataset,
    load_metadata,
    read_biom,
    setup_logger,
    transform_abundance,
)


class TestTransform:
    def test_compositional(self, abundance_df):
        result = transform_abundance(abundance_df, 'compositional')
        np.testing.assert_allclose(result.sum().values, 1)

    def test_compositional_empty_sample(self):
        df = pd.DataFrame({'a': [1, 3], 'b': [0, 0]}, index=['t1', 't2'])
        result = transform_abundance(df, 'compositional')
        assert result['a'].tolist() == [0.25, 0.75]
        assert result['b'].tolist() == [0, 0]

    def test_z(self, abundance_df):
        result = transform_abundance(abundance_df, 'Z')
        np.testing.assert_allclose(result.mean(axis=1).values, 0, atol=1e-12)

    def test_log10(self):
        df = pd.DataFrame({'a': [0, 9, 99]})
        assert transform_abundance(df, 'log10')['a'].tolist() == pytest.approx([0, 1, 2])

    def test_hellinger(self):
        df = pd.DataFrame({'a': [1, 3]})
        result = transform_abundance(df, 'hellinger')
        assert result['a'].tolist() == pytest.approx([0.5, np.sqrt(0.75)])

    def test_clr_centers_each_sample(self, abundance_df):
        result = transform_abundance(abundance_df, 'clr')
        assert result.shape == abundance_df.shape
        np.testing.assert_allclose(result.sum().values, 0, atol=1e-9)

    def test_shift_and_scale(self):
        df = pd.DataFrame({'a': [1.0, 2.0]})
        assert transform_abundance(df, 'shift', shift=1)['a'].tolist() == [2.0, 3.0]
        assert transform_abundance(df, 'scale', scale=10)['a'].tolist() == [10.0, 20.0]

    def test_dataset_keeps_metadata(self, dataset):
        result = transform_abundance(dataset, 'compositional')
        assert isinstance(result, MicrobiomeDataset)
        pd.testing.assert_frame_equal(result.metadata, dataset.metadata)

    def test_unknown_transform(self, abundance_df):
        with pytest.raises(ValueError, match="Unknown transform"):
            transform_abundance(abundance_df, 'arcsine')


class TestDataset:
    def test_metadata_is_aligned(self, abundance_df, metadata_df):
        shuffled = metadata_df.iloc[::-1]
        dataset = MicrobiomeDataset(abundance_df, shuffled)
        assert list(dataset.metadata.index) == list(abundance_df.columns)

    def test_meta_field(self, dataset):
        assert len(dataset.meta('group')) == len(dataset.sample_names)
        with pytest.raises(KeyError):
            dataset.meta('height')

    def test_subsets(self, dataset):
        assert dataset.subset_taxa(['Taxon_0', 'Taxon_1']).taxa_names == ['Taxon_0', 'Taxon_1']
        subset = dataset.subset_samples(['S00', 'S03'])
        assert subset.sample_names == ['S00', 'S03']
        assert list(subset.metadata.index) == ['S00', 'S03']


class TestLoading:
    def test_load_metadata(self, tmp_path, caplog):
        path = tmp_path / 'metadata.csv'
        pd.DataFrame({
            'SampleID': ['S1', 'S2', 'S2'],
            'group': ['a', 'b', 'c'],
            'age': [30, 40, 50],
        }).to_csv(path, index=False)

        metadata = load_metadata(path)
        assert list(metadata.index) == ['S1', 'S2']
        assert metadata.loc['S2', 'group'] == 'b'
        assert "duplicate sample IDs" in caplog.text

    def test_load_metadata_keeps_missing_values(self, tmp_path):
        path = tmp_path / 'metadata.csv'
        path.write_text("SampleID,group\nS1,a\nS2,\nS3,b\n")
        metadata = load_metadata(path)
        assert pd.isna(metadata.loc['S2', 'group'])
        assert metadata.loc['S1', 'group'] == 'a'

    def test_load_metadata_missing_id_column(self, tmp_path):
        path = tmp_path / 'metadata.csv'
        pd.DataFrame({'sample': ['S1'], 'group': ['a']}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="Sample ID column"):
            load_metadata(path)

    def test_load_dataset(self, tmp_path, abundance_df, metadata_df):
        abundance_path = tmp_path / 'abundance.tsv'
        abundance_df.to_csv(abundance_path, sep='\t')
        metadata_path = tmp_path / 'metadata.csv'
        metadata_df.rename_axis('SampleID').reset_index().to_csv(metadata_path, index=False)

        dataset = load_dataset(abundance_path, metadata_path)
        assert dataset.abundances.shape == abundance_df.shape
        assert dataset.meta('group').tolist() == metadata_df['group'].tolist()

    def test_biom_export(self, tmp_path, abundance_df):
        path = tmp_path / 'table.biom'
        export_biom_format(abundance_df, path)
        dataset = read_biom(path)
        assert sorted(dataset.taxa_names) == sorted(abundance_df.index)
        assert sorted(dataset.sample_names) == sorted(abundance_df.columns)
        assert dataset.taxonomy is None

    def test_biom_carries_taxonomy(self, tmp_path, abundance_df, metadata_df):
        taxonomy = pd.DataFrame({
            'Phylum': ['Firmicutes'] * 4 + ['Bacteroidota'] * 4,
            'Genus': [f'Genus_{i}' for i in range(8)],
        }, index=abundance_df.index)
        path = tmp_path / 'table.biom'
        export_biom_format(MicrobiomeDataset(abundance_df, taxonomy=taxonomy), path)

        dataset = read_biom(path)
        assert dataset.taxonomy is not None
        assert dataset.taxonomy.loc['Taxon_5', 'Genus'] == 'Genus_5'
        assert dataset.taxonomy.loc['Taxon_0', 'Phylum'] == 'Firmicutes'

        # Taxonomy is kept when metadata comes from a separate file
        metadata_path = tmp_path / 'metadata.csv'
        metadata_df.rename_axis('SampleID').reset_index().to_csv(metadata_path, index=False)
        dataset = load_dataset(path, metadata_path)
        assert dataset.subset_taxa(['Taxon_7']).taxonomy.loc['Taxon_7', 'Genus'] == 'Genus_7'
        assert dataset.meta('group').notna().all()


class TestConfig:
    def test_defaults(self):
        config = load_config()
        assert config['landscape']['method'] == 'NMDS'
        assert config['core']['prevalence'] == 0.5

    def test_merge_over_defaults(self, tmp_path):
        path = tmp_path / 'config.yml'
        path.write_text("landscape:\n  method: PCoA\n  x_ticks: 5\n")
        config = load_config(path)
        assert config['landscape']['method'] == 'PCoA'
        assert config['landscape']['x_ticks'] == 5
        assert config['landscape']['distance'] == 'bray'

    def test_defaults_are_not_modified(self, tmp_path):
        path = tmp_path / 'config.yml'
        path.write_text("core:\n  detection: 0.5\n")
        load_config(path)
        assert load_config()['core']['detection'] == 0.001

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / 'config.yml'
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_config(path)


def test_setup_logger_writes_file(tmp_path):
    log_file = tmp_path / 'run.log'
    logger = setup_logger(log_file, logging.DEBUG)
    logger.debug("landscape test message")
    for handler in logger.handlers:
        handler.flush()
    assert "landscape test message" in log_file.read_text()
    logger.handlers.clear()

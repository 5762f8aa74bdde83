import numpy as np
import pandas as pd
import pytest
from matplotlib.figure import Figure

from microbiome_tools import (
    associate,
    plot_composition,
    plot_correlation_heatmap,
    plot_tipping,
    transform_abundance,
)


class TestComposition:
    def test_heatmap(self, dataset):
        fig = plot_composition(dataset, transform='Z', otu_sort='abundance', sample_sort='hclust')
        assert isinstance(fig, Figure)
        ax = fig.axes[0]
        assert ax.get_title() == 'Taxonomic Composition'
        assert len(ax.get_yticklabels()) == len(dataset.taxa_names)

    def test_top_taxa(self, abundance_df):
        fig = plot_composition(abundance_df, top_n=3, otu_sort='abundance')
        labels = [t.get_text() for t in fig.axes[0].get_yticklabels()]
        assert labels == ['Taxon_0', 'Taxon_1', 'Taxon_2']

    def test_explicit_sample_order(self, abundance_df):
        order = list(abundance_df.columns[::-1])
        fig = plot_composition(abundance_df, sample_sort=order)
        labels = [t.get_text() for t in fig.axes[0].get_xticklabels()]
        assert labels == order

    def test_metadata_sample_order(self, dataset):
        fig = plot_composition(dataset, sample_sort='age')
        labels = [t.get_text() for t in fig.axes[0].get_xticklabels()]
        assert labels == list(dataset.meta('age').sort_values(kind='stable').index)

    def test_neatmap_order(self, dataset):
        fig = plot_composition(dataset, transform='compositional', sample_sort='neatmap')
        labels = [t.get_text() for t in fig.axes[0].get_xticklabels()]
        assert sorted(labels) == sorted(dataset.sample_names)

    def test_grouped_barplot(self, dataset):
        fig = plot_composition(dataset, plot_type='barplot', group_by='group')
        ax = fig.axes[0]
        assert ax.get_xlabel() == 'group'
        assert sorted(t.get_text() for t in ax.get_xticklabels()) == ['case', 'control']
        assert ax.get_legend().get_title().get_text() == 'Taxa'

    def test_invalid_options(self, dataset, abundance_df):
        with pytest.raises(ValueError, match="Unknown plot type"):
            plot_composition(dataset, plot_type='pie')
        with pytest.raises(ValueError, match="group_by"):
            plot_composition(abundance_df, plot_type='barplot', group_by='group')
        with pytest.raises(ValueError, match="Unknown sample_sort"):
            plot_composition(dataset, sample_sort='height')
        with pytest.raises(ValueError, match="Taxa not found"):
            plot_composition(dataset, otu_sort=['Taxon_99'])


class TestCorrelationHeatmap:
    @pytest.fixture
    def table(self):
        return pd.DataFrame({
            'X1': ['a', 'a', 'b', 'b'],
            'X2': ['age', 'bmi', 'age', 'bmi'],
            'Correlation': [0.9, -0.1, 0.05, -0.7],
            'p.adj': [0.001, 0.8, 0.9, 0.01],
        })

    def test_significant_cells_are_marked(self, table):
        fig = plot_correlation_heatmap(table, p_adj_threshold=0.05)
        stars = [t for t in fig.axes[0].texts if t.get_text() == '+']
        assert len(stars) == 2

    def test_no_marks(self, table):
        fig = plot_correlation_heatmap(table, star=None)
        assert not [t for t in fig.axes[0].texts if t.get_text() == '+']

    def test_axis_labels(self, table):
        fig = plot_correlation_heatmap(table)
        ax = fig.axes[0]
        assert (ax.get_xlabel(), ax.get_ylabel()) == ('X1', 'X2')

    def test_from_associate(self, dataset):
        core_clr = transform_abundance(dataset.abundances.iloc[:4], 'clr').T
        table = associate(core_clr, dataset.metadata[['age']])
        fig = plot_correlation_heatmap(table)
        assert isinstance(fig, Figure)

    def test_invalid_tables(self, table):
        with pytest.raises(ValueError, match="Columns not found"):
            plot_correlation_heatmap(table.drop(columns='p.adj'))
        with pytest.raises(ValueError, match="empty"):
            plot_correlation_heatmap(table.iloc[:0])


class TestTipping:
    def test_tipping_plot(self, abundance_df):
        fig = plot_tipping(abundance_df, 'Taxon_0', tipping_point=200)
        ax = fig.axes[0]
        assert ax.get_title().startswith('Taxon_0 (bimodality')
        assert ax.get_lines()[0].get_xdata()[0] == pytest.approx(np.log10(200))

    def test_default_tipping_point(self, dataset):
        fig = plot_tipping(dataset, 'Taxon_1')
        positive = dataset.abundances.loc['Taxon_1']
        expected = np.log10(positive[positive > 0].median())
        assert fig.axes[0].get_lines()[0].get_xdata()[0] == pytest.approx(expected)

    def test_invalid_arguments(self, abundance_df):
        with pytest.raises(ValueError, match="not found"):
            plot_tipping(abundance_df, 'Taxon_99')
        with pytest.raises(ValueError, match="tipping_point"):
            plot_tipping(abundance_df, 'Taxon_0', tipping_point=0)

        zeros = abundance_df.copy()
        zeros.loc['Taxon_6'] = 0
        with pytest.raises(ValueError, match="no non-zero"):
            plot_tipping(zeros, 'Taxon_6')

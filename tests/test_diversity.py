import numpy as np
import pandas as pd
import pytest

from microbiome_tools import alpha, diversity, dominance, evenness, rarity, richness


@pytest.fixture
def counts():
    return pd.DataFrame(
        {'even': [10, 10, 10, 10], 'uneven': [90, 10, 0, 0]},
        index=['t1', 't2', 't3', 't4']
    )


UNEVEN_SHANNON = -(0.9 * np.log(0.9) + 0.1 * np.log(0.1))


class TestRichness:
    def test_observed_and_chao1(self, counts):
        result = richness(counts)
        assert result.loc['even', 'observed'] == 4
        assert result.loc['uneven', 'observed'] == 2
        assert result.loc['even', 'chao1'] == pytest.approx(4)
        assert result.loc['uneven', 'chao1'] == pytest.approx(2)

    def test_several_detection_thresholds(self, counts):
        result = richness(counts, index='observed', detection=[0, 10])
        assert list(result.columns) == ['observed_0', 'observed_10']
        assert result['observed_10'].to_dict() == {'even': 0, 'uneven': 1}

    def test_unknown_index(self, counts):
        with pytest.raises(ValueError, match="Unknown richness index"):
            richness(counts, index='ace')


class TestDiversity:
    def test_even_sample(self, counts):
        result = diversity(counts).loc['even']
        assert result['shannon'] == pytest.approx(np.log(4))
        assert result['inverse_simpson'] == pytest.approx(4)
        assert result['gini_simpson'] == pytest.approx(0.75)
        assert result['coverage'] == 2
        assert result['fisher'] > 0

    def test_uneven_sample(self, counts):
        result = diversity(counts, index=['shannon', 'coverage']).loc['uneven']
        assert result['shannon'] == pytest.approx(UNEVEN_SHANNON)
        assert result['coverage'] == 1


class TestEvenness:
    def test_even_sample_is_perfectly_even(self, counts):
        result = evenness(counts).loc['even']
        for name in ['camargo', 'pielou', 'simpson', 'evar', 'bulla']:
            assert result[name] == pytest.approx(1)

    def test_uneven_sample(self, counts):
        result = evenness(counts).loc['uneven']
        assert result['camargo'] == pytest.approx(0.6)
        assert result['pielou'] == pytest.approx(UNEVEN_SHANNON / np.log(2))
        assert result['bulla'] == pytest.approx(0.2)
        assert result['simpson'] == pytest.approx(1 / 0.82 / 2)


class TestDominance:
    def test_indices(self, counts):
        result = dominance(counts)
        assert result.loc['uneven', 'dbp'] == pytest.approx(0.9)
        assert result.loc['even', 'dmn'] == pytest.approx(0.5)
        assert result.loc['uneven', 'absolute'] == 90
        assert result.loc['uneven', 'simpson'] == pytest.approx(0.82)
        assert result.loc['even', 'gini'] == pytest.approx(0)
        assert result.loc['uneven', 'gini'] == pytest.approx(0.7)
        assert result['core_abundance'].to_dict() == pytest.approx({'even': 0.5, 'uneven': 1.0})

    def test_rank(self, counts):
        result = dominance(counts, index=['absolute', 'relative'], rank=2, aggregate=False)
        assert result.loc['uneven', 'absolute'] == 10
        assert result.loc['uneven', 'relative'] == pytest.approx(0.1)

    def test_rank_beyond_taxa(self, counts):
        with pytest.raises(ValueError):
            dominance(counts, index='absolute', rank=5)


class TestRarity:
    def test_low_and_noncore_abundance(self, counts):
        result = rarity(counts, detection=0.2)
        assert result.loc['uneven', 'low_abundance'] == pytest.approx(0.1)
        assert result.loc['even', 'low_abundance'] == 0
        assert result['noncore_abundance'].to_dict() == pytest.approx({'even': 0.5, 'uneven': 0.0})

    def test_log_modulo_skewness_of_flat_sample(self, counts):
        assert rarity(counts, index='log_modulo_skewness').loc['even'].iloc[0] == 0


class TestAlpha:
    def test_all_indices(self, counts):
        result = alpha(counts)
        for column in ['observed', 'chao1', 'diversity_shannon', 'evenness_simpson',
                       'dominance_simpson', 'rarity_low_abundance']:
            assert column in result.columns
        assert list(result.index) == ['even', 'uneven']

    def test_named_indices(self, counts):
        result = alpha(counts, index=['dominance_simpson', 'shannon', 'observed', 'simpson'])
        assert list(result.columns) == ['observed', 'diversity_shannon', 'evenness_simpson',
                                        'dominance_simpson']

    def test_dataset_input(self, dataset):
        result = alpha(dataset, index='shannon')
        assert list(result.index) == dataset.sample_names

    def test_unknown_index(self, counts):
        with pytest.raises(ValueError, match="Unknown alpha index"):
            alpha(counts, index='berger_parker')

"""
Tests for the SurveyEstimator front end
"""

import numpy as np
import pandas as pd
import pytest

from svyest import (ConfigurationError, EstimationConfig, MethodFallbackWarning, SampleDesign,
                    SurveyEstimator)
from svyest.constants import RESULT_COLUMNS


class TestEstimationConfig:
    """Test configuration validation"""

    def test_defaults(self):
        config = EstimationConfig(response='catch')

        assert config.group_by == []
        assert config.variance_method == 'linearization'
        assert config.num_replicates == 500
        assert config.confidence_level == 0.95
        assert config.small_domain_threshold == 3

    def test_group_by_string(self):
        config = EstimationConfig(response='catch', group_by='species')

        assert config.group_by == ['species']

    @pytest.mark.parametrize("kwargs", [
        {'confidence_level': 1.5},
        {'confidence_level': 0.0},
        {'variance_method': 'bootstrap', 'num_replicates': 0},
        {'variance_method': 'brr'},
        {'combination_rule': 'sum_of_ratios'},
        {'statistic': 'median'},
        {'min_exposure_threshold': 0},
        {'small_domain_threshold': 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            EstimationConfig(response='catch', **kwargs)

    def test_replicates_ignored_for_linearization(self):
        config = EstimationConfig(response='catch', num_replicates=0)

        assert config.variance_method == 'linearization'


class TestSurveyEstimator:
    """Test SurveyEstimator main class"""

    def test_ratio_path(self, design):
        config = EstimationConfig(response='catch', exposure='hours', group_by=['species'])

        table = SurveyEstimator(design, config).estimate()

        assert isinstance(table, pd.DataFrame)
        assert list(table.columns) == ['species'] + RESULT_COLUMNS
        assert table['n'].sum() == design.n_units
        assert (table['method'] == 'linearization').all()
        assert table['estimate'].notna().all()

    def test_linear_total(self, make_design):
        estimator = SurveyEstimator(make_design([1.0, 2.0, 3.0, 4.0, 5.0]),
                                    {'response': 'y', 'statistic': 'total'})

        table = estimator.estimate()

        assert table.loc[0, 'estimate'] == pytest.approx(15.0)
        assert len(estimator.results) == 1

    def test_linear_mean_by_domain(self, design, survey_data):
        config = EstimationConfig(response='y', group_by=['stratum', 'species'])

        table = SurveyEstimator(design, config).estimate()

        counts = survey_data.groupby(['stratum', 'species']).size()
        for _, row in table.iterrows():
            assert row['n'] == counts[(row['stratum'], row['species'])]

    def test_fallback_reported(self):
        data = pd.DataFrame({'y': [1.0, 2.0, 3.0], 'w': [1.0] * 3, 'h': ['a', 'b', 'c']})
        design = SampleDesign(data, weight='w', strata='h')
        config = EstimationConfig(response='y', variance_method='jackknife')

        with pytest.warns(MethodFallbackWarning):
            table = SurveyEstimator(design, config).estimate()

        assert table.loc[0, 'method'] == 'linearization'
        assert table.loc[0, 'requested_method'] == 'jackknife'

    def test_bootstrap_config(self, design):
        config = EstimationConfig(response='catch', exposure='hours',
                                  combination_rule='mean_of_unit_ratios',
                                  variance_method='bootstrap', num_replicates=30,
                                  random_state=11)

        first = SurveyEstimator(design, config).estimate()
        second = SurveyEstimator(design, config).estimate()

        assert first.loc[0, 'method'] == 'bootstrap'
        assert first.loc[0, 'se'] == second.loc[0, 'se']
        assert np.isnan(first.loc[0, 'deff'])

    def test_domains_universe(self, design):
        config = EstimationConfig(response='y', group_by=['species'])

        with pytest.warns(UserWarning, match="no records"):
            table = SurveyEstimator(design, config).estimate(domains=['pike', 'trout', 'bass'])

        assert list(table['species']) == ['pike', 'trout', 'bass']
        assert table.loc[1, 'n'] == 0
        assert np.isnan(table.loc[1, 'estimate'])

    def test_decomposition_columns(self, design):
        config = EstimationConfig(response='y', decompose_variance=True, population_units=100)

        table = SurveyEstimator(design, config).estimate()

        assert np.isfinite(table.loc[0, 'var_among_psu'])
        assert np.isfinite(table.loc[0, 'var_within_psu'])

    def test_display(self, design, capsys):
        config = EstimationConfig(response='catch', exposure='hours')

        SurveyEstimator(design, config).estimate(display=True)

        out = capsys.readouterr().out
        assert "SVYEST ESTIMATION RESULTS" in out
        assert "diagnostics" not in out

    def test_diagnose(self, design):
        report = SurveyEstimator(design, {'response': 'y'}).diagnose()

        assert report['summary']['n_observations'] == design.n_units

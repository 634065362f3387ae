"""
Tests for design quality diagnostics
"""

import numpy as np
import pandas as pd
import pytest

from svyest import SampleDesign, design_diagnostics


class TestDesignDiagnostics:
    """Test the design quality report"""

    def test_report_layout(self, design):
        report = design_diagnostics(design)

        assert set(report) == {'summary', 'checks', 'issues', 'recommendations'}
        assert report['summary']['n_psu'] == 18
        assert report['summary']['n_strata'] == 3
        assert report['checks']['stratification']['count'] == 3
        assert set(report['recommendations']) == set(report['issues'])

    def test_no_fpc_reported(self, design):
        report = design_diagnostics(design)

        assert 'fpc' in report['issues']

    def test_singleton_strata_and_lonely_psu(self):
        data = pd.DataFrame({
            'w': [1.0] * 7,
            'h': ['a', 'a', 'a', 'b', 'b', 'b', 'c'],
            'c': [1, 2, 3, 4, 5, 6, 7],
        })
        report = design_diagnostics(SampleDesign(data, weight='w', strata='h', cluster='c'))

        assert report['checks']['stratification']['singleton_strata'] == 1
        assert 'singleton' in report['issues']['stratification']
        assert report['checks']['lonely_psu']['lonely_psu_strata'] == 1
        assert report['checks']['clustering']['singleton_clusters'] == 7
        assert report['issues']['sample_size'] == "Very small sample size"

    def test_weight_checks(self):
        data = pd.DataFrame({'w': [1.0] * 39 + [100.0]})
        report = design_diagnostics(SampleDesign(data, weight='w'))

        checks = report['checks']['weights']
        assert checks['extreme_weights'] == 1
        assert checks['range_ratio'] == pytest.approx(100.0)
        assert checks['cv_weights'] > 1
        assert 'CV' in report['issues']['weights']

    def test_uniform_weights_clean(self):
        data = pd.DataFrame({'w': np.full(40, 2.0), 'fpc': 0.1})
        report = design_diagnostics(SampleDesign(data, weight='w', fpc='fpc'))

        assert report['issues'] == {}
        assert report['checks']['fpc']['sampling_fractions'] == pytest.approx([0.1])

    def test_detailed(self, design):
        report = design_diagnostics(design, detailed=True)

        detailed = report['detailed']
        assert len(detailed['weight_quantiles']) == 7
        assert detailed['psu_per_stratum'] == [6, 6, 6]
        assert detailed['stratum_sizes']['n'].sum() == design.n_units

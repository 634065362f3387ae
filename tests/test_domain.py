"""
Tests for domain estimation
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from svyest import (ConfigurationError, DataQualityWarning, DomainEstimator, SampleDesign,
                    StatisticSpec, VarianceBackend, estimate_by_domain, results_to_frame)


class ReversingBackend(VarianceBackend):
    """Backend that hands its rows back in reverse order"""

    def run(self, *args, **kwargs):
        out = super().run(*args, **kwargs)
        return out._replace(results=list(reversed(out.results)))


def grouped_design():
    data = pd.DataFrame({
        'g': ['a', 'a', 'b', 'b', 'b', 'c', 'c', 'c', 'c'],
        'y': [1.0, 3.0, 2.0, 4.0, 6.0, 5.0, 5.0, 7.0, 7.0],
        'w': [1.0] * 9,
    })
    return SampleDesign(data, weight='w')


class TestAlignment:
    """Test that counts follow group keys, not row positions"""

    @pytest.mark.parametrize("group_by", [['species'], ['stratum'], ['stratum', 'species']])
    def test_n_matches_record_counts(self, design, survey_data, group_by):
        results = estimate_by_domain(design, StatisticSpec.mean('y'), group_by)

        counts = survey_data.groupby(group_by).size()
        assert len(results) == len(counts)
        for res in results:
            key = res.group_key if len(group_by) > 1 else res.group_key[0]
            assert res.n == counts[key]

    def test_keyed_join_survives_backend_order(self, design, survey_data):
        spec = StatisticSpec.mean('y')

        plain = DomainEstimator().estimate_by_domain(design, spec, ['stratum', 'species'])
        reversed_rows = DomainEstimator(ReversingBackend()).estimate_by_domain(
            design, spec, ['stratum', 'species']
        )

        assert [r.group_key for r in plain] == [r.group_key for r in reversed_rows]
        for a, b in zip(plain, reversed_rows):
            assert a.n == b.n
            assert a.estimate == pytest.approx(b.estimate)
            assert a.se == pytest.approx(b.se)

    def test_domain_estimates(self):
        results = estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), 'g',
                                     small_domain_threshold=1)

        assert [r.group_key for r in results] == [('a',), ('b',), ('c',)]
        assert [r.estimate for r in results] == pytest.approx([2.0, 4.0, 6.0])
        assert [r.n for r in results] == [2, 3, 4]

    def test_overall_row_without_grouping(self, design, survey_data):
        (res,) = estimate_by_domain(design, StatisticSpec.mean('y'))

        assert res.group_key == ()
        assert res.n == len(survey_data)

    def test_missing_group_values_are_a_domain(self):
        data = pd.DataFrame({
            'g': ['a', None, 'a', None, 'a', None],
            'y': [1.0, 2.0, 3.0, 4.0, 5.0, 6.0],
            'w': [1.0] * 6,
        })
        design = SampleDesign(data, weight='w')

        results = estimate_by_domain(design, StatisticSpec.mean('y'), ['g'])

        assert len(results) == 2
        missing = [r for r in results if pd.isna(r.group_key[0])]
        assert len(missing) == 1
        assert missing[0].n == 3
        assert missing[0].estimate == pytest.approx(4.0)


class TestDomainHealth:
    """Test empty, small and unknown domains"""

    def test_missing_group_column(self, design):
        with pytest.raises(ConfigurationError) as excinfo:
            estimate_by_domain(design, StatisticSpec.mean('y'), ['site'])

        assert 'site' in str(excinfo.value)
        assert 'species' in str(excinfo.value)

    def test_small_domain_boundary(self):
        with pytest.warns(DataQualityWarning, match="fewer than 3"):
            results = estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), 'g')

        by_key = {r.group_key[0]: r for r in results}
        assert 'small_domain' in by_key['a'].flags
        assert 'small_domain' not in by_key['b'].flags
        assert 'small_domain' not in by_key['c'].flags
        assert np.isfinite(by_key['a'].estimate)

    def test_small_domain_threshold_configurable(self):
        results = estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), 'g',
                                     small_domain_threshold=4)

        flagged = [r.group_key[0] for r in results if 'small_domain' in r.flags]
        assert flagged == ['a', 'b']

    def test_empty_requested_domain(self):
        with pytest.warns(DataQualityWarning, match="no records"):
            results = estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), 'g',
                                         domains=['c', 'z', 'b', 'a'],
                                         small_domain_threshold=1)

        assert [r.group_key[0] for r in results] == ['c', 'z', 'b', 'a']
        empty = results[1]
        assert empty.n == 0
        assert np.isnan(empty.estimate)
        assert np.isnan(empty.se)
        assert 'empty_domain' in empty.flags
        assert empty.method == 'linearization'

    def test_domains_outside_universe_omitted(self):
        with pytest.warns(DataQualityWarning, match="outside the requested domains"):
            results = estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), 'g',
                                         domains=[('b',), ('c',)])

        assert [r.group_key for r in results] == [('b',), ('c',)]

    def test_domain_key_length(self):
        with pytest.raises(ConfigurationError, match="grouping column"):
            estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), 'g',
                               domains=[('a', 1)])

    def test_domains_need_group_by(self):
        with pytest.raises(ConfigurationError):
            estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), domains=['a'])

    def test_no_warning_for_healthy_domains(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), 'g',
                               small_domain_threshold=2)


class TestDecomposition:
    """Test per-domain variance components"""

    def test_decomposition_columns(self, design):
        results = estimate_by_domain(design, StatisticSpec.mean('y'), ['species'],
                                     decompose_variance=True, population_units=60)

        for res in results:
            assert np.isfinite(res.var_among_psu)
            assert np.isfinite(res.var_within_psu)
            assert 'decomposition' in res.diagnostics

    def test_decomposition_needs_clusters(self):
        results = estimate_by_domain(grouped_design(), StatisticSpec.mean('y'), 'g',
                                     decompose_variance=True, small_domain_threshold=1)

        assert all('decomposition_unavailable' in r.flags for r in results)
        assert all(np.isnan(r.var_among_psu) for r in results)


class TestResultTable:
    """Test the tidy table layout"""

    def test_column_order(self, design):
        results = estimate_by_domain(design, StatisticSpec.mean('y'), ['stratum', 'species'])

        table = results_to_frame(results)

        assert list(table.columns) == [
            'stratum', 'species', 'estimate', 'se', 'ci_low', 'ci_high', 'deff', 'n',
            'method', 'requested_method', 'diagnostics', 'var_among_psu', 'var_within_psu',
        ]
        assert table['n'].sum() == design.n_units

    def test_columns_stable_across_methods(self, design):
        spec = StatisticSpec.mean('y')

        lin = results_to_frame(estimate_by_domain(design, spec, ['species']))
        boot = results_to_frame(estimate_by_domain(design, spec, ['species'], method='bootstrap',
                                                   num_replicates=20, random_state=1))

        assert list(lin.columns) == list(boot.columns)
        assert boot['deff'].isna().all()

"""
Tests for SampleDesign
"""

import numpy as np
import pandas as pd
import pytest

from svyest import ConfigurationError, SampleDesign


class TestSampleDesign:
    """Test design construction and derived designs"""

    def test_initialization(self, survey_data):
        design = SampleDesign(survey_data, weight='w', strata='stratum', cluster='day')

        assert design.n_units == len(survey_data)
        assert not design.has_replicates
        assert design.n_replicates == 0
        assert len(design.weights) == len(survey_data)

    def test_rejects_non_positive_weights(self):
        data = pd.DataFrame({'y': [1.0, 2.0, 3.0], 'w': [1.0, 0.0, -2.0]})

        with pytest.raises(ConfigurationError, match="2 invalid"):
            SampleDesign(data, weight='w')

    def test_rejects_missing_weights(self):
        data = pd.DataFrame({'y': [1.0, 2.0], 'w': [1.0, np.nan]})

        with pytest.raises(ConfigurationError):
            SampleDesign(data, weight='w')

    def test_missing_design_column(self, survey_data):
        with pytest.raises(ConfigurationError, match="nope"):
            SampleDesign(survey_data, weight='w', strata='nope')

    def test_replicate_rows_must_match(self, survey_data):
        with pytest.raises(ConfigurationError, match="one row per unit"):
            SampleDesign(survey_data, weight='w',
                         replicate_weights=np.ones((len(survey_data) - 1, 4)))

    def test_replicate_defaults(self, survey_data):
        design = SampleDesign(survey_data, weight='w',
                              replicate_weights=np.ones((len(survey_data), 4)))

        assert design.replicate_type == "custom"
        assert design.n_replicates == 4

    def test_unknown_replicate_type(self, survey_data):
        with pytest.raises(ConfigurationError, match="replicate_type"):
            SampleDesign(survey_data, weight='w',
                         replicate_weights=np.ones((len(survey_data), 4)),
                         replicate_type='brr')

    def test_rscales_length(self, survey_data):
        with pytest.raises(ConfigurationError, match="replicate_rscales"):
            SampleDesign(survey_data, weight='w',
                         replicate_weights=np.ones((len(survey_data), 4)),
                         replicate_rscales=[1.0, 1.0])

    def test_from_replicate_columns(self, survey_data):
        data = survey_data.copy()
        for i in range(1, 5):
            data[f'rw{i}'] = data['w'] * (1 + 0.1 * i)

        design = SampleDesign.from_replicate_columns(
            data, 'w', 'rw', 4, replicate_type='jackknife', strata='stratum'
        )

        assert design.n_replicates == 4
        assert design.replicate_type == 'jackknife'
        np.testing.assert_allclose(design.replicate_weights[:, 0], data['rw1'])

    def test_from_replicate_columns_upper_case(self, survey_data):
        data = survey_data.copy()
        for i in range(1, 4):
            data[f'RW{i}'] = data['w']

        design = SampleDesign.from_replicate_columns(data, 'w', 'rw', 3)

        assert design.n_replicates == 3

    def test_from_replicate_columns_missing(self, survey_data):
        with pytest.raises(ConfigurationError, match="rw1"):
            SampleDesign.from_replicate_columns(survey_data, 'w', 'rw', 3)


class TestDesignStructure:
    """Test strata, PSU and FPC bookkeeping"""

    def test_psu_structure(self):
        data = pd.DataFrame({
            'w': [1.0, 1.0, 1.0, 1.0],
            'h': ['a', 'a', 'b', 'b'],
            'c': [1, 2, 1, 1],
        })
        design = SampleDesign(data, weight='w', strata='h', cluster='c')

        psu, psu_stratum, n_h = design.psu_structure()

        np.testing.assert_array_equal(psu, [0, 1, 2, 2])
        np.testing.assert_array_equal(psu_stratum, [0, 0, 1])
        np.testing.assert_array_equal(n_h, [2, 1])

    def test_units_are_psus_without_clusters(self):
        data = pd.DataFrame({'w': [1.0, 2.0, 3.0]})
        design = SampleDesign(data, weight='w')

        psu, psu_stratum, n_h = design.psu_structure()

        np.testing.assert_array_equal(psu, [0, 1, 2])
        np.testing.assert_array_equal(n_h, [3])

    def test_fpc_fraction_and_population_count(self):
        data = pd.DataFrame({
            'w': [1.0] * 4,
            'h': ['a', 'a', 'b', 'b'],
            'fpc': [0.5, 0.5, 10, 10],
        })
        design = SampleDesign(data, weight='w', strata='h', fpc='fpc')

        _, _, n_h = design.psu_structure()
        fractions = design.sampling_fractions(n_h)

        np.testing.assert_allclose(fractions, [0.5, 0.2])

    def test_fpc_smaller_than_sample(self):
        data = pd.DataFrame({'w': [1.0] * 4, 'fpc': [2, 2, 2, 2]})
        design = SampleDesign(data, weight='w', fpc='fpc')

        with pytest.raises(ConfigurationError, match="fewer population PSUs"):
            design.sampling_fractions(design.psu_structure()[2])


class TestDerivedDesigns:
    """Test that derived designs never touch the caller's data"""

    def test_with_column_returns_new_design(self, design, survey_data):
        derived = design.with_column('z', np.arange(design.n_units))

        assert 'z' in derived.columns
        assert 'z' not in design.columns
        assert 'z' not in survey_data.columns

    def test_with_column_refuses_overwrite(self, design):
        with pytest.raises(ConfigurationError, match="already exists"):
            design.with_column('y', np.zeros(design.n_units))

    def test_with_column_replace(self, design, survey_data):
        original = survey_data['y'].copy()
        derived = design.with_column('y', np.zeros(design.n_units), replace=True)

        assert (derived.data['y'] == 0).all()
        pd.testing.assert_series_equal(survey_data['y'], original)

    def test_subset_keeps_replicate_rows(self, survey_data):
        reps = np.tile(np.arange(len(survey_data), dtype=float)[:, None] + 1, (1, 3))
        design = SampleDesign(survey_data, weight='w', replicate_weights=reps)
        mask = (survey_data['species'] == 'bass').to_numpy()

        sub = design.subset(mask)

        assert sub.n_units == mask.sum()
        np.testing.assert_allclose(sub.replicate_weights[:, 0], reps[mask, 0])

    def test_subset_mask_length(self, design):
        with pytest.raises(ConfigurationError):
            design.subset([True, False])

"""
Shared test data for svyest
"""

import numpy as np
import pandas as pd
import pytest

from svyest import SampleDesign


def create_test_data(n=180):
    """Create synthetic stratified, clustered creel-style interview data"""
    np.random.seed(42)

    day = np.arange(n) % 18
    data = pd.DataFrame({
        'day': day,
        'stratum': np.array(['weekday', 'weekend', 'holiday'])[day // 6],
        'w': np.random.uniform(1.0, 3.0, n),
        'species': np.random.choice(['bass', 'pike'], n),
        'catch': np.random.poisson(3, n).astype(float),
        'hours': np.random.uniform(0.5, 5.0, n),
        'y': np.random.normal(10, 2, n),
        'trip_complete': np.random.choice([True, False], n),
    })
    return data


def simple_design(y, w=None, **columns):
    """Unstratified, unclustered design over the given values"""
    data = pd.DataFrame({'y': y, 'w': np.ones(len(y)) if w is None else w, **columns})
    return SampleDesign(data, weight='w')


@pytest.fixture
def survey_data():
    return create_test_data()


@pytest.fixture
def design(survey_data):
    return SampleDesign(survey_data, weight='w', strata='stratum', cluster='day')


@pytest.fixture
def make_design():
    return simple_design

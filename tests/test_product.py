"""
Tests for the delta-method product estimator
"""

import warnings

import numpy as np
import pytest

from svyest import (ConfigurationError, DomainMismatchWarning, EstimateResult, ProductEstimator,
                    estimate_product, results_to_frame)


def make_result(estimate, se, key=(), n=50, method='linearization', group_by=()):
    return EstimateResult(
        group_key=key, estimate=estimate, se=se,
        ci_low=estimate - 1.96 * se, ci_high=estimate + 1.96 * se,
        n=n, deff=np.nan, method=method, requested_method=method,
        group_by=group_by,
    )


def grouped(values, method='linearization', n=50):
    return [make_result(est, se, (key,), n=n, method=method, group_by=('site',))
            for key, (est, se) in values.items()]


class TestDeltaMethod:
    """Test product estimate and variance"""

    def test_independent_inputs(self):
        (res,) = estimate_product([make_result(10.0, 1.0)], [make_result(2.0, 0.2)])

        assert res.estimate == pytest.approx(20.0)
        assert res.se == pytest.approx(np.sqrt(8.0))
        assert res.se == pytest.approx(2.83, abs=0.01)
        assert res.method == 'delta_method'
        assert res.n == 50

    def test_positive_correlation_increases_se(self):
        (base,) = estimate_product([make_result(10.0, 1.0)], [make_result(2.0, 0.2)])
        (pos,) = estimate_product([make_result(10.0, 1.0)], [make_result(2.0, 0.2)],
                                  correlation=0.5)

        assert pos.se > base.se
        # 8 + 2 * 10 * 2 * 0.5 * 1 * 0.2
        assert pos.se ** 2 == pytest.approx(12.0)

    def test_negative_correlation_decreases_se(self):
        (base,) = estimate_product([make_result(10.0, 1.0)], [make_result(2.0, 0.2)])
        (neg,) = estimate_product([make_result(10.0, 1.0)], [make_result(2.0, 0.2)],
                                  correlation=-0.5)

        assert neg.se < base.se

    def test_covariance(self):
        (res,) = ProductEstimator().estimate_product(
            make_result(10.0, 1.0), make_result(2.0, 0.2), covariance=0.1
        )

        assert res.se ** 2 == pytest.approx(8.0 + 2 * 10 * 2 * 0.1)

    def test_negative_variance_clamped(self):
        (res,) = estimate_product([make_result(10.0, 1.0)], [make_result(2.0, 0.2)],
                                  covariance=-5.0)

        assert res.se == 0.0
        assert 'negative_variance' in res.flags

    @pytest.mark.parametrize("correlation", [1.5, -1.01, np.nan])
    def test_correlation_out_of_range(self, correlation):
        with pytest.raises(ConfigurationError, match="correlation"):
            estimate_product([make_result(10.0, 1.0)], [make_result(2.0, 0.2)],
                             correlation=correlation)

    def test_correlation_and_covariance(self):
        with pytest.raises(ConfigurationError):
            estimate_product([make_result(10.0, 1.0)], [make_result(2.0, 0.2)],
                             correlation=0.1, covariance=0.1)


class TestDomainMatching:
    """Test keyed matching of the two inputs"""

    def test_matched_by_key_not_position(self):
        a = grouped({'north': (10.0, 1.0), 'south': (5.0, 0.5)})
        b = grouped({'south': (3.0, 0.1), 'north': (2.0, 0.2)})

        results = estimate_product(a, b)

        assert [r.group_key for r in results] == [('north',), ('south',)]
        assert [r.estimate for r in results] == pytest.approx([20.0, 15.0])

    def test_mismatch_keeps_intersection(self):
        a = grouped({'north': (10.0, 1.0), 'south': (5.0, 0.5)})
        b = grouped({'north': (2.0, 0.2), 'east': (1.0, 0.1)})

        with pytest.warns(DomainMismatchWarning):
            results = estimate_product(a, b)

        assert [r.group_key for r in results] == [('north',)]

    def test_mismatch_padded_union(self):
        a = grouped({'north': (10.0, 1.0), 'south': (5.0, 0.5)})
        b = grouped({'north': (2.0, 0.2), 'east': (1.0, 0.1)})

        with pytest.warns(DomainMismatchWarning, match="padding"):
            results = estimate_product(a, b, pad=True)

        assert [r.group_key for r in results] == [('north',), ('south',), ('east',)]
        for res in results[1:]:
            assert np.isnan(res.estimate)
            assert 'domain_unmatched' in res.flags

    def test_matching_domains_do_not_warn(self):
        a = grouped({'north': (10.0, 1.0)})
        b = grouped({'north': (2.0, 0.2)})

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            estimate_product(a, b)

    def test_duplicate_domain(self):
        a = grouped({'north': (10.0, 1.0)}) * 2
        b = grouped({'north': (2.0, 0.2)})

        with pytest.raises(ConfigurationError, match="Duplicate"):
            estimate_product(a, b)

    def test_dataframe_inputs(self):
        a = results_to_frame(grouped({'north': (10.0, 1.0), 'south': (5.0, 0.5)}))
        b = results_to_frame(grouped({'north': (2.0, 0.2), 'south': (3.0, 0.1)}))

        results = estimate_product(a, b, group_by='site')

        assert [r.group_key for r in results] == [('north',), ('south',)]
        assert results[0].se == pytest.approx(np.sqrt(8.0))


class TestSanityChecks:
    """Test non-fatal diagnostics"""

    def test_method_mismatch(self):
        (res,) = estimate_product([make_result(10.0, 1.0, method='bootstrap')],
                                  [make_result(2.0, 0.2)])

        assert 'method_mismatch' in res.flags

    def test_sample_size_mismatch(self):
        (res,) = estimate_product([make_result(10.0, 1.0, n=10)], [make_result(2.0, 0.2, n=50)])

        assert 'sample_size_mismatch' in res.flags
        assert res.n == 10

    def test_similar_sample_sizes(self):
        (res,) = estimate_product([make_result(10.0, 1.0, n=40)], [make_result(2.0, 0.2, n=50)])

        assert res.flags == []

    def test_undefined_input(self):
        (res,) = estimate_product([make_result(10.0, np.nan)], [make_result(2.0, 0.2)])

        assert 'undefined_input' in res.flags
        assert np.isnan(res.se)

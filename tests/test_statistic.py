import math

import numpy as np
import pytest
from scipy import stats

from ksl.statistic import (
    BatchStatistic,
    Statistic,
    WeightedStatistic,
    batch_means,
    check_level,
    t_quantile,
)

DATA = [9.0, 3.0, 7.0, 1.0, 5.0, 11.0, 2.0, 6.0]


def test_statistic_moments():
    stat = Statistic('x', DATA)
    assert stat.count == 8
    assert stat.sum == pytest.approx(sum(DATA))
    assert stat.average == pytest.approx(np.mean(DATA))
    assert stat.variance == pytest.approx(np.var(DATA, ddof=1))
    assert stat.standard_deviation == pytest.approx(np.std(DATA, ddof=1))
    assert stat.standard_error == pytest.approx(np.std(DATA, ddof=1) / math.sqrt(8))
    assert stat.min == 1.0
    assert stat.max == 11.0
    assert stat.last_value == 6.0


def test_statistic_skewness_kurtosis():
    stat = Statistic(values=DATA)
    assert stat.skewness == pytest.approx(stats.skew(DATA, bias=False))
    assert stat.kurtosis == pytest.approx(stats.kurtosis(DATA, bias=False))


def test_statistic_lag1():
    x = np.asarray(DATA)
    stat = Statistic(values=DATA)
    mean = x.mean()
    expected = np.sum((x[:-1] - mean) * (x[1:] - mean)) / len(x)
    assert stat.lag1_covariance == pytest.approx(expected)
    expected_corr = expected / np.var(x)
    assert stat.lag1_correlation == pytest.approx(expected_corr)


def test_statistic_missing_values():
    stat = Statistic(values=[1.0, math.nan, 3.0])
    assert stat.count == 2
    assert stat.num_missing == 1
    assert stat.average == 2.0


def test_statistic_empty_and_single():
    stat = Statistic()
    assert stat.count == 0
    assert math.isnan(stat.average)
    assert math.isnan(stat.variance)
    assert math.isnan(stat.half_width())
    stat.collect(4.0)
    assert stat.average == 4.0
    assert math.isnan(stat.variance)
    assert math.isnan(stat.half_width())


def test_statistic_reset():
    stat = Statistic(values=DATA)
    stat.reset()
    assert stat.count == 0
    assert stat.num_missing == 0
    assert stat.min == math.inf


def test_statistic_confidence_interval():
    stat = Statistic(values=DATA)
    hw = stats.t.ppf(0.975, 7) * stat.standard_error
    assert stat.half_width() == pytest.approx(hw)
    lower, upper = stat.confidence_interval(0.95)
    assert lower == pytest.approx(stat.average - hw)
    assert upper == pytest.approx(stat.average + hw)
    assert stat.half_width(0.99) > stat.half_width(0.90)


def test_statistic_as_dict():
    summary = Statistic('x', DATA).as_dict(0.9)
    assert summary['count'] == 8
    assert summary['confidence_level'] == 0.9
    assert set(summary) >= {'average', 'variance', 'half_width', 'num_missing'}


@pytest.mark.parametrize('level', [0.0, 1.0, -0.5, 1.5])
def test_check_level(level):
    with pytest.raises(ValueError):
        check_level(level)


def test_t_quantile():
    assert t_quantile(0.95, 10) == pytest.approx(stats.t.ppf(0.975, 10))


def test_weighted_statistic():
    stat = WeightedStatistic()
    stat.collect(1.0, 2.0)
    stat.collect(4.0, 1.0)
    stat.collect(100.0, 0.0)
    stat.collect(math.nan, 1.0)
    assert stat.count == 2
    assert stat.num_missing == 2
    assert stat.sum_of_weights == 3.0
    assert stat.weighted_average == pytest.approx(2.0)
    assert stat.min == 1.0
    assert stat.max == 4.0
    stat.reset()
    assert math.isnan(stat.weighted_average)


def test_batch_means():
    assert batch_means(list(range(10)), 3) == [1.0, 4.0, 7.0]
    with pytest.raises(ValueError):
        batch_means([1.0, 2.0], 3)
    with pytest.raises(ValueError):
        batch_means([1.0, 2.0], 0)


def test_batch_statistic_no_rebatch():
    bs = BatchStatistic(min_num_batches=4, min_batch_size=2, max_batch_multiple=2)
    for x in range(7):
        bs.collect(float(x))
    assert bs.batch_means == [0.5, 2.5, 4.5]
    assert bs.num_batches == 3
    assert bs.amount_unbatched == 1
    assert bs.total_observations == 7
    assert bs.num_rebatches == 0
    assert bs.average == pytest.approx(2.5)


def test_batch_statistic_rebatch():
    bs = BatchStatistic(
        min_num_batches=2, min_batch_size=2, max_batch_multiple=2, values=range(8)
    )
    assert bs.num_rebatches == 1
    assert bs.current_batch_size == 4
    assert bs.batch_means == [1.5, 5.5]
    assert bs.count == 2
    assert bs.average == pytest.approx(3.5)
    assert bs.as_dict()['batch_size'] == 4


def test_batch_statistic_reform():
    bs = BatchStatistic(min_num_batches=4, min_batch_size=2, values=range(8))
    assert bs.batch_means == [0.5, 2.5, 4.5, 6.5]
    assert bs.reform_batches(2) == [1.5, 5.5]
    with pytest.raises(ValueError):
        bs.reform_batches(5)


@pytest.mark.parametrize(
    'kwargs',
    [
        {'min_num_batches': 1},
        {'min_batch_size': 1},
        {'max_batch_multiple': 1},
    ],
)
def test_batch_statistic_invalid(kwargs):
    with pytest.raises(ValueError):
        BatchStatistic(**kwargs)

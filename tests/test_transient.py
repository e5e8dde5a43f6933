import math

import pytest

from ksl.transient import (
    mser,
    mser_deletion_point,
    negative_bias_test_statistic,
    partial_sums,
    positive_bias_test_statistic,
    truncated_mean,
)

BIASED = [20.0] * 5 + [5.0] * 35


def test_partial_sums():
    assert partial_sums(2.0, [1.0, 2.0, 3.0]).tolist() == [0.0, 1.0, 1.0, 0.0]
    assert partial_sums(5.0, [5.0]).tolist() == [0.0, 0.0]


def test_positive_bias_statistic():
    assert positive_bias_test_statistic([2, 4, 1, 5]) == pytest.approx(0.25)
    # An odd trailing observation is ignored.
    assert positive_bias_test_statistic([2, 4, 1, 5, 100]) == pytest.approx(0.25)


def test_negative_bias_statistic():
    assert negative_bias_test_statistic([4, 2, 5, 1]) == pytest.approx(0.25)


def test_bias_statistic_degenerate():
    # The maximum partial sum of the first half is at index 0.
    assert math.isnan(positive_bias_test_statistic([4, 2, 1, 5]))
    assert math.isnan(positive_bias_test_statistic([1, 1, 1, 1]))


def test_bias_statistic_too_short():
    with pytest.raises(ValueError):
        positive_bias_test_statistic([1, 2, 3])
    with pytest.raises(ValueError):
        negative_bias_test_statistic([])


def test_mser_statistic():
    stats = mser(BIASED, batch_size=5)
    assert len(stats) == 8
    assert stats[0] == pytest.approx(196.875 / 64)
    assert stats[1] == 0.0
    assert all(s >= 0.0 for s in stats)


def test_mser_drops_partial_batch():
    assert len(mser(BIASED + [1.0, 2.0], batch_size=5)) == 8


def test_mser_deletion_point():
    assert mser_deletion_point(BIASED) == 5
    assert mser_deletion_point([3.0, 1.0, 1.0, 1.0], batch_size=1) == 1


def test_mser_deletion_point_no_bias():
    assert mser_deletion_point([1.0, 2.0] * 20, batch_size=2) == 0


@pytest.mark.parametrize(
    'data, kwargs',
    [
        ([], {}),
        ([1.0, 2.0, 3.0], {}),
        ([1.0, 2.0, 3.0], {'batch_size': 0}),
        (BIASED, {'max_fraction': 0.0}),
        (BIASED, {'max_fraction': 1.5}),
    ],
)
def test_mser_deletion_point_invalid(data, kwargs):
    with pytest.raises(ValueError):
        mser_deletion_point(data, **kwargs)


def test_truncated_mean():
    assert truncated_mean([3.0, 1.0, 1.0, 1.0], 1) == 1.0
    assert truncated_mean([3.0, 1.0, 1.0, 1.0], 0) == 1.5
    with pytest.raises(ValueError):
        truncated_mean([3.0, 1.0], 2)
    with pytest.raises(ValueError):
        truncated_mean([3.0, 1.0], -1)

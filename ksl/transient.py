"""Initialization bias detection and warm-up deletion point selection.

The functions here operate on a single series, typically the Welch averages
of a response (see :mod:`ksl.welch`) or the batch means of a long run.

 - :func:`positive_bias_test_statistic` and
   :func:`negative_bias_test_statistic` compare the maximum (minimum) of the
   standardized partial-sum process over the first and second halves of the
   series. Under the hypothesis of no initialization bias the statistic is
   approximately F-distributed with (3, 3) degrees of freedom.
 - :func:`mser_deletion_point` implements the Mean Squared Error Rule: the
   truncation point minimizing the squared standard error of the truncated
   mean. Applied to batch means of size 5 this is MSER-5.

"""
from typing import Sequence
import logging

import numpy as np

log = logging.getLogger(__name__)


def partial_sums(average: float, data: Sequence[float]) -> np.ndarray:
    """Partial sum process ``S[j] = j * average - sum(data[:j])``.

    The returned array has ``len(data) + 1`` elements with ``S[0] = 0``.

    """
    x = np.asarray(data, dtype=float)
    n = len(x)
    if n == 1:
        return np.zeros(2)
    s = np.zeros(n + 1)
    s[1:] = np.arange(1, n + 1) * average - np.cumsum(x)
    return s


def _bias_test_statistic(data: Sequence[float], positive: bool) -> float:
    x = np.asarray(data, dtype=float)
    if len(x) < 4:
        raise ValueError('At least 4 observations are needed for a bias test')
    n = len(x) // 2
    x1 = x[:n]
    x2 = x[n : 2 * n]
    ps1 = partial_sums(x1.mean(), x1)
    ps2 = partial_sums(x2.mean(), x2)
    if positive:
        mi1, mi2 = int(np.argmax(ps1)), int(np.argmax(ps2))
    else:
        mi1, mi2 = int(np.argmin(ps1)), int(np.argmin(ps2))
    s1, s2 = ps1[mi1], ps2[mi2]
    num = mi2 * (n - mi2) * s1 * s1
    denom = mi1 * (n - mi1) * s2 * s2
    if s2 == 0.0 or denom == 0.0:
        return float('nan')
    return float(num / denom)


def positive_bias_test_statistic(data: Sequence[float]) -> float:
    """Test statistic for positive initialization bias."""
    return _bias_test_statistic(data, positive=True)


def negative_bias_test_statistic(data: Sequence[float]) -> float:
    """Test statistic for negative initialization bias."""
    return _bias_test_statistic(data, positive=False)


def _batch(data: Sequence[float], batch_size: int) -> np.ndarray:
    if batch_size < 1:
        raise ValueError(f'Batch size must be >= 1, got {batch_size}')
    x = np.asarray(data, dtype=float)
    k = len(x) // batch_size
    return x[: k * batch_size].reshape(k, batch_size).mean(axis=1)


def mser(data: Sequence[float], batch_size: int = 5) -> np.ndarray:
    """MSER statistic for each candidate deletion point.

    The data is first reduced to means of `batch_size` consecutive
    observations (trailing observations that do not fill a batch are
    dropped). Element ``d`` of the result is

        sum((Z[i] - mean(Z[d:]))**2 for i >= d) / (k - d)**2

    for ``k`` batch means ``Z``.

    """
    z = _batch(data, batch_size)
    k = len(z)
    if k < 2:
        raise ValueError(
            f'MSER needs at least 2 batches; got {len(data)} observations with '
            f'batch size {batch_size}'
        )
    remaining = np.arange(k, 0, -1, dtype=float)
    suffix_sum = np.cumsum(z[::-1])[::-1]
    suffix_sum_sq = np.cumsum((z * z)[::-1])[::-1]
    sse = suffix_sum_sq - suffix_sum * suffix_sum / remaining
    # Cancellation can leave tiny negative sums for constant tails.
    sse = np.maximum(sse, 0.0)
    return sse / (remaining * remaining)


def mser_deletion_point(
    data: Sequence[float], batch_size: int = 5, max_fraction: float = 0.5
) -> int:
    """Recommended number of observations to delete from the start of `data`.

    Only truncation points in the first `max_fraction` of the batched series
    are considered; ties go to the earliest point.

    :returns: Deletion point in original (unbatched) observations.

    """
    if len(data) == 0:
        raise ValueError('No data for MSER')
    if not 0.0 < max_fraction <= 1.0:
        raise ValueError(f'max_fraction must be in (0, 1], got {max_fraction}')
    stats = mser(data, batch_size)
    num_candidates = max(1, int(np.ceil(max_fraction * len(stats))))
    d_star = int(np.argmin(stats[:num_candidates]))
    log.debug(
        'MSER-%d: %d batches, deletion point %d batches', batch_size, len(stats), d_star
    )
    return d_star * batch_size


def truncated_mean(data: Sequence[float], deletion_point: int) -> float:
    """Mean of `data` after deleting the first `deletion_point` observations."""
    x = np.asarray(data, dtype=float)
    if not 0 <= deletion_point < len(x):
        raise ValueError(f'Invalid deletion point {deletion_point} for {len(x)} observations')
    return float(x[deletion_point:].mean())

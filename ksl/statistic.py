"""Running statistics: tallies, weighted tallies, and batch means.

:class:`Statistic` accumulates moments one observation at a time, so that
responses never need to retain their observations. Missing values (NaN) are
counted but otherwise ignored.

:class:`BatchStatistic` groups an observation stream into batches and keeps
the number of batches bounded by repeatedly merging adjacent batches. The
resulting batch means are approximately independent and are used for
confidence intervals on steady-state means.

"""
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import math

from scipy import stats
import numpy as np

from .util import is_missing

MIN_NUM_BATCHES = 20
MIN_NUM_OBS_PER_BATCH = 16
MAX_BATCH_MULTIPLE = 2


def check_level(level: float) -> None:
    if not 0.0 < level < 1.0:
        raise ValueError(f'Confidence level must be in (0, 1), got {level}')


def t_quantile(level: float, dof: float) -> float:
    """Two-sided Student-t quantile for a confidence `level`."""
    check_level(level)
    alpha = 1.0 - level
    return float(stats.t.ppf(1.0 - alpha / 2.0, dof))


class Statistic:
    """Summary statistics over a stream of observations.

    :param str name: Optional name, used when reporting.
    :param values: Optional initial observations.

    """

    def __init__(
        self, name: Optional[str] = None, values: Optional[Iterable[float]] = None
    ) -> None:
        self.name = name
        self.reset()
        if values is not None:
            self.collect_all(values)

    def reset(self) -> None:
        # count, mean, 2nd, 3rd, and 4th central moments (divided by count)
        self._moments = [0.0] * 5
        self._min = math.inf
        self._max = -math.inf
        self._first_x = 0.0
        self._sum_xx = 0.0
        self.last_value = math.nan
        self.num_missing = 0
        self.negative_count = 0
        self.zero_count = 0

    def collect(self, x: float) -> None:
        x = float(x)
        if is_missing(x):
            self.num_missing += 1
            return
        if x < 0.0:
            self.negative_count += 1
        elif x == 0.0:
            self.zero_count += 1

        m = self._moments
        n = m[0]
        n1 = n + 1.0
        n2 = n * n
        delta = (m[1] - x) / n1
        d2 = delta * delta
        d3 = delta * d2
        r1 = n / n1
        m[4] = r1 * ((1.0 + n * n2) * d2 * d2 + 6.0 * m[2] * d2 + 4.0 * m[3] * delta + m[4])
        m[3] = r1 * ((1.0 - n2) * d3 + 3.0 * m[2] * delta + m[3])
        m[2] = r1 * ((1.0 + n) * d2 + m[2])
        m[1] -= delta
        m[0] = n1

        if n1 == 1.0:
            self._first_x = x
        else:
            self._sum_xx += x * self.last_value
        self._min = min(self._min, x)
        self._max = max(self._max, x)
        self.last_value = x

    def collect_all(self, values: Iterable[float]) -> None:
        for x in values:
            self.collect(x)

    @property
    def count(self) -> int:
        return int(self._moments[0])

    @property
    def sum(self) -> float:
        return self._moments[1] * self._moments[0]

    @property
    def average(self) -> float:
        return self._moments[1] if self._moments[0] >= 1.0 else math.nan

    @property
    def deviation_sum_of_squares(self) -> float:
        return self._moments[2] * self._moments[0]

    @property
    def variance(self) -> float:
        n = self._moments[0]
        return self.deviation_sum_of_squares / (n - 1.0) if n >= 2.0 else math.nan

    @property
    def standard_deviation(self) -> float:
        return math.sqrt(self.variance)

    @property
    def standard_error(self) -> float:
        n = self._moments[0]
        return self.standard_deviation / math.sqrt(n) if n >= 1.0 else math.nan

    @property
    def min(self) -> float:
        return self._min

    @property
    def max(self) -> float:
        return self._max

    @property
    def skewness(self) -> float:
        n = self._moments[0]
        if n < 3.0:
            return math.nan
        v = self.variance
        d = (n - 1.0) * (n - 2.0) * v * math.sqrt(v)
        return n * n * self._moments[3] / d if d else math.nan

    @property
    def kurtosis(self) -> float:
        n = self._moments[0]
        if n < 4.0:
            return math.nan
        v = self.variance
        n1 = n - 1.0
        d = (n - 1.0) * (n - 2.0) * (n - 3.0) * v * v
        t = n * (n + 1.0) * n * self._moments[4] - 3.0 * n1 * n1 * n1 * v * v
        return t / d if d else math.nan

    @property
    def lag1_covariance(self) -> float:
        n = self._moments[0]
        if n <= 2.0:
            return math.nan
        mean = self._moments[1]
        c1 = (
            self._sum_xx
            - (n + 1.0) * mean * mean
            + mean * (self._first_x + self.last_value)
        )
        return c1 / n

    @property
    def lag1_correlation(self) -> float:
        if self._moments[0] <= 2.0 or self._moments[2] == 0.0:
            return math.nan
        return self.lag1_covariance / self._moments[2]

    @property
    def von_neumann_lag1_statistic(self) -> float:
        n = self._moments[0]
        if n <= 2.0 or self._moments[2] == 0.0:
            return math.nan
        mean = self._moments[1]
        t = (self._first_x - mean) ** 2 + (self.last_value - mean) ** 2
        b = 2.0 * n * self._moments[2]
        return math.sqrt((n * n - 1.0) / (n - 2.0)) * (self.lag1_correlation + t / b)

    def half_width(self, level: float = 0.95) -> float:
        """Half width of a t-based confidence interval on the mean.

        NaN when fewer than two observations have been collected.

        """
        check_level(level)
        if self._moments[0] <= 1.0:
            return math.nan
        return t_quantile(level, self._moments[0] - 1.0) * self.standard_error

    def confidence_interval(self, level: float = 0.95) -> Tuple[float, float]:
        hw = self.half_width(level)
        avg = self.average
        return avg - hw, avg + hw

    def as_dict(self, level: float = 0.95) -> Dict[str, Any]:
        return {
            'count': self.count,
            'average': self.average,
            'variance': self.variance,
            'std_dev': self.standard_deviation,
            'min': self.min,
            'max': self.max,
            'half_width': self.half_width(level),
            'confidence_level': level,
            'num_missing': self.num_missing,
        }

    def __repr__(self) -> str:
        return (
            f'{type(self).__name__}(name={self.name!r}, n={self.count}, '
            f'avg={self.average}, sd={self.standard_deviation})'
        )


class WeightedStatistic:
    """Weighted average of observations.

    Observations with a missing (NaN) value or a non-positive weight are
    counted in :attr:`num_missing` and excluded.

    """

    def __init__(self, name: Optional[str] = None) -> None:
        self.name = name
        self.reset()

    def reset(self) -> None:
        self.count = 0
        self.num_missing = 0
        self.weighted_sum = 0.0
        self.sum_of_weights = 0.0
        self.weighted_sum_of_squares = 0.0
        self.unweighted_sum = 0.0
        self.min = math.inf
        self.max = -math.inf
        self.last_value = math.nan
        self.last_weight = math.nan

    def collect(self, x: float, weight: float = 1.0) -> None:
        x = float(x)
        weight = float(weight)
        if is_missing(x) or is_missing(weight) or weight <= 0.0:
            self.num_missing += 1
            return
        self.count += 1
        self.sum_of_weights += weight
        self.unweighted_sum += x
        self.weighted_sum += x * weight
        self.weighted_sum_of_squares += x * x * weight
        self.min = min(self.min, x)
        self.max = max(self.max, x)
        self.last_value = x
        self.last_weight = weight

    @property
    def weighted_average(self) -> float:
        if self.sum_of_weights <= 0.0:
            return math.nan
        return self.weighted_sum / self.sum_of_weights


class BatchStatistic:
    """Batch means with automatic rebatching.

    Observations are grouped into batches of :attr:`current_batch_size`. When
    the number of batches reaches ``min_num_batches * max_batch_multiple``,
    each run of `max_batch_multiple` adjacent batches is merged into one and
    the batch size grows by the same factor. Summary statistics
    (:attr:`average`, :meth:`half_width`, etc.) describe the batch means.

    :param int min_num_batches: Minimum number of batches kept.
    :param int min_batch_size: Initial (minimum) batch size.
    :param int max_batch_multiple: Merge factor when rebatching.
    :param values: Optional initial observations.

    """

    def __init__(
        self,
        min_num_batches: int = MIN_NUM_BATCHES,
        min_batch_size: int = MIN_NUM_OBS_PER_BATCH,
        max_batch_multiple: int = MAX_BATCH_MULTIPLE,
        values: Optional[Iterable[float]] = None,
        name: Optional[str] = None,
    ) -> None:
        if min_num_batches <= 1:
            raise ValueError('Number of batches must be >= 2')
        if min_batch_size <= 1:
            raise ValueError('Batch size must be >= 2')
        if max_batch_multiple <= 1:
            raise ValueError('Maximum number of batches multiple must be >= 2')
        self.name = name
        self.min_num_batches = min_num_batches
        self.min_batch_size = min_batch_size
        self.max_batch_multiple = max_batch_multiple
        self.max_num_batches = min_num_batches * max_batch_multiple
        self.reset()
        if values is not None:
            for x in values:
                self.collect(x)

    def reset(self) -> None:
        self._bm: List[float] = []
        self._batch = Statistic()
        self._bm_stat = Statistic(self.name)
        self.num_rebatches = 0
        self.current_batch_size = self.min_batch_size
        self.total_observations = 0
        self.last_value = math.nan

    def collect(self, x: float) -> None:
        self.total_observations += 1
        self.last_value = float(x)
        self._batch.collect(x)
        if self._batch.count == self.current_batch_size:
            self._collect_batch()

    def _collect_batch(self) -> None:
        mean = self._batch.average
        self._bm.append(mean)
        self._bm_stat.collect(mean)
        self._batch.reset()
        if len(self._bm) == self.max_num_batches:
            self.num_rebatches += 1
            self.current_batch_size *= self.max_batch_multiple
            k = self.max_batch_multiple
            self._bm = [
                sum(self._bm[i : i + k]) / k for i in range(0, len(self._bm), k)
            ]
            self._bm_stat = Statistic(self.name, self._bm)

    @property
    def batch_means(self) -> List[float]:
        return list(self._bm)

    @property
    def num_batches(self) -> int:
        return len(self._bm)

    @property
    def amount_unbatched(self) -> int:
        return self._batch.count

    @property
    def current_batch_statistic(self) -> Statistic:
        return self._batch

    def reform_batches(self, num_batches: int) -> List[float]:
        """Regroup the current batch means into `num_batches` batches."""
        if num_batches <= 0:
            raise ValueError('Number of requested batches must be >= 1')
        if num_batches > self.num_batches:
            raise ValueError(
                'Number of requested batches must be <= the current number of batches'
            )
        return batch_means(self._bm, num_batches)

    @property
    def count(self) -> int:
        return self._bm_stat.count

    @property
    def average(self) -> float:
        return self._bm_stat.average

    @property
    def variance(self) -> float:
        return self._bm_stat.variance

    @property
    def standard_deviation(self) -> float:
        return self._bm_stat.standard_deviation

    @property
    def standard_error(self) -> float:
        return self._bm_stat.standard_error

    @property
    def min(self) -> float:
        return self._bm_stat.min

    @property
    def max(self) -> float:
        return self._bm_stat.max

    @property
    def lag1_correlation(self) -> float:
        return self._bm_stat.lag1_correlation

    @property
    def von_neumann_lag1_statistic(self) -> float:
        return self._bm_stat.von_neumann_lag1_statistic

    def half_width(self, level: float = 0.95) -> float:
        return self._bm_stat.half_width(level)

    def confidence_interval(self, level: float = 0.95) -> Tuple[float, float]:
        return self._bm_stat.confidence_interval(level)

    def as_dict(self, level: float = 0.95) -> Dict[str, Any]:
        result = self._bm_stat.as_dict(level)
        result.update(
            {
                'batch_size': self.current_batch_size,
                'num_batches': self.num_batches,
                'num_rebatches': self.num_rebatches,
                'amount_unbatched': self.amount_unbatched,
                'total_observations': self.total_observations,
            }
        )
        return result


def batch_means(data: Sequence[float], num_batches: int) -> List[float]:
    """Batch an array of observations into `num_batches` batch means.

    The batch size is ``len(data) // num_batches``; observations left over at
    the end of `data` are not included in any batch.

    """
    n = len(data)
    if num_batches <= 0:
        raise ValueError('The number of batches must be > 0')
    if num_batches > n:
        raise ValueError('The number of batches must be <= the number of observations')
    batch_size = n // num_batches
    arr = np.asarray(data, dtype=float)[: batch_size * num_batches]
    return [float(v) for v in arr.reshape(num_batches, batch_size).mean(axis=1)]

"""Welch plot data collection and analysis.

A Welch plot averages, across replications, the i-th observation of a
response. Plotting these averages (and their cumulative averages) against the
observation index shows where the initialization bias of a simulation dies
out, i.e. how long the warm-up period should be.

Collection works on a stream of ``(time, value)`` observations of a single
response. The stream is batched into Welch observations:

 - For a tally (observation-based) response, every `batch_size` observations
   form one Welch observation: the batch mean.
 - For a time-persistent response, simulated time is cut into intervals of
   length `batch_size`; the time-weighted average over each complete interval
   is one Welch observation.

:class:`WelchDataArrayCollector` keeps Welch observations in memory.
:class:`WelchDataFileCollector` streams them to a binary file of big-endian
IEEE-754 doubles, replication after replication, and writes a JSON metadata
sidecar describing the file. :class:`WelchDataFileAnalyzer` reads the file
back for cross-replication averaging, batching, and deletion point analysis.

"""
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
import json
import logging
import math
import os
import struct

import numpy as np

from .statistic import BatchStatistic, Statistic, WeightedStatistic
from .transient import mser_deletion_point

log = logging.getLogger(__name__)

#: Bytes per stored observation.
NUM_BYTES = 8
#: Default batch size for batching Welch averages.
MIN_BATCH_SIZE = 10

DATA_EXT = '.wdf'
PLOT_DATA_EXT = '.wpdf'
METADATA_EXT = '.json'

_DTYPE = np.dtype('>f8')
_PACKER = struct.Struct('>d')


class WelchFileError(ValueError):
    """Invalid Welch data file or metadata."""


class StatisticType(Enum):
    TALLY = 'TALLY'
    TIME_PERSISTENT = 'TIME_PERSISTENT'


class WelchDataCollector:
    """Bookkeeping shared by Welch data collectors.

    Subclasses implement :meth:`_save_observation` to store each Welch
    observation. Per replication, the collector records the number of Welch
    observations, the average time between them, their average, and the time
    of the last one.

    The collection protocol is :meth:`setup` once, then for each replication
    :meth:`begin_replication`, any number of :meth:`collect` calls, and
    :meth:`end_replication`; finally :meth:`clean_up`.

    """

    def __init__(
        self,
        statistic_type: Union[StatisticType, str],
        name: str,
        batch_size: float = 1.0,
    ) -> None:
        if batch_size <= 0.0:
            raise ValueError(f'The batch size must be > 0.0, got {batch_size}')
        self.statistic_type = StatisticType(statistic_type)
        self.name = name
        self.batch_size = batch_size
        self._within_rep = WeightedStatistic()
        self._tbo = WeightedStatistic()
        self._rep_stat = Statistic()
        self.setup()

    def setup(self) -> None:
        self._obs_counts: List[int] = []
        self._tbo_averages: List[float] = []
        self._averages: List[float] = []
        self._last_times: List[float] = []
        self._begin()

    def _begin(self) -> None:
        self._obs_count = 0
        self._num_intervals = 0
        self.last_time = math.nan
        self.last_value = math.nan
        self._within_rep.reset()
        self._tbo.reset()
        self._rep_stat.reset()

    def begin_replication(self) -> None:
        self._begin()

    def collect(self, time: float, value: float) -> None:
        if self.statistic_type is StatisticType.TALLY:
            self._collect_tally(time, value)
        else:
            self._collect_time_persistent(time, value)

    def end_replication(self) -> None:
        self._obs_counts.append(self._obs_count)
        if self._obs_count > 0:
            self._tbo_averages.append(self._tbo.weighted_average)
            self._averages.append(self._rep_stat.average)
            self._last_times.append(self.last_time)
        else:
            self._tbo_averages.append(math.nan)
            self._averages.append(math.nan)
            self._last_times.append(math.nan)

    def clean_up(self) -> None:
        pass

    def _collect_tally(self, time: float, value: float) -> None:
        self._within_rep.collect(value)
        if self._within_rep.count >= self.batch_size:
            if self._obs_count >= 1:
                self._tbo.collect(time - self.last_time)
            self.last_value = self._within_rep.weighted_average
            self.last_time = time
            self._record(self.last_value)
            self._within_rep.reset()

    def _collect_time_persistent(self, time: float, value: float) -> None:
        if time <= 0.0:
            self.last_time = 0.0
            self.last_value = value
            return
        # A single change may span several intervals; close each of them.
        t_batch = (self._num_intervals + 1) * self.batch_size
        while time > t_batch:
            self._weight_last_value(t_batch)
            self._num_intervals += 1
            self._tbo.collect(self.batch_size)
            self._record(self._within_rep.weighted_average)
            self._within_rep.reset()
            self.last_time = t_batch
            t_batch = (self._num_intervals + 1) * self.batch_size
        self._weight_last_value(time)
        self.last_value = value
        self.last_time = time

    def _weight_last_value(self, time: float) -> None:
        weight = time - self.last_time
        self._within_rep.collect(self.last_value, max(weight, 0.0))

    def _record(self, observation: float) -> None:
        if self._save_observation(observation):
            self._obs_count += 1
            self._rep_stat.collect(observation)

    def _save_observation(self, observation: float) -> bool:
        raise NotImplementedError()  # pragma: no cover

    @property
    def num_replications(self) -> int:
        return len(self._obs_counts)

    @property
    def observation_counts(self) -> List[int]:
        """Number of Welch observations in each completed replication."""
        return list(self._obs_counts)

    @property
    def time_between_observations(self) -> List[float]:
        """Average time between Welch observations for each replication."""
        return list(self._tbo_averages)

    @property
    def replication_averages(self) -> List[float]:
        return list(self._averages)

    @property
    def last_observation_times(self) -> List[float]:
        return list(self._last_times)

    @property
    def min_num_observations(self) -> int:
        return min(self._obs_counts) if self._obs_counts else 0


class WelchDataArrayCollector(WelchDataCollector):
    """Collect Welch observations into an in-memory array.

    Observations beyond `max_num_obs` per replication, and replications beyond
    `max_num_reps`, are ignored.

    """

    def __init__(
        self,
        max_num_obs: int,
        max_num_reps: int,
        statistic_type: Union[StatisticType, str],
        name: str,
        batch_size: float = 1.0,
    ) -> None:
        if max_num_obs <= 0:
            raise ValueError('The maximum number of observations must be > 0')
        if max_num_reps <= 0:
            raise ValueError('The maximum number of replications must be > 0')
        self.max_num_obs = max_num_obs
        self.max_num_reps = max_num_reps
        self._data = np.full((max_num_obs, max_num_reps), np.nan)
        super().__init__(statistic_type, name, batch_size)

    def setup(self) -> None:
        self._data.fill(np.nan)
        super().setup()

    def _save_observation(self, observation: float) -> bool:
        rep = self.num_replications
        if self._obs_count < self.max_num_obs and rep < self.max_num_reps:
            self._data[self._obs_count, rep] = observation
            return True
        return False

    @property
    def data(self) -> np.ndarray:
        """Welch observations; rows are observations, columns replications."""
        return self._data[:, : min(self.num_replications, self.max_num_reps)].copy()

    def replication_data(self, replication: int) -> np.ndarray:
        """Welch observations of a (1-based) replication."""
        if not 1 <= replication <= min(self.num_replications, self.max_num_reps):
            raise ValueError(f'Invalid replication number {replication}')
        count = self._obs_counts[replication - 1]
        return self._data[:count, replication - 1].copy()

    def welch_averages(self) -> np.ndarray:
        stored = self._obs_counts[: self.max_num_reps]
        n = min(stored) if stored else 0
        return self.data[:n].mean(axis=1)

    def cumulative_welch_averages(self) -> np.ndarray:
        return _cumulative_average(self.welch_averages())


class WelchDataFileCollector(WelchDataCollector):
    """Stream Welch observations to a binary data file.

    The data file is ``{directory}/{name}_{statistic_type}.wdf``. Each
    observation is written as a big-endian 8-byte double; the observations of
    a replication directly follow those of the previous replication. The JSON
    metadata sidecar has the same path with a ``.json`` extension and is
    written by :meth:`clean_up`.

    """

    def __init__(
        self,
        directory: str,
        statistic_type: Union[StatisticType, str],
        name: str,
        batch_size: float = 1.0,
    ) -> None:
        super().__init__(statistic_type, name, batch_size)
        os.makedirs(directory, exist_ok=True)
        self.directory = directory
        self.file_name = f'{name}_{self.statistic_type.value}'
        self.data_path = os.path.join(directory, self.file_name + DATA_EXT)
        self.metadata_path = os.path.join(directory, self.file_name + METADATA_EXT)
        self._file = open(self.data_path, 'wb')

    def setup(self) -> None:
        super().setup()
        if hasattr(self, '_file'):
            self._file.seek(0)
            self._file.truncate()

    def _save_observation(self, observation: float) -> bool:
        self._file.write(_PACKER.pack(observation))
        return True

    def end_replication(self) -> None:
        super().end_replication()
        self._file.flush()

    def clean_up(self) -> None:
        self.close()
        metadata = self.metadata()
        metadata.write()
        log.debug('Wrote Welch metadata %s', metadata.path_to_json)

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def metadata(self) -> 'WelchFileMetaData':
        return WelchFileMetaData(
            data_name=self.name,
            path_to_file=os.path.abspath(self.data_path),
            num_replications=self.num_replications,
            num_obs_in_each_replication=self.observation_counts,
            time_of_last_obs_in_each_replication=self.last_observation_times,
            min_num_obs_for_replications=self.min_num_observations,
            end_replication_averages=self.replication_averages,
            time_btw_obs_in_each_replication=self.time_between_observations,
            batch_size=self.batch_size,
            statistic_type=self.statistic_type,
        )

    def make_analyzer(self) -> 'WelchDataFileAnalyzer':
        self.close()
        return WelchDataFileAnalyzer(self.metadata())


class WelchFileMetaData:
    """Description of a Welch data file, stored as JSON beside it."""

    fields = (
        'data_name',
        'path_to_file',
        'num_replications',
        'num_obs_in_each_replication',
        'time_of_last_obs_in_each_replication',
        'min_num_obs_for_replications',
        'end_replication_averages',
        'time_btw_obs_in_each_replication',
        'batch_size',
        'statistic_type',
    )

    def __init__(
        self,
        data_name: str,
        path_to_file: str,
        num_replications: int,
        num_obs_in_each_replication: Sequence[int],
        time_of_last_obs_in_each_replication: Sequence[float],
        min_num_obs_for_replications: int,
        end_replication_averages: Sequence[float],
        time_btw_obs_in_each_replication: Sequence[float],
        batch_size: float,
        statistic_type: Union[StatisticType, str],
    ) -> None:
        self.data_name = data_name
        self.path_to_file = path_to_file
        self.num_replications = int(num_replications)
        self.num_obs_in_each_replication = [int(n) for n in num_obs_in_each_replication]
        self.time_of_last_obs_in_each_replication = [
            float(t) for t in time_of_last_obs_in_each_replication
        ]
        self.min_num_obs_for_replications = int(min_num_obs_for_replications)
        self.end_replication_averages = [float(a) for a in end_replication_averages]
        self.time_btw_obs_in_each_replication = [
            float(t) for t in time_btw_obs_in_each_replication
        ]
        self.batch_size = float(batch_size)
        self.statistic_type = StatisticType(statistic_type)

    @property
    def path_to_json(self) -> str:
        return os.path.splitext(self.path_to_file)[0] + METADATA_EXT

    def validate(self) -> None:
        """Check the metadata describes a usable data file.

        :raises `WelchFileError`: For any inconsistency.

        """
        n = self.num_replications
        if n <= 0:
            raise WelchFileError('The number of replications must be > 0')
        lists = [
            self.num_obs_in_each_replication,
            self.time_of_last_obs_in_each_replication,
            self.end_replication_averages,
            self.time_btw_obs_in_each_replication,
        ]
        if any(len(values) != n for values in lists):
            raise WelchFileError(f'Per-replication data must have {n} entries')
        if any(count <= 0 for count in self.num_obs_in_each_replication):
            raise WelchFileError('Each replication must have at least one observation')
        if not all(t > 0.0 for t in self.time_of_last_obs_in_each_replication):
            raise WelchFileError('The time of the last observation must be > 0')
        if not all(math.isfinite(a) for a in self.end_replication_averages):
            raise WelchFileError('The replication averages must be finite')
        if self.min_num_obs_for_replications != min(self.num_obs_in_each_replication):
            raise WelchFileError('Inconsistent minimum number of observations')
        if self.batch_size <= 0.0:
            raise WelchFileError('The batch size must be > 0')
        if os.path.splitext(self.path_to_file)[1] != DATA_EXT:
            raise WelchFileError(f'The data file must have a {DATA_EXT} extension')

    def as_dict(self) -> Dict[str, Any]:
        result = {name: getattr(self, name) for name in self.fields}
        result['statistic_type'] = self.statistic_type.value
        return result

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), indent=2)

    def write(self, path: Optional[str] = None) -> str:
        path = self.path_to_json if path is None else path
        with open(path, 'w') as json_file:
            json_file.write(self.to_json())
        return path

    @classmethod
    def from_json(cls, json_str: str) -> 'WelchFileMetaData':
        try:
            values = json.loads(json_str)
            metadata = cls(**{name: values[name] for name in cls.fields})
        except (KeyError, TypeError, ValueError) as e:
            raise WelchFileError(f'Invalid Welch metadata: {e}')
        metadata.validate()
        return metadata

    @classmethod
    def read(cls, path: str) -> 'WelchFileMetaData':
        if os.path.splitext(path)[1] != METADATA_EXT:
            raise WelchFileError(f'Welch metadata file must have a {METADATA_EXT} extension')
        with open(path) as json_file:
            return cls.from_json(json_file.read())


class WelchDataFileAnalyzer:
    """Analysis of a Welch data file.

    Observation and replication numbers are 1-based, matching the order in
    which they were collected.

    :param metadata: :class:`WelchFileMetaData` or path to its JSON file.

    """

    def __init__(self, metadata: Union[WelchFileMetaData, str]) -> None:
        if isinstance(metadata, str):
            metadata = WelchFileMetaData.read(metadata)
        metadata.validate()
        self.metadata = metadata
        self._counts = np.asarray(metadata.num_obs_in_each_replication, dtype=np.int64)
        self._offsets = np.concatenate(([0], np.cumsum(self._counts)[:-1]))
        expected = int(self._counts.sum()) * NUM_BYTES
        size = os.path.getsize(metadata.path_to_file)
        if size != expected:
            raise WelchFileError(
                f'{metadata.path_to_file} holds {size} bytes, expected {expected}'
            )
        self._data = np.memmap(metadata.path_to_file, dtype=_DTYPE, mode='r')
        self.last_data_point = math.nan
        self.last_obs_index = 0
        self.last_rep_index = 0

    @property
    def num_replications(self) -> int:
        return self.metadata.num_replications

    @property
    def min_num_observations(self) -> int:
        return self.metadata.min_num_obs_for_replications

    @property
    def observation_counts(self) -> List[int]:
        return list(self.metadata.num_obs_in_each_replication)

    @property
    def time_per_observation(self) -> List[float]:
        return list(self.metadata.time_btw_obs_in_each_replication)

    @property
    def average_time_per_observation(self) -> float:
        return float(np.nanmean(self.metadata.time_btw_obs_in_each_replication))

    @property
    def replication_averages(self) -> List[float]:
        return list(self.metadata.end_replication_averages)

    def position(self, obs: int, rep: int) -> int:
        """Byte offset of observation `obs` of replication `rep`."""
        self._check_indices(obs, rep)
        return int(self._offsets[rep - 1] + obs - 1) * NUM_BYTES

    def _check_indices(self, obs: int, rep: int) -> None:
        if not 1 <= rep <= self.num_replications:
            raise ValueError(f'Invalid replication number {rep}')
        if not 1 <= obs <= self._counts[rep - 1]:
            raise ValueError(f'Invalid observation number {obs} for replication {rep}')

    def read_observation(self, obs: int, rep: int) -> float:
        value = float(self._data[self.position(obs, rep) // NUM_BYTES])
        self.last_data_point = value
        self.last_obs_index = obs
        self.last_rep_index = rep
        return value

    def replication_data(self, rep: int) -> np.ndarray:
        self._check_indices(1, rep)
        start = int(self._offsets[rep - 1])
        return np.array(self._data[start : start + self._counts[rep - 1]], dtype=float)

    def across_replication_data(self, obs: int) -> np.ndarray:
        """The `obs`-th observation of every replication."""
        if not 1 <= obs <= self.min_num_observations:
            raise ValueError(
                f'Observation number must be in [1, {self.min_num_observations}]'
            )
        return np.array(self._data[self._offsets + obs - 1], dtype=float)

    def across_replication_average(self, obs: int) -> float:
        return float(self.across_replication_data(obs).mean())

    def _data_matrix(self, num_obs: Optional[int]) -> np.ndarray:
        n = self.min_num_observations
        if num_obs is not None:
            if num_obs <= 0:
                raise ValueError('The number of observations must be > 0')
            n = min(num_obs, n)
        indexes = self._offsets[:, np.newaxis] + np.arange(n)
        return np.asarray(self._data[indexes], dtype=float)

    def welch_averages(self, num_obs: Optional[int] = None) -> np.ndarray:
        """Across replication averages of the first `num_obs` observations.

        The number of averages is capped at the smallest number of
        observations in any replication.

        """
        return self._data_matrix(num_obs).mean(axis=0)

    def cumulative_welch_averages(self, num_obs: Optional[int] = None) -> np.ndarray:
        return _cumulative_average(self.welch_averages(num_obs))

    def write_welch_plot_data(
        self, path: Optional[str] = None, num_obs: Optional[int] = None
    ) -> str:
        """Write ``(average, cumulative average)`` pairs as big-endian doubles."""
        if path is None:
            path = os.path.splitext(self.metadata.path_to_file)[0] + PLOT_DATA_EXT
        averages = self.welch_averages(num_obs)
        pairs = np.column_stack((averages, _cumulative_average(averages)))
        pairs.astype(_DTYPE).tofile(path)
        return path

    def batch_welch_averages(
        self, deletion_point: int = 0, min_batch_size: int = MIN_BATCH_SIZE
    ) -> BatchStatistic:
        """Batch the Welch averages that follow `deletion_point`.

        The number of batches is the number of retained averages divided by
        `min_batch_size`, and must be at least 2.

        """
        if min_batch_size <= 1:
            raise ValueError('Batch size must be >= 2')
        averages = self.welch_averages()[max(deletion_point, 0) :]
        num_batches = len(averages) // min_batch_size
        if num_batches <= 1:
            raise ValueError(
                f'{len(averages)} Welch averages cannot form 2 batches of size '
                f'{min_batch_size}'
            )
        return BatchStatistic(num_batches, min_batch_size, 2, values=averages)

    def mser_deletion_point(self, batch_size: int = 5, max_fraction: float = 0.5) -> int:
        """MSER recommended number of Welch observations to delete."""
        point = mser_deletion_point(
            self.welch_averages(), batch_size=batch_size, max_fraction=max_fraction
        )
        log.info(
            '%s: MSER-%d deletion point %d (time %g)',
            self.metadata.data_name,
            batch_size,
            point,
            self.deletion_time(point),
        )
        return point

    def deletion_time(self, deletion_point: int) -> float:
        """Simulated time corresponding to deleting `deletion_point` observations."""
        return deletion_point * self.average_time_per_observation


def write_welch_data(path: str, replications: Iterable[Sequence[float]]) -> List[int]:
    """Write replications of observations in the Welch binary format.

    :returns: The number of observations written for each replication.

    """
    counts = []
    with open(path, 'wb') as data_file:
        for values in replications:
            arr = np.asarray(values, dtype=_DTYPE)
            data_file.write(arr.tobytes())
            counts.append(len(arr))
    return counts


def read_welch_data(path: str, counts: Sequence[int]) -> List[np.ndarray]:
    """Read replications of observations from a Welch binary file."""
    data = np.fromfile(path, dtype=_DTYPE).astype(float)
    if len(data) != sum(counts):
        raise WelchFileError(f'{path} holds {len(data)} observations, expected {sum(counts)}')
    return np.split(data, np.cumsum(counts)[:-1])


def _cumulative_average(values: np.ndarray) -> np.ndarray:
    return np.cumsum(values) / np.arange(1, len(values) + 1)

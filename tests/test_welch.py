import json
import math
import os

import numpy as np
import pytest

from ksl.welch import (
    StatisticType,
    WelchDataArrayCollector,
    WelchDataFileAnalyzer,
    WelchDataFileCollector,
    WelchFileError,
    WelchFileMetaData,
    read_welch_data,
    write_welch_data,
)


def run_replications(collector, replications):
    """Feed each replication's values at times 1, 2, 3, ..."""
    collector.setup()
    for values in replications:
        collector.begin_replication()
        for t, value in enumerate(values, 1):
            collector.collect(float(t), value)
        collector.end_replication()
    collector.clean_up()


@pytest.fixture
def welch_dir(tmpdir):
    return str(tmpdir.join('welch'))


@pytest.fixture
def analyzer(welch_dir):
    collector = WelchDataFileCollector(welch_dir, 'TALLY', 'resp')
    run_replications(collector, [[1, 2, 3, 4], [3, 4, 5, 6, 7], [2, 3, 4, 5]])
    return WelchDataFileAnalyzer(collector.metadata_path)


@pytest.fixture
def biased_analyzer(welch_dir):
    collector = WelchDataFileCollector(welch_dir, StatisticType.TALLY, 'biased')
    run_replications(collector, [[20.0] * 5 + [5.0] * 35] * 3)
    return collector.make_analyzer()


def test_array_collector_tally():
    collector = WelchDataArrayCollector(5, 2, 'TALLY', 'x', batch_size=2)
    run_replications(collector, [[1, 3, 5, 7, 9], [2, 2, 4, 4]])
    assert collector.num_replications == 2
    assert collector.observation_counts == [2, 2]
    assert collector.replication_data(1).tolist() == [2.0, 6.0]
    assert collector.replication_data(2).tolist() == [2.0, 4.0]
    assert collector.welch_averages().tolist() == [2.0, 5.0]
    assert collector.cumulative_welch_averages().tolist() == [2.0, 3.5]
    assert collector.time_between_observations == [2.0, 2.0]
    assert collector.replication_averages == [4.0, 3.0]
    assert collector.last_observation_times == [4.0, 4.0]
    assert math.isnan(collector.data[2, 0])
    with pytest.raises(ValueError):
        collector.replication_data(3)


def test_array_collector_limits():
    collector = WelchDataArrayCollector(2, 1, 'TALLY', 'x')
    run_replications(collector, [[1, 2, 3], [4, 5, 6]])
    assert collector.observation_counts == [2, 0]
    assert collector.data.shape == (2, 1)
    assert collector.replication_data(1).tolist() == [1.0, 2.0]


def test_array_collector_time_persistent():
    collector = WelchDataArrayCollector(10, 1, 'TIME_PERSISTENT', 'level')
    collector.setup()
    collector.begin_replication()
    collector.collect(0.0, 5.0)
    collector.collect(2.5, 1.0)
    collector.collect(3.5, 3.0)
    collector.end_replication()
    # Intervals [0, 1], [1, 2], [2, 3]; the value 5 holds until 2.5.
    assert collector.replication_data(1).tolist() == [5.0, 5.0, 3.0]
    assert collector.time_between_observations == [1.0]


@pytest.mark.parametrize('batch_size', [0.0, -1.0])
def test_collector_invalid_batch_size(batch_size):
    with pytest.raises(ValueError):
        WelchDataArrayCollector(1, 1, 'TALLY', 'x', batch_size)


def test_file_collector_paths(welch_dir, analyzer):
    data_path = os.path.join(welch_dir, 'resp_TALLY.wdf')
    json_path = os.path.join(welch_dir, 'resp_TALLY.json')
    assert os.path.getsize(data_path) == 13 * 8
    with open(json_path) as f:
        metadata = json.load(f)
    assert metadata['data_name'] == 'resp'
    assert metadata['num_replications'] == 3
    assert metadata['num_obs_in_each_replication'] == [4, 5, 4]
    assert metadata['min_num_obs_for_replications'] == 4
    assert metadata['statistic_type'] == 'TALLY'
    assert metadata['end_replication_averages'] == [2.5, 5.0, 3.5]
    assert metadata['time_of_last_obs_in_each_replication'] == [4.0, 5.0, 4.0]
    assert metadata['path_to_file'] == os.path.abspath(data_path)


def test_file_format_is_big_endian(welch_dir, analyzer):
    raw = np.fromfile(os.path.join(welch_dir, 'resp_TALLY.wdf'), dtype='>f8')
    assert raw[:4].tolist() == [1.0, 2.0, 3.0, 4.0]


def test_analyzer_reads(analyzer):
    assert analyzer.num_replications == 3
    assert analyzer.min_num_observations == 4
    assert analyzer.observation_counts == [4, 5, 4]
    assert analyzer.replication_data(2).tolist() == [3.0, 4.0, 5.0, 6.0, 7.0]
    assert analyzer.across_replication_data(2).tolist() == [2.0, 4.0, 3.0]
    assert analyzer.across_replication_average(2) == pytest.approx(3.0)
    assert analyzer.read_observation(5, 2) == 7.0
    assert (analyzer.last_obs_index, analyzer.last_rep_index) == (5, 2)
    assert analyzer.last_data_point == 7.0
    assert analyzer.position(1, 2) == 32
    assert analyzer.average_time_per_observation == 1.0


@pytest.mark.parametrize('obs, rep', [(0, 1), (5, 1), (1, 0), (1, 4)])
def test_analyzer_invalid_indices(analyzer, obs, rep):
    with pytest.raises(ValueError):
        analyzer.read_observation(obs, rep)


def test_analyzer_welch_averages(analyzer):
    assert analyzer.welch_averages().tolist() == [2.0, 3.0, 4.0, 5.0]
    assert analyzer.welch_averages(2).tolist() == [2.0, 3.0]
    assert analyzer.welch_averages(100).tolist() == [2.0, 3.0, 4.0, 5.0]
    assert analyzer.cumulative_welch_averages().tolist() == [2.0, 2.5, 3.0, 3.5]
    with pytest.raises(ValueError):
        analyzer.across_replication_data(5)
    with pytest.raises(ValueError):
        analyzer.welch_averages(0)


def test_analyzer_plot_data(welch_dir, analyzer):
    path = analyzer.write_welch_plot_data()
    assert path == os.path.join(os.path.abspath(welch_dir), 'resp_TALLY.wpdf')
    pairs = np.fromfile(path, dtype='>f8').reshape(-1, 2)
    assert pairs[:, 0].tolist() == [2.0, 3.0, 4.0, 5.0]
    assert pairs[:, 1].tolist() == [2.0, 2.5, 3.0, 3.5]


def test_analyzer_mser(biased_analyzer):
    assert biased_analyzer.mser_deletion_point() == 5
    assert biased_analyzer.deletion_time(5) == 5.0


def test_analyzer_batching(biased_analyzer):
    bs = biased_analyzer.batch_welch_averages(deletion_point=5, min_batch_size=10)
    assert bs.num_batches == 3
    assert bs.average == 5.0
    assert bs.amount_unbatched == 5
    with pytest.raises(ValueError):
        biased_analyzer.batch_welch_averages(deletion_point=25, min_batch_size=10)
    with pytest.raises(ValueError):
        biased_analyzer.batch_welch_averages(min_batch_size=1)


def test_analyzer_size_mismatch(welch_dir, analyzer):
    with open(os.path.join(welch_dir, 'resp_TALLY.wdf'), 'ab') as f:
        f.write(b'\0' * 8)
    with pytest.raises(WelchFileError):
        WelchDataFileAnalyzer(os.path.join(welch_dir, 'resp_TALLY.json'))


@pytest.fixture
def metadata(analyzer):
    return analyzer.metadata


def test_metadata_json_round_trip(metadata):
    restored = WelchFileMetaData.from_json(metadata.to_json())
    assert restored.as_dict() == metadata.as_dict()
    assert restored.statistic_type is StatisticType.TALLY


@pytest.mark.parametrize(
    'field, value',
    [
        ('num_replications', 0),
        ('num_obs_in_each_replication', [4, 5]),
        ('num_obs_in_each_replication', [4, 0, 4]),
        ('time_of_last_obs_in_each_replication', [4.0, 0.0, 4.0]),
        ('end_replication_averages', [2.5, math.nan, 3.5]),
        ('min_num_obs_for_replications', 5),
        ('batch_size', 0.0),
        ('path_to_file', 'resp_TALLY.bin'),
    ],
)
def test_metadata_validate(metadata, field, value):
    setattr(metadata, field, value)
    with pytest.raises(WelchFileError):
        metadata.validate()


def test_metadata_invalid_json():
    with pytest.raises(WelchFileError):
        WelchFileMetaData.from_json('{}')
    with pytest.raises(WelchFileError):
        WelchFileMetaData.from_json('not json')


def test_metadata_read_extension(tmpdir):
    with pytest.raises(WelchFileError):
        WelchFileMetaData.read(str(tmpdir.join('resp.txt')))


def test_write_read_welch_data(tmpdir):
    path = str(tmpdir.join('data.wdf'))
    counts = write_welch_data(path, [[1.0, 2.0], [3.0], [4.0, 5.0, 6.0]])
    assert counts == [2, 1, 3]
    reps = read_welch_data(path, counts)
    assert [r.tolist() for r in reps] == [[1.0, 2.0], [3.0], [4.0, 5.0, 6.0]]
    with pytest.raises(WelchFileError):
        read_welch_data(path, [2, 2])

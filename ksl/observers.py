"""Observers of responses across the replications of an experiment.

An observer is attached to one or more response scopes with
:meth:`ksl.experiment.Experiment.attach_observer` (or the `observers` argument
of :func:`ksl.simulation.simulate`). Responses are rebuilt for every
replication, but observers live for the whole experiment, so they see the
complete sequence of events for each scope they observe:

 - :meth:`~ResponseObserver.begin_experiment` once,
 - then per replication :meth:`~ResponseObserver.begin_replication`, any
   number of :meth:`~ResponseObserver.update` calls (one per observed value)
   and :meth:`~ResponseObserver.end_replication` with the replication's
   value of the response,
 - and finally :meth:`~ResponseObserver.end_experiment`.

"""
from typing import TYPE_CHECKING, Dict, List

import numpy as np

from .welch import WelchDataCollector

if TYPE_CHECKING:
    from .experiment import Experiment


class ResponseObserver:
    """Base class for response observers; all hooks default to no-ops."""

    def begin_experiment(self, scope: str, experiment: 'Experiment') -> None:
        pass

    def begin_replication(self, scope: str, replication: int) -> None:
        pass

    def update(self, scope: str, time: float, value: float) -> None:
        pass

    def end_replication(self, scope: str, replication: int, value: float) -> None:
        pass

    def end_experiment(self, scope: str) -> None:
        pass


class WelchObserver(ResponseObserver):
    """Feed a response's observations to a Welch data collector."""

    def __init__(self, collector: WelchDataCollector) -> None:
        self.collector = collector

    def begin_experiment(self, scope: str, experiment: 'Experiment') -> None:
        self.collector.setup()

    def begin_replication(self, scope: str, replication: int) -> None:
        self.collector.begin_replication()

    def update(self, scope: str, time: float, value: float) -> None:
        self.collector.collect(time, value)

    def end_replication(self, scope: str, replication: int, value: float) -> None:
        self.collector.end_replication()

    def end_experiment(self, scope: str) -> None:
        self.collector.clean_up()


class ReplicationDataCollector(ResponseObserver):
    """Record the value of each observed response for every replication.

    For a tally response the value is its within-replication average, for a
    time-persistent response its time-weighted average, and for a counter its
    final count.

    """

    def __init__(self) -> None:
        self._data: Dict[str, List[float]] = {}
        self._replications: Dict[str, List[int]] = {}

    def begin_experiment(self, scope: str, experiment: 'Experiment') -> None:
        self._data[scope] = []
        self._replications[scope] = []

    def end_replication(self, scope: str, replication: int, value: float) -> None:
        self._data[scope].append(value)
        self._replications[scope].append(replication)

    @property
    def scopes(self) -> List[str]:
        return list(self._data)

    @property
    def num_replications(self) -> int:
        return max((len(values) for values in self._data.values()), default=0)

    def values(self, scope: str) -> np.ndarray:
        return np.array(self._data[scope], dtype=float)

    def replications(self, scope: str) -> List[int]:
        return list(self._replications[scope])

    def as_dict(self) -> Dict[str, List[float]]:
        return {scope: list(values) for scope, values in self._data.items()}

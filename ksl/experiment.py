"""Experiment bookkeeping that outlives a single replication.

An experiment runs a model for a number of independent replications. Each
replication gets a fresh :class:`~ksl.simulation.SimEnvironment` and a fresh
component tree; the :class:`Experiment` is what carries over from one
replication to the next:

 - the :class:`~ksl.tracer.TraceManager`, so all replications trace to the
   same files,
 - the across-replication :class:`~ksl.statistic.Statistic` of every
   response, and the value each replication reported,
 - the response observers, including the Welch data collectors attached when
   `sim.welch.enable` is set.

"""
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Tuple
import math
import os
import re

from .config import ConfigDict, ConfigError
from .observers import ResponseObserver, WelchObserver
from .statistic import Statistic, check_level
from .tracer import TraceManager
from .util import to_floats
from .welch import WelchDataFileCollector

if TYPE_CHECKING:
    from .response import Response
    from .simulation import ResultDict, SimEnvironment

ObserverPairs = Iterable[Tuple[str, ResponseObserver]]


class Experiment:
    """State shared by all replications of an experiment.

    :param dict config: The experiment's configuration dictionary.
    :param observers:
        Optional ``(scope, observer)`` pairs to attach before the experiment
        begins.

    """

    def __init__(
        self, config: ConfigDict, observers: Optional[ObserverPairs] = None
    ) -> None:
        self.config = config

        #: Number given to the first replication.
        self.first_replication: int = config.setdefault('sim.replication.start', 1)
        if self.first_replication < 1:
            raise ConfigError(
                f'sim.replication.start must be >= 1, got {self.first_replication}'
            )

        #: Number of replications to run.
        self.num_replications: int = config.setdefault('sim.replications', 1)
        if self.num_replications < 1:
            raise ConfigError(
                f'sim.replications must be >= 1, got {self.num_replications}'
            )

        self.confidence_level: float = config.setdefault('sim.confidence_level', 0.95)
        check_level(self.confidence_level)

        self.welch_enabled: bool = config.setdefault('sim.welch.enable', False)
        self.welch_dir: str = config.setdefault('sim.welch.dir', 'welch')
        self.welch_batch_size: float = config.setdefault('sim.welch.batch_size', 1.0)
        include_pat: List[str] = config.setdefault('sim.welch.include_pat', ['.*'])
        exclude_pat: List[str] = config.setdefault('sim.welch.exclude_pat', [])
        self._welch_include_re = [re.compile(pat) for pat in include_pat]
        self._welch_exclude_re = [re.compile(pat) for pat in exclude_pat]

        #: The replication currently running, or None between replications.
        self.current_replication: Optional[int] = None
        #: Number of replications that ran to completion.
        self.num_completed = 0
        #: Simulation time summed over completed replications.
        self.elapsed_time: float = 0

        self._begun = False
        self._statistics: Dict[str, Statistic] = {}
        self._values: Dict[str, List[float]] = {}
        self._pending: Dict[str, float] = {}
        self._observers: Dict[str, List[ResponseObserver]] = {}
        self._welch: Dict[str, WelchDataFileCollector] = {}

        #: :class:`TraceManager` instance, bound to each replication in turn.
        self.tracemgr = TraceManager(config)

        if observers is not None:
            for scope, observer in observers:
                self.attach_observer(scope, observer)

    def replications(self) -> Iterator[int]:
        """Iterate the numbers of the replications to run."""
        for i in range(self.num_replications):
            self.current_replication = self.first_replication + i
            yield self.current_replication
        self.current_replication = None

    @property
    def last_replication(self) -> int:
        return self.first_replication + self.num_replications - 1

    @property
    def scopes(self) -> List[str]:
        """Scopes of all responses registered so far."""
        return list(self._statistics)

    def statistic(self, scope: str) -> Statistic:
        """Across-replication statistic of the response at `scope`."""
        return self._statistics[scope]

    def values(self, scope: str) -> List[float]:
        """Value reported by each completed replication for `scope`."""
        return list(self._values[scope])

    def observers(self, scope: str) -> List[ResponseObserver]:
        return self._observers.setdefault(scope, [])

    def attach_observer(self, scope: str, observer: ResponseObserver) -> None:
        """Attach `observer` to the response at `scope`.

        Attaching the same observer twice has no effect. An observer attached
        after the experiment began is immediately given
        :meth:`~ksl.observers.ResponseObserver.begin_experiment`.

        """
        observers = self.observers(scope)
        if observer in observers:
            return
        observers.append(observer)
        if self._begun:
            observer.begin_experiment(scope, self)

    def detach_observer(self, scope: str, observer: ResponseObserver) -> None:
        try:
            self._observers[scope].remove(observer)
        except (KeyError, ValueError):
            raise ValueError(f'{observer!r} is not observing {scope}') from None

    def register_response(self, response: 'Response') -> List[ResponseObserver]:
        """Register a newly created response.

        Responses are created anew in every replication; only the first
        registration of a scope sets up its statistic and Welch collection.

        :returns: The live list of observers of the response's scope.

        """
        scope = response.scope
        if scope not in self._statistics:
            stat = Statistic(name=scope)
            values: List[float] = []
            for _ in range(self.num_completed):
                stat.collect(math.nan)
                values.append(math.nan)
            self._statistics[scope] = stat
            self._values[scope] = values
            statistic_type = response.welch_statistic_type
            if statistic_type is not None and self._is_welch_scope(scope):
                collector = WelchDataFileCollector(
                    self.welch_dir, statistic_type, scope, self.welch_batch_size
                )
                self._welch[scope] = collector
                self.attach_observer(scope, WelchObserver(collector))
        return self.observers(scope)

    def _is_welch_scope(self, scope: str) -> bool:
        return (
            self.welch_enabled
            and any(r.match(scope) for r in self._welch_include_re)
            and not any(r.match(scope) for r in self._welch_exclude_re)
        )

    def begin(self) -> None:
        if self._begun:
            return
        self._begun = True
        for scope, observers in self._observers.items():
            for observer in list(observers):
                observer.begin_experiment(scope, self)

    def begin_replication(self, env: 'SimEnvironment') -> None:
        self.current_replication = env.replication
        self._pending.clear()
        for scope, observers in self._observers.items():
            for observer in list(observers):
                observer.begin_replication(scope, env.replication)

    def record(self, scope: str, value: float) -> None:
        """Record the current replication's value of the response at `scope`."""
        if scope not in self._statistics:
            raise KeyError(f'Response {scope} is not registered')
        self._pending[scope] = value

    def end_replication(self, env: 'SimEnvironment') -> None:
        """Fold the recorded values into the across-replication statistics.

        Responses that recorded no value for this replication contribute a
        missing value (NaN).

        """
        for scope, stat in self._statistics.items():
            value = self._pending.pop(scope, math.nan)
            stat.collect(value)
            self._values[scope].append(value)
        for scope, observers in self._observers.items():
            value = self._values[scope][-1] if scope in self._values else math.nan
            for observer in list(observers):
                observer.end_replication(scope, env.replication, value)
        self.num_completed += 1
        self.elapsed_time += env.now
        self.tracemgr.flush()

    def end(self) -> None:
        for scope, observers in self._observers.items():
            for observer in list(observers):
                observer.end_experiment(scope)

    def get_result(self, result: 'ResultDict') -> None:
        result['sim.replications'] = self.num_completed
        responses: Dict[str, Dict[str, Any]] = {}
        for scope, stat in self._statistics.items():
            summary: Dict[str, Any] = {
                key: value if isinstance(value, int) else float(value)
                for key, value in stat.as_dict(self.confidence_level).items()
            }
            summary['values'] = to_floats(self._values[scope])
            responses[scope] = summary
        result['sim.responses'] = responses
        result['sim.welch'] = {
            scope: os.path.relpath(collector.metadata_path)
            for scope, collector in self._welch.items()
        }

    def close(self) -> None:
        for collector in self._welch.values():
            collector.close()
        self.tracemgr.close()

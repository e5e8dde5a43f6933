"""Response variables: the outputs of a model.

A response is a :class:`~ksl.component.Component` whose value is observed
during a replication. Three kinds are provided:

 - :class:`Response` for tally (observation-based) data, e.g. the time each
   customer waits. The replication value is the average of the observations.
 - :class:`TWResponse` for time-persistent data, e.g. the number of customers
   in a queue. The replication value is the time-weighted average.
 - :class:`Counter` for counts. The replication value is the final count.

Every response registers with the experiment as it is created. Observers
attached to the response's scope are notified of each new value, and the
replication value is reported to the experiment when the replication ends.
Statistics collected before the end of the warm-up period are discarded.

"""
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple
import math

from .component import Component
from .statistic import Statistic, WeightedStatistic
from .welch import StatisticType

if TYPE_CHECKING:
    from .observers import ResponseObserver

Domain = Tuple[float, float]

_REAL_LINE: Domain = (-math.inf, math.inf)


class Response(Component):
    """Tally response.

    :param Component parent: Parent component.
    :param str name: Name of the response; the last element of its scope.
    :param float initial_value: Value before any observation.
    :param allowed_domain:
        ``(lower, upper)`` bounds for observed values. Assigning a value
        outside the domain raises :class:`ValueError`.

    """

    base_name = 'response'

    #: Kind of Welch data collected for the response, or None for no
    #: collection.
    welch_statistic_type: Optional[StatisticType] = StatisticType.TALLY

    def __init__(
        self,
        parent: Component,
        name: Optional[str] = None,
        initial_value: float = 0.0,
        allowed_domain: Domain = _REAL_LINE,
        index: Optional[int] = None,
    ) -> None:
        super().__init__(parent, name=name, index=index)
        lower, upper = allowed_domain
        if not lower < upper:
            raise ValueError(f'{self.scope}: invalid domain {allowed_domain}')
        if not lower <= initial_value <= upper:
            raise ValueError(
                f'{self.scope}: initial value {initial_value} outside of '
                f'domain {allowed_domain}'
            )
        self.allowed_domain = (lower, upper)
        self.initial_value = initial_value
        self.previous_value = math.nan
        self.time_of_change = self.env.now
        self._value = initial_value
        self._probe_callbacks: List[Callable[[Any], None]] = []
        self.statistic = self._make_statistic()
        self._observers: List['ResponseObserver'] = (
            self.env.experiment.register_response(self)
        )

    def _make_statistic(self) -> Any:
        return Statistic(name=self.scope)

    @property
    def value(self) -> float:
        """The current value; assigning records an observation."""
        return self._value

    @value.setter
    def value(self, value: float) -> None:
        lower, upper = self.allowed_domain
        if not lower <= value <= upper:
            raise ValueError(
                f'{self.scope}: value {value} outside of domain {self.allowed_domain}'
            )
        self._collect(value)
        self.previous_value = self._value
        self._value = value
        self.time_of_change = self.env.now
        self._notify(value)

    def _collect(self, value: float) -> None:
        self.statistic.collect(value)

    def _notify(self, value: float) -> None:
        now = self.env.now
        for observer in list(self._observers):
            observer.update(self.scope, now, value)
        for callback in self._probe_callbacks:
            callback(value)

    def replication_value(self) -> float:
        """The value reported to the experiment for this replication."""
        if self.statistic.count == 0:
            return math.nan
        return self.statistic.average

    def warm_up_hook(self) -> None:
        self.statistic.reset()

    def post_sim_hook(self) -> None:
        self.env.experiment.record(self.scope, self.replication_value())


class TWResponse(Response):
    """Time-persistent response.

    The value in effect over an interval is weighted by the interval's
    length. The initial value is in effect from the start of the replication
    (and from the end of the warm-up period) until the first change.

    """

    welch_statistic_type = StatisticType.TIME_PERSISTENT

    def _make_statistic(self) -> Any:
        return WeightedStatistic(name=self.scope)

    def _collect(self, value: float) -> None:
        self._weigh_current(self.env.now)

    def _weigh_current(self, now: float) -> None:
        elapsed = now - self.time_of_change
        if elapsed > 0:
            self.statistic.collect(self._value, elapsed)

    def elab_hook(self) -> None:
        self._notify(self._value)

    def replication_value(self) -> float:
        return self.statistic.weighted_average

    def warm_up_hook(self) -> None:
        self.statistic.reset()
        self.time_of_change = self.env.now

    def post_sim_hook(self) -> None:
        now = self.env.now
        self._weigh_current(now)
        self.time_of_change = now
        super().post_sim_hook()


class Counter(Response):
    """Count of events.

    :param Component parent: Parent component.
    :param str name: Name of the counter.
    :param int initial_value: Starting count.
    :param int count_limit:
        When the count reaches this limit, the replication is stopped.

    """

    base_name = 'counter'
    welch_statistic_type = None

    def __init__(
        self,
        parent: Component,
        name: Optional[str] = None,
        initial_value: int = 0,
        count_limit: Optional[int] = None,
        index: Optional[int] = None,
    ) -> None:
        if count_limit is not None and count_limit <= initial_value:
            raise ValueError(
                f'Count limit {count_limit} must exceed initial value {initial_value}'
            )
        super().__init__(
            parent, name, initial_value, allowed_domain=(0, math.inf), index=index
        )
        self.count_limit = count_limit
        self.limit_reached = False

    @property
    def count(self) -> int:
        return self._value

    def increment(self, n: int = 1) -> None:
        if n < 0:
            raise ValueError(f'{self.scope}: cannot increment by {n}')
        self.value = self._value + n
        if (
            self.count_limit is not None
            and not self.limit_reached
            and self._value >= self.count_limit
        ):
            self.limit_reached = True
            self.debug(f'count limit {self.count_limit} reached')
            self.env.stop()

    def replication_value(self) -> float:
        return float(self._value)

    def warm_up_hook(self) -> None:
        super().warm_up_hook()
        self.previous_value = self._value
        self._value = 0
        self.time_of_change = self.env.now
        self._notify(self._value)

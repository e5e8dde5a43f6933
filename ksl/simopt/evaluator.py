"""Evaluation of candidate solutions by simulation.

The :class:`Evaluator` turns :class:`EvaluationRequest` objects (an input
point and a number of replications) into :class:`Solution` objects. Requests
for the same point are merged, replications already held in a
:class:`MemorySolutionCache` are reused, and only the missing replications are
simulated. Additional replications of a point continue its replication
numbering, so the random number streams of the new replications are
independent of the cached ones.

The simulations themselves are run by an oracle with a
``run_simulations(requests)`` method returning, for each request, a mapping of
response names to :class:`EstimatedResponse`. :class:`SimulationOracle` is the
oracle for models run with :func:`ksl.simulation.simulate`.

"""
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
)
from collections import deque
import copy
import logging
import math
import os

from ..config import ConfigDict, apply_inputs
from ..simulation import SimEnvironment, simulate, simulate_many
from ..statistic import Statistic, check_level, t_quantile
from ..util import is_missing
from .constraints import Feasibility
from .problem import InputMap, OptimizationType, ProblemDefinition

log = logging.getLogger(__name__)

ResponseMap = Mapping[str, 'EstimatedResponse']


class ReplicationBudgetExceeded(Exception):
    """The evaluator's replication budget would be exceeded."""


class EstimatedResponse:
    """Estimate of a response's expected value from independent replications.

    :param str name: Name of the response.
    :param float average: Sample average.
    :param float variance: Sample variance; NaN when `count` is 1.
    :param int count: Number of replications.

    """

    def __init__(self, name: str, average: float, variance: float, count: int) -> None:
        if not name or not name.strip():
            raise ValueError('The response name must not be blank')
        if not math.isfinite(average):
            raise ValueError(f'{name}: the average must be finite, got {average}')
        if count < 1:
            raise ValueError(f'{name}: the count must be >= 1, got {count}')
        if count == 1:
            if not math.isnan(variance):
                raise ValueError(f'{name}: the variance of a single value must be NaN')
        elif not variance >= 0.0:
            raise ValueError(f'{name}: the variance must be >= 0, got {variance}')
        self.name = name
        self.average = float(average)
        self.variance = float(variance)
        self.count = int(count)

    @classmethod
    def from_statistic(cls, name: str, stat: Statistic) -> 'EstimatedResponse':
        variance = math.nan if stat.count == 1 else stat.variance
        return cls(name, stat.average, variance, stat.count)

    @classmethod
    def from_values(cls, name: str, values: Sequence[float]) -> 'EstimatedResponse':
        return cls.from_statistic(name, Statistic(values=values))

    @property
    def standard_deviation(self) -> float:
        return math.sqrt(self.variance)

    @property
    def standard_error(self) -> float:
        return self.standard_deviation / math.sqrt(self.count)

    def half_width(self, level: float = 0.95) -> float:
        check_level(level)
        if self.count <= 1:
            return math.nan
        return t_quantile(level, self.count - 1) * self.standard_error

    def confidence_interval(self, level: float = 0.95) -> Tuple[float, float]:
        check_level(level)
        if self.count <= 1:
            return -math.inf, math.inf
        hw = self.half_width(level)
        return self.average - hw, self.average + hw

    def merge(self, other: 'EstimatedResponse') -> 'EstimatedResponse':
        """Estimate from the observations of both estimates."""
        if self.name != other.name:
            raise ValueError(f'Cannot merge {self.name} with {other.name}')
        n1, n2 = self.count, other.count
        n = n1 + n2
        delta = other.average - self.average
        average = self.average + delta * n2 / n
        m2 = self._sum_of_squares() + other._sum_of_squares() + delta * delta * n1 * n2 / n
        return EstimatedResponse(self.name, average, m2 / (n - 1), n)

    def _sum_of_squares(self) -> float:
        return 0.0 if self.count == 1 else self.variance * (self.count - 1)

    def difference_confidence_interval(
        self, other: 'EstimatedResponse', level: float = 0.95
    ) -> Tuple[float, float]:
        """Confidence interval of ``self.average - other.average``.

        Welch's unequal-variance interval; both estimates need at least two
        replications.

        """
        check_level(level)
        for estimate in (self, other):
            if estimate.count < 2:
                raise ValueError(f'{estimate.name}: at least 2 replications are needed')
        d = self.average - other.average
        v1 = self.variance / self.count
        v2 = other.variance / other.count
        v = v1 + v2
        if v == 0.0:
            return d, d
        dof = v * v / (v1 * v1 / (self.count - 1) + v2 * v2 / (other.count - 1))
        hw = t_quantile(level, max(dof, 1.0)) * math.sqrt(v)
        return d - hw, d + hw

    def as_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'average': self.average,
            'variance': self.variance,
            'count': self.count,
        }

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, EstimatedResponse):
            return NotImplemented
        return (
            self.name == other.name
            and self.average == other.average
            and self.count == other.count
            and (self.count == 1 or self.variance == other.variance)
        )

    def __repr__(self) -> str:
        return (
            f'EstimatedResponse({self.name!r}, average={self.average}, '
            f'variance={self.variance}, count={self.count})'
        )


def compare_estimated_responses(
    a: EstimatedResponse,
    b: EstimatedResponse,
    level: float = 0.95,
    indifference_zone: float = 0.0,
) -> int:
    """Compare the means of two estimates.

    :returns:
        -1 when `a` is smaller than `b` with confidence `level` beyond the
        indifference zone, 1 when it is larger, and 0 when they cannot be
        told apart.

    """
    check_level(level)
    if indifference_zone < 0.0:
        raise ValueError(f'Indifference zone must be >= 0, got {indifference_zone}')
    d = a.average - b.average
    if a.count == 1 and b.count == 1:
        lower = upper = d
    elif a.count == 1 or b.count == 1:
        hw = b.half_width(level) if a.count == 1 else a.half_width(level)
        lower, upper = d - hw, d + hw
    else:
        lower, upper = a.difference_confidence_interval(b, level)
    if upper + indifference_zone < 0.0:
        return -1
    if lower - indifference_zone > 0.0:
        return 1
    return 0


class Solution:
    """Estimated performance of the model at an input point.

    :param InputMap input_map: The evaluated point.
    :param EstimatedResponse estimated_objective: Estimate of the objective.
    :param responses: Estimates of the problem's other responses.
    :param int evaluation_number: Evaluator iteration that produced it.
    :param float penalty:
        Response constraint penalty; computed from the problem when None.
    :param int num_replications:
        Replications simulated for the point; the objective's count when
        None. Replications where a response was not observed still count.

    """

    def __init__(
        self,
        input_map: InputMap,
        estimated_objective: EstimatedResponse,
        responses: ResponseMap,
        evaluation_number: int,
        penalty: Optional[float] = None,
        num_replications: Optional[int] = None,
    ) -> None:
        if evaluation_number < 1:
            raise ValueError(f'evaluation_number must be >= 1, got {evaluation_number}')
        if num_replications is None:
            num_replications = estimated_objective.count
        elif num_replications < estimated_objective.count:
            raise ValueError(
                f'num_replications must be >= {estimated_objective.count}, '
                f'got {num_replications}'
            )
        self.input_map = input_map
        self.estimated_objective = estimated_objective
        self.responses: Dict[str, EstimatedResponse] = dict(responses)
        self.evaluation_number = evaluation_number
        if penalty is None:
            penalty = self.problem.response_penalty(
                self.response_averages(), evaluation_number
            )
        self.penalty = penalty
        self.num_replications = num_replications

    @property
    def problem(self) -> ProblemDefinition:
        return self.input_map.problem

    @property
    def replications(self) -> int:
        return self.num_replications

    @property
    def objective(self) -> float:
        return self.estimated_objective.average

    @property
    def penalized_objective(self) -> float:
        return self.objective + self.problem.optimization_type.indicator * self.penalty

    @property
    def is_input_feasible(self) -> bool:
        return self.input_map.input_feasible

    def response_averages(self) -> Dict[str, float]:
        return {name: r.average for name, r in self.responses.items()}

    def is_response_feasible(self, level: float = 0.95) -> bool:
        """True when every response constraint tests FEASIBLE at `level`."""
        return all(
            c.test_feasibility(self.responses[c.name], level) is Feasibility.FEASIBLE
            for c in self.problem.response_constraints
        )

    def merge(self, other: 'Solution') -> 'Solution':
        """Solution pooling the replications of two solutions of one point."""
        if self.input_map != other.input_map:
            raise ValueError('Only solutions with the same inputs can be merged')
        if set(self.responses) != set(other.responses):
            raise ValueError('Cannot merge solutions with different responses')
        return Solution(
            self.input_map,
            self.estimated_objective.merge(other.estimated_objective),
            {
                name: response.merge(other.responses[name])
                for name, response in self.responses.items()
            },
            max(self.evaluation_number, other.evaluation_number),
            num_replications=self.replications + other.replications,
        )

    def __repr__(self) -> str:
        return (
            f'Solution({dict(self.input_map)}, objective={self.objective}, '
            f'penalized={self.penalized_objective}, n={self.replications})'
        )


class EvaluationRequest:
    """Request to evaluate a point with a number of replications.

    :param int starting_replication:
        Number of the first replication to run, so that additional
        replications of a point continue its random number streams.

    """

    def __init__(
        self,
        input_map: InputMap,
        num_replications: int = 1,
        starting_replication: int = 1,
    ) -> None:
        if num_replications < 1:
            raise ValueError(f'num_replications must be >= 1, got {num_replications}')
        if starting_replication < 1:
            raise ValueError(
                f'starting_replication must be >= 1, got {starting_replication}'
            )
        self.input_map = input_map
        self.num_replications = num_replications
        self.starting_replication = starting_replication

    def __repr__(self) -> str:
        return (
            f'EvaluationRequest({dict(self.input_map)}, n={self.num_replications}, '
            f'start={self.starting_replication})'
        )


class MemorySolutionCache:
    """In-memory cache of solutions keyed by input map.

    Input infeasible solutions are not cached unless `allow_infeasible` is
    set. When the cache is full, the first input infeasible solution is
    evicted, else the first one with a non-finite penalized objective, else
    the worst solution.

    """

    def __init__(self, capacity: int = 1000, allow_infeasible: bool = False) -> None:
        if capacity < 2:
            raise ValueError(f'The capacity must be >= 2, got {capacity}')
        self.capacity = capacity
        self.allow_infeasible = allow_infeasible
        self._solutions: Dict[InputMap, Solution] = {}

    def __len__(self) -> int:
        return len(self._solutions)

    def __contains__(self, input_map: object) -> bool:
        return input_map in self._solutions

    def __iter__(self) -> Iterator[InputMap]:
        return iter(self._solutions)

    def __getitem__(self, input_map: InputMap) -> Solution:
        return self._solutions[input_map]

    def get(self, input_map: InputMap) -> Optional[Solution]:
        return self._solutions.get(input_map)

    def solutions(self) -> List[Solution]:
        return list(self._solutions.values())

    def put(self, solution: Solution) -> bool:
        """Cache `solution`; False when it is rejected as input infeasible."""
        input_map = solution.input_map
        if not solution.is_input_feasible and not self.allow_infeasible:
            return False
        if input_map not in self._solutions and len(self._solutions) >= self.capacity:
            evicted = self.find_eviction_candidate()
            log.debug('Evicting %s from the solution cache', evicted)
            del self._solutions[evicted]
        self._solutions[input_map] = solution
        return True

    def remove(self, input_map: InputMap) -> Optional[Solution]:
        return self._solutions.pop(input_map, None)

    def clear(self) -> None:
        self._solutions.clear()

    def find_eviction_candidate(self) -> InputMap:
        for input_map, solution in self._solutions.items():
            if not solution.is_input_feasible:
                return input_map
        for input_map, solution in self._solutions.items():
            if not math.isfinite(solution.penalized_objective):
                return input_map
        worst, worst_value = None, -math.inf
        for input_map, solution in self._solutions.items():
            indicator = solution.problem.optimization_type.indicator
            value = indicator * solution.penalized_objective
            if worst is None or value > worst_value:
                worst, worst_value = input_map, value
        assert worst is not None
        return worst

    def retrieve(self, input_maps: Sequence[InputMap]) -> Dict[InputMap, Solution]:
        return {im: self._solutions[im] for im in input_maps if im in self._solutions}


def penalized_objective_comparator(
    precision: float = 1e-7,
) -> Callable[[Solution, Solution], int]:
    """Compare solutions by penalized objective, equal within `precision`."""
    if precision <= 0.0:
        raise ValueError(f'precision must be > 0, got {precision}')

    def compare(first: Solution, second: Solution) -> int:
        d = first.penalized_objective - second.penalized_objective
        if d < -precision:
            return -1
        if d > precision:
            return 1
        return 0

    return compare


class SolutionChecker:
    """Detect when a search stops improving.

    The last `threshold` captured solutions are kept; the search has stalled
    when all of them compare equal to the latest.

    """

    def __init__(self, threshold: int = 5) -> None:
        if threshold < 1:
            raise ValueError(f'threshold must be >= 1, got {threshold}')
        self.threshold = threshold
        self._solutions: deque = deque(maxlen=threshold)

    def capture(self, solution: Solution) -> None:
        self._solutions.append(solution)

    def clear(self) -> None:
        self._solutions.clear()

    @property
    def last_solutions(self) -> List[Solution]:
        return list(self._solutions)

    def check(
        self, compare: Optional[Callable[[Solution, Solution], int]] = None
    ) -> bool:
        """True when there was no improvement over the last solutions."""
        if len(self._solutions) < self.threshold:
            return False
        if compare is None:
            compare = penalized_objective_comparator()
        last = self._solutions[-1]
        return all(compare(last, solution) == 0 for solution in self._solutions)


class Evaluator:
    """Evaluate requests using a cache and a simulation oracle.

    :param ProblemDefinition problem: The problem being solved.
    :param simulator:
        Oracle with ``run_simulations(requests) -> List[ResponseMap]``.
    :param MemorySolutionCache cache: Optional solution cache.
    :param int max_replications:
        Budget of simulated replications; None for no limit.

    """

    def __init__(
        self,
        problem: ProblemDefinition,
        simulator: Any,
        cache: Optional[MemorySolutionCache] = None,
        max_replications: Optional[int] = None,
    ) -> None:
        if max_replications is not None and max_replications < 1:
            raise ValueError(f'max_replications must be >= 1, got {max_replications}')
        self.problem = problem
        self.simulator = simulator
        self.cache = cache
        self.max_replications = max_replications
        self.reset_counts()

    def reset_counts(self) -> None:
        self.total_evaluations = 0
        self.total_oracle_evaluations = 0
        self.total_cached_evaluations = 0
        self.total_requests = 0
        self.total_duplicates = 0
        # Replications requested, after merging duplicates.
        self.total_replications = 0
        self.total_oracle_replications = 0
        self.total_cached_replications = 0

    @property
    def remaining_replications(self) -> Optional[int]:
        if self.max_replications is None:
            return None
        return self.max_replications - self.total_oracle_replications

    def evaluate(self, requests: Sequence[EvaluationRequest]) -> List[Solution]:
        """Evaluate `requests`, returning their solutions in request order."""
        self.total_evaluations += 1
        self.total_requests += len(requests)

        keys: List[InputMap] = []
        unique: Dict[InputMap, int] = {}
        for request in requests:
            input_map = self.problem.to_input_map(request.input_map)
            keys.append(input_map)
            if input_map in unique:
                self.total_duplicates += 1
                unique[input_map] = max(unique[input_map], request.num_replications)
            else:
                unique[input_map] = request.num_replications
        self.total_replications += sum(unique.values())

        solutions: Dict[InputMap, Solution] = {}
        to_simulate: List[EvaluationRequest] = []
        for input_map, num_replications in unique.items():
            cached = None if self.cache is None else self.cache.get(input_map)
            if cached is None:
                to_simulate.append(EvaluationRequest(input_map, num_replications))
                continue
            self.total_cached_evaluations += 1
            self.total_cached_replications += min(cached.replications, num_replications)
            solutions[input_map] = cached
            if cached.replications < num_replications:
                to_simulate.append(
                    EvaluationRequest(
                        input_map,
                        num_replications - cached.replications,
                        starting_replication=cached.replications + 1,
                    )
                )

        if to_simulate:
            self._simulate(to_simulate, solutions)
        return [solutions[key] for key in keys]

    def _simulate(
        self, requests: List[EvaluationRequest], solutions: Dict[InputMap, Solution]
    ) -> None:
        needed = sum(request.num_replications for request in requests)
        remaining = self.remaining_replications
        if remaining is not None and needed > remaining:
            raise ReplicationBudgetExceeded(
                f'{needed} replications requested, {remaining} remain in the budget'
            )
        self.total_oracle_evaluations += len(requests)
        self.total_oracle_replications += needed
        log.debug(
            'Evaluation %d: simulating %d points, %d replications',
            self.total_evaluations,
            len(requests),
            needed,
        )
        results = self.simulator.run_simulations(requests)
        if len(results) != len(requests):
            raise RuntimeError(
                f'Simulator returned {len(results)} results for {len(requests)} requests'
            )
        for request, responses in zip(requests, results):
            solution = self._make_solution(request, responses)
            previous = solutions.get(request.input_map)
            if previous is not None:
                solution = previous.merge(solution)
            solutions[request.input_map] = solution
            if self.cache is not None:
                self.cache.put(solution)

    def _make_solution(
        self, request: EvaluationRequest, responses: ResponseMap
    ) -> Solution:
        problem = self.problem
        names = [problem.objective_response_name] + problem.response_names
        missing = [name for name in names if name not in responses]
        if missing:
            raise ValueError(f'The simulation did not estimate responses {missing}')
        return Solution(
            request.input_map,
            responses[problem.objective_response_name],
            {name: responses[name] for name in problem.response_names},
            self.total_evaluations,
            num_replications=request.num_replications,
        )


class SimulationOracle:
    """Estimate responses by running experiments of a model.

    Input names of the problem are config keys (resolved with
    :func:`~ksl.config.fuzzy_lookup`). Each request becomes an experiment of
    `num_replications` replications, starting at the request's replication
    number.

    :param dict base_config: Configuration shared by all experiments.
    :param top_type: The model's top-level Component subclass.
    :param env_type: :class:`SimEnvironment` subclass.
    :param int jobs:
        When given, multiple requests are run in parallel processes with
        :func:`~ksl.simulation.simulate_many`.
    :param response_scopes:
        Mapping of problem response names to response scopes in the model;
        names map to themselves by default.

    """

    def __init__(
        self,
        base_config: ConfigDict,
        top_type: Type[Any],
        env_type: Type[SimEnvironment] = SimEnvironment,
        jobs: Optional[int] = None,
        response_scopes: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.base_config = base_config
        self.top_type = top_type
        self.env_type = env_type
        self.jobs = jobs
        self.response_scopes = dict(response_scopes or {})
        self.num_runs = 0

    def make_config(self, request: EvaluationRequest) -> ConfigDict:
        config = copy.deepcopy(self.base_config)
        apply_inputs(config, request.input_map)
        config['sim.replications'] = request.num_replications
        config['sim.replication.start'] = request.starting_replication
        return config

    def run_simulations(
        self, requests: Sequence[EvaluationRequest]
    ) -> List[Dict[str, EstimatedResponse]]:
        configs = [self.make_config(request) for request in requests]
        if self.jobs is None or len(configs) == 1:
            results = [
                simulate(config, self.top_type, self.env_type) for config in configs
            ]
        else:
            workspace = self.base_config.get('sim.workspace', os.curdir)
            for index, config in enumerate(configs):
                config['meta.sim.workspace'] = os.path.join(
                    workspace, str(self.num_runs + index)
                )
            results = simulate_many(configs, self.top_type, self.env_type, self.jobs)
            for result in results:
                if result['sim.exception'] is not None:
                    raise RuntimeError(f'Simulation failed: {result["sim.exception"]}')
        self.num_runs += len(configs)
        return [self._estimate(result, request) for result, request in zip(results, requests)]

    def _estimate(
        self, result: Dict[str, Any], request: EvaluationRequest
    ) -> Dict[str, EstimatedResponse]:
        problem = request.input_map.problem
        estimates = {}
        for name in [problem.objective_response_name] + problem.response_names:
            scope = self.response_scopes.get(name, name)
            try:
                summary = result['sim.responses'][scope]
            except KeyError:
                raise ValueError(f'The model has no response {scope}') from None
            values = [v for v in summary['values'] if not is_missing(v)]
            if not values:
                raise ValueError(f'No replication observed response {scope}')
            estimates[name] = EstimatedResponse.from_values(name, values)
        return estimates

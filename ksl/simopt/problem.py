"""Definition of simulation optimization problems.

A :class:`ProblemDefinition` names the response to optimize, the inputs the
search may change (each an :class:`InputDefinition` with bounds and a
granularity), and the constraints a solution must satisfy:

 - linear and functional constraints on the inputs, which are checked
   deterministically, and
 - response constraints on the expected value of other responses, which are
   estimated by simulation and enforced through penalty functions.

Candidate points are :class:`InputMap` instances: immutable, hashable
mappings of input names to values already rounded to the inputs'
granularities.

"""
from collections.abc import Mapping as MappingABC
from enum import Enum
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
    Union,
)
import logging
import math

import numpy as np

from ..util import check_names
from .constraints import (
    FunctionalConstraint,
    InequalityType,
    InputValues,
    LinearConstraint,
    ResponseConstraint,
)
from .penalty import DynamicPenalty, PenaltyFunction
from .starting import MidpointStartingPoint, StartingPointGenerator

__all__ = [
    'InequalityType',
    'InputDefinition',
    'InputMap',
    'OptimizationType',
    'ProblemDefinition',
]

log = logging.getLogger(__name__)


class OptimizationType(Enum):
    MINIMIZE = 'MINIMIZE'
    MAXIMIZE = 'MAXIMIZE'

    @property
    def indicator(self) -> float:
        """+1 for minimization, -1 for maximization."""
        return 1.0 if self is OptimizationType.MINIMIZE else -1.0


class InputDefinition:
    """An input variable: its name, range, and granularity.

    :param float granularity:
        Values of the input are multiples of the granularity; 0 for a
        continuous input.

    """

    def __init__(
        self,
        name: str,
        lower_bound: float = -math.inf,
        upper_bound: float = math.inf,
        granularity: float = 0.0,
    ) -> None:
        if not name or not name.strip():
            raise ValueError('The input name must not be blank')
        if not lower_bound < upper_bound:
            raise ValueError(
                f'Input {name}: lower bound {lower_bound} must be less than the '
                f'upper bound {upper_bound}'
            )
        if not granularity >= 0.0:
            raise ValueError(f'Input {name}: granularity must be >= 0, got {granularity}')
        self.name = name
        self.lower_bound = float(lower_bound)
        self.upper_bound = float(upper_bound)
        self.granularity = float(granularity)

    @property
    def interval_width(self) -> float:
        return self.upper_bound - self.lower_bound

    @property
    def midpoint(self) -> float:
        return (self.lower_bound + self.upper_bound) / 2.0

    @property
    def is_bounded(self) -> bool:
        return math.isfinite(self.lower_bound) and math.isfinite(self.upper_bound)

    def contains(self, x: float) -> bool:
        return self.lower_bound <= x <= self.upper_bound

    def round_to_granularity(self, x: float) -> float:
        """Round `x` to the nearest multiple of the granularity within bounds."""
        if self.granularity > 0.0:
            x = round(x / self.granularity) * self.granularity
        return min(max(x, self.lower_bound), self.upper_bound)

    def random_value(self, rng: np.random.Generator) -> float:
        if not self.is_bounded:
            raise ValueError(f'Cannot sample unbounded input {self.name}')
        return self.round_to_granularity(rng.uniform(self.lower_bound, self.upper_bound))

    def __repr__(self) -> str:
        return (
            f'InputDefinition({self.name!r}, {self.lower_bound}, {self.upper_bound}, '
            f'granularity={self.granularity})'
        )


class InputMap(MappingABC):
    """Immutable mapping of a problem's input names to values.

    Values are rounded to the inputs' granularities on construction. Two
    input maps of the same problem with equal values are equal and hash
    alike, so input maps can key caches of solutions.

    """

    def __init__(self, problem: 'ProblemDefinition', values: InputValues) -> None:
        problem.validate_input_map(values)
        self.problem = problem
        self._values: Dict[str, float] = problem.round_to_granularity(values)
        self._hash = hash((problem.problem_name, tuple(self._values.items())))

    def __getitem__(self, name: str) -> float:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, InputMap):
            return NotImplemented
        return (
            self.problem.problem_name == other.problem.problem_name
            and self._values == other._values
        )

    @property
    def input_feasible(self) -> bool:
        return self.problem.is_input_feasible(self)

    def as_array(self) -> np.ndarray:
        return np.array([self._values[name] for name in self.problem.input_names])

    def __repr__(self) -> str:
        return f'InputMap({self._values})'


class ProblemDefinition:
    """A simulation optimization problem.

    :param str problem_name: Name of the problem.
    :param str model_identifier: Identifies the model that is simulated.
    :param str objective_response_name: Name of the response to optimize.
    :param input_names: Names of the inputs; defined with
        :meth:`input_variable`. Undefined inputs are unbounded and continuous.
    :param response_names: Names of responses that may be constrained.
    :param optimization_type: MINIMIZE or MAXIMIZE.
    :param float indifference_zone:
        Differences in the objective smaller than this are not considered
        meaningful.

    """

    def __init__(
        self,
        problem_name: str,
        model_identifier: str,
        objective_response_name: str,
        input_names: Sequence[str],
        response_names: Sequence[str] = (),
        optimization_type: OptimizationType = OptimizationType.MINIMIZE,
        indifference_zone: float = 0.0,
    ) -> None:
        for what, name in [
            ('problem', problem_name),
            ('model', model_identifier),
            ('objective response', objective_response_name),
        ]:
            if not name or not name.strip():
                raise ValueError(f'The {what} name must not be blank')
        if not input_names:
            raise ValueError('A problem needs at least one input')
        check_names(input_names, 'input')
        check_names(response_names, 'response')
        if objective_response_name in response_names:
            raise ValueError(
                f'The objective response {objective_response_name} cannot also be '
                f'a constrained response'
            )
        if indifference_zone < 0.0:
            raise ValueError(f'Indifference zone must be >= 0, got {indifference_zone}')
        self.problem_name = problem_name
        self.model_identifier = model_identifier
        self.objective_response_name = objective_response_name
        self.optimization_type = OptimizationType(optimization_type)
        self.indifference_zone = float(indifference_zone)
        self._inputs: Dict[str, InputDefinition] = {
            name: InputDefinition(name) for name in input_names
        }
        self._response_names = list(response_names)
        self._linear: List[LinearConstraint] = []
        self._functional: List[FunctionalConstraint] = []
        self._response: Dict[str, ResponseConstraint] = {}
        #: Penalty for response constraints without their own penalty function.
        self.penalty_function: PenaltyFunction = DynamicPenalty()

    @property
    def input_names(self) -> List[str]:
        return list(self._inputs)

    @property
    def response_names(self) -> List[str]:
        return list(self._response_names)

    @property
    def input_definitions(self) -> List[InputDefinition]:
        return list(self._inputs.values())

    def input_definition(self, name: str) -> InputDefinition:
        try:
            return self._inputs[name]
        except KeyError:
            raise ValueError(f'{name} is not an input of {self.problem_name}') from None

    @property
    def input_lower_limits(self) -> np.ndarray:
        return np.array([d.lower_bound for d in self._inputs.values()])

    @property
    def input_upper_limits(self) -> np.ndarray:
        return np.array([d.upper_bound for d in self._inputs.values()])

    @property
    def input_granularities(self) -> np.ndarray:
        return np.array([d.granularity for d in self._inputs.values()])

    @property
    def linear_constraints(self) -> List[LinearConstraint]:
        return list(self._linear)

    @property
    def functional_constraints(self) -> List[FunctionalConstraint]:
        return list(self._functional)

    @property
    def response_constraints(self) -> List[ResponseConstraint]:
        return list(self._response.values())

    def input_variable(
        self, name: str, interval: Tuple[float, float], granularity: float = 0.0
    ) -> InputDefinition:
        """Define the range and granularity of input `name`."""
        self.input_definition(name)
        lower, upper = interval
        definition = InputDefinition(name, lower, upper, granularity)
        self._inputs[name] = definition
        return definition

    def linear_constraint(
        self,
        equation: Mapping[str, float],
        rhs_value: float = 0.0,
        inequality_type: InequalityType = InequalityType.LESS_THAN,
    ) -> LinearConstraint:
        for name in equation:
            self.input_definition(name)
        constraint = LinearConstraint(equation, rhs_value, inequality_type)
        self._linear.append(constraint)
        return constraint

    def functional_constraint(
        self,
        function: Callable[[InputValues], float],
        rhs_value: float = 0.0,
        inequality_type: InequalityType = InequalityType.LESS_THAN,
    ) -> FunctionalConstraint:
        constraint = FunctionalConstraint(
            function, rhs_value, inequality_type, self.input_names
        )
        self._functional.append(constraint)
        return constraint

    def response_constraint(
        self,
        name: str,
        rhs_value: float,
        inequality_type: InequalityType = InequalityType.LESS_THAN,
        target: float = 0.0,
        tolerance: float = 0.0,
        penalty_function: Optional[PenaltyFunction] = None,
    ) -> ResponseConstraint:
        if name not in self._response_names:
            raise ValueError(f'{name} is not a response of {self.problem_name}')
        if name in self._response:
            raise ValueError(f'Response {name} is already constrained')
        constraint = ResponseConstraint(
            name, rhs_value, inequality_type, target, tolerance, penalty_function
        )
        self._response[name] = constraint
        return constraint

    def linear_constraint_matrix(self) -> Tuple[np.ndarray, np.ndarray]:
        """Linear constraints as ``A x <= b``, columns ordered by input name."""
        names = self.input_names
        a = np.array(
            [c.adjusted_coefficients(names) for c in self._linear], dtype=float
        ).reshape(len(self._linear), len(names))
        b = np.array([c.lt_rhs_value for c in self._linear], dtype=float)
        return a, b

    def validate_input_map(self, inputs: InputValues) -> None:
        missing = [name for name in self._inputs if name not in inputs]
        unknown = [name for name in inputs if name not in self._inputs]
        if missing or unknown:
            raise ValueError(
                f'Inputs do not match problem {self.problem_name}: '
                f'missing {missing}, unknown {unknown}'
            )

    def round_to_granularity(self, inputs: InputValues) -> Dict[str, float]:
        return {
            name: definition.round_to_granularity(float(inputs[name]))
            for name, definition in self._inputs.items()
        }

    def to_input_map(self, values: Union[InputValues, Sequence[float]]) -> InputMap:
        """Make an input map from a mapping or from values in input order."""
        if isinstance(values, InputMap) and values.problem is self:
            return values
        if not isinstance(values, MappingABC):
            values = list(values)
            if len(values) != len(self._inputs):
                raise ValueError(
                    f'Expected {len(self._inputs)} input values, got {len(values)}'
                )
            values = dict(zip(self._inputs, values))
        return InputMap(self, values)

    def is_input_range_feasible(self, inputs: InputValues) -> bool:
        return all(d.contains(inputs[name]) for name, d in self._inputs.items())

    def is_linear_constraint_feasible(self, inputs: InputValues) -> bool:
        return all(c.is_satisfied(c.compute_lhs(inputs)) for c in self._linear)

    def is_functional_constraint_feasible(self, inputs: InputValues) -> bool:
        return all(c.is_satisfied(c.compute_lhs(inputs)) for c in self._functional)

    def is_input_feasible(self, inputs: InputValues) -> bool:
        return (
            self.is_input_range_feasible(inputs)
            and self.is_linear_constraint_feasible(inputs)
            and self.is_functional_constraint_feasible(inputs)
        )

    def linear_constraint_violations(self, inputs: InputValues) -> List[float]:
        return [c.violation(c.compute_lhs(inputs)) for c in self._linear]

    def functional_constraint_violations(self, inputs: InputValues) -> List[float]:
        return [c.violation(c.compute_lhs(inputs)) for c in self._functional]

    def response_constraint_violations(
        self, responses: Mapping[str, float]
    ) -> Dict[str, float]:
        """Violation of each response constraint given response averages."""
        violations = {}
        for name, constraint in self._response.items():
            if name not in responses:
                raise ValueError(f'No estimate of constrained response {name}')
            violations[name] = constraint.violation(constraint.compute_lhs(responses[name]))
        return violations

    def response_penalty(self, responses: Mapping[str, float], iteration: int) -> float:
        total = 0.0
        for name, violation in self.response_constraint_violations(responses).items():
            penalty_function = self._response[name].penalty_function
            if penalty_function is None:
                penalty_function = self.penalty_function
            total += penalty_function(violation, iteration)
        return total

    def penalized_objective(
        self, objective: float, responses: Mapping[str, float], iteration: int
    ) -> float:
        """Objective plus penalties, oriented so that the penalty hurts."""
        penalty = self.response_penalty(responses, iteration)
        return objective + self.optimization_type.indicator * penalty

    def random_point(self, rng: Optional[np.random.Generator] = None) -> InputMap:
        """Uniformly random point within the input bounds (not feasibility checked)."""
        if rng is None:
            rng = np.random.default_rng()
        return InputMap(self, {d.name: d.random_value(rng) for d in self._inputs.values()})

    def starting_point(
        self,
        method: Optional[StartingPointGenerator] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> InputMap:
        """Starting point for a search; the midpoint of the inputs by default."""
        if method is None:
            method = MidpointStartingPoint()
        if rng is None:
            rng = np.random.default_rng()
        point = method.generate(self, rng)
        log.debug('%s: starting point %s', self.problem_name, point)
        return point

    def __repr__(self) -> str:
        return (
            f'ProblemDefinition({self.problem_name!r}, '
            f'{self.optimization_type.value} {self.objective_response_name}, '
            f'inputs={self.input_names})'
        )

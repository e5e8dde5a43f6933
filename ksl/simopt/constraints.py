"""Constraints of simulation optimization problems.

Every constraint compares a left-hand side (LHS) value against a right-hand
side value with an inequality. Internally all constraints are handled in
less-than form: a greater-than constraint ``lhs >= rhs`` is the same as
``-lhs <= -rhs``. In that form

 - the slack is ``lt_rhs_value - factor * lhs``,
 - the violation is ``max(0, -slack)``,
 - the constraint is satisfied when ``factor * lhs <= lt_rhs_value``.

The three kinds differ only in how the LHS is computed: from a linear
equation over the inputs, from an arbitrary function of the inputs, or from
the estimated average of a response.

"""
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import math

from scipy import stats

from ..statistic import check_level
from .penalty import PenaltyFunction

InputValues = Mapping[str, float]


class InequalityType(Enum):
    LESS_THAN = 'LESS_THAN'
    GREATER_THAN = 'GREATER_THAN'


class Feasibility(Enum):
    FEASIBLE = 'FEASIBLE'
    INFEASIBLE = 'INFEASIBLE'
    INDETERMINATE = 'INDETERMINATE'


class Constraint:
    def __init__(
        self,
        rhs_value: float = 0.0,
        inequality_type: InequalityType = InequalityType.LESS_THAN,
    ) -> None:
        if math.isnan(rhs_value):
            raise ValueError('The right hand side value must not be NaN')
        self.rhs_value = float(rhs_value)
        self.inequality_type = InequalityType(inequality_type)

    @property
    def inequality_factor(self) -> float:
        return 1.0 if self.inequality_type is InequalityType.LESS_THAN else -1.0

    @property
    def lt_rhs_value(self) -> float:
        """Right hand side value in less-than form."""
        return self.inequality_factor * self.rhs_value

    def slack(self, lhs: float) -> float:
        return self.lt_rhs_value - self.inequality_factor * lhs

    def violation(self, lhs: float) -> float:
        return max(0.0, -self.slack(lhs))

    def is_satisfied(self, lhs: float) -> bool:
        return self.inequality_factor * lhs <= self.lt_rhs_value


class LinearConstraint(Constraint):
    """Linear constraint ``sum(coefficient * input) (<= | >=) rhs``.

    :param dict equation: Mapping of input names to coefficients.

    """

    def __init__(
        self,
        equation: Mapping[str, float],
        rhs_value: float = 0.0,
        inequality_type: InequalityType = InequalityType.LESS_THAN,
    ) -> None:
        super().__init__(rhs_value, inequality_type)
        if not equation:
            raise ValueError('A linear constraint needs at least one term')
        for name in equation:
            if not name or not name.strip():
                raise ValueError('Input names within a linear equation must not be blank')
        self.equation: Dict[str, float] = {
            name: float(coef) for name, coef in equation.items()
        }

    @property
    def names(self) -> List[str]:
        return list(self.equation)

    def coefficient(self, name: str) -> float:
        return self.equation.get(name, 0.0)

    def coefficients(self, input_names: Sequence[str]) -> List[float]:
        """Coefficients ordered by `input_names`; 0 for names not in the equation."""
        return [self.coefficient(name) for name in input_names]

    def adjusted_coefficients(self, input_names: Sequence[str]) -> List[float]:
        """Coefficients in less-than form."""
        factor = self.inequality_factor
        return [factor * c for c in self.coefficients(input_names)]

    def compute_lhs(self, inputs: InputValues) -> float:
        missing = [name for name in self.equation if name not in inputs]
        if missing:
            raise ValueError(f'Missing values for inputs {missing}')
        return sum(coef * inputs[name] for name, coef in self.equation.items())

    def __repr__(self) -> str:
        op = '<=' if self.inequality_type is InequalityType.LESS_THAN else '>='
        terms = ' + '.join(f'{coef}*{name}' for name, coef in self.equation.items())
        return f'LinearConstraint({terms} {op} {self.rhs_value})'


class FunctionalConstraint(Constraint):
    """Constraint ``function(inputs) (<= | >=) rhs``.

    :param function: Called with the mapping of input names to values.
    :param input_names: Names of the inputs the function uses (informative).

    """

    def __init__(
        self,
        function: Callable[[InputValues], float],
        rhs_value: float = 0.0,
        inequality_type: InequalityType = InequalityType.LESS_THAN,
        input_names: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(rhs_value, inequality_type)
        if not callable(function):
            raise TypeError(f'{function!r} is not callable')
        self.function = function
        self.input_names = list(input_names or [])

    def compute_lhs(self, inputs: InputValues) -> float:
        return float(self.function(inputs))


class ResponseConstraint(Constraint):
    """Constraint on the expected value of a response.

    The LHS is the estimated average of the response, so whether the
    constraint holds can only be established statistically; see
    :meth:`test_feasibility`.

    :param str name: Name of the constrained response.
    :param float target: Desired value of the response, for reporting.
    :param float tolerance:
        Indifference zone of the feasibility test: an upper confidence bound
        within `tolerance` of the right hand side still counts as feasible.
    :param penalty_function:
        Penalty for violations; the problem's default when None.

    """

    def __init__(
        self,
        name: str,
        rhs_value: float,
        inequality_type: InequalityType = InequalityType.LESS_THAN,
        target: float = 0.0,
        tolerance: float = 0.0,
        penalty_function: Optional[PenaltyFunction] = None,
    ) -> None:
        super().__init__(rhs_value, inequality_type)
        if not name or not name.strip():
            raise ValueError('The response name must not be blank')
        if tolerance < 0.0:
            raise ValueError(f'The tolerance must be >= 0, got {tolerance}')
        self.name = name
        self.target = float(target)
        self.tolerance = float(tolerance)
        self.penalty_function = penalty_function

    def compute_lhs(self, average: float) -> float:
        return float(average)

    def test_feasibility(self, response: Any, level: float = 0.95) -> Feasibility:
        """One-sided test of the constraint at confidence `level`.

        :param response:
            An estimate with `average`, `standard_error`, and `count`
            attributes, e.g. :class:`~ksl.simopt.evaluator.EstimatedResponse`.
        :returns:
            FEASIBLE when the one-sided confidence bound satisfies the
            constraint, INFEASIBLE when the opposite bound violates it, and
            INDETERMINATE otherwise (including when the standard error is
            unknown).

        """
        check_level(level)
        count = response.count
        se = response.standard_error
        if count <= 1 or math.isnan(se):
            return Feasibility.INDETERMINATE
        q = float(stats.t.ppf(level, count - 1))
        lt_average = self.inequality_factor * response.average
        if lt_average + q * se <= self.lt_rhs_value + self.tolerance:
            return Feasibility.FEASIBLE
        if lt_average - q * se > self.lt_rhs_value:
            return Feasibility.INFEASIBLE
        return Feasibility.INDETERMINATE

    def __repr__(self) -> str:
        op = '<=' if self.inequality_type is InequalityType.LESS_THAN else '>='
        return f'ResponseConstraint(E[{self.name}] {op} {self.rhs_value})'

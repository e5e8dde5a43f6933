import math

import numpy as np
import pytest

from ksl.simopt.constraints import (
    Constraint,
    Feasibility,
    FunctionalConstraint,
    InequalityType,
    LinearConstraint,
    ResponseConstraint,
)
from ksl.simopt.evaluator import EstimatedResponse
from ksl.simopt.penalty import DynamicPenalty, LinearPenalty, QuadraticPenalty
from ksl.simopt.problem import (
    InputDefinition,
    InputMap,
    OptimizationType,
    ProblemDefinition,
)
from ksl.simopt.starting import (
    LatinHypercubeSampler,
    MidpointStartingPoint,
    RandomStartingPoint,
)

GT = InequalityType.GREATER_THAN


@pytest.fixture
def problem():
    problem = ProblemDefinition(
        'inventory',
        'Inventory',
        'cost',
        ['reorder_point', 'order_qty'],
        ['fill_rate'],
    )
    problem.input_variable('reorder_point', (0, 10), 1.0)
    problem.input_variable('order_qty', (2, 20), 1.0)
    problem.linear_constraint({'reorder_point': 1, 'order_qty': 1}, 25)
    problem.response_constraint('fill_rate', 0.9, GT)
    return problem


@pytest.fixture
def continuous():
    problem = ProblemDefinition('box', 'Box', 'y', ['a', 'b'])
    problem.input_variable('a', (0, 1))
    problem.input_variable('b', (-5, 5))
    return problem


@pytest.fixture
def rng():
    return np.random.default_rng(42)


def estimate(average, variance=1.0, count=10, name='r'):
    return EstimatedResponse(name, average, variance, count)


def test_input_definition():
    d = InputDefinition('x', 2.0, 8.0, 0.5)
    assert d.interval_width == 6.0
    assert d.midpoint == 5.0
    assert d.is_bounded
    assert d.contains(2.0) and d.contains(8.0)
    assert not d.contains(8.5)
    assert d.round_to_granularity(3.3) == 3.5
    assert not InputDefinition('y').is_bounded


def test_round_to_granularity_clamps():
    d = InputDefinition('x', 0.0, 10.0, 3.0)
    assert d.round_to_granularity(4.0) == 3.0
    assert d.round_to_granularity(10.0) == 9.0
    assert d.round_to_granularity(11.0) == 10.0
    assert d.round_to_granularity(-2.0) == 0.0
    assert InputDefinition('c', 0.0, 1.0).round_to_granularity(0.123) == 0.123


@pytest.mark.parametrize(
    'args',
    [
        ('', 0.0, 1.0),
        (' ', 0.0, 1.0),
        ('x', 1.0, 1.0),
        ('x', 2.0, 1.0),
        ('x', 0.0, 1.0, -0.1),
        ('x', 0.0, 1.0, math.nan),
    ],
)
def test_input_definition_invalid(args):
    with pytest.raises(ValueError):
        InputDefinition(*args)


def test_input_map(problem):
    point = problem.to_input_map({'reorder_point': 4.4, 'order_qty': 7.6})
    assert dict(point) == {'reorder_point': 4.0, 'order_qty': 8.0}
    assert point == problem.to_input_map([4.0, 8.0])
    assert hash(point) == hash(problem.to_input_map([4.0, 8.0]))
    assert point != problem.to_input_map([4.0, 9.0])
    assert point.as_array().tolist() == [4.0, 8.0]
    assert problem.to_input_map(point) is point
    assert point.input_feasible
    with pytest.raises(TypeError):
        point['reorder_point'] = 5.0


def test_input_map_key_for_dict(problem):
    point = problem.to_input_map([4.0, 8.0])
    cache = {point: 'solution'}
    assert cache[problem.to_input_map({'order_qty': 8, 'reorder_point': 4})] == 'solution'


@pytest.mark.parametrize(
    'values',
    [
        {'reorder_point': 1.0},
        {'reorder_point': 1.0, 'order_qty': 2.0, 'other': 3.0},
        [1.0],
        [1.0, 2.0, 3.0],
    ],
)
def test_input_map_invalid(problem, values):
    with pytest.raises(ValueError):
        problem.to_input_map(values)


def test_input_map_direct_construction(problem):
    point = InputMap(problem, {'reorder_point': 25, 'order_qty': 1})
    assert dict(point) == {'reorder_point': 10.0, 'order_qty': 2.0}


def test_problem_accessors(problem):
    assert problem.input_names == ['reorder_point', 'order_qty']
    assert problem.response_names == ['fill_rate']
    assert problem.input_lower_limits.tolist() == [0.0, 2.0]
    assert problem.input_upper_limits.tolist() == [10.0, 20.0]
    assert problem.input_granularities.tolist() == [1.0, 1.0]
    assert len(problem.linear_constraints) == 1
    assert problem.functional_constraints == []
    assert [c.name for c in problem.response_constraints] == ['fill_rate']
    assert problem.optimization_type is OptimizationType.MINIMIZE
    assert 'inventory' in repr(problem)


@pytest.mark.parametrize(
    'args, kwargs',
    [
        (('', 'M', 'y', ['x']), {}),
        (('p', ' ', 'y', ['x']), {}),
        (('p', 'M', '', ['x']), {}),
        (('p', 'M', 'y', []), {}),
        (('p', 'M', 'y', ['x', 'x']), {}),
        (('p', 'M', 'y', ['x', '']), {}),
        (('p', 'M', 'y', ['x'], ['r', 'r']), {}),
        (('p', 'M', 'y', ['x'], ['y']), {}),
        (('p', 'M', 'y', ['x']), {'indifference_zone': -1.0}),
    ],
)
def test_problem_invalid(args, kwargs):
    with pytest.raises(ValueError):
        ProblemDefinition(*args, **kwargs)


def test_problem_unknown_names(problem):
    with pytest.raises(ValueError):
        problem.input_variable('nothing', (0, 1))
    with pytest.raises(ValueError):
        problem.linear_constraint({'nothing': 1.0}, 1.0)
    with pytest.raises(ValueError):
        problem.response_constraint('nothing', 1.0)
    with pytest.raises(ValueError):
        problem.response_constraint('fill_rate', 0.5)


def test_linear_feasibility(problem):
    assert problem.is_input_feasible(problem.to_input_map([5, 20]))
    infeasible = problem.to_input_map([10, 20])
    assert not infeasible.input_feasible
    assert problem.linear_constraint_violations(infeasible) == [5.0]
    assert not problem.is_input_range_feasible({'reorder_point': -1, 'order_qty': 5})
    assert not problem.is_input_feasible({'reorder_point': -1, 'order_qty': 5})


def test_linear_constraint_matrix(problem):
    problem.linear_constraint({'order_qty': 2.0}, 4.0, GT)
    a, b = problem.linear_constraint_matrix()
    assert a.tolist() == [[1.0, 1.0], [0.0, -2.0]]
    assert b.tolist() == [25.0, -4.0]


def test_linear_constraint_matrix_empty(continuous):
    a, b = continuous.linear_constraint_matrix()
    assert a.shape == (0, 2)
    assert b.shape == (0,)


def test_functional_constraint(problem):
    problem.functional_constraint(lambda x: x['reorder_point'] * x['order_qty'], 100.0)
    assert problem.is_input_feasible(problem.to_input_map([5, 20]))
    point = problem.to_input_map([6, 19])
    assert not point.input_feasible
    assert problem.functional_constraint_violations(point) == [14.0]
    assert problem.functional_constraints[0].input_names == problem.input_names


def test_response_violations(problem):
    violations = problem.response_constraint_violations({'fill_rate': 0.8})
    assert violations['fill_rate'] == pytest.approx(0.1)
    assert problem.response_constraint_violations({'fill_rate': 0.95}) == {
        'fill_rate': 0.0
    }
    with pytest.raises(ValueError):
        problem.response_constraint_violations({})


def test_response_penalty(problem):
    # DynamicPenalty(c=0.5, alpha=2, beta=2) at iteration 2: 1 * 0.1**2
    assert problem.response_penalty({'fill_rate': 0.8}, 2) == pytest.approx(0.01)
    assert problem.penalized_objective(100.0, {'fill_rate': 0.8}, 2) == pytest.approx(
        100.01
    )
    assert problem.penalized_objective(100.0, {'fill_rate': 0.95}, 2) == 100.0


def test_response_penalty_maximize():
    problem = ProblemDefinition(
        'p', 'M', 'profit', ['x'], ['risk'], optimization_type=OptimizationType.MAXIMIZE
    )
    problem.response_constraint('risk', 1.0, penalty_function=LinearPenalty(10.0))
    assert problem.penalized_objective(50.0, {'risk': 1.5}, 1) == pytest.approx(45.0)


def test_constraint_less_than_form():
    lt = Constraint(5.0)
    assert lt.slack(3.0) == 2.0
    assert lt.violation(3.0) == 0.0
    assert lt.violation(7.0) == 2.0
    assert lt.is_satisfied(5.0)
    gt = Constraint(5.0, GT)
    assert gt.lt_rhs_value == -5.0
    assert gt.slack(7.0) == 2.0
    assert gt.violation(3.0) == 2.0
    assert gt.is_satisfied(5.0)
    assert not gt.is_satisfied(4.9)
    with pytest.raises(ValueError):
        Constraint(math.nan)


def test_linear_constraint():
    c = LinearConstraint({'a': 2, 'b': -1}, 3.0)
    assert c.names == ['a', 'b']
    assert c.coefficients(['b', 'c', 'a']) == [-1.0, 0.0, 2.0]
    assert c.compute_lhs({'a': 2.0, 'b': 1.0}) == 3.0
    assert '<=' in repr(c)
    with pytest.raises(ValueError):
        c.compute_lhs({'a': 2.0})
    with pytest.raises(ValueError):
        LinearConstraint({})
    with pytest.raises(ValueError):
        LinearConstraint({' ': 1.0})


def test_functional_constraint_not_callable():
    with pytest.raises(TypeError):
        FunctionalConstraint(42)


def test_response_constraint_invalid():
    with pytest.raises(ValueError):
        ResponseConstraint('', 1.0)
    with pytest.raises(ValueError):
        ResponseConstraint('r', 1.0, tolerance=-1.0)


@pytest.mark.parametrize(
    'average, tolerance, expected',
    [
        (5.0, 0.0, Feasibility.FEASIBLE),
        (15.0, 0.0, Feasibility.INFEASIBLE),
        (10.0, 0.0, Feasibility.INDETERMINATE),
        (10.0, 1.0, Feasibility.FEASIBLE),
    ],
)
def test_response_feasibility(average, tolerance, expected):
    c = ResponseConstraint('r', 10.0, tolerance=tolerance)
    assert c.test_feasibility(estimate(average)) is expected


def test_response_feasibility_greater_than():
    c = ResponseConstraint('r', 0.9, GT)
    assert c.test_feasibility(estimate(0.95, 0.0001)) is Feasibility.FEASIBLE
    assert c.test_feasibility(estimate(0.85, 0.0001)) is Feasibility.INFEASIBLE


def test_response_feasibility_single_replication():
    c = ResponseConstraint('r', 10.0)
    single = EstimatedResponse('r', 1.0, math.nan, 1)
    assert c.test_feasibility(single) is Feasibility.INDETERMINATE
    with pytest.raises(ValueError):
        c.test_feasibility(estimate(1.0), level=1.0)


def test_penalty_functions():
    assert LinearPenalty(2.0)(3.0) == 6.0
    assert QuadraticPenalty(2.0)(3.0) == 18.0
    assert DynamicPenalty(0.5, 2.0, 2.0)(3.0, 4) == 36.0
    assert DynamicPenalty()(3.0, 1) < DynamicPenalty()(3.0, 10)
    for penalty in [LinearPenalty(), QuadraticPenalty(), DynamicPenalty()]:
        assert penalty(0.0, 7) == 0.0
        with pytest.raises(ValueError):
            penalty(-1.0)
        with pytest.raises(ValueError):
            penalty(math.nan)
        with pytest.raises(ValueError):
            penalty(1.0, 0)


@pytest.mark.parametrize(
    'make',
    [
        lambda: LinearPenalty(0.0),
        lambda: QuadraticPenalty(-1.0),
        lambda: DynamicPenalty(c=0.0),
        lambda: DynamicPenalty(alpha=0.0),
        lambda: DynamicPenalty(beta=-1.0),
    ],
)
def test_penalty_invalid(make):
    with pytest.raises(ValueError):
        make()


def test_midpoint_starting_point(problem):
    point = problem.starting_point()
    assert dict(point) == {'reorder_point': 5.0, 'order_qty': 11.0}
    assert problem.starting_point(MidpointStartingPoint()) == point


def test_midpoint_infeasible(problem):
    problem.linear_constraint({'reorder_point': 1, 'order_qty': 1}, 10)
    with pytest.raises(RuntimeError):
        problem.starting_point()


def test_starting_point_unbounded():
    problem = ProblemDefinition('p', 'M', 'y', ['x'])
    with pytest.raises(ValueError):
        problem.starting_point()
    with pytest.raises(ValueError):
        problem.random_point()


def test_random_starting_point(problem, rng):
    point = problem.starting_point(RandomStartingPoint(), rng)
    assert point.input_feasible
    for name, value in point.items():
        assert value == round(value)
        assert problem.input_definition(name).contains(value)


def test_random_starting_point_reproducible(problem):
    a = problem.starting_point(RandomStartingPoint(), np.random.default_rng(7))
    b = problem.starting_point(RandomStartingPoint(), np.random.default_rng(7))
    assert a == b


def test_random_starting_point_infeasible(problem, rng):
    problem.linear_constraint({'reorder_point': 1, 'order_qty': 1}, 1)
    with pytest.raises(RuntimeError):
        problem.starting_point(RandomStartingPoint(max_iterations=10), rng)
    with pytest.raises(ValueError):
        RandomStartingPoint(0)


def test_latin_hypercube(continuous, rng):
    n = 8
    points = LatinHypercubeSampler(n).sample(continuous, rng)
    assert len(points) == n
    for d in continuous.input_definitions:
        u = [(p[d.name] - d.lower_bound) / d.interval_width for p in points]
        assert sorted(int(x * n) for x in u) == list(range(n))


def test_latin_hypercube_generate(continuous, rng):
    point = continuous.starting_point(LatinHypercubeSampler(4), rng)
    assert point.input_feasible
    with pytest.raises(ValueError):
        LatinHypercubeSampler(0)

"""Starting points for simulation optimization searches."""
from typing import TYPE_CHECKING, List
import logging

import numpy as np

if TYPE_CHECKING:
    from .problem import InputMap, ProblemDefinition

log = logging.getLogger(__name__)


def _check_bounded(problem: 'ProblemDefinition') -> None:
    unbounded = [d.name for d in problem.input_definitions if not d.is_bounded]
    if unbounded:
        raise ValueError(f'Inputs {unbounded} need finite bounds to pick a starting point')


class StartingPointGenerator:
    def generate(
        self, problem: 'ProblemDefinition', rng: np.random.Generator
    ) -> 'InputMap':
        raise NotImplementedError()  # pragma: no cover


class MidpointStartingPoint(StartingPointGenerator):
    """The midpoint of each input's range, rounded to its granularity."""

    def generate(
        self, problem: 'ProblemDefinition', rng: np.random.Generator
    ) -> 'InputMap':
        _check_bounded(problem)
        point = problem.to_input_map({d.name: d.midpoint for d in problem.input_definitions})
        if not point.input_feasible:
            raise RuntimeError(f'The midpoint {point} is not input feasible')
        return point


class RandomStartingPoint(StartingPointGenerator):
    """Uniformly random input-feasible point.

    Points are drawn within the input bounds until one satisfies the linear
    and functional constraints.

    """

    def __init__(self, max_iterations: int = 1000) -> None:
        if max_iterations < 1:
            raise ValueError(f'max_iterations must be >= 1, got {max_iterations}')
        self.max_iterations = max_iterations

    def generate(
        self, problem: 'ProblemDefinition', rng: np.random.Generator
    ) -> 'InputMap':
        _check_bounded(problem)
        for i in range(self.max_iterations):
            point = problem.random_point(rng)
            if point.input_feasible:
                log.debug('Feasible random point after %d draws', i + 1)
                return point
        raise RuntimeError(
            f'No input feasible point found in {self.max_iterations} draws'
        )


class LatinHypercubeSampler(StartingPointGenerator):
    """Stratified sample of the input space.

    Each input's range is divided into `num_points` equal strata. Every
    stratum of every input is sampled exactly once, with the strata of
    different inputs paired at random.

    """

    def __init__(self, num_points: int) -> None:
        if num_points < 1:
            raise ValueError(f'num_points must be >= 1, got {num_points}')
        self.num_points = num_points

    def sample(
        self, problem: 'ProblemDefinition', rng: np.random.Generator
    ) -> List['InputMap']:
        """Input feasible points of a Latin hypercube sample."""
        _check_bounded(problem)
        n = self.num_points
        definitions = problem.input_definitions
        columns = []
        for d in definitions:
            strata = rng.permutation(n)
            u = (strata + rng.uniform(size=n)) / n
            columns.append(d.lower_bound + u * d.interval_width)
        points = []
        for row in np.column_stack(columns):
            point = problem.to_input_map(
                {d.name: float(x) for d, x in zip(definitions, row)}
            )
            if point.input_feasible:
                points.append(point)
        log.debug('Latin hypercube: %d of %d points feasible', len(points), n)
        return points

    def generate(
        self, problem: 'ProblemDefinition', rng: np.random.Generator
    ) -> 'InputMap':
        points = self.sample(problem, rng)
        if not points:
            raise RuntimeError(
                f'None of {self.num_points} Latin hypercube points is input feasible'
            )
        return points[0]

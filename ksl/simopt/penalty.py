"""Penalty functions for constraint violations.

A penalty function maps a violation (how far a constraint is from being
satisfied, always >= 0) and the current iteration of the search to a
non-negative penalty that is zero exactly when the violation is zero.

"""


class PenaltyFunction:
    def __call__(self, violation: float, iteration: int = 1) -> float:
        if not violation >= 0.0:
            raise ValueError(f'The violation must be >= 0, got {violation}')
        if iteration < 1:
            raise ValueError(f'The iteration must be >= 1, got {iteration}')
        if violation == 0.0:
            return 0.0
        return self.penalty(violation, iteration)

    def penalty(self, violation: float, iteration: int) -> float:
        raise NotImplementedError()  # pragma: no cover


class LinearPenalty(PenaltyFunction):
    def __init__(self, weight: float = 1.0) -> None:
        if weight <= 0.0:
            raise ValueError(f'The weight must be > 0, got {weight}')
        self.weight = weight

    def penalty(self, violation: float, iteration: int) -> float:
        return self.weight * violation


class QuadraticPenalty(PenaltyFunction):
    def __init__(self, weight: float = 1.0) -> None:
        if weight <= 0.0:
            raise ValueError(f'The weight must be > 0, got {weight}')
        self.weight = weight

    def penalty(self, violation: float, iteration: int) -> float:
        return self.weight * violation * violation


class DynamicPenalty(PenaltyFunction):
    """Penalty growing with the iteration: ``(c * t)**alpha * v**beta``.

    Joines and Houck (1994). Early in a search infeasible solutions are
    penalized lightly; later they are penalized heavily.

    """

    def __init__(self, c: float = 0.5, alpha: float = 2.0, beta: float = 2.0) -> None:
        if c <= 0.0:
            raise ValueError(f'c must be > 0, got {c}')
        if alpha <= 0.0 or beta <= 0.0:
            raise ValueError(f'alpha and beta must be > 0, got {alpha} and {beta}')
        self.c = c
        self.alpha = alpha
        self.beta = beta

    def penalty(self, violation: float, iteration: int) -> float:
        return (self.c * iteration) ** self.alpha * violation ** self.beta

"""Simulation optimization problems and solution evaluation.

 - :mod:`ksl.simopt.problem`: problem definitions, inputs, and input maps.
 - :mod:`ksl.simopt.constraints`: linear, functional, and response
   constraints.
 - :mod:`ksl.simopt.penalty`: penalty functions for constraint violations.
 - :mod:`ksl.simopt.starting`: starting point generators.
 - :mod:`ksl.simopt.evaluator`: estimated responses, solutions, caching, and
   evaluation by simulation.

"""

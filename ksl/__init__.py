"""Discrete event simulation experiments and output analysis using `SimPy`__.

__ https://simpy.readthedocs.io/en/latest/contents.html

The `ksl` package provides tools for building discrete event simulation (DES)
models, running them as multi-replication experiments, and analyzing their
output. It builds on top of the :mod:`simpy` simulation kernel.

Components
==========

Models are composed of :class:`~ksl.component.Component` instances. Components
partition the system to be modeled into manageable pieces; they parent other
components, run processes, and connect to each other.

Responses
=========

The outputs of a model are :class:`~ksl.response.Response`,
:class:`~ksl.response.TWResponse`, and :class:`~ksl.response.Counter`
components. Their within-replication statistics are reset at the end of the
warm-up period and reported to the :class:`~ksl.experiment.Experiment` at the
end of each replication.

Configuration
=============

A single, comprehensive configuration dictionary with dot-separated keys
captures all configuration for an experiment. The :mod:`ksl.config` module
provides functionality for managing configuration dictionaries, including
multi-factor designs.

Simulation
==========

:func:`~ksl.simulation.simulate()` runs the `sim.replications` replications of
an experiment, each with a fresh :class:`~ksl.simulation.SimEnvironment` and a
fresh model:

 - *Initialization*: where the components' `__init__()` methods are called.
 - *Elaboration*: where inter-component connections are made and components'
   processes are started.
 - *Simulation*: where discrete event simulation occurs, including the
   warm-up period.
 - *Post-simulation*: where replication results are gathered.

:func:`~ksl.simulation.simulate_factors()` and
:func:`~ksl.simulation.simulate_many()` run several experiments in parallel
processes.

Output analysis
===============

:mod:`ksl.statistic` provides summary and batch-means statistics,
:mod:`ksl.welch` collects and analyzes Welch plot data, and
:mod:`ksl.transient` selects warm-up deletion points.

Simulation optimization
=======================

:mod:`ksl.simopt` defines optimization problems over model inputs and
evaluates candidate solutions by running experiments.

"""

__all__ = ()

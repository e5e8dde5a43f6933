import os

import pytest
import simpy

from ksl.component import Component
from ksl.simulation import SimEnvironment


@pytest.fixture
def env():
    """Fixture providing simpy.Environment for tests with `env` argument."""
    return simpy.Environment()


@pytest.fixture
def sim_env():
    """Fixture providing a single-replication SimEnvironment."""
    return SimEnvironment({'sim.timescale': '1 s', 'sim.seed': 1234})


@pytest.fixture
def top(sim_env):
    """Fixture providing a bare top-level Component bound to `sim_env`."""
    return Component(None, env=sim_env, name='top')


@pytest.fixture
def cleandir(tmpdir):
    origin = os.getcwd()
    tmpdir.chdir()
    yield None
    os.chdir(origin)

import os
import sqlite3

import pytest
import simpy

from ksl.component import Component
from ksl.response import Counter, Response
from ksl.simulation import simulate

pytestmark = pytest.mark.usefixtures('cleandir')


@pytest.fixture
def config():
    return {
        'sim.db.enable': False,
        'sim.db.file': 'sim.sqlite',
        'sim.duration': '10 us',
        'sim.log.enable': False,
        'sim.log.file': 'sim.log',
        'sim.log.level': 'INFO',
        'sim.result.file': 'result.yaml',
        'sim.seed': 1234,
        'sim.timescale': '1 us',
        'sim.vcd.dump_file': 'sim.vcd',
        'sim.vcd.enable': False,
        'sim.gtkw.file': 'sim.gtkw',
        'sim.vcd.start_time': '',
        'sim.vcd.stop_time': '',
        'sim.workspace': 'workspace',
        'test.raise': False,
    }


class TopTest(Component):

    base_name = 'top'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.container = simpy.Container(self.env)
        self.resource = simpy.Resource(self.env)
        self.wait = Response(self, 'wait')
        self.visits = Counter(self, 'visits')
        self.a = CompA(self)
        self.b = CompB(self)
        hints = {}
        if self.env.config['sim.log.enable']:
            hints['log'] = {'level': 'INFO'}
        if self.env.config['sim.vcd.enable']:
            hints['vcd'] = {}
        if self.env.config['sim.db.enable']:
            hints['db'] = {}
        self.auto_probe('container', **hints)
        self.auto_probe('resource', **hints)
        self.auto_probe('wait', **hints)
        self.auto_probe('visits', **hints)
        self.trace_some = self.get_trace_function(
            'something', vcd={'var_type': 'real'}, log={'level': 'INFO'}
        )
        self.trace_other = self.get_trace_function(
            'otherthing',
            vcd={'var_type': 'integer', 'init': ('z', 'z'), 'size': (8, 8)},
        )
        self.add_process(self.loop)

    def connect_children(self):
        self.connect(self.a, 'container')
        self.connect(self.b, 'container')

    def loop(self):
        while True:
            yield self.env.timeout(5)
            with self.resource.request() as req:
                yield req
            self.wait.value = 2.5
            self.visits.increment()
            self.trace_some(17.0)
            self.trace_other(42, 17)
            if self.env.config.get('test.raise'):
                raise Exception('oops')


class CompA(Component):

    base_name = 'a'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.add_process(self.loop)
        self.add_connections('container')

    def loop(self):
        while True:
            yield self.container.get(3)


class CompB(CompA):

    base_name = 'b'

    def loop(self):
        while True:
            yield self.container.put(1)
            yield self.env.timeout(1)


def workspace_path(config, key):
    return os.path.join(config['sim.workspace'], config[key])


def test_defaults(config):
    simulate(config, TopTest)
    assert os.path.isdir(config['sim.workspace'])
    assert os.path.exists(workspace_path(config, 'sim.result.file'))
    for filename_key in [
        'sim.log.file',
        'sim.vcd.dump_file',
        'sim.gtkw.file',
        'sim.db.file',
    ]:
        assert not os.path.exists(workspace_path(config, filename_key))


def test_exception(config):
    config['sim.log.enable'] = True
    config['test.raise'] = True
    with pytest.raises(Exception):
        simulate(config, TopTest)
    log_path = workspace_path(config, 'sim.log.file')
    assert os.path.exists(log_path)
    with open(log_path) as f:
        log = f.read()
    assert 'ERROR' in log


def test_log(config):
    config['sim.log.enable'] = True
    simulate(config, TopTest)
    log_path = workspace_path(config, 'sim.log.file')
    with open(log_path) as f:
        lines = f.readlines()
    assert lines[-1] == 'INFO    1:9.000 us: top.container: 1\n'
    assert 'INFO    1:5.000 us: top.wait: 2.5\n' in lines
    assert 'INFO    1:5.000 us: top.something: 17.0\n' in lines


def test_log_replications(config):
    config['sim.log.enable'] = True
    config['sim.replications'] = 2
    simulate(config, TopTest)
    with open(workspace_path(config, 'sim.log.file')) as f:
        lines = f.readlines()
    assert lines[-1] == 'INFO    2:9.000 us: top.container: 1\n'
    assert 'INFO    1:9.000 us: top.container: 1\n' in lines


def test_log_level(config):
    config['sim.log.enable'] = True
    config['sim.log.level'] = 'WARNING'
    simulate(config, TopTest)
    with open(workspace_path(config, 'sim.log.file')) as f:
        assert f.read() == ''


def test_log_stderr(config, capsys):
    config['sim.log.enable'] = True
    config['sim.log.file'] = ''
    simulate(config, TopTest)
    out, err = capsys.readouterr()
    assert out == ''
    assert err.endswith('INFO    1:9.000 us: top.container: 1\n')


def test_log_persist(config):
    config['sim.log.enable'] = True
    config['sim.log.persist'] = False
    simulate(config, TopTest)
    assert not os.path.exists(workspace_path(config, 'sim.log.file'))


def test_vcd(config):
    config['sim.vcd.enable'] = True
    simulate(config, TopTest)
    with open(workspace_path(config, 'sim.vcd.dump_file')) as dump:
        vcd_str = dump.read()
    for t in range(1, 10):
        assert f'#{t}\n' in vcd_str
    assert 'wait' in vcd_str
    assert 'visits' in vcd_str


def test_vcd_replications(config):
    config['sim.vcd.enable'] = True
    config['sim.replications'] = 2
    simulate(config, TopTest)
    with open(workspace_path(config, 'sim.vcd.dump_file')) as dump:
        vcd_str = dump.read()
    assert '#9\n' in vcd_str
    assert '#15\n' in vcd_str
    assert '#19\n' in vcd_str
    assert vcd_str.count('$var real 64') == 2


def test_vcd_start(config):
    config['sim.vcd.enable'] = True
    config['sim.vcd.start_time'] = '5 us'
    simulate(config, TopTest)
    with open(workspace_path(config, 'sim.vcd.dump_file')) as dump:
        vcd_str = dump.read()
    assert 'dumpon' in vcd_str
    assert '#6' in vcd_str


def test_vcd_stop(config):
    config['sim.vcd.enable'] = True
    config['sim.vcd.stop_time'] = '5 us'
    simulate(config, TopTest)
    with open(workspace_path(config, 'sim.vcd.dump_file')) as dump:
        vcd_str = dump.read()
    assert 'dumpoff' in vcd_str
    assert '#6' not in vcd_str


def test_vcd_start_then_stop(config):
    config['sim.vcd.enable'] = True
    config['sim.vcd.start_time'] = '4 us'
    config['sim.vcd.stop_time'] = '6 us'
    simulate(config, TopTest)
    with open(workspace_path(config, 'sim.vcd.dump_file')) as dump:
        vcd_str = dump.read()
    assert 'dumpon' in vcd_str
    assert 'dumpoff' in vcd_str
    assert '#1\n' not in vcd_str
    assert '#5' in vcd_str
    assert '#9' not in vcd_str


def test_vcd_timescale(config):
    config['sim.vcd.enable'] = True
    config['sim.vcd.timescale'] = '10 s'
    simulate(config, TopTest)
    with open(workspace_path(config, 'sim.vcd.dump_file')) as dump:
        assert '$timescale 10 s' in dump.read()


def test_vcd_persist(config):
    config['sim.vcd.enable'] = True
    config['sim.vcd.persist'] = False
    simulate(config, TopTest)
    assert not os.path.exists(workspace_path(config, 'sim.vcd.dump_file'))


def test_db(config):
    config['sim.db.enable'] = True
    simulate(config, TopTest)
    db_path = workspace_path(config, 'sim.db.file')
    assert os.path.exists(db_path)
    db = sqlite3.connect(db_path)
    assert db.execute('SELECT COUNT() FROM trace').fetchone()[0] == 17
    rows = db.execute(
        "SELECT timestamp, replication, value FROM trace WHERE scope = 'top.wait'"
    ).fetchall()
    assert rows == [(5.0, 1, 2.5)]


def test_db_replications(config):
    config['sim.db.enable'] = True
    config['sim.replications'] = 2
    simulate(config, TopTest)
    db = sqlite3.connect(workspace_path(config, 'sim.db.file'))
    counts = db.execute(
        'SELECT replication, COUNT() FROM trace GROUP BY replication'
    ).fetchall()
    assert counts == [(1, 17), (2, 17)]


def test_db_persist(config):
    config['sim.db.enable'] = True
    config['sim.db.persist'] = False
    simulate(config, TopTest)
    assert not os.path.exists(workspace_path(config, 'sim.db.file'))


def test_db_include_pat(config):
    config['sim.db.enable'] = True
    config['sim.db.include_pat'] = [r'top\.resource']
    simulate(config, TopTest)
    db = sqlite3.connect(workspace_path(config, 'sim.db.file'))
    assert db.execute('SELECT COUNT() FROM trace').fetchone()[0] == 2


def test_db_in_memory(config):
    config['sim.db.enable'] = True
    config['sim.db.file'] = ':memory:'
    simulate(config, TopTest)
    assert not os.path.exists(workspace_path(config, 'sim.db.file'))

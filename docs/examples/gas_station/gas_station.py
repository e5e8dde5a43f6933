"""Model refueling at several gas stations.

Each gas station has several fuel pumps and a single, shared reservoir. Each
arriving car pumps gas from the reservoir via a fuel pump.

As the gas station's reservoir empties, a request is made to a tanker truck
company to send a truck to refill the reservoir. The tanker company maintains a
fleet of tanker trucks.

This example demonstrates core ksl concepts including:
 - Modeling using Component subclasses
 - Response, TWResponse, and Counter variables
 - Independent replications with a warm-up period
 - Welch plot data and the MSER deletion point
 - Evaluating candidate designs with the simopt Evaluator

"""
from itertools import count, cycle
import logging
import os

from simpy import Container, Resource, Store

from ksl.component import Component
from ksl.simopt.evaluator import (
    EvaluationRequest,
    Evaluator,
    MemorySolutionCache,
    SimulationOracle,
)
from ksl.simopt.problem import InequalityType, ProblemDefinition
from ksl.simulation import simulate
from ksl.response import Counter, Response, TWResponse
from ksl.welch import WelchDataFileAnalyzer


class Top(Component):
    """Every model has a single top-level Component.

    For this gas station model, the top level components are gas stations and a
    tanker truck company.

    """

    base_name = 'top'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        num_gas_stations = self.env.config.get('gas_station.count', 1)
        self.gas_stations = [GasStation(self, index=i) for i in range(num_gas_stations)]
        self.tanker_company = TankerCompany(self)

        # Responses may live anywhere in the component tree. These two
        # summarize all of the stations.
        self.wait_time = Response(self, 'wait_time', allowed_domain=(0, float('inf')))
        self.cars_served = Counter(self, 'cars_served')

    def connect_children(self):
        for gas_station in self.gas_stations:
            self.connect(gas_station, 'tanker_company')
            self.connect(gas_station, 'wait_time')
            self.connect(gas_station, 'cars_served')


class TankerCompany(Component):
    """The tanker company owns and dispatches its fleet of tanker trunks."""

    base_name = 'tankerco'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        num_tankers = self.env.config.get('tanker.count', 1)
        trucks = [TankerTruck(self, index=i) for i in range(num_tankers)]
        self.trucks_round_robin = cycle(trucks)

    def request_truck(self, gas_station, done_event):
        """Called by gas stations to request a truck to refill its reservior."""
        truck = next(self.trucks_round_robin)
        self.info(f'dispatching {truck.name} to {gas_station.name}')
        return truck.dispatch(gas_station, done_event)


class TankerTruck(Component):
    """Tanker trucks carry fuel to gas stations."""

    base_name = 'truck'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.pump_rate = self.env.config.get('tanker.pump_rate', 10)
        self.avg_travel = self.env.config.get('tanker.travel_time', 600)
        tank_capacity = self.env.config.get('tanker.capacity', 200)
        self.tank = Container(self.env, tank_capacity, init=tank_capacity)
        self.auto_probe('tank', log={})
        self._instructions = Store(self.env)
        self.add_process(self._dispatch_loop)

    def dispatch(self, gas_station, done_event):
        return self._instructions.put((gas_station, done_event))

    def _dispatch_loop(self):
        while True:
            if not self.tank.level:
                self.info('going for refill')
                travel_time = self.env.rand.expovariate(1 / self.avg_travel)
                yield self.env.timeout(travel_time)
                pump_time = self.tank.capacity / self.pump_rate
                yield self.env.timeout(pump_time)
                yield self.tank.put(self.tank.capacity)
                self.info(f'refilled {self.tank.capacity}L in {pump_time:.0f}s')

            gas_station, done_event = yield self._instructions.get()
            travel_time = self.env.rand.expovariate(1 / self.avg_travel)
            yield self.env.timeout(travel_time)
            self.info(f'arrived at {gas_station.name}')
            while self.tank.level and (
                gas_station.reservoir.level < gas_station.reservoir.capacity
            ):
                yield self.env.timeout(1 / self.pump_rate)
                yield gas_station.reservoir.put(1)
                yield self.tank.get(1)
            self.info('done pumping')
            done_event.succeed()


class GasStation(Component):
    """A gas station has a fuel reservoir shared among several fuel pumps.

    When the reservoir's level goes below a critical threshold, the gas station
    makes a request to the tanker company for a tanker truck to refill it.

    """

    base_name = 'station'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        config = self.env.config
        self.add_connections('tanker_company', 'wait_time', 'cars_served')
        self.arrival_interval = config.get('gas_station.arrival_interval', 60)

        station_capacity = config.get('gas_station.capacity', 200)
        self.reservoir = Container(
            self.env, capacity=station_capacity, init=station_capacity
        )
        threshold_pct = config.get('gas_station.threshold_pct', 10)
        self.reservoir_low_water = threshold_pct * station_capacity / 100
        self._refill_pending = False

        self.pump_rate = config.get('gas_station.pump_rate', 2)
        num_pumps = config.get('gas_station.pumps', 2)
        self.fuel_pumps = Resource(self.env, capacity=num_pumps)
        self.pumps_busy = TWResponse(self, 'pumps_busy')

        self.car_capacity = config.get('car.capacity', 50)
        self.car_level_range = config.get('car.level', [5, 25])
        self.add_process(self._traffic_generator)

    def _request_refill(self):
        done_event = self.env.event()
        yield self.tanker_company.request_truck(self, done_event)
        yield done_event
        self._refill_pending = False

    def _traffic_generator(self):
        for i in count():
            interval = self.env.rand.expovariate(1 / self.arrival_interval)
            yield self.env.timeout(interval)
            self.env.process(self._car(i))

    def _car(self, i):
        arrival = self.env.now
        with self.fuel_pumps.request() as pump_req:
            yield pump_req
            self.wait_time.value = self.env.now - arrival
            self.pumps_busy.value = self.fuel_pumps.count
            car_level = self.env.rand.randint(*self.car_level_range)
            amount = self.car_capacity - car_level
            for _ in range(amount):
                yield self.reservoir.get(1)
                if (
                    not self._refill_pending
                    and self.reservoir.level <= self.reservoir_low_water
                ):
                    self._refill_pending = True
                    self.env.process(self._request_refill())
                yield self.env.timeout(1 / self.pump_rate)
            self.debug(f'car{i} pumped {amount}L')
        self.pumps_busy.value = self.fuel_pumps.count
        self.cars_served.increment()


# ksl uses a plain dictionary to represent the simulation configuration.
# The various 'sim.xxx' keys are reserved for ksl while the remainder are
# application-specific.
config = {
    'car.capacity': 50,
    'car.level': [5, 25],
    'gas_station.capacity': 200,
    'gas_station.count': 3,
    'gas_station.pump_rate': 2,
    'gas_station.pumps': 2,
    'gas_station.arrival_interval': 60,
    'sim.duration': '20000 s',
    'sim.warmup': '2000 s',
    'sim.replications': 10,
    'sim.log.enable': True,
    'sim.log.file': 'sim.log',
    'sim.log.level': 'INFO',
    'sim.result.file': 'results.yaml',
    'sim.seed': 42,
    'sim.timescale': 's',
    'sim.welch.enable': True,
    'sim.welch.include_pat': [r'top\.wait_time'],
    'sim.workspace': 'workspace',
    'tanker.capacity': 200,
    'tanker.count': 2,
    'tanker.pump_rate': 10,
    'tanker.travel_time': 100,
}


def analyze_warm_up(result):
    """Recommend a warm-up period from the Welch data of the wait time."""
    path = result['sim.welch']['top.wait_time']
    analyzer = WelchDataFileAnalyzer(os.path.join(config['sim.workspace'], path))
    analyzer.write_welch_plot_data()
    point = analyzer.mser_deletion_point()
    print(f'MSER-5 deletion point: {point} cars, {analyzer.deletion_time(point):.0f}s')


def compare_pump_counts():
    """Estimate the wait time at each station size, with a throughput floor."""
    problem = ProblemDefinition(
        'pumps', 'gas_station', 'wait_time', ['pumps'], ['cars_served']
    )
    problem.input_variable('pumps', (1, 4), granularity=1)
    problem.response_constraint('cars_served', 900, InequalityType.GREATER_THAN)

    base_config = dict(config, **{'sim.log.enable': False, 'sim.welch.enable': False})
    oracle = SimulationOracle(
        base_config,
        Top,
        response_scopes={'wait_time': 'top.wait_time', 'cars_served': 'top.cars_served'},
    )
    evaluator = Evaluator(problem, oracle, MemorySolutionCache())
    requests = [
        EvaluationRequest(problem.to_input_map([pumps]), num_replications=5)
        for pumps in range(1, 5)
    ]
    for solution in evaluator.evaluate(requests):
        print(solution)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    analyze_warm_up(simulate(config, Top))
    compare_pump_counts()

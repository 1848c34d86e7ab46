import logging

import numpy as np

from lattice_planner.common.cost.cost_function import CostFunction
from lattice_planner.common.cost.obstacle_grid import CostField
from lattice_planner.common.geometry.spiral_path import (PathSamples, SpiralPathParams, num_samples_for_step,
                                                         optimize_cubic_paths, optimize_quintic_paths, sample_spiral)
from lattice_planner.common.scenario.trajectory import Pose
from lattice_planner.graph_search import EdgeOutcome
from lattice_planner.road_lattice import RoadLattice

logger = logging.getLogger(__name__)

PATH_TYPE_CUBIC = 0
PATH_TYPE_QUINTIC = 1
PATH_TYPES = (PATH_TYPE_CUBIC, PATH_TYPE_QUINTIC)


class LatticeEdge(object):
    """ One solved spiral with its cached samples and static cost

    Attributes
    ------
        `start`, `end` (`np.ndarray`): [x, y, rot, curv] of both ends (vehicle frame)
        `params` (`SpiralPathParams`): solved spiral
        `samples` (`PathSamples`): rear axle samples every `path_sampling_step` meters
        `stations`, `latitudes` (`np.ndarray`): vehicle center of each sample in SL space
        `static_cost` (`float`): mean static cost, inf when any sample is infeasible
    """
    def __init__(self, start: np.ndarray, end: np.ndarray, params: SpiralPathParams):
        self.start = start
        self.end = end
        self.params = params
        self.samples: PathSamples = None
        self.stations = None
        self.latitudes = None
        self.static_cost = np.inf

    @property
    def length(self) -> float:
        return self.params.sG

    @property
    def feasible(self) -> bool:
        return bool(self.params.converged and np.isfinite(self.static_cost))


class LatticeEdgeEvaluator(object):
    """ LatticeEdgeEvaluator

    Solves and samples every edge of one planning cycle up front, then prices
    them on demand for the graph search.

    Used internally by the lattice planner

    Attributes
    ------
        `vehicle_edges_by_type` (`dict`): path type -> {(station, latitude): LatticeEdge}
        `lattice_edges` (`dict`): (prev_station, prev_latitude, station, latitude) -> LatticeEdge
        `hysteresis` (`tuple`): (station, latitude, acceleration index) of the previous first node or None
    """
    def __init__(self, lattice: RoadLattice, cost_field: CostField, cost_function: CostFunction, settings,
                       vehicle_pose: Pose, hysteresis: tuple = None, stats=None):
        self.lattice = lattice
        self.cost_field = cost_field
        self.cost_function = cost_function
        self.settings = settings
        self.vehicle_pose = vehicle_pose
        self.hysteresis = hysteresis
        self.stats = stats

        self.vehicle_edges_by_type = {path_type: {} for path_type in PATH_TYPES}
        self.lattice_edges = {}

    def prepare(self):
        """ Solves, samples and statically prices every edge """
        self._prepare_vehicle_edges()
        self._prepare_lattice_edges()
        if self.stats is not None:
            edges = self.all_edges()
            self.stats.num_edges_solved += len(edges)
            self.stats.num_edges_converged += sum(edge.params.converged for edge in edges)
            self.stats.num_edges_feasible += sum(edge.feasible for edge in edges)
        return self

    def all_edges(self) -> list:
        edges = list(self.lattice_edges.values())
        for by_node in self.vehicle_edges_by_type.values():
            edges.extend(by_node.values())
        return edges

    def _prepare_vehicle_edges(self):
        targets = [(station, latitude) for station in range(self.lattice.num_stations)
                   if self.lattice.reachable_from_vehicle(station)
                   for latitude in range(self.lattice.num_latitudes)]
        if not targets:
            return
        ends = np.array([self.lattice.node(station, latitude) for station, latitude in targets])
        start = self.vehicle_pose.as_array()
        starts = np.broadcast_to(start, ends.shape)

        solved = {
            PATH_TYPE_CUBIC: optimize_cubic_paths(starts, ends),
            PATH_TYPE_QUINTIC: optimize_quintic_paths(starts, ends, self.vehicle_pose.dcurv, self.vehicle_pose.ddcurv),
        }
        for path_type, (knots, sG, converged) in solved.items():
            for i, target in enumerate(targets):
                edge = LatticeEdge(start, ends[i], SpiralPathParams(knots[i], sG[i], converged[i]))
                self._sample(edge)
                self.vehicle_edges_by_type[path_type][target] = edge

    def _prepare_lattice_edges(self):
        keys = list(self.lattice.edges())
        if not keys:
            return
        starts = np.array([self.lattice.node(ps, pl) for ps, pl, _, _ in keys])
        ends = np.array([self.lattice.node(s, l) for _, _, s, l in keys])
        knots, sG, converged = optimize_cubic_paths(starts, ends)
        for i, key in enumerate(keys):
            edge = LatticeEdge(starts[i], ends[i], SpiralPathParams(knots[i], sG[i], converged[i]))
            self._sample(edge)
            self.lattice_edges[key] = edge

    def _sample(self, edge: LatticeEdge):
        if not edge.params.converged:
            return
        x, y, rot, _ = edge.start
        num = max(2, num_samples_for_step(edge.length, self.settings.path_sampling_step))
        samples = sample_spiral(x, y, rot, edge.params.knots, edge.length, num)
        # costs are looked up at the vehicle center, samples follow the rear axle
        center_x = samples.x + self.settings.rear_axle_to_center*np.cos(samples.rot)
        center_y = samples.y + self.settings.rear_axle_to_center*np.sin(samples.rot)
        edge.samples = samples
        edge.stations, edge.latitudes = self.cost_field.frame.xy_to_sl(center_x, center_y)
        edge.static_cost = self.cost_function.average_static_cost(self.cost_field, edge.stations, edge.latitudes)

    def vehicle_edge(self, path_type: int, station: int, latitude: int) -> LatticeEdge:
        self.lattice.node(station, latitude)
        return self.vehicle_edges_by_type[path_type].get((station, latitude))

    def lattice_edge_geometry(self, prev_station: int, prev_latitude: int, station: int, latitude: int) -> LatticeEdge:
        self.lattice.node(prev_station, prev_latitude)
        self.lattice.node(station, latitude)
        return self.lattice_edges.get((prev_station, prev_latitude, station, latitude))

    def _price(self, edge: LatticeEdge, initial_velocity: np.ndarray, initial_time: np.ndarray, extra: float = 0.0) -> EdgeOutcome:
        cost_function = self.cost_function
        samples = edge.samples
        acceleration = cost_function.accelerations(initial_velocity, edge.length)
        final_velocity, final_time = cost_function.final_velocity_and_time(acceleration, initial_velocity, initial_time, edge.length)
        dynamic = cost_function.average_dynamic_cost(self.cost_field, edge.stations, edge.latitudes,
                                                     samples.s, samples.curv, samples.dcurv,
                                                     acceleration, initial_velocity, initial_time)
        cost = cost_function.edge_cost(edge.static_cost, dynamic, edge.length, extra)
        if self.stats is not None:
            self.stats.num_edge_evaluations += cost.size
        return EdgeOutcome(cost, final_velocity, final_time, acceleration)

    def vehicle_edges(self, station: int, latitude: int):
        """ Priced edges from the vehicle into (station, latitude), one per feasible path type """
        v0 = np.array([self.vehicle_pose.velocity])
        t0 = np.zeros(1)
        for path_type in PATH_TYPES:
            edge = self.vehicle_edge(path_type, station, latitude)
            if edge is None or not edge.feasible:
                continue
            extra = self.cost_function.cubic_from_vehicle_penalty(self.vehicle_pose.velocity) if path_type == PATH_TYPE_CUBIC else 0.0
            outcome = self._price(edge, v0, t0, extra)
            if self.hysteresis is not None and self.hysteresis[:2] == (station, latitude):
                accel_idx = self.hysteresis[2]
                outcome.cost[:, accel_idx] = np.maximum(0.0, outcome.cost[:, accel_idx] - self.settings.hysteresis_discount)
            yield path_type, outcome

    def lattice_edge(self, prev_station: int, prev_latitude: int, station: int, latitude: int,
                     initial_velocity: np.ndarray, initial_time: np.ndarray) -> EdgeOutcome:
        edge = self.lattice_edge_geometry(prev_station, prev_latitude, station, latitude)
        if edge is None or not edge.feasible:
            return None
        return self._price(edge, np.asarray(initial_velocity, dtype=float), np.asarray(initial_time, dtype=float))

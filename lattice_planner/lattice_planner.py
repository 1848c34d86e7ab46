import logging
import math
import time

import numpy as np
from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException
from shapely import affinity

from lattice_planner.common.cost.cost_function import NUM_ACCELERATION_PROFILES, CostFunction
from lattice_planner.common.cost.obstacle_grid import CostField, build_cost_field
from lattice_planner.common.errors import ConfigurationError, InvalidInputError
from lattice_planner.common.geometry.math_utils import to_vehicle_frame, unifyAngleRange
from lattice_planner.common.geometry.spiral_path import SpiralPathParams, spiral_path_from_params
from lattice_planner.common.scenario.frenet import FrenetFrame
from lattice_planner.common.scenario.lane import LanePath
from lattice_planner.common.scenario.obstacle import DynamicObstacle, StaticObstacle
from lattice_planner.common.scenario.trajectory import PlannedTrajectory, Pose
from lattice_planner.common.vehicle.vehicle import Vehicle
from lattice_planner.edge_evaluator import LatticeEdgeEvaluator
from lattice_planner.graph_search import LatticeGraphSearch, SearchResult
from lattice_planner.road_lattice import RoadLattice, lattice_latitudes

logger = logging.getLogger(__name__)

RECONSTRUCTION_STEP = 0.25          # spacing of the returned trajectory [m]


class Stats(object):
    def __init__(self):
        self.num_iter = 0
        self.num_failed_plans = 0
        self.num_edges_solved = 0
        self.num_edges_converged = 0
        self.num_edges_feasible = 0
        self.num_edge_evaluations = 0
        self.num_cells_reached = 0
        self.planning_time = 0.0            # [s]

    def __add__(self, other):
        self.num_iter += other.num_iter
        self.num_failed_plans += other.num_failed_plans
        self.num_edges_solved += other.num_edges_solved
        self.num_edges_converged += other.num_edges_converged
        self.num_edges_feasible += other.num_edges_feasible
        self.num_edge_evaluations += other.num_edge_evaluations
        self.num_cells_reached += other.num_cells_reached
        self.planning_time += other.planning_time
        return self

    def average(self, value: int):
        self.num_failed_plans /= value
        self.num_edges_solved /= value
        self.num_edges_converged /= value
        self.num_edges_feasible /= value
        self.num_edge_evaluations /= value
        self.num_cells_reached /= value
        self.planning_time /= value
        return self

    def to_dict(self) -> dict:
        return dict(vars(self))

    @classmethod
    def from_dict(cls, data: dict):
        stats = cls()
        for key, value in data.items():
            if hasattr(stats, key):
                setattr(stats, key, value)
        return stats


class LatticePlannerSettings(object):
    def __init__(self, vehicle: Vehicle = None):
        # horizon and lattice shape
        self.spatial_horizon = 100.0                    # planning distance ahead of the vehicle [m]
        self.centerline_station_interval = 0.5          # resampling step of the lane centerline [m]
        self.num_stations = 10                          # lattice stations over the horizon
        self.num_latitudes = 11                         # lattice latitudes across the lane, odd
        self.station_connectivity = 3                   # stations an edge may skip ahead
        self.latitude_connectivity = 5                  # latitudes reachable from a node, centered window
        self.lane_width = 3.7                           # span of the lattice latitudes [m]
        self.path_sampling_step = 0.5                   # sample spacing when pricing an edge [m]

        # cost grids
        self.xy_grid_cell_size = 0.1                    # [m]
        self.sl_grid_cell_size = 0.1                    # [m]
        self.grid_margin = 10.0                         # extra space around the centerline [m]

        # static obstacle dilation
        self.lethal_dilation_s = 3.5                    # [m]
        self.hazard_dilation_s = 12.0                   # [m]
        self.lethal_dilation_l = 1.25                   # [m]
        self.hazard_dilation_l = 2.0                    # [m]
        self.obstacle_hazard_cost = 3.0                 # cost inside a hazard margin

        # moving obstacles
        self.num_dynamic_frames = 20                    # time layers over the horizon
        self.num_dynamic_subframes = 4                  # swept positions per time layer
        self.dynamic_hazard_dilation_s = 8.0            # [m]
        self.dynamic_hazard_dilation_l = 0.5            # [m]

        # lane keeping
        self.lane_center_band = 0.0                     # free latitude band around the centerline [m]
        self.lane_shoulder_latitude = 0.85              # latitudes at or past this are infeasible [m]
        self.lane_cost_slope = 5.0                      # cost per meter outside the center band
        self.lane_preference = 0                        # preferred side, sign only, 0 disables
        self.lane_preference_discount = 1.0             # cost on the side opposite the preference

        # path preference
        self.station_reach_discount = 70.0              # reward per station reached
        self.extra_time_penalty = 64.0                  # cost per second of travel
        self.hysteresis_discount = 40.0                 # bonus for keeping the previous first node
        self.cubic_path_penalty = 10.0                  # cost per (m/s)^2 for a cubic from-vehicle path

        # speed and acceleration
        self.speed_limit = 20.0                         # [m/s]
        self.speed_limit_penalty = 2.0
        self.soft_acceleration_limit = 2.0              # [m/ss]
        self.soft_deceleration_limit = 3.0              # [m/ss]
        self.hard_acceleration_penalty = 6.0
        self.hard_deceleration_penalty = 6.0
        self.lateral_acceleration_limit = 3.0           # [m/ss]
        self.soft_lateral_acceleration_penalty = 4.0
        self.linear_lateral_acceleration_penalty = 4.0  # cost per m/ss of peak lateral acceleration

        # vehicle dependent
        vehicle = vehicle if vehicle is not None else Vehicle()
        self.d_curvature_max = vehicle.max_curvature_rate       # curvature rate at full steering speed [1/(m s)]
        self.rear_axle_to_center = vehicle.rear_axle_to_center  # [m]

    @classmethod
    def from_config(cls, config=None, vehicle: Vehicle = None):
        """
        Settings with `config` overrides merged in.

        :param config: mapping or DictConfig of attribute overrides
        :raises ConfigurationError: on unknown keys or invalid values
        """
        settings = cls(vehicle)
        if config is None:
            config = {}
        base = OmegaConf.create(dict(vars(settings)))
        OmegaConf.set_struct(base, True)
        try:
            overrides = config if isinstance(config, DictConfig) else OmegaConf.create(dict(config))
            merged = OmegaConf.merge(base, overrides)
        except (OmegaConfBaseException, TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid planner settings: {exc}") from exc

        for key, value in OmegaConf.to_container(merged).items():
            setattr(settings, key, value)
        settings.validate()
        return settings

    def to_dict(self) -> dict:
        return dict(vars(self))

    def validate(self):
        positive = ('spatial_horizon', 'centerline_station_interval', 'lane_width', 'path_sampling_step',
                    'xy_grid_cell_size', 'sl_grid_cell_size', 'speed_limit', 'lane_shoulder_latitude',
                    'd_curvature_max')
        for name in positive:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise ConfigurationError(f"'{name}' must be a positive number, got {value!r}")
        counts = ('num_stations', 'num_latitudes', 'station_connectivity', 'latitude_connectivity',
                  'num_dynamic_frames', 'num_dynamic_subframes')
        for name in counts:
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f"'{name}' must be a positive integer, got {value!r}")
        non_negative = ('grid_margin', 'lethal_dilation_s', 'hazard_dilation_s', 'lethal_dilation_l', 'hazard_dilation_l',
                        'dynamic_hazard_dilation_s', 'dynamic_hazard_dilation_l', 'lane_center_band',
                        'hysteresis_discount', 'rear_axle_to_center')
        for name in non_negative:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"'{name}' must be a non-negative number, got {value!r}")
        lattice_latitudes(self.num_latitudes, self.lane_width)

    @property
    def station_interval(self) -> float:
        return self.spatial_horizon / self.num_stations

    @property
    def velocity_ranges(self) -> list:
        return [0.0, self.speed_limit/3, 2*self.speed_limit/3, self.speed_limit, math.inf]

    @property
    def time_ranges(self) -> list:
        return [0.0, 10.0, math.inf]


class PlanningResult(object):
    """ Outcome of one planning cycle

    Attributes
    ------
        `path` (`PlannedTrajectory`): world-frame trajectory from the vehicle to the last station, None on failure
        `from_vehicle_segment` (`PlannedTrajectory`): world-frame part from the vehicle to the first lattice node
        `from_vehicle_params` (`SpiralPathParams`): spiral of that segment
        `lattice_start_station` (`float`): lane station of the first lattice station [m]
    """
    def __init__(self, vehicle_pose: Pose, vehicle_station: float, lattice_start_station: float, stats: Stats):
        self.path: PlannedTrajectory = None
        self.from_vehicle_segment: PlannedTrajectory = None
        self.from_vehicle_params: SpiralPathParams = None
        self.vehicle_pose = vehicle_pose
        self.vehicle_station = vehicle_station
        self.lattice_start_station = lattice_start_station
        self.stats = stats
        self.search_result: SearchResult = None
        self.lattice: RoadLattice = None
        self.cost_field: CostField = None

    @property
    def found(self) -> bool:
        return self.path is not None

    def to_dict(self) -> dict:
        return {
            'path': self.path.to_dict() if self.path is not None else None,
            'from_vehicle_segment': self.from_vehicle_segment.to_dict() if self.from_vehicle_segment is not None else None,
            'from_vehicle_params': self.from_vehicle_params.to_dict() if self.from_vehicle_params is not None else None,
            'vehicle_pose': self.vehicle_pose.to_dict(),
            'vehicle_station': self.vehicle_station,
            'lattice_start_station': self.lattice_start_station,
            'stats': self.stats.to_dict(),
        }


class LatticePlanner(object):
    def __init__(self, planner_settings: LatticePlannerSettings, ego_vehicle: Vehicle = None):
        planner_settings.validate()
        self.settings = planner_settings
        self.vehicle = ego_vehicle if ego_vehicle is not None else Vehicle()
        self.cost_function = CostFunction(planner_settings, self.vehicle)
        self.search = None
        # kept between cycles
        self.lattice_start_station = None
        self.hysteresis = None
        # Statistics
        self.stats = Stats()

    def reset(self):
        """ Forgets the lattice anchoring and the previous choice """
        self.lattice_start_station = None
        self.hysteresis = None

    def update_lattice_start_station(self, vehicle_station: float) -> float:
        """
        Keeps lattice stations fixed on the road: the first station moves one
        interval ahead once the vehicle passes half an interval before it.
        """
        interval = self.settings.station_interval
        start = self.lattice_start_station
        if start is None or start > vehicle_station + 2*interval or vehicle_station + interval/2 > start + interval:
            # first cycle or a jump; anchor one interval ahead
            if start is not None:
                logger.debug("re-anchoring lattice at station %.2f", vehicle_station + interval)
            self.hysteresis = None
            start = vehicle_station + interval
        elif vehicle_station + interval/2 > start:
            start += interval
            if self.hysteresis is not None:
                station, latitude, accel_idx = self.hysteresis
                self.hysteresis = (station - 1, latitude, accel_idx) if station >= 1 else None
        self.lattice_start_station = start
        return start

    def _road_frame(self, lane_path: LanePath, vehicle_pose: Pose, vehicle_station: float) -> FrenetFrame:
        """ Lane centerline in the vehicle frame, stations relative to the vehicle station """
        settings = self.settings
        interval = settings.station_interval
        step = settings.centerline_station_interval
        num = int(math.ceil((settings.spatial_horizon + 3*interval) / step)) + 1
        samples = lane_path.sample_stations(vehicle_station - interval, num, step)
        xy = to_vehicle_frame(samples[:, :2], vehicle_pose.x, vehicle_pose.y, vehicle_pose.rot)
        local = np.column_stack([xy, unifyAngleRange(samples[:, 2] - vehicle_pose.rot), samples[:, 3]])
        return FrenetFrame.from_samples(local, start_station=-interval, interval=step)

    def _check_inputs(self, vehicle_pose, vehicle_station, lane_path, static_obstacles, dynamic_obstacles):
        if not isinstance(vehicle_pose, Pose):
            raise InvalidInputError(f"vehicle pose must be a Pose, got {type(vehicle_pose).__name__}")
        vehicle_pose.validate()
        if not math.isfinite(vehicle_station):
            raise InvalidInputError(f"vehicle station must be finite, got {vehicle_station}")
        if not isinstance(lane_path, LanePath):
            raise InvalidInputError(f"lane path must be a LanePath, got {type(lane_path).__name__}")
        if not all(isinstance(obstacle, StaticObstacle) for obstacle in static_obstacles):
            raise InvalidInputError("static obstacles must be StaticObstacle instances")
        if not all(isinstance(obstacle, DynamicObstacle) for obstacle in dynamic_obstacles):
            raise InvalidInputError("dynamic obstacles must be DynamicObstacle instances")

    def plan(self, vehicle_pose: Pose, vehicle_station: float, lane_path: LanePath, start_time: float = 0.0,
             static_obstacles: list = (), dynamic_obstacles: list = (), reset: bool = False) -> PlanningResult:
        """
        Plans one cycle from the vehicle rear axle pose along the lane.

        :param vehicle_pose: world-frame rear axle pose with curvature, its derivatives and speed
        :param vehicle_station: lane station of the vehicle [m]
        :param start_time: time of the plan start, the time origin of the moving obstacles [s]
        :param dynamic_obstacles: obstacles in road-relative coordinates on the lane stations
        :return: result whose `path` is None when no feasible trajectory exists
        """
        self._check_inputs(vehicle_pose, vehicle_station, lane_path, static_obstacles, dynamic_obstacles)
        if reset:
            self.reset()
        tic = time.perf_counter()
        settings = self.settings
        stats = Stats()
        stats.num_iter = 1

        lattice_start_station = self.update_lattice_start_station(vehicle_station)
        result = PlanningResult(vehicle_pose, vehicle_station, lattice_start_station, stats)

        # everything below happens in the vehicle frame
        local_pose = Pose(0.0, 0.0, 0.0, vehicle_pose.curv, vehicle_pose.dcurv, vehicle_pose.ddcurv,
                          vehicle_pose.velocity, vehicle_pose.acceleration)
        lattice = RoadLattice(lane_path, lattice_start_station, settings, vehicle_pose)
        frame = self._road_frame(lane_path, vehicle_pose, vehicle_station)
        polygons = [self._to_vehicle_frame(obstacle.polygon, vehicle_pose) for obstacle in static_obstacles]
        moving = [DynamicObstacle(obstacle.type, obstacle.start_pos - [vehicle_station, 0.0], obstacle.velocity, obstacle.parallel)
                  for obstacle in dynamic_obstacles]
        cost_field = build_cost_field(frame, polygons, moving, start_time, settings.station_interval, settings)
        result.lattice = lattice
        result.cost_field = cost_field

        evaluator = LatticeEdgeEvaluator(lattice, cost_field, self.cost_function, settings, local_pose,
                                         self.hysteresis, stats).prepare()
        self.search = LatticeGraphSearch(lattice, settings.velocity_ranges, settings.time_ranges,
                                         NUM_ACCELERATION_PROFILES, settings.extra_time_penalty)
        table = self.search.search(evaluator)
        stats.num_cells_reached = table.num_reached()

        terminal = self.search.best_terminal(self.cost_function.terminal_cost)
        if terminal is None:
            stats.num_failed_plans = 1
            stats.planning_time = time.perf_counter() - tic
            self.hysteresis = None
            self.stats += stats
            logger.warning("no feasible trajectory from station %.2f (%d of %d edges feasible)",
                           vehicle_station, stats.num_edges_feasible, stats.num_edges_solved)
            return result

        search_result = self.search.backtrack(terminal)
        result.search_result = search_result
        first = search_result.nodes[0]
        self.hysteresis = (first.station, first.latitude, first.acceleration_index)

        segment, params, path = self._reconstruct(evaluator, search_result, local_pose)
        result.from_vehicle_params = params
        result.from_vehicle_segment = segment.to_world_frame(vehicle_pose)
        result.path = path.to_world_frame(vehicle_pose)

        stats.planning_time = time.perf_counter() - tic
        self.stats += stats
        logger.info("planned %.1f m through %d nodes in %.3f s (cost %.2f, final v %.2f m/s)",
                    result.path.length, len(search_result.nodes), stats.planning_time,
                    search_result.total_cost, search_result.nodes[-1].velocity)
        return result

    @staticmethod
    def _to_vehicle_frame(polygon, vehicle_pose: Pose):
        polygon = affinity.translate(polygon, -vehicle_pose.x, -vehicle_pose.y)
        return affinity.rotate(polygon, -vehicle_pose.rot, origin=(0, 0), use_radians=True)

    def _edge_trajectory(self, start: np.ndarray, end: np.ndarray, params: SpiralPathParams,
                         initial_velocity: float, final_velocity: float) -> PlannedTrajectory:
        """ Dense resample of one edge with a constant acceleration velocity profile """
        num = max(2, int(math.ceil(params.sG / RECONSTRUCTION_STEP)))
        path = spiral_path_from_params(Pose(*start), Pose(*end), params).build_path(num)
        accel = (final_velocity*final_velocity - initial_velocity*initial_velocity) / (2*params.sG)
        s = np.linspace(0.0, params.sG, num)
        velocity = np.sqrt(np.maximum(0.0, 2*accel*s + initial_velocity*initial_velocity))
        return PlannedTrajectory(path[:, 0], path[:, 1], path[:, 2], path[:, 3], velocity, np.full(num, accel))

    def _reconstruct(self, evaluator: LatticeEdgeEvaluator, search_result: SearchResult, local_pose: Pose):
        """ :return: from-vehicle segment, its spiral, the whole trajectory (vehicle frame) """
        nodes = search_result.nodes
        first = nodes[0]
        edge = evaluator.vehicle_edge(search_result.vehicle_path_type, first.station, first.latitude)
        params = edge.params
        segment = self._edge_trajectory(edge.start, edge.end, params, local_pose.velocity, first.velocity)

        path = segment
        for prev, node in zip(nodes[:-1], nodes[1:]):
            edge = evaluator.lattice_edge_geometry(prev.station, prev.latitude, node.station, node.latitude)
            path = path.concatenate(self._edge_trajectory(edge.start, edge.end, edge.params, prev.velocity, node.velocity))
        return segment, params, path

import logging
import math
import time

import matplotlib.pyplot as plt
from shapely import affinity
from shapely.geometry import box

from lattice_planner.common.control.follow_controller import FollowController
from lattice_planner.common.control.stanley_controller import StanleyController
from lattice_planner.common.errors import ConfigurationError, PlannerInitError
from lattice_planner.common.geometry.math_utils import mps2kph
from lattice_planner.common.scenario.lane import LanePath
from lattice_planner.common.scenario.obstacle import DynamicObstacle, StaticObstacle
from lattice_planner.common.scenario.trajectory import PlannedTrajectory, Pose
from lattice_planner.common.vehicle.kinematic_model import update_next_kinematic_state
from lattice_planner.common.vehicle.vehicle import Vehicle
from lattice_planner.common.vehicle.vehicle_state import ActuatorState, VehicleState
from lattice_planner.lattice_planner import Stats
from lattice_planner.planning_worker import PlanningWorker, TrajectoryBuffer, decode_response, encode_request

logger = logging.getLogger(__name__)

CONTROLLERS = {
    'stanley': StanleyController,
    'follow': FollowController,
}
GOAL_DISTANCE = 5.0         # stop this far before the end of the lane [m]


class SimulationResult(object):
    def __init__(self):
        self.states = []                # VehicleState per tick
        self.collided = False
        self.goal_reached = False
        self.num_plans = 0
        self.num_failed_plans = 0
        self.time_list = []             # latency of each plan [s]
        self.stats = Stats()
        self.errors = []

    def __repr__(self):
        return (f'SimulationResult({len(self.states)} ticks, plans={self.num_plans}, failed={self.num_failed_plans}, '
                f'collided={self.collided}, goal_reached={self.goal_reached})')


def dynamic_obstacle_polygon(obstacle: DynamicObstacle, lane_path: LanePath, time: float):
    """ World footprint of a road-relative moving obstacle at `time` """
    station, latitude = obstacle.position_at_time(time)
    x, y, rot = lane_path.frame.sl_to_xy(station, latitude)
    half_s, half_l = obstacle.size
    polygon = affinity.rotate(box(-half_s, -half_l, half_s, half_l), float(rot), origin=(0, 0), use_radians=True)
    return affinity.translate(polygon, float(x), float(y))


def in_collision(vehicle: Vehicle, state: VehicleState, static_obstacles: list, dynamic_obstacles: list,
                 lane_path: LanePath, time: float) -> bool:
    footprint = vehicle.footprint(state.x, state.y, state.yaw)
    for obstacle in static_obstacles:
        if footprint.intersects(obstacle.polygon):
            return True
    for obstacle in dynamic_obstacles:
        if footprint.intersects(dynamic_obstacle_polygon(obstacle, lane_path, time)):
            return True
    return False


def build_scenario(cfg: dict):
    """
    Reads the SCENARIO section of a demo config.

    :return: lane path, static obstacles, dynamic obstacles, initial vehicle state
    """
    try:
        scenario = cfg['SCENARIO']
        lane_path = LanePath(scenario['lane'])
        static_obstacles = [StaticObstacle(**record) for record in scenario.get('static_obstacles') or []]
        dynamic_obstacles = [DynamicObstacle(**record) for record in scenario.get('dynamic_obstacles') or []]
        start = scenario.get('start', {})
    except (KeyError, TypeError) as exc:
        raise ConfigurationError(f"malformed SCENARIO section: {exc}") from exc

    x, y, rot = lane_path.sample_stations(float(start.get('station', 0.0)), 1, 1.0)[0, :3]
    initial_state = VehicleState(float(x), float(y), float(rot), float(start.get('speed', 0.0)))
    return lane_path, static_obstacles, dynamic_obstacles, initial_state


def simulate(lane_path: LanePath, static_obstacles: list, dynamic_obstacles: list, initial_state: VehicleState,
             vehicle_params=None, planner_config: dict = None, controller: str = 'stanley', dt: float = 0.1,
             sim_time: float = 10.0, replan_interval: float = 0.5, use_process: bool = False,
             show_animation: bool = False) -> SimulationResult:
    """
    Closed loop: kinematic vehicle, planning unit and a tracking controller.

    The planner starts from the pose the vehicle is expected to reach once the
    plan arrives, predicted along the current path with the average latency.
    """
    if controller not in CONTROLLERS:
        raise ConfigurationError(f"unknown controller '{controller}', expected one of {sorted(CONTROLLERS)}")

    result = SimulationResult()
    buffer = TrajectoryBuffer()
    tracker = None
    tracked_generation = 0
    state = initial_state
    last_submit = -math.inf
    area = 30.0  # animation area length [m]

    vehicle = Vehicle(vehicle_params)
    worker = PlanningWorker(vehicle_params, use_process=use_process).start()
    try:
        for i in range(int(round(sim_time / dt))):
            sim_t = i*dt
            curv = state.curvature(vehicle.wheel_base)
            pose = Pose(state.x, state.y, state.yaw, curv, velocity=state.v)

            # Plan!
            if not worker.busy and not worker.failed and sim_t - last_submit >= replan_interval - 1e-9:
                latency = worker.plan_time.value if use_process else 0.0
                start_pose = tracker.predict_pose_after_time(pose, latency) if tracker is not None else pose
                station, _ = lane_path.station_latitude_from_position(start_pose.x, start_pose.y)
                request = encode_request(start_pose, station, lane_path, sim_t + latency,
                                         static_obstacles, dynamic_obstacles, config=planner_config)
                if worker.submit(request, time.perf_counter()):
                    last_submit = sim_t

            response = worker.poll(time.perf_counter(), timeout=5.0 if use_process and worker.busy else 0.0)
            if response is not None:
                response = decode_response(response)
                if 'error' in response:
                    result.errors.append(response)
                    logger.error("planning error %s: %s", response['error_type'], response['error'])
                    if response['error_type'] == PlannerInitError.__name__:
                        break
                else:
                    result.num_plans += 1
                    result.time_list.append(worker.plan_time.values[-1] if worker.plan_time.values else 0.0)
                    result.stats += response['stats']
                    if response['path'] is None:
                        result.num_failed_plans += 1
                    else:
                        buffer.publish(response['path'])

            # Control
            generation, path = buffer.latest()
            if path is not None and generation != tracked_generation:
                if tracker is None:
                    tracker = CONTROLLERS[controller](path, vehicle)
                else:
                    tracker.replace_path(path)
                tracked_generation = generation
            if tracker is not None:
                controls = tracker.control(state, dt)
            else:
                controls = ActuatorState(vehicle.max_gas_accel, vehicle.max_brake_decel)
                controls.setPedals(0.0, 1.0)

            state = update_next_kinematic_state(state, controls, vehicle, dt)
            result.states.append(state)

            if in_collision(vehicle, state, static_obstacles, dynamic_obstacles, lane_path, sim_t + dt):
                logger.warning("collision at t=%.2f s, x=%.2f, y=%.2f", sim_t + dt, state.x, state.y)
                result.collided = True
                break
            station, _ = lane_path.station_latitude_from_position(state.x, state.y)
            if station >= lane_path.arc_length - GOAL_DISTANCE:
                logger.info("end of lane reached at t=%.2f s", sim_t + dt)
                result.goal_reached = True
                break

            if show_animation:  # pragma: no cover
                plot_frame(lane_path, static_obstacles, dynamic_obstacles, state, path, sim_t, area)
    finally:
        worker.stop()

    if result.num_plans:
        result.stats.average(result.num_plans)
    logger.info("simulation finished: %s", result)

    if show_animation:  # pragma: no cover
        plt.grid(True)
        plt.show()
    return result


def plot_frame(lane_path: LanePath, static_obstacles: list, dynamic_obstacles: list, state: VehicleState,
               path: PlannedTrajectory, sim_t: float, area: float):  # pragma: no cover
    plt.cla()
    # for stopping simulation with the esc key.
    plt.gcf().canvas.mpl_connect(
        'key_release_event',
        lambda event: [exit(0) if event.key == 'escape' else None])
    centerline = lane_path.centerline
    plt.plot(centerline[:, 0], centerline[:, 1], '--', color='gray')
    for obstacle in static_obstacles:
        plt.fill(*obstacle.polygon.exterior.xy, color='k')
    for obstacle in dynamic_obstacles:
        plt.fill(*dynamic_obstacle_polygon(obstacle, lane_path, sim_t).exterior.xy, color='m')
    if path is not None:
        plt.plot(path.x, path.y, '-r')
    plt.plot(state.x, state.y, 'vc')
    plt.xlim(state.x - area, state.x + area)
    plt.ylim(state.y - area, state.y + area)
    plt.gca().set_aspect('equal')
    plt.title("v[km/h]:" + str(mps2kph(state.v))[0:4])
    plt.grid(True)
    plt.pause(0.0001)

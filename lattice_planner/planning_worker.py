import logging
import multiprocessing
import queue
import threading
from collections import deque

from omegaconf import DictConfig, OmegaConf

from lattice_planner.common.errors import InvalidInputError, PlannerInitError, PlanningError
from lattice_planner.common.geometry.spiral_path import SpiralPathParams
from lattice_planner.common.scenario.lane import LanePath
from lattice_planner.common.scenario.obstacle import DynamicObstacle, StaticObstacle, obstacle_from_dict
from lattice_planner.common.scenario.trajectory import PlannedTrajectory, Pose
from lattice_planner.common.vehicle.vehicle import Vehicle
from lattice_planner.lattice_planner import LatticePlanner, LatticePlannerSettings, Stats

logger = logging.getLogger(__name__)

REQUEST_FIELDS = ('config', 'vehicle_pose', 'vehicle_station', 'lane_path', 'start_time',
                  'static_obstacles', 'dynamic_obstacles', 'reset')


class MovingAverage(object):
    """ Exponentially weighted mean of the last `size` values, oldest first, `initial` until the first one arrives """
    def __init__(self, size: int = 10, initial: float = 0.0):
        self.values = deque(maxlen=size)
        self.initial = initial

    def add(self, value: float):
        self.values.append(value)

    @property
    def value(self) -> float:
        if not self.values:
            return self.initial
        k = 2 / (len(self.values) + 1)
        average = self.values[0]
        for value in list(self.values)[1:]:
            average = value*k + average*(1 - k)
        return average


class TrajectoryBuffer(object):
    """ Single writer, many readers handoff of the latest published trajectory

    Readers get the trajectory together with a generation counter that grows on
    every publish, so they can tell whether the path was replaced.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._trajectory = None
        self._generation = 0

    def publish(self, trajectory: PlannedTrajectory) -> int:
        with self._lock:
            self._trajectory = trajectory
            self._generation += 1
            return self._generation

    def latest(self):
        """ :return: generation, trajectory (None before the first publish) """
        with self._lock:
            return self._generation, self._trajectory

    def clear(self):
        with self._lock:
            self._trajectory = None
            self._generation += 1


def encode_request(vehicle_pose: Pose, vehicle_station: float, lane_path: LanePath, start_time: float = 0.0,
                   static_obstacles: list = (), dynamic_obstacles: list = (), config=None, reset: bool = False) -> dict:
    """ Plain-data planning request, safe to send to another process """
    if isinstance(config, DictConfig):
        config = OmegaConf.to_container(config)
    return {
        'config': dict(config) if config else {},
        'vehicle_pose': vehicle_pose.to_dict(),
        'vehicle_station': float(vehicle_station),
        'lane_path': lane_path.to_dict(),
        'start_time': float(start_time),
        'static_obstacles': [obstacle.to_dict() for obstacle in static_obstacles],
        'dynamic_obstacles': [obstacle.to_dict() for obstacle in dynamic_obstacles],
        'reset': bool(reset),
    }


def decode_request(data: dict) -> dict:
    """
    Revives a planning request.

    :raises InvalidInputError: on missing fields, unknown record types or bad values
    """
    if not isinstance(data, dict):
        raise InvalidInputError(f"request must be a mapping, got {type(data).__name__}")
    missing = [field for field in ('vehicle_pose', 'vehicle_station', 'lane_path') if field not in data]
    if missing:
        raise InvalidInputError(f"request is missing {missing}")
    unknown = set(data) - set(REQUEST_FIELDS) - {'request_id'}
    if unknown:
        raise InvalidInputError(f"request has unknown fields {sorted(unknown)}")

    static_obstacles = [obstacle_from_dict(record) for record in data.get('static_obstacles', [])]
    dynamic_obstacles = [obstacle_from_dict(record) for record in data.get('dynamic_obstacles', [])]
    if not all(isinstance(obstacle, StaticObstacle) for obstacle in static_obstacles):
        raise InvalidInputError("static_obstacles holds a non-static record")
    if not all(isinstance(obstacle, DynamicObstacle) for obstacle in dynamic_obstacles):
        raise InvalidInputError("dynamic_obstacles holds a non-dynamic record")
    if not isinstance(data['lane_path'], dict):
        raise InvalidInputError("lane_path must be a tagged record")
    try:
        vehicle_station = float(data['vehicle_station'])
        start_time = float(data.get('start_time', 0.0))
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"malformed request: {exc}") from exc

    return {
        'config': dict(data.get('config') or {}),
        'vehicle_pose': Pose.from_dict(data['vehicle_pose']),
        'vehicle_station': vehicle_station,
        'lane_path': LanePath.from_dict(data['lane_path']),
        'start_time': start_time,
        'static_obstacles': static_obstacles,
        'dynamic_obstacles': dynamic_obstacles,
        'reset': bool(data.get('reset', False)),
    }


def error_response(exc: Exception, request_id: int = None) -> dict:
    return {'error': str(exc), 'error_type': type(exc).__name__, 'request_id': request_id}


def decode_response(data: dict) -> dict:
    """ Revives the trajectories, spiral and statistics of a successful response; error responses pass through """
    if 'error' in data:
        return dict(data)
    response = dict(data)
    for key in ('path', 'from_vehicle_segment'):
        if response.get(key) is not None:
            response[key] = PlannedTrajectory.from_dict(response[key])
    if response.get('from_vehicle_params') is not None:
        response['from_vehicle_params'] = SpiralPathParams.from_dict(response['from_vehicle_params'])
    response['vehicle_pose'] = Pose.from_dict(response['vehicle_pose'])
    response['stats'] = Stats.from_dict(response['stats'])
    return response


class PlanningSession(object):
    """ Planner state owned by the planning unit; rebuilt when the request config changes """
    def __init__(self, vehicle: Vehicle):
        self.vehicle = vehicle
        self.config = None
        self.planner = None

    def _planner_for(self, config: dict) -> LatticePlanner:
        if self.planner is None or config != self.config:
            settings = LatticePlannerSettings.from_config(config, self.vehicle)
            self.planner = LatticePlanner(settings, self.vehicle)
            self.config = config
            logger.info("planner configured with %d override(s)", len(config))
        return self.planner

    def handle(self, data: dict) -> dict:
        request_id = data.get('request_id') if isinstance(data, dict) else None
        # noinspection PyBroadException
        try:
            request = decode_request(data)
            planner = self._planner_for(request['config'])
            result = planner.plan(request['vehicle_pose'], request['vehicle_station'], request['lane_path'],
                                  request['start_time'], request['static_obstacles'], request['dynamic_obstacles'],
                                  reset=request['reset'])
        except PlanningError as exc:
            logger.error("rejected request %s: %s", request_id, exc)
            return error_response(exc, request_id)
        except Exception as exc:
            logger.exception("planning failed for request %s", request_id)
            return error_response(exc, request_id)

        response = result.to_dict()
        response['request_id'] = request_id
        return response


def planning_loop(request_queue, response_queue, vehicle_params: dict = None):
    """ Body of the planning process: one response per request until a None request arrives """
    # noinspection PyBroadException
    try:
        vehicle = Vehicle(OmegaConf.create(vehicle_params) if vehicle_params is not None else None)
        session = PlanningSession(vehicle)
    except Exception as exc:
        logger.critical("planning unit failed to start: %s", exc)
        response_queue.put(error_response(PlannerInitError(f"planning unit failed to start: {exc}")))
        return

    while True:
        request = request_queue.get()
        if request is None:
            break
        response_queue.put(session.handle(request))


class PlanningWorker(object):
    """ PlanningWorker

    Runs the planner in a separate process (or inline with `use_process=False`)
    with at most one request in flight. `reset()` drops the pending result and
    makes the next request restart the planner state.

    Attributes
    ------
        `plan_time` (`MovingAverage`): wall time between submit and response [s]
        `failed` (`bool`): True once the planning unit reported an init failure
    """
    def __init__(self, vehicle_params=None, use_process: bool = True, average_window: int = 10):
        if isinstance(vehicle_params, DictConfig):
            vehicle_params = OmegaConf.to_container(vehicle_params)
        self.vehicle_params = vehicle_params
        self.use_process = use_process
        self.plan_time = MovingAverage(average_window)
        self.failed = False
        self.busy = False

        self._next_id = 0
        self._stale = False
        self._reset_next = False
        self._submit_time = None
        self._process = None
        self._requests = None
        self._responses = None
        self._session = None
        self._inline_response = None

    def start(self):
        if self.use_process:
            context = multiprocessing.get_context()
            self._requests = context.Queue()
            self._responses = context.Queue()
            self._process = context.Process(target=planning_loop, args=(self._requests, self._responses, self.vehicle_params),
                                            daemon=True)
            self._process.start()
            logger.debug("planning process %s started", self._process.pid)
        else:
            # noinspection PyBroadException
            try:
                self._session = PlanningSession(Vehicle(OmegaConf.create(self.vehicle_params) if self.vehicle_params else None))
            except Exception as exc:
                self.failed = True
                self._inline_response = error_response(PlannerInitError(f"planning unit failed to start: {exc}"))
                logger.critical("planning unit failed to start: %s", exc)
        return self

    def stop(self):
        if self._process is not None:
            self._requests.put(None)
            self._process.join(timeout=5.0)
            if self._process.is_alive():
                self._process.terminate()
            self._process = None
        self._session = None
        self.busy = False

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_value, traceback):
        self.stop()

    def reset(self):
        """ Discards the in-flight result, if any; the next request carries reset=True """
        if self.busy:
            self._stale = True
        self._reset_next = True

    def submit(self, request: dict, now: float) -> bool:
        """
        Sends an encoded request unless one is already in flight.

        :param now: submit time on the caller's clock [s]
        :return: False when busy or unusable
        """
        if self.busy or self.failed:
            return False
        request = dict(request)
        request['request_id'] = self._next_id
        self._next_id += 1
        if self._reset_next:
            request['reset'] = True
            self._reset_next = False

        self.busy = True
        self._submit_time = now
        if self.use_process:
            self._requests.put(request)
        else:
            self._inline_response = self._session.handle(request)
        return True

    def poll(self, now: float, timeout: float = 0.0):
        """
        Collects the response of the in-flight request.

        :return: response dict, or None while pending or when the result went stale
        """
        response = self._receive(timeout)
        if response is None:
            return None
        if response.get('error_type') == PlannerInitError.__name__:
            self.failed = True
            self.busy = False
            return response

        self.busy = False
        if self._submit_time is not None:
            self.plan_time.add(now - self._submit_time)
        if self._stale:
            self._stale = False
            logger.debug("dropped stale response %s", response.get('request_id'))
            return None
        return response

    def _receive(self, timeout: float):
        if not self.use_process:
            response, self._inline_response = self._inline_response, None
            return response
        if self._responses is None:
            return None
        try:
            return self._responses.get(timeout=timeout) if timeout > 0 else self._responses.get_nowait()
        except queue.Empty:
            return None

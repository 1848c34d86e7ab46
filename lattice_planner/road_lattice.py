import numpy as np

from lattice_planner.common.errors import ConfigurationError
from lattice_planner.common.geometry.math_utils import to_vehicle_frame, unifyAngleRange
from lattice_planner.common.scenario.lane import LanePath
from lattice_planner.common.scenario.trajectory import Pose


def lattice_latitudes(num_latitudes: int, lane_width: float) -> np.ndarray:
    """ Latitude offsets symmetric about the center index, spanning the lane width """
    if num_latitudes < 1 or num_latitudes % 2 == 0:
        raise ConfigurationError(f"the number of latitudes must be odd, got {num_latitudes}")
    center = num_latitudes // 2
    if center == 0:
        return np.zeros(1)
    return (np.arange(num_latitudes) - center) / center * lane_width / 2


def offset_curvature(curv: np.ndarray, latitudes: np.ndarray) -> np.ndarray:
    """ Curvature of the curve parallel to the centerline at each latitude, exactly 0 on straight sections """
    curv = np.asarray(curv, dtype=float)[:, np.newaxis]
    with np.errstate(divide='ignore'):
        offset = 1.0 / (1.0 / curv - latitudes[np.newaxis, :])
    return np.where(curv == 0.0, 0.0, offset)


class RoadLattice(object):
    """ RoadLattice

    Station x latitude grid of candidate goal poses for one planning cycle.

    Attributes
    ------
        `nodes` (`np.ndarray`): (num_stations, num_latitudes, 4) rows of [x, y, rot, curv]
        `latitudes` (`np.ndarray`): lateral offset of each latitude index [m]
        `start_station` (`float`): lane station of the first lattice station [m]
        `station_interval` (`float`): [m]
    """
    def __init__(self, lane_path: LanePath, start_station: float, settings, vehicle_pose: Pose = None):
        self.num_stations = settings.num_stations
        self.num_latitudes = settings.num_latitudes
        self.station_connectivity = settings.station_connectivity
        self.latitude_connectivity = settings.latitude_connectivity
        self.station_interval = settings.spatial_horizon / settings.num_stations
        self.start_station = start_station

        centerline = lane_path.sample_stations(start_station, self.num_stations, self.station_interval)
        self.latitudes = lattice_latitudes(self.num_latitudes, settings.lane_width)

        rot = centerline[:, 2][:, np.newaxis]
        x = centerline[:, 0][:, np.newaxis] - self.latitudes[np.newaxis, :]*np.sin(rot)
        y = centerline[:, 1][:, np.newaxis] + self.latitudes[np.newaxis, :]*np.cos(rot)
        rot = np.broadcast_to(rot, x.shape)
        curv = offset_curvature(centerline[:, 3], self.latitudes)

        if vehicle_pose is not None:
            xy = to_vehicle_frame(np.stack([x, y], axis=-1), vehicle_pose.x, vehicle_pose.y, vehicle_pose.rot)
            x, y = xy[..., 0], xy[..., 1]
            rot = unifyAngleRange(rot - vehicle_pose.rot)
        self.nodes = np.stack([x, y, rot, curv], axis=-1)

    @property
    def shape(self) -> tuple:
        return self.num_stations, self.num_latitudes

    def station_of(self, station: int) -> float:
        """ lane station of a lattice station index [m] """
        self._check(station, 0)
        return self.start_station + station*self.station_interval

    def node(self, station: int, latitude: int) -> np.ndarray:
        self._check(station, latitude)
        return self.nodes[station, latitude]

    def _check(self, station: int, latitude: int):
        if not (0 <= station < self.num_stations and 0 <= latitude < self.num_latitudes):
            raise IndexError(f"lattice node ({station}, {latitude}) outside {self.num_stations} x {self.num_latitudes}")

    def latitude_window(self, latitude: int) -> range:
        half = self.latitude_connectivity // 2
        return range(max(latitude - half, 0), min(latitude + half + 1, self.num_latitudes))

    def origins(self, station: int, latitude: int):
        """ Lattice nodes with an edge into (station, latitude), nearest station first """
        self._check(station, latitude)
        for prev_station in range(station - 1, max(station - self.station_connectivity, 0) - 1, -1):
            for prev_latitude in self.latitude_window(latitude):
                yield prev_station, prev_latitude

    def reachable_from_vehicle(self, station: int) -> bool:
        return 0 <= station < self.station_connectivity

    def edges(self):
        """ Every (prev_station, prev_latitude, station, latitude) ring to ring edge """
        for station in range(self.num_stations):
            for latitude in range(self.num_latitudes):
                for prev_station, prev_latitude in self.origins(station, latitude):
                    yield prev_station, prev_latitude, station, latitude

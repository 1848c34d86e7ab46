import math
from enum import Enum

import numpy as np
from shapely import Polygon, affinity, box

from lattice_planner.common.errors import InvalidInputError


class DynamicObstacleType(Enum):
    VEHICLE = 'vehicle'
    CYCLIST = 'cyclist'
    PEDESTRIAN = 'pedestrian'

# half length along the road, half width across it [m]
DYNAMIC_OBSTACLE_SIZES = {
    DynamicObstacleType.VEHICLE: (2.5, 1.0),
    DynamicObstacleType.CYCLIST: (1.2, 0.6),
    DynamicObstacleType.PEDESTRIAN: (0.6, 0.6),
}


def _finite_fields(name: str, **fields):
    for key, value in fields.items():
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidInputError(f"{name} field '{key}' must be a finite number, got {value!r}")


class StaticObstacle(object):
    """ StaticObstacle

    Rectangle fixed in world coordinates.

    Attributes
    ------
        `x`, `y` (`float`): center position [m]
        `rot` (`float`): orientation of the `width` side [rad]
        `width`, `height` (`float`): full side lengths [m]
    """
    def __init__(self, x: float, y: float, rot: float, width: float, height: float):
        _finite_fields('static obstacle', x=x, y=y, rot=rot, width=width, height=height)
        if width <= 0.0 or height <= 0.0:
            raise InvalidInputError(f"static obstacle must have positive size, got {width} x {height}")
        self.x = x
        self.y = y
        self.rot = rot
        self.width = width
        self.height = height
        self.polygon: Polygon = self.construct_polygon()

    def __repr__(self):
        return f'StaticObstacle(x={self.x:.2f}, y={self.y:.2f}, rot={self.rot:.2f}, {self.width:.2f} x {self.height:.2f})'

    def construct_polygon(self) -> Polygon:
        polygon = box(-self.width/2, -self.height/2, self.width/2, self.height/2)
        polygon = affinity.rotate(polygon, self.rot, origin=(0, 0), use_radians=True)
        return affinity.translate(polygon, self.x, self.y)

    @property
    def vertices(self) -> np.ndarray:
        """ (4, 2) corner positions """
        return np.asarray(self.polygon.exterior.coords)[:4]

    def to_dict(self) -> dict:
        return {'type': 'static_obstacle', 'x': self.x, 'y': self.y, 'rot': self.rot,
                'width': self.width, 'height': self.height}

    @classmethod
    def from_dict(cls, data: dict):
        try:
            return cls(float(data['x']), float(data['y']), float(data['rot']), float(data['width']), float(data['height']))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidInputError(f"malformed static obstacle {data!r}: {exc}") from exc


class DynamicObstacle(object):
    """ DynamicObstacle

    Box moving with constant velocity in road-relative coordinates.

    Attributes
    ------
        `type` (`DynamicObstacleType`): vehicle / cyclist / pedestrian
        `start_pos` (`np.ndarray`): (station, latitude) at time 0 [m]
        `velocity` (`np.ndarray`): (station rate, latitude rate) [m/s]
        `parallel` (`bool`): long side along the road if True
        `size` (`tuple`): half extents along and across the road [m]
    """
    def __init__(self, type, start_pos, velocity, parallel: bool = True):
        try:
            self.type = DynamicObstacleType(type.value if isinstance(type, DynamicObstacleType) else type)
        except ValueError as exc:
            raise InvalidInputError(f"unknown dynamic obstacle type {type!r}") from exc
        self.start_pos = np.asarray(start_pos, dtype=float)
        self.velocity = np.asarray(velocity, dtype=float)
        if self.start_pos.shape != (2,) or self.velocity.shape != (2,):
            raise InvalidInputError("dynamic obstacle position and velocity must be 2D vectors")
        if not (np.all(np.isfinite(self.start_pos)) and np.all(np.isfinite(self.velocity))):
            raise InvalidInputError("dynamic obstacle position and velocity must be finite")
        self.parallel = bool(parallel)

        half_s, half_l = DYNAMIC_OBSTACLE_SIZES[self.type]
        self.size = (half_s, half_l) if self.parallel else (half_l, half_s)

    def __repr__(self):
        return f'DynamicObstacle({self.type.value}, start={self.start_pos.tolist()}, velocity={self.velocity.tolist()})'

    def position_at_time(self, time: float) -> np.ndarray:
        return self.start_pos + self.velocity*time

    def positions_in_time_range(self, start_time: float, end_time: float, num_frames: int) -> np.ndarray:
        """ (num_frames + 1, 2) evenly spaced positions including both ends """
        times = np.linspace(start_time, end_time, num_frames + 1)
        return self.start_pos + times[:, np.newaxis]*self.velocity

    def polygons_in_time_range(self, start_time: float, end_time: float, num_frames: int,
                               lethal_dilation: tuple, hazard_dilation: tuple):
        """
        Footprints swept over a time window.

        :param lethal_dilation: (station, latitude) margin always forbidden [m]
        :param hazard_dilation: (station, latitude) extra margin around the lethal footprint [m]
        :return: hazard polygons, lethal polygons
        """
        positions = self.positions_in_time_range(start_time, end_time, num_frames)
        lethal_s = self.size[0] + lethal_dilation[0]
        lethal_l = self.size[1] + lethal_dilation[1]
        hazard_s = lethal_s + hazard_dilation[0]
        hazard_l = lethal_l + hazard_dilation[1]
        hazard = [box(s - hazard_s, l - hazard_l, s + hazard_s, l + hazard_l) for s, l in positions]
        lethal = [box(s - lethal_s, l - lethal_l, s + lethal_s, l + lethal_l) for s, l in positions]
        return hazard, lethal

    def to_dict(self) -> dict:
        return {'type': 'dynamic_obstacle', 'obstacle_type': self.type.value,
                'start_pos': self.start_pos.tolist(), 'velocity': self.velocity.tolist(), 'parallel': self.parallel}

    @classmethod
    def from_dict(cls, data: dict):
        try:
            return cls(data['obstacle_type'], data['start_pos'], data['velocity'], data.get('parallel', True))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidInputError(f"malformed dynamic obstacle {data!r}: {exc}") from exc


OBSTACLE_TYPES = {
    'static_obstacle': StaticObstacle,
    'dynamic_obstacle': DynamicObstacle,
}


def obstacle_from_dict(data: dict):
    """ Revives a field-tagged obstacle record """
    if not isinstance(data, dict):
        raise InvalidInputError(f"obstacle record must be a mapping, got {type(data).__name__}")
    kind = OBSTACLE_TYPES.get(data.get('type'))
    if kind is None:
        raise InvalidInputError(f"unknown obstacle record type {data.get('type')!r}")
    return kind.from_dict(data)

import math

import numpy as np

from lattice_planner.common.errors import InvalidInputError
from lattice_planner.common.geometry.math_utils import to_world_frame, unifyAngleRange


class Pose(object):
    def __init__(self, x: float = 0.0, y: float = 0.0, rot: float = 0.0, curv: float = 0.0,
                       dcurv: float = 0.0, ddcurv: float = 0.0, velocity: float = 0.0, acceleration: float = 0.0):
        self.x = x
        self.y = y
        self.rot = rot                      # heading [rad]
        self.curv = curv                    # curvature [1/m]
        self.dcurv = dcurv                  # curvature rate wrt arc length [1/m^2]
        self.ddcurv = ddcurv                # [1/m^3]
        self.velocity = velocity            # [m/s]
        self.acceleration = acceleration    # [m/s^2]

    def __repr__(self):
        return f'Pose(x={self.x:.2f}, y={self.y:.2f}, rot={self.rot:.3f}, curv={self.curv:.4f}, v={self.velocity:.2f})'

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.rot, self.curv])

    def validate(self):
        values = (self.x, self.y, self.rot, self.curv, self.dcurv, self.ddcurv, self.velocity, self.acceleration)
        if not all(math.isfinite(v) for v in values):
            raise InvalidInputError(f"pose has non-finite fields: {self!r}")

    def to_dict(self) -> dict:
        return {'x': self.x, 'y': self.y, 'rot': self.rot, 'curv': self.curv,
                'dcurv': self.dcurv, 'ddcurv': self.ddcurv,
                'velocity': self.velocity, 'acceleration': self.acceleration}

    @classmethod
    def from_dict(cls, data: dict):
        try:
            pose = cls(**{key: float(value) for key, value in data.items()})
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(f"malformed pose {data!r}: {exc}") from exc
        pose.validate()
        return pose


class PlannedTrajectory(object):
    """ PlannedTrajectory

    Ordered poses with strictly increasing arc length, each tagged with the
    target velocity and acceleration. Arrays are read-only once built; derive a
    new trajectory instead of editing one.

    Attributes
    ------
        `s` (`np.ndarray`): arc length of each pose from the first one [m]
        `x`, `y`, `rot`, `curv` (`np.ndarray`): geometry of each pose
        `velocity`, `acceleration` (`np.ndarray`): target speed profile
    """
    FIELDS = ('x', 'y', 'rot', 'curv', 'velocity', 'acceleration')

    def __init__(self, x, y, rot, curv, velocity=None, acceleration=None):
        x = np.asarray(x, dtype=float)
        n = len(x)
        self.x = x.copy()
        self.y = np.array(y, dtype=float)
        self.rot = np.array(rot, dtype=float)
        self.curv = np.array(curv, dtype=float)
        self.velocity = np.zeros(n) if velocity is None else np.array(velocity, dtype=float)
        self.acceleration = np.zeros(n) if acceleration is None else np.array(acceleration, dtype=float)
        for field in self.FIELDS:
            if getattr(self, field).shape != (n,):
                raise InvalidInputError(f"trajectory field '{field}' does not match {n} poses")

        self.s = np.concatenate([[0.0], np.cumsum(np.hypot(np.diff(self.x), np.diff(self.y)))])
        for field in self.FIELDS + ('s',):
            getattr(self, field).setflags(write=False)

    def __len__(self):
        return len(self.x)

    def __repr__(self):
        return f'PlannedTrajectory with {len(self)} poses, length={self.length:.2f}'

    @property
    def length(self) -> float:
        return float(self.s[-1]) if len(self) else 0.0

    def positions(self) -> np.ndarray:
        return np.column_stack([self.x, self.y])

    def concatenate(self, other: 'PlannedTrajectory') -> 'PlannedTrajectory':
        """ Appends `other`, dropping its first pose when it repeats our last one """
        if len(self) == 0:
            return other
        skip = 1 if len(other) and np.hypot(other.x[0] - self.x[-1], other.y[0] - self.y[-1]) < 1e-6 else 0
        return PlannedTrajectory(*(np.concatenate([getattr(self, f), getattr(other, f)[skip:]]) for f in self.FIELDS))

    def to_world_frame(self, origin: Pose) -> 'PlannedTrajectory':
        """ Interprets the poses as relative to `origin` and returns them in world coordinates """
        xy = to_world_frame(self.positions(), origin.x, origin.y, origin.rot)
        return PlannedTrajectory(xy[:, 0], xy[:, 1], unifyAngleRange(self.rot + origin.rot), self.curv,
                                 self.velocity, self.acceleration)

    def to_dict(self) -> dict:
        data = {field: getattr(self, field).tolist() for field in self.FIELDS}
        data['type'] = 'planned_trajectory'
        return data

    @classmethod
    def from_dict(cls, data: dict):
        if data.get('type', 'planned_trajectory') != 'planned_trajectory':
            raise InvalidInputError(f"expected a planned_trajectory, got '{data.get('type')}'")
        return cls(*(data[field] for field in cls.FIELDS))

import math

import numpy as np
from scipy.interpolate import CubicSpline

from lattice_planner.common.errors import InvalidInputError
from lattice_planner.common.scenario.frenet import FrenetFrame

LANE_SAMPLE_STEP = 0.1      # resolution of the arc-length table [m]


class LanePath(object):
    """ LanePath

    Lane reference centerline through a list of anchor points, interpolated by a
    natural cubic spline over chord length and re-parameterised by arc length.

    Attributes
    ------
        `anchors` (`np.ndarray`): (N, 2) anchor positions, N >= 2
        `arc_length` (`float`): centerline length [m]
        `frame` (`FrenetFrame`): dense centerline used for position -> station lookups
    """
    def __init__(self, anchors):
        anchors = np.asarray(anchors, dtype=float)
        if anchors.ndim != 2 or anchors.shape[1] != 2 or len(anchors) < 2:
            raise InvalidInputError(f"a lane path needs at least two (x, y) anchors, got shape {anchors.shape}")
        if not np.all(np.isfinite(anchors)):
            raise InvalidInputError("lane anchors must be finite")
        chords = np.hypot(*np.diff(anchors, axis=0).T)
        if np.any(chords < 1e-6):
            raise InvalidInputError("consecutive lane anchors must be distinct")

        self.anchors = anchors
        knots = np.concatenate([[0.0], np.cumsum(chords)])
        self.spline_x = CubicSpline(knots, anchors[:, 0], bc_type='natural')
        self.spline_y = CubicSpline(knots, anchors[:, 1], bc_type='natural')

        self.params = np.linspace(0.0, knots[-1], max(2, int(math.ceil(knots[-1] / LANE_SAMPLE_STEP)) + 1))
        x, y, rot, curv = self._evaluate(self.params)
        self.stations = np.concatenate([[0.0], np.cumsum(np.hypot(np.diff(x), np.diff(y)))])
        self.arc_length = float(self.stations[-1])
        self.frame = FrenetFrame(x, y, rot, curv, self.stations)

    def _evaluate(self, t):
        dx, dy = self.spline_x(t, 1), self.spline_y(t, 1)
        ddx, ddy = self.spline_x(t, 2), self.spline_y(t, 2)
        speed_sq = dx*dx + dy*dy
        curv = (dx*ddy - dy*ddx) / (speed_sq * np.sqrt(speed_sq))
        return self.spline_x(t), self.spline_y(t), np.arctan2(dy, dx), curv

    @property
    def centerline(self) -> np.ndarray:
        return np.column_stack([self.frame.x, self.frame.y])

    def sample_stations(self, start_station: float, num: int, interval: float) -> np.ndarray:
        """
        Samples the centerline every `interval` meters starting at `start_station`.

        Stations past either end continue straight along the end heading.

        :return: (num, 4) rows of [x, y, rot, curv]
        """
        stations = start_station + np.arange(num) * interval
        clamped = np.clip(stations, 0.0, self.arc_length)
        x, y, rot, curv = self._evaluate(np.interp(clamped, self.stations, self.params))
        overshoot = stations - clamped
        x = x + overshoot*np.cos(rot)
        y = y + overshoot*np.sin(rot)
        curv = np.where(overshoot == 0.0, curv, 0.0)
        return np.column_stack([x, y, rot, curv])

    def station_latitude_from_position(self, x: float, y: float):
        station, latitude = self.frame.xy_to_sl(x, y)
        return float(station[0]), float(latitude[0])

    def to_dict(self) -> dict:
        return {'type': 'lane_path', 'anchors': self.anchors.tolist()}

    @classmethod
    def from_dict(cls, data: dict):
        if data.get('type') != 'lane_path':
            raise InvalidInputError(f"expected a lane_path, got '{data.get('type')}'")
        try:
            anchors = np.asarray(data['anchors'], dtype=float)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidInputError(f"malformed lane path {data!r}: {exc}") from exc
        return cls(anchors)

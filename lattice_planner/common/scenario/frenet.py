import numpy as np
from scipy.spatial import cKDTree

from lattice_planner.common.errors import InvalidInputError


class FrenetFrame(object):
    """ FrenetFrame

    Road-relative (station, latitude) frame spanned by a sampled centerline.
    Latitude is positive to the left of the driving direction.

    Attributes
    ------
        `x`, `y`, `rot`, `curv` (`np.ndarray`): centerline samples
        `stations` (`np.ndarray`): station of each sample, strictly increasing [m]
    """
    def __init__(self, x, y, rot, curv=None, stations=None):
        self.x = np.asarray(x, dtype=float)
        self.y = np.asarray(y, dtype=float)
        self.rot = np.unwrap(np.asarray(rot, dtype=float))
        self.curv = np.zeros_like(self.x) if curv is None else np.asarray(curv, dtype=float)
        if len(self.x) < 2:
            raise InvalidInputError("a road frame needs at least two centerline samples")

        if stations is None:
            stations = np.concatenate([[0.0], np.cumsum(np.hypot(np.diff(self.x), np.diff(self.y)))])
        self.stations = np.asarray(stations, dtype=float)
        if np.any(np.diff(self.stations) <= 0.0):
            raise InvalidInputError("centerline stations must be strictly increasing")

        self.tree = cKDTree(np.column_stack([self.x, self.y]))

    @classmethod
    def from_samples(cls, samples: np.ndarray, start_station: float = 0.0, interval: float = None):
        """ Builds the frame from (N, 4) rows of [x, y, rot, curv] sampled every `interval` meters """
        stations = None if interval is None else start_station + np.arange(len(samples)) * interval
        return cls(samples[:, 0], samples[:, 1], samples[:, 2], samples[:, 3], stations)

    @property
    def bounds(self):
        return self.x.min(), self.y.min(), self.x.max(), self.y.max()

    def sl_to_xy(self, station, latitude):
        """
        Maps road-relative coordinates to positions, broadcasting `station` against `latitude`.

        Stations outside the sampled range clamp to the first or last sample.

        :return: x, y, rot arrays
        """
        station = np.asarray(station, dtype=float)
        latitude = np.asarray(latitude, dtype=float)
        cx = np.interp(station, self.stations, self.x)
        cy = np.interp(station, self.stations, self.y)
        rot = np.interp(station, self.stations, self.rot)
        return cx - latitude*np.sin(rot), cy + latitude*np.cos(rot), rot + 0.0*latitude

    def xy_to_sl(self, x, y):
        """
        Projects positions onto the centerline.

        Finds the nearest sample, picks the neighbouring segment the point
        actually falls on, and projects onto it. Only the two end segments
        extrapolate past the sampled range.

        :return: station, latitude arrays
        """
        x = np.atleast_1d(np.asarray(x, dtype=float))
        y = np.atleast_1d(np.asarray(y, dtype=float))
        last = len(self.x) - 1
        _, nearest = self.tree.query(np.column_stack([x, y]))
        nearest = np.minimum(nearest, last)

        prev_idx = np.clip(nearest - 1, 0, last - 1)
        # past the nearest sample, use the segment that leaves it
        middle = (nearest > 0) & (nearest < last)
        progress_on_prev = self._progress(prev_idx, prev_idx + 1, x, y)
        prev_idx = np.where(middle & (progress_on_prev >= 1.0), nearest, prev_idx)
        next_idx = prev_idx + 1

        progress = self._progress(prev_idx, next_idx, x, y)
        low = np.where(prev_idx == 0, -np.inf, 0.0)
        high = np.where(next_idx == last, np.inf, 1.0)
        progress = np.clip(progress, low, high)

        seg_x = self.x[next_idx] - self.x[prev_idx]
        seg_y = self.y[next_idx] - self.y[prev_idx]
        proj_x = self.x[prev_idx] + progress*seg_x
        proj_y = self.y[prev_idx] + progress*seg_y

        station = self.stations[prev_idx] + (self.stations[next_idx] - self.stations[prev_idx]) * progress
        cross = seg_x*(y - self.y[prev_idx]) - seg_y*(x - self.x[prev_idx])
        latitude = np.sign(cross) * np.hypot(x - proj_x, y - proj_y)
        return station, latitude

    def _progress(self, prev_idx, next_idx, x, y):
        seg_x = self.x[next_idx] - self.x[prev_idx]
        seg_y = self.y[next_idx] - self.y[prev_idx]
        return ((x - self.x[prev_idx])*seg_x + (y - self.y[prev_idx])*seg_y) / (seg_x*seg_x + seg_y*seg_y)

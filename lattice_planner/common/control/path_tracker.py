import math

import numpy as np

from lattice_planner.common.errors import InvalidInputError
from lattice_planner.common.geometry.math_utils import unifyAngleRange
from lattice_planner.common.scenario.trajectory import PlannedTrajectory, Pose
from lattice_planner.common.vehicle.vehicle import Vehicle

SEARCH_WINDOW = 20          # poses searched on each side of the previous index


def project_point_on_segment(point: np.ndarray, start: np.ndarray, end: np.ndarray):
    """ :return: projection on the line through the segment, progress along it (unclamped) """
    segment = end - start
    progress = float(np.dot(point - start, segment) / np.dot(segment, segment))
    return start + progress*segment, progress


class PathTracker(object):
    """ PathTracker

    Windowed nearest-segment search along a planned trajectory, shared by the
    controllers. Subclasses pick the tracked reference point (rear or front axle).

    Attributes
    ------
        `path` (`PlannedTrajectory`): trajectory being tracked, rear axle poses
        `points` (`np.ndarray`): (N, 2) reference points of each pose
        `next_index` (`int`): index of the pose the vehicle is approaching
    """
    def __init__(self, path: PlannedTrajectory, vehicle: Vehicle):
        self.vehicle = vehicle
        self.path = None
        self.points = None
        self.next_index = 1
        self.replace_path(path)

    def reference_points(self, x, y, rot) -> np.ndarray:
        return np.column_stack([x, y])

    def reference_point(self, pose: Pose) -> np.ndarray:
        return self.reference_points(np.atleast_1d(pose.x), np.atleast_1d(pose.y), np.atleast_1d(pose.rot))[0]

    def replace_path(self, path: PlannedTrajectory):
        if path is None or len(path) < 2:
            raise InvalidInputError("a tracked path needs at least two poses")
        self.path = path
        self.points = self.reference_points(path.x, path.y, path.rot)
        self.next_index = 1

    def find_next_index(self, point: np.ndarray):
        """
        Finds the pose the reference point is approaching.

        :return: next index, progress from the previous pose to it (unclamped), projected point
        """
        points = self.points
        last = len(points) - 1
        start = max(0, self.next_index - SEARCH_WINDOW)
        end = min(last, self.next_index + SEARCH_WINDOW)
        candidates = points[start:end]
        closest = start + int(np.argmin(np.sum((candidates - point)**2, axis=1)))

        if closest == last:
            projection, progress = project_point_on_segment(point, points[closest - 1], points[closest])
            return closest, progress, projection
        if closest == 0:
            projection, progress = project_point_on_segment(point, points[0], points[1])
            return 1, progress, projection

        preceding, preceding_progress = project_point_on_segment(point, points[closest - 1], points[closest])
        succeeding, succeeding_progress = project_point_on_segment(point, points[closest], points[closest + 1])
        if np.sum((point - preceding)**2) < np.sum((point - succeeding)**2):
            return closest, preceding_progress, preceding
        return closest + 1, succeeding_progress, succeeding

    def at_end(self, next_index: int, progress: float) -> bool:
        return next_index >= len(self.path) - 1 and progress >= 1.0

    def interpolate(self, field: str, next_index: int, progress: float) -> float:
        values = getattr(self.path, field)
        return float(values[next_index - 1] + (values[next_index] - values[next_index - 1]) * progress)

    def predict_pose_after_time(self, pose: Pose, prediction_time: float) -> Pose:
        """
        Pose expected after following the path for `prediction_time` seconds,
        starting from the projection of `pose`. A stopped vehicle stays put.
        """
        path = self.path
        next_index, progress, _ = self.find_next_index(self.reference_point(pose))
        velocity = pose.velocity
        if velocity <= 0.01:
            return pose

        progress = min(max(progress, 0.0), 1.0)
        while True:
            prev_xy = np.array([path.x[next_index - 1], path.y[next_index - 1]])
            next_xy = np.array([path.x[next_index], path.y[next_index]])
            segment_length = float(np.hypot(*(next_xy - prev_xy)))
            mean_velocity = max((velocity + path.velocity[next_index]) / 2, 0.01)
            time_to_next = segment_length * (1 - progress) / mean_velocity

            if time_to_next >= prediction_time or next_index + 1 >= len(path):
                new_progress = progress + mean_velocity*prediction_time / segment_length
                xy = prev_xy + (next_xy - prev_xy)*new_progress
                prev_rot = path.rot[next_index - 1]
                rot = unifyAngleRange(prev_rot + unifyAngleRange(path.rot[next_index] - prev_rot)*new_progress)
                dcurv = (path.curv[next_index] - path.curv[next_index - 1]) / segment_length
                return Pose(float(xy[0]), float(xy[1]), float(rot), self.interpolate('curv', next_index, new_progress),
                            float(dcurv), 0.0, float(path.velocity[next_index]), float(path.acceleration[next_index]))

            velocity = path.velocity[next_index]
            prediction_time -= time_to_next
            progress = 0.0
            next_index += 1


class FrontAxleTracker(PathTracker):
    """ Tracks the front axle positions of the path poses """
    def reference_points(self, x, y, rot) -> np.ndarray:
        wheel_base = self.vehicle.wheel_base
        return np.column_stack([np.asarray(x) + wheel_base*np.cos(rot), np.asarray(y) + wheel_base*np.sin(rot)])


def steering_command(desired_wheel_angle: float, wheel_angle: float, dt: float, max_steer_speed: float) -> float:
    """ Normalized steering rate that reaches the desired wheel angle within one tick """
    return min(max((desired_wheel_angle - wheel_angle) / dt / max_steer_speed, -1.0), 1.0)


def curvature_to_wheel_angle(curv: float, wheel_base: float) -> float:
    return math.atan(curv * wheel_base)

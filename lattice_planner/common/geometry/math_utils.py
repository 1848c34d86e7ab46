import numpy as np


def mps2kph(x):
    return x*3.6

def unifyAngleRange(angle):
    # wraps into (-pi, pi], works element-wise on arrays
    return np.pi - np.mod(np.pi - angle, 2*np.pi)

def limitWithinRange(value, lower_bound, upper_bound):
    return max(min(value, upper_bound), lower_bound)

def step(edge, x):
    return np.where(x < edge, 0.0, 1.0)

def to_vehicle_frame(points: np.ndarray, origin_x: float, origin_y: float, origin_rot: float) -> np.ndarray:
    """
    Expresses world points (N x 2) in the frame of a pose.

    :param points: world coordinates, one point per row
    :return: coordinates relative to (origin_x, origin_y) rotated by -origin_rot
    """
    points = np.asarray(points, dtype=float)
    cos_rot, sin_rot = np.cos(origin_rot), np.sin(origin_rot)
    dx = points[..., 0] - origin_x
    dy = points[..., 1] - origin_y
    return np.stack([cos_rot*dx + sin_rot*dy, -sin_rot*dx + cos_rot*dy], axis=-1)

def to_world_frame(points: np.ndarray, origin_x: float, origin_y: float, origin_rot: float) -> np.ndarray:
    points = np.asarray(points, dtype=float)
    cos_rot, sin_rot = np.cos(origin_rot), np.sin(origin_rot)
    x = points[..., 0]
    y = points[..., 1]
    return np.stack([cos_rot*x - sin_rot*y + origin_x, sin_rot*x + cos_rot*y + origin_y], axis=-1)

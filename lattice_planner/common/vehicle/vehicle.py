import math

import numpy as np
from omegaconf import DictConfig, OmegaConf
from shapely import affinity
from shapely.geometry import Polygon


def default_vehicle_params() -> DictConfig:
    return OmegaConf.create({
        'l': 5.0,                           # length [m]
        'w': 2.0,                           # width [m]
        'front_axle_pos': 1.56,             # front axle wrt box center [m]
        'rear_axle_pos': -1.37,             # rear axle wrt box center [m]
        'longitudinal': {
            'a_max': 3.5,                   # full-gas acceleration [m/ss]
            'b_max': 6.5,                   # full-brake deceleration [m/ss]
        },
        'steering': {
            'max': math.radians(32),        # wheel angle limit [rad]
            'v_max': 0.8,                   # wheel angle rate limit [rad/s]
        },
    })


class Vehicle(object):
    """ class that stores vehicle parameters

    Used by the planner settings, the controllers and the simulation harness.
    Poses handed around the planner refer to the rear axle.

    Attributes
    ------
        `l`, `w` (`float`): footprint size [m]
        `wheel_base` (`float`): rear to front axle distance [m]
        `rear_axle_to_center` (`float`): rear axle to box center distance [m]
        `max_curvature_rate` (`float`): curvature change per meter at full steering rate [1/m^2 per m/s]
        ...
    """
    def __init__(self, vehicle_params: DictConfig = None, safety_factor: float = 1.0):
        if vehicle_params is None:
            vehicle_params = default_vehicle_params()
        # vehicle dimensions
        self.l: float = vehicle_params.l * safety_factor
        self.w: float = vehicle_params.w * safety_factor

        # footprint coordinates around the box center (in clockwise direction)
        self.corners: list[tuple[float, float]] = [
                        (self.l/2, self.w/2),
                        (self.l/2, -self.w/2),
                        (-self.l/2, -self.w/2),
                        (-self.l/2, self.w/2),
                        (self.l/2, self.w/2),
                        ]
        self.polygon: Polygon = Polygon(self.corners)

        # kinematic parameters
        self.front_axle_pos: float = vehicle_params.front_axle_pos
        self.rear_axle_pos: float = vehicle_params.rear_axle_pos
        self.wheel_base = self.front_axle_pos - self.rear_axle_pos                 # [m]
        self.rear_axle_to_center = -self.rear_axle_pos                            # [m]
        self.max_gas_accel: float = vehicle_params.longitudinal.a_max             # [m/ss]
        self.max_brake_decel: float = vehicle_params.longitudinal.b_max           # [m/ss]
        self.max_wheel_angle: float = vehicle_params.steering.max                 # [rad]
        self.max_steer_speed: float = vehicle_params.steering.v_max               # [rad/s]
        self.max_curvature_rate = self.max_steer_speed / self.wheel_base          # [1/(m s)]

    def front_axle_position(self, x: float, y: float, rot: float) -> np.ndarray:
        """ front axle position from a rear axle pose """
        return np.array([x + self.wheel_base*math.cos(rot), y + self.wheel_base*math.sin(rot)])

    def footprint(self, x: float, y: float, rot: float) -> Polygon:
        """ footprint polygon from a rear axle pose """
        polygon = affinity.rotate(self.polygon, rot, origin=(0, 0), use_radians=True)
        return affinity.translate(polygon, x + self.rear_axle_to_center*math.cos(rot),
                                  y + self.rear_axle_to_center*math.sin(rot))

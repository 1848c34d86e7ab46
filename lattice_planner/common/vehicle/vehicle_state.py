import math

from lattice_planner.common.geometry.math_utils import limitWithinRange


class VehicleState(object):
    def __init__(self, x: float = 0.0, y: float = 0.0, yaw: float = 0.0, speed: float = 0.0, wheel_angle: float = 0.0):
        self.x = x                          # rear axle position [m]
        self.y = y
        self.yaw = yaw                      # [rad]
        self.v = speed                      # [m/s]
        self.wheel_angle = wheel_angle      # [rad]

    def __repr__(self):
        return f'VehicleState(x={self.x:.2f}, y={self.y:.2f}, yaw={self.yaw:.3f}, v={self.v:.2f}, wheel={self.wheel_angle:.3f})'

    def curvature(self, wheel_base: float) -> float:
        return math.tan(self.wheel_angle) / wheel_base


class ActuatorState(object):
    """ Normalized actuator commands: gas and brake in [0, 1], steering rate in [-1, 1] """
    def __init__(self, max_accel: float, max_decel: float):
        self.gas = 0.0
        self.brake = 0.0
        self.steer = 0.0
        self.max_accel = max_accel
        self.max_decel = max_decel

    def __repr__(self):
        return f'ActuatorState(gas={self.gas:.2f}, brake={self.brake:.2f}, steer={self.steer:.2f})'

    def setAccel(self, a):
        self.gas = min(max(0.0, a) / self.max_accel, 1.0)
        self.brake = min(max(0.0, -a) / self.max_decel, 1.0)

    def setPedals(self, gas, brake):
        self.gas = limitWithinRange(gas, 0.0, 1.0)
        self.brake = limitWithinRange(brake, 0.0, 1.0)

    def setSteer(self, steer):
        self.steer = limitWithinRange(steer, -1.0, 1.0)

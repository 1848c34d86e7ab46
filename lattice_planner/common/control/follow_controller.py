import math

import numpy as np

from lattice_planner.common.control.path_tracker import PathTracker, curvature_to_wheel_angle, steering_command
from lattice_planner.common.control.pid import PID
from lattice_planner.common.scenario.trajectory import PlannedTrajectory
from lattice_planner.common.vehicle.vehicle import Vehicle
from lattice_planner.common.vehicle.vehicle_state import ActuatorState, VehicleState


class FollowController(PathTracker):
    """ FollowController

    Rear axle follower of the planned velocity profile: a PD loop on the
    velocity error plus feed-forward of the planned acceleration drives the
    pedals, and the planned curvature sets the wheel angle.
    """
    def __init__(self, path: PlannedTrajectory, vehicle: Vehicle, dt: float = 0.1, Kp: float = 1.0, Kd: float = 0.1):
        super().__init__(path, vehicle)
        self.velocity_pid = PID(dt, vehicle.max_gas_accel, -vehicle.max_brake_decel, Kp, Kd, 0.0)

    def reset(self):
        self.velocity_pid.clear()

    def target_velocity(self, next_index: int, progress: float) -> float:
        """ Constant acceleration profile between the two surrounding poses """
        path = self.path
        prev_velocity = path.velocity[next_index - 1]
        distance = path.s[next_index] - path.s[next_index - 1]
        progress = min(max(progress, 0.0), 1.0)
        return math.sqrt(max(0.0, 2*path.acceleration[next_index]*distance*progress + prev_velocity*prev_velocity))

    def control(self, state: VehicleState, dt: float) -> ActuatorState:
        controls = ActuatorState(self.vehicle.max_gas_accel, self.vehicle.max_brake_decel)
        next_index, progress, _ = self.find_next_index(np.array([state.x, state.y]))
        self.next_index = next_index

        if self.at_end(next_index, progress):
            controls.setPedals(0.0, 1.0)
            controls.setSteer(steering_command(0.0, state.wheel_angle, dt, self.vehicle.max_steer_speed))
            return controls

        self.velocity_pid.setSampleTime(dt)
        feedback = self.velocity_pid.calculate(self.target_velocity(next_index, progress), state.v)
        controls.setAccel(feedback + self.path.acceleration[next_index])

        curvature = self.interpolate('curv', next_index, min(max(progress, 0.0), 1.0))
        desired_wheel_angle = curvature_to_wheel_angle(curvature, self.vehicle.wheel_base)
        controls.setSteer(steering_command(desired_wheel_angle, state.wheel_angle, dt, self.vehicle.max_steer_speed))
        return controls

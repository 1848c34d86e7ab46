import math

import numpy as np

from lattice_planner.common.control.path_tracker import FrontAxleTracker, steering_command
from lattice_planner.common.geometry.math_utils import unifyAngleRange
from lattice_planner.common.scenario.trajectory import PlannedTrajectory
from lattice_planner.common.vehicle.vehicle import Vehicle
from lattice_planner.common.vehicle.vehicle_state import ActuatorState, VehicleState


class StanleyController(FrontAxleTracker):
    """ StanleyController

    Front axle path follower: steers out the heading error plus the arctangent
    of the cross track error over speed, and holds the stored velocity with a
    proportional pedal law. Brakes fully once past the end of the path.
    """
    def __init__(self, path: PlannedTrajectory, vehicle: Vehicle, k: float = 4.0, gain: float = 0.8, velocity_gain: float = 0.75):
        super().__init__(path, vehicle)
        self.k = k                              # cross track gain [1/s]
        self.gain = gain
        self.velocity_gain = velocity_gain      # pedal per m/s of velocity error
        self.cross_track_error = 0.0            # [m]
        self.heading_error = 0.0                # [rad]

    def desired_heading(self, next_index: int, progress: float) -> float:
        points = self.points
        last = len(points) - 1
        if next_index > 1:
            prev_heading = math.atan2(*(points[next_index] - points[next_index - 2])[::-1])
        else:
            prev_heading = float(self.path.rot[0])
        if next_index < last:
            next_heading = math.atan2(*(points[next_index + 1] - points[next_index - 1])[::-1])
        else:
            next_heading = float(self.path.rot[-1])
        return float(prev_heading + unifyAngleRange(next_heading - prev_heading) * progress)

    def control(self, state: VehicleState, dt: float) -> ActuatorState:
        controls = ActuatorState(self.vehicle.max_gas_accel, self.vehicle.max_brake_decel)
        front = self.vehicle.front_axle_position(state.x, state.y, state.yaw)
        next_index, progress, projection = self.find_next_index(front)
        self.next_index = next_index

        phi = 0.0
        if self.at_end(next_index, progress):
            controls.setPedals(0.0, 1.0)
        else:
            velocity_error = self.velocity_gain * (self.path.velocity[next_index] - state.v)
            controls.setPedals(velocity_error, -velocity_error)

            segment = self.points[next_index] - self.points[next_index - 1]
            offset = front - projection
            # front axle left of the path steers right
            direction = -1.0 if segment[0]*offset[1] - segment[1]*offset[0] > 0 else 1.0
            self.cross_track_error = float(np.hypot(*offset))
            self.heading_error = float(unifyAngleRange(state.yaw - self.desired_heading(next_index, progress)))
            phi = -self.heading_error + self.gain*math.atan(self.k*direction*self.cross_track_error / max(state.v, 0.01))

        controls.setSteer(steering_command(phi, state.wheel_angle, dt, self.vehicle.max_steer_speed))
        return controls

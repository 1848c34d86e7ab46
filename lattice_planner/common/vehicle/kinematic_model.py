import math

from lattice_planner.common.geometry.math_utils import limitWithinRange, unifyAngleRange
from lattice_planner.common.vehicle.vehicle import Vehicle
from lattice_planner.common.vehicle.vehicle_state import ActuatorState, VehicleState


def update_next_kinematic_state(state: VehicleState, controls: ActuatorState, vehicle: Vehicle, dt: float) -> VehicleState:
    """ Rear-axle bicycle model driven by normalized gas / brake / steering-rate commands """
    accel = controls.gas*vehicle.max_gas_accel - controls.brake*vehicle.max_brake_decel
    v = max(0.0, state.v + accel*dt)

    wheel_angle = state.wheel_angle + controls.steer*vehicle.max_steer_speed*dt
    wheel_angle = limitWithinRange(wheel_angle, -vehicle.max_wheel_angle, vehicle.max_wheel_angle)

    # integrate at the mean speed of the step
    v_mean = (state.v + v) / 2
    yaw_rate = v_mean * math.tan(wheel_angle) / vehicle.wheel_base
    yaw = state.yaw + yaw_rate*dt / 2
    next_state = VehicleState()
    next_state.x = state.x + v_mean*math.cos(yaw)*dt
    next_state.y = state.y + v_mean*math.sin(yaw)*dt
    next_state.yaw = float(unifyAngleRange(state.yaw + yaw_rate*dt))
    next_state.v = v
    next_state.wheel_angle = wheel_angle

    return next_state

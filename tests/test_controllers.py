"""
Tests for the path trackers, the PID loop and the kinematic vehicle.
"""

import math

import numpy as np
import pytest

from lattice_planner.common.control.follow_controller import FollowController
from lattice_planner.common.control.path_tracker import PathTracker, steering_command
from lattice_planner.common.control.pid import PID
from lattice_planner.common.control.stanley_controller import StanleyController
from lattice_planner.common.errors import InvalidInputError
from lattice_planner.common.scenario.trajectory import PlannedTrajectory, Pose
from lattice_planner.common.vehicle.kinematic_model import update_next_kinematic_state
from lattice_planner.common.vehicle.vehicle_state import ActuatorState, VehicleState


def _straight_path(length: float = 5.0, step: float = 0.5, velocity: float = 5.0) -> PlannedTrajectory:
    x = np.arange(0.0, length + step/2, step)
    zeros = np.zeros_like(x)
    return PlannedTrajectory(x, zeros, zeros, zeros, np.full_like(x, velocity), zeros)


def test_stanley_on_the_path_holds_course(vehicle) -> None:
    """On the path at the planned speed the controller neither steers nor pedals."""
    controller = StanleyController(_straight_path(50.0), vehicle)

    controls = controller.control(VehicleState(0.0, 0.0, 0.0, 5.0), 0.1)

    assert controls.steer == pytest.approx(0.0, abs=1e-9)
    assert controls.gas == pytest.approx(0.0)
    assert controls.brake == pytest.approx(0.0)
    assert controller.cross_track_error == pytest.approx(0.0, abs=1e-9)


def test_stanley_steers_back_to_the_path(vehicle) -> None:
    """Left of the path it steers right, right of it steers left, clamped to full rate."""
    controller = StanleyController(_straight_path(50.0), vehicle)
    left = controller.control(VehicleState(0.0, 1.0, 0.0, 5.0), 0.1)

    controller = StanleyController(_straight_path(50.0), vehicle)
    right = controller.control(VehicleState(0.0, -1.0, 0.0, 5.0), 0.1)

    assert left.steer == pytest.approx(-1.0)
    assert right.steer == pytest.approx(1.0)


def test_stanley_brakes_past_the_end(vehicle) -> None:
    """Past the last pose the vehicle brakes fully."""
    controller = StanleyController(_straight_path(5.0), vehicle)

    controls = controller.control(VehicleState(8.0, 0.0, 0.0, 3.0), 0.1)

    assert controls.brake == pytest.approx(1.0)
    assert controls.gas == pytest.approx(0.0)


def test_stanley_speeds_up_to_the_plan(vehicle) -> None:
    """Below the planned speed the pedal law opens the throttle."""
    controller = StanleyController(_straight_path(50.0), vehicle)

    controls = controller.control(VehicleState(0.0, 0.0, 0.0, 4.0), 0.1)

    assert controls.gas == pytest.approx(controller.velocity_gain * 1.0)
    assert controls.brake == pytest.approx(0.0)


def test_replace_path_needs_two_poses(vehicle) -> None:
    """A tracked path needs at least two poses."""
    controller = StanleyController(_straight_path(50.0), vehicle)
    single = PlannedTrajectory([0.0], [0.0], [0.0], [0.0])

    with pytest.raises(InvalidInputError):
        controller.replace_path(single)

    controller.replace_path(_straight_path(10.0))
    assert controller.next_index == 1
    assert len(controller.points) == 21


def test_follow_controller_tracks_speed(vehicle) -> None:
    """The follow controller holds the planned speed and accelerates when slow."""
    controller = FollowController(_straight_path(50.0), vehicle)

    steady = controller.control(VehicleState(0.0, 0.0, 0.0, 5.0), 0.1)
    assert steady.gas == pytest.approx(0.0)
    assert steady.brake == pytest.approx(0.0)
    assert steady.steer == pytest.approx(0.0)

    controller.reset()
    slow = controller.control(VehicleState(0.0, 0.0, 0.0, 3.0), 0.1)
    assert slow.gas == pytest.approx(2.0 / vehicle.max_gas_accel)


def test_follow_controller_steers_into_curves(vehicle) -> None:
    """A curved plan turns the wheels towards its curvature."""
    x = np.arange(0.0, 20.0, 0.5)
    zeros = np.zeros_like(x)
    path = PlannedTrajectory(x, zeros, zeros, np.full_like(x, 0.05), np.full_like(x, 5.0), zeros)
    controller = FollowController(path, vehicle)

    controls = controller.control(VehicleState(0.0, 0.0, 0.0, 5.0), 0.1)

    assert controls.steer > 0.0


def test_predict_pose_moves_along_the_path(vehicle) -> None:
    """The predicted pose advances by speed times time along the path."""
    tracker = PathTracker(_straight_path(50.0), vehicle)

    predicted = tracker.predict_pose_after_time(Pose(0.0, 0.0, 0.0, 0.0, velocity=5.0), 1.0)
    stopped = tracker.predict_pose_after_time(Pose(2.0, 0.0, 0.0, 0.0, velocity=0.0), 1.0)

    assert predicted.x == pytest.approx(5.0, abs=1e-6)
    assert predicted.y == pytest.approx(0.0, abs=1e-9)
    assert predicted.velocity == pytest.approx(5.0)
    assert stopped.x == 2.0


def test_steering_command_is_normalized() -> None:
    """The steering rate command saturates at full rate."""
    assert steering_command(0.04, 0.0, 0.1, 0.8) == pytest.approx(0.5)
    assert steering_command(1.0, 0.0, 0.1, 0.8) == 1.0
    assert steering_command(-1.0, 0.0, 0.1, 0.8) == -1.0


def test_pid_clamps_output() -> None:
    """Output stays in range and the derivative kicks in from the second call."""
    pid = PID(0.1, 1.0, -1.0, 1.0, 0.5, 0.0)

    assert pid.calculate(1.0, 0.0) == pytest.approx(1.0)
    assert pid.calculate(1.0, 0.5) == pytest.approx(-1.0)

    pid.clear()
    assert pid.calculate(0.5, 0.0) == pytest.approx(0.5)


def test_pid_integral_does_not_wind_up() -> None:
    """A saturated integral recovers in one step once the error flips."""
    pid = PID(0.1, 1.0, -1.0, 0.0, 0.0, 1.0)
    for _ in range(100):
        pid.calculate(10.0, 0.0)
    assert pid.output == pytest.approx(1.0)

    assert pid.calculate(-10.0, 0.0) == pytest.approx(0.0)


def test_kinematic_model_integrates_controls(vehicle) -> None:
    """Full gas raises the speed, steering moves the wheels within their limit."""
    controls = ActuatorState(vehicle.max_gas_accel, vehicle.max_brake_decel)
    controls.setPedals(1.0, 0.0)
    controls.setSteer(1.0)

    state = update_next_kinematic_state(VehicleState(0.0, 0.0, 0.0, 5.0), controls, vehicle, 0.1)

    assert state.v == pytest.approx(5.0 + 0.1*vehicle.max_gas_accel)
    assert state.wheel_angle == pytest.approx(0.1*vehicle.max_steer_speed)
    assert state.x > 0.0
    assert state.y > 0.0
    assert state.yaw > 0.0

    for _ in range(100):
        state = update_next_kinematic_state(state, controls, vehicle, 0.1)
    assert state.wheel_angle == pytest.approx(vehicle.max_wheel_angle)


def test_brake_never_reverses(vehicle) -> None:
    """Braking stops the vehicle without driving it backwards."""
    controls = ActuatorState(vehicle.max_gas_accel, vehicle.max_brake_decel)
    controls.setAccel(-100.0)

    state = update_next_kinematic_state(VehicleState(0.0, 0.0, 0.0, 0.2), controls, vehicle, 0.1)

    assert controls.brake == 1.0
    assert state.v == 0.0
    assert state.x >= 0.0


def test_footprint_follows_the_rear_axle(vehicle) -> None:
    """The footprint box is centered ahead of the rear axle along the heading."""
    footprint = vehicle.footprint(0.0, 0.0, math.pi/2)

    assert footprint.centroid.x == pytest.approx(0.0, abs=1e-9)
    assert footprint.centroid.y == pytest.approx(vehicle.rear_axle_to_center)
    assert footprint.area == pytest.approx(vehicle.l * vehicle.w)

"""
Tests for acceleration hypotheses and edge pricing.
"""

import numpy as np
import pytest
from shapely.geometry import box

from lattice_planner.common.cost.cost_function import NUM_ACCELERATION_PROFILES, SMALL_V, CostFunction
from lattice_planner.common.cost.obstacle_grid import build_cost_field
from lattice_planner.common.scenario.frenet import FrenetFrame
from lattice_planner.common.scenario.obstacle import DynamicObstacle


@pytest.fixture
def cost_function(settings, vehicle) -> CostFunction:
    return CostFunction(settings, vehicle)


@pytest.fixture
def empty_field(settings):
    x = np.arange(-5.0, 60.5, 0.5)
    frame = FrenetFrame(x, np.zeros_like(x), np.zeros_like(x), stations=x)
    return build_cost_field(frame, [], [], 0.0, settings.station_interval, settings)


def test_acceleration_hypotheses(cost_function, settings, vehicle) -> None:
    """Fixed profiles first, then the accelerations matching the target speeds."""
    acceleration = cost_function.accelerations(np.array([5.0, 10.0]), 5.0)

    assert acceleration.shape == (2, NUM_ACCELERATION_PROFILES)
    assert np.allclose(acceleration[:, 0], vehicle.max_gas_accel)
    assert np.allclose(acceleration[:, 1], -vehicle.max_brake_decel)
    assert np.allclose(acceleration[:, 2], settings.soft_acceleration_limit)
    assert np.allclose(acceleration[:, 3], -settings.soft_deceleration_limit)
    assert np.allclose(acceleration[:, 4], 0.0)
    # 5 -> 1 m/s over 5 m
    assert acceleration[0, 6] == pytest.approx((1.0 - 25.0) / 10.0)
    # a stop from 10 m/s in 5 m needs more than full braking
    assert acceleration[1, 7] == pytest.approx(-vehicle.max_brake_decel)
    # reaching the speed limit is clamped to full gas
    assert acceleration[0, 5] == pytest.approx(vehicle.max_gas_accel)


def test_zero_length_edges_keep_speed(cost_function) -> None:
    """Matching accelerations are zero on a degenerate edge."""
    acceleration = cost_function.accelerations(np.array([3.0]), 0.0)

    assert np.all(acceleration[0, 5:] == 0.0)


def test_final_velocity_and_time(cost_function) -> None:
    """Constant acceleration kinematics, a stopping vehicle creeps on at the minimum speed."""
    acceleration = np.array([[0.0, 1.0, -2.0]])
    velocity, time = cost_function.final_velocity_and_time(acceleration, np.array([4.0]), np.array([1.0]), 12.0)

    assert velocity[0, 0] == pytest.approx(4.0)
    assert time[0, 0] == pytest.approx(1.0 + 3.0)
    assert velocity[0, 1] == pytest.approx(np.sqrt(16.0 + 24.0))
    assert time[0, 1] == pytest.approx(1.0 + 24.0 / (4.0 + np.sqrt(40.0)))
    # 4 m/s stops after 4 m, the remaining 8 m take forever
    assert velocity[0, 2] == pytest.approx(SMALL_V)
    assert time[0, 2] > 100.0


def test_dynamic_cost_penalties(cost_function, empty_field, settings) -> None:
    """Straight edges pay only the acceleration penalties."""
    s = np.linspace(0.0, 10.0, 21)
    zeros = np.zeros_like(s)
    acceleration = cost_function.accelerations(np.array([5.0]), 10.0)

    cost = cost_function.average_dynamic_cost(empty_field, s, zeros, s, zeros, zeros,
                                              acceleration, np.array([5.0]), np.zeros(1))

    assert cost.shape == (1, NUM_ACCELERATION_PROFILES)
    assert cost[0, 4] == pytest.approx(0.0)
    assert cost[0, 0] == pytest.approx(settings.hard_acceleration_penalty)
    assert cost[0, 1] == pytest.approx(settings.hard_deceleration_penalty)
    assert cost[0, 2] == pytest.approx(0.0)


def test_steering_rate_limit(cost_function, empty_field, settings) -> None:
    """A curvature rate the steering cannot follow at speed makes the edge infeasible."""
    s = np.linspace(0.0, 10.0, 21)
    zeros = np.zeros_like(s)
    dcurv = np.full_like(s, settings.d_curvature_max)
    acceleration = cost_function.accelerations(np.array([5.0]), 10.0)

    cost = cost_function.average_dynamic_cost(empty_field, s, zeros, s, zeros, dcurv,
                                              acceleration, np.array([5.0]), np.zeros(1))

    assert np.all(np.isinf(cost))


def test_moving_obstacle_blocks_the_edge(cost_function, settings) -> None:
    """Samples inside a lethal moving footprint make every hypothesis infeasible."""
    x = np.arange(-5.0, 60.5, 0.5)
    frame = FrenetFrame(x, np.zeros_like(x), np.zeros_like(x), stations=x)
    field = build_cost_field(frame, [], [DynamicObstacle('vehicle', [5.0, 0.0], [0.0, 0.0])], 0.0,
                             settings.station_interval, settings)
    s = np.linspace(0.0, 10.0, 21)
    zeros = np.zeros_like(s)
    acceleration = cost_function.accelerations(np.array([5.0]), 10.0)

    cost = cost_function.average_dynamic_cost(field, s, zeros, s, zeros, zeros,
                                              acceleration, np.array([5.0]), np.zeros(1))

    assert np.all(np.isinf(cost))


def test_static_cost_average(cost_function, settings) -> None:
    """The mean over the samples, or inf as soon as one sample is infeasible."""
    x = np.arange(-5.0, 60.5, 0.5)
    frame = FrenetFrame(x, np.zeros_like(x), np.zeros_like(x), stations=x)
    field = build_cost_field(frame, [box(29.5, -0.5, 30.5, 0.5)], [], 0.0, settings.station_interval, settings)

    clear = cost_function.average_static_cost(field, np.linspace(0.0, 5.0, 11), np.full(11, 3.0))
    blocked = cost_function.average_static_cost(field, np.linspace(25.0, 35.0, 11), np.zeros(11))

    assert np.isfinite(clear)
    assert clear > 0.0
    assert blocked == np.inf


def test_terminal_cost_prefers_far_and_fast(cost_function, settings) -> None:
    """Farther stations and earlier arrival are cheaper."""
    near = cost_function.terminal_cost(3, np.array([2.0]))
    far = cost_function.terminal_cost(9, np.array([2.0]))
    slow = cost_function.terminal_cost(9, np.array([4.0]))

    assert far < near
    assert slow - far == pytest.approx(2.0*settings.extra_time_penalty)
    assert cost_function.cubic_from_vehicle_penalty(3.0) == pytest.approx(9.0*settings.cubic_path_penalty)

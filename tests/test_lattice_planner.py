"""
End to end tests of one planning cycle on a straight lane.
"""

import math

import numpy as np
import pytest

from lattice_planner.common.errors import InvalidInputError
from lattice_planner.common.scenario.lane import LanePath
from lattice_planner.common.scenario.obstacle import DynamicObstacle, StaticObstacle
from lattice_planner.common.scenario.trajectory import Pose
from lattice_planner.lattice_planner import LatticePlanner, Stats


@pytest.fixture
def planner(settings, vehicle) -> LatticePlanner:
    return LatticePlanner(settings, vehicle)


def test_empty_lane_keeps_to_the_lane(planner, settings, straight_lane, start_pose) -> None:
    """Without obstacles the path runs to the last station inside the lane and ends aligned with it."""
    result = planner.plan(start_pose, 0.0, straight_lane)

    assert result.found
    path = result.path
    assert path.x[0] == pytest.approx(0.0, abs=1e-6)
    assert path.y[0] == pytest.approx(0.0, abs=1e-6)
    # the last lattice station lies a full horizon ahead
    assert path.x[-1] == pytest.approx(settings.spatial_horizon, abs=1e-6)
    assert abs(path.rot[-1]) < 1e-3
    assert np.all(np.abs(path.y) < settings.lane_width / 2)
    assert np.all(np.diff(path.s) > 0.0)
    assert np.all(path.velocity >= 0.0)
    stations = [node.station for node in result.search_result.nodes]
    assert stations[-1] == settings.num_stations - 1
    assert np.all(np.diff(stations) > 0)


def test_from_vehicle_segment_starts_the_path(planner, straight_lane, start_pose) -> None:
    """The path begins with the segment from the vehicle to the first lattice node."""
    result = planner.plan(start_pose, 0.0, straight_lane)

    segment = result.from_vehicle_segment
    assert result.from_vehicle_params.converged
    assert len(segment) < len(result.path)
    assert np.allclose(result.path.x[:len(segment)], segment.x)
    assert np.allclose(result.path.y[:len(segment)], segment.y)
    assert segment.velocity[0] == pytest.approx(start_pose.velocity)


def test_static_obstacle_is_avoided(planner, straight_lane, start_pose) -> None:
    """The path swerves around an obstacle on the centerline."""
    obstacle = StaticObstacle(20.0, 0.0, 0.0, 1.0, 1.0)

    result = planner.plan(start_pose, 0.0, straight_lane, static_obstacles=[obstacle])

    assert result.found
    near = (result.path.x >= 17.0) & (result.path.x <= 23.0)
    assert near.any()
    assert np.min(np.abs(result.path.y[near])) > 1.0


def test_blocked_lane_has_no_path(planner, straight_lane, start_pose) -> None:
    """An obstacle across the whole lane leaves no feasible trajectory."""
    wall = StaticObstacle(25.0, 0.0, 0.0, 1.0, 12.0)

    result = planner.plan(start_pose, 0.0, straight_lane, static_obstacles=[wall])

    assert not result.found
    assert result.stats.num_failed_plans == 1
    assert planner.hysteresis is None


def test_world_frame_output(planner, settings) -> None:
    """Plans on a rotated lane come back in world coordinates."""
    lane = LanePath([[10.0, 10.0], [10.0 + 100.0/math.sqrt(2), 10.0 + 100.0/math.sqrt(2)]])
    pose = Pose(10.0, 10.0, math.pi/4, 0.0, velocity=5.0)

    result = planner.plan(pose, 0.0, lane)

    assert result.found
    assert result.path.x[0] == pytest.approx(10.0, abs=1e-6)
    assert result.path.y[0] == pytest.approx(10.0, abs=1e-6)
    assert result.path.rot[-1] == pytest.approx(math.pi/4, abs=1e-3)
    # every pose stays close to the diagonal
    offsets = (result.path.y - 10.0) - (result.path.x - 10.0)
    assert np.all(np.abs(offsets) / math.sqrt(2) < settings.lane_width / 2)


def test_stopped_moving_obstacle_is_passed(planner, straight_lane, start_pose) -> None:
    """A stopped car in the lane is passed with lateral clearance."""
    stopped = DynamicObstacle('vehicle', [25.0, 0.0], [0.0, 0.0])

    result = planner.plan(start_pose, 0.0, straight_lane, dynamic_obstacles=[stopped])

    assert result.found
    alongside = (result.path.x >= 19.0) & (result.path.x <= 28.0)
    assert alongside.any()
    assert np.min(np.abs(result.path.y[alongside])) > 1.5


def test_lattice_start_station_advances(planner, settings) -> None:
    """The first lattice station stays put on the road until the vehicle nears it."""
    interval = settings.station_interval

    assert planner.update_lattice_start_station(0.0) == pytest.approx(interval)
    assert planner.update_lattice_start_station(1.0) == pytest.approx(interval)
    assert planner.update_lattice_start_station(interval/2 + 0.1) == pytest.approx(2*interval)
    # a jump re-anchors one interval ahead
    assert planner.update_lattice_start_station(40.0) == pytest.approx(40.0 + interval)


def test_hysteresis_follows_the_lattice(planner, settings) -> None:
    """Advancing the lattice shifts the remembered first node back one station."""
    planner.update_lattice_start_station(0.0)
    planner.hysteresis = (2, 5, 4)
    planner.update_lattice_start_station(settings.station_interval/2 + 0.1)
    assert planner.hysteresis == (1, 5, 4)

    planner.hysteresis = (0, 5, 4)
    planner.update_lattice_start_station(settings.station_interval*1.5 + 0.1)
    assert planner.hysteresis is None


def test_reset_forgets_the_anchor(planner, straight_lane, start_pose) -> None:
    """After a reset the lattice is re-anchored from the current station."""
    planner.plan(start_pose, 0.0, straight_lane)
    assert planner.lattice_start_station is not None

    planner.reset()

    assert planner.lattice_start_station is None
    assert planner.hysteresis is None


def test_consecutive_plans_accumulate_stats(planner, straight_lane, start_pose) -> None:
    """Planner statistics add up over cycles."""
    first = planner.plan(start_pose, 0.0, straight_lane)
    moved = Pose(1.0, 0.0, 0.0, 0.0, velocity=5.0)
    second = planner.plan(moved, 1.0, straight_lane)

    assert first.found and second.found
    assert planner.stats.num_iter == 2
    assert planner.stats.num_edges_solved == first.stats.num_edges_solved + second.stats.num_edges_solved
    assert first.stats.num_edges_feasible <= first.stats.num_edges_converged <= first.stats.num_edges_solved
    assert second.lattice_start_station == first.lattice_start_station


@pytest.mark.parametrize("kwargs", [
    dict(vehicle_pose=Pose(math.nan, 0.0, 0.0)),
    dict(vehicle_station=math.inf),
    dict(lane_path=[[0.0, 0.0], [10.0, 0.0]]),
    dict(static_obstacles=[{'x': 1.0}]),
    dict(dynamic_obstacles=[StaticObstacle(5.0, 0.0, 0.0, 1.0, 1.0)]),
])
def test_invalid_inputs_are_rejected(planner, straight_lane, start_pose, kwargs) -> None:
    """Malformed inputs raise before any planning happens."""
    arguments = dict(vehicle_pose=start_pose, vehicle_station=0.0, lane_path=straight_lane)
    arguments.update(kwargs)

    with pytest.raises(InvalidInputError):
        planner.plan(**arguments)
    assert planner.lattice_start_station is None


def test_result_serializes(planner, straight_lane, start_pose) -> None:
    """Results flatten into plain records."""
    data = planner.plan(start_pose, 0.0, straight_lane).to_dict()

    assert data['path']['type'] == 'planned_trajectory'
    assert data['from_vehicle_params']['type'] in ('cubic', 'quintic')
    assert Stats.from_dict(data['stats']).num_iter == 1

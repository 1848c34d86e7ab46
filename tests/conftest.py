"""
Shared fixtures: a small lattice over a straight lane.
"""

import pytest

from lattice_planner.common.scenario.lane import LanePath
from lattice_planner.common.scenario.trajectory import Pose
from lattice_planner.common.vehicle.vehicle import Vehicle
from lattice_planner.lattice_planner import LatticePlannerSettings

SMALL_CONFIG = {
    'spatial_horizon': 50.0,
    'num_stations': 10,
    'num_latitudes': 11,
    'lane_width': 10.0,
    'lane_shoulder_latitude': 4.0,
    'xy_grid_cell_size': 0.2,
    'sl_grid_cell_size': 0.2,
    'grid_margin': 5.0,
}


@pytest.fixture
def vehicle() -> Vehicle:
    return Vehicle()


@pytest.fixture
def small_config() -> dict:
    return dict(SMALL_CONFIG)


@pytest.fixture
def settings(vehicle) -> LatticePlannerSettings:
    return LatticePlannerSettings.from_config(SMALL_CONFIG, vehicle)


@pytest.fixture
def straight_lane() -> LanePath:
    return LanePath([[0.0, 0.0], [100.0, 0.0]])


@pytest.fixture
def start_pose() -> Pose:
    return Pose(0.0, 0.0, 0.0, 0.0, velocity=5.0)

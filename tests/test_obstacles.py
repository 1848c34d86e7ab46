"""
Tests for static and moving obstacles.
"""

import math

import numpy as np
import pytest

from lattice_planner.common.errors import InvalidInputError
from lattice_planner.common.scenario.obstacle import (DynamicObstacle, DynamicObstacleType, StaticObstacle,
                                                      obstacle_from_dict)


def test_static_obstacle_polygon() -> None:
    """The footprint is the rotated rectangle around the center."""
    obstacle = StaticObstacle(10.0, 2.0, math.pi/2, 4.0, 2.0)
    min_x, min_y, max_x, max_y = obstacle.polygon.bounds

    assert obstacle.polygon.area == pytest.approx(8.0)
    assert (min_x, max_x) == (pytest.approx(9.0), pytest.approx(11.0))
    assert (min_y, max_y) == (pytest.approx(0.0), pytest.approx(4.0))
    assert obstacle.vertices.shape == (4, 2)


@pytest.mark.parametrize("fields", [
    dict(x=0.0, y=0.0, rot=0.0, width=0.0, height=1.0),
    dict(x=0.0, y=0.0, rot=0.0, width=1.0, height=-1.0),
    dict(x=math.inf, y=0.0, rot=0.0, width=1.0, height=1.0),
])
def test_static_obstacle_rejects_bad_fields(fields) -> None:
    """Non-positive sizes and non-finite values are rejected."""
    with pytest.raises(InvalidInputError):
        StaticObstacle(**fields)


def test_records_revive_their_kind() -> None:
    """Tagged records come back as the obstacle they describe."""
    static = StaticObstacle(5.0, 1.0, 0.2, 2.0, 1.0)
    moving = DynamicObstacle('cyclist', [20.0, -1.0], [3.0, 0.0], parallel=False)

    revived_static = obstacle_from_dict(static.to_dict())
    revived_moving = obstacle_from_dict(moving.to_dict())

    assert isinstance(revived_static, StaticObstacle)
    assert revived_static.polygon.equals(static.polygon)
    assert isinstance(revived_moving, DynamicObstacle)
    assert revived_moving.type is DynamicObstacleType.CYCLIST
    assert not revived_moving.parallel
    assert np.allclose(revived_moving.start_pos, [20.0, -1.0])


@pytest.mark.parametrize("record", [
    {'type': 'parked_car', 'x': 0.0},
    {'x': 0.0, 'y': 0.0},
    {'type': 'static_obstacle', 'x': 0.0, 'y': 0.0},
    ['static_obstacle'],
    {'type': 'dynamic_obstacle', 'obstacle_type': 'vehicle', 'start_pos': ['ahead', 'left'], 'velocity': [1.0, 0.0]},
    {'type': 'dynamic_obstacle', 'start_pos': [1.0, 0.0], 'velocity': [1.0, 0.0]},
])
def test_bad_records_are_rejected(record) -> None:
    """Unknown tags, missing fields and non-mapping records are invalid input."""
    with pytest.raises(InvalidInputError):
        obstacle_from_dict(record)


def test_unknown_moving_obstacle_type() -> None:
    """Only vehicles, cyclists and pedestrians are known."""
    with pytest.raises(InvalidInputError):
        DynamicObstacle('tram', [0.0, 0.0], [1.0, 0.0])


def test_moving_obstacle_footprint_orientation() -> None:
    """A crossing obstacle swaps its extents along and across the road."""
    parallel = DynamicObstacle(DynamicObstacleType.VEHICLE, [0.0, 0.0], [0.0, 0.0], parallel=True)
    crossing = DynamicObstacle(DynamicObstacleType.VEHICLE, [0.0, 0.0], [0.0, 0.0], parallel=False)

    assert parallel.size == (2.5, 1.0)
    assert crossing.size == (1.0, 2.5)


def test_moving_obstacle_sweep() -> None:
    """Swept footprints cover both ends of the window, hazard around lethal."""
    obstacle = DynamicObstacle('pedestrian', [10.0, -3.0], [0.0, 1.0])

    assert np.allclose(obstacle.position_at_time(2.0), [10.0, -1.0])

    hazard, lethal = obstacle.polygons_in_time_range(0.0, 2.0, 4, (1.0, 0.5), (2.0, 0.5))
    assert len(hazard) == len(lethal) == 5

    first_s, first_l = lethal[0].centroid.x, lethal[0].centroid.y
    last_l = lethal[-1].centroid.y
    assert (first_s, first_l) == (pytest.approx(10.0), pytest.approx(-3.0))
    assert last_l == pytest.approx(-1.0)
    for outer, inner in zip(hazard, lethal):
        assert outer.contains(inner)
    # half size 0.6 plus 1.0 lethal along the road
    assert lethal[0].bounds[2] - lethal[0].bounds[0] == pytest.approx(3.2)

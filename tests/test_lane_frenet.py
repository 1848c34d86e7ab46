"""
Tests for the lane centerline and the road-relative frame.
"""

import math

import numpy as np
import pytest

from lattice_planner.common.errors import InvalidInputError
from lattice_planner.common.scenario.frenet import FrenetFrame
from lattice_planner.common.scenario.lane import LanePath


@pytest.mark.parametrize("anchors", [
    [[0.0, 0.0]],
    [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]],
    [[0.0, 0.0], [0.0, 0.0]],
    [[0.0, 0.0], [math.nan, 1.0]],
])
def test_lane_rejects_bad_anchors(anchors) -> None:
    """Too few, badly shaped, repeated or non-finite anchors are rejected."""
    with pytest.raises(InvalidInputError):
        LanePath(anchors)


def test_straight_lane_geometry(straight_lane) -> None:
    """A two-anchor lane is a straight line with zero curvature."""
    samples = straight_lane.sample_stations(10.0, 5, 10.0)

    assert straight_lane.arc_length == pytest.approx(100.0, abs=1e-6)
    assert np.allclose(samples[:, 0], [10.0, 20.0, 30.0, 40.0, 50.0], atol=1e-6)
    assert np.allclose(samples[:, 1:], 0.0, atol=1e-9)


def test_sampling_past_the_end_continues_straight() -> None:
    """Stations past either end extrapolate along the end heading with zero curvature."""
    lane = LanePath([[0.0, 0.0], [20.0, 0.0], [40.0, 10.0]])
    end_x, end_y, end_rot, _ = lane.sample_stations(lane.arc_length, 1, 1.0)[0]

    beyond = lane.sample_stations(lane.arc_length + 5.0, 1, 1.0)[0]
    before = lane.sample_stations(-3.0, 1, 1.0)[0]

    assert beyond[0] == pytest.approx(end_x + 5.0*math.cos(end_rot))
    assert beyond[1] == pytest.approx(end_y + 5.0*math.sin(end_rot))
    assert beyond[3] == 0.0
    assert before[0] == pytest.approx(-3.0*math.cos(before[2]), abs=1e-6)
    assert before[3] == 0.0


def test_station_latitude_sign(straight_lane) -> None:
    """Latitude is positive to the left of the driving direction."""
    station, latitude = straight_lane.station_latitude_from_position(30.0, 1.5)
    assert station == pytest.approx(30.0, abs=1e-6)
    assert latitude == pytest.approx(1.5, abs=1e-6)

    _, latitude = straight_lane.station_latitude_from_position(30.0, -2.0)
    assert latitude == pytest.approx(-2.0, abs=1e-6)


def test_curved_frame_round_trip() -> None:
    """Road coordinates mapped to positions project back to themselves."""
    lane = LanePath([[0.0, 0.0], [20.0, 2.0], [40.0, 8.0], [60.0, 10.0]])
    frame = lane.frame
    stations = np.array([5.0, 17.0, 33.0, 48.0])
    latitudes = np.array([1.0, -1.5, 0.5, -0.8])

    x, y, _ = frame.sl_to_xy(stations, latitudes)
    back_s, back_l = frame.xy_to_sl(x, y)

    assert np.allclose(back_s, stations, atol=0.05)
    assert np.allclose(back_l, latitudes, atol=0.05)


def test_frame_extrapolates_end_segments() -> None:
    """Points beyond the sampled range project onto the extended end segments."""
    frame = FrenetFrame([0.0, 1.0, 2.0], [0.0, 0.0, 0.0], [0.0, 0.0, 0.0])
    stations, latitudes = frame.xy_to_sl([-1.0, 4.0], [0.5, -0.5])

    assert np.allclose(stations, [-1.0, 4.0])
    assert np.allclose(latitudes, [0.5, -0.5])


def test_frame_needs_increasing_stations() -> None:
    """Repeated stations are rejected."""
    with pytest.raises(InvalidInputError):
        FrenetFrame([0.0, 1.0, 1.0], [0.0, 0.0, 0.0], [0.0, 0.0, 0.0])


def test_lane_record_revival(straight_lane) -> None:
    """A lane record revives the same centerline, other records are rejected."""
    revived = LanePath.from_dict(straight_lane.to_dict())
    assert revived.arc_length == pytest.approx(straight_lane.arc_length)

    with pytest.raises(InvalidInputError):
        LanePath.from_dict({'type': 'static_obstacle', 'anchors': [[0, 0], [1, 0]]})


@pytest.mark.parametrize("record", [
    {'type': 'lane_path'},
    {'type': 'lane_path', 'anchors': [['a', 'b'], [1.0, 0.0]]},
    {'type': 'lane_path', 'anchors': None},
])
def test_malformed_lane_records(record) -> None:
    """Lane records without usable anchors are invalid input."""
    with pytest.raises(InvalidInputError):
        LanePath.from_dict(record)

import logging
import math
from dataclasses import dataclass

import numpy as np
from scipy.ndimage import map_coordinates, maximum_filter1d
from shapely import contains_xy, prepare

from lattice_planner.common.geometry.math_utils import step
from lattice_planner.common.scenario.frenet import FrenetFrame

logger = logging.getLogger(__name__)

LETHAL_VALUE = 1.0
HAZARD_VALUE = 0.5
LETHAL_THRESHOLD = 0.75
HAZARD_THRESHOLD = 0.25
INFEASIBLE_COST = -1.0


class Grid(object):
    """ Grid

    Regular grid over a 2D coordinate frame (XY or SL). Cell (i, j) covers
    [origin + (i, j) * cell_size, origin + (i + 1, j + 1) * cell_size).
    An optional leading axis holds time layers.

    Attributes
    ------
        `data` (`np.ndarray`): (U, V) or (T, U, V) cell values
        `origin` (`tuple`): lower corner of cell (0, 0) [m]
        `cell_size` (`float`): [m]
    """
    def __init__(self, data: np.ndarray, origin: tuple, cell_size: float):
        self.data = data
        self.origin = (float(origin[0]), float(origin[1]))
        self.cell_size = float(cell_size)

    @classmethod
    def covering(cls, min_u: float, min_v: float, max_u: float, max_v: float, cell_size: float, num_layers: int = None):
        shape = (int(math.ceil((max_u - min_u) / cell_size)), int(math.ceil((max_v - min_v) / cell_size)))
        if num_layers is not None:
            shape = (num_layers,) + shape
        return cls(np.zeros(shape, dtype=np.float32), (min_u, min_v), cell_size)

    @property
    def shape(self) -> tuple:
        return self.data.shape[-2:]

    def axis_centers(self):
        u = self.origin[0] + (np.arange(self.shape[0]) + 0.5) * self.cell_size
        v = self.origin[1] + (np.arange(self.shape[1]) + 0.5) * self.cell_size
        return u, v

    def like(self, data: np.ndarray) -> 'Grid':
        return Grid(data, self.origin, self.cell_size)

    def fractional_indices(self, u, v):
        return (np.asarray(u) - self.origin[0]) / self.cell_size - 0.5, (np.asarray(v) - self.origin[1]) / self.cell_size - 0.5

    def cell_indices(self, u, v):
        """ Integer cell indices and a mask of which points fall inside the grid """
        i = np.floor((np.asarray(u) - self.origin[0]) / self.cell_size).astype(int)
        j = np.floor((np.asarray(v) - self.origin[1]) / self.cell_size).astype(int)
        inside = (i >= 0) & (i < self.shape[0]) & (j >= 0) & (j < self.shape[1])
        return i, j, inside

    def sample(self, u, v, order: int = 0, cval: float = 0.0) -> np.ndarray:
        """ Nearest (order 0) or bilinear (order 1) lookup of a single-layer grid """
        fi, fj = self.fractional_indices(u, v)
        coords = np.stack([np.ravel(fi), np.ravel(fj)])
        values = map_coordinates(self.data, coords, order=order, mode='constant', cval=cval)
        return values.reshape(np.shape(fi))

    def lookup(self, u, v, layer=None, outside: float = 0.0) -> np.ndarray:
        """ Nearest-cell values, `outside` for points off the grid """
        i, j, inside = self.cell_indices(u, v)
        i = np.where(inside, i, 0)
        j = np.where(inside, j, 0)
        values = self.data[i, j] if layer is None else self.data[layer, i, j]
        return np.where(inside, values, outside)


def rasterize_polygons(grid: Grid, polygons: list, value: float, layer: int = None):
    """
    Burns polygons into the grid, keeping the larger of the old and new value.

    A cell is covered when its center lies inside a polygon.
    """
    target = grid.data if layer is None else grid.data[layer]
    for polygon in polygons:
        min_u, min_v, max_u, max_v = polygon.bounds
        i0 = max(int(math.floor((min_u - grid.origin[0]) / grid.cell_size)), 0)
        j0 = max(int(math.floor((min_v - grid.origin[1]) / grid.cell_size)), 0)
        i1 = min(int(math.ceil((max_u - grid.origin[0]) / grid.cell_size)), grid.shape[0])
        j1 = min(int(math.ceil((max_v - grid.origin[1]) / grid.cell_size)), grid.shape[1])
        if i0 >= i1 or j0 >= j1:
            continue

        prepare(polygon)
        u = grid.origin[0] + (np.arange(i0, i1) + 0.5) * grid.cell_size
        v = grid.origin[1] + (np.arange(j0, j1) + 0.5) * grid.cell_size
        uu, vv = np.meshgrid(u, v, indexing='ij')
        covered = contains_xy(polygon, uu, vv)
        window = target[i0:i1, j0:j1]
        window[covered] = np.maximum(window[covered], value)


def build_xy_obstacle_grid(polygons: list, frame: FrenetFrame, cell_size: float, margin: float) -> Grid:
    """ Occupancy grid around the centerline bounding box, 1 inside any static obstacle """
    min_x, min_y, max_x, max_y = frame.bounds
    grid = Grid.covering(min_x - margin, min_y - margin, max_x + margin, max_y + margin, cell_size)
    rasterize_polygons(grid, polygons, LETHAL_VALUE)
    return grid


def build_sl_obstacle_grid(xy_grid: Grid, frame: FrenetFrame, min_station: float, max_station: float,
                           half_width: float, cell_size: float, order: int = 0) -> Grid:
    """
    Reprojects the XY occupancy grid into road-relative coordinates.

    Each SL cell looks up the XY grid at the point `latitude` meters left of the
    centerline at its station. Stations off the centerline stay empty.
    """
    sl_grid = Grid.covering(min_station, -half_width, max_station, half_width, cell_size)
    stations, latitudes = sl_grid.axis_centers()
    ss, ll = np.meshgrid(stations, latitudes, indexing='ij')
    x, y, _ = frame.sl_to_xy(ss, ll)
    values = xy_grid.sample(x, y, order=order)
    on_centerline = (stations >= frame.stations[0]) & (stations <= frame.stations[-1])
    values[~on_centerline, :] = 0.0
    sl_grid.data[:] = values
    return sl_grid


def dilate_axis(data: np.ndarray, lethal_cells: int, hazard_cells: int, axis: int) -> np.ndarray:
    """
    One separable dilation pass: full value within `lethal_cells`, half value
    up to `lethal_cells + hazard_cells`. Any covered cell ends at least at hazard level.
    """
    lethal = maximum_filter1d(data, size=2*lethal_cells + 1, axis=axis, mode='constant', cval=0.0)
    hazard = maximum_filter1d(data, size=2*(lethal_cells + hazard_cells) + 1, axis=axis, mode='constant', cval=0.0)
    dilated = np.maximum(lethal, HAZARD_VALUE*hazard)
    return np.maximum(dilated, step(0.1, dilated).astype(data.dtype) * HAZARD_VALUE)


def dilate_sl_grid(sl_grid: Grid, lethal_s: float, hazard_s: float, lethal_l: float, hazard_l: float) -> Grid:
    """ Station pass then latitude pass; radii in meters rounded up to whole cells """
    cells = lambda meters: int(math.ceil(meters / sl_grid.cell_size))
    data = dilate_axis(sl_grid.data, cells(lethal_s), cells(hazard_s), axis=-2)
    data = dilate_axis(data, cells(lethal_l), cells(hazard_l), axis=-1)
    return sl_grid.like(data)


def lane_cost(latitudes, settings) -> np.ndarray:
    """ Linear cost outside the central band plus the lane preference discount on the other side """
    latitudes = np.asarray(latitudes, dtype=float)
    cost = np.maximum(0.0, np.abs(latitudes) - settings.lane_center_band) * settings.lane_cost_slope
    if settings.lane_preference != 0:
        cost = cost + np.where(latitudes*np.sign(settings.lane_preference) < 0.0, settings.lane_preference_discount, 0.0)
    return cost


def combine_lane_cost(dilated_grid: Grid, settings) -> Grid:
    """ Static cost per SL cell, INFEASIBLE_COST where lethal or past the lane shoulder """
    _, latitudes = dilated_grid.axis_centers()
    obstacle = dilated_grid.data
    cost = step(HAZARD_THRESHOLD, obstacle) * settings.obstacle_hazard_cost + lane_cost(latitudes, settings)[np.newaxis, :]
    infeasible = (obstacle >= LETHAL_THRESHOLD) | (np.abs(latitudes) >= settings.lane_shoulder_latitude)[np.newaxis, :]
    return dilated_grid.like(np.where(infeasible, INFEASIBLE_COST, cost).astype(np.float32))


def build_sl_dynamic_obstacle_grid(dynamic_obstacles: list, sl_grid: Grid, start_time: float, settings):
    """
    Time layers of moving obstacle footprints in SL space.

    Layer k covers [start_time + k * frame_time, start_time + (k + 1) * frame_time];
    hazard footprints are drawn first, lethal footprints on top.

    :return: layered grid, frame_time
    """
    frame_time = settings.spatial_horizon / settings.speed_limit / settings.num_dynamic_frames
    min_s, min_l = sl_grid.origin
    max_s = min_s + sl_grid.shape[0]*sl_grid.cell_size
    max_l = min_l + sl_grid.shape[1]*sl_grid.cell_size
    grid = Grid.covering(min_s, min_l, max_s, max_l, sl_grid.cell_size, num_layers=settings.num_dynamic_frames)

    lethal_dilation = (settings.lethal_dilation_s, settings.lethal_dilation_l)
    hazard_dilation = (settings.dynamic_hazard_dilation_s, settings.dynamic_hazard_dilation_l)
    for frame in range(settings.num_dynamic_frames):
        frame_start = start_time + frame*frame_time
        for obstacle in dynamic_obstacles:
            hazard, lethal = obstacle.polygons_in_time_range(frame_start, frame_start + frame_time,
                                                              settings.num_dynamic_subframes, lethal_dilation, hazard_dilation)
            rasterize_polygons(grid, hazard, HAZARD_VALUE, layer=frame)
            rasterize_polygons(grid, lethal, LETHAL_VALUE, layer=frame)
    return grid, frame_time


@dataclass
class CostField:
    """ Every grid of one planning cycle, built once and then read-only """
    frame: FrenetFrame                              # vehicle-frame centerline, stations relative to the vehicle
    xy_obstacle_grid: Grid
    sl_obstacle_grid: Grid
    sl_obstacle_grid_dilated: Grid
    sl_cost_grid: Grid
    sl_dynamic_obstacle_grid: Grid = None
    dynamic_frame_time: float = 0.0

    def static_cost(self, stations, latitudes) -> np.ndarray:
        return self.sl_cost_grid.lookup(stations, latitudes, outside=INFEASIBLE_COST)

    def dynamic_cost(self, stations, latitudes, times, hazard_cost: float) -> np.ndarray:
        """ Cost of being at (station, latitude) at `times` after the plan start, INFEASIBLE_COST if lethal """
        if self.sl_dynamic_obstacle_grid is None:
            return np.zeros(np.broadcast(stations, latitudes, times).shape)
        num_layers = self.sl_dynamic_obstacle_grid.data.shape[0]
        layers = np.clip(np.floor(np.asarray(times) / self.dynamic_frame_time).astype(int), 0, num_layers - 1)
        stations, latitudes, layers = np.broadcast_arrays(stations, latitudes, layers)
        occupancy = self.sl_dynamic_obstacle_grid.lookup(stations, latitudes, layer=layers)
        return np.where(occupancy > LETHAL_THRESHOLD, INFEASIBLE_COST, step(HAZARD_THRESHOLD, occupancy) * hazard_cost)


def build_cost_field(frame: FrenetFrame, static_polygons: list, dynamic_obstacles: list, start_time: float,
                     lattice_interval: float, settings) -> CostField:
    """
    Runs the cost field pipeline for one planning cycle.

    :param frame: vehicle-frame centerline with stations relative to the vehicle station
    :param static_polygons: obstacle polygons in the vehicle frame
    :param dynamic_obstacles: obstacles in road-relative coordinates, stations relative to the vehicle station
    """
    xy_grid = build_xy_obstacle_grid(static_polygons, frame, settings.xy_grid_cell_size, settings.grid_margin)
    sl_grid = build_sl_obstacle_grid(xy_grid, frame, -lattice_interval, settings.spatial_horizon + lattice_interval,
                                     settings.lane_width/2 + settings.grid_margin, settings.sl_grid_cell_size)
    dilated = dilate_sl_grid(sl_grid, settings.lethal_dilation_s, settings.hazard_dilation_s,
                             settings.lethal_dilation_l, settings.hazard_dilation_l)
    cost_grid = combine_lane_cost(dilated, settings)
    cost_field = CostField(frame, xy_grid, sl_grid, dilated, cost_grid)

    if dynamic_obstacles:
        cost_field.sl_dynamic_obstacle_grid, cost_field.dynamic_frame_time = build_sl_dynamic_obstacle_grid(
            dynamic_obstacles, sl_grid, start_time, settings)

    logger.debug("cost field: xy %s, sl %s, %d dynamic obstacle(s)", xy_grid.shape, sl_grid.shape, len(dynamic_obstacles))
    return cost_field

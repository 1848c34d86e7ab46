import logging

import numpy as np

logger = logging.getLogger(__name__)

VEHICLE_STATION = -1


class EdgeOutcome(object):
    """ Cost and end state of one edge for K initial states x A acceleration hypotheses """
    def __init__(self, cost: np.ndarray, final_velocity: np.ndarray, final_time: np.ndarray, acceleration: np.ndarray):
        self.cost = np.atleast_2d(cost)
        self.final_velocity = np.atleast_2d(final_velocity)
        self.final_time = np.atleast_2d(final_time)
        self.acceleration = np.atleast_2d(acceleration)


class SearchNode(object):
    def __init__(self, station: int, latitude: int, time_bucket: int, velocity_bucket: int, acceleration_index: int,
                       cost: float, velocity: float, time: float, acceleration: float):
        self.station = station
        self.latitude = latitude
        self.time_bucket = time_bucket
        self.velocity_bucket = velocity_bucket
        self.acceleration_index = acceleration_index
        self.cost = cost                    # accumulated edge cost up to this node
        self.velocity = velocity            # [m/s] on arrival
        self.time = time                    # [s] on arrival
        self.acceleration = acceleration    # [m/ss] along the edge into this node

    def __repr__(self):
        return (f'SearchNode(station={self.station}, latitude={self.latitude}, a={self.acceleration:.2f}, '
                f'v={self.velocity:.2f}, t={self.time:.2f}, cost={self.cost:.2f})')


class SearchResult(object):
    """ Winning edge chain: the vehicle edge type, then one node per lattice station reached """
    def __init__(self, vehicle_path_type: int, nodes: list, total_cost: float):
        self.vehicle_path_type = vehicle_path_type
        self.nodes = nodes
        self.total_cost = total_cost

    def __repr__(self):
        return f'SearchResult(path type {self.vehicle_path_type}, {len(self.nodes)} nodes, cost={self.total_cost:.2f})'


class CostTable(object):
    """ CostTable

    Dense DP table indexed by (station, latitude, time bucket, velocity bucket,
    acceleration index). Unreached cells hold an infinite cost.
    Parents hold (station, latitude, time bucket, velocity bucket, acceleration
    index) of the predecessor; station VEHICLE_STATION marks an edge from the
    vehicle, its latitude slot then holds the vehicle path type.
    """
    def __init__(self, num_stations: int, num_latitudes: int, num_time_ranges: int, num_velocity_ranges: int, num_accelerations: int):
        self.shape = (num_stations, num_latitudes, num_time_ranges, num_velocity_ranges, num_accelerations)
        self.cost = np.full(self.shape, np.inf)
        self.score = np.full(self.shape, np.inf)
        self.final_velocity = np.zeros(self.shape)
        self.final_time = np.zeros(self.shape)
        self.acceleration = np.zeros(self.shape)
        self.parent = np.full(self.shape + (5,), -1, dtype=int)

    def _check(self, station: int, latitude: int):
        if not (0 <= station < self.shape[0] and 0 <= latitude < self.shape[1]):
            raise IndexError(f"cost table cell ({station}, {latitude}) outside {self.shape[0]} x {self.shape[1]}")

    def reached(self, station: int, latitude: int) -> np.ndarray:
        """ (K, 3) time bucket, velocity bucket, acceleration index of every reached cell """
        self._check(station, latitude)
        return np.argwhere(np.isfinite(self.cost[station, latitude]))

    def num_reached(self) -> int:
        return int(np.isfinite(self.cost).sum())


class LatticeGraphSearch(object):
    """ LatticeGraphSearch

    Forward dynamic program over the lattice. Stations are processed in
    increasing order; every edge into a node is priced for every reached state
    of its origin and lands in the (time, velocity, acceleration) cell that
    matches its end state. A cell keeps the candidate with the lowest
    `cost + time_penalty * final_time`; the first one found wins ties.

    The edge evaluator must provide
        `vehicle_edges(station, latitude)` -> iterable of (path type, EdgeOutcome with K = 1)
        `lattice_edge(prev_station, prev_latitude, station, latitude, initial_velocity, initial_time)` -> EdgeOutcome or None
    """
    def __init__(self, lattice, velocity_ranges, time_ranges, num_accelerations: int, time_penalty: float = 0.0):
        self.lattice = lattice
        self.velocity_ranges = np.asarray(velocity_ranges, dtype=float)
        self.time_ranges = np.asarray(time_ranges, dtype=float)
        self.num_accelerations = num_accelerations
        self.time_penalty = time_penalty
        self.table = None

    def _bucket(self, ranges: np.ndarray, values: np.ndarray) -> np.ndarray:
        return np.clip(np.searchsorted(ranges[1:-1], values, side='right'), 0, len(ranges) - 2)

    def search(self, evaluator) -> CostTable:
        lattice = self.lattice
        table = CostTable(lattice.num_stations, lattice.num_latitudes,
                          len(self.time_ranges) - 1, len(self.velocity_ranges) - 1, self.num_accelerations)
        self.table = table

        for station in range(lattice.num_stations):
            for latitude in range(lattice.num_latitudes):
                if lattice.reachable_from_vehicle(station):
                    for path_type, outcome in evaluator.vehicle_edges(station, latitude):
                        parents = np.array([[VEHICLE_STATION, path_type, 0, 0, 0]])
                        self._relax(table, station, latitude, outcome, outcome.cost, parents)

                for prev_station, prev_latitude in lattice.origins(station, latitude):
                    reached = table.reached(prev_station, prev_latitude)
                    if len(reached) == 0:
                        continue
                    t, v, a = reached.T
                    prev_cost = table.cost[prev_station, prev_latitude, t, v, a]
                    outcome = evaluator.lattice_edge(prev_station, prev_latitude, station, latitude,
                                                     table.final_velocity[prev_station, prev_latitude, t, v, a],
                                                     table.final_time[prev_station, prev_latitude, t, v, a])
                    if outcome is None:
                        continue
                    parents = np.column_stack([np.full(len(reached), prev_station), np.full(len(reached), prev_latitude), reached])
                    self._relax(table, station, latitude, outcome, outcome.cost + prev_cost[:, np.newaxis], parents)

        logger.debug("graph search reached %d cells", table.num_reached())
        return table

    def _relax(self, table: CostTable, station: int, latitude: int, outcome: EdgeOutcome, total_cost: np.ndarray, parents: np.ndarray):
        num_initial, num_accelerations = total_cost.shape
        k, a = np.nonzero(np.isfinite(total_cost))
        if len(k) == 0:
            return

        cost = total_cost[k, a]
        final_velocity = outcome.final_velocity[k, a]
        final_time = outcome.final_time[k, a]
        score = cost + self.time_penalty*final_time
        t_bucket = self._bucket(self.time_ranges, final_time)
        v_bucket = self._bucket(self.velocity_ranges, final_velocity)
        cell = np.ravel_multi_index((t_bucket, v_bucket, a), table.shape[2:])

        # best candidate per cell, earliest candidate on ties
        order = np.lexsort((np.arange(len(cell)), score, cell))
        cells, first = np.unique(cell[order], return_index=True)
        best = order[first]

        t_bucket, v_bucket, a_idx = np.unravel_index(cells, table.shape[2:])
        improved = score[best] < table.score[station, latitude, t_bucket, v_bucket, a_idx]
        best = best[improved]
        t_bucket, v_bucket, a_idx = t_bucket[improved], v_bucket[improved], a_idx[improved]

        index = (station, latitude, t_bucket, v_bucket, a_idx)
        table.cost[index] = cost[best]
        table.score[index] = score[best]
        table.final_velocity[index] = final_velocity[best]
        table.final_time[index] = final_time[best]
        table.acceleration[index] = outcome.acceleration[k[best], a[best]]
        table.parent[index] = parents[k[best]]

    def best_terminal(self, terminal_cost=None):
        """
        Cheapest reached cell at the last station.

        :param terminal_cost: optional callable(station, final_time) added to the accumulated cost
        :return: (station, latitude, t, v, a) index or None when nothing reached the last station
        """
        table = self.table
        station = table.shape[0] - 1
        total = table.cost[station].copy()
        if terminal_cost is not None:
            total = total + terminal_cost(station, table.final_time[station])
        if not np.isfinite(total).any():
            return None
        flat = int(np.argmin(np.where(np.isfinite(total), total, np.inf)))
        return (station,) + tuple(int(i) for i in np.unravel_index(flat, total.shape))

    def backtrack(self, index: tuple) -> SearchResult:
        table = self.table
        nodes = []
        total_cost = float(table.cost[index])
        while index[0] != VEHICLE_STATION:
            nodes.append(SearchNode(*index, cost=float(table.cost[index]), velocity=float(table.final_velocity[index]),
                                    time=float(table.final_time[index]), acceleration=float(table.acceleration[index])))
            index = tuple(int(i) for i in table.parent[index])
            if index[0] != VEHICLE_STATION and index[0] >= nodes[-1].station:
                raise RuntimeError(f"cost table parent {index} does not precede station {nodes[-1].station}")
        nodes.reverse()
        return SearchResult(index[1], nodes, total_cost)

import numpy as np

from lattice_planner.common.cost.obstacle_grid import CostField

SMALL_V = 0.01                      # floor on sampled velocity [m/s]
NUM_ACCELERATION_PROFILES = 8


class CostFunction:
    """ CostFunction

    Prices one sampled spiral under constant-acceleration hypotheses.

    Acceleration profiles, by index: hard accel, hard decel, soft accel, soft
    decel, coast, then the accelerations that reach 0.999 x speed limit,
    1 m/s and a stop by the end of the path (clamped to the hard limits).
    """
    def __init__(self, settings, vehicle):
        self.settings = settings
        self.acceleration_profiles = np.array([vehicle.max_gas_accel, -vehicle.max_brake_decel,
                                               settings.soft_acceleration_limit, -settings.soft_deceleration_limit, 0.0])
        self.final_velocity_profiles = np.array([0.999*settings.speed_limit, 1.0, SMALL_V])

    def accelerations(self, initial_velocity: np.ndarray, distance: float) -> np.ndarray:
        """ (K, NUM_ACCELERATION_PROFILES) acceleration per initial velocity """
        initial_velocity = np.atleast_1d(initial_velocity)
        fixed = np.broadcast_to(self.acceleration_profiles, (len(initial_velocity), len(self.acceleration_profiles)))
        if distance < 0.001:
            matching = np.zeros((len(initial_velocity), len(self.final_velocity_profiles)))
        else:
            matching = (self.final_velocity_profiles[np.newaxis, :]**2 - initial_velocity[:, np.newaxis]**2) / (2*distance)
            matching = np.clip(matching, self.acceleration_profiles[1], self.acceleration_profiles[0])
        return np.concatenate([fixed, matching], axis=1)

    def final_velocity_and_time(self, acceleration: np.ndarray, initial_velocity: np.ndarray, initial_time: np.ndarray, length: float):
        """ Velocity and time at the end of the path; a vehicle that stops early creeps on at SMALL_V """
        v0 = np.asarray(initial_velocity)[:, np.newaxis]
        t0 = np.asarray(initial_time)[:, np.newaxis]
        final_velocity_sq = 2*acceleration*length + v0*v0
        final_velocity = np.maximum(SMALL_V, np.sqrt(np.maximum(0.0, final_velocity_sq)))

        with np.errstate(divide='ignore', invalid='ignore'):
            coasting = length / final_velocity
            distance_left = length - (SMALL_V*SMALL_V - v0*v0) / (2*acceleration)
            stopping = (final_velocity - v0) / acceleration + distance_left / SMALL_V
            moving = 2*length / (final_velocity + v0)
        duration = np.where(acceleration == 0.0, coasting, np.where(final_velocity_sq <= 0.0, stopping, moving))
        return final_velocity, t0 + duration

    def velocity_profile(self, acceleration: np.ndarray, initial_velocity: np.ndarray, initial_time: np.ndarray, s: np.ndarray):
        """ (K, A, N) velocity and time at arc lengths `s` """
        a = acceleration[..., np.newaxis]
        v0 = np.asarray(initial_velocity)[:, np.newaxis, np.newaxis]
        t0 = np.asarray(initial_time)[:, np.newaxis, np.newaxis]
        velocity = np.maximum(SMALL_V, np.sqrt(np.maximum(0.0, 2*a*s + v0*v0)))
        time = 2*s / (v0 + velocity) + t0
        return velocity, time

    def average_static_cost(self, cost_field: CostField, stations: np.ndarray, latitudes: np.ndarray) -> float:
        """ Mean static cost over the samples, inf if any sample is infeasible """
        costs = cost_field.static_cost(stations, latitudes)
        if np.any(costs < 0.0):
            return np.inf
        return float(costs.mean())

    def average_dynamic_cost(self, cost_field: CostField, stations: np.ndarray, latitudes: np.ndarray,
                             s: np.ndarray, curv: np.ndarray, dcurv: np.ndarray,
                             acceleration: np.ndarray, initial_velocity: np.ndarray, initial_time: np.ndarray) -> np.ndarray:
        """
        Mean moving-obstacle cost plus speed, acceleration and lateral
        acceleration penalties for every (initial state, acceleration) pair.

        :return: (K, A) costs, inf where a sample hits a moving obstacle or the
            steering rate needed exceeds the vehicle limit
        """
        settings = self.settings
        velocity, time = self.velocity_profile(acceleration, initial_velocity, initial_time, s)

        steering_infeasible = np.any(np.abs(dcurv) * velocity > settings.d_curvature_max, axis=-1)
        costs = cost_field.dynamic_cost(stations, latitudes, time, settings.obstacle_hazard_cost)
        blocked = np.any(costs < 0.0, axis=-1)
        average = costs.mean(axis=-1)

        max_velocity = velocity.max(axis=-1)
        max_lateral_acceleration = np.abs(curv * velocity * velocity).max(axis=-1)

        average = average + np.where(max_velocity >= settings.speed_limit, settings.speed_limit_penalty, 0.0)
        average = average + np.where(acceleration > self.acceleration_profiles[2] + 0.0001, settings.hard_acceleration_penalty, 0.0)
        average = average + np.where(acceleration < self.acceleration_profiles[3], settings.hard_deceleration_penalty, 0.0)
        average = average + np.where(max_lateral_acceleration >= settings.lateral_acceleration_limit,
                                     settings.soft_lateral_acceleration_penalty, 0.0)
        average = average + settings.linear_lateral_acceleration_penalty * max_lateral_acceleration

        return np.where(steering_infeasible | blocked, np.inf, average)

    def edge_cost(self, average_static_cost: float, average_dynamic_cost: np.ndarray, length: float, extra: float = 0.0) -> np.ndarray:
        """ Average sample cost scaled by the path length """
        return (average_static_cost + average_dynamic_cost + extra) * length

    def cubic_from_vehicle_penalty(self, velocity: float) -> float:
        return self.settings.cubic_path_penalty * velocity * velocity

    def terminal_cost(self, station: int, final_time: np.ndarray) -> np.ndarray:
        """ Reward for reaching far stations, penalty for taking long """
        return -station*self.settings.station_reach_discount + final_time*self.settings.extra_time_penalty

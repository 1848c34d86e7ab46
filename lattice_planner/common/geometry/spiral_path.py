import math

import numpy as np

from lattice_planner.common.geometry.math_utils import unifyAngleRange

SIMPSONS_INTERVALS = 8
SIMPSONS_COEFFS = np.array([1.0, 4.0, 2.0, 4.0, 2.0, 4.0, 2.0, 4.0, 1.0])

CUBIC_NEWTON_ITERATIONS = 16
CUBIC_RELAXATION_ITERATIONS = 16
QUINTIC_NEWTON_ITERATIONS = 32
QUINTIC_RELAXATION_ITERATIONS = 32

CONVERGENCE_ERROR = 0.01            # |dx| + |dy| + |drot| [m, m, rad]
MIN_GOAL_DISTANCE = 0.1             # shortest solvable goal distance along the start heading [m]
SINGULAR_DETERMINANT = 1e-12


class SpiralPathParams(object):
    """ Solved curvature polynomial of one spiral path

    Attributes
    ------
        `knots` (`np.ndarray`): curvatures at s = 0, sG/3, 2sG/3, sG (cubic) or
            curvature, its two derivatives at s = 0, then curvatures at sG/3, 2sG/3, sG (quintic)
        `sG` (`float`): arc length of the path [m]
        `converged` (`bool`): False when Newton iteration did not meet the boundary conditions
    """
    def __init__(self, knots, sG: float, converged: bool = True):
        self.knots = np.asarray(knots, dtype=float)
        self.sG = float(sG)
        self.converged = bool(converged)

    @property
    def is_quintic(self) -> bool:
        return len(self.knots) == 6

    def to_dict(self) -> dict:
        return {'type': 'quintic' if self.is_quintic else 'cubic',
                'knots': self.knots.tolist(), 'sG': self.sG, 'converged': self.converged}

    @classmethod
    def from_dict(cls, data: dict):
        return cls(data['knots'], data['sG'], data.get('converged', True))


class PathSamples(object):
    """ Arc-length samples of a spiral path (start pose frame as given) """
    def __init__(self, s: np.ndarray, x: np.ndarray, y: np.ndarray, rot: np.ndarray, curv: np.ndarray, dcurv: np.ndarray):
        self.s = s
        self.x = x
        self.y = y
        self.rot = rot
        self.curv = curv
        self.dcurv = dcurv          # curvature rate along the path [1/m^2]

    def __len__(self):
        return len(self.s)


def goal_in_start_frame(starts: np.ndarray, ends: np.ndarray) -> np.ndarray:
    """
    Expresses each end pose relative to its start pose.

    :param starts: (N, 4) rows of [x, y, rot, curv]
    :param ends: (N, 4) rows of [x, y, rot, curv]
    :return: (N, 3) rows of [x, y, rot] of the goal in the start frame
    """
    dx = ends[:, 0] - starts[:, 0]
    dy = ends[:, 1] - starts[:, 1]
    cos_rot = np.cos(starts[:, 2])
    sin_rot = np.sin(starts[:, 2])
    return np.column_stack([cos_rot*dx + sin_rot*dy,
                            -sin_rot*dx + cos_rot*dy,
                            unifyAngleRange(ends[:, 2] - starts[:, 2])])


def polynomial_coefficients(knots: np.ndarray, sG: np.ndarray) -> np.ndarray:
    """
    Power-series coefficients of curvature(s) for a batch of knot vectors.

    :param knots: (N, 4) cubic or (N, 6) quintic knots
    :param sG: (N,) arc lengths
    :return: (N, 4) or (N, 6) coefficients, lowest order first
    """
    knots = np.atleast_2d(knots)
    sG = np.atleast_1d(sG)
    sG_2 = sG*sG
    sG_3 = sG_2*sG
    if knots.shape[1] == 4:
        p0, p1, p2, p3 = knots.T
        return np.column_stack([
            p0,
            (-5.5*p0 + 9*p1 - 4.5*p2 + p3) / sG,
            (9*p0 - 22.5*p1 + 18*p2 - 4.5*p3) / sG_2,
            -4.5*(p0 - 3*p1 + 3*p2 - p3) / sG_3,
        ])

    p0, p1, p2, p3, p4, p5 = knots.T
    return np.column_stack([
        p0,
        p1,
        p2 / 2,
        (-71.875*p0 + 81*p3 - 10.125*p4 + p5 - 21.25*p1*sG - 2.75*p2*sG_2) / sG_3,
        (166.5*p0 - 202.5*p3 + 40.5*p4 - 4.5*p5 + 45*p1*sG + 4.5*p2*sG_2) / (sG_2*sG_2),
        (-95.625*p0 + 121.5*p3 - 30.375*p4 + 4.5*p5 - 24.75*p1*sG - 2.25*p2*sG_2) / (sG_2*sG_3),
    ])


def evaluate_polynomial(coeffs: np.ndarray, s: np.ndarray):
    """
    Heading change, curvature and curvature rate at arc lengths `s`.

    `coeffs` has shape (K,) or (N, K); `s` broadcasts against the leading axis.
    """
    coeffs = np.asarray(coeffs, dtype=float)
    order = coeffs.shape[-1]
    theta = np.zeros_like(s, dtype=float)
    curv = np.zeros_like(s, dtype=float)
    dcurv = np.zeros_like(s, dtype=float)
    for k in range(order - 1, -1, -1):
        c_k = coeffs[..., k, np.newaxis] if coeffs.ndim > 1 else coeffs[k]
        theta = theta*s + c_k / (k + 1)
        curv = curv*s + c_k
        if k > 0:
            dcurv = dcurv*s + k*c_k
    return theta*s, curv, dcurv


def _simpson_stations(sG: np.ndarray):
    ds = sG / SIMPSONS_INTERVALS
    s = ds[:, np.newaxis] * np.arange(SIMPSONS_INTERVALS + 1)
    return s, ds / 3


def _residuals_and_jacobian(theta, dT, h_over_3, end_curv, goal):
    cos_theta = np.cos(theta)
    sin_theta = np.sin(theta)

    guess_x = h_over_3 * (cos_theta @ SIMPSONS_COEFFS)
    guess_y = h_over_3 * (sin_theta @ SIMPSONS_COEFFS)

    jacobian = np.empty((len(theta), 3, 3))
    jacobian[:, 0, :] = -h_over_3[:, np.newaxis] * np.einsum('i,ni,nij->nj', SIMPSONS_COEFFS, sin_theta, dT)
    jacobian[:, 1, :] = h_over_3[:, np.newaxis] * np.einsum('i,ni,nij->nj', SIMPSONS_COEFFS, cos_theta, dT)
    jacobian[:, 2, :] = dT[:, -1, :]
    # arc length also moves the end of the integration interval
    jacobian[:, 0, 2] += cos_theta[:, -1]
    jacobian[:, 1, 2] += sin_theta[:, -1]
    jacobian[:, 2, 2] += end_curv

    delta = np.column_stack([goal[:, 0] - guess_x,
                             goal[:, 1] - guess_y,
                             unifyAngleRange(goal[:, 2] - theta[:, -1])])
    return delta, jacobian


def _cubic_jacobian(fixed: np.ndarray, free: np.ndarray, goal: np.ndarray):
    p0, p3 = fixed.T
    p1, p2, sG = free.T
    s, h_over_3 = _simpson_stations(sG)

    coeffs = polynomial_coefficients(np.column_stack([p0, p1, p2, p3]), sG)
    theta, _, _ = evaluate_polynomial(coeffs, s)

    r = s / sG[:, np.newaxis]
    c3 = (3.375*(p0 - 3*p1 + 3*p2 - p3))[:, np.newaxis]
    c2 = (3*(2*p0 - 5*p1 + 4*p2 - p3))[:, np.newaxis]
    c1 = (0.25*(11*p0 - 18*p1 + 9*p2 - 2*p3))[:, np.newaxis]
    dT = np.stack([
        ((3.375*r - 7.5)*r + 4.5)*r*s,
        ((-3.375*r + 6)*r - 2.25)*r*s,
        ((c3*r - c2)*r + c1)*r*r,
    ], axis=-1)

    return _residuals_and_jacobian(theta, dT, h_over_3, p3, goal)


def _quintic_jacobian(fixed: np.ndarray, free: np.ndarray, goal: np.ndarray):
    p0, p1, p2, p5 = fixed.T
    p3, p4, sG = free.T
    s, h_over_3 = _simpson_stations(sG)

    coeffs = polynomial_coefficients(np.column_stack([p0, p1, p2, p3, p4, p5]), sG)
    theta, _, _ = evaluate_polynomial(coeffs, s)

    r = s / sG[:, np.newaxis]
    r_2 = r*r
    r_3 = r_2*r
    r_4 = r_3*r
    r_5 = r_4*r
    s_2 = s*s
    col = lambda v: v[:, np.newaxis]
    dT = np.stack([
        ((20.25*r - 40.5)*r + 20.25)*r_3*s,
        ((-5.0625*r + 8.1)*r - 2.53125)*r_3*s,
        col(53.90625*p0 - 60.75*p3 + 7.59375*p4 - 0.75*p5)*r_4 + col(10.625*p1)*s*r_3 + col(0.6875*p2)*s_2*r_2
        + col(-133.2*p0 + 162*p3 - 32.4*p4 + 3.6*p5)*r_5 - col(27*p1)*s*r_4 - col(1.8*p2)*s_2*r_3
        + col(79.6875*p0 - 101.25*p3 + 25.3125*p4 - 3.75*p5)*r_5*r + col(16.5*p1)*s*r_5 + col(1.125*p2)*s_2*r_4,
    ], axis=-1)

    return _residuals_and_jacobian(theta, dT, h_over_3, p5, goal)


def _solve_3x3(jacobian: np.ndarray, delta: np.ndarray) -> np.ndarray:
    # singular or non-finite systems yield nan steps and never converge
    step = np.full(delta.shape, np.nan)
    finite = np.isfinite(jacobian).all(axis=(1, 2)) & np.isfinite(delta).all(axis=1)
    regular = np.zeros(len(delta), dtype=bool)
    if finite.any():
        regular[finite] = np.abs(np.linalg.det(jacobian[finite])) > SINGULAR_DETERMINANT
    if regular.any():
        step[regular] = np.linalg.solve(jacobian[regular], delta[regular][..., np.newaxis])[..., 0]
    return step


def _newton_update(jacobian_fn, fixed, free, goal, active=None) -> np.ndarray:
    converged = np.zeros(len(free), dtype=bool)
    idx = np.arange(len(free)) if active is None else np.flatnonzero(active)
    if len(idx) == 0:
        return converged

    delta, jacobian = jacobian_fn(fixed[idx], free[idx], goal[idx])
    done = np.abs(delta).sum(axis=1) < CONVERGENCE_ERROR
    converged[idx[done]] = True
    pending = ~done
    free[idx[pending]] += _solve_3x3(jacobian[pending], delta[pending])
    return converged


def _optimize(jacobian_fn, fixed, goal, relaxation_iterations, newton_iterations):
    num = len(goal)
    free = np.zeros((num, 3))
    free[:, 2] = goal[:, 0]
    with np.errstate(all='ignore'):
        # continuation: ramp curvatures, lateral offset and heading up from zero
        for i in range(1, relaxation_iterations + 1):
            ratio = i / relaxation_iterations
            relaxed_goal = np.column_stack([goal[:, 0], goal[:, 1]*ratio, goal[:, 2]*ratio])
            _newton_update(jacobian_fn, fixed*ratio, free, relaxed_goal)

        converged = np.zeros(num, dtype=bool)
        for _ in range(newton_iterations):
            converged |= _newton_update(jacobian_fn, fixed, free, goal, active=~converged)
            if converged.all():
                break

    converged &= np.isfinite(free).all(axis=1) & (free[:, 2] > 0)
    return free, converged


def optimize_cubic_paths(starts: np.ndarray, ends: np.ndarray):
    """
    Solves a batch of cubic spirals from `starts` to `ends`.

    :param starts: (N, 4) rows of [x, y, rot, curv]
    :param ends: (N, 4) rows of [x, y, rot, curv]
    :return: knots (N, 4), sG (N,), converged (N,)
    """
    starts = np.atleast_2d(np.asarray(starts, dtype=float))
    ends = np.atleast_2d(np.asarray(ends, dtype=float))
    goal = goal_in_start_frame(starts, ends)
    fixed = np.column_stack([starts[:, 3], ends[:, 3]])

    free, converged = _optimize(_cubic_jacobian, fixed, goal, CUBIC_RELAXATION_ITERATIONS, CUBIC_NEWTON_ITERATIONS)
    knots = np.column_stack([fixed[:, 0], free[:, 0], free[:, 1], fixed[:, 1]])
    return knots, free[:, 2], converged


def optimize_quintic_paths(starts: np.ndarray, ends: np.ndarray, dcurv, ddcurv):
    """
    Solves a batch of quintic spirals that also match the start curvature rate
    `dcurv` and its derivative `ddcurv`.
    """
    starts = np.atleast_2d(np.asarray(starts, dtype=float))
    ends = np.atleast_2d(np.asarray(ends, dtype=float))
    num = len(starts)
    goal = goal_in_start_frame(starts, ends)
    fixed = np.column_stack([starts[:, 3],
                             np.broadcast_to(dcurv, num),
                             np.broadcast_to(ddcurv, num),
                             ends[:, 3]])

    free, converged = _optimize(_quintic_jacobian, fixed, goal, QUINTIC_RELAXATION_ITERATIONS, QUINTIC_NEWTON_ITERATIONS)
    converged &= goal[:, 0] >= MIN_GOAL_DISTANCE
    knots = np.column_stack([fixed[:, 0], fixed[:, 1], fixed[:, 2], free[:, 0], free[:, 1], fixed[:, 3]])
    return knots, free[:, 2], converged


def sample_spiral(start_x: float, start_y: float, start_rot: float, knots: np.ndarray, sG: float, num: int) -> PathSamples:
    """
    Samples a solved spiral at `num` evenly spaced arc lengths in [0, sG].

    Heading and curvature are closed form; positions integrate the tangent
    with the trapezoid rule, i.e. each increment is the running average of
    consecutive tangent estimates.
    """
    if num < 2:
        raise ValueError(f"need at least two samples, got {num}")
    coeffs = polynomial_coefficients(knots, sG)[0]
    s = np.linspace(0.0, sG, num)
    theta, curv, dcurv = evaluate_polynomial(coeffs, s)
    rot = theta + start_rot

    ds = sG / (num - 1)
    cos_rot = np.cos(rot)
    sin_rot = np.sin(rot)
    x = start_x + np.concatenate([[0.0], np.cumsum((cos_rot[1:] + cos_rot[:-1]) / 2)]) * ds
    y = start_y + np.concatenate([[0.0], np.cumsum((sin_rot[1:] + sin_rot[:-1]) / 2)]) * ds
    return PathSamples(s, x, y, rot, curv, dcurv)


def num_samples_for_step(sG: float, step: float) -> int:
    return int(math.ceil(sG / step)) + 1


class SpiralPath(object):
    """ Spiral path between two poses with common sampling helpers """
    def __init__(self, start, end, params: SpiralPathParams = None):
        self.start = start
        self.end = end
        self.params = params
        self.converged = params.converged if params is not None else False

    @property
    def arc_length(self) -> float:
        return self.params.sG

    def build_path(self, num: int) -> np.ndarray:
        """
        Dense resample with the exact start and end poses as first and last rows.

        :return: (num, 4) rows of [x, y, rot, curv]
        """
        samples = sample_spiral(self.start.x, self.start.y, self.start.rot, self.params.knots, self.params.sG, num)
        path = np.column_stack([samples.x, samples.y, samples.rot, samples.curv])
        path[0] = [self.start.x, self.start.y, self.start.rot, self.start.curv]
        path[-1] = [self.end.x, self.end.y, self.end.rot, self.end.curv]
        return path


class CubicSpiralPath(SpiralPath):
    def __init__(self, start, end, params: SpiralPathParams = None):
        if params is not None:
            # reuse solved interior knots, end curvatures always follow the poses
            knots = np.array(params.knots, dtype=float)
            knots[0] = start.curv
            knots[3] = end.curv
            params = SpiralPathParams(knots, params.sG, params.converged)
        super().__init__(start, end, params)

    def optimize(self) -> bool:
        knots, sG, converged = optimize_cubic_paths(
            [[self.start.x, self.start.y, self.start.rot, self.start.curv]],
            [[self.end.x, self.end.y, self.end.rot, self.end.curv]])
        self.params = SpiralPathParams(knots[0], sG[0], converged[0])
        self.converged = bool(converged[0])
        return self.converged


class QuinticSpiralPath(SpiralPath):
    """ Spiral path that also continues the start curvature rate and its derivative """
    def optimize(self) -> bool:
        knots, sG, converged = optimize_quintic_paths(
            [[self.start.x, self.start.y, self.start.rot, self.start.curv]],
            [[self.end.x, self.end.y, self.end.rot, self.end.curv]],
            getattr(self.start, 'dcurv', 0.0), getattr(self.start, 'ddcurv', 0.0))
        self.params = SpiralPathParams(knots[0], sG[0], converged[0])
        self.converged = bool(converged[0])
        return self.converged


def spiral_path_from_params(start, end, params: SpiralPathParams) -> SpiralPath:
    if params.is_quintic:
        return QuinticSpiralPath(start, end, params)
    return CubicSpiralPath(start, end, params)

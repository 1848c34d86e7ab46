from lattice_planner.common.geometry.math_utils import limitWithinRange


class PID(object):
    """ PID loop with output clamping and a clamped integral

    The derivative term is skipped on the first call after `clear()` so a
    fresh controller does not kick on the initial error.
    """
    def __init__(self, dt, max, min, Kp, Kd, Ki):
        self.dt_ = dt
        self.max_ = max
        self.min_ = min
        self.Kp_ = Kp
        self.Kd_ = Kd
        self.Ki_ = Ki
        self.clear()

    def setSampleTime(self, dt_):
        self.dt_ = dt_

    def clear(self):
        self.pre_error_ = None
        self.integral_ = 0.0
        self.output = 0.0

    def calculate(self, setpoint, pv):
        error = setpoint - pv

        self.integral_ += error*self.dt_
        if self.Ki_ > 0:
            # keep the integral term alone within the output range
            self.integral_ = limitWithinRange(self.integral_, self.min_/self.Ki_, self.max_/self.Ki_)
        derivative = 0.0 if self.pre_error_ is None else (error - self.pre_error_) / self.dt_

        self.output = limitWithinRange(self.Kp_*error + self.Ki_*self.integral_ + self.Kd_*derivative, self.min_, self.max_)
        self.pre_error_ = error
        return self.output

class PlanningError(Exception):
    """Base class of every error raised by the planning core."""


class InvalidInputError(PlanningError, ValueError):
    """Malformed planning input, rejected before any lattice is built."""


class ConfigurationError(InvalidInputError):
    """Unknown or out-of-range planner setting."""


class PlannerInitError(PlanningError):
    """The isolated planning unit could not be started."""

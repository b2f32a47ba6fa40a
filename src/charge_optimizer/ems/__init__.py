"""Hourly charge schedule optimisation."""

from charge_optimizer.ems.errors import ScheduleInputError, SolverUnavailableError
from charge_optimizer.ems.intent import derive_action
from charge_optimizer.ems.models import ScheduleSolution, StorageState
from charge_optimizer.ems.optimizer import optimize_schedule

__all__ = [
    "ScheduleInputError",
    "ScheduleSolution",
    "SolverUnavailableError",
    "StorageState",
    "derive_action",
    "optimize_schedule",
]

from __future__ import annotations


class ScheduleInputError(ValueError):
    """Raised when optimizer inputs are rejected before the solver is involved."""


class SolverUnavailableError(RuntimeError):
    """Raised when the MILP solver backend cannot be used."""

from __future__ import annotations

from charge_optimizer.device.modes import Action
from charge_optimizer.ems.models import ScheduleSolution

DEFAULT_TOLERANCE = 0.01


def derive_action(
    solution: ScheduleSolution,
    position: int = 0,
    *,
    tolerance: float = DEFAULT_TOLERANCE,
) -> Action:
    """Reduce a schedule to the action for the slot at ``position``.

    Charging wins when both directions look active after rounding, so a forced
    negative-price charge is never replaced by a discharge.
    """
    if not solution.is_usable or not 0 <= position < len(solution.positions):
        return Action.SAFE_FALLBACK

    step = solution.positions[position]
    if is_active(step.charge_kwh, tolerance):
        return Action.CHARGE
    if is_active(step.discharge_kwh, tolerance):
        return Action.DISCHARGE_ONLY
    return Action.HOLD


def is_active(amount_kwh: float, tolerance: float = DEFAULT_TOLERANCE) -> bool:
    return round(amount_kwh, 2) > tolerance

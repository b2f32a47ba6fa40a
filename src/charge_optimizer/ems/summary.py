from __future__ import annotations

from dataclasses import dataclass
from datetime import tzinfo

from charge_optimizer.ems.intent import DEFAULT_TOLERANCE, is_active
from charge_optimizer.ems.models import ScheduleSolution

_RULE = "-" * 59


@dataclass(frozen=True, slots=True)
class CostSummary:
    charge_cost: float
    discharge_value: float

    @property
    def net_cost(self) -> float:
        return self.charge_cost - self.discharge_value


def summarize_costs(solution: ScheduleSolution) -> CostSummary:
    return CostSummary(
        charge_cost=sum(step.price * step.charge_kwh for step in solution.positions),
        discharge_value=sum(step.price * step.discharge_kwh for step in solution.positions),
    )


def format_schedule(
    solution: ScheduleSolution,
    *,
    tz: tzinfo,
    tolerance: float = DEFAULT_TOLERANCE,
) -> str:
    """Render the planned schedule as a fixed-width table in local time."""
    lines = [
        "Local time  | C | D |  CQ   |  DQ   |  SoC  | Tariff",
        _RULE,
    ]
    for step in solution.positions:
        local = step.timestamp.astimezone(tz)
        charging = "Y" if is_active(step.charge_kwh, tolerance) else " "
        discharging = "Y" if is_active(step.discharge_kwh, tolerance) else " "
        lines.append(
            f"{local:%d/%m %H:%M} | {charging} | {discharging} | "
            f"{step.charge_kwh:5.2f} | {step.discharge_kwh:5.2f} | "
            f"{step.soc_kwh:5.2f} | {step.price:.5f}"
        )

    costs = summarize_costs(solution)
    lines.extend(
        [
            _RULE,
            f"Total charging cost:   € {costs.charge_cost:5.2f}",
            f"Total discharge value: € {costs.discharge_value:5.2f}",
            f"Net cost:              € {costs.net_cost:5.2f}",
            _RULE,
        ]
    )
    return "\n".join(lines)

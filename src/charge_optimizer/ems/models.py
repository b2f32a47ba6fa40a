from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.functional_serializers import PlainSerializer

Rounded3 = Annotated[
    float,
    PlainSerializer(lambda v: round(v, 3), return_type=float, when_used="json"),
]

SolutionStatus = Literal["Optimal", "Feasible", "Infeasible", "Error"]

USABLE_STATUSES: frozenset[SolutionStatus] = frozenset({"Optimal", "Feasible"})


@dataclass(frozen=True, slots=True)
class StorageState:
    # Energy quantities in kWh, rates in kWh per hourly slot.
    capacity_kwh: float
    soc_kwh: float
    max_charge_kwh: float
    max_discharge_kwh: float
    charging_efficiency: float
    discharging_efficiency: float


class SchedulePosition(BaseModel):
    index: int
    timestamp: datetime
    price: float
    charge_kwh: Rounded3
    discharge_kwh: Rounded3
    soc_kwh: Rounded3
    is_charging: bool

    model_config = ConfigDict(extra="forbid")


class ScheduleTimings(BaseModel):
    build_seconds: float
    solve_seconds: float

    model_config = ConfigDict(extra="forbid")


class ScheduleSolution(BaseModel):
    status: SolutionStatus
    objective_value: Rounded3 | None = None
    positions: list[SchedulePosition]
    timings: ScheduleTimings | None = None

    model_config = ConfigDict(extra="forbid")

    @property
    def is_usable(self) -> bool:
        return self.status in USABLE_STATUSES

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import pulp

from charge_optimizer.ems.errors import ScheduleInputError, SolverUnavailableError
from charge_optimizer.ems.horizon import is_strictly_increasing
from charge_optimizer.ems.models import (
    USABLE_STATUSES,
    SchedulePosition,
    ScheduleSolution,
    ScheduleTimings,
    SolutionStatus,
    StorageState,
)
from charge_optimizer.models.tariffs import TariffPoint

logger = logging.getLogger(__name__)

DEFAULT_DISCHARGE_BIAS = 1.01


def _new_var_list() -> list[pulp.LpVariable]:
    return []


@dataclass(slots=True)
class ScheduleVars:
    # All lists are indexed by horizon position.
    # Energy bought from the grid into storage (kWh).
    charge: list[pulp.LpVariable] = field(default_factory=_new_var_list)
    # Energy drawn from storage (kWh).
    discharge: list[pulp.LpVariable] = field(default_factory=_new_var_list)
    # Stored energy at the start of the slot (kWh).
    soc: list[pulp.LpVariable] = field(default_factory=_new_var_list)
    # 1 when the slot is allowed to charge, 0 when it is allowed to discharge.
    is_charging: list[pulp.LpVariable] = field(default_factory=_new_var_list)


@dataclass(slots=True)
class ScheduleModel:
    problem: pulp.LpProblem
    vars: ScheduleVars


class ScheduleBuilder:
    def __init__(
        self,
        horizon: list[TariffPoint],
        storage: StorageState,
        *,
        discharge_bias: float = DEFAULT_DISCHARGE_BIAS,
    ) -> None:
        self._horizon = horizon
        self._storage = storage
        self._discharge_bias = discharge_bias

    def build(self) -> ScheduleModel:
        problem = pulp.LpProblem("charge_schedule", pulp.LpMinimize)
        vars = ScheduleVars()

        self._build_slots(problem, vars)
        self._build_soc_evolution(problem, vars)
        self._build_objective(problem, vars)

        return ScheduleModel(problem, vars)

    def _build_slots(self, problem: pulp.LpProblem, vars: ScheduleVars) -> None:
        storage = self._storage
        max_charge = storage.max_charge_kwh
        max_discharge = storage.max_discharge_kwh

        for t, tariff in enumerate(self._horizon):
            charge = pulp.LpVariable(f"charge_t{t}", lowBound=0, upBound=max_charge)
            discharge = pulp.LpVariable(f"discharge_t{t}", lowBound=0, upBound=max_discharge)
            soc = pulp.LpVariable(f"soc_t{t}", lowBound=0, upBound=storage.capacity_kwh)
            is_charging = pulp.LpVariable(f"is_charging_t{t}", cat="Binary")
            vars.charge.append(charge)
            vars.discharge.append(discharge)
            vars.soc.append(soc)
            vars.is_charging.append(is_charging)

            if tariff.price < 0:
                # The grid pays to take energy: always charge at the maximum rate.
                problem += charge == max_charge, f"forced_charge_t{t}"

            problem += charge <= max_charge * is_charging, f"charge_exclusive_t{t}"
            problem += (
                discharge <= max_discharge * (1 - is_charging),
                f"discharge_exclusive_t{t}",
            )
            problem += discharge <= soc, f"no_overdraw_t{t}"

    def _build_soc_evolution(self, problem: pulp.LpProblem, vars: ScheduleVars) -> None:
        storage = self._storage
        problem += vars.soc[0] == storage.soc_kwh, "initial_soc"

        for t in range(1, len(self._horizon)):
            problem += (
                vars.soc[t]
                == vars.soc[t - 1]
                + vars.charge[t - 1] * storage.charging_efficiency
                - vars.discharge[t - 1] * (1.0 / storage.discharging_efficiency),
                f"soc_evolution_t{t}",
            )

    def _build_objective(self, problem: pulp.LpProblem, vars: ScheduleVars) -> None:
        # Purchase cost minus discharge value weighted by the bias.
        bias = self._discharge_bias
        problem += pulp.lpSum(
            vars.charge[t] * tariff.price - vars.discharge[t] * (tariff.price * bias)
            for t, tariff in enumerate(self._horizon)
        )


def validate_inputs(horizon: list[TariffPoint], storage: StorageState) -> None:
    if not horizon:
        raise ScheduleInputError("horizon must contain at least one tariff")
    if storage.capacity_kwh <= 0:
        raise ScheduleInputError(
            f"combined capacity must be positive, got {storage.capacity_kwh}"
        )
    if storage.soc_kwh < 0:
        raise ScheduleInputError(f"state of charge must be >= 0, got {storage.soc_kwh}")
    if not is_strictly_increasing(horizon):
        raise ScheduleInputError("horizon timestamps must be strictly increasing")
    for name, value in (
        ("charging_efficiency", storage.charging_efficiency),
        ("discharging_efficiency", storage.discharging_efficiency),
    ):
        if not 0 < value <= 1:
            raise ScheduleInputError(f"{name} must be in (0, 1], got {value}")
    if storage.max_charge_kwh < 0 or storage.max_discharge_kwh < 0:
        raise ScheduleInputError("charge and discharge rates must be >= 0")


def optimize_schedule(
    horizon: list[TariffPoint],
    storage: StorageState,
    *,
    discharge_bias: float = DEFAULT_DISCHARGE_BIAS,
    time_limit_seconds: int | None = None,
    solver_msg: bool = False,
) -> ScheduleSolution:
    """Plan hourly charge and discharge amounts that minimise net cost.

    Inputs are validated before any solver variable is created. Only an
    ``Optimal`` or ``Feasible`` result carries positions; any other outcome is
    returned with an empty schedule so callers never act on a partial plan.
    """
    validate_inputs(horizon, storage)

    solver = pulp.PULP_CBC_CMD(msg=solver_msg, timeLimit=time_limit_seconds)
    if not solver.available():
        raise SolverUnavailableError("CBC solver is not available")

    build_start = time.perf_counter()
    model = ScheduleBuilder(horizon, storage, discharge_bias=discharge_bias).build()
    build_seconds = time.perf_counter() - build_start

    solve_start = time.perf_counter()
    try:
        model.problem.solve(solver)
    except pulp.PulpSolverError as exc:
        logger.error("Solver failed: %s", exc)
        return ScheduleSolution(status="Error", positions=[])
    solve_seconds = time.perf_counter() - solve_start

    timings = ScheduleTimings(build_seconds=build_seconds, solve_seconds=solve_seconds)
    status = _map_status(model.problem)
    logger.info(
        "Schedule solved: status=%s slots=%s build=%.3fs solve=%.3fs",
        status,
        len(horizon),
        build_seconds,
        solve_seconds,
    )
    if status not in USABLE_STATUSES:
        return ScheduleSolution(status=status, positions=[], timings=timings)

    return ScheduleSolution(
        status=status,
        objective_value=_value(model.problem.objective),
        positions=_extract_positions(model, horizon),
        timings=timings,
    )


def _map_status(problem: pulp.LpProblem) -> SolutionStatus:
    if problem.status == pulp.LpStatusOptimal:
        if problem.sol_status == pulp.LpSolutionIntegerFeasible:
            return "Feasible"
        return "Optimal"
    if problem.status == pulp.LpStatusInfeasible:
        return "Infeasible"
    return "Error"


def _extract_positions(model: ScheduleModel, horizon: list[TariffPoint]) -> list[SchedulePosition]:
    vars = model.vars
    positions: list[SchedulePosition] = []
    for t, tariff in enumerate(horizon):
        positions.append(
            SchedulePosition(
                index=t,
                timestamp=tariff.timestamp,
                price=tariff.price,
                charge_kwh=_value(vars.charge[t]),
                discharge_kwh=_value(vars.discharge[t]),
                soc_kwh=_value(vars.soc[t]),
                is_charging=_value(vars.is_charging[t]) > 0.5,
            )
        )
    return positions


def _value(var: pulp.LpVariable | pulp.LpAffineExpression | None) -> float:
    if var is None:
        return 0.0
    v = pulp.value(var)
    if v is None:
        return 0.0
    return float(v)

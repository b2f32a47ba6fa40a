from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pulp
import pytest

from charge_optimizer.device.modes import Action
from charge_optimizer.ems.errors import ScheduleInputError, SolverUnavailableError
from charge_optimizer.ems.intent import derive_action
from charge_optimizer.ems.models import StorageState
from charge_optimizer.ems.optimizer import ScheduleBuilder, optimize_schedule
from charge_optimizer.models.tariffs import TariffPoint

T0 = datetime(2025, 6, 1, 10, 0, tzinfo=UTC)
TOL = 0.01


def _horizon(*prices: float) -> list[TariffPoint]:
    return [
        TariffPoint(timestamp=T0 + timedelta(hours=idx), price=price)
        for idx, price in enumerate(prices)
    ]


def _storage(**overrides: Any) -> StorageState:
    values: dict[str, Any] = {
        "capacity_kwh": 5.0,
        "soc_kwh": 0.0,
        "max_charge_kwh": 2.0,
        "max_discharge_kwh": 2.0,
        "charging_efficiency": 1.0,
        "discharging_efficiency": 1.0,
    }
    values.update(overrides)
    return StorageState(**values)


def test_single_negative_hour_forces_full_charge() -> None:
    solution = optimize_schedule(_horizon(-0.02), _storage())

    assert solution.status == "Optimal"
    [step] = solution.positions
    assert step.charge_kwh == pytest.approx(2.0, abs=1e-9)
    assert step.discharge_kwh == pytest.approx(0.0, abs=1e-9)
    # SoC of the first slot is the starting state, not the post-charge value.
    assert step.soc_kwh == pytest.approx(0.0, abs=1e-9)
    assert step.is_charging


def test_buys_low_and_sells_high() -> None:
    solution = optimize_schedule(_horizon(0.10, 0.30), _storage())

    assert solution.is_usable
    first, second = solution.positions
    assert first.charge_kwh == pytest.approx(2.0, abs=1e-6)
    assert second.soc_kwh == pytest.approx(2.0, abs=1e-6)
    assert second.discharge_kwh == pytest.approx(2.0, abs=1e-6)
    assert solution.objective_value == pytest.approx(0.2 - 0.3 * 1.01 * 2.0, abs=1e-3)
    assert derive_action(solution) is Action.CHARGE


def test_discharges_now_when_current_price_is_highest() -> None:
    storage = _storage(soc_kwh=3.0, charging_efficiency=0.9, discharging_efficiency=0.9)
    solution = optimize_schedule(_horizon(0.30, 0.10), storage)

    assert solution.positions[0].discharge_kwh == pytest.approx(2.0, abs=1e-6)
    assert derive_action(solution) is Action.DISCHARGE_ONLY


def test_flat_prices_with_losses_hold() -> None:
    storage = _storage(charging_efficiency=0.9, discharging_efficiency=0.9)
    solution = optimize_schedule(_horizon(0.20, 0.20), storage)

    assert solution.is_usable
    for step in solution.positions:
        assert step.charge_kwh == pytest.approx(0.0, abs=1e-6)
        assert step.discharge_kwh == pytest.approx(0.0, abs=1e-6)
    assert derive_action(solution) is Action.HOLD


def test_schedule_properties_hold_over_mixed_horizon() -> None:
    prices = (0.25, -0.01, 0.05, 0.31, 0.12, -0.03, 0.40, 0.22, 0.08, 0.35)
    storage = _storage(
        capacity_kwh=5.4,
        soc_kwh=1.3,
        max_charge_kwh=1.6,
        max_discharge_kwh=1.2,
        charging_efficiency=0.92,
        discharging_efficiency=0.88,
    )
    horizon = _horizon(*prices)
    solution = optimize_schedule(horizon, storage)

    assert solution.is_usable
    steps = solution.positions
    assert [step.timestamp for step in steps] == [tariff.timestamp for tariff in horizon]
    assert steps[0].soc_kwh == pytest.approx(1.3, abs=1e-6)

    for step in steps:
        # Bounds.
        assert -1e-6 <= step.soc_kwh <= storage.capacity_kwh + 1e-6
        # Mutual exclusion.
        assert not (step.charge_kwh > TOL and step.discharge_kwh > TOL)
        # No overdraw.
        assert step.discharge_kwh <= step.soc_kwh + 1e-6
        # Forced charge on negative prices.
        if step.price < 0:
            assert step.charge_kwh == pytest.approx(storage.max_charge_kwh, abs=1e-9)

    for prev, curr in zip(steps, steps[1:], strict=False):
        expected = (
            prev.soc_kwh
            + prev.charge_kwh * storage.charging_efficiency
            - prev.discharge_kwh / storage.discharging_efficiency
        )
        assert curr.soc_kwh == pytest.approx(expected, abs=1e-5)


def test_overflowing_forced_charge_is_not_usable() -> None:
    # Four forced charges of 2 kWh cannot fit into 5 kWh.
    solution = optimize_schedule(_horizon(-0.01, -0.01, -0.01, -0.01, 0.1), _storage())

    assert not solution.is_usable
    assert solution.status in ("Infeasible", "Error")
    assert solution.positions == []
    assert derive_action(solution) is Action.SAFE_FALLBACK


def test_soc_above_capacity_is_not_usable() -> None:
    solution = optimize_schedule(_horizon(0.1, 0.2), _storage(soc_kwh=6.0))

    assert not solution.is_usable
    assert derive_action(solution) is Action.SAFE_FALLBACK


class TestValidation:
    def test_negative_soc_rejected_before_variables_exist(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def _no_variables(*_args: object, **_kwargs: object) -> None:
            raise AssertionError("variable created before validation")

        monkeypatch.setattr(pulp, "LpVariable", _no_variables)

        with pytest.raises(ScheduleInputError, match="state of charge"):
            optimize_schedule(_horizon(0.1), _storage(soc_kwh=-1.0))

    def test_empty_horizon_rejected(self) -> None:
        with pytest.raises(ScheduleInputError, match="horizon"):
            optimize_schedule([], _storage())

    @pytest.mark.parametrize("capacity", [0.0, -5.0])
    def test_non_positive_capacity_rejected(self, capacity: float) -> None:
        with pytest.raises(ScheduleInputError, match="capacity"):
            optimize_schedule(_horizon(0.1), _storage(capacity_kwh=capacity))

    def test_unsorted_horizon_rejected(self) -> None:
        horizon = list(reversed(_horizon(0.1, 0.2)))
        with pytest.raises(ScheduleInputError, match="strictly increasing"):
            optimize_schedule(horizon, _storage())

    def test_validation_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            optimize_schedule([], _storage())


def test_solver_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pulp.PULP_CBC_CMD, "available", lambda self: False)

    with pytest.raises(SolverUnavailableError):
        optimize_schedule(_horizon(0.1), _storage())


def test_builder_indexes_variables_by_position() -> None:
    horizon = _horizon(0.1, -0.2, 0.3)
    model = ScheduleBuilder(horizon, _storage()).build()

    assert [var.name for var in model.vars.charge] == ["charge_t0", "charge_t1", "charge_t2"]
    assert len(model.vars.is_charging) == 3
    assert all(var.cat == pulp.LpInteger for var in model.vars.is_charging)
    constraints = model.problem.constraints
    assert "forced_charge_t1" in constraints
    assert "forced_charge_t0" not in constraints
    assert "initial_soc" in constraints
    assert "soc_evolution_t0" not in constraints
    assert "soc_evolution_t2" in constraints


def test_discharge_bias_scales_discharge_coefficient() -> None:
    horizon = _horizon(0.2)
    model = ScheduleBuilder(horizon, _storage(), discharge_bias=1.05).build()

    coefficients = {var.name: coef for var, coef in model.problem.objective.items()}
    assert coefficients["charge_t0"] == pytest.approx(0.2)
    assert coefficients["discharge_t0"] == pytest.approx(-0.21)


class TestSolverStatus:
    @pytest.fixture(autouse=True)
    def _solver_available(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(pulp.PULP_CBC_CMD, "available", lambda self: True)

    def _solve_reports(
        self, monkeypatch: pytest.MonkeyPatch, status: int, sol_status: int
    ) -> None:
        def _solve(problem: pulp.LpProblem, *_args: object, **_kwargs: object) -> int:
            problem.status = status
            problem.sol_status = sol_status
            return status

        monkeypatch.setattr(pulp.LpProblem, "solve", _solve)

    def test_time_limited_integer_solution_is_feasible(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        self._solve_reports(monkeypatch, pulp.LpStatusOptimal, pulp.LpSolutionIntegerFeasible)

        solution = optimize_schedule(_horizon(0.1, 0.2), _storage())

        assert solution.status == "Feasible"
        assert solution.is_usable
        assert len(solution.positions) == 2

    @pytest.mark.parametrize(
        ("status", "sol_status"),
        [
            (pulp.LpStatusNotSolved, pulp.LpSolutionNoSolutionFound),
            (pulp.LpStatusUnbounded, pulp.LpSolutionUnbounded),
            (pulp.LpStatusUndefined, pulp.LpSolutionNoSolutionFound),
        ],
    )
    def test_unsolved_outcomes_map_to_error(
        self, monkeypatch: pytest.MonkeyPatch, status: int, sol_status: int
    ) -> None:
        self._solve_reports(monkeypatch, status, sol_status)

        solution = optimize_schedule(_horizon(0.1, 0.2), _storage())

        assert solution.status == "Error"
        assert solution.positions == []
        assert derive_action(solution) is Action.SAFE_FALLBACK

    def test_solver_crash_maps_to_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def _crash(*_args: object, **_kwargs: object) -> int:
            raise pulp.PulpSolverError("cbc exited with signal 9")

        monkeypatch.setattr(pulp.LpProblem, "solve", _crash)

        solution = optimize_schedule(_horizon(0.1, 0.2), _storage())

        assert solution.status == "Error"
        assert solution.positions == []
        assert solution.objective_value is None


def test_installed_pulp_provides_cbc_command() -> None:
    major = int(pulp.__version__.split(".")[0])

    assert major < 4
    assert hasattr(pulp, "PULP_CBC_CMD")

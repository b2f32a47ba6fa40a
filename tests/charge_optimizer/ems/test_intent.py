from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from charge_optimizer.device.modes import Action
from charge_optimizer.ems.intent import derive_action, is_active
from charge_optimizer.ems.models import SchedulePosition, ScheduleSolution, SolutionStatus

T0 = datetime(2025, 6, 1, 10, 0, tzinfo=UTC)


def _solution(
    *steps: tuple[float, float],
    status: SolutionStatus = "Optimal",
) -> ScheduleSolution:
    return ScheduleSolution(
        status=status,
        positions=[
            SchedulePosition(
                index=idx,
                timestamp=T0 + timedelta(hours=idx),
                price=0.1,
                charge_kwh=charge,
                discharge_kwh=discharge,
                soc_kwh=1.0,
                is_charging=charge > 0,
            )
            for idx, (charge, discharge) in enumerate(steps)
        ],
    )


@pytest.mark.parametrize(
    ("charge", "discharge", "expected"),
    [
        (2.0, 0.0, Action.CHARGE),
        (0.0, 1.5, Action.DISCHARGE_ONLY),
        (0.0, 0.0, Action.HOLD),
        (0.004, 0.006, Action.HOLD),
        (0.02, 0.0, Action.CHARGE),
        (0.5, 0.5, Action.CHARGE),
    ],
)
def test_first_position_maps_to_action(charge: float, discharge: float, expected: Action) -> None:
    assert derive_action(_solution((charge, discharge))) is expected


def test_feasible_status_is_usable() -> None:
    solution = _solution((0.0, 1.0), status="Feasible")

    assert derive_action(solution) is Action.DISCHARGE_ONLY


@pytest.mark.parametrize("status", ["Infeasible", "Error"])
def test_unusable_status_falls_back(status: SolutionStatus) -> None:
    solution = _solution((2.0, 0.0), status=status)

    assert derive_action(solution) is Action.SAFE_FALLBACK


def test_later_position_can_be_selected() -> None:
    solution = _solution((2.0, 0.0), (0.0, 2.0))

    assert derive_action(solution, 1) is Action.DISCHARGE_ONLY


@pytest.mark.parametrize("position", [2, -1])
def test_position_out_of_range_falls_back(position: int) -> None:
    solution = _solution((2.0, 0.0), (0.0, 2.0))

    assert derive_action(solution, position) is Action.SAFE_FALLBACK


def test_empty_usable_solution_falls_back() -> None:
    assert derive_action(_solution()) is Action.SAFE_FALLBACK


def test_tolerance_is_configurable() -> None:
    solution = _solution((0.05, 0.0))

    assert derive_action(solution, tolerance=0.1) is Action.HOLD
    assert derive_action(solution, tolerance=0.01) is Action.CHARGE


def test_is_active_rounds_before_comparing() -> None:
    assert not is_active(0.014)
    assert is_active(0.016)
    assert not is_active(-1.0)

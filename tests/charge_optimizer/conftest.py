from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from charge_optimizer.config import ConfigStore


def _config_data() -> dict[str, Any]:
    homewizard: dict[str, Any] = {
        "refresh_interval_seconds": 600,
        "p1": {
            "ip": "192.168.1.10",
            "username": "local/charge-optimizer",
            "token": "p1-token",
            "battery_mode": "zero",
        },
        "battery_configuration": {
            "batteries": [
                {"name": "battery-1", "ip": "192.168.1.21", "token": "b1", "capacity_kwh": 2.5},
                {"name": "battery-2", "ip": "192.168.1.22", "token": "b2", "capacity_kwh": 2.5},
            ],
            "max_charge_rate_kwh": 2.0,
            "max_discharge_rate_kwh": 2.0,
            "charging_efficiency": 0.9,
            "discharging_efficiency": 0.9,
        },
    }
    return {
        "homewizard": homewizard,
        "zonneplan": {
            "refresh_interval_minutes": 30,
            "authentication": {
                "username": "user@example.com",
                "access_token": "access-1",
                "refresh_token": "refresh-1",
            },
            "tariffs": [],
        },
        "optimizer": {"timezone": "Europe/Amsterdam"},
    }


@pytest.fixture
def base_config() -> dict[str, Any]:
    return _config_data()


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "config.yaml"


@pytest.fixture
def make_store(config_path: Path) -> Callable[[dict[str, Any]], ConfigStore]:
    def _make(data: dict[str, Any]) -> ConfigStore:
        config_path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return ConfigStore(config_path)

    return _make


@pytest.fixture
def store(
    make_store: Callable[[dict[str, Any]], ConfigStore], base_config: dict[str, Any]
) -> ConfigStore:
    return make_store(base_config)

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from charge_optimizer.models.config import ZonneplanConfig
from charge_optimizer.models.tariffs import TariffPoint

HOUR = timedelta(hours=1)


def floor_to_hour(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def seconds_until_next_hour(now: datetime) -> float:
    return (floor_to_hour(now) + HOUR - now).total_seconds()


def next_wake_delay(refresh_interval_seconds: float, now: datetime) -> float:
    """Seconds to sleep so the next cycle never runs later than the hour boundary."""
    return max(0.0, min(float(refresh_interval_seconds), seconds_until_next_hour(now)))


def filter_horizon(tariffs: Iterable[TariffPoint], current_hour: datetime) -> list[TariffPoint]:
    """Return tariffs at or after ``current_hour`` ordered by timestamp."""
    upcoming = [tariff for tariff in tariffs if tariff.timestamp >= current_hour]
    return sorted(upcoming, key=lambda tariff: tariff.timestamp)


def current_position(horizon: list[TariffPoint], current_hour: datetime) -> int | None:
    for idx, tariff in enumerate(horizon):
        if tariff.timestamp == current_hour:
            return idx
    return None


def is_strictly_increasing(horizon: list[TariffPoint]) -> bool:
    return all(
        earlier.timestamp < later.timestamp
        for earlier, later in zip(horizon, horizon[1:], strict=False)
    )


def tariff_range_for_day(
    horizon: list[TariffPoint], day_of: datetime
) -> tuple[float, float] | None:
    """Lowest and highest price among tariffs on the same local day as ``day_of``."""
    tz = day_of.tzinfo
    same_day = [
        tariff.price
        for tariff in horizon
        if tariff.timestamp.astimezone(tz).date() == day_of.date()
    ]
    if not same_day:
        return None
    return min(same_day), max(same_day)


class ConfiguredHorizonSource:
    """Price horizon backed by the tariffs persisted in the configuration."""

    def __init__(self, config: ZonneplanConfig) -> None:
        self._config = config

    def get_horizon(self) -> list[TariffPoint]:
        return list(self._config.tariffs)

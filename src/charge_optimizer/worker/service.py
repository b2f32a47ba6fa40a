from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from charge_optimizer.config import ConfigStore
from charge_optimizer.device.modes import Action, DeviceMode, translate_action
from charge_optimizer.ems.errors import ScheduleInputError, SolverUnavailableError
from charge_optimizer.ems.horizon import (
    ConfiguredHorizonSource,
    filter_horizon,
    floor_to_hour,
    next_wake_delay,
    tariff_range_for_day,
)
from charge_optimizer.ems.intent import derive_action
from charge_optimizer.ems.models import ScheduleSolution, StorageState
from charge_optimizer.ems.optimizer import optimize_schedule
from charge_optimizer.ems.summary import format_schedule
from charge_optimizer.lib.homewizard import (
    BatteriesStatus,
    BatteryStateOfCharge,
    DeviceResponseError,
    HomeWizardClient,
)
from charge_optimizer.lib.zonneplan import TokenGrant, ZonneplanClient
from charge_optimizer.models.config import (
    AppConfig,
    BatteryConfiguration,
    HomeWizardConfig,
    ZonneplanAuthentication,
)
from charge_optimizer.models.tariffs import TariffPoint

logger = logging.getLogger(__name__)

_RULE = "-" * 59


class BatteryDevice(Protocol):
    async def get_state_of_charge(self) -> list[BatteryStateOfCharge]: ...

    async def get_live_power(self) -> float: ...

    async def get_batteries_status(self) -> BatteriesStatus: ...

    async def set_mode(self, mode: DeviceMode) -> Any: ...


class HorizonSource(Protocol):
    def get_horizon(self) -> list[TariffPoint]: ...


class TariffProvider(Protocol):
    async def refresh_token(self, refresh_token: str) -> TokenGrant: ...

    async def get_tariffs(self) -> list[TariffPoint]: ...


class Optimizer(Protocol):
    def __call__(
        self,
        horizon: list[TariffPoint],
        storage: StorageState,
        *,
        discharge_bias: float = ...,
        time_limit_seconds: int | None = ...,
    ) -> ScheduleSolution: ...


Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _configured_horizon(config: AppConfig) -> HorizonSource:
    return ConfiguredHorizonSource(config.zonneplan)


async def wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds; returns True when stop was requested."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except TimeoutError:
        return False
    return True


@dataclass(frozen=True, slots=True)
class CycleResult:
    action: Action | None = None
    mode: DeviceMode | None = None
    applied: bool = False
    aborted_reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self.aborted_reason is not None


class ScheduleWorker:
    """Polls the batteries, re-plans the schedule and applies the current hour's mode.

    Each cycle reads a fresh configuration snapshot and only writes the
    ``homewizard`` section back.
    """

    def __init__(
        self,
        *,
        store: ConfigStore,
        device_factory: Callable[[HomeWizardConfig], BatteryDevice] = HomeWizardClient,
        horizon_source_factory: Callable[[AppConfig], HorizonSource] = _configured_horizon,
        optimizer: Optimizer = optimize_schedule,
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._device_factory = device_factory
        self._horizon_source_factory = horizon_source_factory
        self._optimizer = optimizer
        self._clock = clock
        self._refresh_interval_seconds = 60

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("Schedule service started")
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("An error occurred while executing the schedule cycle")

            if stop_event.is_set():
                break
            delay = self.wake_delay()
            logger.info("The schedule service will wait %.0f seconds before the next run.", delay)
            if await wait_for_stop(stop_event, delay):
                break
        logger.info("Schedule service is stopping, because cancellation was requested.")

    def wake_delay(self, now: datetime | None = None) -> float:
        return next_wake_delay(self._refresh_interval_seconds, now or self._clock())

    async def run_cycle(self, now: datetime | None = None) -> CycleResult:
        cycle_time = now or self._clock()
        current_hour = floor_to_hour(cycle_time)

        config = self._store.load()
        homewizard = config.homewizard
        self._refresh_interval_seconds = homewizard.refresh_interval_seconds
        device = self._device_factory(homewizard)

        # Polling
        status = await device.get_batteries_status()
        soc_readings = await device.get_state_of_charge()
        live_power_w = await device.get_live_power()
        homewizard = _record_telemetry(homewizard, status, soc_readings, cycle_time)
        self._store.save_section("homewizard", homewizard)

        horizon = filter_horizon(self._horizon_source_factory(config).get_horizon(), current_hour)
        if not horizon:
            logger.error("No current tariffs available in the tariff list.")
            return CycleResult(aborted_reason="empty_horizon")
        if horizon[0].timestamp != current_hour:
            logger.error("No tariff found for the current hour %s.", current_hour.isoformat())
            return CycleResult(aborted_reason="missing_current_tariff")

        storage = build_storage_state(homewizard.battery_configuration, soc_readings)
        _log_status(config, homewizard, storage, horizon, live_power_w, cycle_time)

        # Computing
        optimizer_config = config.optimizer
        logger.info("Starting calculation of optimal charging schedule...")
        try:
            # CBC runs in a worker thread so the tariff loop keeps running.
            solution = await asyncio.to_thread(
                self._optimizer,
                horizon,
                storage,
                discharge_bias=optimizer_config.discharge_bias,
                time_limit_seconds=optimizer_config.solver_time_limit_seconds,
            )
        except ScheduleInputError as exc:
            logger.warning("Skipping schedule cycle, invalid optimizer input: %s", exc)
            return CycleResult(aborted_reason="invalid_input")
        except SolverUnavailableError as exc:
            logger.error("Skipping schedule cycle: %s", exc)
            return CycleResult(aborted_reason="solver_unavailable")

        if solution.is_usable:
            logger.info(
                "Planned schedule:\n%s",
                format_schedule(
                    solution,
                    tz=optimizer_config.tzinfo,
                    tolerance=optimizer_config.rounding_tolerance,
                ),
            )
        else:
            logger.warning("No solution found (status=%s). Falling back to safe mode.", solution.status)

        # Applying
        action = derive_action(solution, 0, tolerance=optimizer_config.rounding_tolerance)
        target = translate_action(action, hold_mode=homewizard.hold_mode)
        current = DeviceMode.from_vendor(homewizard.p1.battery_mode, homewizard.p1.permissions)
        if current is target:
            logger.info("Battery already in %s mode for action %s.", target.name, action.value)
            return CycleResult(action=action, mode=target, applied=False)

        logger.info("Setting battery to %s mode for action %s.", target.name, action.value)
        await device.set_mode(target)

        p1 = homewizard.p1.model_copy(
            update={
                "battery_mode": target.vendor_mode,
                "permissions": list(target.permissions) if target.permissions is not None else None,
                "last_updated": self._clock(),
            }
        )
        self._store.save_section("homewizard", homewizard.model_copy(update={"p1": p1}))
        return CycleResult(action=action, mode=target, applied=True)


def build_storage_state(
    batteries: BatteryConfiguration, readings: list[BatteryStateOfCharge]
) -> StorageState:
    """Aggregate per-battery percentages into one combined storage state in kWh."""
    by_ip = {reading.ip: reading for reading in readings}
    soc_kwh = 0.0
    for battery in batteries.batteries:
        reading = by_ip.get(battery.ip)
        if reading is None:
            raise DeviceResponseError(f"No state of charge reported for battery {battery.name}")
        soc_kwh += reading.state_of_charge_pct * battery.capacity_kwh / 100.0
    return StorageState(
        capacity_kwh=batteries.combined_capacity_kwh,
        soc_kwh=soc_kwh,
        max_charge_kwh=batteries.max_charge_rate_kwh,
        max_discharge_kwh=batteries.max_discharge_rate_kwh,
        charging_efficiency=batteries.charging_efficiency,
        discharging_efficiency=batteries.discharging_efficiency,
    )


def _record_telemetry(
    homewizard: HomeWizardConfig,
    status: BatteriesStatus,
    readings: list[BatteryStateOfCharge],
    now: datetime,
) -> HomeWizardConfig:
    logger.info(
        "Battery: Mode=%s, P=%s, MaxIn=%s, MaxOut=%s, Target=%s",
        status.mode,
        status.power_w,
        status.max_consumption_w,
        status.max_production_w,
        status.target_power_w,
    )
    p1 = homewizard.p1.model_copy(
        update={
            "battery_mode": status.mode,
            "permissions": status.permissions,
            "power_w": status.power_w,
            "max_consumption_w": status.max_consumption_w,
            "max_production_w": status.max_production_w,
            "target_power_w": status.target_power_w,
            "last_updated": now,
        }
    )
    by_ip = {reading.ip: reading for reading in readings}
    batteries = [
        battery.model_copy(
            update={
                "state_of_charge_pct": by_ip[battery.ip].state_of_charge_pct,
                "last_updated": now,
            }
        )
        if battery.ip in by_ip
        else battery
        for battery in homewizard.battery_configuration.batteries
    ]
    battery_configuration = homewizard.battery_configuration.model_copy(
        update={"batteries": batteries}
    )
    return homewizard.model_copy(
        update={"p1": p1, "battery_configuration": battery_configuration}
    )


def _log_status(
    config: AppConfig,
    homewizard: HomeWizardConfig,
    storage: StorageState,
    horizon: list[TariffPoint],
    live_power_w: float,
    now: datetime,
) -> None:
    local_now = now.astimezone(config.optimizer.tzinfo)
    day_range = tariff_range_for_day(horizon, local_now)
    lowest, highest = day_range if day_range is not None else (horizon[0].price,) * 2
    batteries = homewizard.battery_configuration
    logger.info(_RULE)
    logger.info("Current battery mode:                         %s", homewizard.p1.battery_mode)
    logger.info("Total battery capacity:                       %s kWh", storage.capacity_kwh)
    logger.info("Current state of charge (combined):           %.4f kWh", storage.soc_kwh)
    logger.info("Current house power consumption / production: %s Watt", live_power_w)
    logger.info("Current tariff:                               %.4f / kWh", horizon[0].price)
    logger.info("Lowest tariff today:                          %.4f / kWh", lowest)
    logger.info("Highest tariff today:                         %.4f / kWh", highest)
    logger.info(
        "Charging efficiency:                          %s %%", batteries.charging_efficiency * 100
    )
    logger.info(
        "Discharging efficiency:                       %s %%",
        batteries.discharging_efficiency * 100,
    )
    logger.info(_RULE)


class TariffWorker:
    """Keeps the Zonneplan token fresh and persists the latest hourly tariffs.

    Owns the ``zonneplan`` configuration section.
    """

    def __init__(
        self,
        *,
        store: ConfigStore,
        client_factory: Callable[[ZonneplanAuthentication], TariffProvider] = ZonneplanClient,
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._clock = clock
        self._refresh_interval_minutes = 60

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("Tariff service started")
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Error in tariff refresh cycle")

            if stop_event.is_set():
                break
            logger.info(
                "Tariff service waiting %s min for next run.", self._refresh_interval_minutes
            )
            if await wait_for_stop(stop_event, self._refresh_interval_minutes * 60):
                break
        logger.info("Tariff service is stopping, because cancellation was requested.")

    async def run_cycle(self) -> bool:
        config = self._store.load()
        zonneplan = config.zonneplan
        self._refresh_interval_minutes = zonneplan.refresh_interval_minutes

        refresh_token = zonneplan.authentication.refresh_token
        if not refresh_token:
            logger.warning("No Zonneplan refresh token configured; run the login command first.")
            return False

        grant = await self._client_factory(zonneplan.authentication).refresh_token(refresh_token)
        authentication = zonneplan.authentication.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token,
                "expires_in": grant.expires_in,
            }
        )
        zonneplan = zonneplan.model_copy(update={"authentication": authentication})
        self._store.save_section("zonneplan", zonneplan)
        logger.info("Zonneplan token refreshed. Updating tariffs...")

        tariffs = await self._client_factory(authentication).get_tariffs()
        if not tariffs:
            logger.warning("No tariffs found in Zonneplan API response.")
            return False

        logger.info("%s tariffs retrieved.", len(tariffs))
        for tariff in tariffs:
            logger.debug("Tariff %s: %.5f", tariff.timestamp.isoformat(), tariff.price)

        authentication = authentication.model_copy(update={"last_updated": self._clock()})
        zonneplan = zonneplan.model_copy(
            update={"authentication": authentication, "tariffs": tariffs}
        )
        self._store.save_section("zonneplan", zonneplan)
        logger.info("Tariffs updated.")
        return True


class Worker:
    """Runs the schedule and tariff loops as two asyncio tasks with a shared stop signal."""

    def __init__(
        self,
        *,
        schedule_worker: ScheduleWorker,
        tariff_worker: TariffWorker,
    ) -> None:
        self._schedule_worker = schedule_worker
        self._tariff_worker = tariff_worker
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    def start(self) -> None:
        if self._tasks:
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._tariff_worker.run(self._stop_event), name="tariffs"),
            asyncio.create_task(self._schedule_worker.run(self._stop_event), name="schedule"),
        ]
        logger.info("Worker started")

    def stop(self) -> None:
        logger.info("Worker stop requested")
        self._stop_event.set()

    async def wait(self) -> None:
        try:
            await asyncio.gather(*self._tasks)
        finally:
            for task in self._tasks:
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            self._tasks = []

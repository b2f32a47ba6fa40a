from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from functools import wraps
from pathlib import Path
from typing import Any

import click

from charge_optimizer.config import ConfigStore
from charge_optimizer.device.modes import translate_action
from charge_optimizer.ems.errors import ScheduleInputError, SolverUnavailableError
from charge_optimizer.ems.horizon import filter_horizon, floor_to_hour
from charge_optimizer.ems.intent import derive_action
from charge_optimizer.ems.optimizer import optimize_schedule
from charge_optimizer.ems.summary import format_schedule
from charge_optimizer.lib.homewizard import BatteryStateOfCharge, HomeWizardClient
from charge_optimizer.lib.zonneplan import ZonneplanClient
from charge_optimizer.models.config import AppConfig
from charge_optimizer.worker import ScheduleWorker, TariffWorker, Worker
from charge_optimizer.worker.service import build_storage_state

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def sync(func: Callable[..., Coroutine[Any, Any, Any]]) -> Callable[..., Any]:
    """Decorator that runs async click commands with asyncio.run."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=Path("config.yaml"),
    show_default=True,
    help="Path to YAML config. Runtime state is written back to this file.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path, log_level: str) -> None:
    """Plan and apply hourly battery charge schedules."""
    _configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["store"] = ConfigStore(config_path)


@cli.command()
@click.pass_context
@sync
async def service(ctx: click.Context) -> None:
    """Run the tariff and schedule loops until interrupted."""
    store: ConfigStore = ctx.obj["store"]
    _load(store)

    worker = Worker(
        schedule_worker=ScheduleWorker(store=store),
        tariff_worker=TariffWorker(store=store),
    )
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, worker.stop)

    worker.start()
    await worker.wait()


@cli.command()
@click.pass_context
@sync
async def plan(ctx: click.Context) -> None:
    """Read live state of charge and print the plan without changing the battery mode."""
    store: ConfigStore = ctx.obj["store"]
    config = _load(store)
    readings = await HomeWizardClient(config.homewizard).get_state_of_charge()
    _print_plan(config, readings)


@cli.command()
@click.pass_context
def report(ctx: click.Context) -> None:
    """Print the plan from the persisted tariffs and state of charge."""
    store: ConfigStore = ctx.obj["store"]
    config = _load(store)
    readings: list[BatteryStateOfCharge] = []
    for battery in config.homewizard.battery_configuration.batteries:
        if battery.state_of_charge_pct is None:
            raise click.ClickException(
                f"No state of charge stored for battery {battery.name}; run the service first."
            )
        readings.append(
            BatteryStateOfCharge(
                name=battery.name,
                ip=battery.ip,
                capacity_kwh=battery.capacity_kwh,
                state_of_charge_pct=battery.state_of_charge_pct,
            )
        )
    _print_plan(config, readings)


@cli.command("zonneplan-login")
@click.option("--poll-seconds", type=click.FloatRange(min=1.0), default=5.0, show_default=True)
@click.option("--attempts", type=click.IntRange(min=1), default=60, show_default=True)
@click.pass_context
@sync
async def zonneplan_login(ctx: click.Context, poll_seconds: float, attempts: int) -> None:
    """Log in to Zonneplan by e-mail confirmation and store the tokens."""
    store: ConfigStore = ctx.obj["store"]
    config = _load(store)
    authentication = config.zonneplan.authentication
    client = ZonneplanClient(authentication)

    uuid = await client.request_login(authentication.username)
    click.echo(f"Confirm the login e-mail sent to {authentication.username}.")
    for _ in range(attempts):
        await asyncio.sleep(poll_seconds)
        grant = await client.complete_login(authentication.username, uuid)
        if grant is None:
            continue
        authentication = authentication.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token,
                "expires_in": grant.expires_in,
                "last_updated": datetime.now(UTC),
            }
        )
        store.save_section(
            "zonneplan", config.zonneplan.model_copy(update={"authentication": authentication})
        )
        click.echo("Zonneplan tokens stored.")
        return
    raise click.ClickException("Login was not confirmed in time.")


@cli.command("homewizard-login")
@click.option(
    "--battery",
    "battery_name",
    default=None,
    help="Pair with this battery instead of the P1 meter.",
)
@click.option("--poll-seconds", type=click.FloatRange(min=1.0), default=5.0, show_default=True)
@click.option("--attempts", type=click.IntRange(min=1), default=6, show_default=True)
@click.pass_context
@sync
async def homewizard_login(
    ctx: click.Context, battery_name: str | None, poll_seconds: float, attempts: int
) -> None:
    """Create a local API user on a HomeWizard device and store its token."""
    store: ConfigStore = ctx.obj["store"]
    config = _load(store)
    homewizard = config.homewizard
    batteries = homewizard.battery_configuration.batteries

    if battery_name is None:
        ip, username = homewizard.p1.ip, homewizard.p1.username
    else:
        matches = [battery for battery in batteries if battery.name == battery_name]
        if not matches:
            raise click.ClickException(f"Unknown battery {battery_name}.")
        ip, username = matches[0].ip, matches[0].username
    if not username:
        raise click.ClickException(f"No username configured for device {ip}.")

    client = HomeWizardClient(homewizard)
    click.echo(f"Press the button on the HomeWizard device at {ip}.")
    for attempt in range(attempts):
        if attempt:
            await asyncio.sleep(poll_seconds)
        token = await client.request_token(ip, username)
        if token is None:
            continue
        if battery_name is None:
            homewizard = homewizard.model_copy(
                update={"p1": homewizard.p1.model_copy(update={"token": token})}
            )
        else:
            updated = [
                battery.model_copy(update={"token": token})
                if battery.name == battery_name
                else battery
                for battery in batteries
            ]
            homewizard = homewizard.model_copy(
                update={
                    "battery_configuration": homewizard.battery_configuration.model_copy(
                        update={"batteries": updated}
                    )
                }
            )
        store.save_section("homewizard", homewizard)
        click.echo(f"HomeWizard token for {ip} stored.")
        return
    raise click.ClickException("The device did not confirm the user in time.")


def _load(store: ConfigStore) -> AppConfig:
    try:
        return store.load()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _print_plan(config: AppConfig, readings: list[BatteryStateOfCharge]) -> None:
    current_hour = floor_to_hour(datetime.now(UTC))
    horizon = filter_horizon(config.zonneplan.tariffs, current_hour)
    if not horizon:
        raise click.ClickException("No current tariffs available; run the service first.")
    if horizon[0].timestamp != current_hour:
        raise click.ClickException(
            f"No tariff found for the current hour {current_hour.isoformat()}."
        )
    storage = build_storage_state(config.homewizard.battery_configuration, readings)
    optimizer_config = config.optimizer
    try:
        solution = optimize_schedule(
            horizon,
            storage,
            discharge_bias=optimizer_config.discharge_bias,
            time_limit_seconds=optimizer_config.solver_time_limit_seconds,
        )
    except (ScheduleInputError, SolverUnavailableError) as exc:
        raise click.ClickException(str(exc)) from exc

    if solution.is_usable:
        click.echo(
            format_schedule(
                solution,
                tz=optimizer_config.tzinfo,
                tolerance=optimizer_config.rounding_tolerance,
            )
        )
    else:
        click.echo(f"No usable schedule (status={solution.status}).", err=True)

    action = derive_action(solution, 0, tolerance=optimizer_config.rounding_tolerance)
    mode = translate_action(action, hold_mode=config.homewizard.hold_mode)
    click.echo(f"Action: {action.value} -> mode {mode.payload()}")


def _configure_logging(level_str: str) -> None:
    log_level = getattr(logging, level_str.strip().upper())
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("charge_optimizer").setLevel(log_level)


def main() -> None:
    """Invoke the CLI."""
    cli(prog_name="charge-optimizer")


if __name__ == "__main__":
    main()

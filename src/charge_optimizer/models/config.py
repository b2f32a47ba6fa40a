from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator, model_validator

from charge_optimizer.device.modes import HoldMode
from charge_optimizer.models.tariffs import TariffPoint


class Battery(BaseModel):
    name: str = Field(min_length=1)
    # Local API user the token is issued to.
    username: str = ""
    ip: str = Field(min_length=1)
    token: str = ""
    capacity_kwh: float = Field(gt=0)
    # Runtime values written by the schedule loop.
    state_of_charge_pct: float | None = Field(default=None, ge=0, le=100)
    last_updated: AwareDatetime | None = None

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class BatteryConfiguration(BaseModel):
    batteries: list[Battery] = Field(min_length=1)
    max_charge_rate_kwh: float = Field(ge=0)
    max_discharge_rate_kwh: float = Field(ge=0)
    charging_efficiency: float = Field(gt=0, le=1)
    discharging_efficiency: float = Field(gt=0, le=1)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _validate_batteries_unique(self) -> BatteryConfiguration:
        names = [battery.name for battery in self.batteries]
        if len(names) != len(set(names)):
            raise ValueError("battery names must be unique")
        ips = [battery.ip for battery in self.batteries]
        if len(ips) != len(set(ips)):
            raise ValueError("battery ips must be unique")
        return self

    @property
    def combined_capacity_kwh(self) -> float:
        return sum(battery.capacity_kwh for battery in self.batteries)


class P1Config(BaseModel):
    ip: str = Field(min_length=1)
    # Local API user the token is issued to.
    username: str = ""
    token: str = ""
    # Last known device mode, e.g. "zero", "to_full" or "standby".
    battery_mode: str | None = None
    permissions: list[str] | None = None
    power_w: float = 0.0
    max_consumption_w: float = 0.0
    max_production_w: float = 0.0
    target_power_w: float = 0.0
    last_updated: AwareDatetime | None = None

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class HomeWizardConfig(BaseModel):
    refresh_interval_seconds: int = Field(default=60, ge=1)
    # Which device mode represents "hold": the legacy standby mode or zero
    # mode with both permissions.
    hold_mode: HoldMode = "standby"
    p1: P1Config
    battery_configuration: BatteryConfiguration

    model_config = ConfigDict(extra="forbid")


class ZonneplanAuthentication(BaseModel):
    base_uri: str = "https://app-api.zonneplan.nl/"
    username: str
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int = 0
    last_updated: AwareDatetime | None = None

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ZonneplanConfig(BaseModel):
    refresh_interval_minutes: int = Field(default=60, ge=1)
    authentication: ZonneplanAuthentication
    tariffs: list[TariffPoint] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class OptimizerConfig(BaseModel):
    # Multiplier on discharge revenue; slightly above 1 so discharging at an
    # attractive price wins over holding the charge.
    discharge_bias: float = Field(default=1.01, gt=1)
    rounding_tolerance: float = Field(default=0.01, gt=0)
    timezone: str = "Europe/Amsterdam"
    solver_time_limit_seconds: int | None = Field(default=None, ge=1)

    model_config = ConfigDict(extra="forbid")

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value}") from exc
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class AppConfig(BaseModel):
    homewizard: HomeWizardConfig
    zonneplan: ZonneplanConfig
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)

    model_config = ConfigDict(extra="forbid")

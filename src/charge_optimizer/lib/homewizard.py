from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, cast

import httpx

from charge_optimizer.device.modes import DeviceMode
from charge_optimizer.models.config import HomeWizardConfig

logger = logging.getLogger(__name__)

API_VERSION = "2"


class DeviceResponseError(ValueError):
    """Raised when a HomeWizard device returns an unexpected payload."""


@dataclass(frozen=True, slots=True)
class BatteryStateOfCharge:
    name: str
    ip: str
    capacity_kwh: float
    state_of_charge_pct: float


@dataclass(frozen=True, slots=True)
class BatteriesStatus:
    # Combined status of the battery group controlled by the P1 meter.
    mode: str
    permissions: list[str] | None
    power_w: float
    target_power_w: float
    max_consumption_w: float
    max_production_w: float


class HomeWizardClient:
    """Client for the local HomeWizard v2 API of the P1 meter and batteries.

    The devices use self-signed certificates on the LAN, so TLS verification
    is disabled.
    """

    def __init__(
        self,
        config: HomeWizardConfig,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._timeout = timeout_seconds
        self._transport = transport

    def _build_headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "X-Api-Version": API_VERSION,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            verify=False,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        ip: str,
        path: str,
        token: str,
        *,
        json: dict[str, object] | None = None,
    ) -> dict[str, Any]:
        url = f"https://{ip}{path}"
        async with self._client() as client:
            response = await client.request(
                method, url, headers=self._build_headers(token), json=json
            )
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            raise DeviceResponseError(f"Unexpected response from {url}: {payload!r}")
        return cast(dict[str, Any], payload)

    async def request_token(self, ip: str, username: str) -> str | None:
        """Create a local API user on the device at ``ip`` and return its token.

        Returns ``None`` while the device refuses with 403, which it does until
        its button has been pressed.
        """
        logger.info("Requesting HomeWizard token for user: %s", username)
        url = f"https://{ip}/api/user"
        async with self._client() as client:
            response = await client.post(
                url, headers={"X-Api-Version": API_VERSION}, json={"name": username}
            )
            if response.status_code == httpx.codes.FORBIDDEN:
                logger.warning("HomeWizard device %s has not confirmed the user yet", ip)
                return None
            response.raise_for_status()
            payload = response.json()
        token = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise DeviceResponseError(f"Unexpected response from {url}: {payload!r}")
        return token

    async def get_state_of_charge(self) -> list[BatteryStateOfCharge]:
        logger.info("Requesting HomeWizard state of charge...")
        readings: list[BatteryStateOfCharge] = []
        for battery in self._config.battery_configuration.batteries:
            payload = await self._request("GET", battery.ip, "/api/measurement", battery.token)
            pct = _require_number(payload, "state_of_charge_pct")
            readings.append(
                BatteryStateOfCharge(
                    name=battery.name,
                    ip=battery.ip,
                    capacity_kwh=battery.capacity_kwh,
                    state_of_charge_pct=pct,
                )
            )
            logger.info(
                "Battery '%s' (IP: %s) state of charge: %s%%", battery.name, battery.ip, pct
            )
        return readings

    async def get_live_power(self) -> float:
        """Net household power in watts; positive is consumption, negative production."""
        logger.info("Requesting latest power measurement from HomeWizard P1 meter...")
        p1 = self._config.p1
        payload = await self._request("GET", p1.ip, "/api/measurement", p1.token)
        return _require_number(payload, "power_w")

    async def get_batteries_status(self) -> BatteriesStatus:
        logger.info("Requesting HomeWizard batteries status...")
        p1 = self._config.p1
        payload = await self._request("GET", p1.ip, "/api/batteries", p1.token)
        mode = payload.get("mode")
        if not isinstance(mode, str):
            raise DeviceResponseError(f"Battery status is missing a mode: {payload!r}")
        permissions = payload.get("permissions")
        return BatteriesStatus(
            mode=mode,
            permissions=[str(item) for item in permissions]
            if isinstance(permissions, list)
            else None,
            power_w=_number(payload, "power_w"),
            target_power_w=_number(payload, "target_power_w"),
            max_consumption_w=_number(payload, "max_consumption_w"),
            max_production_w=_number(payload, "max_production_w"),
        )

    async def set_mode(self, mode: DeviceMode) -> dict[str, Any]:
        logger.info("Setting HomeWizard battery mode to %s (%s)...", mode.name, mode.payload())
        p1 = self._config.p1
        return await self._request("PUT", p1.ip, "/api/batteries", p1.token, json=mode.payload())


def _number(payload: dict[str, Any], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _require_number(payload: dict[str, Any], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise DeviceResponseError(f"Response is missing numeric field {key!r}: {payload!r}")

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, cast

import httpx
from pydantic import ValidationError

from charge_optimizer.models.config import ZonneplanAuthentication
from charge_optimizer.models.tariffs import TariffPoint

logger = logging.getLogger(__name__)

APP_VERSION = "4.22.3"
# Zonneplan reports prices in units of 1e-7 currency per kWh.
PRICE_SCALE = 10_000_000


class TariffResponseError(ValueError):
    """Raised when the Zonneplan API returns an unexpected payload."""


@dataclass(frozen=True, slots=True)
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in: int


class ZonneplanClient:
    """Client for the Zonneplan app API: login, token refresh and hourly tariffs."""

    def __init__(
        self,
        authentication: ZonneplanAuthentication,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth = authentication
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self, *, authorized: bool = False) -> httpx.AsyncClient:
        headers = {
            "x-app-version": APP_VERSION,
            "x-app-environment": "production",
        }
        if authorized:
            headers["Authorization"] = f"Bearer {self._auth.access_token}"
        return httpx.AsyncClient(
            base_url=self._auth.base_uri,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def request_login(self, email: str) -> str:
        """Start an e-mail login; returns the UUID to poll with :meth:`complete_login`."""
        logger.info("Requesting Zonneplan login for %s", email)
        async with self._client() as client:
            response = await client.post("auth/request", json={"email": email})
            response.raise_for_status()
            payload = _as_dict(response.json())
        uuid = _dig(payload, "data", "uuid")
        if not isinstance(uuid, str) or not uuid:
            raise TariffResponseError("Login request did not return a UUID")
        return uuid

    async def complete_login(self, email: str, uuid: str) -> TokenGrant | None:
        """Exchange an activated login for tokens, or ``None`` while it is not activated yet."""
        async with self._client() as client:
            response = await client.get(f"auth/request/{uuid}")
            response.raise_for_status()
            payload = _as_dict(response.json())
        data = _dig(payload, "data")
        if not isinstance(data, dict):
            raise TariffResponseError("Login status response is missing data")
        data = cast(dict[str, Any], data)
        if data.get("is_activated") is not True or not data.get("password"):
            logger.warning("Zonneplan login for %s is not activated yet", email)
            return None
        return await self._request_token(
            {"grant_type": "one_time_password", "email": email, "password": data["password"]}
        )

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        logger.info("Refreshing Zonneplan token...")
        return await self._request_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def _request_token(self, grant: dict[str, Any]) -> TokenGrant:
        async with self._client() as client:
            response = await client.post("oauth/token", json=grant)
            response.raise_for_status()
            payload = _as_dict(response.json())
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise TariffResponseError("Token response is missing access or refresh token")
        expires_in = payload.get("expires_in")
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else 0,
        )

    async def get_tariffs(self) -> list[TariffPoint]:
        """Fetch hourly electricity prices for the first connection on the account."""
        async with self._client(authorized=True) as client:
            response = await client.get("user-accounts/me")
            response.raise_for_status()
            account = _as_dict(response.json())
            connection_uuid = _dig(
                account, "data", "address_groups", 0, "connections", 0, "uuid"
            )
            if not isinstance(connection_uuid, str) or not connection_uuid:
                logger.info("No valid connection UUID found in response from Zonneplan.")
                return []

            response = await client.get(f"connections/{connection_uuid}/summary")
            response.raise_for_status()
            summary = _as_dict(response.json())

        hours = _dig(summary, "data", "price_per_hour")
        if not isinstance(hours, list):
            logger.info("No tariffs found in response.")
            return []
        return [_parse_tariff(item) for item in cast(list[Any], hours)]


def _parse_tariff(item: Any) -> TariffPoint:
    if not isinstance(item, dict):
        raise TariffResponseError(f"Unexpected tariff entry: {item!r}")
    entry = cast(dict[str, Any], item)
    price = entry.get("electricity_price")
    try:
        return TariffPoint(
            timestamp=datetime.fromisoformat(str(entry["datetime"])),
            price=float(price) / PRICE_SCALE if price is not None else 0.0,
        )
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        raise TariffResponseError(f"Unexpected tariff entry: {item!r}") from exc


def _as_dict(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise TariffResponseError(f"Unexpected response type: {type(payload).__name__}")
    return cast(dict[str, Any], payload)


def _dig(payload: Any, *path: str | int) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(cast(list[Any], current)) <= key:
                return None
            current = cast(list[Any], current)[key]
        else:
            if not isinstance(current, dict):
                return None
            current = cast(dict[str, Any], current).get(key)
    return current

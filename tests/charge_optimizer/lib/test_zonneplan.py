from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from charge_optimizer.lib.zonneplan import APP_VERSION, TariffResponseError, ZonneplanClient
from charge_optimizer.models.config import ZonneplanAuthentication

ACCOUNT = {
    "data": {
        "address_groups": [
            {"connections": [{"uuid": "conn-1"}]},
        ]
    }
}


def _client(
    routes: dict[tuple[str, str], Any],
    requests: list[httpx.Request] | None = None,
) -> ZonneplanClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=routes[key])

    authentication = ZonneplanAuthentication(
        username="user@example.com", access_token="access-1", refresh_token="refresh-1"
    )
    return ZonneplanClient(authentication, transport=httpx.MockTransport(handler))


async def test_get_tariffs_scales_prices() -> None:
    requests: list[httpx.Request] = []
    client = _client(
        {
            ("GET", "/user-accounts/me"): ACCOUNT,
            ("GET", "/connections/conn-1/summary"): {
                "data": {
                    "price_per_hour": [
                        {"datetime": "2025-06-01T10:00:00.000000Z", "electricity_price": 2150000},
                        {"datetime": "2025-06-01T11:00:00.000000Z", "electricity_price": -120000},
                    ]
                }
            },
        },
        requests,
    )

    tariffs = await client.get_tariffs()

    assert [tariff.timestamp for tariff in tariffs] == [
        datetime(2025, 6, 1, 10, tzinfo=UTC),
        datetime(2025, 6, 1, 11, tzinfo=UTC),
    ]
    assert [tariff.price for tariff in tariffs] == pytest.approx([0.215, -0.012])
    assert requests[0].url.host == "app-api.zonneplan.nl"
    assert requests[0].headers["Authorization"] == "Bearer access-1"
    assert requests[0].headers["x-app-version"] == APP_VERSION
    assert requests[0].headers["x-app-environment"] == "production"


async def test_get_tariffs_without_connection() -> None:
    client = _client({("GET", "/user-accounts/me"): {"data": {"address_groups": []}}})

    assert await client.get_tariffs() == []


async def test_get_tariffs_without_prices() -> None:
    client = _client(
        {
            ("GET", "/user-accounts/me"): ACCOUNT,
            ("GET", "/connections/conn-1/summary"): {"data": {}},
        }
    )

    assert await client.get_tariffs() == []


async def test_malformed_tariff_entry_rejected() -> None:
    client = _client(
        {
            ("GET", "/user-accounts/me"): ACCOUNT,
            ("GET", "/connections/conn-1/summary"): {
                "data": {"price_per_hour": [{"electricity_price": 1}]}
            },
        }
    )

    with pytest.raises(TariffResponseError):
        await client.get_tariffs()


async def test_refresh_token() -> None:
    requests: list[httpx.Request] = []
    client = _client(
        {
            ("POST", "/oauth/token"): {
                "access_token": "access-2",
                "refresh_token": "refresh-2",
                "expires_in": 3600,
            }
        },
        requests,
    )

    grant = await client.refresh_token("refresh-1")

    assert (grant.access_token, grant.refresh_token, grant.expires_in) == (
        "access-2",
        "refresh-2",
        3600,
    )
    assert json.loads(requests[0].content) == {
        "grant_type": "refresh_token",
        "refresh_token": "refresh-1",
    }
    assert "Authorization" not in requests[0].headers


async def test_refresh_token_missing_fields() -> None:
    client = _client({("POST", "/oauth/token"): {"access_token": "only"}})

    with pytest.raises(TariffResponseError):
        await client.refresh_token("refresh-1")


async def test_refresh_token_http_error() -> None:
    client = _client({})

    with pytest.raises(httpx.HTTPStatusError):
        await client.refresh_token("refresh-1")


async def test_login_flow() -> None:
    requests: list[httpx.Request] = []
    client = _client(
        {
            ("POST", "/auth/request"): {"data": {"uuid": "login-1"}},
            ("GET", "/auth/request/login-1"): {
                "data": {"is_activated": True, "password": "otp-1"}
            },
            ("POST", "/oauth/token"): {
                "access_token": "access-3",
                "refresh_token": "refresh-3",
                "expires_in": 100,
            },
        },
        requests,
    )

    uuid = await client.request_login("user@example.com")
    grant = await client.complete_login("user@example.com", uuid)

    assert uuid == "login-1"
    assert grant is not None
    assert grant.access_token == "access-3"
    assert json.loads(requests[-1].content) == {
        "grant_type": "one_time_password",
        "email": "user@example.com",
        "password": "otp-1",
    }


async def test_login_not_activated() -> None:
    client = _client(
        {("GET", "/auth/request/login-1"): {"data": {"is_activated": False}}},
    )

    assert await client.complete_login("user@example.com", "login-1") is None

from __future__ import annotations

import json

import httpx
import pytest

from stsaccess.core.config import get_settings
from stsaccess.domain.models import Strategy, User
from stsaccess.services.notifications import RelayNotifier


USER = User(id="u1", email="trader@example.com", name="Trader", tradingview_username="trader123")
STRATEGY = Strategy(id="s1", name="Trend Rider", slug="trend-rider", pine_id="PUB;abc")


def _notifier(handler) -> tuple[RelayNotifier, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return RelayNotifier(client=httpx.AsyncClient(transport=httpx.MockTransport(_record))), seen


@pytest.fixture
def relay_url(monkeypatch) -> str:
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "https://relay.example.test/send")
    monkeypatch.setenv("ADMIN_EMAIL", "ops@example.com")
    get_settings.cache_clear()
    return "https://relay.example.test/send"


@pytest.mark.asyncio
async def test_granted_email_posts_template(relay_url) -> None:
    notifier, seen = _notifier(lambda request: httpx.Response(202))
    await notifier.send_access_granted(USER, STRATEGY)
    body = json.loads(seen[0].content)
    assert str(seen[0].url) == relay_url
    assert seen[0].headers["X-Notification-Template"] == "access_granted"
    assert body["to"] == "trader@example.com"
    assert body["data"]["strategy"] == "Trend Rider"


@pytest.mark.asyncio
async def test_admin_alert_goes_to_operator_inbox(relay_url) -> None:
    notifier, seen = _notifier(lambda request: httpx.Response(200))
    await notifier.send_admin_alert("provisioning_degraded", "Provisioning degraded", {"incident_id": "INC-1"})
    body = json.loads(seen[0].content)
    assert body["to"] == "ops@example.com"
    assert body["subject"] == "[PROVISIONING_DEGRADED] Provisioning degraded"
    assert body["data"]["details"] == {"incident_id": "INC-1"}


@pytest.mark.asyncio
async def test_delivery_failures_never_raise(relay_url) -> None:
    def _refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    down, _ = _notifier(_refused)
    await down.send_access_failed(USER, STRATEGY, "bad username")
    rejecting, seen = _notifier(lambda request: httpx.Response(500))
    await rejecting.send_access_failed(USER, STRATEGY, "bad username")
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_unconfigured_relay_only_logs() -> None:
    notifier, seen = _notifier(lambda request: httpx.Response(200))
    await notifier.send_access_granted(USER, STRATEGY)
    assert seen == []


@pytest.mark.asyncio
async def test_default_client_is_closed_after_each_delivery(relay_url, monkeypatch) -> None:
    opened: list[httpx.AsyncClient] = []
    real_client = httpx.AsyncClient

    def _tracked(**kwargs) -> httpx.AsyncClient:
        client = real_client(transport=httpx.MockTransport(lambda request: httpx.Response(202)), **kwargs)
        opened.append(client)
        return client

    monkeypatch.setattr(httpx, "AsyncClient", _tracked)
    notifier = RelayNotifier()
    await notifier.send_access_granted(USER, STRATEGY)
    await notifier.send_admin_alert("provisioning_degraded", "Provisioning degraded", {})

    assert len(opened) == 2
    assert all(client.is_closed for client in opened)

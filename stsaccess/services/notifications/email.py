from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Protocol

import httpx

from stsaccess.core.config import get_settings
from stsaccess.domain.models import Strategy, User


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    # Summarize a relay delivery for logs and tests.
    sent: bool
    status_code: int | None
    message: str


class Notifier(Protocol):
    async def send_access_granted(self, user: User, strategy: Strategy) -> None:
        ...

    async def send_access_failed(self, user: User, strategy: Strategy, reason: str) -> None:
        ...

    async def send_admin_alert(self, alert_type: str, title: str, details: dict[str, Any]) -> None:
        ...


class RelayNotifier:
    """Deliver transactional emails through an HTTP relay.

    Every method is fire-and-forget: delivery failures are logged and never
    propagate into provisioning outcomes. With no relay configured the
    message is logged instead of sent.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, **kwargs)
        async with httpx.AsyncClient(timeout=self._settings.notify_webhook_timeout_ms / 1000.0) as client:
            return await client.post(url, **kwargs)

    async def send_access_granted(self, user: User, strategy: Strategy) -> None:
        await self._deliver(
            template="access_granted",
            to=user.email,
            subject=f"Your access to {strategy.name} is ready",
            data={
                "name": user.name,
                "strategy": strategy.name,
                "tradingview_username": user.tradingview_username,
                "dashboard_url": f"{self._settings.app_url}/dashboard",
            },
        )

    async def send_access_failed(self, user: User, strategy: Strategy, reason: str) -> None:
        await self._deliver(
            template="access_failed",
            to=user.email,
            subject=f"Action needed for your {strategy.name} access",
            data={
                "name": user.name,
                "strategy": strategy.name,
                "reason": reason,
                "settings_url": f"{self._settings.app_url}/dashboard/settings",
            },
        )

    async def send_admin_alert(self, alert_type: str, title: str, details: dict[str, Any]) -> None:
        await self._deliver(
            template="admin_alert",
            to=self._settings.admin_email,
            subject=f"[{alert_type.upper()}] {title}",
            data={"alert_type": alert_type, "title": title, "details": details},
        )

    async def _deliver(self, *, template: str, to: str, subject: str, data: dict[str, Any]) -> NotificationResult:
        url = self._settings.notify_webhook_url
        if not url:
            logger.info("notification_suppressed template=%s to=%s subject=%s", template, to, subject)
            return NotificationResult(sent=False, status_code=None, message="Notification relay is not configured")
        body = json.dumps(
            {"template": template, "to": to, "subject": subject, "data": data},
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        )
        try:
            response = await self._post(
                url,
                content=body.encode("utf-8"),
                headers={"Content-Type": "application/json", "X-Notification-Template": template},
            )
        except httpx.HTTPError as exc:
            logger.warning("notification_delivery_failed template=%s to=%s", template, to, exc_info=exc)
            return NotificationResult(sent=False, status_code=None, message=str(exc) or type(exc).__name__)
        if response.status_code >= 400:
            logger.warning(
                "notification_delivery_rejected template=%s to=%s status=%s",
                template,
                to,
                response.status_code,
            )
            return NotificationResult(sent=False, status_code=response.status_code, message="Relay rejected notification")
        return NotificationResult(sent=True, status_code=response.status_code, message="Notification delivered")


def get_notifier() -> Notifier:
    return RelayNotifier()

"""WebhookNotifier — one canonical event fanned out to Slack/Discord/n8n/generic."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from loguru import logger
from pydantic import BaseModel

from ccmsched.core.cron.types import WebhookConfig
from ccmsched.core.webhooks.formatters import format_for_provider
from ccmsched.core.webhooks.payloads import (
    PayloadMetrics,
    PayloadTask,
    WebhookPayload,
    event_title,
)

# Provider config keys copied onto the outgoing body
_PROVIDER_OPTIONS: dict[str, tuple[str, ...]] = {
    "slack": ("channel", "username", "icon_emoji", "icon_url"),
    "discord": ("username", "avatar_url", "content"),
}


class DeliveryResult(BaseModel):
    webhook_id: str
    success: bool
    skipped: bool = False
    status_code: int | None = None
    error: str | None = None


class WebhookDeliveryError(Exception):
    def __init__(self, status_code: int, reason: str):
        super().__init__(f"HTTP {status_code}: {reason}")
        self.status_code = status_code


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WebhookNotifier:
    """Formats and delivers scheduler events. Never raises on delivery failure.

    Parameters
    ----------
    base_url : str
        Public URL of the service; adds a "View Details" link to payloads.
    timeout_s : float
        Deadline for a whole delivery, connect through response body.
    client : httpx.AsyncClient, optional
        Shared client (tests pass one with a MockTransport). When None a
        short-lived client is created per delivery.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout_s: float = 10.0,
        user_agent: str = "CCM-Scheduler/1.0",
        client: httpx.AsyncClient | None = None,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self._client = client
        self._now = now

    def build_payload(self, event: str, partial: dict[str, Any] | None = None) -> WebhookPayload:
        """Stamp event + timestamp, default the message, add the details link."""
        data = dict(partial or {})
        if not data.get("message"):
            data["message"] = event_title(event)
        payload = WebhookPayload(event=event, timestamp=iso_timestamp(self._now()), **data)
        if self.base_url and not payload.details_url:
            payload.details_url = f"{self.base_url}/scheduler"
        return payload

    async def notify(
        self,
        webhooks: list[WebhookConfig],
        event: str,
        partial: dict[str, Any] | None = None,
    ) -> list[DeliveryResult]:
        """Send ``event`` to every webhook. One result per webhook, in order."""
        if not webhooks:
            return []
        payload = self.build_payload(event, partial)
        results = await asyncio.gather(*(self._deliver(w, payload) for w in webhooks))
        failed = [r for r in results if not r.success]
        if failed:
            logger.warning(
                f"Webhook {event}: {len(failed)}/{len(results)} deliveries failed"
            )
        return list(results)

    async def test_webhook(self, webhook: WebhookConfig) -> DeliveryResult:
        """Send a synthetic task_completed event with placeholder metrics."""
        payload = WebhookPayload(
            event="task_completed",
            timestamp=iso_timestamp(self._now()),
            message="This is a test notification from CCM Scheduler",
            task=PayloadTask(id="test-task", name="Test Task", task_type="test"),
            metrics=PayloadMetrics(subjects_processed=3, issues_found=5, tokens_saved=1234),
        )
        return await self._send(webhook, payload)

    async def _deliver(self, webhook: WebhookConfig, payload: WebhookPayload) -> DeliveryResult:
        if not webhook.accepts(payload.event):
            logger.debug(f"Webhook {webhook.id} not subscribed to {payload.event}, skipping")
            return DeliveryResult(webhook_id=webhook.id, success=True, skipped=True)
        return await self._send(webhook, payload)

    async def _send(self, webhook: WebhookConfig, payload: WebhookPayload) -> DeliveryResult:
        body = self.render(webhook, payload)
        try:
            resp = await asyncio.wait_for(self._post(webhook.url, body), timeout=self.timeout_s)
            if not resp.is_success:
                raise WebhookDeliveryError(resp.status_code, resp.reason_phrase)
        except WebhookDeliveryError as e:
            logger.warning(f"Webhook {webhook.id} ({webhook.provider}) rejected: {e}")
            return DeliveryResult(
                webhook_id=webhook.id, success=False, status_code=e.status_code, error=str(e)
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            error = f"Timed out after {self.timeout_s:g}s"
            logger.warning(f"Webhook {webhook.id} ({webhook.provider}) failed: {error}")
            return DeliveryResult(webhook_id=webhook.id, success=False, error=error)
        except Exception as e:
            logger.warning(f"Webhook {webhook.id} ({webhook.provider}) failed: {e}")
            return DeliveryResult(webhook_id=webhook.id, success=False, error=str(e) or type(e).__name__)
        logger.debug(f"Webhook {webhook.id} delivered {payload.event}")
        return DeliveryResult(webhook_id=webhook.id, success=True, status_code=resp.status_code)

    def render(self, webhook: WebhookConfig, payload: WebhookPayload) -> dict[str, Any]:
        body = format_for_provider(webhook.provider, payload)
        for key in _PROVIDER_OPTIONS.get(webhook.provider, ()):
            if webhook.config.get(key):
                body[key] = webhook.config[key]
        return body

    async def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": "application/json", "User-Agent": self.user_agent}
        timeout = httpx.Timeout(self.timeout_s)
        if self._client is not None:
            return await self._client.post(url, json=body, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, json=body, headers=headers)

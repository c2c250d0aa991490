"""Webhook notifications — payloads, provider formatters, delivery."""

from ccmsched.core.webhooks.formatters import (
    format_discord,
    format_for_provider,
    format_generic,
    format_n8n,
    format_slack,
)
from ccmsched.core.webhooks.notifier import DeliveryResult, WebhookNotifier
from ccmsched.core.webhooks.payloads import WebhookPayload

__all__ = [
    "DeliveryResult",
    "WebhookNotifier",
    "WebhookPayload",
    "format_discord",
    "format_for_provider",
    "format_generic",
    "format_n8n",
    "format_slack",
]

"""Provider-specific webhook bodies.

Every formatter is a pure function of the payload: the same payload always
produces the same body.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ccmsched.core.webhooks.payloads import WebhookPayload, event_title

STATUS_EMOJI: dict[str, str] = {
    "task_started": "🚀",
    "task_completed": "✅",
    "task_failed": "❌",
    "threshold_triggered": "⚠️",
    "optimization_applied": "✨",
    "health_alert": "🔔",
}
DEFAULT_EMOJI = "📋"

# Discord embed colours (decimal RGB)
DISCORD_COLORS: dict[str, int] = {
    "task_started": 3447003,  # blue
    "task_completed": 5763719,  # green
    "task_failed": 15548997,  # red
    "threshold_triggered": 16776960,  # yellow
    "optimization_applied": 10181046,  # purple
    "health_alert": 16744448,  # orange
}
DEFAULT_COLOR = 3447003

DISCORD_ERROR_LIMIT = 1000


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    minutes, rest = divmod(ms, 60_000)
    return f"{minutes}m {rest // 1000}s"


def display_time(timestamp: str) -> str:
    """ISO timestamp → ``YYYY-MM-DD HH:MM:SS UTC``; unparseable input unchanged."""
    try:
        dt = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return timestamp
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def _summary_fields(payload: WebhookPayload) -> list[tuple[str, str]]:
    """(label, value) pairs shared by the Slack and Discord layouts."""
    fields: list[tuple[str, str]] = []
    if payload.task:
        fields.append(("Task", payload.task.name))
        fields.append(("Type", payload.task.task_type))
    if payload.execution:
        fields.append(("Status", payload.execution.status))
        if payload.execution.duration is not None:
            fields.append(("Duration", format_duration(payload.execution.duration)))
    m = payload.metrics
    if m:
        if m.subjects_processed is not None:
            fields.append(("Subjects", f"{m.subjects_processed} processed"))
        if m.tokens_saved is not None:
            fields.append(("Tokens Saved", f"{m.tokens_saved:,}"))
        if m.issues_found is not None:
            fields.append(("Issues Found", str(m.issues_found)))
        if m.optimization_score is not None:
            fields.append(("Score", f"{m.optimization_score:g}"))
        if m.token_count is not None:
            fields.append(("Token Count", f"{m.token_count:,.0f}"))
        if m.issue_count is not None:
            fields.append(("Issue Count", f"{m.issue_count:g}"))
        if m.file_size is not None:
            fields.append(("File Size", f"{m.file_size:,.0f} bytes"))
    return fields


# ════════════════════════════════════════════════════════════
# SLACK: Block Kit
# ════════════════════════════════════════════════════════════


def format_slack(payload: WebhookPayload) -> dict[str, Any]:
    emoji = STATUS_EMOJI.get(payload.event, DEFAULT_EMOJI)
    title = event_title(payload.event)

    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{emoji} {title}", "emoji": True},
        }
    ]

    if payload.message:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": payload.message}})

    fields = [
        {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}
        for label, value in _summary_fields(payload)
    ]
    if fields:
        blocks.append({"type": "section", "fields": fields})

    if payload.error:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Error:*\n```{payload.error}```"},
        })

    context: list[dict[str, str]] = []
    if payload.details_url:
        context.append({"type": "mrkdwn", "text": f"<{payload.details_url}|View Details>"})
    context.append({
        "type": "mrkdwn",
        "text": f"Sent by CCM at {display_time(payload.timestamp)}",
    })
    blocks.append({"type": "context", "elements": context})

    return {"blocks": blocks, "text": f"{emoji} {title}: {payload.message}"}


# ════════════════════════════════════════════════════════════
# DISCORD: single embed
# ════════════════════════════════════════════════════════════


def format_discord(payload: WebhookPayload) -> dict[str, Any]:
    emoji = STATUS_EMOJI.get(payload.event, DEFAULT_EMOJI)
    embed: dict[str, Any] = {
        "title": f"{emoji} {event_title(payload.event)}",
        "color": DISCORD_COLORS.get(payload.event, DEFAULT_COLOR),
        "timestamp": payload.timestamp,
    }
    if payload.message:
        embed["description"] = payload.message

    fields = [
        {"name": label, "value": value, "inline": True}
        for label, value in _summary_fields(payload)
    ]
    if payload.error:
        fields.append({
            "name": "Error",
            "value": f"```{payload.error[:DISCORD_ERROR_LIMIT]}```",
            "inline": False,
        })
    if fields:
        embed["fields"] = fields

    footer: list[str] = []
    if payload.metrics and payload.metrics.issues_found is not None:
        footer.append(f"{payload.metrics.issues_found} issues found")
    if payload.details_url:
        footer.append("CCM Scheduler")
        embed["url"] = payload.details_url
    if footer:
        embed["footer"] = {"text": " | ".join(footer)}

    return {"embeds": [embed]}


# ════════════════════════════════════════════════════════════
# N8N / GENERIC
# ════════════════════════════════════════════════════════════


def format_n8n(payload: WebhookPayload) -> dict[str, Any]:
    """Flat structure for n8n workflow nodes."""
    body: dict[str, Any] = {
        "event": payload.event,
        "timestamp": payload.timestamp,
        "message": payload.message,
    }
    if payload.task:
        body["task"] = {
            "id": payload.task.id,
            "name": payload.task.name,
            "type": payload.task.task_type,
        }
    if payload.execution:
        execution: dict[str, Any] = {
            "id": payload.execution.id,
            "status": payload.execution.status,
        }
        if payload.execution.duration is not None:
            execution["durationMs"] = payload.execution.duration
        body["execution"] = execution
    if payload.metrics:
        body["metrics"] = payload.metrics.model_dump(by_alias=True, exclude_none=True)
    if payload.error:
        body["error"] = payload.error
    if payload.details_url:
        body["detailsUrl"] = payload.details_url
    return body


def format_generic(payload: WebhookPayload) -> dict[str, Any]:
    return payload.to_json()


_FORMATTERS = {
    "slack": format_slack,
    "discord": format_discord,
    "n8n": format_n8n,
    "generic": format_generic,
}


def format_for_provider(provider: str, payload: WebhookPayload) -> dict[str, Any]:
    """Dispatch by provider; unknown providers get the generic body."""
    return _FORMATTERS.get(provider, format_generic)(payload)

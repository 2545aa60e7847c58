"""
Slack webhook delivery for inventory alerts and workflow events.

Each tenant may configure one incoming webhook. Messages use Block Kit with
a plain-text fallback; delivery is retried on network and HTTP errors and
never raises into the caller.
"""

import logging
from typing import Any
from urllib.parse import urlparse

import requests

from src.core.retry_utils import call_with_retry

logger = logging.getLogger(__name__)

SEVERITY_EMOJI = {
    "critical": "🚨",
    "high": "🔴",
    "medium": "🟠",
    "low": "🔵",
}

# Block Kit sections get unwieldy past this many detail lines
MAX_DETAIL_LINES = 8


def _mrkdwn(text: str) -> dict[str, str]:
    return {"type": "mrkdwn", "text": text}


def _section(text: str) -> dict[str, Any]:
    return {"type": "section", "text": _mrkdwn(text)}


def _header(text: str) -> dict[str, Any]:
    return {"type": "header", "text": {"type": "plain_text", "text": text}}


def _context(text: str) -> dict[str, Any]:
    return {"type": "context", "elements": [_mrkdwn(text)]}


def _detail_lines(details: dict[str, Any]) -> list[str]:
    """Scalar alert details as bullet lines; nested snapshots stay in the API."""
    lines = [
        f"• {key.replace('_', ' ').title()}: {value}"
        for key, value in details.items()
        if not isinstance(value, dict | list)
    ]
    return lines[:MAX_DETAIL_LINES]


class SlackNotifier:
    """Posts to one tenant's incoming webhook. Disabled when the URL is missing or malformed."""

    def __init__(self, webhook_url: str | None = None, timeout: int = 10, max_attempts: int = 3):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.enabled = self._valid_webhook(webhook_url)

    @staticmethod
    def _valid_webhook(url: str | None) -> bool:
        if not url:
            return False
        parsed = urlparse(url)
        if parsed.scheme and parsed.netloc:
            return True
        logger.error(f"Ignoring malformed Slack webhook URL: {url}")
        return False

    def send_message(self, text: str, blocks: list[dict[str, Any]] | None = None) -> bool:
        """Post ``text`` (and optional Block Kit ``blocks``). Returns whether Slack accepted it."""
        if not self.enabled:
            return False

        payload: dict[str, Any] = {"text": text}
        if blocks:
            payload["blocks"] = blocks

        def post() -> None:
            response = requests.post(
                self.webhook_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()

        try:
            call_with_retry(
                post,
                max_attempts=self.max_attempts,
                delay=0.5,
                exceptions=(requests.exceptions.RequestException,),
                name="slack.send_message",
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Slack delivery failed after {self.max_attempts} attempts: {e}")
            return False
        return True

    def notify_inventory_alert(self, alert: dict[str, Any], tenant_name: str | None = None) -> bool:
        """Overbooking, drift, deletion impact or status inconsistency, as serialized by the alert service."""
        severity = alert.get("severity", "medium")
        emoji = SEVERITY_EMOJI.get(severity, "⚠️")
        label = str(alert.get("alert_type", "alert")).replace("_", " ").title()

        fields = [_mrkdwn(f"*Type:*\n{label}"), _mrkdwn(f"*Severity:*\n{severity}")]
        if tenant_name:
            fields.append(_mrkdwn(f"*Tenant:*\n{tenant_name}"))
        if alert.get("episode_id"):
            fields.append(_mrkdwn(f"*Episode:*\n{alert['episode_id']}"))

        blocks = [_header(f"{emoji} Inventory Alert: {label}"), {"type": "section", "fields": fields}]

        lines = _detail_lines(alert.get("details") or {})
        if lines:
            blocks.append(_section("*Details:*\n" + "\n".join(lines)))
        if alert.get("affected_orders"):
            blocks.append(_section(f"*Affected orders:* {', '.join(alert['affected_orders'])}"))

        raised = f"Alert {alert.get('alert_id')}"
        if alert.get("created_at"):
            raised += f" raised {alert['created_at']}"
        blocks.append(_context(raised))

        return self.send_message(f"{emoji} {label} ({severity})", blocks)

    def notify_workflow_event(self, title: str, message: str, campaign_name: str | None = None) -> bool:
        """Approval requests, approvals and other stage-change notices."""
        blocks = [_header(title), _section(message)]
        if campaign_name:
            blocks.append(_context(f"Campaign: {campaign_name}"))
        return self.send_message(f"{title}: {message}", blocks)


def get_slack_notifier(webhook_url: str | None = None) -> SlackNotifier:
    return SlackNotifier(webhook_url=webhook_url)

"""Announce finished refresh cycles on a Slack channel."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import requests

from .models import CycleResult, CycleStatus

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "gasprices"


class Notifier(Protocol):
    def send(self, message: str) -> None:
        ...


@dataclass
class SlackNotifier:
    """Post refresh summaries to a Slack incoming webhook.

    ``username`` and ``channel`` override the webhook defaults; legacy
    webhooks honour both, app webhooks ignore them.
    """

    webhook_url: str
    username: str = DEFAULT_USERNAME
    channel: Optional[str] = None
    timeout: float = 10

    def payload(self, message: str) -> dict:
        body = {"text": message, "username": self.username}
        if self.channel:
            body["channel"] = self.channel
        return body

    def send(self, message: str) -> None:
        response = requests.post(self.webhook_url, json=self.payload(message), timeout=self.timeout)
        response.raise_for_status()


def build_notifier_from_env() -> SlackNotifier | None:
    """Return a Slack notifier when ``SLACK_WEBHOOK`` is set."""
    webhook = (os.getenv("SLACK_WEBHOOK") or "").strip()
    if not webhook:
        return None
    channel = (os.getenv("SLACK_CHANNEL") or "").strip() or None
    return SlackNotifier(webhook_url=webhook, channel=channel)


def format_cycle_message(result: CycleResult) -> str:
    """Render a refresh result into a short human-friendly message."""
    next_line = f"Next refresh: {result.next_refresh:%Y-%m-%d %H:%M}"
    if result.status is CycleStatus.SUCCESS:
        header = f":fuelpump: Gas prices updated for {result.city_count} cities"
    elif result.status is CycleStatus.SKIPPED:
        header = ":zzz: Gas prices refresh skipped (background data disabled)"
    else:
        header = f":warning: Gas prices refresh failed ({result.status.value})"
    lines = [header]
    if result.error:
        lines.append(f"Reason: {result.error}")
    lines.append(next_line)
    return "\n".join(lines)


def notify_listener(notifier: Notifier) -> Callable[[CycleResult], None]:
    """Adapt a notifier into a refresh-complete listener.

    Delivery failures are logged and never reach the refresh cycle.
    """

    def listener(result: CycleResult) -> None:
        try:
            notifier.send(format_cycle_message(result))
        except requests.RequestException as exc:
            logger.warning("Could not deliver refresh notification: %s", exc)

    return listener


__all__ = [
    "Notifier",
    "SlackNotifier",
    "build_notifier_from_env",
    "format_cycle_message",
    "notify_listener",
]

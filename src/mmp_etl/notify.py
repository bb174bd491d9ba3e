"""Uploader identity lookup and best-effort notifications.

Notifications are fire-and-forget: notify_safely() logs and counts every
failure and never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import psycopg
import requests

from mmp_etl.shared import RunCounters

log = logging.getLogger(__name__)

EVENT_PLAN_UPLOADED = "mmp.uploaded"


# ---------------------------------------------------------------------------
# Uploader identity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploaderContext:
    id: str
    display_name: str
    role: str | None = None


def resolve_uploader(conn: psycopg.Connection, user_id: str) -> UploaderContext:
    """Look up display name and role in profiles.

    Unknown ids fall back to the id itself as display name.
    """
    row = conn.execute(
        "SELECT full_name, role FROM profiles WHERE id = %s",
        (user_id,),
    ).fetchone()
    if row is None:
        log.warning("uploader %s has no profile; using id as display name", user_id)
        return UploaderContext(id=user_id, display_name=user_id)
    full_name, role = row
    return UploaderContext(id=user_id, display_name=full_name or user_id, role=role)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class NotificationSink(Protocol):
    def notify(self, event: str, payload: dict[str, Any]) -> None:
        ...


@dataclass
class LoggingNotificationSink:
    """Writes notifications to the module logger."""

    level: int = logging.INFO

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        log.log(self.level, "notify %s %s", event, json.dumps(payload, default=str, sort_keys=True))


@dataclass
class WebhookNotificationSink:
    """POST `{"event": ..., "payload": ...}` as JSON to a webhook URL."""

    url: str
    timeout: float = 10.0
    session: requests.Session = field(default_factory=requests.Session)

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        body = json.dumps({"event": event, "payload": payload}, default=str)
        resp = self.session.post(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        resp.raise_for_status()


def notify_safely(
    sink: NotificationSink | None,
    event: str,
    payload: dict[str, Any],
    counters: RunCounters | None = None,
) -> bool:
    """Deliver one notification; return False (never raise) on failure."""
    if sink is None:
        return True
    try:
        sink.notify(event, payload)
        return True
    except Exception as exc:
        log.warning("notification %s failed: %s", event, exc)
        if counters is not None:
            counters.notifications_failed += 1
            counters.warnings.append(f"notification {event} failed: {exc}")
        return False

# shieldcsp/notifications/service.py
"""
Notification service: the scan pipeline's notification collaborator.

Notification types:
    scan-completion   first successful scan of a domain
    score-change      overall score moved by at least the configured threshold
    scan-failure      a scan attempt failed

Delivery:
    - in-app:  one Notification row per call
    - webhook: JSON POST to Team.webhook_url when configured

Message wording is cosmetic; callers only decide WHEN to notify.
Safe to call from anywhere. Catches and logs errors without raising.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

import requests

from shieldcsp.extensions import db
from shieldcsp.models import Notification, Team

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10
HEADERS = {"User-Agent": "ShieldCSP-Notifier/1.0"}

NOTIFICATION_TYPES = ("scan-completion", "score-change", "scan-failure")

SEVERITY_COLORS = {
    "low": "#22c55e",
    "medium": "#eab308",
    "high": "#f97316",
    "critical": "#ef4444",
}


@dataclass
class NotificationPayload:
    type: str
    team_id: int
    title: str
    message: str
    domain_id: Optional[int] = None
    severity: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NotificationService:

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def notify(self, payload: NotificationPayload) -> None:
        try:
            db.session.add(Notification(
                team_id=payload.team_id,
                domain_id=payload.domain_id,
                type=payload.type,
                title=payload.title[:255],
                message=payload.message,
                severity=payload.severity,
                metadata_json=payload.metadata or None,
            ))
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("In-app notification failed for team %s", payload.team_id)

        try:
            team = db.session.get(Team, payload.team_id)
            if team and team.webhook_url:
                self._send_webhook(team.webhook_url, payload)
        except Exception:
            logger.exception("Webhook notification failed for team %s", payload.team_id)

    def _send_webhook(self, url: str, payload: NotificationPayload) -> None:
        body = {
            "text": f"[ShieldCSP] {payload.title}",
            "type": payload.type,
            "title": payload.title,
            "message": payload.message,
            "severity": payload.severity,
            "color": SEVERITY_COLORS.get(payload.severity or "", "#6b7280"),
            "domainId": payload.domain_id,
            "metadata": payload.metadata,
        }
        r = self.session.post(url, json=body, timeout=WEBHOOK_TIMEOUT, headers=HEADERS)
        if r.status_code >= 400:
            logger.warning("Webhook %s returned %d for %s", url, r.status_code, payload.type)
        else:
            logger.info("WEBHOOK → team=%s | %s: %s", payload.team_id, payload.type, payload.title)

# =============================================================================
# File: shieldcsp/audit/events.py
# Description: Audit log helpers for the scan pipeline.
#
# Helpers:
#   log_audit(...)              record any action against a team
#   record_security_event(...)  shorthand for security:<kind> events
#
# Security events written by the scan pipeline:
#   security:score-change   one per successful scan
#   security:scan-failed    one per failed scan
#
# Audit log display/export is handled outside this service.
# =============================================================================

from __future__ import annotations

import logging

from shieldcsp.extensions import db
from shieldcsp.models import AuditLog

logger = logging.getLogger(__name__)

SECURITY_EVENTS = (
    "violation-detected",
    "scan-failed",
    "score-change",
    "unauthorized-access",
)


def log_audit(
    *,
    team_id: int,
    action: str,
    category: str,
    target_type: str | None = None,
    target_id: str | int | None = None,
    description: str | None = None,
    metadata: dict | None = None,
    commit: bool = True,
) -> bool:
    """
    Record an audit log entry. Safe to call from anywhere: catches and logs
    any errors without raising. Returns False when the write failed.

    Usage:
        from shieldcsp.audit import log_audit

        log_audit(
            team_id=domain.team_id,
            action="security:score-change",
            category="security",
            target_type="scan",
            target_id=scan.id,
            metadata={"previousScore": 72, "newScore": 85},
        )
    """
    try:
        entry = AuditLog(
            team_id=team_id,
            action=action,
            category=category,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            description=(str(description)[:2000]) if description else None,
            metadata_json=metadata,
        )
        db.session.add(entry)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return True

    except Exception as e:
        db.session.rollback()
        logger.warning(f"Failed to write audit log: {e}")
        return False


def record_security_event(team_id: int, event_kind: str, metadata: dict | None = None) -> bool:
    """Write a `security:<event_kind>` entry for the team."""
    if event_kind not in SECURITY_EVENTS:
        logger.warning(f"Unknown security event kind '{event_kind}' for team {team_id}")

    metadata = metadata or {}
    return log_audit(
        team_id=team_id,
        action=f"security:{event_kind}",
        category="security",
        target_type="scan" if metadata.get("scanId") is not None else None,
        target_id=metadata.get("scanId"),
        metadata=metadata,
    )

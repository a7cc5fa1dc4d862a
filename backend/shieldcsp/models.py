from __future__ import annotations

from datetime import datetime, timezone
from .extensions import db


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


SCAN_TYPES = ("full", "quick", "headers-only")
SCAN_STATUSES = ("pending", "running", "completed", "failed")
SCAN_FREQUENCIES = ("hourly", "daily", "weekly", "manual")


class Team(db.Model):
    """
    Tenant that owns domains. Membership, roles and billing live outside
    this service; only the fields the scan pipeline reads are modelled.
    """
    __tablename__ = "team"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    # Optional outbound webhook for notifications (Slack/Discord-compatible JSON)
    webhook_url = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)


class Domain(db.Model):
    __tablename__ = "domain"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey("team.id", ondelete="CASCADE"), nullable=False, index=True)

    url = db.Column(db.String(500), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # hourly, daily, weekly, manual
    scan_frequency = db.Column(db.String(20), nullable=False, default="manual")
    last_scanned_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    team = db.relationship("Team", backref=db.backref("domains", cascade="all, delete-orphan"))


class Scan(db.Model):
    """
    One scan attempt against a Domain.

    Terminal states are `completed` and `failed`; rows are never revisited.
    A completed scan always carries overall_score/overall_grade,
    a failed scan always carries error_message.
    """
    __tablename__ = "scan"

    id = db.Column(db.Integer, primary_key=True)
    domain_id = db.Column(
        db.Integer,
        db.ForeignKey("domain.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    scan_type = db.Column(db.String(20), nullable=False, default="full")      # full, quick, headers-only
    status = db.Column(db.String(20), nullable=False, default="pending")      # pending, running, completed, failed

    overall_score = db.Column(db.Integer, nullable=True)
    overall_grade = db.Column(db.String(2), nullable=True)

    raw_headers = db.Column(db.JSON, nullable=True)

    # CSP snapshot from the policy parser (null when the origin sent no CSP)
    csp_policy = db.Column(db.Text, nullable=True)
    csp_grade = db.Column(db.String(2), nullable=True)
    csp_issues = db.Column(db.JSON, nullable=True)

    scan_duration_ms = db.Column(db.Integer, nullable=True)
    error_message = db.Column(db.String(500), nullable=True)

    scanned_at = db.Column(db.DateTime, nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)

    domain = db.relationship("Domain", backref=db.backref("scans", cascade="all, delete-orphan", lazy="dynamic"))
    scores = db.relationship(
        "SecurityScore",
        backref="scan",
        cascade="all, delete-orphan",
        order_by="SecurityScore.id",
    )

    __table_args__ = (
        db.Index("ix_scan_domain_scanned_at", "domain_id", "scanned_at"),
    )

    def to_dict(self, include_scores: bool = False) -> dict:
        data = {
            "id": self.id,
            "domainId": self.domain_id,
            "scanType": self.scan_type,
            "status": self.status,
            "overallScore": self.overall_score,
            "overallGrade": self.overall_grade,
            "rawHeaders": self.raw_headers,
            "cspPolicy": self.csp_policy,
            "cspGrade": self.csp_grade,
            "cspIssues": self.csp_issues,
            "scanDurationMs": self.scan_duration_ms,
            "errorMessage": self.error_message,
            "scannedAt": self.scanned_at.isoformat() if self.scanned_at else None,
        }
        if include_scores:
            data["scores"] = [s.to_dict() for s in self.scores]
        return data


class SecurityScore(db.Model):
    """Per-header analysis row. Immutable once written."""
    __tablename__ = "security_score"

    id = db.Column(db.Integer, primary_key=True)
    scan_id = db.Column(db.Integer, db.ForeignKey("scan.id", ondelete="CASCADE"), nullable=False, index=True)

    header_name = db.Column(db.String(100), nullable=False)
    header_value = db.Column(db.Text, nullable=True)
    is_present = db.Column(db.Boolean, nullable=False, default=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    grade = db.Column(db.String(2), nullable=False, default="F")
    issues = db.Column(db.JSON, nullable=True)
    recommendations = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "headerName": self.header_name,
            "headerValue": self.header_value,
            "isPresent": self.is_present,
            "score": self.score,
            "grade": self.grade,
            "issues": self.issues or [],
            "recommendations": self.recommendations or [],
        }


class Notification(db.Model):
    """In-app notification written by the notification service."""
    __tablename__ = "notification"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, nullable=False, index=True)
    domain_id = db.Column(db.Integer, nullable=True)

    # scan-completion, score-change, scan-failure
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False, default="")
    severity = db.Column(db.String(20), nullable=True)
    metadata_json = db.Column(db.JSON, nullable=True)

    read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)


class AuditLog(db.Model):
    __tablename__ = "audit_log"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    team_id = db.Column(db.Integer, nullable=False, index=True)

    # What happened
    action = db.Column(db.String(100), nullable=False)      # e.g. 'security:score-change'
    category = db.Column(db.String(50), nullable=False)      # e.g. 'security'

    # What it happened to
    target_type = db.Column(db.String(50), nullable=True)    # e.g. 'scan'
    target_id = db.Column(db.String(50), nullable=True)

    # Details
    description = db.Column(db.Text, nullable=True)
    metadata_json = db.Column(db.JSON, nullable=True)

    # When
    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)

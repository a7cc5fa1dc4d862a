# shieldcsp/scanner/orchestrator.py
"""
Scan Orchestrator: runs one scan attempt end to end.

Pipeline:

    1. Load the Domain (missing → "Domain not found", no Scan row)
    2. Fetch headers (HeaderFetcher)
    3. Grade headers (HeaderAnalyzer)
    4. Grade the CSP policy if the origin sent one (CspParser)
    5. Persist Scan + one SecurityScore per analyzed header
    6. Compare with the previous completed scan of the same domain
    7. Update Domain.last_scanned_at
    8. Notify / audit (fire-and-forget)

Any exception after entry is caught once: the orchestrator writes a `failed`
Scan with error_message, best-effort notifies and audits the failure, and
returns ScanResult(success=False). It never raises to its caller.

Usage:
    from shieldcsp.scanner import ScanOrchestrator

    orchestrator = ScanOrchestrator(notifier=..., dispatcher=...)
    result = orchestrator.execute(domain_id, "full")
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from shieldcsp.errors import ScanError
from shieldcsp.extensions import db
from shieldcsp.models import Domain, Scan, SecurityScore, now_utc

from shieldcsp.scanner.base import CSPPolicy, HeaderAnalysisResult
from shieldcsp.scanner.csp_parser import CspParser
from shieldcsp.scanner.fetcher import HeaderFetcher
from shieldcsp.scanner.header_analyzer import HeaderAnalyzer

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 15000
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_SCORE_CHANGE_THRESHOLD = 5


@dataclass
class ScanResult:
    """What the orchestrator hands back to its caller."""
    success: bool
    domain_id: int
    scan_id: Optional[int] = None
    scan_type: str = "full"
    headers: Dict[str, str] = field(default_factory=dict)
    analysis: Optional[HeaderAnalysisResult] = None
    csp_policy: Optional[CSPPolicy] = None
    previous_score: Optional[int] = None
    score_delta: Optional[int] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "domainId": self.domain_id,
            "scanId": self.scan_id,
            "scanType": self.scan_type,
            "headers": self.headers,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "cspPolicy": self.csp_policy.to_dict() if self.csp_policy else None,
            "previousScore": self.previous_score,
            "scoreDelta": self.score_delta,
            "error": self.error,
            "durationMs": self.duration_ms,
        }


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class ScanOrchestrator:
    """
    Coordinates fetch → analyze → parse → persist → compare → notify.

    Must be called inside a Flask app context (uses db.session).
    Notifier and audit recorder are collaborators; both are invoked through
    the dispatcher and never allowed to fail a scan.
    """

    def __init__(
        self,
        fetcher: Optional[HeaderFetcher] = None,
        analyzer: Optional[HeaderAnalyzer] = None,
        csp_parser: Optional[CspParser] = None,
        notifier=None,
        audit_recorder: Optional[Callable[[int, str, dict], Any]] = None,
        dispatcher=None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        score_change_threshold: int = DEFAULT_SCORE_CHANGE_THRESHOLD,
    ):
        self.fetcher = fetcher or HeaderFetcher()
        self.analyzer = analyzer or HeaderAnalyzer()
        self.csp_parser = csp_parser or CspParser()
        self.notifier = notifier
        self.audit_recorder = audit_recorder
        self.dispatcher = dispatcher
        self.timeout_ms = timeout_ms
        self.max_redirects = max_redirects
        self.score_change_threshold = score_change_threshold

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def execute(self, domain_id: int, scan_type: str = "full") -> ScanResult:
        start = time.monotonic()
        team_id: Optional[int] = None
        domain_url: Optional[str] = None

        try:
            domain = db.session.get(Domain, domain_id)
            if domain is None:
                return ScanResult(
                    success=False,
                    domain_id=domain_id,
                    scan_type=scan_type,
                    error="Domain not found",
                )

            # Plain values; the ORM instance is unusable after a rollback
            team_id = domain.team_id
            domain_url = domain.url

            # ── Fetch ──
            fetch = self.fetcher.fetch(
                domain_url,
                timeout_ms=self.timeout_ms,
                follow_redirects=True,
                max_redirects=self.max_redirects,
            )
            if not fetch.success:
                logger.warning(f"Header fetch failed for {domain_url}: {fetch.error}")
                raise ScanError(fetch.error or "Failed to fetch headers")

            # ── Analyze ──
            analysis = self.analyzer.analyze(fetch.headers)

            csp_policy: Optional[CSPPolicy] = None
            csp_value = fetch.headers.get("content-security-policy")
            if csp_value:
                csp_policy = self.csp_parser.parse(csp_value)

            # ── Persist ──
            scanned_at = now_utc()
            scan = Scan(
                domain_id=domain.id,
                scan_type=scan_type,
                status="completed",
                overall_score=analysis.overall_score,
                overall_grade=analysis.overall_grade,
                raw_headers=fetch.headers,
                csp_policy=csp_policy.raw if csp_policy else None,
                csp_grade=csp_policy.grade if csp_policy else None,
                csp_issues=csp_policy.issues_summary() if csp_policy else None,
                scan_duration_ms=_elapsed_ms(start),
                scanned_at=scanned_at,
            )
            db.session.add(scan)
            db.session.flush()

            for header in analysis.headers:
                db.session.add(SecurityScore(
                    scan_id=scan.id,
                    header_name=header.name,
                    header_value=header.value,
                    is_present=header.is_present,
                    score=header.score,
                    grade=header.grade,
                    issues=list(header.issues),
                    recommendations=list(header.recommendations),
                ))

            # ── Compare ──
            previous = self._previous_completed_scan(domain.id, exclude_scan_id=scan.id)

            domain.last_scanned_at = scanned_at
            db.session.commit()

            scan_id = scan.id
            duration_ms = _elapsed_ms(start)

            previous_score = previous.overall_score if previous is not None else None
            delta = (
                analysis.overall_score - previous_score
                if previous_score is not None else None
            )

            logger.info(
                f"Scan {scan_id} completed for {domain_url}: "
                f"{analysis.overall_score}/{analysis.overall_grade} in {duration_ms}ms"
            )

            self._after_success(
                team_id=team_id,
                domain_id=domain_id,
                domain_url=domain_url,
                scan_id=scan_id,
                analysis=analysis,
                csp_policy=csp_policy,
                previous_score=previous_score,
                delta=delta,
            )

            return ScanResult(
                success=True,
                domain_id=domain_id,
                scan_id=scan_id,
                scan_type=scan_type,
                headers=fetch.headers,
                analysis=analysis,
                csp_policy=csp_policy,
                previous_score=previous_score,
                score_delta=delta,
                duration_ms=duration_ms,
            )

        except Exception as e:
            error = str(e) or type(e).__name__
            duration_ms = _elapsed_ms(start)

            if isinstance(e, ScanError):
                logger.info(f"Scan failed for domain {domain_id}: {error}")
            else:
                logger.exception(f"Scan orchestration failed for domain {domain_id}")

            scan_id = self._record_failure(domain_id, scan_type, error, duration_ms)

            if team_id is not None:
                self._after_failure(
                    team_id=team_id,
                    domain_id=domain_id,
                    domain_url=domain_url,
                    scan_id=scan_id,
                    error=error,
                )

            return ScanResult(
                success=False,
                domain_id=domain_id,
                scan_id=scan_id,
                scan_type=scan_type,
                error=error,
                duration_ms=duration_ms,
            )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _previous_completed_scan(domain_id: int, exclude_scan_id: int) -> Optional[Scan]:
        return (
            Scan.query
            .filter(
                Scan.domain_id == domain_id,
                Scan.status == "completed",
                Scan.id != exclude_scan_id,
            )
            .order_by(Scan.scanned_at.desc(), Scan.id.desc())
            .first()
        )

    @staticmethod
    def _record_failure(domain_id: int, scan_type: str, error: str, duration_ms: int) -> Optional[int]:
        """Second write attempt after a failure. Logged and dropped if it fails too."""
        try:
            db.session.rollback()
            scan = Scan(
                domain_id=domain_id,
                scan_type=scan_type,
                status="failed",
                error_message=error[:500],
                scan_duration_ms=duration_ms,
                scanned_at=now_utc(),
            )
            db.session.add(scan)
            db.session.commit()
            return scan.id
        except Exception as db_error:
            db.session.rollback()
            logger.error(f"Could not record failed scan for domain {domain_id}: {db_error}")
            return None

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _after_success(
        self,
        *,
        team_id: int,
        domain_id: int,
        domain_url: str,
        scan_id: int,
        analysis: HeaderAnalysisResult,
        csp_policy: Optional[CSPPolicy],
        previous_score: Optional[int],
        delta: Optional[int],
    ) -> None:
        from shieldcsp.notifications.service import NotificationPayload

        metadata = {
            "scanId": scan_id,
            "domainId": domain_id,
            "url": domain_url,
            "previousScore": previous_score,
            "newScore": analysis.overall_score,
            "grade": analysis.overall_grade,
            "delta": delta,
            "cspGrade": csp_policy.grade if csp_policy else None,
        }

        if previous_score is None:
            self._notify(NotificationPayload(
                type="scan-completion",
                team_id=team_id,
                domain_id=domain_id,
                title=f"First scan completed for {domain_url}",
                message=(
                    f"Security grade {analysis.overall_grade} "
                    f"({analysis.overall_score}/100), "
                    f"{analysis.critical_issues} header(s) need attention."
                ),
                severity="low",
                metadata=metadata,
            ))
        elif abs(delta) >= self.score_change_threshold:
            direction = "improved" if delta > 0 else "dropped"
            self._notify(NotificationPayload(
                type="score-change",
                team_id=team_id,
                domain_id=domain_id,
                title=f"Security score {direction} for {domain_url}",
                message=(
                    f"Score {direction} from {previous_score} to "
                    f"{analysis.overall_score} ({delta:+d})."
                ),
                severity="low" if delta > 0 else "high",
                metadata=metadata,
            ))

        self._audit(team_id, "score-change", metadata)

    def _after_failure(
        self,
        *,
        team_id: int,
        domain_id: int,
        domain_url: Optional[str],
        scan_id: Optional[int],
        error: str,
    ) -> None:
        try:
            from shieldcsp.notifications.service import NotificationPayload

            metadata = {"scanId": scan_id, "domainId": domain_id, "url": domain_url, "error": error}
            self._notify(NotificationPayload(
                type="scan-failure",
                team_id=team_id,
                domain_id=domain_id,
                title=f"Scan failed for {domain_url or domain_id}",
                message=error,
                severity="medium",
                metadata=metadata,
            ))
            self._audit(team_id, "scan-failed", metadata)
        except Exception:
            logger.exception(f"Failure side effects could not be dispatched for domain {domain_id}")

    def _notify(self, payload) -> None:
        if self.notifier is None:
            return
        self._dispatch(self.notifier.notify, payload)

    def _audit(self, team_id: int, event_kind: str, metadata: dict) -> None:
        if self.audit_recorder is None:
            return
        self._dispatch(self.audit_recorder, team_id, event_kind, metadata)

    def _dispatch(self, fn, *args) -> None:
        try:
            if self.dispatcher is not None:
                self.dispatcher.submit(fn, *args)
            else:
                fn(*args)
        except Exception:
            logger.exception("Scan side effect failed")

# shieldcsp/scanner/base.py
"""
Shared data structures for the ShieldCSP scan pipeline.

Architecture:
    Domain URL flows through:  HeaderFetcher → HeaderAnalyzer → CspParser → ScanOrchestrator

HeaderFetcher:   Collects raw response headers from the origin.
                 The fetcher NEVER grades anything; it only gathers facts,
                 and it never raises: every failure is a FetchResult.

HeaderAnalyzer:  Grades the raw header map against a fixed catalog.
CspParser:       Grades the CSP policy itself (directive-level quality).
                 The two CSP scores are computed independently and may
                 disagree on the same input.

ScanOrchestrator: Runs the stages, persists Scan + SecurityScore rows,
                  compares with history and fires notifications/audit events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def score_to_grade(score: int) -> str:
    """Convert a 0–100 score to a letter grade. Same thresholds everywhere."""
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


def clamp_score(score: int) -> int:
    return max(0, min(100, score))


# ---------------------------------------------------------------------------
# Data structures shared by the whole pipeline
# ---------------------------------------------------------------------------

@dataclass
class FetchResult:
    """
    Output of HeaderFetcher.fetch().

    Fields:
        success:        Did we get a response whose headers we can analyze?
        headers:        Response headers, keys lower-cased.
        status_code:    HTTP status of the final response.
        final_url:      URL the headers were read from (after redirects).
        redirect_chain: Every pre-redirect URL, in hop order.
        error:          Human-readable failure reason when success is False.
    """
    success: bool
    headers: Dict[str, str] = field(default_factory=dict)
    status_code: Optional[int] = None
    final_url: Optional[str] = None
    redirect_chain: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SecurityHeader:
    """Analysis of a single header from the catalog."""
    name: str
    value: Optional[str] = None
    is_present: bool = False
    score: int = 0
    grade: str = "F"
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "isPresent": self.is_present,
            "score": self.score,
            "grade": self.grade,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }


@dataclass
class HeaderAnalysisResult:
    headers: List[SecurityHeader]
    overall_score: int
    overall_grade: str
    total_headers_analyzed: int
    headers_present: int
    critical_issues: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "headers": [h.to_dict() for h in self.headers],
            "overallScore": self.overall_score,
            "overallGrade": self.overall_grade,
            "totalHeadersAnalyzed": self.total_headers_analyzed,
            "headersPresent": self.headers_present,
            "criticalIssues": self.critical_issues,
        }


@dataclass
class CSPDirective:
    name: str
    values: List[str] = field(default_factory=list)
    raw: str = ""


@dataclass
class CSPPolicy:
    """Parsed and graded Content-Security-Policy."""
    raw: str = ""
    directives: List[CSPDirective] = field(default_factory=list)
    has_unsafe_inline: bool = False
    has_unsafe_eval: bool = False
    has_strict_dynamic: bool = False
    missing_directives: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    score: int = 0
    grade: str = "F"

    def get_directive(self, name: str) -> Optional[CSPDirective]:
        for d in self.directives:
            if d.name == name:
                return d
        return None

    def issues_summary(self) -> Dict[str, Any]:
        """Snapshot stored on Scan.csp_issues."""
        return {
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "missingDirectives": list(self.missing_directives),
            "hasUnsafeInline": self.has_unsafe_inline,
            "hasUnsafeEval": self.has_unsafe_eval,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw": self.raw,
            "directives": [
                {"name": d.name, "values": list(d.values), "raw": d.raw}
                for d in self.directives
            ],
            "hasStrictDynamic": self.has_strict_dynamic,
            "score": self.score,
            "grade": self.grade,
            **self.issues_summary(),
        }

# shieldcsp/scanner/header_analyzer.py
"""
HTTP Security Headers Analyzer.

Grades a raw header map against a fixed catalog of 15 header checks and
rolls them up into a weighted overall score.

Catalog (always returned in this order, present or not):
    Content-Security-Policy        weight 25
    Strict-Transport-Security      weight 15
    X-Frame-Options                weight 10
    X-Content-Type-Options         weight 8
    Referrer-Policy                weight 8
    Permissions-Policy             weight 8
    Cross-Origin-Embedder-Policy   weight 5
    Cross-Origin-Opener-Policy     weight 5
    Cross-Origin-Resource-Policy   weight 5
    X-XSS-Protection               weight 3
    Expect-CT                      weight 2
    X-Content-Type-Options         (evaluated a second time, same weight)
    Public-Key-Pins                weight 1
    Feature-Policy                 weight 2
    Report-To                      weight 3

Absent headers:
    Core headers (CSP, HSTS, XFO, XCTO, Referrer-Policy, Permissions-Policy)
    score 0/F. The non-critical ones (COEP, COOP, CORP, X-XSS-Protection,
    Expect-CT, Feature-Policy, Report-To) score 70/C. Public-Key-Pins is
    deprecated, so its absence scores 100/A.

The CSP check here is a header-level heuristic (substring matching on the
raw value) and is deliberately separate from CspParser, which grades the
parsed policy. Both scores are persisted and they can disagree.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from shieldcsp.scanner.base import (
    HeaderAnalysisResult,
    SecurityHeader,
    clamp_score,
    score_to_grade,
)

logger = logging.getLogger(__name__)


HEADER_WEIGHTS: Dict[str, int] = {
    "Content-Security-Policy": 25,
    "Strict-Transport-Security": 15,
    "X-Frame-Options": 10,
    "X-Content-Type-Options": 8,
    "Referrer-Policy": 8,
    "Permissions-Policy": 8,
    "Cross-Origin-Embedder-Policy": 5,
    "Cross-Origin-Opener-Policy": 5,
    "Cross-Origin-Resource-Policy": 5,
    "X-XSS-Protection": 3,
    "Expect-CT": 2,
    "Public-Key-Pins": 1,
    "Feature-Policy": 2,
    "Report-To": 3,
}

HSTS_RECOMMENDED_MAX_AGE = 31536000

VALID_REFERRER_POLICIES = (
    "no-referrer",
    "no-referrer-when-downgrade",
    "origin",
    "origin-when-cross-origin",
    "same-origin",
    "strict-origin",
    "strict-origin-when-cross-origin",
    "unsafe-url",
)

DANGEROUS_PERMISSIONS = ("camera", "microphone", "geolocation", "payment")


def _header(name: str, value: Optional[str], score: int = 0, grade: str = "F") -> SecurityHeader:
    return SecurityHeader(
        name=name,
        value=value or None,
        is_present=bool(value),
        score=score,
        grade=grade,
    )


# ---------------------------------------------------------------------------
# Content-Security-Policy (header-level heuristic)
# ---------------------------------------------------------------------------

class HeaderCspScore:
    """
    CSP score as seen by the header analyzer.

    Works on the lower-cased raw header with substring checks, so e.g.
    "default-src" anywhere in the value counts as present. Deductions:
        'unsafe-inline' −30, 'unsafe-eval' −20, no default-src −15,
        no script-src −10, no object-src / base-uri / frame-ancestors −5 each,
        no report-uri/report-to −5; upgrade-insecure-requests +5.
    """

    NAME = "Content-Security-Policy"

    @classmethod
    def evaluate(cls, value: Optional[str]) -> SecurityHeader:
        header = _header(cls.NAME, value)

        if not value:
            header.issues.append("CSP header is missing")
            header.recommendations.append("Add Content-Security-Policy header to prevent XSS attacks")
            return header

        score = 100
        policy = value.lower()

        if "'unsafe-inline'" in policy:
            score -= 30
            header.issues.append("'unsafe-inline' directive allows inline scripts, increasing XSS risk")
            header.recommendations.append("Remove 'unsafe-inline' and use nonces or hashes instead")

        if "'unsafe-eval'" in policy:
            score -= 20
            header.issues.append("'unsafe-eval' allows eval(), which is dangerous")
            header.recommendations.append("Remove 'unsafe-eval' from script-src")

        if "default-src" not in policy:
            score -= 15
            header.issues.append("Missing default-src directive")
            header.recommendations.append("Add default-src directive as fallback")

        if "script-src" not in policy:
            score -= 10
            header.issues.append("Missing script-src directive")
            header.recommendations.append("Add script-src directive to control script execution")

        if "object-src" not in policy:
            score -= 5
            header.issues.append("Missing object-src directive")
            header.recommendations.append("Add object-src 'none' to prevent plugins")

        if "base-uri" not in policy:
            score -= 5
            header.issues.append("Missing base-uri directive")
            header.recommendations.append("Add base-uri 'self' to prevent base tag injection")

        if "frame-ancestors" not in policy:
            score -= 5
            header.issues.append("Missing frame-ancestors directive")
            header.recommendations.append("Add frame-ancestors 'none' to prevent clickjacking")

        if "upgrade-insecure-requests" in policy:
            score += 5
        else:
            header.recommendations.append("Add upgrade-insecure-requests to force HTTPS")

        if "report-uri" not in policy and "report-to" not in policy:
            score -= 5
            header.issues.append("Missing violation reporting")
            header.recommendations.append("Add report-uri or report-to for violation monitoring")

        header.score = clamp_score(score)
        header.grade = score_to_grade(header.score)
        return header


# ---------------------------------------------------------------------------
# Individual header checks
# ---------------------------------------------------------------------------

def analyze_hsts(value: Optional[str]) -> SecurityHeader:
    header = _header("Strict-Transport-Security", value)

    if not value:
        header.issues.append("HSTS header is missing")
        header.recommendations.append("Add Strict-Transport-Security header to enforce HTTPS")
        return header

    score = 100
    policy = value.lower()

    match = re.search(r"max-age=(\d+)", policy)
    if not match:
        score -= 50
        header.issues.append("Missing max-age parameter")
        header.recommendations.append("Add max-age parameter (recommended: 31536000 for 1 year)")
    else:
        max_age = int(match.group(1))
        if max_age < HSTS_RECOMMENDED_MAX_AGE:
            score -= 20
            header.issues.append(
                f"max-age is too short ({max_age} seconds, recommended: {HSTS_RECOMMENDED_MAX_AGE})"
            )
            header.recommendations.append("Increase max-age to at least 31536000 (1 year)")

    if "includesubdomains" not in policy:
        score -= 10
        header.recommendations.append("Add includeSubDomains to protect all subdomains")

    if "preload" not in policy:
        header.recommendations.append("Consider adding preload for HSTS preload list")

    header.score = clamp_score(score)
    header.grade = score_to_grade(header.score)
    return header


def analyze_x_frame_options(value: Optional[str]) -> SecurityHeader:
    header = _header("X-Frame-Options", value)

    if not value:
        header.issues.append("X-Frame-Options header is missing")
        header.recommendations.append("Add X-Frame-Options: DENY or SAMEORIGIN to prevent clickjacking")
        return header

    normalized = value.lower().strip()
    if normalized == "deny":
        header.score, header.grade = 100, "A"
    elif normalized == "sameorigin":
        header.score, header.grade = 80, "B"
        header.recommendations.append("Consider using DENY for maximum security")
    elif normalized.startswith("allow-from"):
        header.score, header.grade = 60, "C"
        header.issues.append("allow-from is deprecated and not widely supported")
        header.recommendations.append("Use DENY or SAMEORIGIN instead")
    else:
        header.score, header.grade = 40, "D"
        header.issues.append("Invalid X-Frame-Options value")
        header.recommendations.append("Use DENY or SAMEORIGIN")

    return header


def analyze_x_content_type_options(value: Optional[str]) -> SecurityHeader:
    header = _header("X-Content-Type-Options", value)

    if not value:
        header.issues.append("X-Content-Type-Options header is missing")
        header.recommendations.append("Add X-Content-Type-Options: nosniff to prevent MIME sniffing")
        return header

    if value.lower().strip() == "nosniff":
        header.score, header.grade = 100, "A"
    else:
        header.score, header.grade = 50, "D"
        header.issues.append("Invalid X-Content-Type-Options value")
        header.recommendations.append("Use nosniff")

    return header


def analyze_content_type_options(value: Optional[str]) -> SecurityHeader:
    # Second pass over X-Content-Type-Options. Kept so the catalog, the
    # weighting and every stored score stay identical to earlier scans.
    return analyze_x_content_type_options(value)


def analyze_referrer_policy(value: Optional[str]) -> SecurityHeader:
    header = _header("Referrer-Policy", value)

    if not value:
        header.issues.append("Referrer-Policy header is missing")
        header.recommendations.append("Add Referrer-Policy: strict-origin-when-cross-origin")
        return header

    normalized = value.lower().strip()
    if normalized not in VALID_REFERRER_POLICIES:
        header.score, header.grade = 50, "D"
        header.issues.append("Invalid Referrer-Policy value")
        header.recommendations.append("Use a valid policy like strict-origin-when-cross-origin")
    elif normalized in ("strict-origin-when-cross-origin", "strict-origin"):
        header.score, header.grade = 100, "A"
    elif normalized in ("same-origin", "origin-when-cross-origin"):
        header.score, header.grade = 85, "B"
    elif normalized == "unsafe-url":
        header.score, header.grade = 40, "D"
        header.issues.append("unsafe-url leaks full URL in referrer")
        header.recommendations.append("Use strict-origin-when-cross-origin for better privacy")
    else:
        header.score, header.grade = 70, "C"

    return header


def analyze_permissions_policy(value: Optional[str]) -> SecurityHeader:
    header = _header("Permissions-Policy", value)

    if not value:
        header.issues.append("Permissions-Policy header is missing")
        header.recommendations.append("Add Permissions-Policy to restrict browser features")
        return header

    score = 100
    policy = value.lower()

    # Long-standing rule: both "=*" and "=()" are flagged. Changing it would
    # shift every historical Permissions-Policy score.
    for perm in DANGEROUS_PERMISSIONS:
        if f"{perm}=*" in policy or f"{perm}=()" in policy:
            score -= 20
            header.issues.append(f"{perm} permission is allowed for all origins")
            header.recommendations.append(f"Restrict {perm} to specific origins or disable it")

    header.score = clamp_score(score)
    header.grade = score_to_grade(header.score)
    return header


def analyze_coep(value: Optional[str]) -> SecurityHeader:
    header = _header("Cross-Origin-Embedder-Policy", value)

    if not value:
        header.score, header.grade = 70, "C"
        header.recommendations.append("Add Cross-Origin-Embedder-Policy: require-corp for enhanced isolation")
        return header

    if value.lower().strip() in ("require-corp", "credentialless"):
        header.score, header.grade = 100, "A"
    else:
        header.score, header.grade = 80, "B"
        header.issues.append("Invalid COEP value")

    return header


def analyze_coop(value: Optional[str]) -> SecurityHeader:
    header = _header("Cross-Origin-Opener-Policy", value)

    if not value:
        header.score, header.grade = 70, "C"
        header.recommendations.append("Add Cross-Origin-Opener-Policy: same-origin for isolation")
        return header

    normalized = value.lower().strip()
    if normalized == "same-origin":
        header.score, header.grade = 100, "A"
    elif normalized == "same-origin-allow-popups":
        header.score, header.grade = 90, "A"
    else:
        header.score, header.grade = 80, "B"

    return header


def analyze_corp(value: Optional[str]) -> SecurityHeader:
    header = _header("Cross-Origin-Resource-Policy", value)

    if not value:
        header.score, header.grade = 70, "C"
        header.recommendations.append("Add Cross-Origin-Resource-Policy: same-origin")
        return header

    normalized = value.lower().strip()
    if normalized in ("same-origin", "same-site"):
        header.score, header.grade = 100, "A"
    elif normalized == "cross-origin":
        header.score, header.grade = 50, "D"
        header.issues.append("cross-origin allows all origins")
        header.recommendations.append("Use same-origin or same-site for better security")
    else:
        header.score, header.grade = 80, "B"

    return header


def analyze_xss_protection(value: Optional[str]) -> SecurityHeader:
    # Legacy header: neutral 70/C unless explicitly configured
    header = _header("X-XSS-Protection", value, score=70, grade="C")

    if not value:
        header.recommendations.append("X-XSS-Protection is legacy; rely on CSP instead")
        return header

    normalized = value.lower().strip()
    if normalized == "1; mode=block":
        header.score, header.grade = 80, "B"
    elif normalized == "0":
        header.score, header.grade = 60, "C"
        header.issues.append("XSS protection is disabled")

    header.recommendations.append("X-XSS-Protection is deprecated; use CSP instead")
    return header


def analyze_expect_ct(value: Optional[str]) -> SecurityHeader:
    header = _header("Expect-CT", value, score=70, grade="C")

    if not value:
        header.recommendations.append(
            "Expect-CT is deprecated; use Certificate Transparency monitoring instead"
        )
        return header

    header.score, header.grade = 80, "B"
    header.recommendations.append("Expect-CT is deprecated but still functional")
    return header


def analyze_public_key_pins(value: Optional[str]) -> SecurityHeader:
    # HPKP is deprecated: presence is penalised, absence is the good state
    header = _header("Public-Key-Pins", value, score=50, grade="D")

    if value:
        header.issues.append("Public-Key-Pins is deprecated and should be removed")
        header.recommendations.append("Remove HPKP; use Certificate Transparency instead")
    else:
        header.score, header.grade = 100, "A"

    return header


def analyze_feature_policy(value: Optional[str]) -> SecurityHeader:
    header = _header("Feature-Policy", value, score=70, grade="C")

    if value:
        header.issues.append("Feature-Policy is deprecated")
        header.recommendations.append("Migrate to Permissions-Policy header")

    return header


def analyze_report_to(value: Optional[str]) -> SecurityHeader:
    header = _header("Report-To", value)

    if not value:
        header.score, header.grade = 70, "C"
        header.recommendations.append("Add Report-To header for violation reporting")
    else:
        header.score, header.grade = 100, "A"

    return header


# Order matters: this is the order rows are stored and shown in.
HEADER_CHECKS: List[Tuple[str, Callable[[Optional[str]], SecurityHeader]]] = [
    ("content-security-policy", HeaderCspScore.evaluate),
    ("strict-transport-security", analyze_hsts),
    ("x-frame-options", analyze_x_frame_options),
    ("x-content-type-options", analyze_x_content_type_options),
    ("referrer-policy", analyze_referrer_policy),
    ("permissions-policy", analyze_permissions_policy),
    ("cross-origin-embedder-policy", analyze_coep),
    ("cross-origin-opener-policy", analyze_coop),
    ("cross-origin-resource-policy", analyze_corp),
    ("x-xss-protection", analyze_xss_protection),
    ("expect-ct", analyze_expect_ct),
    ("x-content-type-options", analyze_content_type_options),
    ("public-key-pins", analyze_public_key_pins),
    ("feature-policy", analyze_feature_policy),
    ("report-to", analyze_report_to),
]


class HeaderAnalyzer:
    """
    Scores a raw header map into per-header and overall grades.

    Stateless; one instance can be shared by every scan.
    """

    @property
    def name(self) -> str:
        return "header_analyzer"

    def analyze(self, raw_headers: Optional[Mapping[str, str]]) -> HeaderAnalysisResult:
        normalized = {str(k).lower(): v for k, v in (raw_headers or {}).items()}

        headers = [check(normalized.get(key)) for key, check in HEADER_CHECKS]

        total_weight = 0
        weighted_score = 0
        critical_issues = 0

        for header in headers:
            weight = HEADER_WEIGHTS.get(header.name, 1)
            total_weight += weight
            weighted_score += header.score * weight
            if header.grade in ("D", "F"):
                critical_issues += 1

        headers_present = sum(1 for h in headers if h.is_present)

        if headers_present == 0:
            # Nothing from the catalog was sent: the neutral defaults of the
            # legacy headers must not lift an empty response off zero.
            overall_score = 0
        else:
            # Half-up rounding, not banker's rounding
            overall_score = int(math.floor(weighted_score / total_weight + 0.5)) if total_weight else 0

        return HeaderAnalysisResult(
            headers=headers,
            overall_score=overall_score,
            overall_grade=score_to_grade(overall_score),
            total_headers_analyzed=len(headers),
            headers_present=headers_present,
            critical_issues=critical_issues,
        )

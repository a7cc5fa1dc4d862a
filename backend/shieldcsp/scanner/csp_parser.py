# shieldcsp/scanner/csp_parser.py
"""
Content-Security-Policy parser and policy-level grader.

Parses a CSP header into directives and grades the policy itself. This is
independent from the CSP check inside HeaderAnalyzer (HeaderCspScore):
the two use different deduction tables and are expected to disagree, e.g.
for "default-src 'self'" the header check gives 70/C and this parser 55/F.

Scoring (start at 100, clamp to [0, 100]):
    - 'unsafe-inline' in any directive          −30
    - 'unsafe-eval' in any directive            −20
    - each missing critical directive           −10
      (default-src, script-src, object-src, base-uri, frame-ancestors)
    - no report-uri / report-to                 −5
    - bare * in a directive other than img-src  −10 per directive
    - 'strict-dynamic' anywhere                 +5
    - upgrade-insecure-requests present         +5
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from shieldcsp.scanner.base import (
    CSPDirective,
    CSPPolicy,
    clamp_score,
    score_to_grade,
)

logger = logging.getLogger(__name__)


CRITICAL_DIRECTIVES = (
    "default-src",
    "script-src",
    "object-src",
    "base-uri",
    "frame-ancestors",
)

MISSING_DIRECTIVE_ADVICE = {
    "object-src": "Add object-src 'none' to prevent plugins",
    "base-uri": "Add base-uri 'self' to prevent base tag injection",
    "frame-ancestors": "Add frame-ancestors 'none' to prevent clickjacking",
}

WILDCARD_EXEMPT = ("img-src",)


def parse_directives(csp_header: str) -> List[CSPDirective]:
    """Split a CSP header into directives. Names are lower-cased."""
    directives: List[CSPDirective] = []

    for chunk in csp_header.split(";"):
        directive_str = chunk.strip()
        if not directive_str:
            continue

        # Directive name ends at the first space; the rest are source values
        name, _, values_str = directive_str.partition(" ")
        directives.append(CSPDirective(
            name=name.lower(),
            values=values_str.split(),
            raw=directive_str,
        ))

    return directives


class PolicyCspScore:
    """Grades a parsed policy in place."""

    @staticmethod
    def apply(policy: CSPPolicy) -> CSPPolicy:
        score = 100
        directive_map: Dict[str, CSPDirective] = {d.name: d for d in policy.directives}

        for directive in policy.directives:
            if "'unsafe-inline'" in directive.values:
                policy.issues.append(f"'unsafe-inline' found in {directive.name}")
                policy.recommendations.append(
                    f"Remove 'unsafe-inline' from {directive.name} and use nonces or hashes"
                )
                if not policy.has_unsafe_inline:
                    score -= 30
                policy.has_unsafe_inline = True

            if "'unsafe-eval'" in directive.values:
                policy.issues.append(f"'unsafe-eval' found in {directive.name}")
                policy.recommendations.append(f"Remove 'unsafe-eval' from {directive.name}")
                if not policy.has_unsafe_eval:
                    score -= 20
                policy.has_unsafe_eval = True

            if "'strict-dynamic'" in directive.values:
                if not policy.has_strict_dynamic:
                    score += 5
                policy.has_strict_dynamic = True

        for critical in CRITICAL_DIRECTIVES:
            if critical in directive_map:
                continue
            policy.missing_directives.append(critical)
            score -= 10
            policy.issues.append(f"Missing {critical} directive")
            policy.recommendations.append(
                MISSING_DIRECTIVE_ADVICE.get(critical, f"Add {critical} directive")
            )

        if "upgrade-insecure-requests" in directive_map:
            score += 5
        else:
            policy.recommendations.append("Add upgrade-insecure-requests to force HTTPS")

        if "report-uri" not in directive_map and "report-to" not in directive_map:
            score -= 5
            policy.issues.append("Missing violation reporting")
            policy.recommendations.append("Add report-uri or report-to for violation monitoring")

        for directive in policy.directives:
            if "*" in directive.values and directive.name not in WILDCARD_EXEMPT:
                score -= 10
                policy.issues.append(f"Wildcard (*) found in {directive.name} - too permissive")
                policy.recommendations.append(
                    f"Restrict {directive.name} to specific sources instead of *"
                )

        policy.score = clamp_score(score)
        policy.grade = score_to_grade(policy.score)
        return policy


class CspParser:
    """Parses and grades CSP header values. Never raises."""

    @property
    def name(self) -> str:
        return "csp_parser"

    def parse(self, csp_header: Optional[str]) -> CSPPolicy:
        raw = csp_header or ""
        policy = CSPPolicy(raw=raw)

        if not raw.strip():
            policy.issues.append("Empty CSP header")
            policy.recommendations.append("Add a Content-Security-Policy header")
            return policy

        policy.directives = parse_directives(raw)
        return PolicyCspScore.apply(policy)


def parse_csp(csp_header: Optional[str]) -> CSPPolicy:
    return CspParser().parse(csp_header)


# ---------------------------------------------------------------------------
# Source matching
# ---------------------------------------------------------------------------

def would_block_source(policy: CSPPolicy, directive: str, source: str) -> bool:
    """
    Would `policy` block `source` for `directive`?

    Falls back to default-src when the directive is absent; with neither
    present nothing is blocked.
    """
    target = policy.get_directive(directive) or policy.get_directive("default-src")
    if target is None:
        return False
    return not is_source_allowed(target.values, source)


def is_source_allowed(values: List[str], source: str) -> bool:
    if "'none'" in values:
        return False

    if "*" in values:
        return True

    if source in values:
        return True

    # Scheme sources: https:, http:, data:, blob:, ...
    scheme = source.split(":", 1)[0]
    if f"{scheme}:" in values:
        return True

    # APPROXIMATION: 'self' allows everything because the page origin is not
    # known here. Do not tighten without passing the origin in.
    if "'self'" in values:
        return True

    # Loose host matching in both directions, not a real origin comparison
    for value in values:
        if value in source or source in value:
            return True

    return False

# shieldcsp/scanner/__init__.py
"""
ShieldCSP scan pipeline.

Usage:
    from shieldcsp.scanner import ScanOrchestrator

    orchestrator = ScanOrchestrator()
    result = orchestrator.execute(domain_id, "full")

Architecture:
    ScanOrchestrator
    ├── HeaderFetcher      HEAD (fallback GET) with manual redirect following
    ├── HeaderAnalyzer     15-header catalog → weighted overall score
    │   └── HeaderCspScore     coarse substring CSP grade
    └── CspParser          directive-level CSP grade
        └── PolicyCspScore     directive-level scoring rules
"""

from shieldcsp.scanner.base import (
    CSPDirective,
    CSPPolicy,
    FetchResult,
    HeaderAnalysisResult,
    SecurityHeader,
    score_to_grade,
)
from shieldcsp.scanner.fetcher import HeaderFetcher
from shieldcsp.scanner.header_analyzer import HeaderAnalyzer, HeaderCspScore
from shieldcsp.scanner.csp_parser import CspParser, PolicyCspScore, parse_csp, would_block_source
from shieldcsp.scanner.orchestrator import ScanOrchestrator, ScanResult

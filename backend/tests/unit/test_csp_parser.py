import pytest

from shieldcsp.scanner.csp_parser import CspParser, parse_csp, parse_directives, would_block_source
from shieldcsp.scanner.header_analyzer import HeaderCspScore

FULL_DIRECTIVES = "object-src 'none'; base-uri 'self'; frame-ancestors 'none'"


def test_empty_policy_scores_zero():
    policy = CspParser().parse("")

    assert policy.score == 0
    assert policy.grade == "F"
    assert "Empty CSP header" in policy.issues
    assert policy.directives == []


def test_whitespace_only_policy_is_empty():
    assert "Empty CSP header" in parse_csp("   ").issues


def test_header_check_and_policy_parser_disagree_on_default_src_only():
    raw = "default-src 'self'"

    header_level = HeaderCspScore.evaluate(raw)
    policy_level = CspParser().parse(raw)

    assert (header_level.score, header_level.grade) == (70, "C")
    assert (policy_level.score, policy_level.grade) == (55, "F")
    assert header_level.score != policy_level.score
    assert policy_level.missing_directives == ["script-src", "object-src", "base-uri", "frame-ancestors"]


def test_parse_directives_lowercases_names_and_splits_values():
    directives = parse_directives("Default-Src 'self' https://cdn.test;  ; script-src  'self'")

    assert [d.name for d in directives] == ["default-src", "script-src"]
    assert directives[0].values == ["'self'", "https://cdn.test"]
    assert directives[1].values == ["'self'"]


def test_unsafe_inline_is_deducted_once_but_reported_per_directive():
    policy = parse_csp(
        "default-src 'self' 'unsafe-inline'; script-src 'self' 'unsafe-inline'; "
        f"{FULL_DIRECTIVES}; report-uri /csp"
    )

    assert policy.has_unsafe_inline is True
    assert policy.score == 70
    assert sum("'unsafe-inline'" in i for i in policy.issues) == 2


def test_unsafe_eval_deduction():
    policy = parse_csp(f"default-src 'self'; script-src 'self' 'unsafe-eval'; {FULL_DIRECTIVES}; report-to g")

    assert policy.has_unsafe_eval is True
    assert policy.score == 80
    assert policy.grade == "B"


def test_wildcard_penalised_except_in_img_src():
    policy = parse_csp(f"default-src *; img-src *; script-src 'self'; {FULL_DIRECTIVES}; report-to csp")

    assert policy.score == 90
    wildcard_issues = [i for i in policy.issues if "Wildcard" in i]
    assert wildcard_issues == ["Wildcard (*) found in default-src - too permissive"]


def test_strict_dynamic_and_upgrade_bonuses():
    policy = parse_csp(
        "default-src 'self'; script-src 'strict-dynamic' 'unsafe-inline'; "
        f"{FULL_DIRECTIVES}; upgrade-insecure-requests"
    )

    # 100 - 30 inline + 5 strict-dynamic + 5 upgrade - 5 reporting
    assert policy.has_strict_dynamic is True
    assert policy.score == 75


def test_score_is_clamped_at_zero():
    policy = parse_csp("img-src * 'unsafe-inline' 'unsafe-eval'; style-src *; font-src *; media-src *")
    assert policy.score == 0
    assert policy.grade == "F"


def test_issues_summary_matches_policy():
    policy = parse_csp("default-src 'self'")
    summary = policy.issues_summary()

    assert summary["missingDirectives"] == policy.missing_directives
    assert summary["hasUnsafeInline"] is False


@pytest.mark.parametrize("source", [
    "https://example.com",
    "'self'",
    "data:",
    "*",
    "",
])
def test_none_blocks_every_source(source):
    policy = parse_csp("script-src 'none'")
    assert would_block_source(policy, "script-src", source) is True


def test_missing_directive_falls_back_to_default_src():
    policy = parse_csp("default-src 'none'")
    assert would_block_source(policy, "img-src", "https://cdn.test/a.png") is True


def test_no_directive_and_no_default_blocks_nothing():
    policy = parse_csp("img-src 'self'")
    assert would_block_source(policy, "script-src", "https://evil.test") is False


def test_scheme_and_wildcard_sources_allow():
    policy = parse_csp("img-src data: https:; script-src *")

    assert would_block_source(policy, "img-src", "data:image/png;base64,AAA") is False
    assert would_block_source(policy, "img-src", "https://cdn.test/x.png") is False
    assert would_block_source(policy, "script-src", "https://anything.test") is False


def test_self_is_an_approximation_that_allows_any_source():
    policy = parse_csp("script-src 'self'")
    assert would_block_source(policy, "script-src", "https://unrelated.test/app.js") is False


def test_host_matching_is_loose_substring():
    policy = parse_csp("script-src https://cdn.test")

    assert would_block_source(policy, "script-src", "https://cdn.test/lib.js") is False
    assert would_block_source(policy, "script-src", "cdn.test") is False
    assert would_block_source(policy, "script-src", "https://evil.test/x.js") is True

"""
Brief: Tests for dnsguard.rules.evaluator.evaluate precedence and matching.

Inputs:
  - None

Outputs:
  - None
"""

from dnsguard.rules.evaluator import RuleSource, Verdict, evaluate
from dnsguard.rules.store import RuleSnapshot


def test_substring_containment_blocks_superstrings():
    snap = RuleSnapshot.build(blocked=["ads.com"])
    for name in ("ads.com", "x.ads.com", "myads.com", "ads.com.evil.net"):
        v = evaluate(name, snap)
        assert v.blocked, name
        assert v.source is RuleSource.EXPLICIT_BLOCK
        assert v.matched_rule == "ads.com"


def test_unmatched_domain_allowed_by_default():
    v = evaluate("example.org", RuleSnapshot.build(blocked=["ads.com"]))
    assert not v.blocked
    assert v.source is RuleSource.DEFAULT
    assert v.matched_rule is None


def test_active_category_blocks_before_explicit_rules():
    snap = RuleSnapshot.build(blocked=["facebook.com"], active_categories=["social"])
    v = evaluate("www.facebook.com", snap)
    assert v.blocked
    assert v.source is RuleSource.CATEGORY
    assert v.category == "social"


def test_inactive_category_does_not_block():
    snap = RuleSnapshot.build()
    assert not evaluate("facebook.com", snap).blocked


def test_block_wildcard_matches_subdomains_only():
    snap = RuleSnapshot.build(blocked=["*.tracker.io"])
    v = evaluate("a.tracker.io", snap)
    assert v.blocked and v.source is RuleSource.WILDCARD
    assert v.matched_rule == "*.tracker.io"
    assert not evaluate("tracker.io", snap).blocked


def test_allow_wildcard_does_not_block_in_blacklist():
    snap = RuleSnapshot.build(allowed=["*.school.edu"])
    assert not evaluate("lib.school.edu", snap).blocked


def test_whitelist_blocks_everything_not_allowed():
    snap = RuleSnapshot.build(allowed=["school.edu"], mode="whitelist")
    assert not evaluate("www.school.edu", snap).blocked
    v = evaluate("example.com", snap)
    assert v.blocked
    assert v.source is RuleSource.DEFAULT


def test_whitelist_ignores_categories_and_block_set():
    snap = RuleSnapshot.build(
        blocked=["school.edu"],
        allowed=["school.edu", "facebook.com"],
        active_categories=["social"],
        mode="whitelist",
    )
    v = evaluate("facebook.com", snap)
    assert not v.blocked
    assert v.source is RuleSource.EXPLICIT_ALLOW
    assert not evaluate("school.edu", snap).blocked


def test_whitelist_allow_wildcard_permits():
    snap = RuleSnapshot.build(allowed=["*.kids.org"], mode="whitelist")
    v = evaluate("games.kids.org", snap)
    assert not v.blocked
    assert v.source is RuleSource.WILDCARD


def test_evaluation_is_case_insensitive():
    snap = RuleSnapshot.build(blocked=["ads.com"])
    assert evaluate("WWW.ADS.COM", snap).blocked


def test_verdict_dict_round_trip_and_action():
    v = Verdict.block("ads.com", RuleSource.CATEGORY, "ads")
    assert v.action == "blocked"
    assert Verdict.from_dict(v.to_dict()) == v
    assert Verdict.allow().action == "allowed"

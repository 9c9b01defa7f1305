"""Tests for stage-to-tier resolution."""

import pytest

from autonomous_dev_pipeline.models import Tier
from autonomous_dev_pipeline.tier_resolver import (
    FALLBACK_TIER, STAGE_TIERS, TierResolver, match_stage_prefix, resolve_tier,
)


@pytest.fixture
def resolver():
    """Create a TierResolver with the default table."""
    return TierResolver()


class TestPrefixMatching:
    def test_longest_prefix_wins(self):
        assert match_stage_prefix("spec-review-iter-1") == "spec-review"

    def test_exact_name(self):
        assert match_stage_prefix("implement") == "implement"

    def test_suffixes(self):
        assert match_stage_prefix("implement-task-2-attempt-1") == "implement"
        assert match_stage_prefix("quality-review-task-1-iter-2") == "quality-review"

    def test_no_partial_match(self):
        assert match_stage_prefix("impl") is None
        assert match_stage_prefix("implementation") is None

    def test_generic_review(self):
        assert match_stage_prefix("review-iter-3") == "review"

    def test_custom_table_uses_same_rule(self):
        resolver = TierResolver(stage_tiers={"deploy": Tier.LIGHT, "deploy-prod": Tier.ADVANCED})
        assert resolver.explain("deploy-prod-iter-2")["prefix"] == "deploy-prod"
        assert resolver.explain("deploy-staging")["prefix"] == "deploy"
        assert resolver.explain("deployment")["prefix"] is None
        assert match_stage_prefix("deploy-prod", ["deploy-prod", "deploy"]) == "deploy-prod"


class TestResolve:
    def test_spec_review_not_generic_review(self, resolver):
        assert resolver.resolve("spec-review-iter-1", "") == STAGE_TIERS["spec-review"]
        assert STAGE_TIERS["spec-review"] != STAGE_TIERS["review"]

    def test_hint_overrides_default(self, resolver):
        assert STAGE_TIERS["implement"] != Tier.LIGHT
        assert resolver.resolve("implement", "S") == Tier.LIGHT
        assert resolver.resolve("test-run-iter-1", "L") == Tier.ADVANCED

    def test_unknown_stage_falls_back(self, resolver):
        assert resolver.resolve("impl", "") == FALLBACK_TIER

    def test_unknown_stage_with_hint(self, resolver):
        assert resolver.resolve("impl", "M") == Tier.STANDARD

    def test_hint_is_case_sensitive(self, resolver):
        assert resolver.resolve("implement", "s") == STAGE_TIERS["implement"]

    def test_override_beats_everything(self):
        resolver = TierResolver(override=Tier.LIGHT)
        assert resolver.resolve("spec-review-iter-1", "L") == Tier.LIGHT
        assert resolver.resolve("unknown") == Tier.LIGHT

    def test_custom_table(self):
        resolver = TierResolver(stage_tiers={"build": Tier.LIGHT})
        assert resolver.resolve("build-1") == Tier.LIGHT
        assert resolver.resolve("implement") == FALLBACK_TIER

    def test_convenience_function(self):
        assert resolve_tier("docs") == STAGE_TIERS["docs"]


class TestExplain:
    def test_explain_prefix_and_hint(self, resolver):
        result = resolver.explain("implement-task-1", "S")
        assert result["tier"] == Tier.LIGHT
        assert result["prefix"] == "implement"
        assert any("hint" in r for r in result["reasons"])

    def test_explain_fallback(self, resolver):
        result = resolver.explain("impl")
        assert result["prefix"] is None
        assert any("Falling back" in r for r in result["reasons"])

"""Stage-name to execution-tier resolution.

Maps a stage id such as ``spec-review-iter-1`` to a cost tier by
longest-prefix match over a static table, with an optional complexity hint
that overrides the stage default in either direction.
"""

from typing import Optional, Sequence

from .models import Tier


# Default tier per known stage prefix
STAGE_TIERS: dict[str, Tier] = {
    # Understanding the issue
    "research": Tier.ADVANCED,
    "evaluate": Tier.ADVANCED,
    "plan": Tier.ADVANCED,
    # Implementation
    "implement": Tier.STANDARD,
    "task-review": Tier.STANDARD,
    "quality-review": Tier.STANDARD,
    "quality-fix": Tier.STANDARD,
    # Testing
    "test-run": Tier.LIGHT,
    "test-validate": Tier.STANDARD,
    "test-fix": Tier.STANDARD,
    # Wrap-up
    "docs": Tier.LIGHT,
    "spec-review": Tier.ADVANCED,
    "code-review": Tier.STANDARD,
    "review-fix": Tier.STANDARD,
    # Generic fallbacks
    "review": Tier.STANDARD,
    "fix": Tier.STANDARD,
}

# Prefixes ordered longest first so "spec-review" is tried before "review"
STAGE_PREFIXES: list[str] = sorted(STAGE_TIERS, key=len, reverse=True)

# Complexity hints (case-sensitive); anything else is ignored
COMPLEXITY_TIERS: dict[str, Tier] = {
    "S": Tier.LIGHT,
    "M": Tier.STANDARD,
    "L": Tier.ADVANCED,
}

# Used when neither a prefix nor a hint applies
FALLBACK_TIER = Tier.ADVANCED


def match_stage_prefix(stage_name: str, prefixes: Sequence[str] = STAGE_PREFIXES) -> Optional[str]:
    """Find the longest known prefix of a stage name.

    A prefix matches on exact equality or when followed by ``-``.
    ``prefixes`` must be ordered longest first.
    """
    for prefix in prefixes:
        if stage_name == prefix or stage_name.startswith(prefix + "-"):
            return prefix
    return None


class TierResolver:
    """Resolves the execution tier for a stage.

    Strategy:
    - Longest matching stage prefix gives the default tier
    - A recognized complexity hint (S/M/L) overrides that default
    - Unknown stage and no hint falls back to the most capable tier
    - An explicit override (e.g. from the command line) beats everything
    """

    def __init__(
        self,
        stage_tiers: Optional[dict[str, Tier]] = None,
        override: Optional[Tier] = None,
    ):
        self.stage_tiers = dict(stage_tiers) if stage_tiers is not None else dict(STAGE_TIERS)
        self.prefixes = sorted(self.stage_tiers, key=len, reverse=True)
        self.override = override

    def _match(self, stage_name: str) -> Optional[str]:
        return match_stage_prefix(stage_name, self.prefixes)

    def resolve(self, stage_name: str, complexity_hint: Optional[str] = None) -> Tier:
        """Resolve the tier for a stage.

        Args:
            stage_name: Stage id, optionally with ``-``-separated suffixes
            complexity_hint: Optional S/M/L hint; unrecognized values are ignored

        Returns:
            Tier to run the stage on
        """
        if self.override is not None:
            return self.override

        hinted = COMPLEXITY_TIERS.get(complexity_hint) if isinstance(complexity_hint, str) else None
        if hinted is not None:
            return hinted

        prefix = self._match(stage_name)
        if prefix is not None:
            return self.stage_tiers[prefix]

        return FALLBACK_TIER

    def explain(self, stage_name: str, complexity_hint: Optional[str] = None) -> dict:
        """Explain how a tier was chosen.

        Returns:
            Dict with tier, matched prefix and reasons
        """
        tier = self.resolve(stage_name, complexity_hint)
        prefix = self._match(stage_name)
        reasons = []

        if self.override is not None:
            reasons.append(f"Explicit override: {self.override.value}")
        else:
            if prefix:
                reasons.append(
                    f"Matched stage prefix '{prefix}' (default {self.stage_tiers[prefix].value})"
                )
            else:
                reasons.append("No known stage prefix matched")

            if isinstance(complexity_hint, str) and complexity_hint in COMPLEXITY_TIERS:
                reasons.append(
                    f"Complexity hint '{complexity_hint}' selects {COMPLEXITY_TIERS[complexity_hint].value}"
                )
            elif complexity_hint:
                reasons.append(f"Ignored unrecognized hint '{complexity_hint}'")

            if not prefix and tier == FALLBACK_TIER:
                reasons.append(f"Falling back to {FALLBACK_TIER.value}")

        return {
            "stage": stage_name,
            "tier": tier,
            "prefix": prefix,
            "reasons": reasons,
        }


def resolve_tier(stage_name: str, complexity_hint: Optional[str] = None) -> Tier:
    """Convenience function using the default table."""
    return TierResolver().resolve(stage_name, complexity_hint)

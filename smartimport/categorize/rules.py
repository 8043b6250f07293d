"""Stored-rule matching: the first and strongest suggestion source.

Rules come from user feedback or are created by hand. A rule only applies
when at least one of its description patterns occurs in the row. Its score
is the rule's own confidence scaled by the summed weight of the patterns
that hit (capped at 1), plus fixed bonuses for a matching amount range and
transaction type. The final score is clamped to [0, 1].
"""

from __future__ import annotations

import logging

from smartimport.categorize.context import Candidate, SuggestionContext
from smartimport.categorize.similarity import fold
from smartimport.config import Tuning
from smartimport.database.models import RawTransaction, Rule, RulePattern

logger = logging.getLogger(__name__)


def pattern_hits(rule: Rule, description: str) -> list[RulePattern]:
    """Patterns of the rule found (accent and case folded) in description."""
    text = fold(description)
    return [p for p in rule.patterns if p.text and fold(p.text) in text]


def in_amount_range(rule: Rule, amount) -> bool:
    """True when the rule has an amount range and amount falls inside it."""
    if rule.amount_min is None and rule.amount_max is None:
        return False
    value = float(amount)
    if rule.amount_min is not None and value < rule.amount_min:
        return False
    if rule.amount_max is not None and value > rule.amount_max:
        return False
    return True


def evaluate_rule(
    rule: Rule, raw: RawTransaction, tuning: Tuning | None = None
) -> float | None:
    """Score one rule against a row, or None when no pattern hits."""
    tuning = tuning or Tuning()
    hits = pattern_hits(rule, raw.description)
    if not hits:
        return None

    weight = min(1.0, sum(p.weight for p in hits))
    score = rule.confidence * weight
    if in_amount_range(rule, raw.amount):
        score += tuning.rule_amount_bonus
    if rule.type_filter and rule.type_filter == raw.transaction_type:
        score += tuning.rule_type_bonus
    return round(max(0.0, min(score, 1.0)), 4)


def rule_source(
    raw: RawTransaction, context: SuggestionContext, tuning: Tuning
) -> Candidate | None:
    """Best-scoring active rule. Rules arrive priority then recency ordered,
    so the earliest rule wins a tie."""
    best: tuple[float, Rule] | None = None
    for rule in context.rules:
        if not rule.is_active:
            continue
        score = evaluate_rule(rule, raw, tuning)
        if score is None:
            continue
        if best is None or score > best[0]:
            best = (score, rule)

    if best is None:
        return None
    score, rule = best
    hits = ", ".join(p.text for p in pattern_hits(rule, raw.description))
    label = rule.description or f"rule {rule.id[:8]}"
    logger.debug("Rule %s matched %r (%.2f)", rule.id, raw.description, score)
    return Candidate(
        source="rule",
        category_id=rule.category_id,
        account_id=rule.account_id,
        confidence=score,
        explanation=f"Rule '{label}' matched: {hits}",
        tags=frozenset(rule.tags),
        rule_id=rule.id,
    )

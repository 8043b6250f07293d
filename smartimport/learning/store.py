"""Feedback / learning store.

Turns review decisions into rules the suggestion engine reads on the next
import:

- accepted: reinforce the owner's best overlapping rule for the same
  category (usage + 1, confidence + 0.05 up to 0.95), or synthesize one
  from the description's keywords (confidence 0.7)
- corrected: synthesize, or update the rule with the same keywords and
  category, for the corrected category/account (confidence at least 0.7)
- rejected: nothing is learned

maintain() deletes old, rarely used rules and decays stale ones. Global
rules (owner None) are never touched by an owner's feedback or maintenance.

All writes go through the rule store; PersistenceFailure is not caught here
since lost feedback silently degrades future suggestions.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from smartimport.categorize.similarity import fold
from smartimport.config import Tuning
from smartimport.database.models import RawTransaction, Rule, RulePattern, Suggestion
from smartimport.database.repository import Repository

logger = logging.getLogger(__name__)

LEARNED_PRIORITY = 5

STOP_WORDS = frozenset({
    # Portuguese
    "de", "da", "do", "das", "dos", "em", "na", "no", "nas", "nos",
    "para", "por", "com", "sem", "sob", "sobre", "entre", "ate",
    "a", "o", "as", "os", "um", "uma", "uns", "umas", "e", "ou",
    "que", "se", "te", "me", "lhe", "vos", "lhes",
    # English
    "the", "and", "for", "from", "with", "payment", "purchase",
})

_PUNCTUATION = re.compile(r"[^\w\s]")


class RuleNotFound(KeyError):
    """No rule with that id or id prefix."""


def extract_keywords(description: str, limit: int = 5) -> list[str]:
    """Up to `limit` distinct words longer than two letters, stop words and
    bare numbers removed, in description order."""
    words = _PUNCTUATION.sub(" ", fold(description)).split()
    keywords: list[str] = []
    for word in words:
        if len(word) <= 2 or word in STOP_WORDS or word.isdigit():
            continue
        if word not in keywords:
            keywords.append(word)
        if len(keywords) == limit:
            break
    return keywords


@dataclass(frozen=True)
class Decision:
    """A reviewer's verdict on one suggestion."""
    kind: str  # "accepted", "corrected" or "rejected"
    category_id: str | None = None
    account_id: str | None = None

    @classmethod
    def accepted(cls) -> Decision:
        return cls("accepted")

    @classmethod
    def corrected(cls, category_id: str, account_id: str | None = None) -> Decision:
        return cls("corrected", category_id, account_id)

    @classmethod
    def rejected(cls) -> Decision:
        return cls("rejected")


@dataclass
class MaintenanceResult:
    deleted: list[str] = field(default_factory=list)
    decayed: list[str] = field(default_factory=list)


@dataclass
class LearningStats:
    rule_count: int = 0
    active_rules: int = 0
    avg_confidence: float | None = None
    total_usage: int = 0


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LearningStore:
    """Rule learning on top of a rule store.

    Args:
        rule_store: Anything offering list_rules/upsert_rule/delete_rule,
            normally the Repository.
        tuning: Learning increments, caps and maintenance ages.
    """

    def __init__(self, rule_store: Repository, tuning: Tuning | None = None):
        self.rules = rule_store
        self.tuning = tuning or Tuning()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _owner_lock(self, owner: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(owner, threading.Lock())

    # ── Feedback ────────────────────────────────────────────

    def record_feedback(
        self,
        raw: RawTransaction,
        suggestion: Suggestion,
        decision: Decision,
        owner: str,
    ) -> Rule | None:
        """Learn from one decision. Returns the rule written, if any.

        Raises:
            PersistenceFailure: If the rule store write fails.
            ValueError: For an unknown decision kind.
        """
        if decision.kind == "rejected":
            return None
        if decision.kind not in ("accepted", "corrected"):
            raise ValueError(f"Unknown decision: {decision.kind}")

        with self._owner_lock(owner):
            if decision.kind == "accepted":
                if suggestion.category_id is None:
                    logger.debug("Nothing to reinforce for %r", raw.description)
                    return None
                return self._reinforce(
                    raw, suggestion.category_id, suggestion.entity_id, owner
                )
            return self._correct(
                raw,
                decision.category_id or suggestion.category_id,
                decision.account_id or suggestion.entity_id,
                owner,
            )

    def _reinforce(
        self,
        raw: RawTransaction,
        category_id: str,
        account_id: str | None,
        owner: str,
    ) -> Rule:
        rule = self.find_overlapping_rule(raw.description, category_id, owner)
        if rule is None:
            return self._synthesize(raw, category_id, account_id, owner, "user_feedback")

        rule.usage_count += 1
        # Reinforcement never lowers a rule that already sits above the cap
        raised = min(self.tuning.reinforce_cap, rule.confidence + self.tuning.reinforce_step)
        rule.confidence = round(max(rule.confidence, raised), 4)
        rule.updated_at = datetime.now(timezone.utc).isoformat()
        self.rules.upsert_rule(rule)
        logger.info(
            "Reinforced rule %s (usage %d, confidence %.2f)",
            rule.id, rule.usage_count, rule.confidence,
        )
        return rule

    def _correct(
        self,
        raw: RawTransaction,
        category_id: str | None,
        account_id: str | None,
        owner: str,
    ) -> Rule:
        if category_id is None:
            raise ValueError("A correction needs a category")
        keywords = self._patterns_for(raw.description)
        existing = next(
            (
                r for r in self.rules.list_rules(owner)
                if r.category_id == category_id
                and sorted(r.pattern_texts) == sorted(keywords)
            ),
            None,
        )
        if existing is None:
            return self._synthesize(raw, category_id, account_id, owner, "user_correction")

        existing.usage_count += 1
        existing.confidence = max(existing.confidence, self.tuning.new_rule_confidence)
        existing.account_id = account_id or existing.account_id
        existing.is_active = True
        existing.updated_at = datetime.now(timezone.utc).isoformat()
        self.rules.upsert_rule(existing)
        logger.info("Updated correction rule %s -> %s", existing.id, category_id)
        return existing

    def _patterns_for(self, description: str) -> list[str]:
        return extract_keywords(description, self.tuning.max_keywords) or [fold(description)]

    def _synthesize(
        self,
        raw: RawTransaction,
        category_id: str,
        account_id: str | None,
        owner: str,
        origin: str,
    ) -> Rule:
        margin = self.tuning.learned_amount_margin
        amount = float(raw.amount)
        rule = Rule(
            category_id=category_id,
            account_id=account_id,
            owner=owner,
            patterns=[
                RulePattern(text, self.tuning.learned_pattern_weight)
                for text in self._patterns_for(raw.description)
            ],
            amount_min=round(amount * (1 - margin), 2),
            amount_max=round(amount * (1 + margin), 2),
            type_filter=raw.transaction_type,
            confidence=self.tuning.new_rule_confidence,
            usage_count=1,
            priority=LEARNED_PRIORITY,
            origin=origin,
            description=f"Learned from '{raw.description}'",
        )
        self.rules.upsert_rule(rule)
        logger.info(
            "Created %s rule %s: %s -> %s",
            origin, rule.id, "|".join(rule.pattern_texts), category_id,
        )
        return rule

    def find_overlapping_rule(
        self, description: str, category_id: str, owner: str
    ) -> Rule | None:
        """Owner's most confident rule for the category sharing a pattern
        with the description (either containing the other)."""
        text = fold(description)
        best: Rule | None = None
        for rule in self.rules.list_rules(owner):
            if rule.category_id != category_id:
                continue
            overlaps = any(
                p.text and (fold(p.text) in text or text in fold(p.text))
                for p in rule.patterns
            )
            if overlaps and (best is None or rule.confidence > best.confidence):
                best = rule
        return best

    # ── Manual rules ────────────────────────────────────────

    def add_rule(
        self,
        owner: str | None,
        patterns: list[str],
        category_id: str,
        account_id: str | None = None,
        amount_min: float | None = None,
        amount_max: float | None = None,
        type_filter: str | None = None,
        priority: int = 0,
        weight: float | None = None,
        description: str | None = None,
    ) -> Rule:
        """Create a hand-written rule (owner None makes it global).

        Raises:
            ValueError: Without patterns, or for a weight outside (0, 1].
        """
        if not patterns:
            raise ValueError("A rule needs at least one pattern")
        weight = self.tuning.default_pattern_weight if weight is None else weight
        rule = Rule(
            category_id=category_id,
            patterns=[RulePattern(p, weight) for p in patterns],
            owner=owner,
            account_id=account_id,
            amount_min=amount_min,
            amount_max=amount_max,
            type_filter=type_filter,
            priority=priority,
            origin="manual",
            description=description,
        )
        rule.validate()
        self.rules.upsert_rule(rule)
        logger.info("Added manual rule %s for %s", rule.id, owner or "all owners")
        return rule

    # ── Rule management ─────────────────────────────────────

    def find_rule(self, rule_ref: str) -> Rule:
        """Rule by full id or by a unique id prefix, as `rules` prints them.

        Raises:
            RuleNotFound: If no rule matches.
            ValueError: If the prefix matches more than one rule.
        """
        rule = self.rules.get_rule(rule_ref) if rule_ref else None
        if rule is not None:
            return rule
        matches = self.rules.find_rules_by_prefix(rule_ref) if rule_ref else []
        if not matches:
            raise RuleNotFound(rule_ref)
        if len(matches) > 1:
            raise ValueError(f"Rule id {rule_ref!r} is ambiguous ({len(matches)} rules)")
        return matches[0]

    def update_rule(
        self,
        rule_ref: str,
        priority: int | None = None,
        is_active: bool | None = None,
        description: str | None = None,
    ) -> Rule:
        """Change priority, active flag or description; None keeps a field."""
        rule = self.find_rule(rule_ref)
        with self._owner_lock(rule.owner or ""):
            if priority is not None:
                rule.priority = priority
            if is_active is not None:
                rule.is_active = is_active
            if description is not None:
                rule.description = description
            rule.updated_at = datetime.now(timezone.utc).isoformat()
            self.rules.upsert_rule(rule)
        logger.info(
            "Updated rule %s (priority %d, %s)",
            rule.id, rule.priority, "active" if rule.is_active else "inactive",
        )
        return rule

    def delete_rule(self, rule_ref: str) -> Rule:
        rule = self.find_rule(rule_ref)
        with self._owner_lock(rule.owner or ""):
            self.rules.delete_rule(rule.id)
        logger.info("Deleted rule %s", rule.id)
        return rule

    def stats(self, owner: str | None) -> LearningStats:
        """Rule count, average confidence and total usage of one owner."""
        rules = self.rules.list_rules(owner)
        if not rules:
            return LearningStats()
        return LearningStats(
            rule_count=len(rules),
            active_rules=sum(1 for r in rules if r.is_active),
            avg_confidence=round(sum(r.confidence for r in rules) / len(rules), 4),
            total_usage=sum(r.usage_count for r in rules),
        )

    # ── Maintenance ─────────────────────────────────────────

    def maintain(self, owner: str, now: datetime | None = None) -> MaintenanceResult:
        """Prune old rarely-used rules and decay stale ones for one owner.

        Decaying a rule counts as an update, so a stale rule loses
        confidence once per decay period rather than on every run.
        """
        now = now or datetime.now(timezone.utc)
        prune_before = now - timedelta(days=self.tuning.prune_after_days)
        decay_before = now - timedelta(days=self.tuning.decay_after_days)
        result = MaintenanceResult()

        with self._owner_lock(owner):
            for rule in self.rules.list_rules(owner):
                if (
                    rule.usage_count < self.tuning.prune_min_usage
                    and _parse_timestamp(rule.created_at) < prune_before
                ):
                    self.rules.delete_rule(rule.id)
                    result.deleted.append(rule.id)
                    continue
                if (
                    _parse_timestamp(rule.updated_at) < decay_before
                    and rule.confidence > self.tuning.decay_floor
                ):
                    rule.confidence = round(
                        max(self.tuning.decay_floor, rule.confidence - self.tuning.decay_step), 4
                    )
                    rule.updated_at = now.isoformat()
                    self.rules.upsert_rule(rule)
                    result.decayed.append(rule.id)

        logger.info(
            "Rule maintenance for %s: %d deleted, %d decayed",
            owner, len(result.deleted), len(result.decayed),
        )
        return result

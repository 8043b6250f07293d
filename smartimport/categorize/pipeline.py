"""Suggestion engine: ordered table of independent sources.

Sources (in tie-break order):
1. Rule matching       - stored rules from feedback or manual entry
2. Historical match    - past categorized transactions like this one
3. Keyword table       - fixed locale keyword -> category mapping (0.6)
4. Default fallback    - catch-all category for the transaction type (0.3)

Every source is a pure function (raw, context, tuning) -> Candidate | None.
All of them are evaluated; the candidate with the strictly highest
confidence wins and exact ties go to the earlier source. The rationale keeps
every candidate so the reviewer can see what was considered.

The engine never raises: a source that fails is logged and counts as having
no candidate.
"""

from __future__ import annotations

import logging
from typing import Callable

from smartimport.categorize.context import Candidate, SuggestionContext
from smartimport.categorize.defaults import default_source
from smartimport.categorize.historical import historical_source
from smartimport.categorize.keywords import keyword_source
from smartimport.categorize.rules import rule_source
from smartimport.categorize.similarity import fold
from smartimport.config import Tuning
from smartimport.database.models import (
    TRANSACTION_TYPES,
    Account,
    Category,
    HistoricalTransaction,
    RationaleEntry,
    RawTransaction,
    Rule,
    Suggestion,
)

logger = logging.getLogger(__name__)

Source = Callable[[RawTransaction, SuggestionContext, Tuning], "Candidate | None"]

SOURCES: tuple[tuple[str, Source], ...] = (
    ("rule", rule_source),
    ("historical", historical_source),
    ("keyword", keyword_source),
    ("default", default_source),
)


class SuggestionEngine:
    """Reduce the source table to one Suggestion per row.

    Args:
        tuning: Heuristic constants (confidences, bonuses, thresholds).
        sources: Override the source table, mostly for tests.
    """

    def __init__(
        self,
        tuning: Tuning | None = None,
        sources: tuple[tuple[str, Source], ...] = SOURCES,
    ):
        self.tuning = tuning or Tuning()
        self.sources = sources

    def candidates(
        self, raw: RawTransaction, context: SuggestionContext
    ) -> list[Candidate]:
        """Evaluate every source, in table order."""
        found: list[Candidate] = []
        for name, source in self.sources:
            try:
                candidate = source(raw, context, self.tuning)
            except Exception:
                logger.exception("Suggestion source %s failed for %r", name, raw.description)
                continue
            if candidate is not None:
                found.append(candidate)
        return found

    def suggest(
        self, raw: RawTransaction, context: SuggestionContext
    ) -> Suggestion:
        candidates = self.candidates(raw, context)

        best: Candidate | None = None
        for candidate in candidates:
            if best is None or candidate.confidence > best.confidence:
                best = candidate

        rationale = [
            RationaleEntry(c.source, c.confidence, c.explanation)
            for c in candidates
        ]
        if context.history is None:
            rationale.insert(
                sum(1 for c in candidates if c.source == "rule"),
                RationaleEntry(
                    "historical", 0.0,
                    context.history_error or "History lookup unavailable",
                ),
            )

        suggestion = Suggestion(
            type=self._resolve_type(raw, best, context),
            tags=frozenset(raw.tags),
            rationale=rationale,
            low_confidence_threshold=self.tuning.low_confidence_threshold,
        )
        if best is not None:
            suggestion.category_id = best.category_id
            suggestion.category_confidence = best.confidence
            suggestion.source = best.source
            suggestion.tags = suggestion.tags | best.tags
            account = context.account(best.account_id)
            if account is not None:
                suggestion.entity_id = account.id
                suggestion.entity_name = account.name
                suggestion.entity_confidence = best.confidence

        hinted = self._hinted_account(raw, context)
        if hinted is not None:
            suggestion.entity_id = hinted.id
            suggestion.entity_name = hinted.name
            suggestion.entity_confidence = self.tuning.account_hint_confidence
        return suggestion

    @staticmethod
    def _resolve_type(
        raw: RawTransaction, best: Candidate | None, context: SuggestionContext
    ) -> str:
        if raw.type_hint:
            return raw.type_hint
        category = context.category(best.category_id) if best else None
        if category is not None and category.type in TRANSACTION_TYPES:
            return category.type
        return "expense"

    @staticmethod
    def _hinted_account(
        raw: RawTransaction, context: SuggestionContext
    ) -> Account | None:
        if not raw.account_hint:
            return None
        hint = fold(raw.account_hint)
        for account in context.accounts:
            if hint in (fold(account.name), fold(account.id)):
                return account
        return None


def suggest(
    raw: RawTransaction,
    rules: list[Rule],
    categories: list[Category],
    accounts: list[Account],
    transaction_history: list[HistoricalTransaction] | None,
    tuning: Tuning | None = None,
    keywords: dict[str, list[str]] | None = None,
) -> Suggestion:
    """One-shot suggestion for a row. None history means it was unavailable."""
    context = SuggestionContext(
        rules=rules,
        categories=categories,
        accounts=accounts,
        history=transaction_history,
        keywords=keywords or {},
    )
    return SuggestionEngine(tuning).suggest(raw, context)

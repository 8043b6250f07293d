"""Inputs and outputs shared by every suggestion source."""

from __future__ import annotations

from dataclasses import dataclass, field

from smartimport.database.models import (
    Account,
    Category,
    HistoricalTransaction,
    Rule,
)


@dataclass(frozen=True)
class Candidate:
    """One source's answer for a row."""
    source: str  # one of SUGGESTION_SOURCES
    category_id: str
    confidence: float
    explanation: str
    account_id: str | None = None
    tags: frozenset[str] = frozenset()
    rule_id: str | None = None


@dataclass
class SuggestionContext:
    """Everything a source may read. Loaded once per import session.

    history is None when the lookup was unavailable (timed out or the store
    failed); history_error then says why.
    """
    rules: list[Rule] = field(default_factory=list)
    categories: list[Category] = field(default_factory=list)
    accounts: list[Account] = field(default_factory=list)
    history: list[HistoricalTransaction] | None = field(default_factory=list)
    keywords: dict[str, list[str]] = field(default_factory=dict)
    history_error: str | None = None

    def with_history(
        self,
        history: list[HistoricalTransaction] | None,
        error: str | None = None,
    ) -> SuggestionContext:
        """Copy sharing rules and directories, with a row's own history."""
        return SuggestionContext(
            rules=self.rules,
            categories=self.categories,
            accounts=self.accounts,
            history=history,
            keywords=self.keywords,
            history_error=error,
        )

    def category(self, category_id: str | None) -> Category | None:
        return next((c for c in self.categories if c.id == category_id), None)

    def account(self, account_id: str | None) -> Account | None:
        return next((a for a in self.accounts if a.id == account_id), None)

    @property
    def first_account_id(self) -> str | None:
        return self.accounts[0].id if self.accounts else None

"""Duplicate detection for import sessions.

Two transactions are compared only inside the duplicate window: dates at
most 3 days apart and amounts within 0.01 of each other. Inside the window
the descriptions are scored with a pluggable SimilarityStrategy (edit
distance or Soundex-key equality by default) and anything at or above the
threshold is a candidate.

A row is checked against persisted history and against the earlier rows of
its own session, so a statement pasted twice in one go is caught as well.
The detector flags for review and never rejects: legitimate same-amount
transactions on nearby days exist.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Iterable

from smartimport.categorize.similarity import SimilarityStrategy, default_similarity
from smartimport.config import Tuning
from smartimport.database.models import (
    DuplicateCandidate,
    DuplicateWarning,
    HistoricalTransaction,
    RawTransaction,
)
from smartimport.database.repository import Repository

logger = logging.getLogger(__name__)


def session_entry(row_number: int, raw: RawTransaction, owner: str = "") -> HistoricalTransaction:
    """Wrap an earlier session row so it can be compared like history."""
    return HistoricalTransaction(
        id=f"session-row-{row_number}",
        owner=owner,
        date=raw.date,
        description=raw.description,
        amount=raw.amount,
        type=raw.transaction_type,
    )


class DuplicateDetector:
    """Find probable duplicates of a row.

    Args:
        repo: History store; without one only session rows are compared.
        tuning: Window, tolerance, threshold and top-N settings.
        similarity: Description similarity strategy.
    """

    def __init__(
        self,
        repo: Repository | None = None,
        tuning: Tuning | None = None,
        similarity: SimilarityStrategy | None = None,
    ):
        self.repo = repo
        self.tuning = tuning or Tuning()
        self.similarity = similarity or default_similarity()

    def in_window(self, raw: RawTransaction, txn: HistoricalTransaction) -> bool:
        days = abs((raw.date - txn.date).days)
        diff = abs(float(raw.amount) - float(txn.amount))
        return (
            days <= self.tuning.duplicate_window_days
            and diff < self.tuning.duplicate_amount_tolerance
        )

    def find_duplicates(
        self,
        raw: RawTransaction,
        existing: Iterable[HistoricalTransaction],
        origin: str = "history",
    ) -> list[DuplicateCandidate]:
        """Top candidates by similarity (then id) at or above the threshold."""
        found: list[DuplicateCandidate] = []
        for txn in existing:
            if not self.in_window(raw, txn):
                continue
            score = round(self.similarity.score(raw.description, txn.description), 4)
            if score >= self.tuning.duplicate_threshold:
                found.append(DuplicateCandidate(txn.id, score, origin))
        found.sort(key=lambda c: (-c.similarity, c.existing_id))
        return found[: self.tuning.duplicate_max_candidates]

    def warning_for(
        self, candidates: list[DuplicateCandidate]
    ) -> DuplicateWarning | None:
        if not candidates:
            return None
        confidence = (
            self.tuning.duplicate_multi_confidence
            if len(candidates) > 1
            else self.tuning.duplicate_single_confidence
        )
        return DuplicateWarning(tuple(candidates), confidence)

    def history_window(
        self, raw: RawTransaction, owner: str
    ) -> list[HistoricalTransaction]:
        """Persisted transactions in the row's window; empty if the store fails."""
        if self.repo is None:
            return []
        try:
            return self.repo.find_in_window(
                owner, raw.date, raw.amount,
                days=self.tuning.duplicate_window_days,
                tolerance=self.tuning.duplicate_amount_tolerance,
            )
        except sqlite3.Error as e:
            logger.warning("Duplicate lookup failed for %r: %s", raw.description, e)
            return []

    def check(
        self,
        raw: RawTransaction,
        owner: str,
        earlier: Iterable[HistoricalTransaction] = (),
        history: list[HistoricalTransaction] | None = None,
    ) -> DuplicateWarning | None:
        """Compare a row with history and earlier session rows.

        history may be passed in when the caller already fetched the window.
        """
        if history is None:
            history = self.history_window(raw, owner)
        candidates = self.find_duplicates(raw, history) + self.find_duplicates(
            raw, earlier, origin="session"
        )
        candidates.sort(key=lambda c: (-c.similarity, c.existing_id))
        warning = self.warning_for(candidates[: self.tuning.duplicate_max_candidates])
        if warning is not None:
            logger.debug(
                "Possible duplicate: %r (%d candidates)",
                raw.description, len(warning.candidates),
            )
        return warning

"""Historical similarity matching.

Past categorized transactions of the same type, with an amount within 50%
of the row's and a description that overlaps it, vote for a
(category, account) pair. The pair with the most votes wins; ties go to the
pair whose amounts are closest on average. Confidence grows with the vote
count: min(0.8, 0.3 + 0.1 * count).
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from smartimport.categorize.context import Candidate, SuggestionContext
from smartimport.categorize.similarity import fold, soundex
from smartimport.config import Tuning
from smartimport.database.models import HistoricalTransaction, RawTransaction
from smartimport.database.repository import Repository

logger = logging.getLogger(__name__)


class LookupTimeout(TimeoutError):
    """History lookup timed out or the store was unavailable.

    The row's suggestion degrades to the keyword and default tiers.
    """


@dataclass
class HistoricalMatch:
    """A (category, account) pair and the past rows that voted for it."""
    category_id: str
    account_id: str | None
    count: int
    avg_amount_diff: float
    example: str


def description_matches(a: str, b: str, prefix_len: int = 10) -> bool:
    """Substring overlap either way, shared prefix/suffix, or same Soundex key."""
    fa, fb = fold(a), fold(b)
    if not fa or not fb:
        return False
    if fa in fb or fb in fa:
        return True
    if fa[:prefix_len] in fb or fa[-prefix_len:] in fb:
        return True
    key = soundex(fa)
    return bool(key) and key == soundex(fb)


def amount_bounds(amount, ratio: float) -> tuple[float, float]:
    value = float(amount)
    return value * (1 - ratio), value * (1 + ratio)


def fetch_history(
    repo: Repository,
    owner: str,
    raw: RawTransaction,
    tuning: Tuning | None = None,
) -> list[HistoricalTransaction]:
    """Read the candidate history for one row from the store.

    Raises:
        LookupTimeout: If the store cannot be read.
    """
    tuning = tuning or Tuning()
    low, high = amount_bounds(raw.amount, tuning.historical_amount_ratio)
    try:
        return repo.find_history(
            owner, raw.transaction_type, low, high,
            description_hint=raw.description,
        )
    except sqlite3.Error as e:
        raise LookupTimeout(f"History store unavailable: {e}") from e


def best_match(
    raw: RawTransaction,
    history: list[HistoricalTransaction],
    tuning: Tuning,
) -> HistoricalMatch | None:
    low, high = amount_bounds(raw.amount, tuning.historical_amount_ratio)
    target = float(raw.amount)

    groups: dict[tuple[str, str | None], list[HistoricalTransaction]] = {}
    for txn in history:
        if txn.category_id is None or txn.type != raw.transaction_type:
            continue
        if not low < float(txn.amount) < high:
            continue
        if not description_matches(
            raw.description, txn.description, tuning.historical_prefix_len
        ):
            continue
        groups.setdefault((txn.category_id, txn.account_id), []).append(txn)

    if not groups:
        return None

    matches = [
        HistoricalMatch(
            category_id=category_id,
            account_id=account_id,
            count=len(txns),
            avg_amount_diff=sum(abs(float(t.amount) - target) for t in txns) / len(txns),
            example=txns[0].description,
        )
        for (category_id, account_id), txns in groups.items()
    ]
    matches.sort(key=lambda m: (
        -m.count, m.avg_amount_diff, m.category_id, m.account_id or "",
    ))
    return matches[0]


def historical_source(
    raw: RawTransaction, context: SuggestionContext, tuning: Tuning
) -> Candidate | None:
    if not context.history:
        return None
    match = best_match(raw, context.history, tuning)
    if match is None:
        return None

    confidence = min(
        tuning.historical_cap,
        tuning.historical_base + tuning.historical_step * match.count,
    )
    logger.debug(
        "Historical match: %r -> %s (%d similar)",
        raw.description, match.category_id, match.count,
    )
    return Candidate(
        source="historical",
        category_id=match.category_id,
        account_id=match.account_id,
        confidence=round(confidence, 4),
        explanation=f"Similar to '{match.example}' ({match.count} past transactions)",
    )

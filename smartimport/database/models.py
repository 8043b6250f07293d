"""Dataclass models shared by the import pipeline and the SQLite store.

Persisted models (HistoricalTransaction, Rule) match the schema in
migrations/. Primary keys are TEXT (UUID strings generated via uuid4()).
Review-time models (Suggestion, EnrichedTransaction, ...) are never stored
directly; they are rebuilt for every import session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

TRANSACTION_TYPES = ("income", "expense", "transfer")
REVIEW_STATUSES = ("pending", "accepted", "edited", "rejected")
SUGGESTION_SOURCES = ("rule", "historical", "keyword", "default")


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Directory entries ────────────────────────────────────


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    type: str | None = None


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    type: str | None = None


# ── Normalized input ─────────────────────────────────────


@dataclass(frozen=True)
class RawTransaction:
    """A normalized, unverified row. Amount is always a magnitude."""
    date: date
    description: str
    amount: Decimal
    type_hint: str | None = None
    category_hint: str | None = None
    account_hint: str | None = None
    tags: tuple[str, ...] = ()
    source_row: dict = field(default_factory=dict, compare=False, hash=False)
    line_number: int | None = None
    date_fallback: bool = False

    @property
    def transaction_type(self) -> str:
        return self.type_hint or "expense"


# ── Suggestions ──────────────────────────────────────────


@dataclass(frozen=True)
class RationaleEntry:
    source: str  # one of SUGGESTION_SOURCES
    confidence: float
    explanation: str


@dataclass
class Suggestion:
    category_id: str | None = None
    category_confidence: float = 0.0
    entity_id: str | None = None
    entity_name: str | None = None
    entity_confidence: float = 0.0
    type: str = "expense"
    tags: frozenset[str] = frozenset()
    source: str | None = None  # source of the winning candidate
    rationale: list[RationaleEntry] = field(default_factory=list)
    low_confidence_threshold: float = 0.5

    @property
    def confidence(self) -> float:
        return self.category_confidence

    @property
    def needs_review(self) -> bool:
        """Low-confidence suggestions must be reviewed by hand."""
        return self.category_confidence < self.low_confidence_threshold


@dataclass(frozen=True)
class DuplicateCandidate:
    existing_id: str
    similarity: float
    origin: str = "history"  # "history" or "session"


@dataclass(frozen=True)
class DuplicateWarning:
    candidates: tuple[DuplicateCandidate, ...]
    confidence: float


@dataclass
class EnrichedTransaction:
    """A raw transaction paired with its suggestion and review state."""
    row_number: int
    raw: RawTransaction
    suggestion: Suggestion
    review_status: str = "pending"
    duplicate_warning: DuplicateWarning | None = None
    final_category_id: str | None = None
    final_account_id: str | None = None
    final_type: str | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_warning is not None

    @property
    def is_terminal(self) -> bool:
        return self.review_status != "pending"


# ── Persisted models ─────────────────────────────────────


@dataclass
class HistoricalTransaction:
    owner: str
    date: date
    description: str
    amount: Decimal
    type: str
    id: str = field(default_factory=_new_id)
    category_id: str | None = None
    account_id: str | None = None
    tags: str | None = None
    source: str = "smart_import"
    created_at: str = field(default_factory=_now)


@dataclass(frozen=True)
class RulePattern:
    text: str
    weight: float


@dataclass
class Rule:
    category_id: str
    patterns: list[RulePattern]
    id: str = field(default_factory=_new_id)
    owner: str | None = None  # None = global rule
    amount_min: float | None = None
    amount_max: float | None = None
    type_filter: str | None = None
    account_id: str | None = None
    confidence: float = 1.0
    usage_count: int = 0
    priority: int = 0
    is_active: bool = True
    origin: str = "manual"  # manual, user_feedback, user_correction
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def pattern_texts(self) -> list[str]:
        return [p.text for p in self.patterns]

    def validate(self) -> None:
        """Raise ValueError unless weights are in (0, 1] and confidence in [0, 1]."""
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Rule confidence must be within [0, 1], got {self.confidence}")
        for p in self.patterns:
            if not 0.0 < p.weight <= 1.0:
                raise ValueError(
                    f"Pattern weight must be within (0, 1], got {p.weight} for {p.text!r}"
                )


@dataclass
class SessionArchive:
    """Summary row kept after a session is finalized or cancelled."""
    session_id: str
    owner: str
    status: str
    file_name: str | None = None
    format: str | None = None
    total_rows: int = 0
    imported_rows: int = 0
    rejected_rows: int = 0
    duplicate_rows: int = 0
    persisted_rows: int = 0
    avg_confidence: float | None = None
    created_at: str = field(default_factory=_now)
    closed_at: str = field(default_factory=_now)

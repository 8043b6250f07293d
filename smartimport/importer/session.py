"""Import sessions: parse -> normalize -> suggest + detect duplicates -> review.

Orchestrates one import per session:
  parse blob → normalize rows → (per row, in a worker pool) history lookup,
  suggestion, duplicate check → review decisions → finalize

Rows are independent, so they are enriched concurrently in a bounded
ThreadPoolExecutor and collected back in their original order. The history
lookup of each row runs under a hard timeout; a row whose lookup times out
keeps going with the rule, keyword and default tiers.

Nothing is persisted before finalize(): review decisions only feed the
learning store, and cancel() discards the session.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from uuid import uuid4

from smartimport.categorize.context import SuggestionContext
from smartimport.categorize.historical import LookupTimeout, fetch_history
from smartimport.categorize.pipeline import SuggestionEngine
from smartimport.config import Config
from smartimport.database.dedup import DuplicateDetector, session_entry
from smartimport.database.models import (
    TRANSACTION_TYPES,
    EnrichedTransaction,
    HistoricalTransaction,
    RawTransaction,
    SessionArchive,
)
from smartimport.database.repository import PersistenceFailure, Repository
from smartimport.learning.store import Decision, LearningStore
from smartimport.parsers.base import Diagnostic
from smartimport.parsers.normalizer import RowNormalizer, RowRejected
from smartimport.parsers.registry import parse_blob

logger = logging.getLogger(__name__)


class SessionNotFound(KeyError):
    """No open session with that id."""


class SessionClosed(RuntimeError):
    """The session was already finalized or cancelled."""


class RowAlreadyReviewed(ValueError):
    """The row already carries an accept, edit or reject decision."""


@dataclass
class SessionStats:
    total_rows: int = 0
    imported: int = 0
    rejected: int = 0
    duplicates: int = 0
    low_confidence: int = 0
    avg_confidence: float | None = None
    accepted: int = 0
    edited: int = 0
    rejected_by_user: int = 0


@dataclass
class ImportSession:
    owner: str
    rows: list[EnrichedTransaction]
    diagnostics: list[Diagnostic]
    format: str
    file_name: str | None = None
    session_id: str = field(default_factory=lambda: str(uuid4()))
    status: str = "open"  # open, finalized, cancelled
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def row(self, row_number: int) -> EnrichedTransaction:
        if not 1 <= row_number <= len(self.rows):
            raise ValueError(
                f"Session {self.session_id} has no row {row_number}"
            )
        return self.rows[row_number - 1]


@dataclass
class FinalizeResult:
    persisted_ids: list[str]
    skipped: int


class ImportService:
    """Runs import sessions against a repository and a config.

    Args:
        repo: History, rule and session-archive store.
        config: Category/account directories, keyword table and tuning.
        today: Fallback date for unparseable dates, mostly for tests.
    """

    def __init__(self, repo: Repository, config: Config, today: date | None = None):
        self.repo = repo
        self.config = config
        self.tuning = config.tuning
        self.normalizer = RowNormalizer(tuning=self.tuning, today=today)
        self.engine = SuggestionEngine(self.tuning)
        self.detector = DuplicateDetector(repo, self.tuning)
        self.learning = LearningStore(repo, self.tuning)

        self._sessions: dict[str, ImportSession] = {}
        self._closed: set[str] = set()
        self._lock = threading.Lock()
        self._lookups = ThreadPoolExecutor(
            max_workers=self.tuning.workers, thread_name_prefix="history-lookup"
        )

    def close(self) -> None:
        self._lookups.shutdown(wait=False, cancel_futures=True)

    # ── Session lifecycle ───────────────────────────────────

    def start_session(
        self,
        owner: str,
        blob: bytes | str,
        file_name: str | None = None,
        fmt: str | None = None,
    ) -> ImportSession:
        """Parse, normalize and enrich a blob into a reviewable session.

        Raises:
            ParseError: If the blob cannot be read at all.
        """
        parsed = parse_blob(blob, file_name, fmt)
        diagnostics = list(parsed.diagnostics)
        raws: list[RawTransaction] = []
        for row in parsed.rows:
            try:
                raws.append(self.normalizer.normalize_row(row))
            except RowRejected as e:
                diagnostics.append(Diagnostic(row.line_number, str(e)))
            except Exception as e:
                # A row failure never aborts the session
                logger.exception("Line %s could not be normalized", row.line_number)
                diagnostics.append(Diagnostic(row.line_number, f"Unreadable row: {e}"))

        context = self._load_context(owner)
        earlier = [session_entry(n, raw, owner) for n, raw in enumerate(raws, start=1)]

        with ThreadPoolExecutor(
            max_workers=self.tuning.workers, thread_name_prefix="import-row"
        ) as pool:
            futures = [
                pool.submit(self._enrich, n, raw, owner, context, earlier[: n - 1])
                for n, raw in enumerate(raws, start=1)
            ]
            rows = [f.result() for f in futures]

        session = ImportSession(
            owner=owner,
            rows=rows,
            diagnostics=sorted(diagnostics, key=lambda d: d.line_number or 0),
            format=parsed.format,
            file_name=file_name,
        )
        with self._lock:
            self._sessions[session.session_id] = session

        stats = self.summary(session)
        logger.info(
            "Session %s (%s): %d rows, %d rejected, %d possible duplicates",
            session.session_id, parsed.format,
            stats.imported, stats.rejected, stats.duplicates,
        )
        return session

    def get_session(self, session_id: str) -> ImportSession:
        with self._lock:
            if session_id in self._closed:
                raise SessionClosed(f"Session {session_id} is closed")
            try:
                return self._sessions[session_id]
            except KeyError:
                raise SessionNotFound(session_id) from None

    def review(
        self, session_id: str, row_number: int, decision: Decision
    ) -> EnrichedTransaction:
        """Apply a reviewer's decision to one row and learn from it.

        Each row is reviewed once. The row's status only changes once the
        feedback is stored, so a PersistenceFailure leaves the row pending.

        Raises:
            RowAlreadyReviewed: If the row already carries a decision.
        """
        session = self.get_session(session_id)
        row = session.row(row_number)
        if row.is_terminal:
            raise RowAlreadyReviewed(
                f"Row {row_number} of session {session_id} is already {row.review_status}"
            )
        self.learning.record_feedback(row.raw, row.suggestion, decision, session.owner)

        if decision.kind == "rejected":
            row.review_status = "rejected"
            row.final_category_id = None
            row.final_account_id = None
            row.final_type = None
            return row

        if decision.kind == "corrected":
            row.review_status = "edited"
            row.final_category_id = decision.category_id
            row.final_account_id = decision.account_id or row.suggestion.entity_id
            row.final_type = self._corrected_type(row.raw, decision.category_id)
        else:
            row.review_status = "accepted"
            row.final_category_id = row.suggestion.category_id
            row.final_account_id = row.suggestion.entity_id
            row.final_type = row.suggestion.type
        return row

    def accept_confident(
        self, session_id: str, threshold: float
    ) -> list[EnrichedTransaction]:
        """Accept every pending, non-duplicate row at or above threshold."""
        session = self.get_session(session_id)
        return [
            self.review(session_id, row.row_number, Decision.accepted())
            for row in session.rows
            if row.review_status == "pending"
            and not row.is_duplicate
            and row.suggestion.category_id is not None
            and row.suggestion.confidence >= threshold
        ]

    def finalize(self, session_id: str) -> FinalizeResult:
        """Persist accepted and edited rows, then close the session.

        Raises:
            PersistenceFailure: The session stays open so the caller can retry.
        """
        session = self.get_session(session_id)
        chosen = [r for r in session.rows if r.review_status in ("accepted", "edited")]
        txns = [self._to_history(session.owner, r) for r in chosen]
        persisted_ids = self.repo.persist_transactions(txns) if txns else []

        self._close(session, "finalized", len(persisted_ids))
        logger.info(
            "Session %s finalized: %d persisted, %d skipped",
            session_id, len(persisted_ids), len(session.rows) - len(chosen),
        )
        return FinalizeResult(persisted_ids, len(session.rows) - len(chosen))

    def cancel(self, session_id: str) -> SessionStats:
        """Discard a session. Nothing but the archive row is written."""
        session = self.get_session(session_id)
        self._close(session, "cancelled", 0)
        logger.info("Session %s cancelled", session_id)
        return self.summary(session)

    def summary(self, session: ImportSession) -> SessionStats:
        rows = session.rows
        confidences = [r.suggestion.confidence for r in rows]
        return SessionStats(
            total_rows=len(rows) + len(session.diagnostics),
            imported=len(rows),
            rejected=len(session.diagnostics),
            duplicates=sum(1 for r in rows if r.is_duplicate),
            low_confidence=sum(1 for r in rows if r.suggestion.needs_review),
            avg_confidence=(
                round(sum(confidences) / len(confidences), 4) if confidences else None
            ),
            accepted=sum(1 for r in rows if r.review_status == "accepted"),
            edited=sum(1 for r in rows if r.review_status == "edited"),
            rejected_by_user=sum(1 for r in rows if r.review_status == "rejected"),
        )

    # ── Internals ───────────────────────────────────────────

    def _load_context(self, owner: str) -> SuggestionContext:
        try:
            rules = self.repo.list_active_rules(owner)
        except sqlite3.Error as e:
            logger.warning("Rule store unavailable, importing without rules: %s", e)
            rules = []
        return SuggestionContext(
            rules=rules,
            categories=self.config.categories,
            accounts=self.config.accounts,
            keywords=self.config.keywords,
        )

    def _lookup_history(
        self, owner: str, raw: RawTransaction
    ) -> tuple[list[HistoricalTransaction] | None, str | None]:
        future = self._lookups.submit(fetch_history, self.repo, owner, raw, self.tuning)
        try:
            return future.result(timeout=self.tuning.lookup_timeout), None
        except LookupTimeout as e:
            # Before FuturesTimeout: both are TimeoutError on Python 3.11+
            logger.warning("History lookup for %r failed: %s", raw.description, e)
            return None, str(e)
        except FuturesTimeout:
            future.cancel()
            logger.warning(
                "History lookup for %r timed out after %.1fs",
                raw.description, self.tuning.lookup_timeout,
            )
            return None, f"History lookup timed out after {self.tuning.lookup_timeout}s"

    def _enrich(
        self,
        row_number: int,
        raw: RawTransaction,
        owner: str,
        context: SuggestionContext,
        earlier: list[HistoricalTransaction],
    ) -> EnrichedTransaction:
        history, error = self._lookup_history(owner, raw)
        suggestion = self.engine.suggest(raw, context.with_history(history, error))
        warning = self.detector.check(raw, owner, earlier)
        return EnrichedTransaction(
            row_number=row_number,
            raw=raw,
            suggestion=suggestion,
            duplicate_warning=warning,
        )

    def _corrected_type(self, raw: RawTransaction, category_id: str | None) -> str:
        if raw.type_hint:
            return raw.type_hint
        category = self.config.category_by_id(category_id)
        if category is not None and category.type in TRANSACTION_TYPES:
            return category.type
        return raw.transaction_type

    @staticmethod
    def _to_history(owner: str, row: EnrichedTransaction) -> HistoricalTransaction:
        tags = sorted(row.suggestion.tags)
        return HistoricalTransaction(
            owner=owner,
            date=row.raw.date,
            description=row.raw.description,
            amount=row.raw.amount,
            type=row.final_type or row.suggestion.type,
            category_id=row.final_category_id,
            account_id=row.final_account_id,
            tags=",".join(tags) if tags else None,
        )

    def _close(self, session: ImportSession, status: str, persisted: int) -> None:
        with self._lock:
            self._sessions.pop(session.session_id, None)
            self._closed.add(session.session_id)
        session.status = status

        stats = self.summary(session)
        archive = SessionArchive(
            session_id=session.session_id,
            owner=session.owner,
            status=status,
            file_name=session.file_name,
            format=session.format,
            total_rows=stats.total_rows,
            imported_rows=stats.imported,
            rejected_rows=stats.rejected,
            duplicate_rows=stats.duplicates,
            persisted_rows=persisted,
            avg_confidence=stats.avg_confidence,
            created_at=session.created_at,
        )
        try:
            self.repo.archive_session(archive)
        except PersistenceFailure as e:
            # The session outcome stands; only its summary row is lost
            logger.error("Could not archive session %s: %s", session.session_id, e)

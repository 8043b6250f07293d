"""Repository: SQLite reference implementation of the external stores.

Implements the three narrow contracts the import core depends on:
  - transaction history: find_history(), find_in_window(),
    persist_transactions()
  - rule store: list_active_rules(), upsert_rule(), delete_rule()
  - session archive: archive_session()

All methods take/return dataclass instances from models.py. A single
connection is shared by the session worker threads, so every statement runs
under one lock. Writes are retried on transient lock errors and raise
PersistenceFailure when they still fail.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, TypeVar

from smartimport.categorize.similarity import soundex

from .models import HistoricalTransaction, Rule, RulePattern, SessionArchive

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class PersistenceFailure(RuntimeError):
    """Raised when a write to the store fails.

    Attributes:
        retryable: True when the failure was transient (database locked or
            busy) and the caller may try the same operation again.
    """

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


def _soundex_sql(value: str | None) -> str:
    return soundex(value or "")


class Repository:
    WRITE_ATTEMPTS: int = 3
    RETRY_DELAY: float = 0.05

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA foreign_keys = ON")
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.create_function(
                    "SOUNDEX", 1, _soundex_sql, deterministic=True,
                )
            return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path = MIGRATIONS_DIR):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        with self._lock:
            self.conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                "  version INTEGER PRIMARY KEY,"
                "  description TEXT,"
                "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
                ")"
            )
            self.conn.commit()

            row = self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ).fetchone()
            current = row[0] or 0

            for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
                version = int(sql_file.name.split("_")[0])
                if version <= current:
                    continue
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise
                logger.debug("Applied migration %s", sql_file.name)

    # ── Statement helpers ───────────────────────────────────

    def _query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _write(self, op: Callable[[sqlite3.Connection], T], what: str) -> T:
        """Run a write in one transaction, retrying transient lock errors."""
        last_error: sqlite3.OperationalError | None = None
        for attempt in range(1, self.WRITE_ATTEMPTS + 1):
            try:
                with self._lock:
                    try:
                        result = op(self.conn)
                        self.conn.commit()
                        return result
                    except Exception:
                        self.conn.rollback()
                        raise
            except sqlite3.OperationalError as e:
                last_error = e
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    what, attempt, self.WRITE_ATTEMPTS, e,
                )
                time.sleep(self.RETRY_DELAY * attempt)
            except sqlite3.DatabaseError as e:
                raise PersistenceFailure(f"{what} failed: {e}", retryable=False) from e
        raise PersistenceFailure(
            f"{what} failed after {self.WRITE_ATTEMPTS} attempts: {last_error}",
            retryable=True,
        ) from last_error

    # ── Transactions ────────────────────────────────────────

    def persist_transactions(self, txns: list[HistoricalTransaction]) -> list[str]:
        """Insert accepted rows atomically and return their IDs."""
        if not txns:
            return []

        def op(conn: sqlite3.Connection) -> list[str]:
            conn.executemany(
                "INSERT INTO transactions"
                " (id, owner, date, description, amount, type,"
                "  category_id, account_id, tags, source, created_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                [
                    (t.id, t.owner, t.date.isoformat(), t.description,
                     float(t.amount), t.type, t.category_id, t.account_id,
                     t.tags, t.source, t.created_at)
                    for t in txns
                ],
            )
            return [t.id for t in txns]

        return self._write(op, f"persist {len(txns)} transactions")

    def get_transaction(self, txn_id: str) -> HistoricalTransaction | None:
        rows = self._query("SELECT * FROM transactions WHERE id = ?", (txn_id,))
        return self._row_to_transaction(rows[0]) if rows else None

    def find_history(
        self,
        owner: str,
        txn_type: str,
        amount_min: Decimal | float,
        amount_max: Decimal | float,
        description_hint: str | None = None,
        limit: int = 1000,
    ) -> list[HistoricalTransaction]:
        """Past categorized transactions of one type inside an amount range.

        When description_hint is given, only rows whose description contains
        its first or last 10 characters, or shares its Soundex key, are
        returned.
        """
        sql = (
            "SELECT * FROM transactions"
            " WHERE owner = ? AND type = ? AND category_id IS NOT NULL"
            "   AND amount > ? AND amount < ?"
        )
        params: list = [owner, txn_type, float(amount_min), float(amount_max)]
        if description_hint:
            sql += (
                " AND (description LIKE ? OR description LIKE ?"
                "      OR SOUNDEX(description) = SOUNDEX(?))"
            )
            params += [
                f"%{description_hint[:10]}%",
                f"%{description_hint[-10:]}%",
                description_hint,
            ]
        sql += " ORDER BY date DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_transaction(r) for r in self._query(sql, params)]

    def find_in_window(
        self,
        owner: str,
        on_date: date,
        amount: Decimal | float,
        days: int = 3,
        tolerance: float = 0.01,
    ) -> list[HistoricalTransaction]:
        """Transactions within +-days of on_date with (almost) the same amount."""
        rows = self._query(
            "SELECT * FROM transactions"
            " WHERE owner = ? AND date BETWEEN ? AND ?"
            "   AND ABS(amount - ?) < ?"
            " ORDER BY date, rowid",
            (owner,
             (on_date - timedelta(days=days)).isoformat(),
             (on_date + timedelta(days=days)).isoformat(),
             float(amount), tolerance),
        )
        return [self._row_to_transaction(r) for r in rows]

    # ── Rules ───────────────────────────────────────────────

    def list_active_rules(self, owner: str) -> list[Rule]:
        """Owner rules plus global rules, highest priority then newest first."""
        rows = self._query(
            "SELECT * FROM rules"
            " WHERE (owner = ? OR owner IS NULL) AND is_active = 1"
            " ORDER BY priority DESC, created_at DESC, rowid DESC",
            (owner,),
        )
        return self._usable_rules(rows)

    def list_rules(self, owner: str | None) -> list[Rule]:
        """All rules of one owner (None lists the global rules)."""
        if owner is None:
            rows = self._query(
                "SELECT * FROM rules WHERE owner IS NULL"
                " ORDER BY priority DESC, created_at DESC, rowid DESC"
            )
        else:
            rows = self._query(
                "SELECT * FROM rules WHERE owner = ?"
                " ORDER BY priority DESC, created_at DESC, rowid DESC",
                (owner,),
            )
        return [self._row_to_rule(r) for r in rows]

    def _usable_rules(self, rows: list[sqlite3.Row]) -> list[Rule]:
        rules = []
        for row in rows:
            rule = self._row_to_rule(row)
            try:
                rule.validate()
            except ValueError as e:
                logger.warning("Skipping rule %s: %s", rule.id, e)
                continue
            rules.append(rule)
        return rules

    def get_rule(self, rule_id: str) -> Rule | None:
        rows = self._query("SELECT * FROM rules WHERE id = ?", (rule_id,))
        return self._row_to_rule(rows[0]) if rows else None

    def find_rules_by_prefix(self, prefix: str) -> list[Rule]:
        rows = self._query(
            "SELECT * FROM rules WHERE substr(id, 1, ?) = ?", (len(prefix), prefix)
        )
        return [self._row_to_rule(r) for r in rows]

    def upsert_rule(self, rule: Rule) -> Rule:
        patterns = json.dumps([
            {"text": p.text, "weight": p.weight} for p in rule.patterns
        ])
        tags = json.dumps(rule.tags) if rule.tags else None

        def op(conn: sqlite3.Connection) -> Rule:
            conn.execute(
                "INSERT INTO rules"
                " (id, owner, category_id, account_id, patterns, amount_min,"
                "  amount_max, type_filter, confidence, usage_count, priority,"
                "  is_active, origin, description, tags, created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)"
                " ON CONFLICT(id) DO UPDATE SET"
                "  owner = excluded.owner,"
                "  category_id = excluded.category_id,"
                "  account_id = excluded.account_id,"
                "  patterns = excluded.patterns,"
                "  amount_min = excluded.amount_min,"
                "  amount_max = excluded.amount_max,"
                "  type_filter = excluded.type_filter,"
                "  confidence = excluded.confidence,"
                "  usage_count = excluded.usage_count,"
                "  priority = excluded.priority,"
                "  is_active = excluded.is_active,"
                "  origin = excluded.origin,"
                "  description = excluded.description,"
                "  tags = excluded.tags,"
                "  updated_at = excluded.updated_at",
                (rule.id, rule.owner, rule.category_id, rule.account_id,
                 patterns, rule.amount_min, rule.amount_max, rule.type_filter,
                 rule.confidence, rule.usage_count, rule.priority,
                 int(rule.is_active), rule.origin, rule.description, tags,
                 rule.created_at, rule.updated_at),
            )
            return rule

        return self._write(op, f"upsert rule {rule.id}")

    def delete_rule(self, rule_id: str) -> bool:
        def op(conn: sqlite3.Connection) -> bool:
            cur = conn.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
            return cur.rowcount > 0

        return self._write(op, f"delete rule {rule_id}")

    # ── Session archive ─────────────────────────────────────

    def archive_session(self, archive: SessionArchive) -> SessionArchive:
        def op(conn: sqlite3.Connection) -> SessionArchive:
            conn.execute(
                "INSERT OR REPLACE INTO import_sessions"
                " (session_id, owner, status, file_name, format, total_rows,"
                "  imported_rows, rejected_rows, duplicate_rows, persisted_rows,"
                "  avg_confidence, created_at, closed_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (archive.session_id, archive.owner, archive.status,
                 archive.file_name, archive.format, archive.total_rows,
                 archive.imported_rows, archive.rejected_rows,
                 archive.duplicate_rows, archive.persisted_rows,
                 archive.avg_confidence, archive.created_at, archive.closed_at),
            )
            return archive

        return self._write(op, f"archive session {archive.session_id}")

    def get_session_archive(self, session_id: str) -> SessionArchive | None:
        rows = self._query(
            "SELECT * FROM import_sessions WHERE session_id = ?", (session_id,)
        )
        if not rows:
            return None
        r = rows[0]
        return SessionArchive(
            session_id=r["session_id"], owner=r["owner"], status=r["status"],
            file_name=r["file_name"], format=r["format"],
            total_rows=r["total_rows"], imported_rows=r["imported_rows"],
            rejected_rows=r["rejected_rows"],
            duplicate_rows=r["duplicate_rows"],
            persisted_rows=r["persisted_rows"],
            avg_confidence=r["avg_confidence"],
            created_at=r["created_at"], closed_at=r["closed_at"],
        )

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> HistoricalTransaction:
        return HistoricalTransaction(
            id=row["id"], owner=row["owner"],
            date=date.fromisoformat(row["date"]),
            description=row["description"],
            amount=Decimal(str(row["amount"])),
            type=row["type"],
            category_id=row["category_id"], account_id=row["account_id"],
            tags=row["tags"], source=row["source"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> Rule:
        patterns = [
            RulePattern(text=p["text"], weight=float(p["weight"]))
            for p in json.loads(row["patterns"] or "[]")
        ]
        return Rule(
            id=row["id"], owner=row["owner"],
            category_id=row["category_id"], account_id=row["account_id"],
            patterns=patterns,
            amount_min=row["amount_min"], amount_max=row["amount_max"],
            type_filter=row["type_filter"],
            confidence=row["confidence"], usage_count=row["usage_count"],
            priority=row["priority"], is_active=bool(row["is_active"]),
            origin=row["origin"], description=row["description"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

"""Tests for import sessions: parse, suggest, review, finalize."""

import shutil
import sqlite3
import threading
from datetime import date
from decimal import Decimal

import pytest

from smartimport.categorize.historical import LookupTimeout
from smartimport.config import Config
from smartimport.database.models import HistoricalTransaction
from smartimport.database.repository import PersistenceFailure
from smartimport.importer.session import (
    ImportService,
    RowAlreadyReviewed,
    SessionClosed,
    SessionNotFound,
)
from smartimport.learning.store import Decision
from smartimport.parsers.base import ParseError
from tests.conftest import FIXTURE_CONFIG_DIR

TODAY = date(2024, 2, 1)

CONTINENTE_CSV = "Data,Descricao,Valor\n15/01/2024,Continente supermercado,-45,67\n"

SALARY_PASTE = "2024-01-15\tSalario\t2500.00\n2024-01-16\tSalario\t2500.00\n"

MIXED_CSV = (
    "Data;Descricao;Valor\n"
    "15/01/2024;Continente supermercado;-45,67\n"
    "16/01/2024;POS 1234;-12,00\n"
    "17/01/2024;Abastecimento gasolina;-60,00\n"
)


@pytest.fixture
def service(repo, config):
    s = ImportService(repo, config, today=TODAY)
    yield s
    s.close()


@pytest.fixture
def fast_timeout_config(tmp_path):
    config_dir = tmp_path / "config"
    shutil.copytree(FIXTURE_CONFIG_DIR, config_dir)
    (config_dir / "settings.yaml").write_text(
        "default_owner: tester\ntuning:\n  max_workers: 2\n  lookup_timeout: 0.05\n"
    )
    return Config(config_dir)


def _past(description="Continente supermercado", category_id="habitacao", **kw):
    defaults = dict(
        owner="tester", date=date(2023, 12, 1), description=description,
        amount=Decimal("44.00"), type="expense", category_id=category_id,
    )
    defaults.update(kw)
    return HistoricalTransaction(**defaults)


# ── Starting a session ───────────────────────────────────


class TestStartSession:
    def test_csv_scenario(self, service):
        session = service.start_session("tester", CONTINENTE_CSV, "jan.csv")
        assert session.format == "csv"
        assert session.diagnostics == []
        assert len(session.rows) == 1

        row = session.rows[0]
        assert row.row_number == 1
        assert row.raw.date == date(2024, 1, 15)
        assert row.raw.description == "Continente supermercado"
        assert row.raw.amount == Decimal("45.67")
        assert row.raw.type_hint == "expense"
        assert row.suggestion.category_id == "alimentacao"
        assert row.suggestion.confidence == 0.6
        assert row.suggestion.source == "keyword"
        assert row.review_status == "pending"
        assert not row.is_duplicate

    def test_rows_and_diagnostics(self, service):
        blob = (
            "Data,Descricao,Valor\n"
            "15/01/2024,Uber,12.50\n"
            "16/01/2024,Bad\n"
            "17/01/2024,Lidl,abc\n"
        )
        session = service.start_session("tester", blob)
        assert [r.raw.description for r in session.rows] == ["Uber"]
        assert [(d.line_number, d.message) for d in session.diagnostics] == [
            (3, "Expected 3 columns, found 2"),
            (4, "Amount is not numeric: 'abc'"),
        ]
        stats = service.summary(session)
        assert (stats.total_rows, stats.imported, stats.rejected) == (3, 1, 2)

    def test_rows_keep_file_order(self, service):
        session = service.start_session("tester", MIXED_CSV)
        assert [r.row_number for r in session.rows] == [1, 2, 3]
        assert [r.suggestion.category_id for r in session.rows] == [
            "alimentacao", "outros", "transporte",
        ]

    def test_oversized_date_does_not_abort(self, service):
        blob = (
            "Data,Descricao,Valor\n"
            "15/01/2024,Uber,12.50\n"
            + "1" * 5000 + "/01/2024,Lidl,3.20\n"
        )
        session = service.start_session("tester", blob)
        assert [r.raw.description for r in session.rows] == ["Uber", "Lidl"]
        assert session.rows[1].raw.date == TODAY
        assert session.rows[1].raw.date_fallback

    def test_unexpected_row_failure_is_a_diagnostic(self, service, monkeypatch):
        normalize_row = service.normalizer.normalize_row

        def flaky(row):
            if row.line_number == 3:
                raise RuntimeError("boom")
            return normalize_row(row)

        monkeypatch.setattr(service.normalizer, "normalize_row", flaky)
        blob = "Data,Descricao,Valor\n15/01/2024,Uber,12.50\n16/01/2024,Lidl,3.20\n"
        session = service.start_session("tester", blob)
        assert [r.raw.description for r in session.rows] == ["Uber"]
        assert [(d.line_number, d.message) for d in session.diagnostics] == [
            (3, "Unreadable row: boom"),
        ]

    def test_unparseable_date_uses_today(self, service):
        session = service.start_session(
            "tester", "Data,Descricao,Valor\nontem,Uber,12.50\n"
        )
        raw = session.rows[0].raw
        assert raw.date == TODAY
        assert raw.date_fallback

    def test_empty_blob(self, service):
        with pytest.raises(ParseError, match="empty"):
            service.start_session("tester", "")

    def test_paste_duplicate_scenario(self, service):
        session = service.start_session("tester", SALARY_PASTE)
        assert session.format == "text"
        first, second = session.rows
        assert not first.is_duplicate
        assert second.is_duplicate
        candidate = second.duplicate_warning.candidates[0]
        assert candidate.existing_id == "session-row-1"
        assert candidate.similarity >= 0.9
        assert second.suggestion.category_id == "salario"
        assert second.suggestion.type == "income"
        assert service.summary(session).duplicates == 1

    def test_duplicate_of_history(self, service, repo):
        repo.persist_transactions([_past(
            date=date(2024, 1, 14), amount=Decimal("45.67"), category_id="alimentacao",
        )])
        session = service.start_session("tester", CONTINENTE_CSV)
        assert session.rows[0].duplicate_warning.candidates[0].origin == "history"

    def test_history_beats_keyword(self, service, repo):
        repo.persist_transactions([_past() for _ in range(4)])
        row = service.start_session("tester", CONTINENTE_CSV).rows[0]
        assert row.suggestion.source == "historical"
        assert row.suggestion.category_id == "habitacao"
        assert row.suggestion.confidence == pytest.approx(0.7)
        assert not row.is_duplicate

    def test_owners_are_separate(self, service, repo):
        repo.persist_transactions([_past(owner="someone") for _ in range(4)])
        row = service.start_session("tester", CONTINENTE_CSV).rows[0]
        assert row.suggestion.source == "keyword"


# ── Degraded lookups ─────────────────────────────────────


class TestDegradedLookups:
    def test_history_timeout(self, repo, fast_timeout_config, monkeypatch):
        release = threading.Event()

        def slow_history(*args, **kwargs):
            release.wait(5)
            return []

        monkeypatch.setattr("smartimport.importer.session.fetch_history", slow_history)
        service = ImportService(repo, fast_timeout_config, today=TODAY)
        try:
            row = service.start_session("tester", CONTINENTE_CSV).rows[0]
        finally:
            release.set()
            service.close()

        assert row.suggestion.source == "keyword"
        degraded = [r for r in row.suggestion.rationale if r.source == "historical"]
        assert len(degraded) == 1
        assert degraded[0].confidence == 0.0
        assert degraded[0].explanation == "History lookup timed out after 0.05s"

    def test_history_store_failure(self, service, monkeypatch):
        def broken(*args, **kwargs):
            raise LookupTimeout("History store unavailable: disk I/O error")

        monkeypatch.setattr("smartimport.importer.session.fetch_history", broken)
        row = service.start_session("tester", CONTINENTE_CSV).rows[0]
        assert row.suggestion.category_id == "alimentacao"
        assert ("historical", 0.0, "History store unavailable: disk I/O error") in [
            (r.source, r.confidence, r.explanation) for r in row.suggestion.rationale
        ]

    def test_rule_store_unavailable(self, service, repo, monkeypatch, caplog):
        def broken(owner):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(repo, "list_active_rules", broken)
        row = service.start_session("tester", CONTINENTE_CSV).rows[0]
        assert row.suggestion.source == "keyword"
        assert "Rule store unavailable" in caplog.text


# ── Review ───────────────────────────────────────────────


class TestReview:
    def test_accept(self, service, repo):
        session = service.start_session("tester", CONTINENTE_CSV)
        row = service.review(session.session_id, 1, Decision.accepted())
        assert row.review_status == "accepted"
        assert row.final_category_id == "alimentacao"
        assert row.final_account_id == "conta-ordem"
        assert row.final_type == "expense"
        assert len(repo.list_rules("tester")) == 1

    def test_correct(self, service, repo):
        session = service.start_session("tester", MIXED_CSV)
        row = service.review(
            session.session_id, 2, Decision.corrected("habitacao", "poupanca"),
        )
        assert row.review_status == "edited"
        assert row.final_category_id == "habitacao"
        assert row.final_account_id == "poupanca"
        [rule] = repo.list_rules("tester")
        assert rule.category_id == "habitacao"

    def test_reject(self, service, repo):
        session = service.start_session("tester", CONTINENTE_CSV)
        row = service.review(session.session_id, 1, Decision.rejected())
        assert row.review_status == "rejected"
        assert row.final_category_id is None
        assert repo.list_rules("tester") == []

    def test_nothing_persisted_before_finalize(self, service, repo):
        session = service.start_session("tester", CONTINENTE_CSV)
        service.review(session.session_id, 1, Decision.accepted())
        assert repo.find_in_window("tester", date(2024, 1, 15), Decimal("45.67")) == []

    def test_failed_feedback_leaves_row_pending(self, service, repo, monkeypatch):
        session = service.start_session("tester", CONTINENTE_CSV)

        def broken(rule):
            raise PersistenceFailure("upsert failed")

        monkeypatch.setattr(repo, "upsert_rule", broken)
        with pytest.raises(PersistenceFailure):
            service.review(session.session_id, 1, Decision.accepted())
        assert session.rows[0].review_status == "pending"

    def test_row_is_reviewed_once(self, service, repo):
        session = service.start_session("tester", CONTINENTE_CSV)
        service.review(session.session_id, 1, Decision.accepted())
        retries = (Decision.accepted(), Decision.corrected("habitacao"), Decision.rejected())
        for decision in retries:
            with pytest.raises(RowAlreadyReviewed, match="already accepted"):
                service.review(session.session_id, 1, decision)

        [rule] = repo.list_rules("tester")
        assert rule.usage_count == 1
        assert rule.category_id == "alimentacao"
        assert session.rows[0].review_status == "accepted"

    def test_correction_takes_category_type(self, service, repo):
        session = service.start_session(
            "tester", "Data,Descricao,Valor\n15/01/2024,POS 1234,12.00\n"
        )
        assert session.rows[0].raw.type_hint is None
        assert session.rows[0].suggestion.type == "expense"

        row = service.review(session.session_id, 1, Decision.corrected("salario"))
        assert row.final_type == "income"
        [txn_id] = service.finalize(session.session_id).persisted_ids
        assert repo.get_transaction(txn_id).type == "income"

    def test_correction_keeps_signed_type(self, service):
        session = service.start_session("tester", MIXED_CSV)
        row = service.review(session.session_id, 2, Decision.corrected("salario"))
        assert row.final_type == "expense"

    def test_accept_confident(self, service):
        session = service.start_session("tester", MIXED_CSV)
        accepted = service.accept_confident(session.session_id, 0.5)
        assert [r.row_number for r in accepted] == [1, 3]
        assert session.rows[1].review_status == "pending"

    def test_accept_confident_skips_duplicates(self, service):
        session = service.start_session("tester", SALARY_PASTE)
        accepted = service.accept_confident(session.session_id, 0.5)
        assert [r.row_number for r in accepted] == [1]

    def test_unknown_row(self, service):
        session = service.start_session("tester", CONTINENTE_CSV)
        with pytest.raises(ValueError, match="no row 2"):
            service.review(session.session_id, 2, Decision.accepted())

    def test_unknown_session(self, service):
        with pytest.raises(SessionNotFound):
            service.review("nope", 1, Decision.accepted())

    def test_learned_rule_used_next_time(self, service):
        first = service.start_session("tester", CONTINENTE_CSV)
        service.review(first.session_id, 1, Decision.accepted())
        service.cancel(first.session_id)

        row = service.start_session("tester", CONTINENTE_CSV).rows[0]
        assert row.suggestion.source == "rule"
        assert row.suggestion.category_id == "alimentacao"
        assert row.suggestion.confidence == 1.0


# ── Finalize / cancel ────────────────────────────────────


class TestFinalize:
    def test_persists_accepted_and_edited(self, service, repo):
        session = service.start_session("tester", MIXED_CSV, "jan.csv")
        service.review(session.session_id, 1, Decision.accepted())
        service.review(session.session_id, 2, Decision.corrected("habitacao"))
        service.review(session.session_id, 3, Decision.rejected())

        result = service.finalize(session.session_id)
        assert len(result.persisted_ids) == 2
        assert result.skipped == 1

        txn = repo.get_transaction(result.persisted_ids[1])
        assert txn.owner == "tester"
        assert txn.description == "POS 1234"
        assert txn.amount == Decimal("12.00")
        assert txn.category_id == "habitacao"
        assert txn.account_id == "conta-ordem"

        archive = repo.get_session_archive(session.session_id)
        assert archive.status == "finalized"
        assert archive.persisted_rows == 2
        assert archive.file_name == "jan.csv"
        assert session.status == "finalized"

    def test_closed_session(self, service):
        session = service.start_session("tester", CONTINENTE_CSV)
        service.finalize(session.session_id)
        with pytest.raises(SessionClosed):
            service.get_session(session.session_id)
        with pytest.raises(SessionClosed):
            service.finalize(session.session_id)

    def test_failure_keeps_session_open(self, service, repo, monkeypatch):
        session = service.start_session("tester", CONTINENTE_CSV)
        service.review(session.session_id, 1, Decision.accepted())

        def broken(txns):
            raise PersistenceFailure("persist failed")

        monkeypatch.setattr(repo, "persist_transactions", broken)
        with pytest.raises(PersistenceFailure):
            service.finalize(session.session_id)
        assert service.get_session(session.session_id) is session

    def test_archive_failure_is_logged(self, service, repo, monkeypatch, caplog):
        session = service.start_session("tester", CONTINENTE_CSV)

        def broken(archive):
            raise PersistenceFailure("archive failed")

        monkeypatch.setattr(repo, "archive_session", broken)
        service.cancel(session.session_id)
        assert "Could not archive session" in caplog.text


class TestCancel:
    def test_cancel(self, service, repo):
        session = service.start_session("tester", MIXED_CSV)
        service.review(session.session_id, 1, Decision.accepted())
        stats = service.cancel(session.session_id)

        assert stats.imported == 3
        assert stats.accepted == 1
        assert stats.low_confidence == 1
        assert stats.avg_confidence == pytest.approx(0.5)
        assert repo.find_in_window("tester", date(2024, 1, 15), Decimal("45.67")) == []
        assert repo.get_session_archive(session.session_id).status == "cancelled"
        with pytest.raises(SessionClosed):
            service.get_session(session.session_id)

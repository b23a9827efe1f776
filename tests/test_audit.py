import sqlite3

from pdf_converter import db
from pdf_converter.audit import AuditLogger
from pdf_converter.ledger import UsageLedger
from pdf_converter.states import AuditAction


def test_history_filters_by_action() -> None:
    audit = AuditLogger()
    audit.record("acct", AuditAction.PAGE_PROCESSED, 2, 0, 2, "free", batch_file_id="f1")
    audit.record("acct", AuditAction.LIMIT_EXCEEDED, 5, 2, 2, "free", batch_file_id="f2")
    audit.record("other", AuditAction.PAGE_PROCESSED, 1, 0, 1, "free")

    everything = audit.history(account_id="acct")
    assert [r.action for r in everything] == ["limit_exceeded", "page_processed"]

    limited = audit.history(account_id="acct", action=AuditAction.LIMIT_EXCEEDED)
    assert len(limited) == 1
    assert limited[0].batch_file_id == "f2"


def test_failed_write_is_logged_not_raised(monkeypatch, caplog) -> None:
    def broken(**kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "insert_audit_record", broken)

    assert AuditLogger().record("acct", AuditAction.PAGE_PROCESSED, 1, 0, 1, "free") is None
    assert "audit write failed" in caplog.text


def test_commit_succeeds_when_audit_write_fails(monkeypatch) -> None:
    ledger = UsageLedger()
    db.ensure_account("acct")
    r = ledger.reserve("acct", 2)

    def broken(**kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "insert_audit_record", broken)
    ledger.commit(r)

    assert db.get_reservation(r.reservation_id)["status"] == "committed"
    assert db.get_account("acct")["free_pages_remaining"] == 8

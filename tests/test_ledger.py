from datetime import datetime, timedelta, timezone

import pytest

from pdf_converter import db
from pdf_converter.errors import QuotaExceededError, ValidationError
from pdf_converter.ledger import UsageLedger, rollover
from pdf_converter.states import AuditAction, Plan


def _account(account_id: str = "acct", **fields) -> str:
    db.ensure_account(account_id)
    if fields:
        db.set_account_fields(account_id, **fields)
    return account_id


def _counters(account_id: str) -> tuple:
    a = db.get_account(account_id)
    return (
        a["free_pages_remaining"],
        a["pages_used_this_period"],
        a["credit_balance_cents"],
        a["pages_used"],
    )


def _page_processed(account_id: str) -> list[dict]:
    return db.list_audit_records(account_id=account_id, action=AuditAction.PAGE_PROCESSED.value)


def test_new_account_gets_free_pages() -> None:
    snap = UsageLedger().snapshot(_account())
    assert snap.free_pages_remaining == 10
    assert snap.subscription_plan == Plan.FREE
    assert snap.monthly_page_cap == 0
    assert snap.affordable_pages == 10


def test_reserve_debits_free_then_subscription_then_credit() -> None:
    acct = _account(free_pages_remaining=2, credit_balance_cents=100, subscription_plan="pro", pages_used_this_period=995)
    r = UsageLedger().reserve(acct, 10)

    assert (r.free_pages, r.subscription_pages, r.credit_pages) == (2, 5, 3)
    assert r.credit_cents == 36
    assert r.status == "reserved"
    assert _counters(acct) == (0, 1000, 64, 10)


def test_quota_exceeded_leaves_account_untouched() -> None:
    acct = _account(free_pages_remaining=0, credit_balance_cents=11)
    before = db.get_account(acct)

    with pytest.raises(QuotaExceededError) as exc_info:
        UsageLedger().reserve(acct, 1)

    assert exc_info.value.snapshot.affordable_pages == 0
    assert exc_info.value.snapshot.credit_balance_cents == 11
    body = exc_info.value.to_dict()
    assert body["code"] == "LIMIT_EXCEEDED"
    assert body["usage"]["account_id"] == acct
    after = db.get_account(acct)
    assert after["version"] == before["version"]
    assert _counters(acct) == (0, 0, 11, 0)


def test_reserve_rejects_non_positive_pages() -> None:
    with pytest.raises(ValidationError):
        UsageLedger().reserve(_account(), 0)


def test_commit_is_idempotent_and_audited_once() -> None:
    ledger = UsageLedger()
    acct = _account()
    r = ledger.reserve(acct, 3, batch_file_id="file-1")

    ledger.commit(r)
    ledger.commit(r)

    assert db.get_reservation(r.reservation_id)["status"] == "committed"
    records = _page_processed(acct)
    assert len(records) == 1
    assert records[0]["pages_count"] == 3
    assert records[0]["pages_before"] == 0
    assert records[0]["pages_after"] == 3
    assert records[0]["batch_file_id"] == "file-1"
    assert _counters(acct) == (7, 0, 0, 3)


def test_release_is_exact_inverse_of_reserve() -> None:
    ledger = UsageLedger()
    acct = _account(free_pages_remaining=1, credit_balance_cents=50, subscription_plan="pro", pages_used_this_period=998)
    before = _counters(acct)

    r = ledger.reserve(acct, 5)
    assert _counters(acct) != before
    ledger.release(r)

    assert _counters(acct) == before
    assert db.get_reservation(r.reservation_id)["status"] == "released"


def test_release_twice_refunds_once() -> None:
    ledger = UsageLedger()
    acct = _account(free_pages_remaining=0, credit_balance_cents=120)
    r = ledger.reserve(acct, 4)

    ledger.release(r)
    ledger.release(r.reservation_id)

    assert _counters(acct) == (0, 0, 120, 0)


def test_commit_after_release_is_noop() -> None:
    ledger = UsageLedger()
    acct = _account()
    r = ledger.reserve(acct, 2)
    ledger.release(r)

    ledger.commit(r)

    assert db.get_reservation(r.reservation_id)["status"] == "released"
    assert _page_processed(acct) == []
    assert _counters(acct) == (10, 0, 0, 0)


def test_commit_refunds_unused_pages_from_credit_first() -> None:
    ledger = UsageLedger()
    acct = _account(free_pages_remaining=2, credit_balance_cents=100)
    r = ledger.reserve(acct, 5)
    assert _counters(acct) == (0, 0, 64, 5)

    ledger.commit(r, actual_pages=3)

    row = db.get_reservation(r.reservation_id)
    assert row["pages"] == 3
    assert row["free_pages"] == 2
    assert row["credit_pages"] == 1
    assert row["credit_cents"] == 12
    assert _counters(acct) == (0, 0, 88, 3)
    assert _page_processed(acct)[0]["pages_count"] == 3


def test_commit_charges_extra_pages() -> None:
    ledger = UsageLedger()
    acct = _account()
    r = ledger.reserve(acct, 2)

    ledger.commit(r, actual_pages=4)

    assert db.get_reservation(r.reservation_id)["free_pages"] == 4
    assert _counters(acct) == (6, 0, 0, 4)


def test_commit_extra_pages_unaffordable() -> None:
    ledger = UsageLedger()
    acct = _account(free_pages_remaining=0, credit_balance_cents=12)
    r = ledger.reserve(acct, 1)

    with pytest.raises(QuotaExceededError):
        ledger.commit(r, actual_pages=3)

    assert db.get_reservation(r.reservation_id)["status"] == "reserved"
    assert _counters(acct) == (0, 0, 0, 1)
    assert _page_processed(acct) == []


def test_rollover_moves_period_forward() -> None:
    now = datetime(2026, 3, 15, tzinfo=timezone.utc)
    account = {"period_end": datetime(2026, 2, 1, tzinfo=timezone.utc).isoformat(), "pages_used_this_period": 40}

    changes = rollover(account, now)

    assert changes["pages_used_this_period"] == 0
    assert datetime.fromisoformat(changes["period_end"]) > now
    assert rollover({"period_end": (now + timedelta(days=1)).isoformat()}, now) == {}


def test_reserve_applies_rollover_for_pro_plan() -> None:
    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    acct = _account(
        free_pages_remaining=0,
        subscription_plan="pro",
        pages_used_this_period=1000,
        period_end=past,
    )

    r = UsageLedger().reserve(acct, 5)

    assert r.subscription_pages == 5
    a = db.get_account(acct)
    assert a["pages_used_this_period"] == 5
    assert datetime.fromisoformat(a["period_end"]) > datetime.now(timezone.utc)


def test_subscription_refund_skipped_after_period_change() -> None:
    ledger = UsageLedger()
    acct = _account(free_pages_remaining=0, subscription_plan="pro")
    r = ledger.reserve(acct, 4)
    future = (datetime.now(timezone.utc) + timedelta(days=60)).isoformat()
    db.set_account_fields(acct, pages_used_this_period=0, period_end=future)

    ledger.release(r)

    assert db.get_account(acct)["pages_used_this_period"] == 0


def test_change_plan_writes_audit_record() -> None:
    ledger = UsageLedger()
    acct = _account(pages_used_this_period=3)

    snap = ledger.change_plan(acct, Plan.PRO)

    assert snap.subscription_plan == Plan.PRO
    assert snap.monthly_page_cap == 1000
    assert snap.subscription_pages_remaining == 1000
    records = ledger.audit.history(account_id=acct, action=AuditAction.SUBSCRIPTION_CHANGED)
    assert len(records) == 1
    assert records[0].note == "free -> pro"
    assert records[0].pages_before == 3


def test_change_plan_rejects_bad_period_end() -> None:
    with pytest.raises(ValidationError):
        UsageLedger().change_plan(_account(), Plan.PRO, period_end="next tuesday")


def test_top_up() -> None:
    ledger = UsageLedger()
    snap = ledger.top_up("fresh", 240)
    assert snap.credit_balance_cents == 240
    assert snap.affordable_pages == 10 + 20
    with pytest.raises(ValidationError):
        ledger.top_up("fresh", 0)


def test_commit_overrun_rolls_over_expired_period() -> None:
    acct = _account(subscription_plan="pro", free_pages_remaining=0, credit_balance_cents=0)
    ledger = UsageLedger()
    r = ledger.reserve(acct, 2)
    assert r.subscription_pages == 2

    expired = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    db.set_account_fields(acct, pages_used_this_period=1000, period_end=expired)

    ledger.commit(r, actual_pages=4)

    account = db.get_account(acct)
    assert account["pages_used_this_period"] == 2
    assert datetime.fromisoformat(account["period_end"]) > datetime.now(timezone.utc)
    row = db.get_reservation(r.reservation_id)
    assert row["status"] == "committed"
    assert row["subscription_pages"] == 4
    assert row["pages"] == 4

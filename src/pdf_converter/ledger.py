"""Concurrency-safe page accounting.

``UsageLedger`` is the only writer of an account's consumption counters.
Every debit goes through a version-checked update of the account row, so
two racing reservations can never both spend the same allowance. Calls for
one account are additionally serialized in-process; different accounts
never share a lock.
"""

import logging
import threading
import weakref
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from pdf_converter import db
from pdf_converter.audit import AuditLogger
from pdf_converter.config import settings
from pdf_converter.errors import ConcurrencyConflictError, NotFoundError, QuotaExceededError, ValidationError
from pdf_converter.pricing import affordable_pages, price, split_refund
from pdf_converter.schemas import Reservation, UsageSnapshot
from pdf_converter.states import AuditAction, Plan, ReservationStatus

logger = logging.getLogger(__name__)


def monthly_cap(plan: str) -> int:
    return settings.pro_monthly_pages if Plan(plan) == Plan.PRO else 0


def subscription_remaining(account: dict) -> int:
    return max(monthly_cap(account["subscription_plan"]) - int(account["pages_used_this_period"]), 0)


def rollover(account: dict, now: datetime | None = None) -> dict:
    """Counter changes needed to move ``account`` into the current billing period."""
    now = now or datetime.now(timezone.utc)
    period_end = datetime.fromisoformat(account["period_end"])
    if now < period_end:
        return {}
    step = timedelta(days=settings.billing_period_days)
    while period_end <= now:
        period_end += step
    return {"pages_used_this_period": 0, "period_end": period_end.isoformat()}


def build_snapshot(account: dict) -> UsageSnapshot:
    sub_left = subscription_remaining(account)
    return UsageSnapshot(
        account_id=account["account_id"],
        subscription_plan=account["subscription_plan"],
        free_pages_remaining=int(account["free_pages_remaining"]),
        credit_balance_cents=int(account["credit_balance_cents"]),
        pages_used_this_period=int(account["pages_used_this_period"]),
        monthly_page_cap=monthly_cap(account["subscription_plan"]),
        subscription_pages_remaining=sub_left,
        pages_used_total=int(account["pages_used"]),
        period_end=account["period_end"],
        cost_per_page_cents=settings.cost_per_page_cents,
        affordable_pages=affordable_pages(
            int(account["free_pages_remaining"]),
            int(account["credit_balance_cents"]),
            settings.cost_per_page_cents,
            sub_left,
        ),
    )


class UsageLedger:
    def __init__(self, audit: AuditLogger | None = None) -> None:
        self.audit = audit or AuditLogger()
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def _account(self, account_id: str) -> dict:
        account = db.get_account(account_id)
        if not account:
            raise NotFoundError(f"account {account_id} not found")
        return account

    def snapshot(self, account_id: str) -> UsageSnapshot:
        """Read-only view. Never feed this back into a reserve decision."""
        account = self._account(account_id)
        return build_snapshot({**account, **rollover(account)})

    def reserve(self, account_id: str, page_count: int, batch_file_id: str | None = None) -> Reservation:
        if page_count <= 0:
            raise ValidationError("page_count must be > 0")

        with self._lock_for(account_id):
            for attempt in range(1, settings.ledger_cas_attempts + 1):
                account = self._account(account_id)
                counters = rollover(account)
                view = {**account, **counters}
                quote = price(
                    page_count,
                    int(view["free_pages_remaining"]),
                    int(view["credit_balance_cents"]),
                    settings.cost_per_page_cents,
                    subscription_remaining(view),
                )
                if not quote.affordable:
                    raise QuotaExceededError(
                        f"{page_count} pages cost {quote.total_cost_cents} cents, "
                        f"balance is {view['credit_balance_cents']}",
                        build_snapshot(view),
                    )

                counters.update(
                    free_pages_remaining=int(view["free_pages_remaining"]) - quote.free_pages_used,
                    pages_used_this_period=int(view["pages_used_this_period"]) + quote.subscription_pages_used,
                    credit_balance_cents=int(view["credit_balance_cents"]) - quote.total_cost_cents,
                    pages_used=int(view["pages_used"]) + page_count,
                )
                reservation = {
                    "reservation_id": str(uuid4()),
                    "account_id": account_id,
                    "batch_file_id": batch_file_id,
                    "status": ReservationStatus.RESERVED.value,
                    "pages": page_count,
                    "free_pages": quote.free_pages_used,
                    "subscription_pages": quote.subscription_pages_used,
                    "credit_pages": quote.paid_pages,
                    "credit_cents": quote.total_cost_cents,
                    "pages_before": int(view["pages_used"]),
                    "subscription_plan": view["subscription_plan"],
                    "period_end": view["period_end"],
                    "created_at": datetime.now(timezone.utc).isoformat(),
                }
                if db.reserve_pages(account_id, int(account["version"]), counters, reservation):
                    return Reservation(**reservation)
                logger.info("reserve lost version race: account=%s attempt=%s", account_id, attempt)

        raise ConcurrencyConflictError(f"could not reserve pages for account {account_id}")

    def commit(self, reservation: Reservation | str, actual_pages: int | None = None) -> None:
        """Finalize a reservation, settling on ``actual_pages`` when given.

        Committing an already settled reservation is a no-op. If the actual
        page count exceeds the reservation and the extra pages are not
        affordable, ``QuotaExceededError`` is raised and nothing changes.
        """
        reservation_id = reservation if isinstance(reservation, str) else reservation.reservation_id
        if actual_pages is not None and actual_pages < 0:
            raise ValidationError("actual_pages must be >= 0")

        row = db.get_reservation(reservation_id)
        if not row:
            raise NotFoundError(f"reservation {reservation_id} not found")

        with self._lock_for(row["account_id"]):
            for _ in range(settings.ledger_cas_attempts):
                row = db.get_reservation(reservation_id)
                if row["status"] != ReservationStatus.RESERVED.value:
                    logger.info("commit skipped, reservation %s is %s", reservation_id, row["status"])
                    return

                reserved = int(row["pages"])
                actual = reserved if actual_pages is None else actual_pages
                breakdown = {"pages": actual}
                counters = None
                version = None

                if actual != reserved:
                    stored = self._account(row["account_id"])
                    version = int(stored["version"])
                    counters = rollover(stored)
                    account = {**stored, **counters}
                    same_period = account["period_end"] == row["period_end"]
                    if actual < reserved:
                        free, sub, credit = split_refund(
                            int(row["free_pages"]),
                            int(row["subscription_pages"]),
                            int(row["credit_pages"]),
                            reserved - actual,
                        )
                        credit_cents = int(row["credit_cents"]) * credit // int(row["credit_pages"]) if credit else 0
                        breakdown.update(
                            free_pages=int(row["free_pages"]) - free,
                            subscription_pages=int(row["subscription_pages"]) - sub,
                            credit_pages=int(row["credit_pages"]) - credit,
                            credit_cents=int(row["credit_cents"]) - credit_cents,
                        )
                        counters.update({
                            "free_pages_remaining": int(account["free_pages_remaining"]) + free,
                            "credit_balance_cents": int(account["credit_balance_cents"]) + credit_cents,
                            "pages_used": max(int(account["pages_used"]) - (reserved - actual), 0),
                        })
                        if same_period:
                            counters["pages_used_this_period"] = max(int(account["pages_used_this_period"]) - sub, 0)
                    else:
                        extra = actual - reserved
                        quote = price(
                            extra,
                            int(account["free_pages_remaining"]),
                            int(account["credit_balance_cents"]),
                            settings.cost_per_page_cents,
                            subscription_remaining(account),
                        )
                        if not quote.affordable:
                            raise QuotaExceededError(
                                f"{extra} pages over the reservation are not affordable",
                                build_snapshot(account),
                            )
                        breakdown.update(
                            free_pages=int(row["free_pages"]) + quote.free_pages_used,
                            subscription_pages=int(row["subscription_pages"]) + quote.subscription_pages_used,
                            credit_pages=int(row["credit_pages"]) + quote.paid_pages,
                            credit_cents=int(row["credit_cents"]) + quote.total_cost_cents,
                        )
                        counters.update({
                            "free_pages_remaining": int(account["free_pages_remaining"]) - quote.free_pages_used,
                            "pages_used_this_period": int(account["pages_used_this_period"])
                            + quote.subscription_pages_used,
                            "credit_balance_cents": int(account["credit_balance_cents"]) - quote.total_cost_cents,
                            "pages_used": int(account["pages_used"]) + extra,
                        })

                outcome = db.commit_reservation(reservation_id, breakdown, row["account_id"], version, counters)
                if outcome == "settled":
                    return
                if outcome == "conflict":
                    continue

                self.audit.record(
                    account_id=row["account_id"],
                    action=AuditAction.PAGE_PROCESSED,
                    pages_count=actual,
                    pages_before=int(row["pages_before"]),
                    pages_after=int(row["pages_before"]) + actual,
                    subscription_plan=row["subscription_plan"],
                    batch_file_id=row["batch_file_id"],
                    reservation_id=reservation_id,
                )
                return

        raise ConcurrencyConflictError(f"could not commit reservation {reservation_id}")

    def release(self, reservation: Reservation | str) -> None:
        """Hand a reserved debit back to the buckets it came from. Idempotent."""
        reservation_id = reservation if isinstance(reservation, str) else reservation.reservation_id
        row = db.get_reservation(reservation_id)
        if not row:
            raise NotFoundError(f"reservation {reservation_id} not found")
        with self._lock_for(row["account_id"]):
            if not db.release_reservation(reservation_id):
                logger.info("release skipped, reservation %s already settled", reservation_id)

    def top_up(self, account_id: str, amount_cents: int) -> UsageSnapshot:
        if amount_cents <= 0:
            raise ValidationError("amount_cents must be > 0")
        db.ensure_account(account_id)
        with self._lock_for(account_id):
            db.add_credit(account_id, amount_cents)
        return self.snapshot(account_id)

    def change_plan(self, account_id: str, plan: Plan, period_end: str | None = None) -> UsageSnapshot:
        """Switch plans and start a fresh billing period."""
        plan = Plan(plan)
        db.ensure_account(account_id)
        if period_end is None:
            period_end = (datetime.now(timezone.utc) + timedelta(days=settings.billing_period_days)).isoformat()
        else:
            try:
                datetime.fromisoformat(period_end)
            except ValueError as exc:
                raise ValidationError(f"invalid period_end: {period_end}") from exc

        with self._lock_for(account_id):
            before = self._account(account_id)
            db.set_account_fields(
                account_id,
                subscription_plan=plan.value,
                pages_used_this_period=0,
                period_end=period_end,
            )

        self.audit.record(
            account_id=account_id,
            action=AuditAction.SUBSCRIPTION_CHANGED,
            pages_count=0,
            pages_before=int(before["pages_used_this_period"]),
            pages_after=0,
            subscription_plan=before["subscription_plan"],
            note=f"{before['subscription_plan']} -> {plan.value}",
        )
        return self.snapshot(account_id)

"""Append-only usage audit trail.

The ledger's own tables are the system of record. Audit rows are a
best-effort secondary trail, so a failed write is logged here and never
propagated to the operation that produced it.
"""

import logging
import sqlite3

from pdf_converter import db
from pdf_converter.schemas import AuditRecord
from pdf_converter.states import AuditAction

logger = logging.getLogger(__name__)


class AuditLogger:
    def record(
        self,
        account_id: str,
        action: AuditAction,
        pages_count: int,
        pages_before: int,
        pages_after: int,
        subscription_plan: str,
        batch_file_id: str | None = None,
        reservation_id: str | None = None,
        note: str | None = None,
    ) -> int | None:
        try:
            return db.insert_audit_record(
                account_id=account_id,
                action=AuditAction(action).value,
                pages_count=pages_count,
                pages_before=pages_before,
                pages_after=pages_after,
                subscription_plan=str(subscription_plan),
                batch_file_id=batch_file_id,
                reservation_id=reservation_id,
                note=note,
            )
        except (sqlite3.Error, OSError):
            logger.exception(
                "audit write failed: account=%s action=%s pages=%s file=%s",
                account_id,
                action,
                pages_count,
                batch_file_id,
            )
            return None

    def history(
        self,
        account_id: str | None = None,
        action: AuditAction | None = None,
        batch_file_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditRecord]:
        rows = db.list_audit_records(
            account_id=account_id,
            action=AuditAction(action).value if action else None,
            batch_file_id=batch_file_id,
            limit=limit,
        )
        return [AuditRecord(**r) for r in rows]

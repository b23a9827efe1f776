import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pdf_converter.config import settings


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _expires_at() -> str:
    return (datetime.now(timezone.utc) + timedelta(hours=settings.retention_hours)).isoformat()


def _conn() -> sqlite3.Connection:
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _has_col(conn: sqlite3.Connection, table: str, col: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == col for r in rows)


def init_db() -> None:
    with _conn() as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
              account_id TEXT PRIMARY KEY,
              subscription_plan TEXT NOT NULL DEFAULT 'free',
              free_pages_remaining INTEGER NOT NULL DEFAULT 0 CHECK (free_pages_remaining >= 0),
              credit_balance_cents INTEGER NOT NULL DEFAULT 0 CHECK (credit_balance_cents >= 0),
              pages_used_this_period INTEGER NOT NULL DEFAULT 0 CHECK (pages_used_this_period >= 0),
              pages_used INTEGER NOT NULL DEFAULT 0,
              period_end TEXT NOT NULL,
              version INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS usage_reservations (
              reservation_id TEXT PRIMARY KEY,
              account_id TEXT NOT NULL,
              batch_file_id TEXT,
              status TEXT NOT NULL DEFAULT 'reserved',
              pages INTEGER NOT NULL,
              free_pages INTEGER NOT NULL DEFAULT 0,
              subscription_pages INTEGER NOT NULL DEFAULT 0,
              credit_pages INTEGER NOT NULL DEFAULT 0,
              credit_cents INTEGER NOT NULL DEFAULT 0,
              pages_before INTEGER NOT NULL DEFAULT 0,
              subscription_plan TEXT NOT NULL,
              period_end TEXT NOT NULL,
              created_at TEXT NOT NULL,
              settled_at TEXT
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS usage_audit_log (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id TEXT NOT NULL,
              action TEXT NOT NULL,
              pages_count INTEGER NOT NULL DEFAULT 0,
              pages_before INTEGER NOT NULL DEFAULT 0,
              pages_after INTEGER NOT NULL DEFAULT 0,
              subscription_plan TEXT NOT NULL,
              batch_file_id TEXT,
              reservation_id TEXT,
              note TEXT,
              created_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS batch_jobs (
              job_id TEXT PRIMARY KEY,
              account_id TEXT NOT NULL,
              name TEXT NOT NULL,
              description TEXT,
              status TEXT NOT NULL DEFAULT 'pending',
              priority INTEGER NOT NULL DEFAULT 5,
              total_files INTEGER NOT NULL DEFAULT 0,
              processed_files INTEGER NOT NULL DEFAULT 0,
              failed_files INTEGER NOT NULL DEFAULT 0,
              skipped_files INTEGER NOT NULL DEFAULT 0,
              estimated_pages INTEGER NOT NULL DEFAULT 0,
              processed_pages INTEGER NOT NULL DEFAULT 0,
              merge_output INTEGER NOT NULL DEFAULT 0,
              merge_format TEXT NOT NULL,
              output_format TEXT NOT NULL DEFAULT 'txt',
              document_type TEXT NOT NULL DEFAULT 'standard',
              error TEXT,
              created_at TEXT NOT NULL,
              started_at TEXT,
              completed_at TEXT,
              updated_at TEXT NOT NULL,
              expires_at TEXT NOT NULL,
              cleaned_at TEXT
            )
            """
        )

        if not _has_col(conn, "batch_jobs", "skipped_files"):
            conn.execute("ALTER TABLE batch_jobs ADD COLUMN skipped_files INTEGER NOT NULL DEFAULT 0")
        if not _has_col(conn, "batch_jobs", "cleaned_at"):
            conn.execute("ALTER TABLE batch_jobs ADD COLUMN cleaned_at TEXT")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS batch_files (
              file_id TEXT PRIMARY KEY,
              job_id TEXT NOT NULL REFERENCES batch_jobs(job_id) ON DELETE CASCADE,
              position INTEGER NOT NULL,
              original_filename TEXT NOT NULL,
              file_size_bytes INTEGER NOT NULL,
              input_path TEXT NOT NULL,
              output_path TEXT,
              estimated_pages INTEGER NOT NULL DEFAULT 1,
              actual_pages INTEGER,
              status TEXT NOT NULL DEFAULT 'pending',
              attempts INTEGER NOT NULL DEFAULT 0,
              reservation_id TEXT,
              error_code TEXT,
              error_message TEXT,
              started_at TEXT,
              completed_at TEXT,
              updated_at TEXT NOT NULL
            )
            """
        )

        if not _has_col(conn, "batch_files", "attempts"):
            conn.execute("ALTER TABLE batch_files ADD COLUMN attempts INTEGER NOT NULL DEFAULT 0")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS batch_outputs (
              output_id TEXT PRIMARY KEY,
              job_id TEXT NOT NULL REFERENCES batch_jobs(job_id) ON DELETE CASCADE,
              merge_format TEXT NOT NULL,
              filename TEXT NOT NULL,
              file_path TEXT NOT NULL,
              file_size_bytes INTEGER NOT NULL,
              sha256 TEXT NOT NULL,
              download_token TEXT UNIQUE NOT NULL,
              expires_at TEXT NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )

        conn.execute("CREATE INDEX IF NOT EXISTS idx_batch_jobs_status ON batch_jobs(status, priority, created_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_batch_files_job ON batch_files(job_id, position)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_account ON usage_audit_log(account_id, action, id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reservations_file ON usage_reservations(batch_file_id)")
        conn.commit()


# -- accounts -----------------------------------------------------------------


def ensure_account(account_id: str) -> None:
    ts = _now()
    period_end = (datetime.now(timezone.utc) + timedelta(days=settings.billing_period_days)).isoformat()
    with _conn() as conn:
        conn.execute(
            """
            INSERT INTO accounts (account_id, free_pages_remaining, period_end, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(account_id) DO NOTHING
            """,
            (account_id, settings.free_pages_default, period_end, ts, ts),
        )
        conn.commit()


def get_account(account_id: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM accounts WHERE account_id=?", (account_id,)).fetchone()
    return dict(row) if row else None


def set_account_fields(account_id: str, **fields: Any) -> None:
    """Unconditional write used by admin tooling and test setup."""
    if not fields:
        return
    cols = [f"{k} = ?" for k in fields]
    values = list(fields.values()) + [_now(), account_id]
    with _conn() as conn:
        conn.execute(
            f"UPDATE accounts SET {', '.join(cols)}, version = version + 1, updated_at = ? WHERE account_id = ?",
            tuple(values),
        )
        conn.commit()


def add_credit(account_id: str, amount_cents: int) -> None:
    with _conn() as conn:
        conn.execute(
            """
            UPDATE accounts
            SET credit_balance_cents = credit_balance_cents + ?, version = version + 1, updated_at = ?
            WHERE account_id = ?
            """,
            (amount_cents, _now(), account_id),
        )
        conn.commit()


def _cas_account(conn: sqlite3.Connection, account_id: str, expected_version: int, counters: dict) -> bool:
    cols = [f"{k} = ?" for k in counters]
    values = list(counters.values()) + [_now(), account_id, expected_version]
    cur = conn.execute(
        f"""
        UPDATE accounts SET {', '.join(cols)}, version = version + 1, updated_at = ?
        WHERE account_id = ? AND version = ?
        """,
        tuple(values),
    )
    return cur.rowcount == 1


# -- reservations -------------------------------------------------------------


def reserve_pages(account_id: str, expected_version: int, counters: dict, reservation: dict) -> bool:
    """Apply ``counters`` to the account and record ``reservation`` atomically.

    Returns False without touching anything if the account row moved past
    ``expected_version``.
    """
    with _conn() as conn:
        if not _cas_account(conn, account_id, expected_version, counters):
            conn.rollback()
            return False
        conn.execute(
            """
            INSERT INTO usage_reservations (
              reservation_id, account_id, batch_file_id, status, pages, free_pages,
              subscription_pages, credit_pages, credit_cents, pages_before,
              subscription_plan, period_end, created_at
            )
            VALUES (?, ?, ?, 'reserved', ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                reservation["reservation_id"],
                account_id,
                reservation.get("batch_file_id"),
                reservation["pages"],
                reservation["free_pages"],
                reservation["subscription_pages"],
                reservation["credit_pages"],
                reservation["credit_cents"],
                reservation["pages_before"],
                reservation["subscription_plan"],
                reservation["period_end"],
                reservation["created_at"],
            ),
        )
        conn.commit()
    return True


def get_reservation(reservation_id: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM usage_reservations WHERE reservation_id=?", (reservation_id,)).fetchone()
    return dict(row) if row else None


def list_reservations(batch_file_id: str) -> list[dict]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM usage_reservations WHERE batch_file_id=? ORDER BY created_at",
            (batch_file_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def commit_reservation(
    reservation_id: str,
    breakdown: dict,
    account_id: str | None = None,
    expected_version: int | None = None,
    counters: dict | None = None,
) -> str:
    """Mark a reservation committed, optionally adjusting the account.

    Returns ``"ok"``, ``"settled"`` when the reservation was no longer in the
    reserved state, or ``"conflict"`` when the account CAS lost a race.
    """
    cols = [f"{k} = ?" for k in breakdown]
    values = list(breakdown.values()) + [_now(), reservation_id]
    with _conn() as conn:
        cur = conn.execute(
            f"""
            UPDATE usage_reservations SET {', '.join(cols)}, status = 'committed', settled_at = ?
            WHERE reservation_id = ? AND status = 'reserved'
            """,
            tuple(values),
        )
        if cur.rowcount != 1:
            conn.rollback()
            return "settled"
        if counters and not _cas_account(conn, account_id, expected_version, counters):
            conn.rollback()
            return "conflict"
        conn.commit()
    return "ok"


def release_reservation(reservation_id: str) -> bool:
    """Return a reserved debit to its buckets. False if already settled."""
    with _conn() as conn:
        cur = conn.execute(
            """
            UPDATE usage_reservations SET status = 'released', settled_at = ?
            WHERE reservation_id = ? AND status = 'reserved'
            """,
            (_now(), reservation_id),
        )
        if cur.rowcount != 1:
            conn.rollback()
            return False
        res = conn.execute("SELECT * FROM usage_reservations WHERE reservation_id=?", (reservation_id,)).fetchone()
        # Subscription pages taken in an earlier billing period are not handed back to the current one.
        conn.execute(
            """
            UPDATE accounts
            SET free_pages_remaining = free_pages_remaining + ?,
                credit_balance_cents = credit_balance_cents + ?,
                pages_used_this_period = CASE WHEN period_end = ?
                  THEN MAX(pages_used_this_period - ?, 0) ELSE pages_used_this_period END,
                pages_used = MAX(pages_used - ?, 0),
                version = version + 1,
                updated_at = ?
            WHERE account_id = ?
            """,
            (
                res["free_pages"],
                res["credit_cents"],
                res["period_end"],
                res["subscription_pages"],
                res["pages"],
                _now(),
                res["account_id"],
            ),
        )
        conn.commit()
    return True


# -- audit --------------------------------------------------------------------


def insert_audit_record(
    account_id: str,
    action: str,
    pages_count: int,
    pages_before: int,
    pages_after: int,
    subscription_plan: str,
    batch_file_id: str | None = None,
    reservation_id: str | None = None,
    note: str | None = None,
) -> int:
    with _conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO usage_audit_log (
              account_id, action, pages_count, pages_before, pages_after,
              subscription_plan, batch_file_id, reservation_id, note, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                account_id,
                action,
                pages_count,
                pages_before,
                pages_after,
                subscription_plan,
                batch_file_id,
                reservation_id,
                note,
                _now(),
            ),
        )
        conn.commit()
    return int(cur.lastrowid)


def list_audit_records(
    account_id: str | None = None,
    action: str | None = None,
    batch_file_id: str | None = None,
    limit: int = 50,
) -> list[dict]:
    clauses: list[str] = []
    values: list[Any] = []
    if account_id is not None:
        clauses.append("account_id = ?")
        values.append(account_id)
    if action is not None:
        clauses.append("action = ?")
        values.append(action)
    if batch_file_id is not None:
        clauses.append("batch_file_id = ?")
        values.append(batch_file_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    values.append(limit)
    with _conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM usage_audit_log {where} ORDER BY id DESC LIMIT ?",
            tuple(values),
        ).fetchall()
    return [dict(r) for r in rows]


# -- batch jobs ---------------------------------------------------------------


def create_job(job: dict, files: list[dict]) -> None:
    ts = _now()
    with _conn() as conn:
        conn.execute(
            """
            INSERT INTO batch_jobs (
              job_id, account_id, name, description, status, priority, total_files,
              estimated_pages, merge_output, merge_format, output_format, document_type,
              created_at, updated_at, expires_at
            )
            VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job["job_id"],
                job["account_id"],
                job["name"],
                job.get("description"),
                job["priority"],
                len(files),
                sum(f["estimated_pages"] for f in files),
                int(job["merge_output"]),
                job["merge_format"],
                job["output_format"],
                job["document_type"],
                ts,
                ts,
                _expires_at(),
            ),
        )
        conn.executemany(
            """
            INSERT INTO batch_files (
              file_id, job_id, position, original_filename, file_size_bytes,
              input_path, estimated_pages, status, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)
            """,
            [
                (
                    f["file_id"],
                    job["job_id"],
                    f["position"],
                    f["original_filename"],
                    f["file_size_bytes"],
                    f["input_path"],
                    f["estimated_pages"],
                    ts,
                )
                for f in files
            ],
        )
        conn.commit()


def get_job(job_id: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM batch_jobs WHERE job_id = ?", (job_id,)).fetchone()
    return dict(row) if row else None


def list_jobs(statuses: tuple[str, ...], limit: int = 100) -> list[dict]:
    marks = ", ".join("?" for _ in statuses)
    with _conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM batch_jobs WHERE status IN ({marks}) ORDER BY priority, created_at LIMIT ?",
            (*statuses, limit),
        ).fetchall()
    return [dict(r) for r in rows]


def list_recent_jobs(limit: int = 100) -> list[dict]:
    with _conn() as conn:
        rows = conn.execute("SELECT * FROM batch_jobs ORDER BY created_at DESC LIMIT ?", (limit,)).fetchall()
    return [dict(r) for r in rows]


def update_job(job_id: str, expected_status: str | None = None, **fields: Any) -> bool:
    cols = ["updated_at = ?"]
    values: list[Any] = [_now()]
    for key, value in fields.items():
        cols.append(f"{key} = ?")
        values.append(value)
    values.append(job_id)
    sql = f"UPDATE batch_jobs SET {', '.join(cols)} WHERE job_id = ?"
    if expected_status is not None:
        sql += " AND status = ?"
        values.append(expected_status)
    with _conn() as conn:
        cur = conn.execute(sql, tuple(values))
        conn.commit()
    return cur.rowcount == 1


def delete_job(job_id: str) -> None:
    with _conn() as conn:
        conn.execute("DELETE FROM batch_jobs WHERE job_id = ?", (job_id,))
        conn.commit()


def file_counts(job_id: str) -> dict:
    with _conn() as conn:
        rows = conn.execute(
            """
            SELECT status, COUNT(*) AS n, COALESCE(SUM(actual_pages), 0) AS pages
            FROM batch_files WHERE job_id = ? GROUP BY status
            """,
            (job_id,),
        ).fetchall()
    counts = {r["status"]: int(r["n"]) for r in rows}
    counts["completed_pages"] = next((int(r["pages"]) for r in rows if r["status"] == "completed"), 0)
    return counts


def get_job_stats() -> dict:
    with _conn() as conn:
        total = conn.execute("SELECT COUNT(*) c FROM batch_jobs").fetchone()["c"]
        completed = conn.execute("SELECT COUNT(*) c FROM batch_jobs WHERE status='completed'").fetchone()["c"]
        failed = conn.execute("SELECT COUNT(*) c FROM batch_jobs WHERE status='failed'").fetchone()["c"]
        cancelled = conn.execute("SELECT COUNT(*) c FROM batch_jobs WHERE status='cancelled'").fetchone()["c"]
        pages = conn.execute("SELECT COALESCE(SUM(processed_pages), 0) p FROM batch_jobs").fetchone()["p"]

    return {
        "job_count": total,
        "completed_count": completed,
        "failed_count": failed,
        "cancelled_count": cancelled,
        "success_rate": round(completed / total, 4) if total else 0.0,
        "processed_pages": int(pages),
    }


def list_expired_jobs() -> list[dict]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM batch_jobs WHERE cleaned_at IS NULL AND expires_at < ?",
            (_now(),),
        ).fetchall()
    return [dict(r) for r in rows]


def mark_job_cleaned(job_id: str) -> None:
    with _conn() as conn:
        conn.execute("UPDATE batch_jobs SET cleaned_at=?, updated_at=? WHERE job_id=?", (_now(), _now(), job_id))
        conn.commit()


# -- batch files --------------------------------------------------------------


def get_file(file_id: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM batch_files WHERE file_id = ?", (file_id,)).fetchone()
    return dict(row) if row else None


def list_files(job_id: str, status: str | None = None) -> list[dict]:
    sql = "SELECT * FROM batch_files WHERE job_id = ?"
    values: list[Any] = [job_id]
    if status is not None:
        sql += " AND status = ?"
        values.append(status)
    with _conn() as conn:
        rows = conn.execute(sql + " ORDER BY position", tuple(values)).fetchall()
    return [dict(r) for r in rows]


def update_file(file_id: str, expected_status: str | None = None, **fields: Any) -> bool:
    cols = ["updated_at = ?"]
    values: list[Any] = [_now()]
    for key, value in fields.items():
        cols.append(f"{key} = ?")
        values.append(value)
    values.append(file_id)
    sql = f"UPDATE batch_files SET {', '.join(cols)} WHERE file_id = ?"
    if expected_status is not None:
        sql += " AND status = ?"
        values.append(expected_status)
    with _conn() as conn:
        cur = conn.execute(sql, tuple(values))
        conn.commit()
    return cur.rowcount == 1


def skip_pending_files(job_id: str, error_code: str, error_message: str) -> int:
    ts = _now()
    with _conn() as conn:
        cur = conn.execute(
            """
            UPDATE batch_files
            SET status='skipped', error_code=?, error_message=?, completed_at=?, updated_at=?
            WHERE job_id=? AND status='pending'
            """,
            (error_code, error_message, ts, ts, job_id),
        )
        conn.commit()
    return cur.rowcount


# -- outputs ------------------------------------------------------------------


def add_output(
    output_id: str,
    job_id: str,
    merge_format: str,
    filename: str,
    file_path: str,
    file_size_bytes: int,
    sha256: str,
    download_token: str,
) -> None:
    with _conn() as conn:
        conn.execute(
            """
            INSERT INTO batch_outputs (
              output_id, job_id, merge_format, filename, file_path, file_size_bytes,
              sha256, download_token, expires_at, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                output_id,
                job_id,
                merge_format,
                filename,
                file_path,
                file_size_bytes,
                sha256,
                download_token,
                _expires_at(),
                _now(),
            ),
        )
        conn.commit()


def list_outputs(job_id: str) -> list[dict]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM batch_outputs WHERE job_id = ? ORDER BY filename",
            (job_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def delete_outputs(job_id: str) -> None:
    with _conn() as conn:
        conn.execute("DELETE FROM batch_outputs WHERE job_id = ?", (job_id,))
        conn.commit()


def get_output_by_token(token: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM batch_outputs WHERE download_token = ?", (token,)).fetchone()
    return dict(row) if row else None

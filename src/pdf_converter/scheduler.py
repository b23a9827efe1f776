"""Batch job orchestration.

A job is a set of files processed independently on a bounded, process-wide
worker pool. Each file reserves its pages before it is sent to the
processing gateway, and commits or releases that reservation when the
gateway answers. Job counters are derived from the file rows under a
per-job lock after every file transition, so concurrent completions cannot
lose updates.
"""

import logging
import secrets
import shutil
import threading
import time
import weakref
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from pdf_converter import db
from pdf_converter.audit import AuditLogger
from pdf_converter.config import settings
from pdf_converter.errors import (
    InvalidTransitionError,
    NoCompletedFilesError,
    NotFoundError,
    PermanentProcessingError,
    ProcessingError,
    QuotaExceededError,
    TransientProcessingError,
    ValidationError,
)
from pdf_converter.gateway import GatewayResult, HttpProcessingGateway
from pdf_converter.ledger import UsageLedger
from pdf_converter.merge import MergeOutputBuilder
from pdf_converter.schemas import BatchFileResponse, BatchJobResponse, JobOptions, Reservation
from pdf_converter.states import (
    AuditAction,
    FileStatus,
    JobStatus,
    MergeFormat,
    ReservationStatus,
    check_file_transition,
    check_job_transition,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BatchJobScheduler:
    def __init__(
        self,
        ledger: UsageLedger | None = None,
        gateway=None,
        merger: MergeOutputBuilder | None = None,
        max_workers: int | None = None,
        sleep=time.sleep,
    ) -> None:
        self.ledger = ledger or UsageLedger()
        self.audit: AuditLogger = self.ledger.audit
        self.gateway = gateway or HttpProcessingGateway()
        self.merger = merger or MergeOutputBuilder()
        self.max_workers = max_workers or settings.worker_pool_size
        self.pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="batch-file")
        self._sleep = sleep
        self._guard = threading.Lock()
        self._in_flight = 0
        self._closed = False
        self._job_locks: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()
        self._futures: dict[str, list[Future]] = {}

    def _lock_for(self, job_id: str) -> threading.RLock:
        with self._guard:
            lock = self._job_locks.get(job_id)
            if lock is None:
                lock = threading.RLock()
                self._job_locks[job_id] = lock
            return lock

    def shutdown(self, wait_for_workers: bool = True) -> None:
        with self._guard:
            self._closed = True
        self.pool.shutdown(wait=wait_for_workers)

    def _claim_slot(self) -> bool:
        with self._guard:
            if self._closed or self._in_flight >= self.max_workers:
                return False
            self._in_flight += 1
            return True

    def _free_slot(self) -> None:
        with self._guard:
            self._in_flight -= 1

    # -- read-only projections -------------------------------------------------

    def _job(self, job_id: str) -> dict:
        job = db.get_job(job_id)
        if not job:
            raise NotFoundError(f"batch job {job_id} not found")
        return job

    def _file(self, file_id: str) -> dict:
        f = db.get_file(file_id)
        if not f:
            raise NotFoundError(f"batch file {file_id} not found")
        return f

    def get_job(self, job_id: str) -> BatchJobResponse:
        job = self._job(job_id)
        job["merge_output"] = bool(job["merge_output"])
        return BatchJobResponse(**job)

    def list_files(self, job_id: str) -> list[BatchFileResponse]:
        self._job(job_id)
        return [BatchFileResponse(**f) for f in db.list_files(job_id)]

    # -- creation ----------------------------------------------------------------

    def create_job(self, account_id: str, files: list[dict], options: JobOptions | None = None) -> BatchJobResponse:
        """Register a job and its files.

        ``files`` items carry ``original_filename``, ``file_size_bytes``,
        ``input_path`` and ``estimated_pages``.
        """
        options = options or JobOptions()
        if not files:
            raise ValidationError("a batch job needs at least one file")
        if len(files) > settings.max_files_per_job:
            raise ValidationError(f"Maximum {settings.max_files_per_job} files allowed per batch job")

        priority = settings.default_priority if options.priority is None else options.priority
        if not settings.min_priority <= priority <= settings.max_priority:
            raise ValidationError(f"Priority must be between {settings.min_priority} and {settings.max_priority}")

        for f in files:
            if int(f["estimated_pages"]) < 1:
                raise ValidationError(f"estimated_pages must be >= 1 for {f['original_filename']}")

        merge_format = options.merge_format
        if merge_format is None:
            merge_format = MergeFormat.COMBINED if options.merge_output else MergeFormat.INDIVIDUAL

        db.ensure_account(account_id)
        job_id = str(uuid4())
        db.create_job(
            {
                "job_id": job_id,
                "account_id": account_id,
                "name": options.name,
                "description": options.description,
                "priority": priority,
                "merge_output": options.merge_output,
                "merge_format": merge_format.value,
                "output_format": options.output_format.value,
                "document_type": options.document_type.value,
            },
            [
                {
                    "file_id": f.get("file_id") or str(uuid4()),
                    "position": i,
                    "original_filename": f["original_filename"],
                    "file_size_bytes": int(f["file_size_bytes"]),
                    "input_path": f["input_path"],
                    "estimated_pages": int(f["estimated_pages"]),
                }
                for i, f in enumerate(files)
            ],
        )
        logger.info("batch job created: job=%s account=%s files=%s", job_id, account_id, len(files))
        return self.get_job(job_id)

    # -- dispatch ----------------------------------------------------------------

    def _cancelled(self, job_id: str) -> bool:
        return self._job(job_id)["status"] == JobStatus.CANCELLED.value

    def dispatch_pending(self) -> int:
        """Dispatch every runnable job, highest priority first."""
        dispatched = 0
        for job in db.list_jobs((JobStatus.PENDING.value, JobStatus.PROCESSING.value)):
            dispatched += self.dispatch_next(job["job_id"])
        return dispatched

    def dispatch_next(self, job_id: str) -> int:
        """Reserve and submit pending files of a job, in submission order.

        Files are handed to the pool only while a worker slot is free; each
        finishing worker calls back into dispatch, so cancellation is seen
        before the next file goes out. A file the account cannot afford
        fails on its own and its siblings keep going. Storage or
        account-level errors abort the pass.
        """
        job = self._job(job_id)
        status = JobStatus(job["status"])
        if status in (JobStatus.CANCELLED, JobStatus.COMPLETED):
            return 0

        dispatched = 0
        with self._lock_for(job_id):
            if status == JobStatus.PENDING:
                check_job_transition(status.value, JobStatus.PROCESSING.value)
                db.update_job(
                    job_id,
                    expected_status=JobStatus.PENDING.value,
                    status=JobStatus.PROCESSING.value,
                    started_at=_now(),
                )

            for f in db.list_files(job_id, status=FileStatus.PENDING.value):
                if self._cancelled(job_id):
                    logger.info("job %s cancelled, stopping dispatch", job_id)
                    break
                if not self._claim_slot():
                    break

                try:
                    reservation = self.ledger.reserve(job["account_id"], int(f["estimated_pages"]), f["file_id"])
                except QuotaExceededError as exc:
                    self._free_slot()
                    self._limit_exceeded(job["account_id"], f, int(f["estimated_pages"]), exc)
                    continue
                except Exception:
                    self._free_slot()
                    raise

                try:
                    check_file_transition(f["status"], FileStatus.PROCESSING.value)
                    moved = db.update_file(
                        f["file_id"],
                        expected_status=FileStatus.PENDING.value,
                        status=FileStatus.PROCESSING.value,
                        reservation_id=reservation.reservation_id,
                        attempts=int(f["attempts"]) + 1,
                        started_at=_now(),
                        error_code=None,
                        error_message=None,
                    )
                    if moved:
                        future = self.pool.submit(self._run_file, f["file_id"], reservation)
                except Exception:
                    self._free_slot()
                    self.ledger.release(reservation)
                    self._undo_dispatch(f)
                    raise
                if not moved:
                    self._free_slot()
                    self.ledger.release(reservation)
                    continue

                with self._guard:
                    alive = [fut for fut in self._futures.get(job_id, []) if not fut.done()]
                    self._futures[job_id] = alive + [future]
                dispatched += 1

        if dispatched:
            logger.info("job %s: dispatched %s files", job_id, dispatched)
        return dispatched

    def _undo_dispatch(self, f: dict) -> None:
        """Put a file that never reached a worker back in the queue."""
        db.update_file(
            f["file_id"],
            expected_status=FileStatus.PROCESSING.value,
            status=FileStatus.PENDING.value,
            reservation_id=None,
            attempts=int(f["attempts"]),
            started_at=None,
        )

    def _limit_exceeded(self, account_id: str, f: dict, pages: int, exc: QuotaExceededError) -> None:
        snap = exc.snapshot
        self.audit.record(
            account_id=account_id,
            action=AuditAction.LIMIT_EXCEEDED,
            pages_count=pages,
            pages_before=snap.pages_used_total,
            pages_after=snap.pages_used_total,
            subscription_plan=snap.subscription_plan.value,
            batch_file_id=f["file_id"],
            note=exc.message,
        )
        self._finish_file(f["file_id"], FileStatus.FAILED, error_code="LIMIT_EXCEEDED", error_message=exc.message)

    # -- worker ------------------------------------------------------------------

    def _run_file(self, file_id: str, reservation: Reservation) -> None:
        try:
            self._process_file(file_id, reservation)
        finally:
            self._free_slot()
        try:
            self.dispatch_pending()
        except Exception:
            logger.exception("follow-up dispatch failed after file %s", file_id)

    def _process_file(self, file_id: str, reservation: Reservation | None) -> None:
        try:
            while reservation is not None:
                f = self._file(file_id)
                job = self._job(f["job_id"])
                try:
                    data = Path(f["input_path"]).read_bytes()
                    outcome = self.gateway.process(data, job["document_type"], f["original_filename"])
                except ProcessingError as exc:
                    outcome = exc
                except OSError as exc:
                    outcome = ProcessingError(f"input unreadable: {exc}")

                if not self.on_file_result(file_id, reservation, outcome):
                    return
                self._sleep(settings.retry_backoff_sec * int(f["attempts"]))
                reservation = self._reserve_retry(file_id)
        except Exception as exc:
            logger.exception("worker crashed on file %s", file_id)
            if reservation is not None:
                self.ledger.release(reservation)
            f = db.get_file(file_id)
            if f and not FileStatus(f["status"]).terminal:
                self._finish_file(file_id, FileStatus.FAILED, error_code="INTERNAL_ERROR", error_message=str(exc))

    def _reserve_retry(self, file_id: str) -> Reservation | None:
        f = self._file(file_id)
        job = self._job(f["job_id"])
        if job["status"] == JobStatus.CANCELLED.value:
            self._finish_file(file_id, FileStatus.SKIPPED, error_code="CANCELLED", error_message="job cancelled")
            return None
        try:
            reservation = self.ledger.reserve(job["account_id"], int(f["estimated_pages"]), file_id)
        except QuotaExceededError as exc:
            self._limit_exceeded(job["account_id"], f, int(f["estimated_pages"]), exc)
            return None
        db.update_file(
            file_id,
            expected_status=FileStatus.PROCESSING.value,
            reservation_id=reservation.reservation_id,
            attempts=int(f["attempts"]) + 1,
        )
        return reservation

    def on_file_result(self, file_id: str, reservation: Reservation, outcome) -> bool:
        """Apply a gateway outcome to a file. Returns True if the file should be retried.

        Outcomes for a file that is already terminal, or for a reservation
        the file no longer holds, are ignored.
        """
        f = self._file(file_id)
        if FileStatus(f["status"]).terminal or f["reservation_id"] != reservation.reservation_id:
            logger.info("stale result for file %s ignored", file_id)
            return False

        if isinstance(outcome, GatewayResult):
            output_path = self._store_text(f, outcome.text)
            try:
                self.ledger.commit(reservation, outcome.pages_actual)
            except QuotaExceededError as exc:
                self.ledger.release(reservation)
                Path(output_path).unlink(missing_ok=True)
                job = self._job(f["job_id"])
                self._limit_exceeded(job["account_id"], f, outcome.pages_actual, exc)
                return False
            self._finish_file(
                file_id,
                FileStatus.COMPLETED,
                actual_pages=outcome.pages_actual,
                output_path=output_path,
            )
            return False

        self.ledger.release(reservation)

        if isinstance(outcome, TransientProcessingError):
            if self._cancelled(f["job_id"]):
                self._finish_file(file_id, FileStatus.SKIPPED, error_code="CANCELLED", error_message=outcome.message)
                return False
            if int(f["attempts"]) < settings.max_file_attempts:
                logger.warning(
                    "file %s attempt %s failed transiently (%s), retrying",
                    file_id,
                    f["attempts"],
                    outcome.message,
                )
                return True
            self._finish_file(file_id, FileStatus.FAILED, error_code=outcome.reason, error_message=outcome.message)
            return False

        self._finish_file(
            file_id,
            FileStatus.FAILED,
            error_code=PermanentProcessingError.code,
            error_message=str(outcome),
        )
        return False

    def _store_text(self, f: dict, text: str) -> str:
        path = Path(settings.output_dir) / f["job_id"] / "files" / f"{f['file_id']}.txt"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return str(path)

    # -- transitions -------------------------------------------------------------

    def _finish_file(self, file_id: str, status: FileStatus, **fields) -> None:
        f = self._file(file_id)
        job_id = f["job_id"]
        with self._lock_for(job_id):
            current = self._file(file_id)["status"]
            check_file_transition(current, status.value)
            moved = db.update_file(
                file_id,
                expected_status=current,
                status=status.value,
                completed_at=_now(),
                **fields,
            )
            if not moved:
                logger.warning("file %s changed state concurrently, %s not applied", file_id, status.value)
                return
            finished = self._recompute(job_id)
        if finished:
            self._finalize(job_id)

    def _recompute(self, job_id: str) -> bool:
        """Re-derive job counters and status. True when the job just became terminal."""
        with self._lock_for(job_id):
            job = self._job(job_id)
            counts = db.file_counts(job_id)
            completed = counts.get(FileStatus.COMPLETED.value, 0)
            failed = counts.get(FileStatus.FAILED.value, 0)
            skipped = counts.get(FileStatus.SKIPPED.value, 0)
            pending = counts.get(FileStatus.PENDING.value, 0)
            terminal = completed + failed + skipped == int(job["total_files"])

            current = JobStatus(job["status"])
            if current == JobStatus.CANCELLED:
                target = current
            elif terminal:
                target = JobStatus.COMPLETED if failed == 0 else JobStatus.FAILED
            elif current == JobStatus.PENDING and pending == int(job["total_files"]):
                target = current
            else:
                target = JobStatus.PROCESSING
            check_job_transition(current.value, target.value)

            fields = {
                "status": target.value,
                "processed_files": completed,
                "failed_files": failed,
                "skipped_files": skipped,
                "processed_pages": counts["completed_pages"],
                "completed_at": (job["completed_at"] or _now()) if terminal else None,
            }
            db.update_job(job_id, **fields)

        became_terminal = terminal and (target != current or not job["completed_at"])
        if became_terminal:
            logger.info(
                "job %s finished: status=%s completed=%s failed=%s skipped=%s",
                job_id,
                target.value,
                completed,
                failed,
                skipped,
            )
        return became_terminal

    def _finalize(self, job_id: str) -> None:
        try:
            self._deliver(job_id)
        finally:
            with self._guard:
                self._futures.pop(job_id, None)

    def _deliver(self, job_id: str) -> None:
        job = self._job(job_id)
        try:
            artifacts = self.merger.build(job, db.list_files(job_id))
        except NoCompletedFilesError:
            logger.info("job %s has no completed files, no deliverable built", job_id)
            return
        except (NotFoundError, OSError) as exc:
            logger.exception("job %s: building deliverable failed", job_id)
            db.update_job(job_id, error=f"output assembly failed: {exc}")
            return

        db.delete_outputs(job_id)
        for a in artifacts:
            db.add_output(
                output_id=str(uuid4()),
                job_id=job_id,
                merge_format=job["merge_format"],
                filename=a.filename,
                file_path=a.path,
                file_size_bytes=a.file_size_bytes,
                sha256=a.sha256,
                download_token=secrets.token_urlsafe(24),
            )

    # -- user operations ---------------------------------------------------------

    def cancel(self, job_id: str) -> BatchJobResponse:
        with self._lock_for(job_id):
            job = self._job(job_id)
            if JobStatus(job["status"]).terminal:
                raise InvalidTransitionError(f"job {job_id} is already {job['status']}")
            check_job_transition(job["status"], JobStatus.CANCELLED.value)
            db.update_job(job_id, expected_status=job["status"], status=JobStatus.CANCELLED.value)
            skipped = db.skip_pending_files(job_id, "CANCELLED", "job cancelled")
            finished = self._recompute(job_id)
        logger.info("job %s cancelled, %s pending files skipped", job_id, skipped)
        if finished:
            self._finalize(job_id)
        return self.get_job(job_id)

    def retry_file(self, file_id: str) -> BatchFileResponse:
        f = self._file(file_id)
        job_id = f["job_id"]
        with self._lock_for(job_id):
            job = self._job(job_id)
            if job["status"] == JobStatus.CANCELLED.value:
                raise InvalidTransitionError(f"job {job_id} is cancelled")
            f = self._file(file_id)
            check_file_transition(f["status"], FileStatus.PENDING.value)
            if any(r["status"] == ReservationStatus.COMMITTED.value for r in db.list_reservations(file_id)):
                raise InvalidTransitionError(f"file {file_id} already has committed pages")

            db.update_file(
                file_id,
                expected_status=FileStatus.FAILED.value,
                status=FileStatus.PENDING.value,
                attempts=0,
                reservation_id=None,
                error_code=None,
                error_message=None,
                started_at=None,
                completed_at=None,
            )
            if job["status"] == JobStatus.FAILED.value:
                check_job_transition(job["status"], JobStatus.PROCESSING.value)
                db.update_job(job_id, expected_status=JobStatus.FAILED.value, status=JobStatus.PROCESSING.value)
            self._recompute(job_id)
        logger.info("file %s reset for retry", file_id)
        return BatchFileResponse(**self._file(file_id))

    def retry_failed(self, job_id: str) -> int:
        files = db.list_files(self._job(job_id)["job_id"], status=FileStatus.FAILED.value)
        for f in files:
            self.retry_file(f["file_id"])
        return len(files)

    def delete_job(self, job_id: str) -> None:
        with self._lock_for(job_id):
            job = self._job(job_id)
            if not JobStatus(job["status"]).terminal:
                raise InvalidTransitionError(f"job {job_id} is still {job['status']}")
            for f in db.list_files(job_id):
                for r in db.list_reservations(f["file_id"]):
                    if r["status"] == ReservationStatus.RESERVED.value:
                        self.ledger.release(r["reservation_id"])
                Path(f["input_path"]).unlink(missing_ok=True)
            shutil.rmtree(Path(settings.output_dir) / job_id, ignore_errors=True)
            db.delete_job(job_id)
        with self._guard:
            self._futures.pop(job_id, None)
            self._job_locks.pop(job_id, None)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until no file of ``job_id`` is pending or processing.

        Running workers are awaited through their futures; files still queued
        for a free slot are polled from the database.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            with self._guard:
                running = [fut for fut in self._futures.get(job_id, []) if not fut.done()]
            if running:
                _, not_done = wait(running, timeout=remaining)
                if not_done:
                    return False
                continue

            counts = db.file_counts(job_id)
            if not counts.get(FileStatus.PENDING.value) and not counts.get(FileStatus.PROCESSING.value):
                return True
            if remaining == 0:
                return False
            time.sleep(0.02)

"""Background worker: polls ``background_tasks`` and runs jobs.

Run with ``python -m splitscan.worker``. Each thread claims one task at a
time with an atomic UPDATE, runs it, and then marks it done, requeues it
with a backoff delay, or gives up. Tasks left in ``processing`` by a crashed
worker are requeued once their lock is older than the lock timeout.
"""

from __future__ import annotations

import json
import logging
import signal
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from splitscan.core.config import Settings, settings
from splitscan.core.db import SessionLocal
from splitscan.core.logging import setup_logging
from splitscan.models.background_task import BackgroundTask
from splitscan.models.enums import ReceiptStatus, TaskKind, TaskStatus
from splitscan.models.receipt import Receipt
from splitscan.services.cleanup import cleanup_ocr_artifacts
from splitscan.services.file_storage import FileStorage
from splitscan.services.job_result import JobOutcome, JobResult
from splitscan.services.notifier import StatusNotifier, build_notifier
from splitscan.services.ocr_provider import OcrProvider, build_ocr_provider
from splitscan.services.receipt_processor import process_receipt
from splitscan.services.task_queue import enqueue_cleanup

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClaimedTask:
    id: int
    kind: str
    receipt_id: int | None
    receipt_version: int
    payload: str | None
    attempts: int


def requeue_stale(db: Session, now: datetime, lock_timeout_seconds: int) -> int:
    stale_before = now - timedelta(seconds=lock_timeout_seconds)
    result = db.execute(
        update(BackgroundTask)
        .where(
            BackgroundTask.status == TaskStatus.PROCESSING.value,
            BackgroundTask.locked_at.is_not(None),
            BackgroundTask.locked_at <= stale_before,
        )
        .values(
            status=TaskStatus.QUEUED.value,
            locked_at=None,
            locked_by=None,
            run_after=now,
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    db.commit()
    if result.rowcount:
        logger.warning("Requeued %d stale tasks locked before %s", result.rowcount, stale_before)
    return result.rowcount


def claim_task(db: Session, worker_id: str, now: datetime) -> ClaimedTask | None:
    """Atomically take the oldest runnable task, or return None."""
    next_id = (
        select(BackgroundTask.id)
        .where(BackgroundTask.status == TaskStatus.QUEUED.value, BackgroundTask.run_after <= now)
        .order_by(BackgroundTask.run_after, BackgroundTask.id)
        .limit(1)
        .scalar_subquery()
    )
    result = db.execute(
        update(BackgroundTask)
        # status is checked again so two workers racing for the same row cannot both win
        .where(BackgroundTask.id == next_id, BackgroundTask.status == TaskStatus.QUEUED.value)
        .values(
            status=TaskStatus.PROCESSING.value,
            locked_at=now,
            locked_by=worker_id,
            attempts=BackgroundTask.attempts + 1,
            updated_at=now,
        )
        .returning(
            BackgroundTask.id,
            BackgroundTask.kind,
            BackgroundTask.receipt_id,
            BackgroundTask.receipt_version,
            BackgroundTask.payload,
            BackgroundTask.attempts,
        )
        .execution_options(**_NO_SYNC)
    )
    row = result.first()
    result.close()  # sqlite + RETURNING
    db.commit()

    if row is None:
        return None
    return ClaimedTask(
        id=row.id,
        kind=row.kind,
        receipt_id=row.receipt_id,
        receipt_version=row.receipt_version,
        payload=row.payload,
        attempts=row.attempts,
    )


def _finish(db: Session, task_id: int, status: TaskStatus, now: datetime, **values) -> None:
    db.execute(
        update(BackgroundTask)
        .where(BackgroundTask.id == task_id)
        .values(status=status.value, locked_at=None, locked_by=None, updated_at=now, **values)
        .execution_options(**_NO_SYNC)
    )
    db.commit()


def mark_done(db: Session, task_id: int, now: datetime) -> None:
    _finish(db, task_id, TaskStatus.DONE, now)


def mark_error(db: Session, task_id: int, err: str | None, now: datetime) -> None:
    _finish(db, task_id, TaskStatus.ERROR, now, last_error=err)


def reschedule(db: Session, task_id: int, run_after: datetime, err: str | None, now: datetime) -> None:
    _finish(db, task_id, TaskStatus.QUEUED, now, run_after=run_after, last_error=err)


def retry_delay_seconds(attempts: int, delays: Sequence[int]) -> int:
    """Delay before the next try after ``attempts`` failed ones (1-based)."""
    if not delays:
        return 0
    return delays[min(max(attempts, 1), len(delays)) - 1]


class Worker:
    def __init__(
        self,
        *,
        ocr: OcrProvider,
        storage: FileStorage,
        notifier: StatusNotifier,
        session_factory: Callable[[], Session] = SessionLocal,
        cfg: Settings = settings,
        worker_id: str | None = None,
    ):
        self.ocr = ocr
        self.storage = storage
        self.notifier = notifier
        self.session_factory = session_factory
        self.cfg = cfg
        self.worker_id = worker_id or cfg.WORKER_ID
        self._scheduled_day: date | None = None

    def dispatch(self, db: Session, task: ClaimedTask) -> JobResult:
        if task.kind == TaskKind.PROCESS_RECEIPT.value:
            if task.receipt_id is None:
                return JobResult.fatal("process_receipt task has no receipt_id")
            return process_receipt(
                task.receipt_id,
                db,
                ocr=self.ocr,
                storage=self.storage,
                notifier=self.notifier,
                expected_version=task.receipt_version,
                attempt=task.attempts,
            )

        if task.kind == TaskKind.CLEANUP_OCR_ARTIFACTS.value:
            payload = json.loads(task.payload) if task.payload else {}
            days = int(payload.get("older_than_days", self.cfg.OCR_ARTIFACT_RETENTION_DAYS))
            return cleanup_ocr_artifacts(self.storage, days)

        return JobResult.fatal(f"Unknown task kind: {task.kind}")

    def _give_up_receipt(self, db: Session, task: ClaimedTask, detail: str | None) -> None:
        receipt = db.get(Receipt, task.receipt_id)
        if receipt is None or receipt.version != task.receipt_version:
            return

        if receipt.status is not ReceiptStatus.FAILED:
            receipt.status = ReceiptStatus.FAILED
            receipt.error_message = detail
            receipt.processed_at = _utcnow()
            db.add(receipt)
            db.commit()

        self.notifier.processing_complete(receipt, attempt=task.attempts)

    def handle_result(self, db: Session, task: ClaimedTask, result: JobResult, now: datetime) -> None:
        if result.ok:
            mark_done(db, task.id, now)
            logger.info("task=%s kind=%s done (%s)", task.id, task.kind, result.detail or "ok")
            return

        if result.outcome is JobOutcome.RETRYABLE and task.attempts <= self.cfg.TASK_MAX_RETRIES:
            delay = retry_delay_seconds(task.attempts, self.cfg.TASK_RETRY_DELAYS_SECONDS)
            reschedule(db, task.id, now + timedelta(seconds=delay), result.detail, now)
            logger.warning(
                "task=%s kind=%s attempt %d failed, retry %d/%d in %ds: %s",
                task.id, task.kind, task.attempts, task.attempts, self.cfg.TASK_MAX_RETRIES, delay, result.detail,
            )
            return

        mark_error(db, task.id, result.detail, now)
        logger.error(
            "task=%s kind=%s gave up after %d attempts (%s): %s",
            task.id, task.kind, task.attempts, result.outcome.value, result.detail,
        )
        if task.kind == TaskKind.PROCESS_RECEIPT.value and task.receipt_id is not None:
            self._give_up_receipt(db, task, result.detail)

    def run_once(self, now: datetime | None = None) -> bool:
        """Claim and run at most one task. Returns True if a task was run."""
        db = self.session_factory()
        try:
            now = now or _utcnow()
            requeue_stale(db, now, self.cfg.TASK_LOCK_TIMEOUT_SECONDS)

            task = claim_task(db, self.worker_id, now)
            if task is None:
                return False

            logger.info(
                "task=%s kind=%s receipt=%s attempt=%d claimed by %s",
                task.id, task.kind, task.receipt_id, task.attempts, self.worker_id,
            )
            try:
                result = self.dispatch(db, task)
            except Exception as e:
                db.rollback()
                logger.exception("task=%s crashed", task.id)
                result = JobResult.retryable(f"{type(e).__name__}: {e}")

            self.handle_result(db, task, result, _utcnow())
            return True
        finally:
            db.close()

    def schedule_recurring(self, now: datetime | None = None) -> None:
        now = now or _utcnow()
        today = now.date()
        if self._scheduled_day == today or now.hour < self.cfg.CLEANUP_HOUR_UTC:
            return

        db = self.session_factory()
        try:
            enqueue_cleanup(db, today, self.cfg.OCR_ARTIFACT_RETENTION_DAYS)
        finally:
            db.close()
        self._scheduled_day = today

    def run(self, stop: threading.Event) -> None:
        logger.info(
            "worker %s started poll=%ss max_retries=%s lock_timeout=%ss",
            self.worker_id, self.cfg.WORKER_POLL_SECONDS, self.cfg.TASK_MAX_RETRIES,
            self.cfg.TASK_LOCK_TIMEOUT_SECONDS,
        )
        while not stop.is_set():
            try:
                self.schedule_recurring()
                busy = self.run_once()
            except Exception:
                # database hiccup outside a job; keep the thread alive
                logger.exception("worker %s loop error", self.worker_id)
                busy = False
            if not busy:
                stop.wait(self.cfg.WORKER_POLL_SECONDS)
        logger.info("worker %s stopped", self.worker_id)


def main() -> None:
    setup_logging("splitscan-worker")

    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received signal %s, stopping after current tasks", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    ocr = build_ocr_provider(settings)
    storage = FileStorage.from_settings(settings)
    notifier = build_notifier(settings)

    threads = []
    for i in range(max(1, settings.WORKER_CONCURRENCY)):
        worker = Worker(
            ocr=ocr,
            storage=storage,
            notifier=notifier,
            worker_id=f"{settings.WORKER_ID}-{i + 1}",
        )
        t = threading.Thread(target=worker.run, args=(stop,), name=worker.worker_id)
        t.start()
        threads.append(t)

    # join with a timeout so the main thread keeps receiving signals
    while any(t.is_alive() for t in threads):
        for t in threads:
            t.join(timeout=1.0)


if __name__ == "__main__":
    main()

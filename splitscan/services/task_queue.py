from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from splitscan.models.background_task import BackgroundTask
from splitscan.models.enums import TaskKind, TaskStatus
from splitscan.models.receipt import Receipt

logger = logging.getLogger(__name__)


def enqueue_process_receipt(db: Session, receipt: Receipt) -> BackgroundTask:
    """Add a processing task for the receipt's current version.

    Only adds to the session; the caller commits together with the receipt
    so the upload and its job become visible atomically.
    """
    task = BackgroundTask(
        kind=TaskKind.PROCESS_RECEIPT.value,
        receipt_id=receipt.id,
        receipt_version=receipt.version,
        status=TaskStatus.QUEUED.value,
        attempts=0,
        run_after=datetime.now(timezone.utc),
    )
    db.add(task)
    return task


def cleanup_dedupe_key(day: date) -> str:
    return f"{TaskKind.CLEANUP_OCR_ARTIFACTS.value}:{day.isoformat()}"


def enqueue_cleanup(db: Session, day: date, retention_days: int) -> BackgroundTask | None:
    """Enqueue the cleanup task for ``day`` unless one already exists."""
    key = cleanup_dedupe_key(day)
    if db.query(BackgroundTask.id).filter(BackgroundTask.dedupe_key == key).first():
        return None

    task = BackgroundTask(
        kind=TaskKind.CLEANUP_OCR_ARTIFACTS.value,
        receipt_id=None,
        receipt_version=0,
        payload=json.dumps({"older_than_days": retention_days}),
        status=TaskStatus.QUEUED.value,
        attempts=0,
        run_after=datetime.now(timezone.utc),
        dedupe_key=key,
    )
    db.add(task)
    try:
        db.commit()
    except IntegrityError:
        # another scheduler got there first
        db.rollback()
        return None

    logger.info("Scheduled OCR artifact cleanup task %s (%s)", task.id, key)
    return task

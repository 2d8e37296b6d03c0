from __future__ import annotations

import logging

from splitscan.services.file_storage import FileStorage
from splitscan.services.job_result import JobResult

logger = logging.getLogger(__name__)


def cleanup_ocr_artifacts(storage: FileStorage, older_than_days: int) -> JobResult:
    """Delete OCR audit artifacts older than the retention window."""
    try:
        deleted = storage.cleanup_old_ocr_artifacts(older_than_days)
    except OSError as e:
        logger.error("OCR artifact cleanup failed: %s", e)
        return JobResult.retryable(f"OCR artifact cleanup failed: {e}")

    logger.info("OCR artifact cleanup removed %d files older than %d days", deleted, older_than_days)
    return JobResult.succeeded(f"deleted {deleted} artifacts")

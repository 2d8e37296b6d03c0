from __future__ import annotations

import logging
import mimetypes
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from splitscan.models.enums import ReceiptStatus
from splitscan.models.receipt import Receipt
from splitscan.models.receipt_item import ReceiptItem
from splitscan.schemas.ocr import OcrResult
from splitscan.services.file_storage import FileStorage
from splitscan.services.job_result import JobResult
from splitscan.services.notifier import StatusNotifier
from splitscan.services.ocr_provider import OcrFailureReason, OcrProvider, OcrResponse
from splitscan.services.text_parser import parse_receipt_text

logger = logging.getLogger(__name__)

# retrying cannot change these outcomes
_NON_RETRYABLE_OCR_FAILURES = {OcrFailureReason.NOT_CONFIGURED, OcrFailureReason.NO_TEXT_FOUND}


class ReceiptImageMissing(Exception):
    pass


class OcrFailed(Exception):
    def __init__(self, response: OcrResponse):
        self.response = response
        super().__init__(response.error_message or "OCR processing failed")

    @property
    def retryable(self) -> bool:
        return self.response.failure_reason not in _NON_RETRYABLE_OCR_FAILURES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_text(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


def _mark_failed(
    db: Session,
    receipt_id: int,
    exc: Exception,
    notifier: StatusNotifier,
    attempt: int,
) -> JobResult:
    message = _error_text(exc)

    receipt = db.get(Receipt, receipt_id)
    if receipt is None:
        # deleted while we were working on it
        return JobResult.fatal(f"Receipt {receipt_id} disappeared during processing: {message}")

    receipt.status = ReceiptStatus.FAILED
    receipt.error_message = message
    receipt.processed_at = _utcnow()
    db.add(receipt)
    db.commit()

    notifier.status_updated(receipt, message, attempt=attempt)

    if isinstance(exc, OcrFailed) and not exc.retryable:
        return JobResult.fatal(message)
    return JobResult.retryable(message)


def process_receipt(
    receipt_id: int,
    db: Session,
    *,
    ocr: OcrProvider,
    storage: FileStorage,
    notifier: StatusNotifier,
    expected_version: int | None = None,
    attempt: int = 1,
) -> JobResult:
    """Run OCR + parsing for one receipt and persist the outcome.

    Status goes Uploaded -> OcrInProgress -> Ready | Failed. Every failure
    after the receipt was loaded is written to the row before returning, so
    callers only ever look at the persisted status and message.
    """
    receipt = db.get(Receipt, receipt_id)
    if receipt is None:
        logger.error("Receipt %s not found, nothing to process", receipt_id)
        return JobResult.fatal(f"Receipt {receipt_id} not found")

    if expected_version is not None and receipt.version != expected_version:
        logger.info(
            "Receipt %s job for version %s superseded by version %s",
            receipt_id, expected_version, receipt.version,
        )
        return JobResult.succeeded(f"superseded by version {receipt.version}")

    receipt.status = ReceiptStatus.OCR_IN_PROGRESS
    receipt.error_message = None
    db.add(receipt)
    db.commit()
    notifier.status_updated(receipt, "OCR processing started", attempt=attempt)

    try:
        image_path = storage.resolve(receipt.image_ref)
        if not image_path.is_file():
            raise ReceiptImageMissing(f"Receipt image not found: {receipt.image_ref}")

        mime, _ = mimetypes.guess_type(image_path.name)
        with image_path.open("rb") as fh:
            ocr_response = ocr.extract_text(fh, mime_type=mime or "image/jpeg")
        if not ocr_response.success:
            raise OcrFailed(ocr_response)

        parsed = parse_receipt_text(ocr_response.raw_text, confidence=ocr_response.confidence)

        receipt.merchant_name = parsed.merchant_name
        receipt.transaction_date = parsed.transaction_date
        receipt.total = parsed.total
        receipt.tax = parsed.tax
        receipt.tip = parsed.tip
        receipt.ocr_confidence = parsed.confidence

        receipt.items.clear()
        for it in parsed.items:
            receipt.items.append(
                ReceiptItem(
                    name=it.name[:255],
                    price=it.price,
                    quantity=it.quantity,
                    line_number=it.line_number,
                )
            )

        receipt.status = ReceiptStatus.READY
        receipt.processed_at = _utcnow()

        audit = OcrResult(raw_text=ocr_response.raw_text, success=True, **parsed.model_dump())
        storage.save_ocr_artifact(receipt.id, audit.model_dump(mode="json"))

        db.add(receipt)
        db.commit()

    except Exception as e:
        db.rollback()
        logger.warning("Receipt %s processing failed (attempt %d): %s", receipt_id, attempt, _error_text(e))
        if not isinstance(e, (OcrFailed, ReceiptImageMissing)):
            logger.exception("Unexpected error while processing receipt %s", receipt_id)
        return _mark_failed(db, receipt_id, e, notifier, attempt)

    logger.info(
        "Receipt %s processed: %d items, confidence %s",
        receipt_id, len(receipt.items), receipt.ocr_confidence,
    )
    notifier.processing_complete(receipt, attempt=attempt)
    return JobResult.succeeded()

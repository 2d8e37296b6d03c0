from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile, status
from sqlalchemy.orm import Session

from splitscan.api.deps import get_current_user, get_db, get_notifier, get_storage
from splitscan.models.enums import ReceiptStatus
from splitscan.models.receipt import Receipt
from splitscan.models.user import User
from splitscan.schemas.receipt import (
    ReceiptOcrOut,
    ReceiptOut,
    ReceiptUploadOut,
    UpdateReceiptItemsIn,
)
from splitscan.services.file_storage import FileStorage, FileValidationError
from splitscan.services.notifier import StatusNotifier
from splitscan.services.task_queue import enqueue_process_receipt

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/receipts", tags=["receipts"])


def _get_owned_receipt(db: Session, receipt_id: int, user: User) -> Receipt:
    # someone else's receipt looks exactly like a missing one
    receipt = (
        db.query(Receipt)
        .filter(Receipt.id == receipt_id, Receipt.user_id == user.id)
        .first()
    )
    if not receipt:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return receipt


@router.post("", response_model=ReceiptUploadOut, status_code=status.HTTP_201_CREATED)
def upload_receipt(
    file: UploadFile | None = File(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: FileStorage = Depends(get_storage),
    notifier: StatusNotifier = Depends(get_notifier),
):
    """Store the image and queue it for OCR. Never waits for OCR itself."""
    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")

    try:
        # one byte past the limit is enough for validate to reject it
        data = file.file.read(storage.max_bytes + 1)
    finally:
        file.file.close()

    try:
        storage.validate(data, file.content_type)
        image_ref = storage.save_image(data)
    except FileValidationError as e:
        logger.info("Upload from user %s rejected: %s", user.id, e)
        raise HTTPException(status_code=400, detail=str(e))

    try:
        receipt = Receipt(user_id=user.id, status=ReceiptStatus.UPLOADED, version=1, image_ref=image_ref)
        db.add(receipt)
        db.flush()  # get receipt.id

        task = enqueue_process_receipt(db, receipt)
        db.commit()
        db.refresh(receipt)
    except Exception:
        db.rollback()
        storage.delete(image_ref)
        raise

    logger.info("Receipt %s uploaded by user %s, job %s queued", receipt.id, user.id, task.id)
    notifier.status_updated(receipt, "Receipt uploaded")

    return ReceiptUploadOut(
        id=receipt.id,
        status=receipt.status,
        image_ref=receipt.image_ref,
        created_at=receipt.created_at,
        job_id=task.id,
    )


@router.get("", response_model=list[ReceiptOut])
def list_receipts(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return (
        db.query(Receipt)
        .filter(Receipt.user_id == user.id)
        .order_by(Receipt.created_at.desc(), Receipt.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )


@router.get("/{receipt_id}", response_model=ReceiptOut)
def get_receipt(
    receipt_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _get_owned_receipt(db, receipt_id, user)


@router.put("/{receipt_id}/items", response_model=ReceiptOut)
def update_receipt_items(
    receipt_id: int,
    payload: UpdateReceiptItemsIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    receipt = _get_owned_receipt(db, receipt_id, user)
    by_id = {it.id: it for it in receipt.items}

    for update in payload.items:
        item = by_id.get(update.id)
        if item is None:
            logger.warning("Receipt %s has no item %s; ignoring update", receipt_id, update.id)
            continue
        item.name = update.name
        item.price = update.price
        item.quantity = update.quantity

    receipt.recompute_total()
    db.add(receipt)
    db.commit()
    db.refresh(receipt)

    logger.info("Receipt %s items updated, total now %s", receipt_id, receipt.total)
    return receipt


@router.delete("/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_receipt(
    receipt_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: FileStorage = Depends(get_storage),
):
    receipt = _get_owned_receipt(db, receipt_id, user)
    image_ref = receipt.image_ref

    db.delete(receipt)
    db.commit()

    storage.delete(image_ref)
    storage.delete_ocr_artifact(receipt_id)
    logger.info("Receipt %s deleted by user %s", receipt_id, user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{receipt_id}/ocr", response_model=ReceiptOcrOut)
def get_receipt_ocr(
    receipt_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: FileStorage = Depends(get_storage),
):
    receipt = _get_owned_receipt(db, receipt_id, user)

    artifact = storage.load_ocr_artifact(receipt.id)
    if artifact is None:
        raise HTTPException(status_code=404, detail="OCR result not available for this receipt")

    return ReceiptOcrOut(
        receipt_id=receipt.id,
        status=receipt.status,
        processed_at=receipt.processed_at,
        confidence=receipt.ocr_confidence,
        raw_ocr_result=artifact,
    )


@router.post("/{receipt_id}/reprocess", response_model=ReceiptOut)
def reprocess_receipt(
    receipt_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: FileStorage = Depends(get_storage),
    notifier: StatusNotifier = Depends(get_notifier),
):
    """
    - increments receipt.version (supersedes in-flight tasks)
    - resets parsed fields + items
    - enqueues a new task for the new version
    """
    receipt = _get_owned_receipt(db, receipt_id, user)

    try:
        receipt.version = (receipt.version or 0) + 1
        receipt.status = ReceiptStatus.UPLOADED
        receipt.error_message = None
        receipt.processed_at = None

        receipt.merchant_name = None
        receipt.transaction_date = None
        receipt.total = None
        receipt.tax = None
        receipt.tip = None
        receipt.ocr_confidence = None
        receipt.items.clear()

        db.add(receipt)
        task = enqueue_process_receipt(db, receipt)
        db.commit()
        db.refresh(receipt)
    except Exception:
        db.rollback()
        raise

    storage.delete_ocr_artifact(receipt.id)
    logger.info("Receipt %s queued for reprocessing as version %s (job %s)", receipt.id, receipt.version, task.id)
    notifier.status_updated(receipt, "Receipt queued for reprocessing")
    return receipt

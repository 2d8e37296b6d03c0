import json
from decimal import Decimal

import pytest

from conftest import FakeOcr, make_image_bytes
from splitscan.models import Receipt, ReceiptItem, ReceiptStatus
from splitscan.services.job_result import JobOutcome
from splitscan.services.ocr_provider import OcrFailureReason
from splitscan.services.receipt_processor import process_receipt

WALMART = "WALMART\n03/15/2024\nMilk 2%  3.99\nBread  2.49\nSubtotal 6.48\nTax 0.45\nTotal 6.93"


@pytest.fixture
def receipt(db, user, storage):
    ref = storage.save_image(make_image_bytes("JPEG"))
    r = Receipt(user_id=user.id, image_ref=ref)
    db.add(r)
    db.commit()
    db.refresh(r)
    return r


def _events(fake_redis):
    return [json.loads(msg) for _, msg in fake_redis.published]


def test_successful_processing(db, receipt, storage, notifier, fake_redis):
    ocr = FakeOcr.returning(WALMART, confidence=0.91)

    result = process_receipt(receipt.id, db, ocr=ocr, storage=storage, notifier=notifier)

    assert result.ok
    db.refresh(receipt)
    assert receipt.status is ReceiptStatus.READY
    assert receipt.merchant_name == "WALMART"
    assert receipt.transaction_date.isoformat() == "2024-03-15"
    assert receipt.total == Decimal("6.93")
    assert receipt.tax == Decimal("0.45")
    assert receipt.ocr_confidence == pytest.approx(0.91)
    assert receipt.processed_at is not None
    assert receipt.error_message is None
    assert [(it.name, it.price, it.line_number) for it in receipt.items] == [
        ("Milk 2%", Decimal("3.99"), 3),
        ("Bread", Decimal("2.49"), 4),
    ]

    artifact = storage.load_ocr_artifact(receipt.id)
    assert artifact["success"] is True
    assert artifact["raw_text"] == WALMART
    assert len(artifact["items"]) == 2

    events = _events(fake_redis)
    assert [e["event"] for e in events] == ["ReceiptStatusUpdated", "ReceiptProcessed"]
    assert events[0]["data"]["status"] == "OcrInProgress"
    assert events[1]["data"]["status"] == "Ready"
    assert events[1]["data"]["item_count"] == 2
    assert all(ch == f"receipts:receipt:{receipt.id}" for ch, _ in fake_redis.published)


def test_items_are_replaced_on_second_run(db, receipt, storage, notifier):
    process_receipt(receipt.id, db, ocr=FakeOcr.returning(WALMART), storage=storage, notifier=notifier)
    process_receipt(receipt.id, db, ocr=FakeOcr.returning("Cafe\nLatte 4.50"), storage=storage, notifier=notifier)

    db.refresh(receipt)
    assert [it.name for it in receipt.items] == ["Latte"]
    assert db.query(ReceiptItem).count() == 1


def test_missing_receipt_is_fatal_without_ocr_call(db, storage, notifier, fake_redis):
    ocr = FakeOcr.returning(WALMART)

    result = process_receipt(424242, db, ocr=ocr, storage=storage, notifier=notifier)

    assert result.outcome is JobOutcome.FATAL
    assert ocr.calls == []
    assert fake_redis.published == []


def test_superseded_version_is_a_noop(db, receipt, storage, notifier, fake_redis):
    receipt.version = 2
    db.commit()
    ocr = FakeOcr.returning(WALMART)

    result = process_receipt(receipt.id, db, ocr=ocr, storage=storage, notifier=notifier, expected_version=1)

    assert result.ok
    assert ocr.calls == []
    db.refresh(receipt)
    assert receipt.status is ReceiptStatus.UPLOADED
    assert fake_redis.published == []


def test_missing_image_fails_without_ocr_call(db, receipt, storage, notifier, fake_redis):
    storage.delete(receipt.image_ref)
    ocr = FakeOcr.returning(WALMART)

    result = process_receipt(receipt.id, db, ocr=ocr, storage=storage, notifier=notifier)

    assert result.outcome is JobOutcome.RETRYABLE
    assert ocr.calls == []
    db.refresh(receipt)
    assert receipt.status is ReceiptStatus.FAILED
    assert receipt.error_message == f"Receipt image not found: {receipt.image_ref}"
    assert receipt.processed_at is not None

    last = _events(fake_redis)[-1]
    assert last["event"] == "ReceiptStatusUpdated"
    assert last["data"]["status"] == "Failed"
    assert last["data"]["message"] == receipt.error_message


@pytest.mark.parametrize(
    "reason,outcome",
    [
        (OcrFailureReason.NOT_CONFIGURED, JobOutcome.FATAL),
        (OcrFailureReason.NO_TEXT_FOUND, JobOutcome.FATAL),
        (OcrFailureReason.PROVIDER_ERROR, JobOutcome.RETRYABLE),
    ],
)
def test_ocr_failures(db, receipt, storage, notifier, reason, outcome):
    ocr = FakeOcr.failing(reason, "provider said no")

    result = process_receipt(receipt.id, db, ocr=ocr, storage=storage, notifier=notifier)

    assert result.outcome is outcome
    assert result.detail == "provider said no"
    db.refresh(receipt)
    assert receipt.status is ReceiptStatus.FAILED
    assert receipt.error_message == "provider said no"
    assert receipt.items == []
    assert storage.load_ocr_artifact(receipt.id) is None


def test_unexpected_error_is_retryable_and_rolled_back(db, receipt, storage, notifier, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("parser exploded")

    monkeypatch.setattr("splitscan.services.receipt_processor.parse_receipt_text", boom)

    result = process_receipt(receipt.id, db, ocr=FakeOcr.returning(WALMART), storage=storage, notifier=notifier)

    assert result.outcome is JobOutcome.RETRYABLE
    db.refresh(receipt)
    assert receipt.status is ReceiptStatus.FAILED
    assert receipt.error_message == "parser exploded"
    assert receipt.merchant_name is None


def test_retry_clears_previous_error(db, receipt, storage, notifier, fake_redis):
    process_receipt(
        receipt.id, db, ocr=FakeOcr.failing(OcrFailureReason.PROVIDER_ERROR), storage=storage, notifier=notifier
    )

    result = process_receipt(
        receipt.id, db, ocr=FakeOcr.returning(WALMART), storage=storage, notifier=notifier, attempt=2
    )

    assert result.ok
    db.refresh(receipt)
    assert receipt.status is ReceiptStatus.READY
    assert receipt.error_message is None
    assert _events(fake_redis)[-1]["data"]["attempt"] == 2

import json

import redis

from conftest import FakeRedis
from splitscan.core.config import Settings
from splitscan.models import Receipt, ReceiptItem, ReceiptStatus
from splitscan.services.notifier import StatusNotifier, build_notifier, receipt_channel


def _receipt(**kw):
    return Receipt(id=5, user_id=1, image_ref="/uploads/x.jpg", status=ReceiptStatus.OCR_IN_PROGRESS, version=2, **kw)


def test_status_updated_payload():
    fake = FakeRedis()

    StatusNotifier(fake).status_updated(_receipt(), "OCR processing started", attempt=2)

    channel, raw = fake.published[0]
    assert channel == receipt_channel(5) == "receipts:receipt:5"
    msg = json.loads(raw)
    assert msg["event"] == "ReceiptStatusUpdated"
    assert msg["data"]["receipt_id"] == 5
    assert msg["data"]["status"] == "OcrInProgress"
    assert msg["data"]["message"] == "OCR processing started"
    assert msg["data"]["version"] == 2
    assert msg["data"]["attempt"] == 2
    assert msg["data"]["timestamp"]


def test_processing_complete_payload():
    fake = FakeRedis()
    receipt = _receipt(ocr_confidence=0.75)
    receipt.status = ReceiptStatus.READY
    receipt.items = [ReceiptItem(name="Milk", price=1, quantity=1, line_number=1)]

    StatusNotifier(fake).processing_complete(receipt)

    msg = json.loads(fake.published[0][1])
    assert msg["event"] == "ReceiptProcessed"
    assert msg["data"]["status"] == "Ready"
    assert msg["data"]["item_count"] == 1
    assert msg["data"]["confidence"] == 0.75


def test_publish_errors_do_not_propagate():
    notifier = StatusNotifier(FakeRedis(fail_with=redis.ConnectionError("down")))
    notifier.status_updated(_receipt())


def test_disabled_without_redis_url():
    notifier = build_notifier(Settings(REDIS_URL=""))

    assert not notifier.enabled
    notifier.status_updated(_receipt())

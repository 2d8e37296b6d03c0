"""Publish receipt status events for connected clients.

The worker and the API both publish to Redis channel
``receipts:receipt:{receipt_id}``; the API process relays those messages to
WebSocket subscribers (see ``splitscan.services.hub``). Without a Redis URL
the notifier only logs, and clients rely on polling.
"""

from __future__ import annotations

import logging

import redis

from splitscan.core.config import Settings, settings
from splitscan.models.receipt import Receipt
from splitscan.schemas.events import (
    ProcessedEvent,
    ReceiptProcessed,
    ReceiptStatusUpdated,
    StatusUpdatedEvent,
)

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "receipts:receipt:"


def receipt_channel(receipt_id: int) -> str:
    return f"{CHANNEL_PREFIX}{receipt_id}"


class StatusNotifier:
    def __init__(self, client: redis.Redis | None):
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _publish(self, receipt_id: int, event: StatusUpdatedEvent | ProcessedEvent) -> None:
        logger.info(
            "receipt=%s event=%s status=%s", receipt_id, event.event, event.data.status.value
        )
        if self.client is None:
            return
        try:
            self.client.publish(receipt_channel(receipt_id), event.model_dump_json())
        except redis.RedisError as e:
            # losing a push is fine, clients still poll
            logger.warning("Failed to publish %s for receipt %s: %s", event.event, receipt_id, e)

    def status_updated(
        self,
        receipt: Receipt,
        message: str | None = None,
        *,
        attempt: int = 1,
    ) -> None:
        data = ReceiptStatusUpdated(
            receipt_id=receipt.id,
            status=receipt.status,
            message=message,
            version=receipt.version,
            attempt=attempt,
        )
        self._publish(receipt.id, StatusUpdatedEvent(data=data))

    def processing_complete(self, receipt: Receipt, *, attempt: int = 1) -> None:
        data = ReceiptProcessed(
            receipt_id=receipt.id,
            status=receipt.status,
            item_count=len(receipt.items),
            confidence=receipt.ocr_confidence,
            version=receipt.version,
            attempt=attempt,
        )
        self._publish(receipt.id, ProcessedEvent(data=data))


def build_notifier(cfg: Settings = settings) -> StatusNotifier:
    if not cfg.REDIS_URL:
        logger.info("REDIS_URL is not set; push notifications are disabled")
        return StatusNotifier(None)
    return StatusNotifier(redis.Redis.from_url(cfg.REDIS_URL, decode_responses=True))

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from splitscan.models.enums import ReceiptStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReceiptStatusUpdated(BaseModel):
    receipt_id: int
    status: ReceiptStatus
    message: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    version: int = 1
    attempt: int = 1


class ReceiptProcessed(BaseModel):
    receipt_id: int
    status: ReceiptStatus
    item_count: int = 0
    confidence: float | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    version: int = 1
    attempt: int = 1


class StatusUpdatedEvent(BaseModel):
    event: Literal["ReceiptStatusUpdated"] = "ReceiptStatusUpdated"
    data: ReceiptStatusUpdated


class ProcessedEvent(BaseModel):
    event: Literal["ReceiptProcessed"] = "ReceiptProcessed"
    data: ReceiptProcessed


# envelope sent over Redis and the WebSocket hub
ReceiptEvent = Annotated[Union[StatusUpdatedEvent, ProcessedEvent], Field(discriminator="event")]

receipt_event_adapter: TypeAdapter[ReceiptEvent] = TypeAdapter(ReceiptEvent)


def ordering_key(event: StatusUpdatedEvent | ProcessedEvent) -> tuple[int, int, int]:
    """Events of one receipt are delivered in increasing order of this key."""
    return (event.data.version, event.data.attempt, event.data.status.rank)

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from splitscan.models.enums import ReceiptStatus


class ReceiptItemOut(BaseModel):
    id: int
    name: str
    price: Decimal
    quantity: int
    line_number: int

    model_config = {"from_attributes": True}


class ReceiptOut(BaseModel):
    id: int
    status: ReceiptStatus
    created_at: datetime

    merchant_name: str | None = None
    transaction_date: date | None = None
    total: Decimal | None = None
    tax: Decimal | None = None
    tip: Decimal | None = None

    image_ref: str

    ocr_confidence: float | None = None
    processed_at: datetime | None = None
    error_message: str | None = None
    version: int

    items: list[ReceiptItemOut] = []

    model_config = {"from_attributes": True}


class ReceiptUploadOut(BaseModel):
    id: int
    status: ReceiptStatus
    image_ref: str
    created_at: datetime
    job_id: int
    message: str = (
        "Receipt uploaded successfully. Processing will complete in a few seconds. "
        "Poll this receipt or subscribe on /hubs/receipt for real-time updates."
    )


class ReceiptItemUpdate(BaseModel):
    id: int
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    quantity: int = Field(default=1, ge=1)


class UpdateReceiptItemsIn(BaseModel):
    items: list[ReceiptItemUpdate] = Field(min_length=1)


class ReceiptOcrOut(BaseModel):
    receipt_id: int
    status: ReceiptStatus
    processed_at: datetime | None = None
    confidence: float | None = None
    raw_ocr_result: dict[str, Any]

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class ParsedItem(BaseModel):
    name: str = Field(description="Item name as it appears on the receipt.")
    price: Decimal = Field(description="Line price, always > 0 when produced by the parser.")
    quantity: int = Field(default=1, ge=1)
    line_number: int = Field(description="1-based position of the line in the OCR text.")
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class ParsedReceipt(BaseModel):
    merchant_name: Optional[str] = None
    transaction_date: Optional[date] = None
    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    tip: Optional[Decimal] = None
    total: Optional[Decimal] = None
    items: list[ParsedItem] = Field(default_factory=list)
    confidence: Optional[float] = None


class OcrResult(ParsedReceipt):
    """Everything one OCR + parse run produced; written as the receipt's audit artifact."""

    raw_text: str = ""
    success: bool = False
    error_message: Optional[str] = None

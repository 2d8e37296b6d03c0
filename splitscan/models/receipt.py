from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, Enum, Float, ForeignKey, Integer, Numeric, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from splitscan.core.db import Base
from splitscan.models.enums import ReceiptStatus


def _enum_values(enum_cls):
    return [m.value for m in enum_cls]


class Receipt(Base):
    __tablename__ = "receipts"

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    status: Mapped[ReceiptStatus] = mapped_column(
        Enum(
            ReceiptStatus,
            name="receipt_status",
            native_enum=False,
            length=32,
            validate_strings=True,
            values_callable=_enum_values,
        ),
        default=ReceiptStatus.UPLOADED,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    total: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    tax: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    tip: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    image_ref: Mapped[str] = mapped_column(String(1024), nullable=False)

    ocr_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # bumped on every reprocess; jobs carrying an older version are ignored
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))

    user = relationship("User", back_populates="receipts")

    items = relationship(
        "ReceiptItem",
        back_populates="receipt",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ReceiptItem.line_number",
        lazy="selectin",
    )

    def recompute_total(self) -> Decimal:
        self.total = sum((it.price * it.quantity for it in self.items), Decimal("0.00"))
        return self.total

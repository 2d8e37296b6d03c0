from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from splitscan.core.db import Base


class BackgroundTask(Base):
    """Durable job record polled by ``splitscan.worker``.

    ``status``/``kind`` hold ``TaskStatus``/``TaskKind`` values; the worker
    updates rows with plain UPDATE statements so they stay strings here.
    """

    __tablename__ = "background_tasks"

    id: Mapped[int] = mapped_column(primary_key=True)

    kind: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    receipt_id: Mapped[int | None] = mapped_column(
        ForeignKey("receipts.id", ondelete="CASCADE"), index=True, nullable=True
    )
    receipt_version: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))

    payload: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(32), default="queued", nullable=False, index=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    run_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # one row per recurring period, e.g. "cleanup_ocr_artifacts:2026-10-17"
    dedupe_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

"""Closed enumerations shared by the database, the job runner and the notifier.

Statuses travel across process boundaries (worker -> Redis -> hub -> browser)
as their string values; both SQLAlchemy and pydantic validate them on the way
back in, so an unknown string is an error rather than a silent new state.
"""

from enum import Enum


class ReceiptStatus(str, Enum):
    """Processing states for a receipt."""

    UPLOADED = "Uploaded"
    OCR_IN_PROGRESS = "OcrInProgress"
    # reserved, nothing transitions into these yet
    OCR_COMPLETED = "OcrCompleted"
    PARSE_FAILED = "ParseFailed"
    READY = "Ready"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position along the state machine, used to refuse regressions."""
        return _RANKS[self]


TERMINAL_STATUSES = frozenset({ReceiptStatus.READY, ReceiptStatus.FAILED, ReceiptStatus.PARSE_FAILED})

_RANKS = {
    ReceiptStatus.UPLOADED: 0,
    ReceiptStatus.OCR_IN_PROGRESS: 1,
    ReceiptStatus.OCR_COMPLETED: 2,
    ReceiptStatus.READY: 3,
    ReceiptStatus.PARSE_FAILED: 3,
    ReceiptStatus.FAILED: 3,
}


class TaskStatus(str, Enum):
    """Lifecycle of a durable background task row."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class TaskKind(str, Enum):
    PROCESS_RECEIPT = "process_receipt"
    CLEANUP_OCR_ARTIFACTS = "cleanup_ocr_artifacts"

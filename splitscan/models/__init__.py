from splitscan.models.background_task import BackgroundTask
from splitscan.models.enums import ReceiptStatus, TaskKind, TaskStatus
from splitscan.models.receipt import Receipt
from splitscan.models.receipt_item import ReceiptItem
from splitscan.models.user import User

__all__ = [
    "BackgroundTask",
    "Receipt",
    "ReceiptItem",
    "ReceiptStatus",
    "TaskKind",
    "TaskStatus",
    "User",
]

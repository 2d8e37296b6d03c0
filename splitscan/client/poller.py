"""Polling fallback for clients that cannot hold a WebSocket open.

Repeatedly GETs ``/receipts/{id}`` until the receipt reaches a terminal
status or the attempt budget runs out. Failed requests are logged and count
as an attempt; they never end the loop early.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from splitscan.models.enums import ReceiptStatus

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3.0
DEFAULT_MAX_ATTEMPTS = 60


@dataclass
class PollResult:
    receipt: dict[str, Any] | None = None
    attempts: int = 0
    timed_out: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> ReceiptStatus | None:
        if not self.receipt:
            return None
        return ReceiptStatus(self.receipt["status"])


class ReceiptPoller:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        session: requests.Session | None = None,
        timeout: float = 20.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.max_attempts = max(1, max_attempts)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers["Authorization"] = f"Bearer {token}"
        self._sleep = sleep

    def fetch(self, receipt_id: int) -> dict[str, Any]:
        r = self.session.get(f"{self.base_url}/receipts/{receipt_id}", timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def wait(
        self,
        receipt_id: int,
        on_update: Callable[[dict[str, Any]], None] | None = None,
    ) -> PollResult:
        """Poll until the receipt is Ready/Failed/ParseFailed or attempts run out."""
        result = PollResult()
        last_status = None

        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            try:
                receipt = self.fetch(receipt_id)
            except requests.RequestException as e:
                logger.warning("Polling receipt %s failed (attempt %d): %s", receipt_id, attempt, e)
                result.errors.append(str(e))
            else:
                result.receipt = receipt
                status = ReceiptStatus(receipt["status"])
                if status != last_status:
                    last_status = status
                    if on_update is not None:
                        on_update(receipt)
                if status.is_terminal:
                    return result

            if attempt < self.max_attempts:
                self._sleep(self.interval)

        logger.info("Stopped polling receipt %s after %d attempts", receipt_id, result.attempts)
        result.timed_out = True
        return result

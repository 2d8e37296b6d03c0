"""WebSocket fan-out of receipt status events.

``ReceiptHub`` tracks which sockets are subscribed to which receipt and
forwards events to them. It keeps, per receipt, the ordering key of the last
event it delivered and drops anything older, so a late or reordered message
never moves a client backwards along the state machine.

``RedisEventRelay`` feeds the hub from the ``receipts:receipt:*`` channels
that the worker and API publish to.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol

import redis
import redis.asyncio as aioredis
from pydantic import ValidationError

from splitscan.schemas.events import ReceiptEvent, ordering_key, receipt_event_adapter
from splitscan.services.notifier import CHANNEL_PREFIX

logger = logging.getLogger(__name__)


class EventSocket(Protocol):
    async def send_json(self, data: Any, mode: str = "text") -> None: ...


class ReceiptHub:
    def __init__(self) -> None:
        self._subscribers: dict[int, set[EventSocket]] = defaultdict(set)
        self._last_delivered: dict[int, tuple[int, int, int]] = {}
        self._lock = asyncio.Lock()

    def subscriber_count(self, receipt_id: int) -> int:
        return len(self._subscribers.get(receipt_id, ()))

    async def subscribe(self, receipt_id: int, ws: EventSocket) -> None:
        async with self._lock:
            self._subscribers[receipt_id].add(ws)
        logger.debug("Socket subscribed to receipt %s", receipt_id)

    async def unsubscribe(self, receipt_id: int, ws: EventSocket) -> None:
        async with self._lock:
            self._discard(receipt_id, ws)

    async def disconnect(self, ws: EventSocket) -> None:
        async with self._lock:
            for receipt_id in list(self._subscribers):
                self._discard(receipt_id, ws)

    def _discard(self, receipt_id: int, ws: EventSocket) -> None:
        subs = self._subscribers.get(receipt_id)
        if subs is None:
            return
        subs.discard(ws)
        if not subs:
            del self._subscribers[receipt_id]
            self._last_delivered.pop(receipt_id, None)

    async def broadcast(self, event: ReceiptEvent) -> int:
        """Send ``event`` to every subscriber of its receipt; returns how many got it."""
        receipt_id = event.data.receipt_id
        key = ordering_key(event)

        async with self._lock:
            last = self._last_delivered.get(receipt_id)
            if last is not None and key < last:
                logger.info(
                    "Dropping stale %s for receipt %s: %s < %s", event.event, receipt_id, key, last
                )
                return 0
            targets = list(self._subscribers.get(receipt_id, ()))
            if targets:
                self._last_delivered[receipt_id] = key

        if not targets:
            return 0

        payload = event.model_dump(mode="json")
        dead: list[EventSocket] = []
        for ws in targets:
            try:
                await ws.send_json(payload)
            except Exception as e:
                logger.info("Dropping socket for receipt %s after send failure: %s", receipt_id, e)
                dead.append(ws)

        for ws in dead:
            await self.disconnect(ws)
        return len(targets) - len(dead)


class RedisEventRelay:
    def __init__(self, client: aioredis.Redis, hub: ReceiptHub, reconnect_delay: float = 2.0):
        self.client = client
        self.hub = hub
        self.reconnect_delay = reconnect_delay

    async def handle_message(self, message: dict[str, Any]) -> None:
        if message.get("type") not in ("message", "pmessage"):
            return

        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")

        try:
            event = receipt_event_adapter.validate_json(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed event on %s: %s", message.get("channel"), e)
            return

        await self.hub.broadcast(event)

    async def _listen(self) -> None:
        pubsub = self.client.pubsub()
        await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        logger.info("Relaying receipt events from %s*", CHANNEL_PREFIX)
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is not None:
                    await self.handle_message(message)
        finally:
            await pubsub.aclose()

    async def run(self) -> None:
        while True:
            try:
                await self._listen()
            except redis.RedisError as e:
                logger.warning("Redis relay connection lost: %s; retrying in %.1fs", e, self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)

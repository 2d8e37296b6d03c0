from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ValidationError

from splitscan.api.deps import user_from_token
from splitscan.core.db import SessionLocal
from splitscan.models.receipt import Receipt
from splitscan.services.hub import ReceiptHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["hub"])


class HubMessage(BaseModel):
    type: Literal["subscribe", "unsubscribe"]
    receipt_id: int


def _token_from(ws: WebSocket) -> str | None:
    # browsers cannot set headers on a WebSocket, so the query string is accepted too
    token = ws.query_params.get("access_token")
    if token:
        return token
    auth = ws.headers.get("authorization") or ""
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


def _authenticate(token: str | None) -> int | None:
    if not token:
        return None
    db = SessionLocal()
    try:
        user = user_from_token(token, db)
        return user.id if user else None
    finally:
        db.close()


def _owns_receipt(user_id: int, receipt_id: int) -> bool:
    db = SessionLocal()
    try:
        found = (
            db.query(Receipt.id)
            .filter(Receipt.id == receipt_id, Receipt.user_id == user_id)
            .first()
        )
        return found is not None
    finally:
        db.close()


def _frame(event: str, **data) -> dict:
    return {"event": event, "data": data}


async def _handle_message(ws: WebSocket, hub: ReceiptHub, user_id: int, raw: str) -> None:
    try:
        msg = HubMessage.model_validate_json(raw)
    except ValidationError:
        await ws.send_json(_frame("Error", code="bad_request", message="Expected {type, receipt_id}"))
        return

    if msg.type == "unsubscribe":
        await hub.unsubscribe(msg.receipt_id, ws)
        await ws.send_json(_frame("Unsubscribed", receipt_id=msg.receipt_id))
        return

    if not await run_in_threadpool(_owns_receipt, user_id, msg.receipt_id):
        logger.info("User %s tried to subscribe to receipt %s", user_id, msg.receipt_id)
        await ws.send_json(
            _frame("Error", code="not_found", message="Receipt not found", receipt_id=msg.receipt_id)
        )
        return

    await hub.subscribe(msg.receipt_id, ws)
    await ws.send_json(_frame("Subscribed", receipt_id=msg.receipt_id))


@router.websocket("/hubs/receipt")
async def receipt_hub(websocket: WebSocket):
    hub: ReceiptHub = websocket.app.state.hub

    user_id = await run_in_threadpool(_authenticate, _token_from(websocket))
    if user_id is None:
        logger.info("Rejected hub connection from %s: invalid credentials", websocket.client)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info("Hub connection opened for user %s", user_id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                await websocket.send_json(_frame("Error", code="bad_request", message="Expected a text frame"))
                continue
            await _handle_message(websocket, hub, user_id, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(websocket)
        logger.info("Hub connection closed for user %s", user_id)

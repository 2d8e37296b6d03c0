import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from splitscan.api.auth import router as auth_router
from splitscan.api.error_handlers import register_error_handlers
from splitscan.api.hub import router as hub_router
from splitscan.api.receipts import router as receipts_router
from splitscan.core.config import settings
from splitscan.core.logging import setup_logging
from splitscan.services.file_storage import FileStorage
from splitscan.services.hub import ReceiptHub, RedisEventRelay
from splitscan.services.notifier import build_notifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging("splitscan-api")
    logger.info("Starting up...")

    app.state.storage = FileStorage.from_settings(settings)
    app.state.notifier = build_notifier(settings)
    app.state.hub = ReceiptHub()

    relay_task = None
    redis_client = None
    if settings.REDIS_URL:
        redis_client = aioredis.from_url(settings.REDIS_URL)
        relay = RedisEventRelay(redis_client, app.state.hub)
        relay_task = asyncio.create_task(relay.run())
    else:
        logger.info("REDIS_URL is not set; hub subscribers will not receive events, clients must poll")

    yield

    logger.info("Shutting down...")
    if relay_task is not None:
        relay_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await relay_task
    if redis_client is not None:
        await redis_client.aclose()


app = FastAPI(title="SplitScan", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(auth_router)
app.include_router(receipts_router)
app.include_router(hub_router)


@app.get("/health")
def health():
    return {"status": "ok"}

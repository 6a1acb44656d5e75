import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from .config import CLEANUP_INTERVAL, STALE_THRESHOLD, configure_logging
from .storage import ChunkStore

logger = logging.getLogger(__name__)


async def periodic_cleanup(
    store: ChunkStore,
    interval: float = CLEANUP_INTERVAL,
    threshold: timedelta = STALE_THRESHOLD,
):
    while True:
        await asyncio.sleep(interval)
        try:
            await store.cleanup_stale_chunks(threshold)
        except OSError:
            logger.exception("Failed to clean up expired uploads")


@asynccontextmanager
async def cleanup_lifespan(app: FastAPI):
    configure_logging()
    store: ChunkStore = app.state.store
    store.ensure_dirs()
    task = asyncio.create_task(periodic_cleanup(store))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Shutting down...")

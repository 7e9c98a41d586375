"""
Linkcast - FastAPI Backend
Accepts shared links, queues them for the audio pipeline and exposes queue operations.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config import settings
from database import engine, Base
import models  # noqa: F401
from routers import health, links, queue
from services.fallback import FallbackExecutor
from services.link_queue import LinkQueueManager


async def _periodic_stall_sweep(link_queue: LinkQueueManager) -> None:
    interval_seconds = max(int(settings.STALL_CHECK_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await link_queue.sweep_stalled_jobs()
            if result.get("stalled"):
                print(
                    f"⏰ Stall sweep: stalled={result.get('stalled', 0)} "
                    f"requeued={result.get('requeued', 0)} failed={result.get('failed', 0)}"
                )
        except Exception as exc:
            print(f"⚠️ Stall sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Linkcast API...")
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    if not hasattr(app.state, "link_queue"):
        app.state.link_queue = LinkQueueManager()
    if not hasattr(app.state, "fallback_executor"):
        app.state.fallback_executor = FallbackExecutor()
    link_queue = app.state.link_queue

    try:
        requeued = await link_queue.requeue_stuck_links()
        if requeued.get("found"):
            print(f"♻️ Requeued {requeued['requeued']} of {requeued['found']} stuck links after startup.")
    except Exception as exc:
        print(f"⚠️ Stuck link recovery skipped: {exc}")

    stall_sweep_task = asyncio.create_task(_periodic_stall_sweep(link_queue))
    print(f"📅 Stall sweep loop enabled (every {int(settings.STALL_CHECK_INTERVAL_SECONDS)} s).")
    yield
    # Shutdown
    stall_sweep_task.cancel()
    try:
        await stall_sweep_task
    except asyncio.CancelledError:
        pass
    await app.state.fallback_executor.drain()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Linkcast API",
    description="Turn shared links into narrated audio summaries",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(links.router, prefix="/links", tags=["Links"])
app.include_router(queue.router, prefix="/queue", tags=["Queue"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Linkcast API",
        "version": "0.1.0",
        "status": "running"
    }

"""Direct in-process execution used when the queue backend is unreachable."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Optional, Sequence, Set

from services.link_processor import LinkProcessor, build_link_processor, run_link_job_async
from services.pipeline_models import LinkJobPayload

logger = logging.getLogger(__name__)

# Immediate attempt, then one retry after 5s and a last one after 30s.
RETRY_DELAYS_SECONDS = (0, 5, 30)


class FallbackExecutor:
    """Runs the link pipeline in-process with its own retry schedule."""

    def __init__(
        self,
        processor_factory: Optional[Callable[[], LinkProcessor]] = None,
        delays: Sequence[float] = RETRY_DELAYS_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.processor_factory = processor_factory or build_link_processor
        self.delays = tuple(delays)
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    async def run_direct(self, payload: LinkJobPayload) -> bool:
        """Try the pipeline once per scheduled delay. Never raises; returns success."""
        processor: Optional[LinkProcessor] = None
        total = len(self.delays)
        for attempt, delay in enumerate(self.delays, start=1):
            if delay:
                logger.info("Direct run for %s retrying in %ss (attempt %s/%s)", payload.url, delay, attempt, total)
                await self._sleep(delay)
            try:
                processor = processor or self.processor_factory()
                link_id = await run_link_job_async(
                    payload,
                    processor=processor,
                    notify_failure=attempt == total,
                )
                logger.info("Direct run for %s completed on attempt %s (%s)", payload.url, attempt, link_id)
                return True
            except Exception as exc:
                logger.warning("Direct run for %s failed on attempt %s/%s: %s", payload.url, attempt, total, exc)
        logger.error("Direct run for %s gave up after %s attempts", payload.url, total)
        return False

    def schedule(self, payload: LinkJobPayload) -> str:
        """Start a background direct run and return its id."""
        run_id = f"direct-{uuid.uuid4()}"
        task = asyncio.create_task(self.run_direct(payload), name=run_id)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Direct run %s scheduled for %s", run_id, payload.url)
        return run_id

    async def drain(self) -> None:
        """Wait for in-flight direct runs, used at shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

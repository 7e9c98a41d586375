"""RQ worker pool entrypoint for link jobs."""

import logging

from rq.worker_pool import WorkerPool

from config import settings, validate_pipeline_settings
from services.link_queue import get_redis_connection, queue_names


def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    validate_pipeline_settings()
    redis_conn = get_redis_connection()
    # Queue order is priority order: workers always drain the most urgent queue first.
    pool = WorkerPool(
        queue_names(),
        connection=redis_conn,
        num_workers=max(int(settings.WORKER_CONCURRENCY), 1),
    )
    pool.start(logging_level=settings.LOG_LEVEL.upper())


if __name__ == "__main__":
    main()

"""Durable link job queue helpers (Redis/RQ).

Caller priorities run 1..10 with larger values more urgent. RQ has no native
priorities, so each broker priority (``11 - caller priority``, 1 = most
urgent) gets its own queue and workers listen to them in order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from redis import Redis
from redis.exceptions import BusyLoadingError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Callback, Job, JobStatus
from rq.suspension import is_suspended, resume, suspend
from sqlalchemy import select, update

from config import require_redis_url, settings
from database import async_session_maker
from models.channel import Channel
from models.processed_link import STATUS_PENDING, STATUS_PROCESSING, ProcessedLink
from models.team import Team
from services.link_processor import mark_link_failed
from services.pipeline_models import LinkJobPayload
from services.slack_notifier import SlackNotifier

logger = logging.getLogger(__name__)

JOB_FUNCTION = "services.link_processor.process_link_job"
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
# RQ kills the work horse only after the in-process deadline had its chance.
JOB_TIMEOUT_GRACE_SECONDS = 30
TRANSIENT_RETRY_DELAY_SECONDS = 0.5
BROKER_TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, BusyLoadingError)
STALLED_FAILURE_MESSAGE = "Processing stalled and no attempts are left"

STATE_BY_RQ_STATUS = {
    JobStatus.QUEUED: "waiting",
    JobStatus.STARTED: "active",
    JobStatus.FINISHED: "completed",
    JobStatus.FAILED: "failed",
    JobStatus.STOPPED: "failed",
    JobStatus.CANCELED: "failed",
    JobStatus.SCHEDULED: "delayed",
    JobStatus.DEFERRED: "delayed",
}


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(require_redis_url())


def broker_priority(priority: int) -> int:
    """Invert a caller priority (1 lowest .. 10 highest) to broker order (1 first)."""
    clamped = max(MIN_PRIORITY, min(int(priority), MAX_PRIORITY))
    return MAX_PRIORITY + 1 - clamped


def queue_name_for_priority(priority: int, base_name: Optional[str] = None) -> str:
    return f"{base_name or settings.LINK_QUEUE_NAME}:p{broker_priority(priority):02d}"


def queue_names(base_name: Optional[str] = None) -> List[str]:
    """All link queue names, most urgent first."""
    base = base_name or settings.LINK_QUEUE_NAME
    return [f"{base}:p{level:02d}" for level in range(1, MAX_PRIORITY + 1)]


def backoff_intervals(max_attempts: int, base_seconds: Optional[int] = None) -> List[int]:
    """Delay before each retry: base, 2*base, 4*base, ... for attempts 2..max_attempts."""
    base = settings.QUEUE_BACKOFF_SECONDS if base_seconds is None else base_seconds
    return [base * 2 ** (attempt - 1) for attempt in range(1, max(int(max_attempts), 1))]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def _last_error(job: Job) -> Optional[str]:
    exc_info = job.exc_info
    if not exc_info:
        return None
    lines = [line for line in str(exc_info).strip().splitlines() if line.strip()]
    return lines[-1] if lines else None


def _job_payload(job: Job) -> Optional[LinkJobPayload]:
    try:
        return LinkJobPayload.model_validate(job.args[0])
    except (IndexError, TypeError, ValidationError) as exc:
        logger.error("Link job %s carries no usable payload: %s", job.id, exc)
        return None


def on_link_job_success(job: Job, connection: Redis, result: Any, *args, **kwargs) -> None:
    logger.info(
        "Link job %s completed after %s attempt(s): %s",
        job.id,
        job.meta.get("attempts_made", 1),
        result,
    )


def on_link_job_failure(job: Job, connection: Redis, exc_type, exc_value, traceback) -> None:
    attempts = job.meta.get("attempts_made", 1)
    if job.retries_left:
        delay = job.get_retry_interval() if job.retry_intervals else 0
        logger.warning(
            "Link job %s attempt %s failed: %s; retrying in %ss (%s retries left)",
            job.id,
            attempts,
            exc_value,
            delay,
            job.retries_left,
        )
    else:
        logger.error("Link job %s failed after %s attempt(s): %s", job.id, attempts, exc_value)


class LinkQueueManager:
    """Enqueue, inspect and maintain link jobs across the priority queues."""

    def __init__(
        self,
        connection: Optional[Redis] = None,
        base_name: Optional[str] = None,
        max_attempts: Optional[int] = None,
        job_timeout: Optional[int] = None,
    ):
        self._connection = connection
        self.base_name = base_name or settings.LINK_QUEUE_NAME
        self.max_attempts = max(int(max_attempts or settings.QUEUE_MAX_ATTEMPTS), 1)
        self.job_timeout = int(job_timeout or settings.JOB_TIMEOUT_SECONDS)

    @property
    def connection(self) -> Redis:
        if self._connection is None:
            self._connection = get_redis_connection()
        return self._connection

    def queue(self, name: str) -> Queue:
        return Queue(
            name=name,
            connection=self.connection,
            default_timeout=self.job_timeout + JOB_TIMEOUT_GRACE_SECONDS,
        )

    def queues(self) -> List[Queue]:
        return [self.queue(name) for name in queue_names(self.base_name)]

    def _with_broker_retry(self, operation: Callable[[], Any], description: str) -> Any:
        try:
            return operation()
        except BROKER_TRANSIENT_ERRORS as exc:
            logger.warning("Transient broker error during %s: %s; retrying once", description, exc)
            time.sleep(TRANSIENT_RETRY_DELAY_SECONDS)
            return operation()

    def enqueue(self, payload: LinkJobPayload, priority: int = DEFAULT_PRIORITY, delay: int = 0) -> str:
        """
        Submit a link job and return its id.

        Args:
            payload: Link job payload
            priority: Caller priority, 1 (lowest) to 10 (highest)
            delay: Seconds to hold the job before it becomes available

        Raises:
            redis.exceptions.RedisError: when the broker stays unreachable
        """
        queue = self.queue(queue_name_for_priority(priority, self.base_name))
        retries = self.max_attempts - 1
        options = dict(
            retry=Retry(max=retries, interval=backoff_intervals(self.max_attempts)) if retries else None,
            job_timeout=self.job_timeout + JOB_TIMEOUT_GRACE_SECONDS,
            result_ttl=settings.COMPLETED_JOB_TTL_SECONDS,
            failure_ttl=settings.FAILED_JOB_TTL_SECONDS,
            meta={
                "priority": max(MIN_PRIORITY, min(int(priority), MAX_PRIORITY)),
                "attempts_made": 0,
                "max_attempts": self.max_attempts,
                "progress": 0,
            },
            on_success=Callback(on_link_job_success),
            on_failure=Callback(on_link_job_failure),
        )
        data = payload.model_dump()

        def submit() -> Job:
            if delay > 0:
                return queue.enqueue_in(timedelta(seconds=delay), JOB_FUNCTION, data, **options)
            return queue.enqueue(JOB_FUNCTION, data, **options)

        job = self._with_broker_retry(submit, "enqueue")
        logger.info(
            "Link job %s waiting on %s (priority %s, delay %ss) for %s",
            job.id,
            queue.name,
            priority,
            delay,
            payload.url,
        )
        return job.id

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            job = self._with_broker_retry(lambda: Job.fetch(job_id, connection=self.connection), "status lookup")
        except NoSuchJobError:
            return None
        status = job.get_status(refresh=False)
        meta = job.meta or {}
        return {
            "id": job.id,
            "state": STATE_BY_RQ_STATUS.get(status, str(status)),
            "queue": job.origin,
            "priority": meta.get("priority"),
            "attempts_made": meta.get("attempts_made", 0),
            "max_attempts": meta.get("max_attempts", self.max_attempts),
            "progress": meta.get("progress", 0),
            "payload": job.args[0] if job.args else None,
            "created_at": _iso(job.created_at),
            "processed_at": _iso(job.started_at),
            "finished_at": _iso(job.ended_at),
            "last_error": _last_error(job),
        }

    def get_stats(self) -> Dict[str, int]:
        def collect() -> Dict[str, int]:
            stats = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
            for queue in self.queues():
                stats["waiting"] += queue.count
                stats["active"] += queue.started_job_registry.count
                stats["completed"] += queue.finished_job_registry.count
                stats["failed"] += queue.failed_job_registry.count
                stats["delayed"] += queue.scheduled_job_registry.count
            return stats

        return self._with_broker_retry(collect, "stats")

    def pause(self) -> None:
        self._with_broker_retry(lambda: suspend(self.connection), "pause")
        logger.warning("Link queue paused; workers stop taking new jobs")

    def resume(self) -> None:
        self._with_broker_retry(lambda: resume(self.connection), "resume")
        logger.info("Link queue resumed")

    def is_paused(self) -> bool:
        return bool(self._with_broker_retry(lambda: is_suspended(self.connection), "pause check"))

    def clean(
        self,
        keep_completed: Optional[int] = None,
        keep_failed: Optional[int] = None,
    ) -> Dict[str, int]:
        """Evict the oldest terminal jobs beyond the retention counts."""
        keep_completed = settings.COMPLETED_JOB_RETENTION if keep_completed is None else keep_completed
        keep_failed = settings.FAILED_JOB_RETENTION if keep_failed is None else keep_failed
        queues = self.queues()
        removed = {
            "completed_removed": self._trim_registries(
                [queue.finished_job_registry for queue in queues], keep_completed
            ),
            "failed_removed": self._trim_registries(
                [queue.failed_job_registry for queue in queues], keep_failed
            ),
        }
        logger.info(
            "Link queue cleaned: %s completed and %s failed jobs removed",
            removed["completed_removed"],
            removed["failed_removed"],
        )
        return removed

    def _trim_registries(self, registries: list, keep: int) -> int:
        entries = []
        for registry in registries:
            registry.cleanup()
            # Registry scores are expiry timestamps; equal TTLs keep them in finish order.
            for raw_id, score in self.connection.zrange(registry.key, 0, -1, withscores=True):
                job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
                entries.append((score, job_id, registry))
        entries.sort(key=lambda entry: entry[0])
        excess = entries[: max(len(entries) - max(keep, 0), 0)]
        for _, job_id, registry in excess:
            registry.remove(job_id, delete_job=True)
        return len(excess)

    def get_health(self) -> Dict[str, Any]:
        try:
            self.connection.ping()
            paused = self.is_paused()
            stats = self.get_stats()
        except Exception as exc:
            logger.error("Link queue health check failed: %s", exc)
            return {"healthy": False, "paused": None, "broker_connected": False, "error": str(exc)}
        return {
            "healthy": not paused,
            "paused": paused,
            "broker_connected": True,
            "stats": stats,
        }

    async def sweep_stalled_jobs(
        self,
        stale_after_seconds: Optional[int] = None,
        session_maker: Any = None,
        notifier_factory: Callable[[str], Any] = SlackNotifier,
    ) -> Dict[str, int]:
        """
        Requeue or fail active jobs whose worker stopped sending heartbeats.

        A job must be seen stale on MAX_STALLED_COUNT consecutive sweeps. It is
        then requeued with its attempt counter incremented, or moved to the
        failed registry when no attempts remain. A failed job's record is marked
        FAILED and the thread gets the final failure notice.
        """
        exhausted: List[LinkJobPayload] = []
        summary = await asyncio.to_thread(self._sweep_started_registries, stale_after_seconds, exhausted)
        for payload in exhausted:
            await mark_link_failed(
                payload,
                STALLED_FAILURE_MESSAGE,
                notify=True,
                session_maker=session_maker,
                notifier_factory=notifier_factory,
            )
        return summary

    def _sweep_started_registries(
        self,
        stale_after_seconds: Optional[int],
        exhausted: List[LinkJobPayload],
    ) -> Dict[str, int]:
        stale_after = stale_after_seconds or settings.STALL_CHECK_INTERVAL_SECONDS
        threshold = max(int(settings.MAX_STALLED_COUNT), 1)
        now = datetime.now(timezone.utc)
        summary = {"checked": 0, "stalled": 0, "requeued": 0, "failed": 0}

        for queue in self.queues():
            registry = queue.started_job_registry
            for job_id in registry.get_job_ids():
                try:
                    job = Job.fetch(job_id, connection=self.connection)
                except NoSuchJobError:
                    registry.remove(job_id)
                    continue
                summary["checked"] += 1
                heartbeat = _as_utc(job.last_heartbeat) or _as_utc(job.started_at)
                if heartbeat is not None and (now - heartbeat).total_seconds() <= stale_after:
                    if job.meta.get("stall_checks"):
                        job.meta["stall_checks"] = 0
                        job.save_meta()
                    continue

                checks = int(job.meta.get("stall_checks", 0)) + 1
                job.meta["stall_checks"] = checks
                if checks < threshold:
                    job.save_meta()
                    continue

                summary["stalled"] += 1
                registry.remove(job)
                attempts = int(job.meta.get("attempts_made", 0))
                max_attempts = int(job.meta.get("max_attempts", self.max_attempts))
                if attempts < max_attempts:
                    job.meta["stall_checks"] = 0
                    if job.retries_left:
                        job.retries_left -= 1
                    job.save()
                    queue.enqueue_job(job)
                    summary["requeued"] += 1
                    logger.warning(
                        "Link job %s stalled (heartbeat %s); requeued, attempt %s/%s",
                        job.id,
                        _iso(heartbeat),
                        attempts,
                        max_attempts,
                    )
                else:
                    job.set_status(JobStatus.FAILED)
                    queue.failed_job_registry.add(
                        job,
                        ttl=settings.FAILED_JOB_TTL_SECONDS,
                        exc_string=f"Job stalled {checks} time(s) with no attempts left",
                    )
                    summary["failed"] += 1
                    logger.error("Link job %s stalled with no attempts left; marked failed", job.id)
                    payload = _job_payload(job)
                    if payload is not None:
                        exhausted.append(payload)
        return summary

    async def requeue_stuck_links(
        self,
        max_age_minutes: Optional[int] = None,
        session_maker: Any = None,
    ) -> Dict[str, int]:
        """
        Enqueue records stuck in PROCESSING again and reset them to PENDING.

        A record is only reset once its job is accepted by the broker, so a
        record that could not be requeued is found again by the next run.
        """
        minutes = max(int(max_age_minutes or settings.STUCK_LINK_MAX_AGE_MINUTES), 1)
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        maker = session_maker or async_session_maker
        async with maker() as db:
            result = await db.execute(
                select(ProcessedLink.id, ProcessedLink.url, ProcessedLink.message_ts, Channel, Team)
                .join(Channel, ProcessedLink.channel_id == Channel.id)
                .join(Team, ProcessedLink.team_id == Team.id)
                .where(
                    ProcessedLink.processing_status == STATUS_PROCESSING,
                    ProcessedLink.updated_at < cutoff,
                )
            )
            stuck = [
                (
                    link_id,
                    LinkJobPayload(
                        url=url,
                        thread_id=message_ts,
                        channel_id=channel.slack_channel_id,
                        team_id=team.id,
                        external_team_id=team.slack_team_id,
                    ),
                )
                for link_id, url, message_ts, channel, team in result.all()
            ]

        requeued_ids = []
        for link_id, payload in stuck:
            try:
                await asyncio.to_thread(self.enqueue, payload)
            except Exception as exc:
                logger.error("Could not requeue stuck link %s: %s", payload.url, exc)
                continue
            requeued_ids.append(link_id)

        if requeued_ids:
            async with maker() as db:
                # Records a requeued job already finished keep their final status.
                await db.execute(
                    update(ProcessedLink)
                    .where(
                        ProcessedLink.id.in_(requeued_ids),
                        ProcessedLink.processing_status == STATUS_PROCESSING,
                    )
                    .values(processing_status=STATUS_PENDING, error_message=None)
                )
                await db.commit()
        if stuck:
            logger.info("Requeued %s of %s stuck links", len(requeued_ids), len(stuck))
        return {"found": len(stuck), "requeued": len(requeued_ids)}

"""Link-to-audio pipeline orchestration.

One run takes a shared link through extraction, summarization, speech
rendering, storage and the thread notification, keeping the
``processed_links`` record for its natural key up to date along the way.
Both the RQ worker and the direct fallback executor call
``run_link_job_async`` so either path behaves identically.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from rq import get_current_job
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from config import settings, validate_pipeline_settings
from database import async_session_maker, engine
from models.channel import Channel
from models.processed_link import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    ProcessedLink,
)
from models.team import Team
from services.audio_storage import AudioStorage, build_audio_storage
from services.content_extractor import ContentExtractor
from services.pipeline_models import LinkJobPayload
from services.slack_notifier import SlackNotifier
from services.summarizer import NarrationSummarizer
from services.text_to_speech import SpeechRenderer

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int], Any]

PROGRESS_RECORD_READY = 20
PROGRESS_EXTRACTING = 30
PROGRESS_EXTRACTED = 50
PROGRESS_SUMMARIZED = 60
PROGRESS_RENDERED = 80
PROGRESS_STORED = 90
PROGRESS_DONE = 100


class LinkProcessingError(Exception):
    """Raised out of the pipeline once a run has been recorded as failed."""

    def __init__(self, message: str, link_id: Optional[str] = None):
        super().__init__(message)
        self.link_id = link_id


class JobTimeoutError(LinkProcessingError):
    """Raised when a run exceeds the job wall-clock deadline."""


async def _report(on_progress: Optional[ProgressSink], percent: int) -> None:
    if on_progress is None:
        return
    result = on_progress(percent)
    if inspect.isawaitable(result):
        await result


class LinkProcessor:
    """Sequences the pipeline stages for one link and persists the outcome."""

    def __init__(
        self,
        extractor: Any,
        summarizer: Any,
        renderer: Any,
        storage: AudioStorage,
        notifier_factory: Callable[[str], Any] = SlackNotifier,
        session_maker: Any = None,
    ):
        self.extractor = extractor
        self.summarizer = summarizer
        self.renderer = renderer
        self.storage = storage
        self.notifier_factory = notifier_factory
        self.session_maker = session_maker or async_session_maker

    async def run(
        self,
        payload: LinkJobPayload,
        on_progress: Optional[ProgressSink] = None,
        notify_failure: bool = True,
    ) -> str:
        """
        Process one link end to end.

        Args:
            payload: Link job payload
            on_progress: Optional sink receiving percentage checkpoints
            notify_failure: Post a failure notice into the thread if this run fails

        Returns:
            Id of the processed link record

        Raises:
            LinkProcessingError: after the record has been marked FAILED
        """
        link_id: Optional[str] = None
        access_token: Optional[str] = None
        try:
            access_token, link_id = await self._prepare_record(payload)
            await _report(on_progress, PROGRESS_RECORD_READY)

            await _report(on_progress, PROGRESS_EXTRACTING)
            content = await self.extractor.extract(payload.url)
            if content.is_stub:
                logger.warning("Using stub content for %s", payload.url)
            await _report(on_progress, PROGRESS_EXTRACTED)

            script = await self.summarizer.summarize_async(content.text, source_url=payload.url)
            await _report(on_progress, PROGRESS_SUMMARIZED)

            audio = await self.renderer.render_async(script, content.title, payload.file_stem)
            await _report(on_progress, PROGRESS_RENDERED)

            audio_url = await self.storage.save_async(audio.audio_bytes, audio.file_name)
            await _report(on_progress, PROGRESS_STORED)

            await self._update_record(
                link_id,
                title=content.title,
                extracted_text=script,
                audio_file_url=audio_url,
                audio_file_key=self.storage.storage_key(audio.file_name),
                tts_script=audio.spoken_transcript,
                og_image=content.cover_image_url,
                processing_status=STATUS_COMPLETED,
                error_message=None,
            )
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.exception("Link processing failed for %s: %s", payload.url, message)
            await self._record_failure(link_id, message)
            if notify_failure:
                await self._notify_failure(payload, access_token, message)
            raise LinkProcessingError(message, link_id=link_id) from exc

        await self._notify_success(payload, access_token, link_id, content.title)
        await _report(on_progress, PROGRESS_DONE)
        logger.info("Processed %s into %s (%s)", payload.url, audio_url, link_id)
        return link_id

    async def fail(self, payload: LinkJobPayload, message: str, notify: bool = True) -> Optional[str]:
        return await mark_link_failed(
            payload,
            message,
            notify=notify,
            session_maker=self.session_maker,
            notifier_factory=self.notifier_factory,
        )

    async def _prepare_record(self, payload: LinkJobPayload):
        async with self.session_maker() as db:
            team = await db.get(Team, payload.team_id)
            if team is None:
                raise LinkProcessingError("Team not found")
            # A losing insert race rolls back and expires every loaded instance.
            team_id, access_token = team.id, team.access_token
            channel = await self._upsert_channel(db, team_id, payload.channel_id)
            record = await self._upsert_link(db, payload, channel.id)
            return access_token, record.id

    async def _upsert_channel(self, db, team_id: str, slack_channel_id: str) -> Channel:
        query = select(Channel).where(
            Channel.team_id == team_id,
            Channel.slack_channel_id == slack_channel_id,
        )
        channel = (await db.execute(query)).scalar_one_or_none()
        if channel is not None:
            return channel
        channel = Channel(team_id=team_id, slack_channel_id=slack_channel_id)
        db.add(channel)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            channel = (await db.execute(query)).scalar_one()
        return channel

    async def _upsert_link(self, db, payload: LinkJobPayload, channel_id: str) -> ProcessedLink:
        query = select(ProcessedLink).where(
            ProcessedLink.url == payload.url,
            ProcessedLink.message_ts == payload.thread_id,
            ProcessedLink.channel_id == channel_id,
        )
        record = (await db.execute(query)).scalar_one_or_none()
        if record is None:
            record = ProcessedLink(
                url=payload.url,
                message_ts=payload.thread_id,
                channel_id=channel_id,
                team_id=payload.team_id,
                processing_status=STATUS_PROCESSING,
            )
            db.add(record)
            try:
                await db.commit()
                return record
            except IntegrityError:
                await db.rollback()
                record = (await db.execute(query)).scalar_one()
        else:
            logger.info("Reusing processed link %s for %s", record.id, payload.url)

        record.processing_status = STATUS_PROCESSING
        record.error_message = None
        await db.commit()
        return record

    async def _update_record(self, link_id: str, **fields) -> None:
        async with self.session_maker() as db:
            record = await db.get(ProcessedLink, link_id)
            if record is None:
                raise LinkProcessingError(f"Processed link {link_id} disappeared", link_id=link_id)
            for key, value in fields.items():
                setattr(record, key, value)
            await db.commit()

    async def _record_failure(self, link_id: Optional[str], message: str) -> None:
        if link_id is None:
            return
        try:
            await self._update_record(link_id, processing_status=STATUS_FAILED, error_message=message)
        except Exception:
            logger.exception("Could not mark processed link %s as failed", link_id)

    async def _notify_success(self, payload: LinkJobPayload, access_token: Optional[str], link_id: str, title: str) -> None:
        try:
            notifier = self.notifier_factory(access_token)
            await notifier.post_link_ready(payload.channel_id, payload.thread_id, link_id, title)
        except Exception as exc:
            # The audio exists and is reachable from the dashboard.
            logger.error("Completion notice for %s not delivered: %s", link_id, exc)

    async def _notify_failure(self, payload: LinkJobPayload, access_token: Optional[str], message: str) -> None:
        await _post_failure_notice(self.notifier_factory, payload, access_token, message)


async def _post_failure_notice(
    notifier_factory: Callable[[str], Any],
    payload: LinkJobPayload,
    access_token: Optional[str],
    message: str,
) -> None:
    if not access_token:
        logger.warning("No bot token for team %s; skipping failure notice", payload.team_id)
        return
    try:
        notifier = notifier_factory(access_token)
        await notifier.post_link_failed(payload.channel_id, payload.thread_id, payload.url, message)
    except Exception as exc:
        logger.error("Failure notice for %s not delivered: %s", payload.url, exc)


async def mark_link_failed(
    payload: LinkJobPayload,
    message: str,
    notify: bool = True,
    session_maker: Any = None,
    notifier_factory: Callable[[str], Any] = SlackNotifier,
) -> Optional[str]:
    """Record a failure for the payload's natural key without running any stage."""
    link_id = None
    access_token = None
    async with (session_maker or async_session_maker)() as db:
        team = await db.get(Team, payload.team_id)
        if team is not None:
            access_token = team.access_token
        result = await db.execute(
            select(ProcessedLink)
            .join(Channel, ProcessedLink.channel_id == Channel.id)
            .where(
                ProcessedLink.url == payload.url,
                ProcessedLink.message_ts == payload.thread_id,
                Channel.team_id == payload.team_id,
                Channel.slack_channel_id == payload.channel_id,
            )
        )
        record = result.scalar_one_or_none()
        if record is not None:
            link_id = record.id
            record.processing_status = STATUS_FAILED
            record.error_message = message
            await db.commit()
    logger.warning("Marked %s as failed: %s", payload.url, message)
    if notify:
        await _post_failure_notice(notifier_factory, payload, access_token, message)
    return link_id


def build_link_processor() -> LinkProcessor:
    """Compose the pipeline from configured stage implementations."""
    validate_pipeline_settings()
    return LinkProcessor(
        extractor=ContentExtractor(),
        summarizer=NarrationSummarizer(),
        renderer=SpeechRenderer(),
        storage=build_audio_storage(),
    )


async def run_link_job_async(
    payload: LinkJobPayload,
    processor: Optional[LinkProcessor] = None,
    on_progress: Optional[ProgressSink] = None,
    notify_failure: bool = True,
    timeout: Optional[float] = None,
) -> str:
    """Shared entrypoint for queued and direct runs: the pipeline raced against the job deadline."""
    processor = processor or build_link_processor()
    deadline = settings.JOB_TIMEOUT_SECONDS if timeout is None else timeout
    try:
        return await asyncio.wait_for(
            processor.run(payload, on_progress=on_progress, notify_failure=notify_failure),
            timeout=deadline,
        )
    except asyncio.TimeoutError as exc:
        message = f"Processing timed out after {deadline:g}s"
        await processor.fail(payload, message, notify=notify_failure)
        raise JobTimeoutError(message) from exc


async def _run_in_worker(payload: LinkJobPayload, on_progress: Optional[ProgressSink], notify_failure: bool) -> str:
    try:
        return await run_link_job_async(payload, on_progress=on_progress, notify_failure=notify_failure)
    finally:
        # Each job runs in its own event loop; pooled connections must not outlive it.
        await engine.dispose()


def process_link_job(payload_data: dict) -> str:
    """RQ worker entrypoint for link jobs."""
    payload = LinkJobPayload.model_validate(payload_data)
    job = get_current_job()
    on_progress = None
    notify_failure = True
    if job is not None:
        attempt = int(job.meta.get("attempts_made", 0)) + 1
        job.meta["attempts_made"] = attempt
        job.meta["stall_checks"] = 0
        job.save_meta()
        # retries_left is decremented by the worker before a retry is scheduled.
        notify_failure = not job.retries_left
        logger.info("Link job %s active (attempt %s) for %s", job.id, attempt, payload.url)

        def on_progress(percent: int) -> None:
            job.meta["progress"] = percent
            job.save_meta()
            logger.debug("Link job %s progress %s%%", job.id, percent)

    return asyncio.run(_run_in_worker(payload, on_progress, notify_failure))

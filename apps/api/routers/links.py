"""Link submission router."""

from __future__ import annotations

import asyncio
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.processed_link import ProcessedLink
from services.fallback import FallbackExecutor
from services.link_queue import DEFAULT_PRIORITY, LinkQueueManager
from services.pipeline_models import LinkJobPayload

logger = logging.getLogger(__name__)

router = APIRouter()


class SubmitLinkRequest(BaseModel):
    url: str = Field(min_length=8, max_length=2000)
    thread_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    team_id: str = Field(min_length=1)
    external_team_id: str = Field(min_length=1)
    priority: int = Field(default=DEFAULT_PRIORITY, ge=1, le=10)
    use_queue: bool = True


class SubmitLinkResponse(BaseModel):
    job_id: str
    mode: Literal["queued", "direct"]


class ProcessedLinkResponse(BaseModel):
    id: str
    url: str
    message_ts: str
    title: Optional[str] = None
    extracted_text: Optional[str] = None
    audio_file_url: Optional[str] = None
    audio_file_key: Optional[str] = None
    tts_script: Optional[str] = None
    og_image: Optional[str] = None
    processing_status: str
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def get_link_queue(request: Request) -> LinkQueueManager:
    return request.app.state.link_queue


def get_fallback_executor(request: Request) -> FallbackExecutor:
    return request.app.state.fallback_executor


def _serialize_link(record: ProcessedLink) -> ProcessedLinkResponse:
    return ProcessedLinkResponse(
        id=record.id,
        url=record.url,
        message_ts=record.message_ts,
        title=record.title,
        extracted_text=record.extracted_text,
        audio_file_url=record.audio_file_url,
        audio_file_key=record.audio_file_key,
        tts_script=record.tts_script,
        og_image=record.og_image,
        processing_status=record.processing_status,
        error_message=record.error_message,
        created_at=record.created_at.isoformat() if record.created_at else None,
        updated_at=record.updated_at.isoformat() if record.updated_at else None,
    )


@router.post("", response_model=SubmitLinkResponse, status_code=202)
async def submit_link(
    request: SubmitLinkRequest,
    link_queue: LinkQueueManager = Depends(get_link_queue),
    fallback: FallbackExecutor = Depends(get_fallback_executor),
):
    """Queue a shared link for processing, running it directly if the queue is unavailable."""
    url = request.url.strip()
    if not url.startswith("http://") and not url.startswith("https://"):
        raise HTTPException(status_code=422, detail="url must be an absolute http(s) URL")

    payload = LinkJobPayload(
        url=url,
        thread_id=request.thread_id,
        channel_id=request.channel_id,
        team_id=request.team_id,
        external_team_id=request.external_team_id,
    )

    if request.use_queue:
        try:
            job_id = await asyncio.to_thread(link_queue.enqueue, payload, request.priority)
            return SubmitLinkResponse(job_id=job_id, mode="queued")
        except Exception as exc:
            logger.warning("Enqueue failed for %s; falling back to direct execution: %s", url, exc)

    return SubmitLinkResponse(job_id=fallback.schedule(payload), mode="direct")


@router.get("/{link_id}", response_model=ProcessedLinkResponse)
async def get_processed_link(link_id: str, db: AsyncSession = Depends(get_db)):
    record = await db.get(ProcessedLink, link_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Processed link not found")
    return _serialize_link(record)

"""Operational endpoints for the link job queue."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException

from routers.links import get_link_queue
from services.link_queue import LinkQueueManager

router = APIRouter()


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str, link_queue: LinkQueueManager = Depends(get_link_queue)):
    status = await asyncio.to_thread(link_queue.get_status, job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@router.get("/stats")
async def get_queue_stats(link_queue: LinkQueueManager = Depends(get_link_queue)):
    return await asyncio.to_thread(link_queue.get_stats)


@router.get("/health")
async def get_queue_health(link_queue: LinkQueueManager = Depends(get_link_queue)):
    return await asyncio.to_thread(link_queue.get_health)


@router.post("/pause")
async def pause_queue(link_queue: LinkQueueManager = Depends(get_link_queue)):
    await asyncio.to_thread(link_queue.pause)
    return {"paused": True}


@router.post("/resume")
async def resume_queue(link_queue: LinkQueueManager = Depends(get_link_queue)):
    await asyncio.to_thread(link_queue.resume)
    return {"paused": False}


@router.post("/clean")
async def clean_queue(link_queue: LinkQueueManager = Depends(get_link_queue)):
    """Drop terminal jobs beyond the configured retention counts."""
    return await asyncio.to_thread(link_queue.clean)


@router.post("/stalled/sweep")
async def sweep_stalled_jobs(link_queue: LinkQueueManager = Depends(get_link_queue)):
    return await link_queue.sweep_stalled_jobs()


@router.post("/stuck-links/requeue")
async def requeue_stuck_links(link_queue: LinkQueueManager = Depends(get_link_queue)):
    return await link_queue.requeue_stuck_links()

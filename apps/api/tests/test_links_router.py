from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import TEST_TEAM_ID
from database import get_db
from main import app
from models.channel import Channel
from models.processed_link import STATUS_COMPLETED, ProcessedLink


LINK_BODY = {
    "url": "https://example.com/article",
    "thread_id": "1700000000.000100",
    "channel_id": "C0001",
    "team_id": TEST_TEAM_ID,
    "external_team_id": "T0001",
}


@pytest_asyncio.fixture
async def links_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    link_queue = MagicMock()
    fallback = MagicMock()
    fallback.schedule.return_value = "direct-123"
    app.dependency_overrides[get_db] = override_get_db
    app.state.link_queue = link_queue
    app.state.fallback_executor = fallback
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, link_queue, fallback
    app.dependency_overrides.pop(get_db, None)
    del app.state.link_queue
    del app.state.fallback_executor


@pytest.mark.asyncio
async def test_submit_link_is_queued_with_priority(links_client):
    client, link_queue, fallback = links_client
    link_queue.enqueue.return_value = "job-42"

    response = await client.post("/links", json={**LINK_BODY, "priority": 9})

    assert response.status_code == 202
    assert response.json() == {"job_id": "job-42", "mode": "queued"}
    payload, priority = link_queue.enqueue.call_args.args
    assert payload.url == LINK_BODY["url"]
    assert priority == 9
    fallback.schedule.assert_not_called()


@pytest.mark.asyncio
async def test_submit_link_falls_back_when_broker_is_down(links_client):
    client, link_queue, fallback = links_client
    link_queue.enqueue.side_effect = RedisConnectionError("refused")

    response = await client.post("/links", json=LINK_BODY)

    assert response.status_code == 202
    assert response.json() == {"job_id": "direct-123", "mode": "direct"}
    assert fallback.schedule.call_args.args[0].thread_id == LINK_BODY["thread_id"]


@pytest.mark.asyncio
async def test_submit_link_can_skip_the_queue(links_client):
    client, link_queue, fallback = links_client

    response = await client.post("/links", json={**LINK_BODY, "use_queue": False})

    assert response.json()["mode"] == "direct"
    link_queue.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_submit_link_validates_input(links_client):
    client, _, _ = links_client
    assert (await client.post("/links", json={**LINK_BODY, "priority": 11})).status_code == 422
    assert (await client.post("/links", json={**LINK_BODY, "url": "ftp://example.com/file"})).status_code == 422


@pytest.mark.asyncio
async def test_get_processed_link(links_client, session_maker):
    client, _, _ = links_client
    async with session_maker() as session:
        channel = Channel(team_id=TEST_TEAM_ID, slack_channel_id="C0001")
        session.add(channel)
        await session.flush()
        record = ProcessedLink(
            url=LINK_BODY["url"],
            message_ts=LINK_BODY["thread_id"],
            channel_id=channel.id,
            team_id=TEST_TEAM_ID,
            title="Example",
            audio_file_url="/uploads/audio/audio_x.mp3",
            processing_status=STATUS_COMPLETED,
        )
        session.add(record)
        await session.commit()
        link_id = record.id

    response = await client.get(f"/links/{link_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["processing_status"] == STATUS_COMPLETED
    assert body["audio_file_url"] == "/uploads/audio/audio_x.mp3"
    assert (await client.get("/links/missing")).status_code == 404


@pytest.mark.asyncio
async def test_queue_operations(links_client):
    client, link_queue, _ = links_client
    link_queue.get_stats.return_value = {"waiting": 1, "active": 0, "completed": 2, "failed": 0, "delayed": 0}
    link_queue.get_status.return_value = None
    link_queue.clean.return_value = {"completed_removed": 0, "failed_removed": 0}

    assert (await client.get("/queue/stats")).json()["completed"] == 2
    assert (await client.get("/queue/jobs/nope")).status_code == 404
    assert (await client.post("/queue/pause")).json() == {"paused": True}
    assert (await client.post("/queue/resume")).json() == {"paused": False}
    assert (await client.post("/queue/clean")).json()["completed_removed"] == 0
    link_queue.pause.assert_called_once()
    link_queue.resume.assert_called_once()


@pytest.mark.asyncio
async def test_liveness(links_client):
    client, _, _ = links_client
    assert (await client.get("/health/live")).json() == {"alive": True}

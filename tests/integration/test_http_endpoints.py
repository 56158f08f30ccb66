"""
Integration tests for FastAPI HTTP endpoints.

Real HTTP layer and event processor; the Zoom stream and network-bound
collaborators are mocked.
"""
import pytest
from httpx import ASGITransport, AsyncClient
from unittest.mock import AsyncMock, MagicMock, patch

from reelsync import main
from reelsync.main import app
from reelsync.schemas.processing import DispatchOutcome, ProcessingSummary


def client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_health_endpoint():
    """Test the /health endpoint."""
    async with client() as http:
        response = await http.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "reelsync"
    assert set(data["stream"]) >= {"enabled", "connected", "state", "reconnect_attempt", "fatal", "last_error"}
    assert data["stream"]["enabled"] is False
    assert data["dispatch_queue_depth"] == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_process_recording_without_audio_reports_failure():
    """Validation failures come back as a structured summary."""
    event = {
        "event": "recording.completed",
        "payload": {"object": {"id": 123, "topic": "Dailies", "recording_files": []}},
    }
    async with client() as http:
        response = await http.post("/recordings/process", json=event)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "failed"
    assert "No audio recording" in data["error"]
    assert data["dispatched"] == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_process_recording_returns_summary():
    summary = ProcessingSummary(
        event_type="recording.completed",
        status="completed",
        meeting_id="123",
        facts_extracted=1,
        dispatched=1,
        outcomes=[DispatchOutcome(character="Tom", task="Blocking", success=True, task_id="t1")],
    )
    with patch.object(main.event_processor, "process", AsyncMock(return_value=summary)) as mock_process:
        async with client() as http:
            response = await http.post(
                "/recordings/process",
                json={"event": "recording.completed", "payload": {"object": {"id": "123"}}},
            )

    assert response.status_code == 200
    assert response.json()["outcomes"][0]["task_id"] == "t1"
    posted = mock_process.await_args.args[0]
    assert posted["event"] == "recording.completed"
    assert posted["payload"]["object"]["id"] == "123"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_other_event_types_ignored():
    async with client() as http:
        response = await http.post("/recordings/process", json={"event": "meeting.started", "payload": {}})

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_process_recording_requires_event_type():
    async with client() as http:
        response = await http.post("/recordings/process", json={"payload": {}})

    assert response.status_code == 422


@pytest.mark.integration
@pytest.mark.asyncio
async def test_manual_stream_reconnect():
    fake_stream = MagicMock()
    fake_stream.initialize = AsyncMock()
    fake_stream.status.return_value = {
        "connected": True,
        "state": "open",
        "reconnect_attempt": 0,
        "fatal": False,
    }
    with patch.object(main, "stream_client", fake_stream):
        async with client() as http:
            response = await http.post("/stream/reconnect")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "reconnecting"
    assert data["stream"]["connected"] is True
    fake_stream.initialize.assert_awaited_once()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_reconnect_when_stream_disabled():
    with patch.object(main, "stream_client", None):
        async with client() as http:
            response = await http.post("/stream/reconnect")

    assert response.status_code == 409

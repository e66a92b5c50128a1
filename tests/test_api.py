"""Test suite for the API endpoints."""

import asyncio
import os

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from conftest import DEFAULT_INSTRUCTION, FakeGateway, FakeTextExtractor, FakeAudioExtractor, make_transcriber
from skyhammer_chat.api import app as app_module
from skyhammer_chat.api.app import create_app, route_label, run_detached
from skyhammer_chat.config import Settings
from skyhammer_chat.domain.errors import InvalidContent, RateLimited
from skyhammer_chat.domain.models import Message, Role
from skyhammer_chat.repositories.memory import InMemoryRepository
from skyhammer_chat.services.attachments import AttachmentTransformService
from skyhammer_chat.services.job_queue import TranscriptionJobQueue


def make_app(tmp_path, gateway=None, repository=None, rate_limit=100, transcriber=None):
    gateway = gateway or FakeGateway()
    queue = TranscriptionJobQueue(transcriber or make_transcriber(), workers=1)
    attachments = AttachmentTransformService(
        queue,
        gateway,
        text_extractor=FakeTextExtractor("OCR"),
        audio_extractor=FakeAudioExtractor(),
    )
    settings = Settings(upload_dir=str(tmp_path / "uploads"), rate_limit=rate_limit)
    app = create_app(
        settings,
        repository=repository or InMemoryRepository(DEFAULT_INSTRUCTION),
        gateway=gateway,
        job_queue=queue,
        attachments=attachments,
    )
    return app, queue


def client_for(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_chat_creates_conversation(tmp_path):
    """Test a first message returns the response, id, name and conversation list."""
    app, _ = make_app(tmp_path)
    async with client_for(app) as client:
        response = await client.post("/api/chat", data={"message": "hello"})
        assert response.status_code == 200
        data = response.json()
        assert data["response"] == "Hello there!"
        assert data["conversation_name"] == "Friendly Greeting Chat"
        assert data["exchange_id"]
        assert [c["id"] for c in data["conversations"]] == [data["conversation_id"]]
        assert "lastUpdated" in data["conversations"][0]

        messages = (await client.get(f"/api/conversations/{data['conversation_id']}/messages")).json()
        assert [m["role"] for m in messages] == ["user", "model"]


@pytest.mark.asyncio
async def test_chat_with_attachment_removes_upload(tmp_path):
    """Test an uploaded file is processed, recorded and then deleted."""
    gateway = FakeGateway(chunks=["It says OCR."])
    app, _ = make_app(tmp_path, gateway=gateway)
    async with client_for(app) as client:
        response = await client.post(
            "/api/chat",
            data={"message": "read this", "exchange_id": "ex-42"},
            files={"file": ("sign.png", b"png-bytes", "image/png")},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["exchange_id"] == "ex-42"

        messages = (await client.get(f"/api/conversations/{data['conversation_id']}/messages")).json()
        assert messages[0]["file"]["original_name"] == "sign.png"
        assert messages[0]["file"]["mime_type"] == "image/png"

    assert os.listdir(tmp_path / "uploads") == []
    assert gateway.stream_calls[0][-1].parts[-1].extracted_text == "OCR"


@pytest.mark.asyncio
async def test_multi_turn_conversation(tmp_path):
    """Test a multi-turn flow on one conversation keeps every exchange."""
    app, _ = make_app(tmp_path)
    async with client_for(app) as client:
        first = (await client.post("/api/chat", data={"message": "My name is John"})).json()
        conversation_id = first["conversation_id"]

        for text in ["What's the best way to learn?", "Any books?", "Thanks!"]:
            response = await client.post(
                "/api/chat", data={"message": text, "conversation_id": conversation_id}
            )
            assert response.status_code == 200
            assert response.json()["conversation_name"] == first["conversation_name"]

        messages = (await client.get(f"/api/conversations/{conversation_id}/messages")).json()
        assert len(messages) == 8


@pytest.mark.asyncio
async def test_rate_limited_model_returns_429(tmp_path):
    """Test provider quota errors become a retry-later response."""
    app, _ = make_app(tmp_path, gateway=FakeGateway(stream_error=RateLimited("quota")))
    async with client_for(app) as client:
        response = await client.post("/api/chat", data={"message": "hello"})
        assert response.status_code == 429
        assert response.headers["Retry-After"]
        assert response.json()["detail"] == RateLimited.user_message
        assert (await client.get("/api/conversations")).json() == []


@pytest.mark.asyncio
async def test_rejected_content_returns_422(tmp_path):
    """Test content the model rejects is reported as a client error."""
    app, _ = make_app(tmp_path, gateway=FakeGateway(stream_error=InvalidContent("bad mime")))
    async with client_for(app) as client:
        response = await client.post("/api/chat", data={"message": "hello"})
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_failed_transcription_returns_422(tmp_path):
    """Test a failed audio job fails the request and cleans up the upload."""
    app, queue = make_app(tmp_path, transcriber=make_transcriber(error=RuntimeError("no speech")))
    await queue.start()
    try:
        async with client_for(app) as client:
            response = await client.post(
                "/api/chat",
                data={"message": "transcribe"},
                files={"file": ("memo.mp3", b"audio", "audio/mpeg")},
            )
            assert response.status_code == 422
            assert (await client.get("/api/conversations")).json() == []
    finally:
        await queue.cleanup()

    assert os.listdir(tmp_path / "uploads") == []


@pytest.mark.asyncio
async def test_conversation_management(tmp_path):
    """Test rename, clear, delete and listing endpoints."""
    repository = InMemoryRepository(DEFAULT_INSTRUCTION)
    await repository.append_messages(
        "c1",
        [Message(role=Role.USER, content="hi"), Message(role=Role.MODEL, content="hello")],
    )
    app, _ = make_app(tmp_path, repository=repository)
    async with client_for(app) as client:
        response = await client.post("/api/conversations/c1/name", json={"name": "Greetings"})
        assert response.status_code == 200
        listed = (await client.get("/api/conversations")).json()
        assert listed[0]["name"] == "Greetings"

        response = await client.post("/api/conversations/c1/name", json={"name": "  "})
        assert response.status_code == 422

        assert (await client.delete("/api/conversations/c1/messages")).status_code == 200
        assert (await client.get("/api/conversations/c1/messages")).json() == []

        assert (await client.delete("/api/conversations/c1")).json() == {"success": True}
        assert (await client.get("/api/conversations")).json() == []


@pytest.mark.asyncio
async def test_unknown_ids_are_not_errors(tmp_path):
    """Test unknown conversations read as empty and delete as a no-op."""
    app, _ = make_app(tmp_path)
    async with client_for(app) as client:
        response = await client.get("/api/conversations/nope/messages")
        assert response.status_code == 200
        assert response.json() == []

        response = await client.delete("/api/conversations/nope")
        assert response.status_code == 200
        assert response.json() == {"success": True}


@pytest.mark.asyncio
async def test_system_instruction_roundtrip(tmp_path):
    """Test reading, replacing and resetting the assistant instruction."""
    app, _ = make_app(tmp_path)
    async with client_for(app) as client:
        assert (await client.get("/api/system-instruction")).json() == {"instruction": DEFAULT_INSTRUCTION}

        await client.put("/api/system-instruction", json={"instruction": "Speak like a pirate."})
        assert (await client.get("/api/system-instruction")).json()["instruction"] == "Speak like a pirate."

        await client.put("/api/system-instruction", json={"instruction": ""})
        assert (await client.get("/api/system-instruction")).json()["instruction"] == DEFAULT_INSTRUCTION


@pytest.mark.asyncio
async def test_generate_conversation_name(tmp_path):
    """Test the standalone title endpoint."""
    app, _ = make_app(tmp_path, gateway=FakeGateway(title="Volcano Facts And Lava Flows Explained"))
    async with client_for(app) as client:
        response = await client.post("/api/conversation-name", json={"message": "tell me about volcanoes"})
        assert response.json() == {"name": "Volcano Facts And Lava Flows"}


@pytest.mark.asyncio
async def test_http_rate_limit(tmp_path):
    """Test the per-client limiter rejects requests beyond the budget."""
    app, _ = make_app(tmp_path, rate_limit=2)
    async with client_for(app) as client:
        first = await client.get("/api/conversations")
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert (await client.get("/api/conversations")).status_code == 200
        response = await client.get("/api/conversations")
        assert response.status_code == 429
        assert "Retry-After" in response.headers

        # Non-API paths are not limited
        metrics = await client.get("/metrics")
        assert metrics.status_code == 200
        assert "X-RateLimit-Remaining" not in metrics.headers


@pytest.mark.asyncio
async def test_metrics_endpoint(tmp_path):
    """Test Prometheus metrics are exposed."""
    app, _ = make_app(tmp_path)
    async with client_for(app) as client:
        await client.post("/api/chat", data={"message": "hello"})
        body = (await client.get("/metrics")).text
        assert "requests_total" in body
        assert "exchanges_total" in body


def test_route_label():
    assert route_label("/api/conversations/abc/messages") == "/api/conversations"
    assert route_label("/metrics?x=1") == "/metrics"
    assert route_label("/") == "/"


def test_websocket_streams_exchange(tmp_path):
    """Test a listener subscribed before the POST sees every chunk and one terminal event."""
    app, _ = make_app(tmp_path, gateway=FakeGateway(chunks=["Hel", "lo"]))
    with TestClient(app) as client:
        with client.websocket_connect("/ws/exchanges/ex-ws") as websocket:
            response = client.post("/api/chat", data={"message": "hi", "exchange_id": "ex-ws"})
            assert response.status_code == 200

            events = []
            while not events or not events[-1]["done"]:
                events.append(websocket.receive_json())

    assert [e["chunk"] for e in events] == ["Hel", "lo", ""]
    assert all(e["exchange_id"] == "ex-ws" for e in events)
    assert not events[-1]["error"]


def test_websocket_for_exchange_that_never_runs(tmp_path):
    """Test a listener can leave before its exchange ever starts."""
    app, _ = make_app(tmp_path)
    with TestClient(app) as client:
        with client.websocket_connect("/ws/exchanges/never"):
            assert app.state.broadcaster.listener_count("never") == 1
        assert app.state.broadcaster.listener_count("never") == 0


@pytest.mark.asyncio
async def test_detached_exchange_survives_cancelled_request():
    """Test a client going away does not cancel the exchange it started."""
    release = asyncio.Event()
    finished = []

    async def exchange():
        await release.wait()
        finished.append(True)
        return "done"

    caller = asyncio.create_task(run_detached(exchange()))
    await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    release.set()
    for _ in range(100):
        if finished:
            break
        await asyncio.sleep(0.01)
    assert finished == [True]


def test_application_is_built_by_factory():
    assert not hasattr(app_module, "app")
    assert callable(app_module.create_app)

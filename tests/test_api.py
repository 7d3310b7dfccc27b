import time
import uuid

import pytest
from fastapi.testclient import TestClient

from core.domain import PageText
from infrastructure.job_store import InMemoryJobStore
from main import app
from services.async_processor import BackgroundTaskRunner
from services.factory import (
    get_chat_repository,
    get_chunk_store,
    get_embedding_service,
    get_generation_client,
    get_job_store,
    get_page_extractor,
    get_task_runner,
)

from conftest import (
    FakeChatRepository, FakeChunkStore, FakeEmbedder, FakeExtractor, FakeGenerator, embedded_chunk
)

PDF_BYTES = b"%PDF-1.4\n%fake test document"
USER_HEADERS = {"X-User-Id": "alice"}


def _events(body: str):
    """Event names of an SSE body, in order."""
    return [line[len("event: "):] for line in body.splitlines() if line.startswith("event: ")]


@pytest.fixture
def backend():
    store = FakeChunkStore([
        embedded_chunk("Annual leave is 20 days per year.", chunk_id=1, pages=[2, 3]),
        embedded_chunk("Sick leave requires a medical note.", chunk_id=2, pages=[5]),
    ])
    fakes = {
        "store": store,
        "repository": FakeChatRepository(),
        "generator": FakeGenerator(["Leave is ", "20 days."]),
        "extractor": FakeExtractor([PageText(page=1, text="Remote work is allowed on Fridays. " * 5)]),
        "jobs": InMemoryJobStore(),
        "runner": BackgroundTaskRunner(),
    }
    app.dependency_overrides.update({
        get_chunk_store: lambda: store,
        get_embedding_service: lambda: FakeEmbedder(),
        get_generation_client: lambda: fakes["generator"],
        get_chat_repository: lambda: fakes["repository"],
        get_job_store: lambda: fakes["jobs"],
        get_page_extractor: lambda: fakes["extractor"],
        get_task_runner: lambda: fakes["runner"],
    })
    with TestClient(app) as client:
        fakes["client"] = client
        yield fakes
    app.dependency_overrides.clear()


def test_chat_streams_events_and_returns_session_header(backend) -> None:
    response = backend["client"].post("/chat", json={"query": "annual leave"}, headers=USER_HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    session_id = response.headers["x-session-id"]
    assert uuid.UUID(session_id).version == 4
    assert _events(response.text) == [
        "start", "status", "search_results", "status",
        "content", "content", "content", "citations", "complete",
    ]
    assert f'"session_id": "{session_id}"' in response.text


def test_chat_rejects_malformed_session_id(backend) -> None:
    response = backend["client"].post("/chat", json={"query": "leave", "session_id": "not-a-uuid"})

    assert response.status_code == 422
    assert backend["repository"].messages == []


def test_chat_rejects_invalid_request_body(backend) -> None:
    response = backend["client"].post("/chat", json={"query": ""})

    assert response.status_code == 422


def test_history_sessions_and_stats(backend) -> None:
    client = backend["client"]
    session_id = client.post("/chat", json={"query": "annual leave"}, headers=USER_HEADERS).headers["x-session-id"]

    history = client.get(f"/chat/history/{session_id}", headers=USER_HEADERS).json()
    sessions = client.get("/chat/sessions", headers=USER_HEADERS).json()
    stats = client.get(f"/chat/stats/{session_id}", headers=USER_HEADERS)
    foreign = client.get(f"/chat/stats/{session_id}", headers={"X-User-Id": "bob"})

    assert [m["role"] for m in history["messages"]] == ["user", "assistant"]
    assert history["has_more"] is False
    assert sessions["total"] == 1
    assert sessions["sessions"][0]["session_id"] == session_id
    assert stats.status_code == 200 and stats.json()["total_messages"] == 2
    assert foreign.status_code == 404


def test_delete_sessions(backend) -> None:
    client = backend["client"]
    session_id = client.post("/chat", json={"query": "annual leave"}, headers=USER_HEADERS).headers["x-session-id"]

    deleted = client.delete(f"/chat/sessions/{session_id}", headers=USER_HEADERS)
    missing = client.delete(f"/chat/sessions/{session_id}", headers=USER_HEADERS)
    cleared = client.delete("/chat/sessions", headers=USER_HEADERS)

    assert deleted.status_code == 200 and deleted.json()["deleted"] == 2
    assert missing.status_code == 404
    assert cleared.json() == {"status": "success", "message": "All sessions cleared successfully", "deleted": 0}


def test_suggest_questions(backend) -> None:
    response = backend["client"].post(
        "/chat/suggest", json={"session_id": str(uuid.uuid4()), "chunks": ["remote work policy"]}
    )

    assert response.status_code == 200
    assert response.json()["questions"][0] == "Tell me more about remote"


def test_search_returns_ranked_results_with_citations(backend) -> None:
    response = backend["client"].post("/search", json={"query": "annual leave", "top_k": 2})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["degraded"] is False
    assert body["total_results"] == len(body["results"]) >= 1
    top = body["results"][0]
    assert top["chunk_id"] == 1
    assert top["pages"] == [2, 3]
    assert top["content_snippet"] == "Annual leave is 20 days per year."
    assert body["citations"][0]["citation"] == "[policy.pdf, pp. 2-3]"


def test_search_with_whitespace_query_is_rejected(backend) -> None:
    response = backend["client"].post("/search", json={"query": "   "})

    assert response.status_code == 422


def test_upload_then_poll_status(backend) -> None:
    client = backend["client"]
    response = client.post(
        "/upload-document", files={"file": ("handbook.pdf", PDF_BYTES, "application/pdf")}
    )

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert response.json()["file_id"] == "handbook.pdf"

    status = None
    for _ in range(100):
        status = client.get(f"/upload-status/{job_id}").json()
        if status["status"] in ("completed", "failed"):
            break
        time.sleep(0.01)

    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert any(c.file_id == "handbook.pdf" for c in backend["store"].chunks)


def test_upload_rejects_non_pdf(backend) -> None:
    response = backend["client"].post("/upload-document", files={"file": ("notes.txt", b"hello", "text/plain")})

    assert response.status_code == 422
    assert len(backend["jobs"]) == 0


def test_reembed_document_runs_as_polled_job(backend) -> None:
    client = backend["client"]
    response = client.post("/documents/reembed", params={"file_id": "policy.pdf"})

    assert response.status_code == 202
    assert response.json()["file_id"] == "policy.pdf"

    status = None
    for _ in range(100):
        status = client.get(f"/upload-status/{response.json()['job_id']}").json()
        if status["status"] in ("completed", "failed"):
            break
        time.sleep(0.01)

    assert status["status"] == "completed"
    assert status["result"]["updated"] == 2


def test_unknown_upload_status_is_404(backend) -> None:
    response = backend["client"].get("/upload-status/missing")

    assert response.status_code == 404
    assert response.json()["detail"] == "No processing job found with this ID"


def test_document_listing_chunks_and_delete(backend) -> None:
    client = backend["client"]

    documents = client.get("/documents").json()["documents"]
    chunks = client.get("/documents/policy.pdf/chunks").json()["chunks"]
    deleted = client.delete("/documents/policy.pdf")
    missing = client.get("/documents/policy.pdf/chunks")

    assert documents[0]["file_id"] == "policy.pdf"
    assert documents[0]["total_chunks"] == 2
    assert [c["chunk_id"] for c in chunks] == [1, 2]
    assert chunks[0]["pages"][0]["page"] == 2
    assert deleted.json()["deleted"] == 2
    assert missing.status_code == 404


def test_health_reports_store_and_tasks(backend) -> None:
    body = backend["client"].get("/health").json()

    assert body["status"] == "healthy"
    assert body["chunks_indexed"] == 2
    assert body["embedding_model_loaded"] is False
    assert body["active_tasks"] == 0


def test_health_reports_unavailable_store(backend) -> None:
    class BrokenStore(FakeChunkStore):
        async def count(self, file_id=None):
            raise ConnectionError("store down")

    app.dependency_overrides[get_chunk_store] = lambda: BrokenStore()

    body = backend["client"].get("/health").json()

    assert body["status"] == "unhealthy"
    assert body["error"] == "Chunk store unavailable"

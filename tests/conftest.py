"""Shared fixtures: isolated storage paths and in-memory collaborators."""
import math
import os
import re
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

# Point every storage setting at a scratch directory before app modules import config
_SCRATCH = tempfile.mkdtemp(prefix="pagecite-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_SCRATCH, 'chat.db')}")
os.environ.setdefault("VECTOR_DB_PATH", os.path.join(_SCRATCH, "vector_db"))
os.environ.setdefault("LOG_FILE_PATH", os.path.join(_SCRATCH, "log", "pagecite.log"))

import pytest  # noqa: E402

from core.domain import (  # noqa: E402
    ChatMessage, DocumentChunk, IndexFailureReason, MessageRole, PageSpan, PageText
)
from core.exceptions import (  # noqa: E402
    EmbeddingUnavailable, PersistenceError, RetrievalIndexError, ValidationError
)
from core.interfaces import (  # noqa: E402
    IChatRepository, IChunkStore, IEmbeddingService, IGenerationClient, IPageExtractor
)
from utils.common import get_content_hash  # noqa: E402

DIMENSION = 8
_WORD = re.compile(r"\w+")


def bag_of_words(text: str, dimension: int = DIMENSION) -> List[float]:
    """Deterministic unit vector: word counts hashed into `dimension` buckets."""
    vector = [0.0] * dimension
    for word in _WORD.findall(text.lower()):
        vector[sum(ord(ch) for ch in word) % dimension] += 1.0
    norm = math.sqrt(sum(v * v for v in vector)) or 1.0
    return [v / norm for v in vector]


def make_chunk(
    content: str,
    chunk_id: int = 1,
    file_id: str = "policy.pdf",
    file_name: str = "policy.pdf",
    pages: Iterable[int] = (1,),
    embedding: Optional[List[float]] = None,
) -> DocumentChunk:
    return DocumentChunk(
        file_id=file_id,
        file_name=file_name,
        chunk_id=chunk_id,
        content=content,
        content_hash=get_content_hash(content),
        pages=[PageSpan(page=p, start_char=0, end_char=len(content)) for p in pages],
        embedding=embedding,
    )


class FakeChunkStore(IChunkStore):
    """
    List-backed chunk store.

    Vector queries use cosine similarity over stored embeddings, or the
    scores pinned in `vector_scores` (chunk key -> score) when present.
    `failing_indexes` maps index names to the failure they raise.
    """

    def __init__(self, chunks: Sequence[DocumentChunk] = ()):
        self.chunks: List[DocumentChunk] = list(chunks)
        self.vector_scores: Dict[str, float] = {}
        self.failing_indexes: Dict[str, IndexFailureReason] = {}
        self.empty_indexes: set = set()
        self.vector_calls: List[str] = []
        self.keyword_calls = 0
        self.fail_writes = False
        self.embedding_updates: List[int] = []

    def _scoped(self, file_id: Optional[str]) -> List[DocumentChunk]:
        return [c for c in self.chunks if not file_id or c.file_id == file_id]

    async def count(self, file_id: Optional[str] = None) -> int:
        return len(self._scoped(file_id))

    async def count_with_embeddings(self) -> int:
        return sum(1 for c in self.chunks if c.embedding is not None)

    async def vector_query(self, embedding, limit, index_name, file_id=None):
        self.vector_calls.append(index_name)
        if index_name in self.failing_indexes:
            raise RetrievalIndexError(index_name, self.failing_indexes[index_name])
        if index_name in self.empty_indexes:
            return []

        scored: List[Tuple[DocumentChunk, float]] = []
        for chunk in self._scoped(file_id):
            if chunk.key in self.vector_scores:
                score = self.vector_scores[chunk.key]
            elif chunk.embedding is not None:
                score = max(0.0, min(1.0, sum(a * b for a, b in zip(embedding, chunk.embedding))))
            else:
                continue
            scored.append((chunk, score))
        scored.sort(key=lambda item: -item[1])
        return scored[:limit]

    async def keyword_query(self, terms, limit, file_id=None):
        self.keyword_calls += 1
        terms = [t.lower() for t in terms if t]
        matches = [
            c for c in self._scoped(file_id)
            if any(t in c.content.lower() or t in c.file_name.lower() for t in terms)
        ]
        return matches[:limit]

    async def replace_file_chunks(self, file_id, chunks):
        if self.fail_writes:
            raise PersistenceError(f"Failed to store chunks for {file_id}")
        if any(c.embedding is None for c in chunks):
            raise ValidationError("Every chunk must carry an embedding before storage")
        self.chunks = [c for c in self.chunks if c.file_id != file_id]
        seen = {c.content_hash for c in self.chunks}
        inserted = 0
        for chunk in chunks:
            if chunk.content_hash in seen:
                continue
            seen.add(chunk.content_hash)
            self.chunks.append(chunk)
            inserted += 1
        return inserted

    async def update_embeddings(self, embeddings):
        if self.fail_writes:
            raise PersistenceError("Failed to update embeddings")
        self.embedding_updates.append(len(embeddings))
        updated = 0
        for i, chunk in enumerate(self.chunks):
            if chunk.key in embeddings:
                self.chunks[i] = replace(chunk, embedding=embeddings[chunk.key])
                updated += 1
        return updated

    async def get_chunks_by_file(self, file_id):
        return sorted(self._scoped(file_id), key=lambda c: c.chunk_id)

    async def delete_by_file(self, file_id):
        before = len(self.chunks)
        self.chunks = [c for c in self.chunks if c.file_id != file_id]
        return before - len(self.chunks)

    async def get_document_stats(self, file_id=None):
        grouped: Dict[str, List[DocumentChunk]] = {}
        for chunk in self._scoped(file_id):
            grouped.setdefault(chunk.file_id, []).append(chunk)
        return [
            {
                "file_id": fid,
                "file_name": chunks[0].file_name,
                "total_chunks": len(chunks),
                "avg_chunk_length": round(sum(len(c.content) for c in chunks) / len(chunks)),
                "total_pages": len({p for c in chunks for p in c.page_numbers}),
            }
            for fid, chunks in grouped.items()
        ]


class FakeEmbedder(IEmbeddingService):
    """Bag-of-words embedder; `failures` makes the next N calls raise EmbeddingUnavailable."""

    def __init__(self, dimension: int = DIMENSION, failures: int = 0):
        self._dimension = dimension
        self.failures = failures
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise EmbeddingUnavailable("Embedding model unavailable")

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text")
        self._maybe_fail()
        return bag_of_words(text, self._dimension)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        self._maybe_fail()
        return [bag_of_words(t, self._dimension) for t in texts]


class FakeGenerator(IGenerationClient):
    """
    Yields canned increments. `error` is raised after the increments;
    `on_increment(i)` runs before increment i is yielded.
    """

    def __init__(self, increments: Sequence[str] = ("Leave is ", "20 days."), error=None, on_increment=None):
        self.increments = list(increments)
        self.error = error
        self.on_increment = on_increment
        self.prompts: List[Tuple[str, str]] = []
        self.closed = False

    @property
    def model_id(self) -> str:
        return "fake-model"

    async def stream(self, prompt: str, system_prompt: str):
        self.prompts.append((prompt, system_prompt))
        try:
            for index, increment in enumerate(self.increments):
                if self.on_increment is not None:
                    self.on_increment(index)
                yield increment
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class FakeExtractor(IPageExtractor):
    def __init__(self, pages: Sequence[PageText] = (), error: Optional[Exception] = None):
        self.pages = list(pages)
        self.error = error

    async def extract(self, content: bytes) -> List[PageText]:
        if self.error is not None:
            raise self.error
        return list(self.pages)


class FakeChatRepository(IChatRepository):
    """In-memory repository with strictly increasing timestamps."""

    def __init__(self):
        self.messages: List[ChatMessage] = []
        self.fail_roles: set = set()
        self._next_id = 1
        self._clock = datetime(2024, 1, 1, 12, 0, 0)

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        if message.role in self.fail_roles:
            raise PersistenceError("Failed to save message")
        self._clock += timedelta(seconds=1)
        message.id = self._next_id
        message.created_at = message.created_at or self._clock
        self._next_id += 1
        self.messages.append(message)
        return message

    def _session(self, session_id: str, user_id: Optional[str] = None) -> List[ChatMessage]:
        return [
            m for m in self.messages
            if m.session_id == session_id and (user_id is None or m.user_id == user_id)
        ]

    async def get_session_owner(self, session_id):
        messages = self._session(session_id)
        return messages[0].user_id if messages else None

    async def get_recent_messages(self, session_id, limit, exclude_id=None):
        messages = [m for m in self._session(session_id) if m.id != exclude_id]
        return messages[-limit:]

    async def get_history(self, user_id, session_id, limit=20, before=None):
        messages = [
            m for m in self._session(session_id, user_id)
            if before is None or m.created_at < before
        ]
        newest_first = list(reversed(messages))
        page = newest_first[:limit]
        has_more = len(newest_first) > limit
        cursor = page[-1].created_at if has_more and page else None
        return list(reversed(page)), has_more, cursor

    async def get_latest_assistant_message(self, user_id, session_id):
        for message in reversed(self._session(session_id, user_id)):
            if message.role == MessageRole.ASSISTANT:
                return message
        return None

    async def list_sessions(self, user_id, limit=20, offset=0):
        sessions: Dict[str, List[ChatMessage]] = {}
        for message in self.messages:
            if message.user_id == user_id:
                sessions.setdefault(message.session_id, []).append(message)
        ordered = sorted(sessions.items(), key=lambda item: item[1][-1].created_at, reverse=True)
        return [
            {
                "session_id": sid,
                "last_message": msgs[-1].content[:100],
                "last_message_role": msgs[-1].role.value,
                "last_message_time": msgs[-1].created_at,
                "created_at": msgs[0].created_at,
                "message_count": len(msgs),
            }
            for sid, msgs in ordered[offset:offset + limit]
        ]

    async def delete_session(self, user_id, session_id):
        before = len(self.messages)
        self.messages = [
            m for m in self.messages if not (m.user_id == user_id and m.session_id == session_id)
        ]
        return before - len(self.messages)

    async def delete_user_sessions(self, user_id):
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.user_id != user_id]
        return before - len(self.messages)

    async def get_session_stats(self, user_id, session_id):
        messages = self._session(session_id, user_id)
        assistant = [m for m in messages if m.role == MessageRole.ASSISTANT]
        return {
            "session_id": session_id,
            "total_messages": len(messages),
            "user_messages": len(messages) - len(assistant),
            "assistant_messages": len(assistant),
            "total_chunks": sum(len(m.chunks) for m in assistant),
            "avg_response_time": 0,
            "first_message": messages[0].created_at if messages else None,
            "last_message": messages[-1].created_at if messages else None,
        }


def embedded_chunk(content: str, **kwargs: Any) -> DocumentChunk:
    """make_chunk with a bag-of-words embedding."""
    return make_chunk(content, embedding=bag_of_words(content), **kwargs)


@pytest.fixture
def chunk_store() -> FakeChunkStore:
    return FakeChunkStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def chat_repository() -> FakeChatRepository:
    return FakeChatRepository()


@pytest.fixture
def scratch_dir() -> str:
    return tempfile.mkdtemp(dir=_SCRATCH)


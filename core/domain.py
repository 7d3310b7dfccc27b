"""Shared enumerations and domain models used across the application."""
from enum import Enum

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Iterator

# ============= Enums =============

class SearchType(str, Enum):
    HYBRID = "hybrid"
    VECTOR = "vector"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class JobStatus(str, Enum):
    """Ingestion job lifecycle. Only forward transitions are legal."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ChatState(str, Enum):
    """Per-request chat turn states."""
    STARTED = "started"
    SEARCHING = "searching"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


class IndexFailureReason(str, Enum):
    """Why a vector index strategy could not answer."""
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    DIMENSION_MISMATCH = "dimension_mismatch"
    ERROR = "error"


class EventType(str, Enum):
    """Server-sent event names emitted during a chat turn."""
    START = "start"
    STATUS = "status"
    SEARCH_RESULTS = "search_results"
    CONTENT = "content"
    CITATIONS = "citations"
    COMPLETE = "complete"
    ERROR = "error"


# ============= Domain Models =============

@dataclass
class PageText:
    """Plain text of one PDF page (1-based page number)."""
    page: int
    text: str


@dataclass(frozen=True)
class PageSpan:
    """Character range of a chunk's (untrimmed) window that came from one page."""
    page: int
    start_char: int
    end_char: int

    def to_dict(self) -> Dict[str, int]:
        return {"page": self.page, "startChar": self.start_char, "endChar": self.end_char}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'PageSpan':
        return PageSpan(
            page=int(data["page"]),
            start_char=int(data.get("startChar", data.get("start_char", 0))),
            end_char=int(data.get("endChar", data.get("end_char", 0))),
        )


@dataclass
class DocumentChunk:
    """Domain model for document chunks"""
    file_id: str
    file_name: str
    chunk_id: int
    content: str
    content_hash: str
    pages: List[PageSpan] = field(default_factory=list)
    embedding: Optional[List[float]] = None  # Vector of float numbers

    @property
    def key(self) -> str:
        """Store-wide identity of the chunk."""
        return f"{self.file_id}::chunk_{self.chunk_id}"

    @property
    def page_numbers(self) -> List[int]:
        return sorted({span.page for span in self.pages})


@dataclass
class RetrievalResult:
    """One fused search hit. Ranks are 0-based positions in the source lists."""
    chunk: DocumentChunk
    vector_score: float = 0.0
    keyword_score: float = 0.0
    combined_score: float = 0.0
    vector_rank: Optional[int] = None
    keyword_rank: Optional[int] = None

    @property
    def page_references(self) -> List[int]:
        return self.chunk.page_numbers

    @property
    def source(self) -> str:
        return self.chunk.file_name or "Unknown Document"


@dataclass
class SearchOptions:
    """Retrieval knobs. min_score applies to the combined score."""
    limit: int = 10
    min_score: float = 0.02
    file_id: Optional[str] = None
    vector_weight: float = 0.7
    keyword_weight: float = 0.3
    search_type: SearchType = SearchType.HYBRID


@dataclass
class RetrievalResultSet:
    """Ranked results plus quality markers for downstream messaging."""
    results: List[RetrievalResult] = field(default_factory=list)
    degraded: bool = False
    index_used: Optional[str] = None
    search_type: SearchType = SearchType.HYBRID

    def __iter__(self) -> Iterator[RetrievalResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index: int) -> RetrievalResult:
        return self.results[index]


@dataclass
class Citation:
    """A source reference derived from one or more retrieval results."""
    source: str
    pages: List[int]
    page_range_text: str
    confidence: float
    chunk_references: List[int] = field(default_factory=list)

    @property
    def text(self) -> str:
        if not self.pages:
            return f"[{self.source}]"
        return f"[{self.source}, {self.page_range_text}]"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "pages": list(self.pages),
            "pageRangeText": self.page_range_text,
            "confidence": self.confidence,
            "chunkReferences": list(self.chunk_references),
            "citation": self.text,
        }


@dataclass
class ChatMessage:
    """Persisted conversation turn"""
    user_id: str
    session_id: str
    role: MessageRole
    content: str
    chunks: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self, include_context: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "sessionId": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        if include_context:
            data["chunks"] = self.chunks
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_JOB_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


@dataclass
class IngestionJob:
    """
    Background ingestion state. Written only by its own worker task.

    Usage: start() → advance()* → complete()/fail(). Progress never decreases
    and terminal states are final.
    """
    id: str
    file_id: str
    file_name: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    message: str = "Job created, waiting to start processing..."
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def _transition(self, new_status: JobStatus) -> None:
        from core.exceptions import JobTransitionError
        if new_status not in _JOB_TRANSITIONS[self.status]:
            raise JobTransitionError(self.id, self.status.value, new_status.value)
        self.status = new_status

    def _touch(self, progress: Optional[int], message: Optional[str]) -> None:
        if progress is not None:
            self.progress = max(self.progress, min(100, int(progress)))
        if message is not None:
            self.message = message
        self.updated_at = _utcnow()

    def start(self, message: str = "Starting PDF processing...", progress: int = 10) -> None:
        self._transition(JobStatus.PROCESSING)
        self._touch(progress, message)

    def advance(self, progress: int, message: str) -> None:
        from core.exceptions import JobTransitionError
        if self.status != JobStatus.PROCESSING:
            raise JobTransitionError(self.id, self.status.value, JobStatus.PROCESSING.value)
        self._touch(progress, message)

    def complete(self, result: Dict[str, Any], message: str) -> None:
        self._transition(JobStatus.COMPLETED)
        self.result = result
        self._touch(100, message)

    def fail(self, error: str) -> None:
        self._transition(JobStatus.FAILED)
        self.error = error
        self._touch(None, f"Processing failed: {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "result": self.result,
            "file_id": self.file_id,
            "file_name": self.file_name,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

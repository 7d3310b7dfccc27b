"""Error taxonomy shared by every layer of the RAG backend."""
from typing import Optional

from core.domain import IndexFailureReason


class RAGError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(RAGError):
    """Malformed query, session id or chunking parameters. Raised before any side effect."""


class EmbeddingUnavailable(RAGError):
    """Embedding model could not be loaded, failed, or timed out."""


class RetrievalIndexError(RAGError):
    """A vector query failed against one named index strategy."""

    def __init__(self, index_name: str, reason: IndexFailureReason, detail: Optional[str] = None):
        self.index_name = index_name
        self.reason = reason
        self.detail = detail
        super().__init__(f"Vector index '{index_name}' failed: {reason.value}"
                         + (f" ({detail})" if detail else ""))


class GenerationError(RAGError):
    """Completion capability failed or timed out. Terminal for the current turn."""


class PersistenceError(RAGError):
    """A store write failed."""


class ChatStateError(RAGError):
    """Illegal chat turn state transition."""


class JobTransitionError(RAGError):
    """Illegal ingestion job status transition."""

    def __init__(self, job_id: str, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id}: cannot move from '{current}' to '{requested}'")

# core/interfaces.py
"""Core interfaces for the RAG system"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, List, Dict, Any, Optional, Tuple

from core.domain import ChatMessage, DocumentChunk, IngestionJob, PageText

# ============= Chunk Store Interface =============
class IChunkStore(ABC):
    """
    Document/vector store collaborator.

    Holds chunks with content, page spans, hash and embedding. Vector queries
    are addressed to a named index strategy and raise RetrievalIndexError
    when that strategy cannot answer.
    """

    @abstractmethod
    async def count(self, file_id: Optional[str] = None) -> int:
        """Total number of chunks (optionally for one file)"""
        pass

    @abstractmethod
    async def count_with_embeddings(self) -> int:
        """Number of chunks that carry an embedding"""
        pass

    @abstractmethod
    async def vector_query(
        self,
        embedding: List[float],
        limit: int,
        index_name: str,
        file_id: Optional[str] = None
    ) -> List[Tuple[DocumentChunk, float]]:
        """Nearest chunks with cosine similarity in [0,1], best first"""
        pass

    @abstractmethod
    async def keyword_query(
        self,
        terms: List[str],
        limit: int,
        file_id: Optional[str] = None
    ) -> List[DocumentChunk]:
        """First `limit` chunks whose content or file name contains any term (case-insensitive), in store order"""
        pass

    @abstractmethod
    async def replace_file_chunks(self, file_id: str, chunks: List[DocumentChunk]) -> int:
        """Delete every chunk of file_id, then insert chunks. Returns number inserted."""
        pass

    @abstractmethod
    async def update_embeddings(self, embeddings: Dict[str, List[float]]) -> int:
        """Replace the embedding of existing chunks, keyed by chunk key. Content is untouched. Returns number updated."""
        pass

    @abstractmethod
    async def get_chunks_by_file(self, file_id: str) -> List[DocumentChunk]:
        """All chunks of one file ordered by chunk id"""
        pass

    @abstractmethod
    async def delete_by_file(self, file_id: str) -> int:
        """Delete all chunks for a file"""
        pass

    @abstractmethod
    async def get_document_stats(self, file_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Chunk count, page count and average chunk length per file"""
        pass

# ============= Embedding Service Interface =============
class IEmbeddingService(ABC):
    """Interface for embedding generation"""

    @property
    @abstractmethod
    def dimension(self) -> int:
        pass

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embedding for a single text"""
        pass

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embeddings in input order"""
        pass

# ============= Generation Interface =============
class IGenerationClient(ABC):
    """Streaming text completion collaborator"""

    @property
    @abstractmethod
    def model_id(self) -> str:
        pass

    @abstractmethod
    def stream(self, prompt: str, system_prompt: str) -> AsyncIterator[str]:
        """Yield text increments. Raises GenerationError on failure or timeout."""
        pass

# ============= Page Extraction Interface =============
class IPageExtractor(ABC):
    """Raw PDF bytes to per-page text"""

    @abstractmethod
    async def extract(self, content: bytes) -> List[PageText]:
        pass

# ============= Job Store Interface =============
class IJobStore(ABC):
    """Ingestion job persistence. Swap the in-memory store for Redis etc."""

    @abstractmethod
    async def put(self, job: IngestionJob) -> None:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[IngestionJob]:
        pass

    @abstractmethod
    async def sweep(self, max_age_sec: float) -> int:
        """Evict jobs created more than max_age_sec ago. Returns number removed."""
        pass

# ============= Repository Interfaces =============
class IChatRepository(ABC):
    """
    Interface for chat message persistence.

    Messages are append-only; deletion happens in bulk per session or per user.
    """

    @abstractmethod
    async def add_message(self, message: ChatMessage) -> ChatMessage:
        """Persist a message and return it with id and created_at set"""
        pass

    @abstractmethod
    async def get_session_owner(self, session_id: str) -> Optional[str]:
        """User id owning the session, or None for an unknown session"""
        pass

    @abstractmethod
    async def get_recent_messages(
        self,
        session_id: str,
        limit: int,
        exclude_id: Optional[int] = None
    ) -> List[ChatMessage]:
        """Newest `limit` messages of a session in chronological order"""
        pass

    @abstractmethod
    async def get_history(
        self,
        user_id: str,
        session_id: str,
        limit: int = 20,
        before: Optional[datetime] = None
    ) -> Tuple[List[ChatMessage], bool, Optional[datetime]]:
        """Page of messages (chronological), has_more flag and next cursor"""
        pass

    @abstractmethod
    async def get_latest_assistant_message(self, user_id: str, session_id: str) -> Optional[ChatMessage]:
        pass

    @abstractmethod
    async def list_sessions(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete_session(self, user_id: str, session_id: str) -> int:
        pass

    @abstractmethod
    async def delete_user_sessions(self, user_id: str) -> int:
        pass

    @abstractmethod
    async def get_session_stats(self, user_id: str, session_id: str) -> Dict[str, Any]:
        pass

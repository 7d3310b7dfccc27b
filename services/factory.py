# services/factory.py
"""Provider functions wired with FastAPI Depends (override them in tests)"""
from functools import lru_cache

from fastapi import Depends, Header

from config import settings
from core.interfaces import (
    IChatRepository, IChunkStore, IEmbeddingService, IGenerationClient,
    IJobStore, IPageExtractor
)
from infrastructure.embedding_services import SentenceTransformerEmbedding
from infrastructure.job_store import InMemoryJobStore
from infrastructure.pdf_extractors import PyMuPDFPageExtractor
from infrastructure.repositories import SQLChatRepository
from infrastructure.vector_stores import ChromaChunkStore, create_chroma_client
from services.async_processor import BackgroundTaskRunner
from services.chat_service import ChatService
from services.citations import CitationFormatter
from services.ingestion import IngestionManager
from services.llm_service import LLMService
from services.retrieval import RetrievalEngine

ANONYMOUS_USER = "anonymous"

# Process-wide singletons
@lru_cache(maxsize=1)
def get_chunk_store() -> IChunkStore:
    """Create chunk store based on configuration."""
    return ChromaChunkStore(create_chroma_client(settings.VECTOR_DB_PATH))

@lru_cache(maxsize=1)
def get_embedding_service() -> IEmbeddingService:
    """Create embedding service; the model itself loads on first use."""
    return SentenceTransformerEmbedding(settings.EMBEDDING_MODEL_NAME)

@lru_cache(maxsize=1)
def get_generation_client() -> IGenerationClient:
    return LLMService(settings.LLM_BASE_URL, settings.LLM_MODEL_NAME)

@lru_cache(maxsize=1)
def get_chat_repository() -> IChatRepository:
    return SQLChatRepository()

@lru_cache(maxsize=1)
def get_job_store() -> IJobStore:
    # Future: RedisJobStore for multi-process deployments
    return InMemoryJobStore(settings.JOB_STORE_MAX_ENTRIES)

@lru_cache(maxsize=1)
def get_page_extractor() -> IPageExtractor:
    return PyMuPDFPageExtractor()

@lru_cache(maxsize=1)
def get_task_runner() -> BackgroundTaskRunner:
    return BackgroundTaskRunner()

# Request-scoped composition
def get_user_id(x_user_id: str = Header(default=ANONYMOUS_USER)) -> str:
    """Caller identity arrives as a plain header; authentication is out of scope."""
    return x_user_id.strip() or ANONYMOUS_USER

def get_retrieval_engine(
    chunk_store: IChunkStore = Depends(get_chunk_store),
    embedding_service: IEmbeddingService = Depends(get_embedding_service),
) -> RetrievalEngine:
    return RetrievalEngine(chunk_store, embedding_service, settings.VECTOR_INDEX_STRATEGIES)

def get_citation_formatter() -> CitationFormatter:
    return CitationFormatter()

def get_chat_service(
    retrieval: RetrievalEngine = Depends(get_retrieval_engine),
    repository: IChatRepository = Depends(get_chat_repository),
    generator: IGenerationClient = Depends(get_generation_client),
    citation_formatter: CitationFormatter = Depends(get_citation_formatter),
) -> ChatService:
    """
    Create chat service with full dependency injection.

    FastAPI automatically provides all dependencies based on their providers.
    Easy to override individual components for testing.
    """
    return ChatService(
        retrieval=retrieval,
        repository=repository,
        generator=generator,
        citation_formatter=citation_formatter,
    )

def get_ingestion_manager(
    job_store: IJobStore = Depends(get_job_store),
    extractor: IPageExtractor = Depends(get_page_extractor),
    embedding_service: IEmbeddingService = Depends(get_embedding_service),
    chunk_store: IChunkStore = Depends(get_chunk_store),
    runner: BackgroundTaskRunner = Depends(get_task_runner),
) -> IngestionManager:
    return IngestionManager(job_store, extractor, embedding_service, chunk_store, runner)

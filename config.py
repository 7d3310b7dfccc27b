"""Application configuration"""
from typing import List
from pydantic_settings import BaseSettings
from utils.common import get_log_file_path

class Settings(BaseSettings):
    """Application configuration"""

    # Logger configuration
    LOGGER_NAME: str = "pagecite"
    LOG_FILE_PATH: str = get_log_file_path()
    LOG_LEVEL: str = "INFO"
    LOG_MAX_BYTES: int = 5 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./chat.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour

    # Chunk store (ChromaDB)
    VECTOR_DB_PATH: str = "./vector_db"
    CHUNK_COLLECTION_NAME: str = "document_chunks"
    STORE_TIMEOUT_SEC: float = 10.0

    # Embedding model
    EMBEDDING_MODEL_NAME: str = "all-MiniLM-L6-v2"
    EMBEDDING_DIMENSION: int = 384
    EMBEDDING_TIMEOUT_SEC: float = 60.0

    # Document processing
    CHUNK_SIZE: int = 800
    CHUNK_OVERLAP: int = 100
    MAX_FILE_SIZE: int = 50 * 1024 * 1024
    DOCUMENT_EXTENSIONS: List[str] = ["pdf"]

    # Hybrid retrieval
    SEARCH_VECTOR_WEIGHT: float = 0.7
    SEARCH_KEYWORD_WEIGHT: float = 0.3
    SEARCH_MIN_SCORE: float = 0.02  # MiniLM cosine similarities run low
    SEARCH_CANDIDATE_FACTOR: float = 1.5
    DEFAULT_SEARCH_RESULTS: int = 3
    VECTOR_INDEX_STRATEGIES: List[str] = ["hnsw", "exact"]

    # Generation (Ollama-compatible API)
    LLM_BASE_URL: str = "http://localhost:11434"
    LLM_MODEL_NAME: str = "llama3.1:8b"
    LLM_TIMEOUT_SEC: float = 60.0

    # Chat
    CHAT_TOP_K: int = 3
    CONTEXT_TOKEN_BUDGET: int = 4000
    CONTEXT_MAX_TURNS: int = 3
    CONTEXT_MAX_MESSAGES: int = 6
    SNIPPET_LENGTH: int = 300
    PREVIEW_LENGTH: int = 100
    STREAM_QUEUE_SIZE: int = 64

    # Background ingestion jobs
    JOB_RETENTION_SEC: int = 24 * 60 * 60
    JOB_SWEEP_INTERVAL_SEC: int = 15 * 60
    JOB_STORE_MAX_ENTRIES: int = 500
    INGEST_EMBED_ATTEMPTS: int = 3
    INGEST_RETRY_DELAY_SEC: float = 1.0
    REEMBED_BATCH_SIZE: int = 64

    # App metadata
    APP_TITLE: str = "PageCite RAG Backend"
    APP_VERSION: str = "1.0.0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()

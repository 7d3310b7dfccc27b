# api/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from config import settings
from core.domain import JobStatus, SearchType


# ---------- Chat ----------
class ChatRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    session_id: Optional[str] = None
    search_type: SearchType = SearchType.HYBRID
    top_k: int = Field(default=settings.CHAT_TOP_K, ge=1, le=10)
    file_id: Optional[str] = None


class HistoryResponse(BaseModel):
    session_id: str
    messages: List[Dict[str, Any]]
    has_more: bool
    next_cursor: Optional[str] = None


class SessionItem(BaseModel):
    session_id: str
    last_message: str
    last_message_role: str
    last_message_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    message_count: int


class SessionListResponse(BaseModel):
    sessions: List[SessionItem]
    total: int


class SessionStatsResponse(BaseModel):
    session_id: str
    total_messages: int
    user_messages: int
    assistant_messages: int
    total_chunks: int
    avg_response_time: float
    first_message: Optional[datetime] = None
    last_message: Optional[datetime] = None


class SuggestRequest(BaseModel):
    session_id: str
    chunks: Optional[List[Union[str, Dict[str, Any]]]] = None


class SuggestResponse(BaseModel):
    session_id: str
    questions: List[str]


# ---------- Search ----------
class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    search_type: SearchType = SearchType.HYBRID
    top_k: int = Field(default=settings.DEFAULT_SEARCH_RESULTS, ge=1, le=100)
    file_id: Optional[str] = None


class SearchResultItem(BaseModel):
    chunk_id: int
    file_id: str
    file_name: str
    content_snippet: str
    pages: List[int]
    vector_score: float
    keyword_score: float
    combined_score: float


class SearchResponse(BaseModel):
    status: str
    query: str
    results: List[SearchResultItem]
    citations: List[Dict[str, Any]]
    total_results: int
    degraded: bool = False


# ---------- Documents ----------
class UploadResponse(BaseModel):
    job_id: str
    status: JobStatus
    file_id: str
    message: str


class JobStatusResponse(BaseModel):
    id: str
    status: JobStatus
    progress: int
    message: str
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    file_id: str
    file_name: str
    created_at: datetime
    updated_at: datetime


class DocumentStats(BaseModel):
    file_id: str
    file_name: str
    total_chunks: int
    avg_chunk_length: float
    total_pages: int


class DocumentsListResponse(BaseModel):
    documents: List[DocumentStats]


class ChunkItem(BaseModel):
    chunk_id: int
    content: str
    pages: List[Dict[str, int]]


class ChunkListResponse(BaseModel):
    file_id: str
    chunks: List[ChunkItem]


class DeleteResponse(BaseModel):
    status: str
    message: str
    deleted: int = 0


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    chunks_indexed: Optional[int] = None
    embedding_model_loaded: Optional[bool] = None
    active_tasks: Optional[int] = None
    error: Optional[str] = None

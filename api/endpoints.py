# api/endpoints.py
"""
API endpoints for the PageCite chat backend.

Caller identity is the plain X-User-Id header (no authentication). Session
ownership is still enforced so one caller cannot read or extend another
caller's conversation.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse

from api.schemas import (
    ChatRequest,
    ChunkItem,
    ChunkListResponse,
    DeleteResponse,
    DocumentStats,
    DocumentsListResponse,
    HealthResponse,
    HistoryResponse,
    JobStatusResponse,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
    SessionItem,
    SessionListResponse,
    SessionStatsResponse,
    SuggestRequest,
    SuggestResponse,
    UploadResponse,
)
from config import settings
from core.domain import SearchOptions
from core.interfaces import IChunkStore, IEmbeddingService
from services.async_processor import BackgroundTaskRunner
from services.chat_service import ChatService
from services.citations import CitationFormatter
from services.factory import (
    get_chat_service,
    get_chunk_store,
    get_citation_formatter,
    get_embedding_service,
    get_ingestion_manager,
    get_retrieval_engine,
    get_task_runner,
    get_user_id,
)
from services.ingestion import IngestionManager
from services.retrieval import RetrievalEngine
from services.streaming import sse_stream
from utils.common import make_preview

logger = logging.getLogger(settings.LOGGER_NAME)

router = APIRouter()


def _search_options(top_k: int, search_type, file_id: Optional[str]) -> SearchOptions:
    return SearchOptions(
        limit=top_k,
        min_score=settings.SEARCH_MIN_SCORE,
        file_id=file_id or None,
        vector_weight=settings.SEARCH_VECTOR_WEIGHT,
        keyword_weight=settings.SEARCH_KEYWORD_WEIGHT,
        search_type=search_type,
    )


# ---------- Chat (SSE) ----------
@router.post("/chat")
async def chat(
    request: ChatRequest,
    user_id: str = Depends(get_user_id),
    chat_service: ChatService = Depends(get_chat_service),
    runner: BackgroundTaskRunner = Depends(get_task_runner),
) -> StreamingResponse:
    """
    Stream one chat turn as server-sent events.

    Event order: start, status, search_results, status, content*, citations,
    complete. A failing turn ends with a single error event instead.
    """
    session_id, channel = await chat_service.start_chat(
        runner,
        request.query,
        user_id,
        session_id=request.session_id,
        options=_search_options(request.top_k, request.search_type, request.file_id),
    )
    return StreamingResponse(
        sse_stream(channel),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Session-Id": session_id,
        },
    )


@router.get("/chat/history/{session_id}", response_model=HistoryResponse)
async def get_chat_history(
    session_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    before: Optional[datetime] = None,
    include_context: bool = True,
    user_id: str = Depends(get_user_id),
    chat_service: ChatService = Depends(get_chat_service),
) -> HistoryResponse:
    history = await chat_service.get_history(
        user_id, session_id, limit=limit, before=before, include_context=include_context
    )
    return HistoryResponse(**history)


@router.get("/chat/sessions", response_model=SessionListResponse)
async def list_chat_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_user_id),
    chat_service: ChatService = Depends(get_chat_service),
) -> SessionListResponse:
    sessions = await chat_service.list_sessions(user_id, limit=limit, offset=offset)
    return SessionListResponse(
        sessions=[SessionItem(**s) for s in sessions],
        total=len(sessions),
    )


@router.delete("/chat/sessions/{session_id}", response_model=DeleteResponse)
async def delete_chat_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    chat_service: ChatService = Depends(get_chat_service),
) -> DeleteResponse:
    deleted = await chat_service.delete_session(user_id, session_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return DeleteResponse(status="success", message="Session deleted successfully", deleted=deleted)


@router.delete("/chat/sessions", response_model=DeleteResponse)
async def delete_all_chat_sessions(
    user_id: str = Depends(get_user_id),
    chat_service: ChatService = Depends(get_chat_service),
) -> DeleteResponse:
    deleted = await chat_service.delete_all_sessions(user_id)
    return DeleteResponse(status="success", message="All sessions cleared successfully", deleted=deleted)


@router.get("/chat/stats/{session_id}", response_model=SessionStatsResponse)
async def get_chat_stats(
    session_id: str,
    user_id: str = Depends(get_user_id),
    chat_service: ChatService = Depends(get_chat_service),
) -> SessionStatsResponse:
    stats = await chat_service.get_session_stats(user_id, session_id)
    if not stats["total_messages"]:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionStatsResponse(**stats)


@router.post("/chat/suggest", response_model=SuggestResponse)
async def suggest_questions(
    request: SuggestRequest,
    user_id: str = Depends(get_user_id),
    chat_service: ChatService = Depends(get_chat_service),
) -> SuggestResponse:
    questions = await chat_service.suggest_questions(user_id, request.session_id, request.chunks)
    return SuggestResponse(session_id=request.session_id, questions=questions)


# ---------- Search ----------
@router.post("/search", response_model=SearchResponse)
async def search_endpoint(
    request: SearchRequest,
    retrieval: RetrievalEngine = Depends(get_retrieval_engine),
    citation_formatter: CitationFormatter = Depends(get_citation_formatter),
) -> SearchResponse:
    result_set = await retrieval.search(
        request.query, _search_options(request.top_k, request.search_type, request.file_id)
    )

    results = [
        SearchResultItem(
            chunk_id=r.chunk.chunk_id,
            file_id=r.chunk.file_id,
            file_name=r.source,
            content_snippet=make_preview(r.chunk.content, settings.SNIPPET_LENGTH),
            pages=r.page_references,
            vector_score=round(r.vector_score, 4),
            keyword_score=round(r.keyword_score, 4),
            combined_score=round(r.combined_score, 4),
        )
        for r in result_set
    ]
    citations = citation_formatter.format(result_set.results)

    return SearchResponse(
        status="success",
        query=request.query,
        results=results,
        citations=[c.to_dict() for c in citations],
        total_results=len(results),
        degraded=result_set.degraded,
    )


# ---------- Upload ----------
@router.post("/upload-document", response_model=UploadResponse, status_code=202)
async def upload_document(
    file: UploadFile = File(...),
    ingestion: IngestionManager = Depends(get_ingestion_manager),
) -> UploadResponse:
    content = await file.read()
    job_id = await ingestion.submit(file.filename or "", content)
    job = await ingestion.status(job_id)
    return UploadResponse(
        job_id=job_id,
        status=job.status,
        file_id=job.file_id,
        message="Document accepted for processing",
    )


@router.get("/upload-status/{job_id}", response_model=JobStatusResponse)
async def get_upload_status(
    job_id: str,
    ingestion: IngestionManager = Depends(get_ingestion_manager),
) -> JobStatusResponse:
    """Poll the progress of a background ingestion job."""
    job = await ingestion.status(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="No processing job found with this ID")
    return JobStatusResponse(**job.to_dict())


# ---------- Documents ----------
@router.get("/documents", response_model=DocumentsListResponse)
async def list_documents(
    ingestion: IngestionManager = Depends(get_ingestion_manager),
) -> DocumentsListResponse:
    stats = await ingestion.document_stats()
    return DocumentsListResponse(documents=[DocumentStats(**s) for s in stats])


@router.post("/documents/reembed", response_model=UploadResponse, status_code=202)
async def reembed_documents(
    file_id: Optional[str] = Query(None),
    ingestion: IngestionManager = Depends(get_ingestion_manager),
) -> UploadResponse:
    """Recompute stored embeddings (all documents, or one) as a background job."""
    job_id = await ingestion.submit_reembed(file_id)
    job = await ingestion.status(job_id)
    return UploadResponse(
        job_id=job_id,
        status=job.status,
        file_id=job.file_id,
        message="Re-embedding accepted for processing",
    )


@router.get("/documents/{file_id}/chunks", response_model=ChunkListResponse)
async def list_document_chunks(
    file_id: str,
    ingestion: IngestionManager = Depends(get_ingestion_manager),
) -> ChunkListResponse:
    chunks = await ingestion.list_chunks(file_id)
    if not chunks:
        raise HTTPException(status_code=404, detail="Document not found")
    return ChunkListResponse(
        file_id=file_id,
        chunks=[
            ChunkItem(chunk_id=c.chunk_id, content=c.content, pages=[p.to_dict() for p in c.pages])
            for c in chunks
        ],
    )


@router.delete("/documents/{file_id}", response_model=DeleteResponse)
async def delete_document(
    file_id: str,
    ingestion: IngestionManager = Depends(get_ingestion_manager),
) -> DeleteResponse:
    deleted = await ingestion.delete_document(file_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Document not found")
    return DeleteResponse(status="success", message="Document deleted successfully", deleted=deleted)


# ---------- Health Check ----------
@router.get("/health", response_model=HealthResponse)
async def health_check(
    chunk_store: IChunkStore = Depends(get_chunk_store),
    embedding_service: IEmbeddingService = Depends(get_embedding_service),
    runner: BackgroundTaskRunner = Depends(get_task_runner),
) -> HealthResponse:
    """
    System health check endpoint.

    Returns:
        - status: healthy/unhealthy
        - chunks_indexed: Number of chunks in the chunk store
        - embedding_model_loaded: Whether the embedding model is in memory
        - active_tasks: Background ingestion jobs and chat turns in flight
    """
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        count = await chunk_store.count()
    except Exception as e:
        logger.warning(f"[HEALTH] Chunk store unavailable: {e}")
        return HealthResponse(status="unhealthy", timestamp=timestamp, error="Chunk store unavailable")

    return HealthResponse(
        status="healthy",
        timestamp=timestamp,
        chunks_indexed=count,
        embedding_model_loaded=bool(getattr(embedding_service, "loaded", False)),
        active_tasks=runner.active_count,
    )

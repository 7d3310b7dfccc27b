# services/ingestion.py
"""Background PDF ingestion: extract → chunk → embed → store, tracked as jobs"""
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from config import settings
from core.domain import DocumentChunk, IngestionJob
from core.exceptions import EmbeddingUnavailable, RAGError
from core.interfaces import IChunkStore, IEmbeddingService, IJobStore, IPageExtractor
from services.async_processor import BackgroundTaskRunner
from services.chunker import chunk_pages
from utils.common import sanitize_filename, validate_upload

logger = logging.getLogger(settings.LOGGER_NAME)

INTERNAL_FAILURE = "Internal error while processing document"
ALL_DOCUMENTS = "*"


class IngestionManager:
    """
    Accepts uploads and runs the ingestion pipeline as background jobs.

    Usage: submit() returns a job id immediately; clients poll status().
    A failing stage marks the job failed and skips the rest. Stages already
    committed are not rolled back, so a re-ingested file can briefly have
    zero chunks.
    """

    def __init__(
        self,
        job_store: IJobStore,
        extractor: IPageExtractor,
        embedding_service: IEmbeddingService,
        chunk_store: IChunkStore,
        runner: BackgroundTaskRunner,
        chunk_size: int = settings.CHUNK_SIZE,
        chunk_overlap: int = settings.CHUNK_OVERLAP,
        embed_attempts: int = settings.INGEST_EMBED_ATTEMPTS,
        retry_delay_sec: float = settings.INGEST_RETRY_DELAY_SEC,
        reembed_batch_size: int = settings.REEMBED_BATCH_SIZE,
    ):
        self.job_store = job_store
        self.extractor = extractor
        self.embedding_service = embedding_service
        self.chunk_store = chunk_store
        self.runner = runner
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.embed_attempts = max(1, embed_attempts)
        self.retry_delay_sec = retry_delay_sec
        self.reembed_batch_size = max(1, reembed_batch_size)

    async def submit(self, file_name: str, content: bytes, file_id: Optional[str] = None) -> str:
        """
        Validate the upload, register a pending job and schedule the pipeline.

        Raises:
            ValidationError: bad extension, empty/oversized file or not a PDF
        """
        validate_upload(file_name, content)
        job = IngestionJob(
            id=str(uuid.uuid4()),
            file_id=file_id or sanitize_filename(file_name),
            file_name=file_name,
        )
        await self.job_store.put(job)
        self.runner.submit_task(self._process(job, content), name=f"ingest-{job.id}")
        logger.info(f"[INGEST] Job {job.id} queued for {file_name} (file_id={job.file_id})")
        return job.id

    async def status(self, job_id: str) -> Optional[IngestionJob]:
        return await self.job_store.get(job_id)

    async def _update(self, job: IngestionJob, progress: int, message: str) -> None:
        job.advance(progress, message)
        await self.job_store.put(job)
        logger.debug(f"[INGEST] Job {job.id}: {progress}% {message}")

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        for attempt in range(1, self.embed_attempts + 1):
            try:
                return await self.embedding_service.embed_batch(texts)
            except EmbeddingUnavailable as e:
                if attempt == self.embed_attempts:
                    raise
                logger.warning(f"[INGEST] Embedding attempt {attempt} failed, retrying: {e}")
                await asyncio.sleep(self.retry_delay_sec * attempt)
        return []

    async def _process(self, job: IngestionJob, content: bytes) -> None:
        try:
            job.start("Starting PDF processing...", 10)
            await self.job_store.put(job)

            pages = await self.extractor.extract(content)
            await self._update(job, 20, f"Extracted text from {len(pages)} pages, chunking...")

            chunks: List[DocumentChunk] = chunk_pages(
                pages, self.chunk_size, self.chunk_overlap,
                file_id=job.file_id, file_name=job.file_name,
            )
            if not chunks:
                raise RAGError("PDF appears to be empty or could not be processed")
            await self._update(job, 40, f"PDF parsed into {len(chunks)} chunks, generating embeddings...")

            embeddings = await self._embed_with_retry([c.content for c in chunks])
            for chunk, embedding in zip(chunks, embeddings):
                chunk.embedding = embedding
            await self._update(job, 70, "Embeddings generated, storing in database...")

            stored = await self.chunk_store.replace_file_chunks(job.file_id, chunks)
            await self._update(job, 85, f"Stored {stored} chunks, verifying...")

            count = await self.chunk_store.count(job.file_id)
            job.complete(
                {
                    "file_id": job.file_id,
                    "file_name": job.file_name,
                    "chunks": len(chunks),
                    "embeddings": len(embeddings),
                    "stored": count,
                },
                f"Successfully processed and stored {count} chunks",
            )
            logger.info(f"[INGEST] Job {job.id} completed: {count} chunks for {job.file_id}")

        except RAGError as e:
            logger.error(f"[INGEST] Job {job.id} failed: {e.message}")
            job.fail(e.message)
        except Exception as e:
            logger.exception(f"[INGEST] Job {job.id} failed unexpectedly: {e}")
            job.fail(INTERNAL_FAILURE)
        finally:
            await self.job_store.put(job)

    # ============= Re-embedding =============

    async def submit_reembed(self, file_id: Optional[str] = None) -> str:
        """Schedule reembed() as a background job and return its id."""
        job = IngestionJob(
            id=str(uuid.uuid4()),
            file_id=file_id or ALL_DOCUMENTS,
            file_name=file_id or ALL_DOCUMENTS,
            message="Job created, waiting to start re-embedding...",
        )
        await self.job_store.put(job)
        self.runner.submit_task(self._process_reembed(job), name=f"reembed-{job.id}")
        logger.info(f"[INGEST] Job {job.id} queued to re-embed {job.file_id}")
        return job.id

    async def reembed(self, file_id: Optional[str] = None, job: Optional[IngestionJob] = None) -> Dict[str, int]:
        """
        Recompute the embedding of every stored chunk (or one file's chunks)
        with the current embedding service, in batches of reembed_batch_size.
        Content, hashes and page spans are left as they are.

        Raises:
            RAGError: unknown file_id, or the embedding/store calls failed
        """
        if file_id:
            file_ids = [file_id]
        else:
            file_ids = [s["file_id"] for s in await self.chunk_store.get_document_stats()]

        chunks: List[DocumentChunk] = []
        for fid in file_ids:
            chunks.extend(await self.chunk_store.get_chunks_by_file(fid))
        if file_id and not chunks:
            raise RAGError(f"Document not found: {file_id}")

        updated = 0
        for start in range(0, len(chunks), self.reembed_batch_size):
            batch = chunks[start:start + self.reembed_batch_size]
            vectors = await self._embed_with_retry([c.content for c in batch])
            updated += await self.chunk_store.update_embeddings(
                {chunk.key: vector for chunk, vector in zip(batch, vectors)}
            )
            if job is not None:
                done = start + len(batch)
                await self._update(job, 10 + 85 * done // len(chunks), f"Re-embedded {done}/{len(chunks)} chunks")

        logger.info(f"[INGEST] Re-embedded {updated}/{len(chunks)} chunks across {len(file_ids)} files")
        return {"files": len(file_ids), "chunks": len(chunks), "updated": updated}

    async def _process_reembed(self, job: IngestionJob) -> None:
        file_id = None if job.file_id == ALL_DOCUMENTS else job.file_id
        try:
            job.start("Starting re-embedding...", 10)
            await self.job_store.put(job)
            result = await self.reembed(file_id, job=job)
            job.complete(
                {"file_id": job.file_id, "file_name": job.file_name, **result},
                f"Re-embedded {result['updated']} chunks",
            )
        except RAGError as e:
            logger.error(f"[INGEST] Job {job.id} failed: {e.message}")
            job.fail(e.message)
        except Exception as e:
            logger.exception(f"[INGEST] Job {job.id} failed unexpectedly: {e}")
            job.fail(INTERNAL_FAILURE)
        finally:
            await self.job_store.put(job)

    # ============= Document management =============

    async def document_stats(self, file_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.chunk_store.get_document_stats(file_id)

    async def list_chunks(self, file_id: str) -> List[DocumentChunk]:
        return await self.chunk_store.get_chunks_by_file(file_id)

    async def delete_document(self, file_id: str) -> int:
        deleted = await self.chunk_store.delete_by_file(file_id)
        logger.info(f"[INGEST] Deleted {deleted} chunks for {file_id}")
        return deleted


async def sweep_jobs_periodically(
    job_store: IJobStore,
    interval_sec: float = settings.JOB_SWEEP_INTERVAL_SEC,
    retention_sec: float = settings.JOB_RETENTION_SEC,
) -> None:
    """Evict expired jobs forever. Run as a background task; cancel to stop."""
    while True:
        await asyncio.sleep(interval_sec)
        await job_store.sweep(retention_sec)

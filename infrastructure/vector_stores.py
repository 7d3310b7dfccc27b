# infrastructure/vector_stores.py
"""ChromaDB-backed chunk store with named vector index strategies"""
import asyncio
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import chromadb
import numpy as np

from config import settings
from core.domain import DocumentChunk, IndexFailureReason, PageSpan
from core.exceptions import PersistenceError, RAGError, RetrievalIndexError, ValidationError
from core.interfaces import IChunkStore

logger = logging.getLogger(settings.LOGGER_NAME)

INDEX_HNSW = "hnsw"
INDEX_EXACT = "exact"


def create_chroma_client(path: str = settings.VECTOR_DB_PATH) -> Any:
    return chromadb.PersistentClient(path=path)


def _is_empty(value: Any) -> bool:
    # Chroma returns numpy arrays for embeddings; avoid truthiness checks on them
    return value is None or len(value) == 0


class ChromaChunkStore(IChunkStore):
    """
    ChromaDB implementation with cosine similarity scoring (0-1 scale).

    The collection uses the cosine space, so Chroma returns distance = 1 - cos.
    Similarity is 1 - distance clamped to [0,1]. Two vector index strategies:

    - "hnsw": Chroma's ANN index via collection.query
    - "exact": brute-force cosine over every stored embedding with numpy
    """

    def __init__(
        self,
        client: Any,
        collection_name: str = settings.CHUNK_COLLECTION_NAME,
        dimension: int = settings.EMBEDDING_DIMENSION,
        timeout_sec: float = settings.STORE_TIMEOUT_SEC,
    ):
        self._client = client
        self._collection_name = collection_name
        self._dimension = dimension
        self._timeout_sec = timeout_sec
        self._collection: Any = None

    async def _ensure_collection(self):
        """Lazy initialization of collection"""
        if self._collection is None:
            self._collection = await asyncio.to_thread(
                self._client.get_or_create_collection,
                name=self._collection_name,
                metadata={"hnsw:space": "cosine"},
                embedding_function=None,
            )
        return self._collection

    async def _call(self, fn: Callable, **kwargs) -> Any:
        """Run a blocking Chroma call in a thread, bounded by the store timeout."""
        return await asyncio.wait_for(asyncio.to_thread(fn, **kwargs), timeout=self._timeout_sec)

    async def _read(self, op: str, fn: Callable, **kwargs) -> Any:
        try:
            return await self._call(fn, **kwargs)
        except asyncio.TimeoutError as e:
            logger.error(f"[STORE] {op} timed out after {self._timeout_sec}s")
            raise RAGError(f"Chunk store {op} timed out") from e
        except Exception as e:
            logger.error(f"[STORE] {op} failed: {e}")
            raise RAGError(f"Chunk store {op} failed") from e

    # ============= Serialization =============

    @staticmethod
    def _to_metadata(chunk: DocumentChunk) -> Dict[str, Any]:
        return {
            "file_id": chunk.file_id,
            "file_name": chunk.file_name,
            "chunk_id": chunk.chunk_id,
            "hash": chunk.content_hash,
            "pages_json": json.dumps([span.to_dict() for span in chunk.pages]),
            "page_numbers": ",".join(str(p) for p in chunk.page_numbers),
            "embedding_dim": len(chunk.embedding) if chunk.embedding is not None else 0,
        }

    @staticmethod
    def _to_chunk(document: str, metadata: Dict[str, Any], embedding: Any = None) -> DocumentChunk:
        pages_raw = metadata.get("pages_json") or "[]"
        return DocumentChunk(
            file_id=metadata.get("file_id", ""),
            file_name=metadata.get("file_name", ""),
            chunk_id=int(metadata.get("chunk_id", 0)),
            content=document or "",
            content_hash=metadata.get("hash", ""),
            pages=[PageSpan.from_dict(p) for p in json.loads(pages_raw)],
            embedding=None if _is_empty(embedding) else [float(x) for x in embedding],
        )

    @staticmethod
    def _where(file_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return {"file_id": file_id} if file_id else None

    # ============= Counts =============

    async def count(self, file_id: Optional[str] = None) -> int:
        collection = await self._ensure_collection()
        if not file_id:
            return await self._read("count", collection.count)
        result = await self._read("count", collection.get, where=self._where(file_id), include=[])
        return len(result["ids"])

    async def count_with_embeddings(self) -> int:
        collection = await self._ensure_collection()
        result = await self._read(
            "count_with_embeddings", collection.get,
            where={"embedding_dim": {"$gt": 0}}, include=[]
        )
        return len(result["ids"])

    # ============= Vector Search =============

    async def vector_query(
        self,
        embedding: List[float],
        limit: int,
        index_name: str,
        file_id: Optional[str] = None
    ) -> List[Tuple[DocumentChunk, float]]:
        if len(embedding) != self._dimension:
            raise RetrievalIndexError(
                index_name, IndexFailureReason.DIMENSION_MISMATCH,
                f"query has {len(embedding)} dims, index has {self._dimension}"
            )

        if index_name == INDEX_HNSW:
            search = self._hnsw_query
        elif index_name == INDEX_EXACT:
            search = self._exact_query
        else:
            raise RetrievalIndexError(index_name, IndexFailureReason.UNAVAILABLE, "unknown index")

        try:
            return await search(embedding, limit, file_id)
        except RetrievalIndexError:
            raise
        except asyncio.TimeoutError as e:
            raise RetrievalIndexError(index_name, IndexFailureReason.TIMEOUT) from e
        except Exception as e:
            # Dimension problems are caught before or inside the search; anything else is an index error
            raise RetrievalIndexError(index_name, IndexFailureReason.ERROR, str(e)) from e

    async def _hnsw_query(
        self, embedding: List[float], limit: int, file_id: Optional[str]
    ) -> List[Tuple[DocumentChunk, float]]:
        collection = await self._ensure_collection()
        available = await self._call(collection.count)
        if available == 0:
            return []

        results = await self._call(
            collection.query,
            query_embeddings=[embedding],
            n_results=min(limit, available),
            where=self._where(file_id),
            include=["metadatas", "documents", "distances"],
        )

        hits: List[Tuple[DocumentChunk, float]] = []
        if results["ids"] and results["ids"][0]:
            for i in range(len(results["ids"][0])):
                # Cosine distance ∈ [0,2]; similarity = 1 - distance, clamped
                similarity = max(0.0, min(1.0, 1.0 - float(results["distances"][0][i])))
                chunk = self._to_chunk(results["documents"][0][i], results["metadatas"][0][i])
                hits.append((chunk, similarity))
        return hits

    async def _exact_query(
        self, embedding: List[float], limit: int, file_id: Optional[str]
    ) -> List[Tuple[DocumentChunk, float]]:
        collection = await self._ensure_collection()
        stored = await self._call(
            collection.get,
            where=self._where(file_id),
            include=["metadatas", "documents", "embeddings"],
        )
        if _is_empty(stored["ids"]) or _is_empty(stored["embeddings"]):
            return []

        matrix = np.asarray(stored["embeddings"], dtype="float32")
        if matrix.ndim != 2 or matrix.shape[1] != self._dimension:
            raise RetrievalIndexError(
                INDEX_EXACT, IndexFailureReason.DIMENSION_MISMATCH,
                f"stored vectors have shape {matrix.shape}"
            )

        query = np.asarray(embedding, dtype="float32")
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query) or 1e-12)
        norms[norms == 0] = 1e-12
        similarities = np.clip(matrix @ query / norms, 0.0, 1.0)

        # Stable sort keeps store order among equal scores
        order = np.argsort(-similarities, kind="stable")[:limit]
        return [
            (self._to_chunk(stored["documents"][i], stored["metadatas"][i]), float(similarities[i]))
            for i in order
        ]

    # ============= Keyword Search =============

    async def keyword_query(
        self,
        terms: List[str],
        limit: int,
        file_id: Optional[str] = None
    ) -> List[DocumentChunk]:
        terms = [t for t in terms if t]
        if not terms:
            return []
        collection = await self._ensure_collection()
        stored = await self._read(
            "keyword_query", collection.get,
            where=self._where(file_id), include=["metadatas", "documents"]
        )

        pattern = re.compile("|".join(re.escape(t) for t in terms), re.IGNORECASE)
        matches: List[DocumentChunk] = []
        for document, metadata in zip(stored["documents"] or [], stored["metadatas"] or []):
            if pattern.search(document or "") or pattern.search(metadata.get("file_name", "")):
                matches.append(self._to_chunk(document, metadata))
                if len(matches) >= limit:
                    break
        return matches

    # ============= Writes =============

    async def replace_file_chunks(self, file_id: str, chunks: List[DocumentChunk]) -> int:
        """Delete-then-insert for one file. Chunks whose hash already exists are skipped."""
        if any(c.embedding is None for c in chunks):
            raise ValidationError("Every chunk must carry an embedding before storage")

        collection = await self._ensure_collection()
        try:
            await self._call(collection.delete, where={"file_id": file_id})
            if not chunks:
                return 0

            hashes = list({c.content_hash for c in chunks})
            existing = await self._call(collection.get, where={"hash": {"$in": hashes}}, include=["metadatas"])
            seen = {m.get("hash") for m in existing["metadatas"] or []}

            to_insert: List[DocumentChunk] = []
            for chunk in chunks:
                if chunk.content_hash in seen:
                    continue
                seen.add(chunk.content_hash)
                to_insert.append(chunk)

            skipped = len(chunks) - len(to_insert)
            if skipped:
                logger.info(f"[STORE] Skipped {skipped} duplicate chunks for {file_id}")
            if not to_insert:
                return 0

            await self._call(
                collection.add,
                ids=[c.key for c in to_insert],
                documents=[c.content for c in to_insert],
                metadatas=[self._to_metadata(c) for c in to_insert],
                embeddings=[c.embedding for c in to_insert],
            )
            return len(to_insert)
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Storing chunks for {file_id} timed out") from e
        except Exception as e:
            logger.error(f"[STORE] Failed to store chunks for {file_id}: {e}")
            raise PersistenceError(f"Failed to store chunks for {file_id}") from e

    async def update_embeddings(self, embeddings: Dict[str, List[float]]) -> int:
        """Re-embedding: swap vectors in place and refresh embedding_dim. Unknown keys are skipped."""
        if not embeddings:
            return 0
        if any(len(vector) != self._dimension for vector in embeddings.values()):
            raise ValidationError(f"Embeddings must have {self._dimension} dimensions")

        collection = await self._ensure_collection()
        existing = await self._read(
            "update_embeddings", collection.get, ids=list(embeddings), include=["metadatas"]
        )
        metadata_by_id = dict(zip(existing["ids"], existing["metadatas"] or []))
        ids = [chunk_key for chunk_key in embeddings if chunk_key in metadata_by_id]
        if not ids:
            return 0

        try:
            await self._call(
                collection.update,
                ids=ids,
                embeddings=[embeddings[chunk_key] for chunk_key in ids],
                metadatas=[
                    {**metadata_by_id[chunk_key], "embedding_dim": self._dimension} for chunk_key in ids
                ],
            )
        except asyncio.TimeoutError as e:
            raise PersistenceError("Updating embeddings timed out") from e
        except Exception as e:
            logger.error(f"[STORE] Failed to update {len(ids)} embeddings: {e}")
            raise PersistenceError("Failed to update embeddings") from e

        skipped = len(embeddings) - len(ids)
        if skipped:
            logger.warning(f"[STORE] Skipped {skipped} embeddings for unknown chunks")
        return len(ids)

    async def delete_by_file(self, file_id: str) -> int:
        collection = await self._ensure_collection()
        existing = await self._read("delete_by_file", collection.get, where={"file_id": file_id}, include=[])
        if not existing["ids"]:
            return 0
        try:
            await self._call(collection.delete, ids=list(existing["ids"]))
        except Exception as e:
            raise PersistenceError(f"Failed to delete chunks for {file_id}") from e
        return len(existing["ids"])

    # ============= Listing / Stats =============

    async def get_chunks_by_file(self, file_id: str) -> List[DocumentChunk]:
        collection = await self._ensure_collection()
        stored = await self._read(
            "get_chunks_by_file", collection.get,
            where={"file_id": file_id}, include=["metadatas", "documents"]
        )
        chunks = [
            self._to_chunk(document, metadata)
            for document, metadata in zip(stored["documents"] or [], stored["metadatas"] or [])
        ]
        return sorted(chunks, key=lambda c: c.chunk_id)

    async def get_document_stats(self, file_id: Optional[str] = None) -> List[Dict[str, Any]]:
        collection = await self._ensure_collection()
        stored = await self._read(
            "get_document_stats", collection.get,
            where=self._where(file_id), include=["metadatas", "documents"]
        )

        grouped: Dict[str, Dict[str, Any]] = {}
        for document, metadata in zip(stored["documents"] or [], stored["metadatas"] or []):
            entry = grouped.setdefault(metadata.get("file_id", ""), {
                "file_name": metadata.get("file_name", ""),
                "lengths": [],
                "pages": set(),
            })
            entry["lengths"].append(len(document or ""))
            page_numbers = metadata.get("page_numbers") or ""
            entry["pages"].update(int(p) for p in page_numbers.split(",") if p)

        return [
            {
                "file_id": fid,
                "file_name": entry["file_name"],
                "total_chunks": len(entry["lengths"]),
                "avg_chunk_length": round(sum(entry["lengths"]) / len(entry["lengths"])),
                "total_pages": len(entry["pages"]),
            }
            for fid, entry in grouped.items()
        ]

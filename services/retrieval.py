# services/retrieval.py
"""Hybrid retrieval engine: vector + keyword search with index fallback"""
import logging
import math
import time
from typing import List, Optional, Sequence, Tuple

from config import settings
from core.domain import DocumentChunk, RetrievalResultSet, SearchOptions
from core.exceptions import EmbeddingUnavailable, RetrievalIndexError, ValidationError
from core.interfaces import IChunkStore, IEmbeddingService
from services.search_strategies import (
    HybridFusion,
    finalize,
    get_fusion_strategy,
    query_terms,
    rank_keyword_hits,
)

logger = logging.getLogger(settings.LOGGER_NAME)


def validate_options(query: str, options: SearchOptions) -> str:
    """Return the stripped query or raise ValidationError."""
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Query must be a non-empty string")
    if not 1 <= options.limit <= 100:
        raise ValidationError("Limit must be between 1 and 100")
    if not 0 <= options.min_score <= 1:
        raise ValidationError("Minimum score must be between 0 and 1")
    if options.vector_weight < 0 or options.keyword_weight < 0:
        raise ValidationError("Search weights must be non-negative")
    return query.strip()


class RetrievalEngine:
    """
    Runs a query against the chunk store.

    Vector queries try each named index strategy in order; a strategy that
    raises RetrievalIndexError or answers with nothing hands over to the next.
    When the query cannot be embedded or every strategy fails, the engine
    returns keyword-only results marked degraded.
    """

    def __init__(
        self,
        chunk_store: IChunkStore,
        embedding_service: IEmbeddingService,
        index_strategies: Optional[Sequence[str]] = None,
        candidate_factor: float = settings.SEARCH_CANDIDATE_FACTOR,
    ):
        self.chunk_store = chunk_store
        self.embedding_service = embedding_service
        self.index_strategies = list(index_strategies or settings.VECTOR_INDEX_STRATEGIES)
        self.candidate_factor = candidate_factor

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> RetrievalResultSet:
        options = options or SearchOptions()
        query = validate_options(query, options)
        start_time = time.time()

        total = await self.chunk_store.count()
        if total == 0:
            logger.warning("[SEARCH] No chunks stored; skipping search")
            return RetrievalResultSet(search_type=options.search_type)

        with_embeddings = await self.chunk_store.count_with_embeddings()
        if with_embeddings == 0:
            logger.warning("[SEARCH] No chunks with embeddings; skipping search")
            return RetrievalResultSet(search_type=options.search_type)

        candidates = math.ceil(options.limit * self.candidate_factor)
        fusion = get_fusion_strategy(options.search_type)
        degraded = False
        index_used: Optional[str] = None
        vector_hits: List[Tuple[DocumentChunk, float]] = []

        try:
            embedding = await self.embedding_service.embed(query)
            vector_hits, index_used = await self._vector_search(embedding, candidates, options.file_id)
        except EmbeddingUnavailable as e:
            logger.warning(f"[SEARCH] Query embedding unavailable, degrading to keyword search: {e}")
            degraded = True
        except RetrievalIndexError as e:
            logger.warning(f"[SEARCH] All vector indexes failed, degrading to keyword search: {e}")
            degraded = True

        keyword_hits: List[Tuple[DocumentChunk, float]] = []
        if degraded or fusion.uses_keywords:
            keyword_chunks = await self.chunk_store.keyword_query(
                query_terms(query), candidates, options.file_id
            )
            keyword_hits = rank_keyword_hits(keyword_chunks, query)

        if degraded:
            fusion = HybridFusion()

        results = finalize(fusion.combine(vector_hits, keyword_hits, options), options)

        logger.info(
            f"[SEARCH] '{query[:50]}' type={options.search_type.value} vector={len(vector_hits)} "
            f"keyword={len(keyword_hits)} -> {len(results)} results "
            f"(index={index_used}, degraded={degraded}, {int((time.time() - start_time) * 1000)}ms)"
        )
        return RetrievalResultSet(
            results=results,
            degraded=degraded,
            index_used=index_used,
            search_type=options.search_type,
        )

    async def _vector_search(
        self, embedding: List[float], limit: int, file_id: Optional[str]
    ) -> Tuple[List[Tuple[DocumentChunk, float]], Optional[str]]:
        """Try index strategies in order. Raises the last RetrievalIndexError if none answered."""
        last_error: Optional[RetrievalIndexError] = None
        answered: Optional[str] = None

        for index_name in self.index_strategies:
            try:
                hits = await self.chunk_store.vector_query(embedding, limit, index_name, file_id)
            except RetrievalIndexError as e:
                logger.warning(f"[SEARCH] Index '{index_name}' failed ({e.reason.value}); trying next")
                last_error = e
                continue

            answered = answered or index_name
            if hits:
                return hits, index_name
            logger.debug(f"[SEARCH] Index '{index_name}' returned no hits; trying next")

        if answered is None and last_error is not None:
            raise last_error
        return [], answered

# services/search_strategies.py
"""Scoring and fusion strategies for hybrid retrieval"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, List, Sequence, Tuple

from config import settings
from core.domain import DocumentChunk, RetrievalResult, SearchOptions, SearchType

logger = logging.getLogger(settings.LOGGER_NAME)

MAX_MATCHES_PER_TERM = 3


def query_terms(query: str) -> List[str]:
    """Lower-cased whitespace tokens of a query."""
    return query.lower().split()


def keyword_score(content: str, query: str) -> float:
    """
    Term-density score in [0,1].

    Each query term contributes its occurrence count in the content, capped
    at 3; the sum is divided by 2 * term_count and clamped to 1.
    """
    terms = query_terms(query)
    if not terms:
        return 0.0
    content_lower = (content or "").lower()
    matches = sum(min(content_lower.count(term), MAX_MATCHES_PER_TERM) for term in terms)
    return min(matches / (len(terms) * 2), 1.0)


def rank_keyword_hits(chunks: Sequence[DocumentChunk], query: str) -> List[Tuple[DocumentChunk, float]]:
    """Score keyword candidates; best first, ties keep store order."""
    scored = [(chunk, keyword_score(chunk.content, query)) for chunk in chunks]
    # sorted() is stable
    return sorted(scored, key=lambda item: -item[1])


def dedupe_by_content(results: List[RetrievalResult]) -> List[RetrievalResult]:
    """Keep the first (highest ranked) result for each distinct content."""
    seen = set()
    unique: List[RetrievalResult] = []
    for result in results:
        if result.chunk.content in seen:
            continue
        seen.add(result.chunk.content)
        unique.append(result)
    return unique


def _sort_key(result: RetrievalResult, first_seen: int) -> Tuple[float, float, float, int]:
    return (
        -result.combined_score,
        result.vector_rank if result.vector_rank is not None else math.inf,
        result.keyword_rank if result.keyword_rank is not None else math.inf,
        first_seen,
    )


def finalize(results: List[RetrievalResult], options: SearchOptions) -> List[RetrievalResult]:
    """Deterministic order, min_score filter, content dedup, truncation."""
    ordered = [r for _, r in sorted(
        enumerate(results), key=lambda pair: _sort_key(pair[1], pair[0])
    )]
    kept = [r for r in ordered if r.combined_score >= options.min_score]
    return dedupe_by_content(kept)[:options.limit]


class FusionStrategy(ABC):
    """Combines vector and keyword candidate lists into scored results"""

    uses_keywords: bool = True

    @abstractmethod
    def combine(
        self,
        vector_hits: List[Tuple[DocumentChunk, float]],
        keyword_hits: List[Tuple[DocumentChunk, float]],
        options: SearchOptions
    ) -> List[RetrievalResult]:
        pass


class HybridFusion(FusionStrategy):
    """
    Weighted sum keyed by chunk identity.

    combined = vector * vector_weight + keyword * keyword_weight, an absent
    side contributing 0. Results come back in first-seen order (vector list
    first); finalize() does the ranking.
    """

    def combine(self, vector_hits, keyword_hits, options):
        merged: Dict[str, RetrievalResult] = {}

        for rank, (chunk, score) in enumerate(vector_hits):
            if chunk.key in merged:
                continue
            merged[chunk.key] = RetrievalResult(chunk=chunk, vector_score=score, vector_rank=rank)

        for rank, (chunk, score) in enumerate(keyword_hits):
            existing = merged.get(chunk.key)
            if existing is None:
                merged[chunk.key] = RetrievalResult(chunk=chunk, keyword_score=score, keyword_rank=rank)
            elif existing.keyword_rank is None:
                existing.keyword_score = score
                existing.keyword_rank = rank

        for result in merged.values():
            result.combined_score = (
                result.vector_score * options.vector_weight
                + result.keyword_score * options.keyword_weight
            )
        return list(merged.values())


class VectorOnlyFusion(FusionStrategy):
    """Vector similarity is the combined score."""

    uses_keywords = False

    def combine(self, vector_hits, keyword_hits, options):
        results = []
        seen = set()
        for rank, (chunk, score) in enumerate(vector_hits):
            if chunk.key in seen:
                continue
            seen.add(chunk.key)
            results.append(RetrievalResult(
                chunk=chunk, vector_score=score, combined_score=score, vector_rank=rank
            ))
        return results


def get_fusion_strategy(search_type: SearchType) -> FusionStrategy:
    if search_type == SearchType.VECTOR:
        return VectorOnlyFusion()
    return HybridFusion()

import pytest

from core.domain import RetrievalResult, SearchOptions, SearchType
from services.search_strategies import (
    HybridFusion,
    VectorOnlyFusion,
    finalize,
    get_fusion_strategy,
    keyword_score,
    rank_keyword_hits,
)

from conftest import make_chunk


def test_keyword_score_caps_matches_per_term() -> None:
    assert keyword_score("leave leave leave leave leave", "leave") == 1.0
    assert keyword_score("annual leave", "annual leave policy") == pytest.approx(2 / 6)
    assert keyword_score("nothing relevant", "leave") == 0.0
    assert keyword_score("anything", "   ") == 0.0


def test_rank_keyword_hits_keeps_store_order_on_ties() -> None:
    a = make_chunk("leave once", chunk_id=1)
    b = make_chunk("leave again", chunk_id=2)
    c = make_chunk("leave leave", chunk_id=3)

    ranked = rank_keyword_hits([a, b, c], "leave")

    assert [chunk.chunk_id for chunk, _ in ranked] == [3, 1, 2]


def test_hybrid_fusion_weights() -> None:
    vector_only = make_chunk("vector chunk", chunk_id=1)
    keyword_only = make_chunk("keyword chunk", chunk_id=2)
    options = SearchOptions(vector_weight=0.7, keyword_weight=0.3)

    results = HybridFusion().combine([(vector_only, 1.0)], [(keyword_only, 1.0)], options)

    scores = {r.chunk.chunk_id: r.combined_score for r in results}
    assert scores[1] == pytest.approx(0.7)
    assert scores[2] == pytest.approx(0.3)


def test_hybrid_fusion_merges_chunks_present_in_both_lists() -> None:
    chunk = make_chunk("shared chunk", chunk_id=1)
    options = SearchOptions()

    results = HybridFusion().combine([(chunk, 0.5)], [(chunk, 0.5)], options)

    assert len(results) == 1
    assert results[0].vector_rank == 0 and results[0].keyword_rank == 0
    assert results[0].combined_score == pytest.approx(0.5)


def test_scenario_vector_only_chunk_outranks_keyword_only_chunk() -> None:
    by_vector = make_chunk("vector match", chunk_id=1)
    by_keyword = make_chunk("keyword match", chunk_id=2)
    options = SearchOptions(limit=10, min_score=0.0)

    fused = HybridFusion().combine([(by_vector, 0.9)], [(by_keyword, 0.6)], options)
    results = finalize(fused, options)

    assert [r.chunk.chunk_id for r in results] == [1, 2]
    assert results[0].combined_score == pytest.approx(0.63)
    assert results[1].combined_score == pytest.approx(0.18)


def test_ties_break_on_vector_rank_then_keyword_rank_then_insertion() -> None:
    options = SearchOptions(limit=10, min_score=0.0)
    a = RetrievalResult(chunk=make_chunk("a", chunk_id=1), combined_score=0.5, vector_rank=1)
    b = RetrievalResult(chunk=make_chunk("b", chunk_id=2), combined_score=0.5, vector_rank=0)
    c = RetrievalResult(chunk=make_chunk("c", chunk_id=3), combined_score=0.5, keyword_rank=0)
    d = RetrievalResult(chunk=make_chunk("d", chunk_id=4), combined_score=0.5)
    e = RetrievalResult(chunk=make_chunk("e", chunk_id=5), combined_score=0.5)

    ordered = finalize([e, d, c, a, b], options)

    assert [r.chunk.chunk_id for r in ordered] == [2, 1, 3, 5, 4]


def test_finalize_filters_min_score_dedupes_and_truncates() -> None:
    options = SearchOptions(limit=2, min_score=0.2)
    low = RetrievalResult(chunk=make_chunk("low", chunk_id=1), combined_score=0.1)
    weaker_copy = RetrievalResult(chunk=make_chunk("same text", chunk_id=2), combined_score=0.4)
    stronger_copy = RetrievalResult(
        chunk=make_chunk("same text", chunk_id=3, file_id="other.pdf"), combined_score=0.9
    )
    other = RetrievalResult(chunk=make_chunk("other", chunk_id=4), combined_score=0.3)
    extra = RetrievalResult(chunk=make_chunk("extra", chunk_id=5), combined_score=0.25)

    results = finalize([low, weaker_copy, stronger_copy, other, extra], options)

    assert [r.chunk.chunk_id for r in results] == [3, 4]


def test_vector_only_fusion_uses_vector_score() -> None:
    chunk = make_chunk("text")

    results = VectorOnlyFusion().combine([(chunk, 0.42)], [], SearchOptions())

    assert results[0].combined_score == 0.42
    assert get_fusion_strategy(SearchType.VECTOR).uses_keywords is False
    assert isinstance(get_fusion_strategy(SearchType.HYBRID), HybridFusion)

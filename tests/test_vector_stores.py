import asyncio
import uuid

import chromadb
import pytest

from core.domain import IndexFailureReason
from core.exceptions import RetrievalIndexError, ValidationError
from infrastructure.vector_stores import INDEX_EXACT, INDEX_HNSW, ChromaChunkStore

from conftest import DIMENSION, bag_of_words, embedded_chunk, make_chunk


@pytest.fixture
def store() -> ChromaChunkStore:
    # Ephemeral clients share one in-process system; isolate by collection name
    return ChromaChunkStore(
        chromadb.EphemeralClient(),
        collection_name=f"test-{uuid.uuid4().hex}",
        dimension=DIMENSION,
    )


def _policy_chunks():
    return [
        embedded_chunk("Annual leave is twenty days per year.", chunk_id=1, pages=[2, 3]),
        embedded_chunk("Sick leave requires a medical note.", chunk_id=2, pages=[5]),
        embedded_chunk("Expenses are reimbursed monthly.", chunk_id=3, pages=[7]),
    ]


def test_replace_file_chunks_round_trips_pages(store) -> None:
    stored = asyncio.run(store.replace_file_chunks("policy.pdf", _policy_chunks()))
    chunks = asyncio.run(store.get_chunks_by_file("policy.pdf"))

    assert stored == 3
    assert [c.chunk_id for c in chunks] == [1, 2, 3]
    assert chunks[0].page_numbers == [2, 3]
    assert chunks[0].content == "Annual leave is twenty days per year."
    assert asyncio.run(store.count()) == 3
    assert asyncio.run(store.count_with_embeddings()) == 3


def test_replace_drops_previous_chunks_of_the_file(store) -> None:
    asyncio.run(store.replace_file_chunks("policy.pdf", _policy_chunks()))
    replacement = [embedded_chunk("Leave policy was rewritten.", chunk_id=1)]

    asyncio.run(store.replace_file_chunks("policy.pdf", replacement))

    assert [c.content for c in asyncio.run(store.get_chunks_by_file("policy.pdf"))] == [
        "Leave policy was rewritten."
    ]


def test_duplicate_content_is_stored_once(store) -> None:
    asyncio.run(store.replace_file_chunks("policy.pdf", _policy_chunks()))
    copy = [
        embedded_chunk("Annual leave is twenty days per year.", chunk_id=1, file_id="copy.pdf", file_name="copy.pdf"),
        embedded_chunk("Something new.", chunk_id=2, file_id="copy.pdf", file_name="copy.pdf"),
    ]

    stored = asyncio.run(store.replace_file_chunks("copy.pdf", copy))

    assert stored == 1
    assert asyncio.run(store.count("copy.pdf")) == 1


def test_chunks_without_embeddings_are_rejected(store) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(store.replace_file_chunks("policy.pdf", [make_chunk("no vector")]))


@pytest.mark.parametrize("index_name", [INDEX_HNSW, INDEX_EXACT])
def test_vector_query_ranks_by_cosine_similarity(store, index_name) -> None:
    asyncio.run(store.replace_file_chunks("policy.pdf", _policy_chunks()))

    hits = asyncio.run(store.vector_query(
        bag_of_words("Sick leave requires a medical note."), 2, index_name
    ))

    assert len(hits) == 2
    assert hits[0][0].chunk_id == 2
    assert hits[0][1] == pytest.approx(1.0, abs=1e-4)
    assert all(0.0 <= score <= 1.0 for _, score in hits)
    assert hits[0][1] >= hits[1][1]


@pytest.mark.parametrize("index_name", [INDEX_HNSW, INDEX_EXACT])
def test_vector_query_on_empty_store(store, index_name) -> None:
    assert asyncio.run(store.vector_query(bag_of_words("leave"), 3, index_name)) == []


def test_vector_query_respects_file_filter(store) -> None:
    asyncio.run(store.replace_file_chunks("policy.pdf", _policy_chunks()))
    other = [embedded_chunk("Sick leave in the handbook.", chunk_id=1, file_id="handbook.pdf", file_name="handbook.pdf")]
    asyncio.run(store.replace_file_chunks("handbook.pdf", other))

    hits = asyncio.run(store.vector_query(bag_of_words("sick leave"), 5, INDEX_EXACT, file_id="handbook.pdf"))

    assert [chunk.file_id for chunk, _ in hits] == ["handbook.pdf"]


def test_unknown_index_is_unavailable(store) -> None:
    with pytest.raises(RetrievalIndexError) as excinfo:
        asyncio.run(store.vector_query(bag_of_words("leave"), 3, "ivf"))

    assert excinfo.value.reason == IndexFailureReason.UNAVAILABLE


def test_query_dimension_mismatch(store) -> None:
    with pytest.raises(RetrievalIndexError) as excinfo:
        asyncio.run(store.vector_query([1.0, 0.0], 3, INDEX_HNSW))

    assert excinfo.value.reason == IndexFailureReason.DIMENSION_MISMATCH


def test_keyword_query_matches_content_and_file_name(store) -> None:
    asyncio.run(store.replace_file_chunks("policy.pdf", _policy_chunks()))

    by_content = asyncio.run(store.keyword_query(["MEDICAL"], 10))
    by_name = asyncio.run(store.keyword_query(["policy"], 2))

    assert [c.chunk_id for c in by_content] == [2]
    assert len(by_name) == 2
    assert asyncio.run(store.keyword_query([""], 10)) == []


def test_document_stats_and_delete(store) -> None:
    asyncio.run(store.replace_file_chunks("policy.pdf", _policy_chunks()))

    stats = asyncio.run(store.get_document_stats())
    deleted = asyncio.run(store.delete_by_file("policy.pdf"))

    assert stats == [{
        "file_id": "policy.pdf",
        "file_name": "policy.pdf",
        "total_chunks": 3,
        "avg_chunk_length": round(sum(len(c.content) for c in _policy_chunks()) / 3),
        "total_pages": 4,
    }]
    assert deleted == 3
    assert asyncio.run(store.count()) == 0
    assert asyncio.run(store.delete_by_file("policy.pdf")) == 0


class _BrokenCollection:
    """Collection whose query fails with an error message that mentions dimensions."""

    def count(self) -> int:
        return 3

    def query(self, **kwargs):
        raise ValueError("Embedding dimension 8 does not match collection dimensionality 384")


def test_store_errors_map_to_error_regardless_of_message(store) -> None:
    store._collection = _BrokenCollection()

    with pytest.raises(RetrievalIndexError) as excinfo:
        asyncio.run(store.vector_query(bag_of_words("leave"), 3, INDEX_HNSW))

    assert excinfo.value.reason == IndexFailureReason.ERROR


def test_update_embeddings_marks_chunks_as_embedded(store) -> None:
    chunk = make_chunk("Annual leave is twenty days per year.", pages=[2])
    collection = asyncio.run(store._ensure_collection())
    # Simulates a chunk written before its embedding was recorded
    collection.add(
        ids=[chunk.key],
        documents=[chunk.content],
        metadatas=[ChromaChunkStore._to_metadata(chunk)],
        embeddings=[bag_of_words("placeholder")],
    )
    assert asyncio.run(store.count_with_embeddings()) == 0

    updated = asyncio.run(store.update_embeddings({
        chunk.key: bag_of_words(chunk.content),
        "unknown.pdf::chunk_9": bag_of_words("nothing"),
    }))

    assert updated == 1
    assert asyncio.run(store.count_with_embeddings()) == 1
    hits = asyncio.run(store.vector_query(bag_of_words(chunk.content), 1, INDEX_EXACT))
    assert hits[0][1] == pytest.approx(1.0, abs=1e-4)
    assert hits[0][0].page_numbers == [2]


def test_update_embeddings_rejects_wrong_dimension(store) -> None:
    asyncio.run(store.replace_file_chunks("policy.pdf", _policy_chunks()))

    with pytest.raises(ValidationError):
        asyncio.run(store.update_embeddings({"policy.pdf::chunk_1": [1.0, 0.0]}))

# =============================================================================
# Unit Tests — Vector Store (ChromaDB backend)
# =============================================================================
#
# Tests Chroma collection lifecycle, upsert, filtered search and deletion.
# Uses ChromaDB's in-process mode (no external services needed).
# pgvector is not exercised here; it requires a running PostgreSQL instance.
# =============================================================================

import asyncio
import uuid

import chromadb

from backoffice_agent.services.vectorstore import (
    ChromaVectorStore,
    VectorPoint,
    _build_chroma_where,
    _sanitise_chroma_metadata,
    make_point_ids,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _owner() -> str:
    """Unique owner per test: the in-process Chroma client is shared."""
    return str(uuid.uuid4())


def _point(text, vector, kb="kb-1", file_name="a.txt", position=0, file_id="f-1"):
    return VectorPoint(
        text=text,
        vector=vector,
        metadata={
            "knowledge_base_id": kb,
            "file_id": file_id,
            "file_name": file_name,
            "position": position,
        },
    )


class TestChromaVectorStore:
    """Tests for ChromaVectorStore (in-process mode)."""

    def _make_store(self) -> ChromaVectorStore:
        return ChromaVectorStore(client=chromadb.Client())

    def test_collection_name_is_chroma_safe(self):
        name = ChromaVectorStore.collection_name("a b/c" + "x" * 100)
        assert name.startswith("agent_a_b_c")
        assert len(name) <= 63

    def test_search_missing_collection_returns_empty(self):
        store = self._make_store()
        assert _run(store.search(_owner(), [1.0, 0.0, 0.0])) == []

    def test_search_empty_collection_returns_empty(self):
        store = self._make_store()
        owner = _owner()
        store.ensure_collection(owner)
        assert _run(store.search(owner, [1.0, 0.0, 0.0])) == []

    def test_upsert_returns_unique_ids(self):
        store = self._make_store()
        owner = _owner()
        ids = store.upsert(owner, [
            _point("Invoice terms are 30 days", [1.0, 0.0, 0.0]),
            _point("Expenses need receipts", [0.0, 1.0, 0.0], position=1),
        ])
        assert len(ids) == 2
        assert len(set(ids)) == 2
        assert all(point_id.startswith(owner) for point_id in ids)

    def test_search_best_first_with_similarity(self):
        store = self._make_store()
        owner = _owner()
        store.upsert(owner, [
            _point("Invoice terms are 30 days", [1.0, 0.0, 0.0]),
            _point("Expenses need receipts", [0.0, 1.0, 0.0], position=1),
        ])

        results = _run(store.search(owner, [0.9, 0.1, 0.0], top_k=2))

        assert [r.content for r in results] == [
            "Invoice terms are 30 days",
            "Expenses need receipts",
        ]
        assert results[0].similarity_score > results[1].similarity_score
        assert results[0].metadata["owner_id"] == owner
        assert results[0].metadata["file_name"] == "a.txt"

    def test_threshold_drops_weak_matches(self):
        store = self._make_store()
        owner = _owner()
        store.upsert(owner, [
            _point("close", [1.0, 0.0, 0.0]),
            _point("orthogonal", [0.0, 1.0, 0.0]),
        ])
        results = _run(store.search(owner, [1.0, 0.0, 0.0], score_threshold=0.7))
        assert [r.content for r in results] == ["close"]

    def test_top_k_larger_than_collection(self):
        store = self._make_store()
        owner = _owner()
        store.upsert(owner, [_point("only", [1.0, 0.0, 0.0])])
        assert len(_run(store.search(owner, [1.0, 0.0, 0.0], top_k=10))) == 1

    def test_filter_by_knowledge_base_ids(self):
        store = self._make_store()
        owner = _owner()
        store.upsert(owner, [
            _point("from kb-1", [1.0, 0.0, 0.0], kb="kb-1"),
            _point("from kb-2", [1.0, 0.1, 0.0], kb="kb-2"),
            _point("from kb-3", [1.0, 0.2, 0.0], kb="kb-3"),
        ])

        results = _run(store.search(
            owner, [1.0, 0.0, 0.0], top_k=3,
            filter={"knowledge_base_id": ["kb-2", "kb-3"]},
        ))
        assert sorted(r.content for r in results) == ["from kb-2", "from kb-3"]

    def test_owners_are_isolated(self):
        store = self._make_store()
        owner_a, owner_b = _owner(), _owner()
        store.upsert(owner_a, [_point("secret of a", [1.0, 0.0, 0.0])])
        assert _run(store.search(owner_b, [1.0, 0.0, 0.0])) == []

    def test_delete_owner_for_one_knowledge_base(self):
        store = self._make_store()
        owner = _owner()
        store.upsert(owner, [
            _point("keep", [1.0, 0.0, 0.0], kb="kb-keep"),
            _point("drop", [1.0, 0.0, 0.0], kb="kb-drop"),
        ])

        store.delete_owner(owner, knowledge_base_id="kb-drop")

        results = _run(store.search(owner, [1.0, 0.0, 0.0], top_k=5))
        assert [r.content for r in results] == ["keep"]

    def test_delete_file_leaves_other_files(self):
        store = self._make_store()
        owner = _owner()
        store.upsert(owner, [
            _point("old copy", [1.0, 0.0, 0.0], file_id="f-1"),
            _point("sibling", [1.0, 0.0, 0.0], file_id="f-2", position=1),
        ])

        store.delete_file(owner, "f-1")
        store.delete_file(_owner(), "f-1")  # missing collection: no-op

        results = _run(store.search(owner, [1.0, 0.0, 0.0], top_k=5))
        assert [r.content for r in results] == ["sibling"]

    def test_drop_collection(self):
        store = self._make_store()
        owner = _owner()
        store.upsert(owner, [_point("gone", [1.0, 0.0, 0.0])])

        store.drop_collection(owner)
        store.drop_collection(owner)  # already absent: no-op

        assert _run(store.search(owner, [1.0, 0.0, 0.0])) == []

    def test_delete_owner_missing_collection_is_noop(self):
        self._make_store().delete_owner(_owner())


class TestHelpers:
    def test_point_ids_are_unique_per_call(self):
        first = make_point_ids("agent", 3)
        assert len(set(first)) == 3
        assert first[0].startswith("agent-0-")

    def test_where_single_clause(self):
        assert _build_chroma_where({"file_name": "a.txt"}) == {"file_name": "a.txt"}

    def test_where_list_becomes_in_and_clauses_are_anded(self):
        assert _build_chroma_where({"a": 1, "b": ["x", "y"]}) == {
            "$and": [{"a": 1}, {"b": {"$in": ["x", "y"]}}],
        }

    def test_where_empty_is_none(self):
        assert _build_chroma_where(None) is None
        assert _build_chroma_where({}) is None

    def test_metadata_sanitised(self):
        assert _sanitise_chroma_metadata(
            {"tags": ["a", "b"], "missing": None, "n": 3, "nested": {"k": 1}},
        ) == {"tags": "a,b", "missing": "", "n": 3, "nested": "{'k': 1}"}

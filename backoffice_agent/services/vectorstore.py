# =============================================================================
# Vector Store Client — Pluggable Backend Protocol
# =============================================================================
#
# Per-tenant similarity search over knowledge chunks. The owner id (an
# agent id) partitions the store:
#
#   ChromaVectorStore — one Chroma collection per owner ("agent_<id>")
#   PgVectorStore     — one shared `knowledge_chunks` table, rows tagged
#                       with owner_id
#
# Every point's payload carries owner_id, knowledge_base_id, file_id, file_name,
# file_type, position and chunk_count, so a chunk can be attributed to its
# source file and deleted together with its knowledge base.
#
# DESIGN DECISION: Mixed sync/async interface.
# - ensure_collection / upsert / delete_file / delete_owner / drop_collection
#   are sync → called by Celery workers and from the request path via to_thread()
# - search() is async → called by the agent executor on every turn
#
# POLICY: searching an owner that has no collection (never ingested)
# returns an empty list. An agent without knowledge answers ungrounded.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import chromadb
from chromadb.errors import NotFoundError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import sessionmaker

from backoffice_agent.config import settings
from backoffice_agent.db.engine import async_session_factory, get_sync_session
from backoffice_agent.db.models import KnowledgeChunk

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class VectorPoint:
    """A chunk ready to be written: text, its embedding and payload."""

    text: str
    vector: list[float]
    metadata: dict = field(default_factory=dict)


@dataclass
class VectorSearchResult:
    """A single search hit, similarity in [0, 1] for normalised embeddings."""

    id: str
    content: str
    similarity_score: float
    metadata: dict = field(default_factory=dict)


def make_point_ids(owner_id: str, count: int) -> list[str]:
    """
    Globally unique point ids: owner id + ordinal + nanosecond timestamp.

    Two ingestions of the same knowledge base never collide because their
    timestamps differ.
    """
    stamp = time.time_ns()
    return [f"{owner_id}-{ordinal}-{stamp}" for ordinal in range(count)]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    """Interface shared by the Chroma and pgvector backends."""

    def ensure_collection(self, owner_id: str) -> None:
        """Create the owner's collection if absent. Idempotent."""
        ...

    def upsert(self, owner_id: str, points: Sequence[VectorPoint]) -> list[str]:
        """Write points tagged with owner_id; returns the assigned ids."""
        ...

    async def search(
        self,
        owner_id: str,
        query_vector: list[float],
        top_k: int = 5,
        score_threshold: float = 0.0,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorSearchResult]:
        """
        Nearest neighbours at or above score_threshold, best first.

        `filter` maps payload keys to a value (equality) or a list of values
        (membership). A missing collection yields [].
        """
        ...

    def delete_file(self, owner_id: str, file_id: str) -> None:
        """Remove every point written for one knowledge file."""
        ...

    def delete_owner(self, owner_id: str, knowledge_base_id: str | None = None) -> None:
        """Remove all points of an owner, or only one knowledge base's points."""
        ...

    def drop_collection(self, owner_id: str) -> None:
        """Hard-delete the owner's collection. Missing collection is a no-op."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed vector store, one collection per owner.

    Client selection:
    - explicit `client` argument (tests)
    - settings.chroma_url → HttpClient (client/server)
    - settings.chroma_persist_dir → PersistentClient (on disk)
    - otherwise an in-process ephemeral client
    """

    def __init__(self, client: Any | None = None) -> None:
        if client is not None:
            self._client = client
        elif settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        elif settings.chroma_persist_dir:
            self._client = chromadb.PersistentClient(path=settings.chroma_persist_dir)
        else:
            self._client = chromadb.Client()

    @staticmethod
    def collection_name(owner_id: str) -> str:
        """Chroma-safe collection name: [a-zA-Z0-9._-], at most 63 chars."""
        name = re.sub(r"[^a-zA-Z0-9._-]", "_", f"agent_{owner_id}")
        return name[:63].rstrip("._-")

    def ensure_collection(self, owner_id: str) -> None:
        self._get_or_create(owner_id)

    def upsert(self, owner_id: str, points: Sequence[VectorPoint]) -> list[str]:
        if not points:
            return []

        collection = self._get_or_create(owner_id)
        ids = make_point_ids(owner_id, len(points))
        metadatas = [
            _sanitise_chroma_metadata({**point.metadata, "owner_id": owner_id})
            for point in points
        ]

        collection.upsert(
            ids=ids,
            documents=[point.text for point in points],
            embeddings=[point.vector for point in points],
            metadatas=metadatas,
        )

        logger.info(
            "Upserted %d points into Chroma collection %s",
            len(ids), collection.name,
        )
        return ids

    async def search(
        self,
        owner_id: str,
        query_vector: list[float],
        top_k: int = 5,
        score_threshold: float = 0.0,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorSearchResult]:
        """
        Similarity search in the owner's collection.

        The Chroma client is synchronous, so the query runs in a worker
        thread via asyncio.to_thread().
        """

        def _sync_search() -> list[VectorSearchResult]:
            collection = self._get_existing(owner_id)
            if collection is None or collection.count() == 0:
                return []

            results = collection.query(
                query_embeddings=[query_vector],
                n_results=min(top_k, collection.count()),
                where=_build_chroma_where(filter),
                include=["documents", "metadatas", "distances"],
            )

            hits: list[VectorSearchResult] = []
            if results and results["ids"] and results["ids"][0]:
                for i, chroma_id in enumerate(results["ids"][0]):
                    # Cosine distance is in [0, 2]; convert to similarity
                    similarity = round(1.0 - results["distances"][0][i], 4)
                    if similarity < score_threshold:
                        continue
                    hits.append(VectorSearchResult(
                        id=chroma_id,
                        content=results["documents"][0][i] or "",
                        similarity_score=similarity,
                        metadata=dict(results["metadatas"][0][i] or {}),
                    ))

            hits.sort(key=lambda hit: hit.similarity_score, reverse=True)
            return hits

        return await asyncio.to_thread(_sync_search)

    def delete_owner(self, owner_id: str, knowledge_base_id: str | None = None) -> None:
        collection = self._get_existing(owner_id)
        if collection is None:
            return

        where: dict[str, Any] = {"owner_id": owner_id}
        if knowledge_base_id is not None:
            where = {"$and": [where, {"knowledge_base_id": knowledge_base_id}]}

        collection.delete(where=where)
        logger.info(
            "Deleted points for owner=%s knowledge_base=%s from Chroma",
            owner_id, knowledge_base_id or "*",
        )

    def delete_file(self, owner_id: str, file_id: str) -> None:
        collection = self._get_existing(owner_id)
        if collection is None:
            return
        collection.delete(where={"$and": [{"owner_id": owner_id}, {"file_id": file_id}]})
        logger.debug("Cleared Chroma points of file %s (owner=%s)", file_id, owner_id)

    def drop_collection(self, owner_id: str) -> None:
        name = self.collection_name(owner_id)
        if self._get_existing(owner_id) is None:
            logger.debug("Chroma collection %s already absent", name)
            return
        self._client.delete_collection(name=name)
        logger.info("Dropped Chroma collection %s", name)

    def _get_or_create(self, owner_id: str):
        # Cosine space so similarity = 1 - distance, matching pgvector.
        return self._client.get_or_create_collection(
            name=self.collection_name(owner_id),
            metadata={"hnsw:space": "cosine"},
        )

    def _get_existing(self, owner_id: str):
        try:
            return self._client.get_collection(name=self.collection_name(owner_id))
        except (NotFoundError, ValueError):
            return None


# ---------------------------------------------------------------------------
# Implementation 2: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStore:
    """
    pgvector-backed vector store on the shared `knowledge_chunks` table.

    Collections are logical: `ensure_collection` has nothing to create and
    `drop_collection` deletes the owner's rows. Writes use the sync engine
    (Celery), search uses the async engine (request path).
    """

    def __init__(
        self,
        sync_session_factory: sessionmaker | None = None,
        async_factory: async_sessionmaker | None = None,
    ) -> None:
        self._sync_factory = sync_session_factory
        self._async_factory = async_factory or async_session_factory

    def ensure_collection(self, owner_id: str) -> None:
        logger.debug("pgvector owner %s uses the shared knowledge_chunks table", owner_id)

    def upsert(self, owner_id: str, points: Sequence[VectorPoint]) -> list[str]:
        if not points:
            return []

        ids = make_point_ids(owner_id, len(points))
        with get_sync_session(self._sync_factory) as session:
            for point_id, point in zip(ids, points, strict=True):
                metadata = {**point.metadata, "owner_id": owner_id}
                session.add(KnowledgeChunk(
                    id=point_id,
                    owner_id=owner_id,
                    knowledge_base_id=metadata.get("knowledge_base_id"),
                    content=point.text,
                    embedding=point.vector,
                    metadata_=metadata,
                ))

        logger.info("Stored %d points for owner=%s in pgvector", len(ids), owner_id)
        return ids

    async def search(
        self,
        owner_id: str,
        query_vector: list[float],
        top_k: int = 5,
        score_threshold: float = 0.0,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorSearchResult]:
        """
        Cosine similarity search using pgvector's cosine_distance().

        Rows below score_threshold are dropped after the top_k cut, so at
        most top_k results come back.
        """
        distance = KnowledgeChunk.embedding.cosine_distance(query_vector)
        stmt = (
            select(KnowledgeChunk, distance.label("distance"))
            .where(KnowledgeChunk.owner_id == owner_id)
            .order_by(distance)
            .limit(top_k)
        )
        for key, value in (filter or {}).items():
            if key == "knowledge_base_id":
                field_expr = KnowledgeChunk.knowledge_base_id
            else:
                field_expr = KnowledgeChunk.metadata_[key].as_string()

            if isinstance(value, (list, tuple, set)):
                stmt = stmt.where(field_expr.in_([str(v) for v in value]))
            else:
                stmt = stmt.where(field_expr == str(value))

        async with self._async_factory() as session:
            rows = (await session.execute(stmt)).all()

        hits = [
            VectorSearchResult(
                id=chunk.id,
                content=chunk.content,
                similarity_score=round(1.0 - dist, 4),
                metadata=chunk.metadata_ or {},
            )
            for chunk, dist in rows
        ]
        return [hit for hit in hits if hit.similarity_score >= score_threshold]

    def delete_owner(self, owner_id: str, knowledge_base_id: str | None = None) -> None:
        stmt = delete(KnowledgeChunk).where(KnowledgeChunk.owner_id == owner_id)
        if knowledge_base_id is not None:
            stmt = stmt.where(KnowledgeChunk.knowledge_base_id == knowledge_base_id)
        with get_sync_session(self._sync_factory) as session:
            result = session.execute(stmt)
        logger.info(
            "Deleted %d pgvector rows for owner=%s knowledge_base=%s",
            result.rowcount, owner_id, knowledge_base_id or "*",
        )

    def delete_file(self, owner_id: str, file_id: str) -> None:
        stmt = delete(KnowledgeChunk).where(
            KnowledgeChunk.owner_id == owner_id,
            KnowledgeChunk.metadata_["file_id"].as_string() == file_id,
        )
        with get_sync_session(self._sync_factory) as session:
            result = session.execute(stmt)
        logger.debug(
            "Cleared %d pgvector rows of file %s (owner=%s)", result.rowcount, file_id, owner_id,
        )

    def drop_collection(self, owner_id: str) -> None:
        self.delete_owner(owner_id)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_vector_store(
    override_type: str | None = None,
) -> ChromaVectorStore | PgVectorStore:
    """
    Return the configured vector store backend.

    - "chroma" → ChromaVectorStore (default)
    - "pgvector" → PgVectorStore
    """
    store_type = override_type or settings.vectorstore_type

    if store_type == "pgvector":
        logger.info("Using pgvector vector store")
        return PgVectorStore()

    logger.info("Using ChromaDB vector store")
    return ChromaVectorStore()


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _build_chroma_where(filter: dict[str, Any] | None) -> dict | None:
    """Translate a payload filter into a Chroma `where` clause."""
    if not filter:
        return None

    clauses: list[dict] = []
    for key, value in filter.items():
        if isinstance(value, (list, tuple, set)):
            clauses.append({key: {"$in": list(value)}})
        else:
            clauses.append({key: value})

    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Chroma metadata values must be str, int, float or bool:
    lists become comma-separated strings, None becomes "".
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised

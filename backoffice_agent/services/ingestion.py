# =============================================================================
# Knowledge Ingestion Pipeline
# =============================================================================
#
# Turns the files of one knowledge base into searchable chunks in the
# owning agent's vector collection.
#
# PER FILE (sequential, in upload order):
#   1. status → PROCESSING
#   2. extract text (Docling / UTF-8)
#   3. chunk (sentence-bounded, overlapping)
#   4. embed all chunks in ONE embed_batch() call
#   5. clear the file's earlier points, then ONE vector upsert, payload:
#      owner_id, knowledge_base_id, file_id, file_name, file_type, position,
#      chunk_count
#   6. status → INDEXED with the file's chunk and token counts
#
# A failure in any step marks only that file ERROR (with its message) and
# the pipeline moves on to the next file. After each file the knowledge
# base status is recomputed from its files (least-advanced wins).
#
# RE-RUNS: a Celery retry calls the pipeline again with the same files.
# Files already INDEXED are skipped, a file's points are replaced rather
# than appended, and the knowledge base totals are recomputed from the
# INDEXED file rows, so a second run never double-counts or duplicates.
#
# DELETION: the knowledge base (or its agent) can be deleted while the
# task runs. Before each file and again right after each upsert the ledger
# is asked; on deletion the points written so far are removed and the run
# stops without indexing anything else.
#
# The pipeline is synchronous and storage-agnostic: status bookkeeping goes
# through a KnowledgeLedger (SQL implementation in db/repository.py), so it
# runs the same inside a Celery worker and in tests.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Protocol

from backoffice_agent.config import settings
from backoffice_agent.db.models import KnowledgeStatus
from backoffice_agent.errors import ValidationFailure
from backoffice_agent.services.chunker import chunk_text
from backoffice_agent.services.embedder import embed_batch
from backoffice_agent.services.extractor import extract
from backoffice_agent.services.tokens import TokenCounter
from backoffice_agent.services.vectorstore import VectorPoint, VectorStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class StoredFile:
    """A knowledge file written to disk by the request path."""

    file_id: str
    file_name: str
    mime_type: str
    path: str


@dataclass
class FileOutcome:
    file_id: str
    file_name: str
    status: KnowledgeStatus
    chunk_count: int = 0
    token_count: int = 0
    error_message: str | None = None


@dataclass
class IngestionSummary:
    knowledge_base_id: str
    status: KnowledgeStatus
    total_chunks: int = 0
    total_tokens: int = 0
    files: list[FileOutcome] = field(default_factory=list)
    # Set when the knowledge base or its agent was deleted mid-run
    discarded: bool = False

    def to_dict(self) -> dict:
        return {
            "knowledge_base_id": self.knowledge_base_id,
            "status": self.status.value,
            "total_chunks": self.total_chunks,
            "total_tokens": self.total_tokens,
            "discarded": self.discarded,
            "files": [
                {
                    "file_id": f.file_id,
                    "file_name": f.file_name,
                    "status": f.status.value,
                    "chunk_count": f.chunk_count,
                    "error_message": f.error_message,
                }
                for f in self.files
            ],
        }


class KnowledgeLedger(Protocol):
    """Status bookkeeping for knowledge bases and their files."""

    def mark_file(
        self,
        file_id: str,
        status: KnowledgeStatus,
        chunk_count: int | None = None,
        token_count: int | None = None,
        error_message: str | None = None,
    ) -> None:
        ...

    def indexed_files(self, knowledge_base_id: str) -> dict[str, int]:
        """Chunk count of every file of the knowledge base already INDEXED."""
        ...

    def sync_totals(self, knowledge_base_id: str) -> tuple[int, int]:
        """Store and return (chunks, tokens) summed over the INDEXED files."""
        ...

    def refresh_status(self, knowledge_base_id: str) -> KnowledgeStatus:
        """Recompute and store the knowledge base status from its files."""
        ...

    def deleted_scope(
        self, agent_id: str, knowledge_base_id: str,
    ) -> Literal["agent", "knowledge_base"] | None:
        ...


def aggregate_status(statuses: Iterable[KnowledgeStatus]) -> KnowledgeStatus:
    """Least-advanced file status; a knowledge base with no files is PENDING."""
    return KnowledgeStatus.least_advanced(statuses)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def process_knowledge_files(
    agent_id: str,
    knowledge_base_id: str,
    files: Sequence[StoredFile],
    *,
    ledger: KnowledgeLedger,
    vector_store: VectorStore,
    token_counter: TokenCounter,
    embed: Callable[[Sequence[str]], list[list[float]]] = embed_batch,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    task_id: str | None = None,
) -> IngestionSummary:
    """
    Ingest every file of a knowledge base into the agent's collection.

    Safe to call again with the same arguments after an interruption:
    indexed files are skipped and the totals are recomputed.

    Args:
        agent_id: Owner of the vector collection.
        knowledge_base_id: Knowledge base the files belong to.
        files: Files in upload order.
        ledger: Status bookkeeping.
        vector_store: Target vector store.
        token_counter: Used for the knowledge base's token total.
        embed: Batch embedding function (one call per file).
        chunk_size / chunk_overlap: Override settings for this run.
        task_id: Celery task id, used as the log prefix.

    Returns:
        IngestionSummary with the final knowledge base status.
    """
    tag = task_id or knowledge_base_id
    summary = IngestionSummary(
        knowledge_base_id=knowledge_base_id, status=KnowledgeStatus.PENDING,
    )

    logger.info(
        "[%s] Ingesting %d file(s) for agent=%s knowledge_base=%s",
        tag, len(files), agent_id, knowledge_base_id,
    )

    def discard_if_deleted() -> bool:
        if _discard_if_deleted(agent_id, knowledge_base_id, ledger, vector_store, tag):
            summary.discarded = True
        return summary.discarded

    if discard_if_deleted():
        return summary

    vector_store.ensure_collection(agent_id)
    already_indexed = ledger.indexed_files(knowledge_base_id)

    for index, stored in enumerate(files, start=1):
        if stored.file_id in already_indexed:
            logger.info(
                "[%s] File %d/%d: %s already indexed, skipping",
                tag, index, len(files), stored.file_name,
            )
            summary.files.append(FileOutcome(
                file_id=stored.file_id,
                file_name=stored.file_name,
                status=KnowledgeStatus.INDEXED,
                chunk_count=already_indexed[stored.file_id],
            ))
            continue

        if discard_if_deleted():
            return summary

        logger.info("[%s] File %d/%d: %s", tag, index, len(files), stored.file_name)
        ledger.mark_file(stored.file_id, KnowledgeStatus.PROCESSING)

        try:
            outcome = _ingest_file(
                agent_id,
                knowledge_base_id,
                stored,
                vector_store=vector_store,
                token_counter=token_counter,
                embed=embed,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                tag=tag,
            )
        except Exception as exc:
            logger.exception(
                "[%s] Ingestion failed for file %s: %s", tag, stored.file_name, exc,
            )
            message = str(exc)[:1000] or type(exc).__name__
            ledger.mark_file(
                stored.file_id, KnowledgeStatus.ERROR, error_message=message,
            )
            summary.files.append(FileOutcome(
                file_id=stored.file_id,
                file_name=stored.file_name,
                status=KnowledgeStatus.ERROR,
                error_message=message,
            ))
        else:
            # Deleted while this file was being written: its points are orphans
            if discard_if_deleted():
                return summary
            ledger.mark_file(
                stored.file_id,
                KnowledgeStatus.INDEXED,
                chunk_count=outcome.chunk_count,
                token_count=outcome.token_count,
            )
            summary.files.append(outcome)

        summary.status = ledger.refresh_status(knowledge_base_id)

    summary.total_chunks, summary.total_tokens = ledger.sync_totals(knowledge_base_id)
    summary.status = ledger.refresh_status(knowledge_base_id)

    logger.info(
        "[%s] Ingestion finished: status=%s, chunks=%d, tokens=%d",
        tag, summary.status.value, summary.total_chunks, summary.total_tokens,
    )
    return summary


def _discard_if_deleted(
    agent_id: str,
    knowledge_base_id: str,
    ledger: KnowledgeLedger,
    vector_store: VectorStore,
    tag: str,
) -> bool:
    """Remove this run's points if the knowledge base or agent is gone."""
    scope = ledger.deleted_scope(agent_id, knowledge_base_id)
    if scope is None:
        return False

    logger.warning(
        "[%s] %s deleted during ingestion, discarding knowledge_base=%s",
        tag, scope, knowledge_base_id,
    )
    if scope == "agent":
        vector_store.drop_collection(agent_id)
    else:
        vector_store.delete_owner(agent_id, knowledge_base_id)
    return True


def _ingest_file(
    agent_id: str,
    knowledge_base_id: str,
    stored: StoredFile,
    *,
    vector_store: VectorStore,
    token_counter: TokenCounter,
    embed: Callable[[Sequence[str]], list[list[float]]],
    chunk_size: int | None,
    chunk_overlap: int | None,
    tag: str,
) -> FileOutcome:
    # --- Step 1/4: Extract ---
    content = Path(stored.path).read_bytes()
    text = extract(content, stored.mime_type, stored.file_name)
    logger.info(
        "[%s] Step 1/4: extracted %d characters from %s",
        tag, len(text), stored.file_name,
    )

    # --- Step 2/4: Chunk ---
    chunks = chunk_text(text, chunk_size, chunk_overlap)
    logger.info("[%s] Step 2/4: %s → %d chunks", tag, stored.file_name, len(chunks))
    if not chunks:
        raise ValidationFailure(
            "No text could be extracted from the file", identifier=stored.file_name,
        )

    # --- Step 3/4: Embed (one batch for the whole file) ---
    vectors = embed(chunks)
    logger.info("[%s] Step 3/4: embedded %d chunks", tag, len(vectors))

    # --- Step 4/4: Replace the file's points (one upsert for the whole file) ---
    points = [
        VectorPoint(
            text=chunk,
            vector=vector,
            metadata={
                "knowledge_base_id": knowledge_base_id,
                "file_id": stored.file_id,
                "file_name": stored.file_name,
                "file_type": stored.mime_type,
                "position": position,
                "chunk_count": len(chunks),
            },
        )
        for position, (chunk, vector) in enumerate(zip(chunks, vectors, strict=True))
    ]
    token_count = sum(
        token_counter.count_tokens(chunk, settings.embedding_model) for chunk in chunks
    )

    vector_store.delete_file(agent_id, stored.file_id)
    vector_store.upsert(agent_id, points)
    logger.info("[%s] Step 4/4: upserted %d points", tag, len(points))

    return FileOutcome(
        file_id=stored.file_id,
        file_name=stored.file_name,
        status=KnowledgeStatus.INDEXED,
        chunk_count=len(chunks),
        token_count=token_count,
    )

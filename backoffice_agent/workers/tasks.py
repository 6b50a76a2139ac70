# =============================================================================
# Celery Task Definitions — Knowledge Base Ingestion
# =============================================================================
#
# `ingest_knowledge_base` runs the ingestion pipeline
# (services/ingestion.py) for one knowledge base:
#
#   acquire agent slot → for each file: extract → chunk → embed → upsert
#                      → release slot
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# - No `async/await` in tasks
# - Sync SQLAlchemy engine only (SqlKnowledgeLedger)
#
# PER-AGENT CONCURRENCY:
# At most `ingest_max_concurrency_per_agent` knowledge bases of one agent
# ingest at the same time. Each running task holds one Redis lock
# `ingest:{agent_id}:slot:{n}`; the lock expires after
# `ingest_slot_ttl_seconds` so a killed worker cannot hold a slot forever.
# A task that finds every slot taken is re-queued with a countdown.
#
# RETRY STRATEGY:
# File-level failures never fail the task: they are recorded on the file
# (status ERROR) and the remaining files continue. Only infrastructure
# errors outside the per-file loop (database, vector store collection)
# propagate, and Celery retries those up to max_retries. The pipeline is
# safe to re-run, so a retry resumes where the last attempt stopped.
#
# Celery counts slot waits and error retries in the same `retries` field.
# Slot waits are carried in the `slot_waits` argument, so waiting for a
# busy agent never uses up the error budget. When either budget runs out
# every file that is not INDEXED is marked ERROR, so the knowledge base
# settles instead of staying PENDING or PROCESSING forever.
# =============================================================================

import logging

import redis

from backoffice_agent.config import settings
from backoffice_agent.db.repository import SqlKnowledgeLedger
from backoffice_agent.services.ingestion import (
    IngestionSummary,
    StoredFile,
    process_knowledge_files,
)
from backoffice_agent.services.tokens import EncoderCache, TokenCounter
from backoffice_agent.services.vectorstore import get_vector_store
from backoffice_agent.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

# Lazy Redis connection (slot locks)
_redis_client = None


def _get_redis():
    """Lazily create and cache the sync Redis client for slot locks."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(settings.redis_url)
    return _redis_client


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _acquire_agent_slot(redis_client, agent_id: str):
    """
    Try every slot lock of the agent once, without blocking.

    Returns:
        The held redis Lock, or None when all slots are taken.
    """
    for slot in range(settings.ingest_max_concurrency_per_agent):
        lock = redis_client.lock(
            f"ingest:{agent_id}:slot:{slot}",
            timeout=settings.ingest_slot_ttl_seconds,
        )
        if lock.acquire(blocking=False):
            return lock
    return None


def _release_slot(lock) -> None:
    try:
        lock.release()
    except redis.exceptions.LockError:
        # Expired (TTL) and possibly re-acquired by another task.
        logger.warning("Ingestion slot %s expired before release", lock.name)


# ---------------------------------------------------------------------------
# Ingestion Task
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="ingest_knowledge_base",
    max_retries=3,
    default_retry_delay=60,
)
def ingest_knowledge_base(
    self,
    knowledge_base_id: str,
    agent_id: str,
    files: list[dict],
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    slot_waits: int = 0,
) -> dict:
    """
    Ingest the files of one knowledge base into the agent's collection.

    Args:
        knowledge_base_id: Knowledge base to ingest.
        agent_id: Owning agent (vector collection owner).
        files: In upload order, each {"file_id", "file_name", "mime_type",
            "path"}.
        chunk_size / chunk_overlap: Optional chunker overrides.
        slot_waits: Re-queues so far because every agent slot was busy.

    Returns:
        IngestionSummary as a dict (final status, totals, per-file outcome).
    """
    task_id = self.request.id
    task_kwargs = {
        "knowledge_base_id": knowledge_base_id,
        "agent_id": agent_id,
        "files": files,
        "chunk_size": chunk_size,
        "chunk_overlap": chunk_overlap,
    }
    error_retries = self.request.retries - slot_waits
    ledger = SqlKnowledgeLedger()

    slot = _acquire_agent_slot(_get_redis(), agent_id)
    if slot is None:
        if slot_waits >= settings.ingest_slot_max_waits:
            logger.error(
                "[%s] No ingestion slot for agent %s after %d waits, giving up",
                task_id, agent_id, slot_waits,
            )
            status = ledger.fail_unfinished(
                knowledge_base_id,
                f"No ingestion slot became free after {slot_waits} attempts",
            )
            summary = IngestionSummary(knowledge_base_id=knowledge_base_id, status=status)
            return summary.to_dict()

        logger.info(
            "[%s] All %d ingestion slots busy for agent %s, retrying in %ds",
            task_id, settings.ingest_max_concurrency_per_agent, agent_id,
            settings.ingest_slot_retry_seconds,
        )
        raise self.retry(
            args=(),
            kwargs={**task_kwargs, "slot_waits": slot_waits + 1},
            countdown=settings.ingest_slot_retry_seconds,
            max_retries=self.request.retries + 1,
        )

    encoders = EncoderCache()
    try:
        summary = process_knowledge_files(
            agent_id,
            knowledge_base_id,
            [StoredFile(**entry) for entry in files],
            ledger=ledger,
            vector_store=get_vector_store(),
            token_counter=TokenCounter(encoders),
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            task_id=task_id,
        )
    except Exception as exc:
        logger.exception(
            "[%s] Ingestion aborted for knowledge_base=%s (attempt %d): %s",
            task_id, knowledge_base_id, error_retries + 1, exc,
        )
        if error_retries >= self.max_retries:
            message = f"Ingestion failed after {error_retries + 1} attempts: {exc}"
            try:
                ledger.fail_unfinished(knowledge_base_id, message[:1000])
            except Exception:
                logger.exception(
                    "[%s] Could not record the failure of knowledge_base=%s",
                    task_id, knowledge_base_id,
                )
            raise
        raise self.retry(
            exc=exc,
            args=(),
            kwargs={**task_kwargs, "slot_waits": slot_waits},
            max_retries=self.request.retries + 1,
        )
    finally:
        encoders.close()
        _release_slot(slot)

    return summary.to_dict()

# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs knowledge ingestion off the request path:
#   upload → AgentService.ingest() → Redis broker → worker → ingest files
#
# ARCHITECTURE:
# ┌──────────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │ AgentService │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │ (producer)   │     │(broker)│    │ (consumer)   │     │(result)│
# └──────────────┘     └───────┘     └──────────────┘     └───────┘
#    db 0 ──────────────┘                                    └── db 1
#
# Redis db 2 holds the per-agent ingestion slot locks (workers/tasks.py).
# =============================================================================

import logging

from celery import Celery
from celery.signals import after_setup_logger

from backoffice_agent.config import settings

celery_app = Celery(
    "backoffice_agent.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: task arguments are ids and file paths, never bytes.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Ack after completion so a crashed worker's task is re-queued.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Ingestion tasks are long; fetch one at a time for fair distribution.
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    task_soft_time_limit=settings.ingest_slot_ttl_seconds - 60,
    task_time_limit=settings.ingest_slot_ttl_seconds,

    # --- Results ---
    result_expires=3600,

    include=["backoffice_agent.workers.tasks"],
)


@after_setup_logger.connect
def _apply_log_level(logger: logging.Logger, *args, **kwargs) -> None:
    """Workers log at the configured level, like the request path."""
    logger.setLevel(settings.log_level.upper())

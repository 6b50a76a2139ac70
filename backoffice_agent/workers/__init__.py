# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration
#   - tasks.py: knowledge-base ingestion task with per-agent slot limits
#
# Ingestion involves slow steps (PDF conversion, embedding calls, vector
# writes), so AgentService.ingest() returns a pending knowledge base at
# once and the worker reports progress through per-file statuses.
# =============================================================================

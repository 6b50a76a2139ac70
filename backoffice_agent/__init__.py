# =============================================================================
# Back-Office Agent Pipeline
# =============================================================================
# Conversational agents for a business back office (clients, invoices,
# expenses), grounded in per-agent knowledge bases and live data from the
# back-office modules.
#
# Package structure:
#   backoffice_agent/
#   ├── agents/       → AgentService (entry points) and the LangGraph turn
#   │                    executor (gather → assemble → invoke → finalize)
#   ├── db/           → Database engines, ORM models, repositories
#   ├── models/       → Pydantic V2 agent profile, request/response schemas
#   ├── services/     → Extraction, chunking, embedding, vector stores,
#   │                    prompts, context, LLM gateway, tokens, pricing,
#   │                    post-processing, ingestion pipeline
#   ├── workers/      → Celery knowledge-base ingestion task
#   ├── config.py     → pydantic-settings configuration
#   └── errors.py     → Pipeline error taxonomy
# =============================================================================

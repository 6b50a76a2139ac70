# =============================================================================
# Database Package
# =============================================================================
# Provides async and sync SQLAlchemy engines, ORM models and repositories.
#
# Key exports:
#   - get_async_session / get_sync_session: transactional session scopes
#   - Base: SQLAlchemy declarative base for ORM models
#   - Agent, SystemPrompt, KnowledgeBase, KnowledgeFile, Conversation,
#     ConversationTurn, KnowledgeChunk: ORM models
#   - ConversationRepository, SqlKnowledgeLedger: repositories
# =============================================================================

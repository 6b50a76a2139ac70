# =============================================================================
# Services Package — Pipeline Components
# =============================================================================
#   - extractor.py: text extraction (Docling for PDF, UTF-8 for text)
#   - chunker.py: sentence-bounded overlapping chunks
#   - embedder.py: OpenAI embeddings (batched)
#   - vectorstore.py: pluggable vector store protocol (Chroma, pgvector)
#   - ingestion.py: per-file extract → chunk → embed → upsert pipeline
#   - prompt.py: prompt assembly and variable substitution
#   - context.py: collaborator module data → prompt context
#   - llm.py: provider-agnostic model gateway (OpenAI, Anthropic,
#     OpenAI-compatible)
#   - tokens.py / pricing.py: token counting and cost accounting
#   - postprocess.py: action extraction and source attribution
# =============================================================================

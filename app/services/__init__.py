# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Core logic, separated from API handlers:
#   - ingestion.py: Validated upload (single or chunked), archive, delete
#   - analysis.py: Status state machine, stale sweep, reconciliation
#   - storage.py: Blob store protocol (local filesystem, Supabase)
#   - extraction.py: Classification and Docling-backed extraction
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - summarizer.py: Summary / red flags / highlights from extracted data
#   - embedder.py + search_index.py: Pluggable search index (Chroma, pgvector)
#   - auth.py + audit_trail.py: Authorization rules and audit events
#   - reports.py: Project-level aggregation
#   - container.py: Wires the above from Settings
# =============================================================================

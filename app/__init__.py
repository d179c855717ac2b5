# =============================================================================
# Audit Document Pipeline
# =============================================================================
# Ingests audit documents into projects, analyzes each one (extraction →
# LLM summary → search index) and answers questions over a project.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (documents, analysis, ask,
#   │                    reports, health) and auth dependencies
#   ├── agents/       → LangGraph project assistant (retrieve → assemble →
#   │                    answer → persist)
#   ├── db/           → Database engines, sessions and ORM models
#   ├── models/       → Pydantic V2 request/response and extraction schemas
#   ├── services/     → Business logic: ingestion, analysis orchestrator,
#   │                    storage/extraction/LLM/index adapters, reports
#   └── workers/      → Celery tasks (queued analysis, re-index, sweep,
#                        reconciliation)
# =============================================================================

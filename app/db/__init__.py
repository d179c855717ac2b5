# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engines, session management and ORM models.
#
# Key exports:
#   - async_session_factory / worker_session_factory: session factories
#   - Base: SQLAlchemy declarative base for ORM models
#   - Project, Document, AnalysisResult, ChatTurn, AuditEvent, ApiKey
# =============================================================================

# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - documents.py: Upload, listing, download, archive, restore, delete
#   - analysis.py: Trigger a document analysis and read its result
#   - ask.py: Project Q&A, chat history, suggested questions
#   - reports.py: Project report and health check
#   - deps.py: Service container and caller identity (API keys)
# =============================================================================

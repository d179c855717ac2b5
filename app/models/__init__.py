# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API and the ExtractedData document
# shape. These are SEPARATE from the database models (app/db/models.py):
# processing tokens and storage paths never reach API responses.
# =============================================================================

# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. FastAPI uses them for body
# validation (automatic 422 errors) and OpenAPI documentation.
#
# Uploads are multipart and are not modelled here; see api/documents.py.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class HistoryMessage(BaseModel):
    """One prior message supplied by the client instead of stored history."""

    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1, max_length=8000)


class AskRequest(BaseModel):
    """
    Request body for POST /projects/{project_id}/ask.

    Example:
        {
            "question": "What red flags were found?",
            "history": [
                {"role": "user", "content": "Which invoices are overdue?"},
                {"role": "assistant", "content": "Invoice 42 is 30 days late."}
            ]
        }
    """

    question: str = Field(
        ...,
        min_length=3,
        max_length=2000,
        description="Question about the project's documents",
        examples=["What red flags were found?"],
    )

    # When omitted, the last N stored turns of the project are used
    history: list[HistoryMessage] | None = Field(
        default=None,
        max_length=20,
        description="Optional recent conversation, oldest first",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"question": "What red flags were found?"},
            ]
        }
    )

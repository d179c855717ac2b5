# =============================================================================
# Ask API — Project Assistant Endpoints
# =============================================================================
#
# ENDPOINTS:
#   POST /projects/{project_id}/ask                 — answer with citations
#   GET  /projects/{project_id}/chat-history        — recent Q&A turns
#   GET  /projects/{project_id}/suggested-questions — rule-based prompts
#
# The heavy lifting happens in agents/assistant.py (retrieve → assemble
# → answer → persist). This module is thin by design: request validation,
# identity and response mapping.
#
# Error handling (via the PipelineError handler in main.py):
# - No LLM key configured → 503 Service Unavailable
# - LLM API errors        → 502 Bad Gateway
# - Search index down     → 200 with retrieval_degraded=true (not an error)
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_actor, get_services
from app.models.requests import AskRequest
from app.models.responses import (
    AskResponse,
    ChatHistoryResponse,
    ChatTurnResponse,
    CitationResponse,
    SuggestedQuestionsResponse,
)
from app.services.auth import Actor
from app.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Question Answering"])


@router.post(
    "/projects/{project_id}/ask",
    response_model=AskResponse,
    summary="Ask a question about a project's documents",
    description=(
        "Answers from the project's analysis summaries plus the most "
        "relevant indexed snippets. Every answer is stored as a chat turn."
    ),
)
async def ask_endpoint(
    project_id: str,
    request: AskRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> AskResponse:
    history = None
    if request.history is not None:
        history = [message.model_dump() for message in request.history]

    outcome = await services.assistant.ask(project_id, actor, request.question, history)

    logger.info(
        "Answered: project=%s citations=%d degraded=%s",
        project_id, len(outcome.citations), outcome.retrieval_degraded,
    )
    return AskResponse(
        answer=outcome.answer,
        citations=[CitationResponse(**c.as_dict()) for c in outcome.citations],
        chat_turn_id=outcome.chat_turn_id,
        retrieval_degraded=outcome.retrieval_degraded,
        model=outcome.model,
    )


@router.get(
    "/projects/{project_id}/chat-history",
    response_model=ChatHistoryResponse,
    summary="Recent questions and answers in a project",
)
async def chat_history(
    project_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ChatHistoryResponse:
    turns = await services.assistant.history(project_id, actor, limit=limit)
    return ChatHistoryResponse(turns=[ChatTurnResponse.model_validate(t) for t in turns])


@router.get(
    "/projects/{project_id}/suggested-questions",
    response_model=SuggestedQuestionsResponse,
    summary="Suggested questions for a project",
)
async def suggested_questions(
    project_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> SuggestedQuestionsResponse:
    questions = await services.assistant.suggested_questions(project_id, actor)
    return SuggestedQuestionsResponse(suggested_questions=questions)

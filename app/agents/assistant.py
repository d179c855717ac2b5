# =============================================================================
# Project Assistant — Retrieval-Augmented Q&A over Audit Evidence
# =============================================================================
#
# Answers natural-language questions about one project's documents using
# two sources of context:
#   1. persisted analysis results (summary, red flags, highlights) for
#      every analyzed document in the project
#   2. ranked snippets from the search index
#
# GRAPH TOPOLOGY:
#   START ──▶ retrieve ──▶ assemble ──▶ answer ──▶ persist ──▶ END
#
#   retrieve  authorize the caller, search the index (degrades to no hits)
#   assemble  load analyses, order context (analyses first, then snippets),
#             build citations
#   answer    general completion with the last N turns as history
#   persist   append the ChatTurn
#
# DESIGN DECISION: Linear graph, compiled once at module level.
# Services are passed in the state under "assistant" rather than read from
# globals, so tests and workers can run the same graph with their own
# collaborators. The state is never checkpointed, so holding objects in it
# is safe.
#
# DESIGN DECISION: The index is optional for answering.
# Search failures are logged and the turn is flagged retrieval_degraded;
# the answer is still produced from persisted analyses. Hits that do not
# belong to the project (or point at archived documents) are dropped, so
# citations only ever reference documents of the asking project.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, START, StateGraph
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing_extensions import TypedDict

from app.db.models import AnalysisResult, ChatTurn, Document, Project
from app.errors import PipelineError, SummarizationFailed
from app.services.auth import Actor, ProjectAuthorizer
from app.services.search_index import IndexHit, SearchIndex
from app.services.summarizer import Summarizer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class Citation:
    document_id: str
    snippet: str
    score: float

    def as_dict(self) -> dict[str, Any]:
        return {"document_id": self.document_id, "snippet": self.snippet, "score": self.score}


@dataclass
class AskOutcome:
    answer: str
    citations: list[Citation] = field(default_factory=list)
    chat_turn_id: str | None = None
    retrieval_degraded: bool = False
    model: str | None = None


class AssistantState(TypedDict, total=False):
    """State flowing through the graph. Nodes return partial updates."""

    # --- Input ---
    assistant: ProjectAssistant
    project_id: str
    actor: Actor
    question: str
    history: list[dict[str, str]] | None

    # --- Intermediate ---
    project: Project
    hits: list[IndexHit]
    retrieval_degraded: bool
    context: str
    citations: list[Citation]

    # --- Output ---
    answer: str
    model: str | None
    chat_turn_id: str


# ---------------------------------------------------------------------------
# Suggested questions (deterministic rule table)
# ---------------------------------------------------------------------------

_FINANCIAL_NAME_HINTS = ("financial", "statement")


def suggest_questions(
    client_name: str | None,
    has_red_flags: bool,
    filenames: list[str],
    limit: int = 8,
) -> list[str]:
    """Canned follow-up questions derived from a project's analyses."""
    client = client_name or "this client"
    questions = [
        f"What are the key financial highlights for {client}?",
        "Are there any compliance issues I should be aware of?",
        "What are the main risk factors identified in the documents?",
        "Can you summarize the financial performance?",
    ]
    if has_red_flags:
        questions.append("What are the most critical red flags found?")
        questions.append("How should I address the identified issues?")

    lowered = [name.lower() for name in filenames]
    if any("invoice" in name for name in lowered):
        questions.append("What is the total invoice amount for this period?")
        questions.append("Are there any invoice discrepancies?")
    if any(hint in name for name in lowered for hint in _FINANCIAL_NAME_HINTS):
        questions.append("What is the company's current financial position?")
        questions.append("How does this compare to previous periods?")

    return questions[:limit]


# ---------------------------------------------------------------------------
# Context assembly helpers
# ---------------------------------------------------------------------------


def _format_analysis(index: int, document: Document, result: AnalysisResult) -> str:
    red_flags = ", ".join(result.red_flags) if result.red_flags else "None"
    highlights = ", ".join(result.highlights) if result.highlights else "None"
    return (
        f"Document {index}: {document.filename} (id {document.id})\n"
        f"- Summary: {result.summary or 'No summary available'}\n"
        f"- Red Flags: {red_flags}\n"
        f"- Highlights: {highlights}"
    )


def build_context(
    project: Project,
    analyses: list[tuple[Document, AnalysisResult]],
    hits: list[IndexHit],
    documents_by_id: dict[str, Document],
    snippet_chars: int,
) -> tuple[str, list[Citation]]:
    """
    Order context as analyses first, then ranked snippets.

    Citations are merged per document: the best search score (0.0 when
    only the analysis contributed) and the literal text used.
    """
    sections: list[str] = [f"Project: {project.name}"]
    if project.client_name:
        sections.append(f"Client: {project.client_name}")

    citations: dict[str, Citation] = {}

    if analyses:
        sections.append("\nDocument Analysis Context:")
        for i, (document, result) in enumerate(analyses, 1):
            block = _format_analysis(i, document, result)
            sections.append(block)
            citations[document.id] = Citation(
                document_id=document.id,
                snippet=(result.summary or block)[:snippet_chars],
                score=0.0,
            )

    ranked = sorted(hits, key=lambda h: h.score, reverse=True)
    if ranked:
        sections.append("\nRelevant Excerpts:")
    for hit in ranked:
        document = documents_by_id[hit.id]
        snippet = hit.content[:snippet_chars]
        sections.append(f"[{document.filename}] (relevance {hit.score:.2f})\n{snippet}")
        existing = citations.get(hit.id)
        if existing is None or existing.score == 0.0 or hit.score > existing.score:
            citations[hit.id] = Citation(document_id=hit.id, snippet=snippet, score=hit.score)

    ordered = sorted(citations.values(), key=lambda c: c.score, reverse=True)
    return "\n".join(sections), ordered


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def retrieve_node(state: AssistantState) -> dict:
    assistant = state["assistant"]
    async with assistant.session_factory() as session:
        project = await assistant.authorizer.check(
            session, state["project_id"], state["actor"], "ask",
        )

    try:
        if not assistant.search_index.available:
            raise PipelineError("search index unavailable")
        hits = await asyncio.wait_for(
            assistant.search_index.search(
                state["question"], state["project_id"], assistant.top_k,
            ),
            timeout=assistant.index_timeout,
        )
    except (PipelineError, TimeoutError) as exc:
        logger.warning(
            "Search degraded for project %s (%s); answering from analyses only",
            state["project_id"], exc,
        )
        return {"project": project, "hits": [], "retrieval_degraded": True}

    logger.info("Retrieved %d index hits for project %s", len(hits), state["project_id"])
    return {"project": project, "hits": hits, "retrieval_degraded": False}


async def assemble_node(state: AssistantState) -> dict:
    assistant = state["assistant"]
    project_id = state["project_id"]

    async with assistant.session_factory() as session:
        documents = (
            await session.execute(
                select(Document).where(
                    Document.project_id == project_id,
                    Document.deleted_at.is_(None),
                )
            )
        ).scalars().all()
        rows = (
            await session.execute(
                select(Document, AnalysisResult)
                .join(AnalysisResult, AnalysisResult.document_id == Document.id)
                .where(
                    Document.project_id == project_id,
                    Document.deleted_at.is_(None),
                    AnalysisResult.is_active.is_(True),
                )
                .order_by(AnalysisResult.created_at.desc())
                .limit(assistant.max_context_analyses)
            )
        ).all()

    documents_by_id = {d.id: d for d in documents}
    hits = []
    for hit in state.get("hits", []):
        if hit.id in documents_by_id and hit.metadata.get("project_id", project_id) == project_id:
            hits.append(hit)
        else:
            logger.warning("Dropping index hit %s outside project %s", hit.id, project_id)

    context, citations = build_context(
        state["project"],
        [(document, result) for document, result in rows],
        hits,
        documents_by_id,
        assistant.snippet_chars,
    )
    return {"context": context, "citations": citations}


async def answer_node(state: AssistantState) -> dict:
    assistant = state["assistant"]
    history = state.get("history")
    if history is None:
        history = await assistant.recent_history_messages(state["project_id"])

    try:
        completion = await asyncio.wait_for(
            assistant.summarizer.complete(state["question"], state["context"], history),
            timeout=assistant.completion_timeout,
        )
    except TimeoutError as exc:
        raise SummarizationFailed("Answer generation timed out") from exc
    return {"answer": completion.answer, "model": completion.model}


async def persist_node(state: AssistantState) -> dict:
    assistant = state["assistant"]
    async with assistant.session_factory() as session:
        turn = ChatTurn(
            project_id=state["project_id"],
            user_id=state["actor"].user_id,
            question=state["question"],
            answer=state["answer"],
            citations=[c.as_dict() for c in state.get("citations", [])],
            retrieval_degraded=state.get("retrieval_degraded", False),
            model=state.get("model"),
        )
        session.add(turn)
        await session.commit()
    return {"chat_turn_id": turn.id}



# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class ProjectAssistant:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        search_index: SearchIndex,
        summarizer: Summarizer,
        authorizer: ProjectAuthorizer | None = None,
        *,
        top_k: int = 5,
        snippet_chars: int = 1000,
        history_turns: int = 5,
        max_context_analyses: int = 50,
        max_suggested_questions: int = 8,
        index_timeout: float = 30.0,
        completion_timeout: float = 90.0,
    ) -> None:
        self.session_factory = session_factory
        self.search_index = search_index
        self.summarizer = summarizer
        self.authorizer = authorizer or ProjectAuthorizer()
        self.top_k = top_k
        self.snippet_chars = snippet_chars
        self.history_turns = history_turns
        self.max_context_analyses = max_context_analyses
        self.max_suggested_questions = max_suggested_questions
        self.index_timeout = index_timeout
        self.completion_timeout = completion_timeout

    async def ask(
        self,
        project_id: str,
        actor: Actor,
        question: str,
        history: list[dict[str, str]] | None = None,
    ) -> AskOutcome:
        """
        Answer `question` for `project_id` and append the ChatTurn.

        `history` overrides the stored conversation (list of role/content
        messages, oldest first). When omitted, the last `history_turns`
        persisted turns are used.
        """
        logger.info("Ask: project=%s user=%s question='%s'", project_id, actor.user_id, question[:80])
        state = await graph.ainvoke({
            "assistant": self,
            "project_id": project_id,
            "actor": actor,
            "question": question,
            "history": history,
        })
        return AskOutcome(
            answer=state["answer"],
            citations=state.get("citations", []),
            chat_turn_id=state.get("chat_turn_id"),
            retrieval_degraded=state.get("retrieval_degraded", False),
            model=state.get("model"),
        )

    async def recent_history_messages(self, project_id: str) -> list[dict[str, str]]:
        turns = await self._recent_turns(project_id, self.history_turns)
        messages: list[dict[str, str]] = []
        for turn in turns:
            messages.append({"role": "user", "content": turn.question})
            messages.append({"role": "assistant", "content": turn.answer})
        return messages

    async def _recent_turns(self, project_id: str, limit: int) -> list[ChatTurn]:
        async with self.session_factory() as session:
            turns = (
                await session.execute(
                    select(ChatTurn)
                    .where(ChatTurn.project_id == project_id)
                    .order_by(ChatTurn.created_at.desc(), ChatTurn.id.desc())
                    .limit(limit)
                )
            ).scalars().all()
        return list(reversed(turns))

    async def history(self, project_id: str, actor: Actor, limit: int = 50) -> list[ChatTurn]:
        """Most recent turns for the project, oldest first."""
        async with self.session_factory() as session:
            await self.authorizer.check(session, project_id, actor, "view")
        return await self._recent_turns(project_id, limit)

    async def suggested_questions(self, project_id: str, actor: Actor) -> list[str]:
        async with self.session_factory() as session:
            project = await self.authorizer.check(session, project_id, actor, "view")
            rows = (
                await session.execute(
                    select(Document.filename, AnalysisResult.red_flags)
                    .join(AnalysisResult, AnalysisResult.document_id == Document.id)
                    .where(
                        Document.project_id == project_id,
                        Document.deleted_at.is_(None),
                        AnalysisResult.is_active.is_(True),
                    )
                )
            ).all()
        return suggest_questions(
            project.client_name,
            has_red_flags=any(red_flags for _, red_flags in rows),
            filenames=[filename for filename, _ in rows],
            limit=self.max_suggested_questions,
        )


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------
# Built after ProjectAssistant so the state annotations resolve.
# ---------------------------------------------------------------------------

_builder = StateGraph(AssistantState)
_builder.add_node("retrieve", retrieve_node)
_builder.add_node("assemble", assemble_node)
_builder.add_node("answer", answer_node)
_builder.add_node("persist", persist_node)

_builder.add_edge(START, "retrieve")
_builder.add_edge("retrieve", "assemble")
_builder.add_edge("assemble", "answer")
_builder.add_edge("answer", "persist")
_builder.add_edge("persist", END)

graph = _builder.compile()

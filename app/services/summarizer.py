# =============================================================================
# Summarizer — AI Summary, Risk Findings & General Completion
# =============================================================================
#
# Thin adapter over the LLM provider with two capabilities:
#
#   summarize(extracted, category) → SummaryResult
#       summary text, ordered red flags, ordered highlights, confidence
#   complete(question, context, history) → Completion
#       general-purpose answer used by the project assistant
#
# DESIGN DECISION: The model is asked for JSON, and parsing is lenient.
# Models sometimes wrap JSON in a markdown fence or add prose around it.
# We strip fences and fall back to the first JSON object in the text. If
# nothing parses, the raw text (first 500 chars) becomes the summary with
# a confidence of 0.7 and empty finding lists, which keeps the pipeline
# moving on a usable but lower-confidence result.
#
# DESIGN DECISION: SummaryResult enforces its own invariants.
# Confidence is clamped to [0, 1] and the finding lists are never None,
# whatever the model returned.
#
# Failures surface as SummarizationUnavailable (no provider configured)
# or SummarizationFailed (provider error). Timeouts are applied by the
# caller.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator

from app.errors import SummarizationFailed, SummarizationUnavailable
from app.models.extraction import ExtractedData
from app.services.llm import LLMProvider

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY_CHARS = 500
FALLBACK_CONFIDENCE = 0.7
DEFAULT_CONFIDENCE = 0.8

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class SummaryResult(BaseModel):
    summary: str = ""
    red_flags: list[str] = Field(default_factory=list)
    highlights: list[str] = Field(default_factory=list)
    confidence_score: float = DEFAULT_CONFIDENCE

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: object) -> float:
        try:
            score = float(value)
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE
        if score != score:  # NaN
            return DEFAULT_CONFIDENCE
        return min(1.0, max(0.0, score))

    @field_validator("red_flags", "highlights", mode="before")
    @classmethod
    def _coerce_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(item) for item in value if item is not None and str(item).strip()]

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: object) -> str:
        return "" if value is None else str(value)


@dataclass
class Completion:
    answer: str
    model: str


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_ANALYSIS_SYSTEM = (
    "You are an expert financial auditor. Analyze the provided document "
    "data and report insights, red flags and highlights."
)

_ANALYSIS_TEMPLATE = """Analyze the following {category} document data and provide:

1. A concise summary (2-3 sentences)
2. Red flags or potential issues (list)
3. Key highlights or positive findings (list)
4. A confidence score between 0 and 1

Document data:
{data}

Respond with ONLY valid JSON in this structure:
{{
  "summary": "...",
  "redFlags": ["..."],
  "highlights": ["..."],
  "confidenceScore": 0.9
}}"""

_ASSISTANT_SYSTEM = (
    "You are an AI audit assistant. Answer questions about the project's "
    "documents and audit findings using only the provided context. Be "
    "precise and professional, and call out compliance or risk issues. If "
    "the context does not contain the answer, say so."
)


# ---------------------------------------------------------------------------
# Response Parsing
# ---------------------------------------------------------------------------


def _load_json_object(text: str) -> dict | None:
    stripped = text.strip()
    fence = _FENCE_RE.match(stripped)
    if fence:
        stripped = fence.group(1)
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        start, end = stripped.find("{"), stripped.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            parsed = json.loads(stripped[start : end + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def parse_analysis_response(text: str) -> SummaryResult:
    """Turn raw model output into a SummaryResult (never raises)."""
    parsed = _load_json_object(text)
    if parsed is None:
        logger.warning("Analysis response was not JSON; using text fallback")
        return SummaryResult(
            summary=text.strip()[:FALLBACK_SUMMARY_CHARS],
            confidence_score=FALLBACK_CONFIDENCE,
        )
    return SummaryResult(
        summary=parsed.get("summary", ""),
        red_flags=parsed.get("redFlags", parsed.get("red_flags")),
        highlights=parsed.get("highlights"),
        confidence_score=parsed.get(
            "confidenceScore", parsed.get("confidence_score", DEFAULT_CONFIDENCE)
        ),
    )


# ---------------------------------------------------------------------------
# Summarizer
# ---------------------------------------------------------------------------


class Summarizer:
    """
    Summarization adapter.

    Args:
        provider: LLM provider, or None when no model is configured.
        input_chars: Budget for extracted content sent per call.
    """

    def __init__(self, provider: LLMProvider | None, input_chars: int = 6000) -> None:
        self._provider = provider
        self.input_chars = input_chars

    @property
    def available(self) -> bool:
        return self._provider is not None

    @property
    def model(self) -> str | None:
        return self._provider.model if self._provider is not None else None

    def _require_provider(self) -> LLMProvider:
        if self._provider is None:
            raise SummarizationUnavailable("No language model configured")
        return self._provider

    async def summarize(self, extracted: ExtractedData, category: str) -> SummaryResult:
        provider = self._require_provider()
        prompt = _ANALYSIS_TEMPLATE.format(
            category=category,
            data=extracted.for_prompt(self.input_chars),
        )
        try:
            response = await provider.complete(
                messages=[{"role": "user", "content": prompt}],
                system=_ANALYSIS_SYSTEM,
                temperature=0.3,
            )
        except Exception as exc:
            logger.exception("Summarization call failed")
            raise SummarizationFailed(str(exc) or type(exc).__name__) from exc

        result = parse_analysis_response(response.content)
        logger.info(
            "Summarized %s document: %d red flags, %d highlights, confidence=%.2f",
            category, len(result.red_flags), len(result.highlights),
            result.confidence_score,
        )
        return result

    async def complete(
        self,
        question: str,
        context: str,
        history: list[dict[str, str]] | None = None,
    ) -> Completion:
        """
        Answer `question` from `context`.

        `history` is a list of prior {"role", "content"} messages, oldest
        first, placed before the new question.
        """
        provider = self._require_provider()
        messages = list(history or [])
        messages.append({
            "role": "user",
            "content": f"Context:\n{context}\n\nQuestion: {question}",
        })
        try:
            response = await provider.complete(
                messages=messages,
                system=_ASSISTANT_SYSTEM,
            )
        except Exception as exc:
            logger.exception("Completion call failed")
            raise SummarizationFailed(str(exc) or type(exc).__name__) from exc
        return Completion(answer=response.content, model=response.model)

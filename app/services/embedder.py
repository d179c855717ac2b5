# =============================================================================
# Embedding Service — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API
# (OpenAI, Alibaba Cloud DashScope, Azure-style gateways, ...).
#
# DESIGN DECISION: OpenAI SDK with configurable base_url.
# Most providers expose the OpenAI embeddings endpoint, so a configurable
# base_url covers all of them with zero code changes.
#
# DESIGN DECISION: Sync client, called through asyncio.to_thread().
# The search index backends run the embedder in a worker thread, the same
# way ChromaDB's synchronous client is used.
#
# DESIGN DECISION: No retry logic in the embedder. Index writes are
# best-effort; a failed upsert marks the document index-degraded and a
# background re-index retries later.
#
# DESIGN DECISION: Inputs are capped at `max_input_tokens` with tiktoken
# (cl100k_base, the encoding of text-embedding-3-small). A document entry
# holds all extracted text plus the summary, which for long documents
# exceeds the model limit; the leading tokens are embedded and the full
# text is still stored as the entry content.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

import tiktoken
from openai import OpenAI

from app.config import EmbeddingConfig

logger = logging.getLogger(__name__)

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Return the longest prefix of `text` that encodes to at most `max_tokens` tokens."""
    encoder = _get_encoder()
    tokens = encoder.encode(text, disallowed_special=())
    if len(tokens) <= max_tokens:
        return text
    return encoder.decode(tokens[:max_tokens])


class Embedder:
    """
    Embedding client bound to one EmbeddingConfig.

    The OpenAI client is created lazily on first use, so constructing an
    Embedder without an API key is fine; `available` reports whether it
    can actually embed.
    """

    def __init__(self, config: EmbeddingConfig, client: OpenAI | None = None) -> None:
        self.config = config
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self.config.api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self.config.api_key:
                raise ValueError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )
            client_kwargs: dict = {"api_key": self.config.api_key}
            if self.config.base_url:
                client_kwargs["base_url"] = self.config.base_url
            self._client = OpenAI(**client_kwargs)
            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                self.config.model,
                self.config.base_url or "https://api.openai.com/v1",
            )
        return self._client

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed `texts` in sub-batches of `config.batch_size`.

        Each text is cut to `config.max_input_tokens` tokens first.

        Returns embeddings in the SAME ORDER as the input texts.
        """
        if not texts:
            return []

        client = self._get_client()
        batch_size = self.config.batch_size
        all_embeddings: list[list[float]] = [[] for _ in texts]

        for i in range(0, len(texts), batch_size):
            batch = [
                truncate_to_tokens(text, self.config.max_input_tokens)
                for text in texts[i : i + batch_size]
            ]
            create_kwargs: dict = {"model": self.config.model, "input": batch}
            if self.config.dimensions:
                create_kwargs["dimensions"] = self.config.dimensions

            response = client.embeddings.create(**create_kwargs)

            # Items carry their input index; order by it
            for item in sorted(response.data, key=lambda x: x.index):
                all_embeddings[i + item.index] = item.embedding

            logger.debug(
                "Embedded batch %d-%d of %d (prompt tokens=%d)",
                i + 1, min(i + batch_size, len(texts)), len(texts),
                response.usage.prompt_tokens if response.usage else 0,
            )

        return all_embeddings

    def embed_query(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

"""
RagChat - Query Transformer
============================
Two-stage rewrite of a raw user query into retrieval-friendly queries:

    1. **Compress** – fold the conversation history into one concise,
       self-contained query (skipped when there is no history).
    2. **Expand**   – broaden every compressed query into ``n`` differently
       worded variants.

The output is the flattened concatenation of all expansions, in order.
Both stages go through the completion engine; if either fails, the whole
transform fails with ``RetrievalError`` and nothing partial is returned.
"""

from __future__ import annotations

from ragchat.config.prompt_templates import QUERY_COMPRESSION_PROMPT, QUERY_EXPANSION_PROMPT
from ragchat.src.core.engines import CompletionEngine
from ragchat.src.core.exceptions import RetrievalError
from ragchat.src.core.models import Message, Query
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

_ROLE_LABELS = {"user": "User", "assistant": "AI"}


class QueryTransformer:
    """
    Compress-then-expand transformer.

    Parameters
    ----------
    engine
        Completion engine used for both stages.
    expansion_count
        Number of variants requested per compressed query.
    """

    __slots__ = ("_engine", "_n")

    def __init__(self, engine: CompletionEngine, expansion_count: int = 3) -> None:
        self._engine = engine
        self._n = expansion_count

    async def transform(self, query: Query) -> list[Query]:
        try:
            compressed = await self.compress(query)
            expanded: list[Query] = []
            for item in compressed:
                expanded.extend(await self.expand(item))
        except RetrievalError:
            raise
        except Exception as exc:
            logger.exception("[QUERY] Transform failed for query: %.60s", query.text)
            raise RetrievalError(f"Query transformation failed: {exc}") from exc

        logger.info("[QUERY] '%.50s' → %d compressed → %d expanded quer(ies).", query.text, len(compressed), len(expanded))
        return expanded

    async def compress(self, query: Query) -> list[Query]:
        history = query.metadata.history if query.metadata else ()
        if not history:
            return [query]

        prompt = QUERY_COMPRESSION_PROMPT.format(history=self._format_history(history), query=query.text)
        reply = await self._engine.complete([Message("user", prompt, 0)])
        text = reply.strip()
        return [Query(text, query.metadata)] if text else [query]

    async def expand(self, query: Query) -> list[Query]:
        prompt = QUERY_EXPANSION_PROMPT.format(n=self._n, query=query.text)
        reply = await self._engine.complete([Message("user", prompt, 0)])
        variants = [line.strip() for line in reply.splitlines() if line.strip()]
        if not variants:
            return [query]
        return [Query(text, query.metadata) for text in variants]

    @staticmethod
    def _format_history(history: tuple[Message, ...]) -> str:
        return "\n".join(f"{_ROLE_LABELS.get(m.role, m.role)}: {m.text}" for m in history)

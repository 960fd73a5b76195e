"""
RagChat - Retrieval Augmentor
==============================
Turns a user query into an ``AugmentationResult``:

    1. Transform  → compress + expand via ``QueryTransformer``.
    2. Retrieve   → every query against the content retriever,
                    concurrently, on the worker pool.
    3. Aggregate  → reciprocal-rank fusion across queries, identical
                    text kept once.
    4. Inject     → numbered context block with source citations.

The result is a tagged variant: ``AugmentedContext`` when at least one
chunk qualified, ``NoContext`` (carrying the fixed marker) when retrieval
*succeeded* with zero hits.  Any failure raises ``RetrievalError``; an
empty context is never substituted for an error.
"""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import Executor

from ragchat.config.prompt_templates import CONTEXT_ENTRY_TEMPLATE, NO_CONTEXT_MARKER
from ragchat.src.core.exceptions import RetrievalError
from ragchat.src.core.models import AugmentationResult, AugmentedContext, NoContext, Query, QueryMetadata, RetrievedContent
from ragchat.src.core.query_transformer import QueryTransformer
from ragchat.src.database.vector_store import ContentRetriever
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

# Reciprocal-rank-fusion damping constant
_RRF_K = 60


def fuse_contents(result_lists: list[list[RetrievedContent]]) -> list[RetrievedContent]:
    """
    Merge per-query result lists with reciprocal-rank fusion.

    Identical texts are merged into one entry that keeps its best relevance
    score; ordering follows the fused rank score, ties broken by relevance.
    """
    fused: dict[str, float] = {}
    best: dict[str, RetrievedContent] = {}

    for results in result_lists:
        for rank, content in enumerate(results, 1):
            fused[content.text] = fused.get(content.text, 0.0) + 1.0 / (_RRF_K + rank)
            current = best.get(content.text)
            if current is None or content.score > current.score:
                best[content.text] = content

    ordered = sorted(best, key=lambda text: (fused[text], best[text].score), reverse=True)
    return [best[text] for text in ordered]


def format_context(contents: list[RetrievedContent]) -> str:
    """Format retrieved chunks into a numbered context block with source citations."""
    blocks = [
        CONTEXT_ENTRY_TEMPLATE.format(index=i, source=c.source, score=c.score, text=c.text)
        for i, c in enumerate(contents, 1)
    ]
    return "\n\n".join(blocks)


class RetrievalAugmentor:
    """
    Parameters
    ----------
    transformer
        The compress-then-expand ``QueryTransformer``.
    retriever
        Blocking ``ContentRetriever`` (the LanceDB ``VectorStore``).
    max_results
        Per-query result cap.
    min_score
        Per-query relevance floor in [0, 1].
    executor
        Worker pool for the blocking retriever calls.
    """

    __slots__ = ("_transformer", "_retriever", "_max_results", "_min_score", "_executor")

    def __init__(self, transformer: QueryTransformer, retriever: ContentRetriever, max_results: int, min_score: float, executor: Executor | None = None) -> None:
        self._transformer = transformer
        self._retriever = retriever
        self._max_results = max_results
        self._min_score = min_score
        self._executor = executor

    async def augment(self, query: Query, metadata: QueryMetadata) -> AugmentationResult:
        t_start = time.perf_counter()
        query = Query(query.text, metadata)

        queries = await self._transformer.transform(query)
        per_query = await self._retrieve_all(queries)
        contents = fuse_contents(per_query)

        elapsed_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[RAG] Augmentation for session '%s': %d quer(ies) → %d chunk(s) in %.1fms", metadata.session_id, len(queries), len(contents), elapsed_ms)

        if not contents:
            return NoContext(marker=NO_CONTEXT_MARKER, queries=tuple(queries))
        return AugmentedContext(context=format_context(contents), contents=tuple(contents), queries=tuple(queries))

    async def _retrieve_all(self, queries: list[Query]) -> list[list[RetrievedContent]]:
        loop = asyncio.get_running_loop()
        tasks = [
            loop.run_in_executor(self._executor, self._retriever.retrieve, q.text, self._max_results, self._min_score)
            for q in queries
        ]
        try:
            results = await asyncio.gather(*tasks)
        except Exception as exc:
            logger.exception("[RAG] Content retrieval failed.")
            raise RetrievalError(f"Content retrieval failed: {exc}") from exc

        return [self._apply_filters(r) for r in results]

    def _apply_filters(self, results: list[RetrievedContent]) -> list[RetrievedContent]:
        kept = [c for c in results if c.score >= self._min_score]
        return kept[: self._max_results]

"""
RagChat - Text Chunking
========================
Splits cleaned document text into pieces no longer than ``chunk_size``
characters before they are embedded.

Strategies (``CHUNKING_STRATEGY``):

``recursive`` (default)
    Deterministic splitting on a separator hierarchy: paragraphs, then
    lines, then sentences, then words.  Neighbouring pieces are packed
    back together while they fit.  A single word longer than the limit
    is cut at the limit.

``semantic``
    LangChain's ``SemanticChunker`` places breakpoints where the
    embedding distance between consecutive sentences jumps (percentile
    @ 85).  Pieces still over the limit go through the recursive
    splitter.  A semantic failure falls back to recursive splitting.
"""

from __future__ import annotations

from typing import Any, Literal

from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

ChunkingStrategy = Literal["recursive", "semantic"]

_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ")
_BREAKPOINT_PERCENTILE = 85.0


def split_recursive(text: str, max_size: int, separators: tuple[str, ...] = _SEPARATORS) -> list[str]:
    """Split *text* on the coarsest separator that occurs, recursing into oversized pieces."""
    text = text.strip()
    if not text:
        return []
    if len(text) <= max_size:
        return [text]

    for position, sep in enumerate(separators):
        raw = text.split(sep)
        if len(raw) < 2:
            continue
        # Punctuation in the separator stays with the piece before it.
        keep = sep.rstrip()
        joiner = sep[len(keep) :]
        last = len(raw) - 1
        pieces = [(p + keep if i < last else p).strip() for i, p in enumerate(raw)]
        pieces = [p for p in pieces if p and p != keep]
        if len(pieces) < 2:
            continue

        finer = separators[position + 1 :]
        out: list[str] = []
        buffer = ""
        for piece in pieces:
            joined = f"{buffer}{joiner}{piece}" if buffer else piece
            if len(joined) <= max_size:
                buffer = joined
                continue
            if buffer:
                out.append(buffer.strip())
            if len(piece) <= max_size:
                buffer = piece
            else:
                out.extend(split_recursive(piece, max_size, finer))
                buffer = ""
        if buffer:
            out.append(buffer.strip())
        return out

    return cut_fixed(text, max_size)


def cut_fixed(text: str, max_size: int) -> list[str]:
    """Last resort for text without any separator: fixed-width slices."""
    return [text[i : i + max_size] for i in range(0, len(text), max_size)]


def pack(pieces: list[str], max_size: int, joiner: str = "\n\n") -> list[str]:
    """Greedily join consecutive *pieces* while the result stays within *max_size*."""
    packed: list[str] = []
    for piece in pieces:
        if packed and len(packed[-1]) + len(joiner) + len(piece) <= max_size:
            packed[-1] = packed[-1] + joiner + piece
        else:
            packed.append(piece)
    return packed


class TextChunker:
    """
    Parameters
    ----------
    chunk_size
        Maximum characters per chunk.
    strategy
        ``"recursive"`` or ``"semantic"``.
    embedder
        LangChain ``Embeddings``; required for the semantic strategy.
    """

    __slots__ = ("chunk_size", "strategy", "_embedder", "_semantic")

    def __init__(self, chunk_size: int, strategy: ChunkingStrategy = "recursive", embedder: Any = None) -> None:
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be ≥ 1, got {chunk_size}")
        if strategy == "semantic" and embedder is None:
            raise ValueError("The semantic chunking strategy needs an embedder.")
        self.chunk_size = chunk_size
        self.strategy = strategy
        self._embedder = embedder
        self._semantic: Any = None

    def split(self, text: str) -> list[str]:
        if not text.strip():
            return []
        if len(text) <= self.chunk_size:
            return [text.strip()]
        if self.strategy == "semantic":
            return self._split_semantic(text)
        return split_recursive(text, self.chunk_size)

    def _semantic_chunker(self) -> Any:
        if self._semantic is None:
            from langchain_experimental.text_splitter import SemanticChunker

            self._semantic = SemanticChunker(
                embeddings=self._embedder,
                breakpoint_threshold_type="percentile",
                breakpoint_threshold_amount=_BREAKPOINT_PERCENTILE,
            )
            logger.info("[INDEX] SemanticChunker initialised (percentile @ %.0f).", _BREAKPOINT_PERCENTILE)
        return self._semantic

    def _split_semantic(self, text: str) -> list[str]:
        try:
            docs = self._semantic_chunker().create_documents([text])
        except Exception:
            logger.exception("[INDEX] Semantic chunking failed — falling back to recursive.")
            return split_recursive(text, self.chunk_size)

        pieces: list[str] = []
        for doc in docs:
            pieces.extend(split_recursive(doc.page_content, self.chunk_size))
        logger.debug("[INDEX] Semantic chunking → %d piece(s).", len(pieces))
        return pack(pieces, self.chunk_size) if pieces else split_recursive(text, self.chunk_size)

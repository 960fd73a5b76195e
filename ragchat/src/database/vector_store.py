"""
RagChat - VectorStore
======================
The retrieval engine: document chunks and their embeddings in a LanceDB
table, searched by cosine similarity.

Rows
----
    vector        float32[dim]   dim fixed by the first embedded batch
    text          utf8           chunk text as injected into prompts
    source_file   utf8           file the chunk came from (citations)
    chunk_index   int32          position of the chunk in its file
    content_hash  utf8           SHA-256 of the whole source file

The table does not exist until the first ``add_documents`` call, because
the vector width is only known once the embedder has answered.

Scores
------
LanceDB reports cosine *distance* ``d`` in [0, 2].  ``retrieve`` maps it
to ``1 - d / 2`` in [0, 1] so ``MIN_RETRIEVER_SCORE`` reads the same way
regardless of the embedding model.

Every method blocks.  Async callers go through the shared worker pool;
one LanceDB connection is opened per database directory and reused.

Usage:
    store = VectorStore(embedder, db_path=settings.LANCEDB_PATH, table_name=settings.LANCEDB_TABLE_NAME)
    store.add_documents(["chunk one", "chunk two"], [meta_one, meta_two])
    hits = store.retrieve("query text", max_results=5, min_score=0.7)
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import lancedb
import pyarrow as pa

from ragchat.src.core.models import RetrievedContent
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

ChunkMetadata = dict[str, str | int]

EMBED_BATCH_SIZE = 64


@runtime_checkable
class Embedder(Protocol):
    """The two methods of LangChain's ``Embeddings`` this store calls."""

    def embed_documents(self, texts: list[str]) -> list[list[float]]: ...

    def embed_query(self, text: str) -> list[float]: ...


@runtime_checkable
class ContentRetriever(Protocol):
    """What the retrieval augmentor needs from a store."""

    def retrieve(self, query_text: str, max_results: int, min_score: float) -> list[RetrievedContent]: ...


def build_schema(dimension: int) -> pa.Schema:
    return pa.schema([
        pa.field("vector", pa.list_(pa.float32(), dimension)),
        pa.field("text", pa.utf8()),
        pa.field("source_file", pa.utf8()),
        pa.field("chunk_index", pa.int32()),
        pa.field("content_hash", pa.utf8()),
    ])


_connections: dict[str, lancedb.DBConnection] = {}
_connections_lock = threading.Lock()


def open_database(path: str) -> lancedb.DBConnection:
    """Shared connection for ``path``; LanceDB dislikes several writers on one directory."""
    with _connections_lock:
        conn = _connections.get(path)
        if conn is None:
            Path(path).mkdir(parents=True, exist_ok=True)
            conn = lancedb.connect(path)
            _connections[path] = conn
            logger.info("[INDEX] LanceDB opened at %s", path)
        return conn


def relevance_from_distance(distance: float) -> float:
    """Map cosine distance in [0, 2] onto a relevance score in [0, 1]."""
    return min(1.0, max(0.0, 1.0 - distance / 2.0))


def hash_filter(content_hash: str) -> str:
    escaped = content_hash.replace("'", "''")
    return f"content_hash = '{escaped}'"


def to_row(text: str, vector: list[float], meta: ChunkMetadata) -> dict[str, Any]:
    return {
        "vector": vector,
        "text": text,
        "source_file": str(meta.get("source_file", "unknown")),
        "chunk_index": int(meta.get("chunk_index", 0)),
        "content_hash": str(meta.get("content_hash", "")),
    }


class VectorStore:
    """
    LanceDB-backed chunk store.

    Parameters
    ----------
    embedder
        LangChain ``Embeddings`` (or anything with the same two methods).
    db_path
        Database directory; created if missing.
    table_name
        Table holding the chunks.
    """

    __slots__ = ("_embedder", "_path", "_name", "_conn", "_table", "_lock")

    def __init__(self, embedder: Embedder, db_path: str | Path, table_name: str) -> None:
        self._embedder = embedder
        self._path = str(db_path)
        self._name = table_name
        self._lock = threading.Lock()
        self._conn = open_database(self._path)
        self._table: lancedb.table.Table | None = None
        if table_name in self._conn.table_names():
            self._table = self._conn.open_table(table_name)
            logger.info("[INDEX] Table '%s' holds %d chunk(s).", table_name, self._table.count_rows())

    @property
    def table_name(self) -> str:
        return self._name

    # ── Ingestion ──────────────────────────────────────────────────────

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), EMBED_BATCH_SIZE):
            vectors.extend(self._embedder.embed_documents(texts[start : start + EMBED_BATCH_SIZE]))
        return vectors

    def add_documents(self, texts: list[str], metadatas: list[ChunkMetadata]) -> int:
        """
        Embed ``texts`` and store them with their metadata; returns the row count added.

        Raises ``ValueError`` when the two lists differ in length.  Embedding
        errors propagate unchanged so the indexer can mark the file failed.
        """
        if len(texts) != len(metadatas):
            raise ValueError(f"{len(texts)} texts but {len(metadatas)} metadata entries")
        if not texts:
            return 0

        vectors = self.embed(texts)
        rows = [to_row(text, vector, meta) for text, vector, meta in zip(texts, vectors, metadatas)]

        with self._lock:
            if self._table is None:
                self._table = self._conn.create_table(self._name, schema=build_schema(len(vectors[0])), exist_ok=True)
                logger.info("[INDEX] Created table '%s' with %d-dim vectors.", self._name, len(vectors[0]))
            self._table.add(rows)

        logger.debug("[INDEX] %d chunk(s) written to '%s'.", len(rows), self._name)
        return len(rows)

    # ── Retrieval ──────────────────────────────────────────────────────

    def retrieve(self, query_text: str, max_results: int, min_score: float) -> list[RetrievedContent]:
        """Top ``max_results`` chunks whose relevance is at least ``min_score``, best first."""
        if self._table is None:
            return []

        query_vector = self._embedder.embed_query(query_text)
        rows = self._table.search(query_vector).distance_type("cosine").limit(max_results).to_list()

        hits = []
        for row in rows:
            score = relevance_from_distance(float(row.get("_distance", 2.0)))
            if score >= min_score:
                hits.append(
                    RetrievedContent(
                        text=str(row.get("text", "")),
                        score=score,
                        source=str(row.get("source_file", "unknown")),
                        content_hash=str(row.get("content_hash") or "") or None,
                    )
                )
        hits.sort(key=lambda hit: hit.score, reverse=True)
        logger.debug("[RAG] %d of %d hit(s) above %.2f", len(hits), len(rows), min_score)
        return hits[:max_results]

    # ── Content-hash bookkeeping ───────────────────────────────────────

    def count_content_hash(self, content_hash: str) -> int:
        if self._table is None:
            return 0
        return self._table.count_rows(hash_filter(content_hash))

    def delete_content(self, content_hash: str) -> None:
        """Remove every chunk that was ingested from the given content."""
        if self._table is None:
            return
        with self._lock:
            self._table.delete(hash_filter(content_hash))
        logger.info("[INDEX] Removed chunks of %s.", content_hash[:12])

    def count(self) -> int:
        return 0 if self._table is None else self._table.count_rows()

    def drop_table(self) -> None:
        """Delete the table and every chunk in it; the next ingest recreates it."""
        with self._lock:
            if self._name in self._conn.table_names():
                self._conn.drop_table(self._name)
                logger.warning("[INDEX] Dropped table '%s'.", self._name)
            self._table = None

    def __repr__(self) -> str:
        return f"VectorStore(path={self._path!r}, table={self._name!r}, rows={self.count()})"

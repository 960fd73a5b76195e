"""
RagChat - Document Indexer
===========================
Content-addressed, idempotent ingestion of the documents directory into
the ``VectorStore``:  hash → dedup check → load → clean → chunk → embed
→ store → record.

Key design decisions:
    • **Content, not names** – a file is identified by the SHA-256 of its
      bytes, so the same content uploaded under two names is embedded
      once.
    • **Atomic per fingerprint** – a keyed ``asyncio.Lock`` is held across
      ledger check, ingestion and ledger record; two concurrent arrivals of
      identical content cannot both ingest.
    • **Failure isolation** – a file that cannot be hashed, read or
      embedded is logged as an ``IndexingError`` and counted; the rest of
      the batch carries on.  A failed ingest is never recorded, so it is
      retried on the next scan.
    • **Off the event loop** – hashing, directory scans, file I/O and the
      LanceDB / embedding calls run on the shared ``ThreadPoolExecutor``,
      which also bounds how many files are ingested at once.

Usage:
    indexer = DocumentIndexer(store, ledger, TextChunker(1000), settings.DOCUMENTS_DIR, executor)
    summary = await indexer.index_directory()
    status  = await indexer.upload(b"...", "notes.txt")
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from collections.abc import AsyncIterator
from concurrent.futures import Executor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from ragchat.src.core.chunking import TextChunker
from ragchat.src.core.exceptions import IndexingError, ProcessingError, ValidationError
from ragchat.src.core.models import FileStatus, IndexSummary
from ragchat.src.database.ledger import HashLedger, file_fingerprint
from ragchat.src.database.vector_store import VectorStore
from ragchat.src.utils.logger import get_logger
from ragchat.src.utils.text_utils import is_hidden, load_document, safe_filename

logger = get_logger(__name__)


class DocumentIndexer:
    """
    Parameters
    ----------
    store
        The ``VectorStore`` chunks are written to.
    ledger
        Any ``HashLedger`` backend.
    chunker
        Configured ``TextChunker``.
    documents_dir
        Directory scanned by ``index_directory`` and written by ``upload``.
    executor
        Bounded worker pool for blocking work.
    """

    def __init__(self, store: VectorStore, ledger: HashLedger, chunker: TextChunker, documents_dir: Path, executor: Executor | None = None) -> None:
        self._store = store
        self._ledger = ledger
        self._chunker = chunker
        self._documents_dir = Path(documents_dir)
        self._executor = executor
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def documents_dir(self) -> Path:
        return self._documents_dir

    async def _run(self, fn: Any, *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(self._executor, fn, *args)

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINTS
    # ══════════════════════════════════════════════════════════════════

    async def index_directory(self, directory: Path | None = None) -> IndexSummary:
        """
        Index every non-hidden regular file directly inside *directory*.

        Returns
        -------
        IndexSummary
            Counts of indexed, skipped and failed files plus total chunks.
        """
        t_start = time.perf_counter()
        source = Path(directory) if directory is not None else self._documents_dir
        summary = IndexSummary()

        if not await self._run(source.is_dir):
            logger.warning("[INDEX] Documents directory does not exist: %s", source)
            return summary

        files: list[Path] = await self._run(self._scan, source)
        summary.total_files = len(files)
        if not files:
            logger.warning("[INDEX] No documents found in %s", source)
            return summary

        logger.info("[INDEX] Starting indexing — %d file(s) found in %s", len(files), source)
        outcomes = await asyncio.gather(*(self._index_guarded(path) for path in files))

        for path, (status, chunks) in zip(files, outcomes):
            if status is FileStatus.INDEXED:
                summary.files_processed += 1
                summary.total_chunks += chunks
            elif status is FileStatus.SKIPPED:
                summary.files_skipped += 1
            elif status is FileStatus.FAILED:
                summary.files_failed += 1
                summary.failures.append(path.name)

        summary.elapsed_seconds = time.perf_counter() - t_start
        logger.info(
            "[INDEX] Indexing complete — %d indexed, %d skipped, %d failed, %d chunk(s) stored in %.2fs.",
            summary.files_processed, summary.files_skipped, summary.files_failed, summary.total_chunks, summary.elapsed_seconds,
        )
        return summary

    async def index_file(self, path: Path) -> FileStatus:
        """Index one file unless it is a directory, hidden, or already indexed content."""
        path = Path(path)
        if is_hidden(path) or not await self._run(path.is_file):
            logger.info("[INDEX] Ignoring directory or hidden file: %s", path)
            return FileStatus.IGNORED
        status, _ = await self._index_guarded(path)
        return status

    async def on_uploaded(self, destination: Path) -> FileStatus:
        logger.info("[INDEX] Upload arrived: %s", destination)
        return await self.index_file(destination)

    async def upload(self, file_bytes: bytes, filename: str) -> FileStatus:
        """
        Store an uploaded document as ``documents/<basename>`` and index it.

        The bytes go to a temporary file inside the documents directory
        first and are then moved into place atomically, so a scan never
        sees a half-written document.

        Raises
        ------
        ValidationError
            The filename is empty, hidden, or reduces to no usable basename.
        ProcessingError
            The file could not be written.
        """
        name = safe_filename(filename or "")
        if name is None or name.startswith("."):
            raise ValidationError(f"Invalid filename: {filename!r}")

        try:
            destination = await self._run(self._write_atomically, file_bytes, name)
        except OSError as exc:
            logger.exception("[INDEX] Could not store upload %s", name)
            raise ProcessingError(f"Failed to store uploaded file: {exc}") from exc
        logger.info("[INDEX] File stored at %s (%d bytes)", destination, len(file_bytes))
        return await self.on_uploaded(destination)

    # ══════════════════════════════════════════════════════════════════
    #  PER-FILE PROCESSING
    # ══════════════════════════════════════════════════════════════════

    async def _index_guarded(self, path: Path) -> tuple[FileStatus, int]:
        try:
            return await self._index_one(path)
        except IndexingError as exc:
            logger.error("[INDEX] %s — skipping file.", exc.message)
            return FileStatus.FAILED, 0
        except Exception:
            logger.exception("[INDEX] Ledger error while indexing %s — skipping file.", path.name)
            return FileStatus.FAILED, 0

    async def _index_one(self, path: Path) -> tuple[FileStatus, int]:
        try:
            content_hash: str = await self._run(file_fingerprint, path)
        except OSError as exc:
            raise IndexingError(str(path), f"cannot read file: {exc}") from exc

        async with self._fingerprint_lock(content_hash):
            if await self._ledger.is_indexed(content_hash):
                logger.info("[INDEX] Already indexed, skipping: %s (%s)", path.name, content_hash[:12])
                return FileStatus.SKIPPED, 0

            try:
                chunks: int = await self._run(self._ingest, path, content_hash)
            except Exception as exc:
                logger.exception("[INDEX] Ingestion failed for %s", path.name)
                raise IndexingError(str(path), str(exc)) from exc

            await self._ledger.record_indexed(content_hash, path.name)

        return FileStatus.INDEXED, chunks

    def _ingest(self, path: Path, content_hash: str) -> int:
        """Load, chunk, embed and store one file.  Runs on the worker pool."""
        t_file = time.perf_counter()
        text, base_metadata = load_document(path)
        if not text:
            logger.warning("[INDEX] Empty document: %s", path.name)
            return 0

        chunks = self._chunker.split(text)
        metadatas = [
            {**base_metadata, "chunk_index": idx, "content_hash": content_hash}
            for idx in range(len(chunks))
        ]
        added = self._store.add_documents(chunks, metadatas)

        logger.info("[INDEX] Indexed '%s' → %d chunk(s) in %.1fms.", path.name, added, (time.perf_counter() - t_file) * 1000)
        return added

    @asynccontextmanager
    async def _fingerprint_lock(self, content_hash: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(content_hash, asyncio.Lock())
        self._lock_users[content_hash] = self._lock_users.get(content_hash, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[content_hash] -= 1
            if not self._lock_users[content_hash]:
                del self._lock_users[content_hash]
                del self._locks[content_hash]

    # ══════════════════════════════════════════════════════════════════
    #  FILESYSTEM HELPERS (worker pool)
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def _scan(directory: Path) -> list[Path]:
        return sorted(p for p in directory.iterdir() if not is_hidden(p) and p.is_file())

    def _write_atomically(self, data: bytes, name: str) -> Path:
        self._documents_dir.mkdir(parents=True, exist_ok=True)
        destination = self._documents_dir / name
        # Hidden prefix keeps a concurrent scan from picking up the partial file.
        fd, tmp_name = tempfile.mkstemp(prefix=".upload-", dir=self._documents_dir)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, destination)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return destination

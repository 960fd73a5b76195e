"""
RagChat - Content Hasher & Dedup Ledger
========================================
Content-addressed bookkeeping that keeps byte-identical documents from
being embedded twice, whatever name they were uploaded under.

Hashing
-------
``fingerprint(data)`` / ``file_fingerprint(path)`` return the SHA-256 hex
digest of the raw bytes.

Ledger backends
---------------
``JsonHashLedger``
    ``{hash: {"source": ..., "indexed_at": ...}}`` in a JSON file next to
    the processed data.  Persisted after every record.
``VectorStoreLedger``
    Collocated with LanceDB: a hash counts as indexed when rows carrying
    that ``content_hash`` exist.  Recording is implicit in ingestion.
``MongoHashLedger``
    One document per hash in a MongoDB collection (``motor``), with a
    unique index on ``content_hash``.

All backends expose the same async interface.  Atomic check-then-record
per fingerprint is the indexer's job (it holds a keyed lock across the
check, the ingest and the record).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import threading
from concurrent.futures import Executor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

_HASH_BLOCK_SIZE = 8192


# ══════════════════════════════════════════════════════════════════════
#  HASHING
# ══════════════════════════════════════════════════════════════════════


def fingerprint(data: bytes) -> str:
    """Return the SHA-256 hex digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def file_fingerprint(path: Path) -> str:
    """Return the SHA-256 hex digest of a file's contents, read in blocks."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(_HASH_BLOCK_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()


# ══════════════════════════════════════════════════════════════════════
#  LEDGER PROTOCOL
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class HashLedger(Protocol):
    async def is_indexed(self, content_hash: str) -> bool: ...

    async def record_indexed(self, content_hash: str, source: str) -> None: ...

    async def forget(self, content_hash: str) -> None: ...

    async def clear(self) -> None: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ══════════════════════════════════════════════════════════════════════
#  JSON FILE LEDGER
# ══════════════════════════════════════════════════════════════════════


class JsonHashLedger:
    """
    File-backed ledger.

    The in-memory map is guarded by a ``threading.Lock`` because the
    file writes run on the worker pool.
    """

    def __init__(self, path: Path, executor: Executor | None = None) -> None:
        self._path = Path(path)
        self._executor = executor
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, str]] = self._load()

    def _load(self) -> dict[str, dict[str, str]]:
        """Load the ledger from disk (or return an empty map)."""
        if self._path.exists():
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    return data
                logger.warning("Ledger at %s is not a JSON object — starting fresh.", self._path)
            except (json.JSONDecodeError, OSError):
                logger.warning("Corrupt ledger at %s — starting fresh.", self._path)
        return {}

    def _save(self) -> None:
        with self._lock:
            payload = json.dumps(self._entries, indent=2, ensure_ascii=False)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(self._path)
        logger.debug("Ledger saved to %s (%d entries)", self._path, len(self._entries))

    async def _run(self, fn: Any, *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(self._executor, fn, *args)

    async def is_indexed(self, content_hash: str) -> bool:
        with self._lock:
            return content_hash in self._entries

    async def record_indexed(self, content_hash: str, source: str) -> None:
        with self._lock:
            self._entries[content_hash] = {"source": source, "indexed_at": _now_iso()}
        await self._run(self._save)

    async def forget(self, content_hash: str) -> None:
        with self._lock:
            removed = self._entries.pop(content_hash, None)
        if removed is not None:
            await self._run(self._save)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        await self._run(self._save)

    def __len__(self) -> int:
        return len(self._entries)


# ══════════════════════════════════════════════════════════════════════
#  VECTOR-STORE COLLOCATED LEDGER
# ══════════════════════════════════════════════════════════════════════


class VectorStoreLedger:
    """
    Reads the ``content_hash`` column the vector store already keeps per chunk.

    Content that produced no chunks leaves no rows behind, so those hashes
    are held in memory for the lifetime of the process.
    """

    def __init__(self, store: Any, executor: Executor | None = None) -> None:
        self._store = store
        self._executor = executor
        self._empty: set[str] = set()

    async def _count(self, content_hash: str) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._store.count_content_hash, content_hash)

    async def is_indexed(self, content_hash: str) -> bool:
        if content_hash in self._empty:
            return True
        return await self._count(content_hash) > 0

    async def record_indexed(self, content_hash: str, source: str) -> None:
        # Chunks were written with their content_hash during ingestion.
        if await self._count(content_hash) == 0:
            self._empty.add(content_hash)
            logger.debug("Collocated ledger: %s from %s has no chunks; kept in memory.", content_hash[:12], source)

    async def forget(self, content_hash: str) -> None:
        self._empty.discard(content_hash)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._store.delete_content, content_hash)

    async def clear(self) -> None:
        self._empty.clear()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._store.drop_table)


# ══════════════════════════════════════════════════════════════════════
#  MONGODB LEDGER
# ══════════════════════════════════════════════════════════════════════


class MongoHashLedger:
    """
    Ledger stored in MongoDB via ``motor``.

    Collection schema::

        {
            "content_hash": str,   (unique)
            "source": str,
            "indexed": bool,
            "indexed_at": datetime
        }
    """

    __slots__ = ("_collection", "_index_ready")

    def __init__(self, collection: Any) -> None:
        self._collection = collection
        self._index_ready = False

    @classmethod
    def from_uri(cls, uri: str, db_name: str, collection_name: str) -> "MongoHashLedger":
        import motor.motor_asyncio

        client = motor.motor_asyncio.AsyncIOMotorClient(uri)
        logger.info("MongoDB async client created for ledger '%s.%s'.", db_name, collection_name)
        return cls(client[db_name][collection_name])

    async def _ensure_index(self) -> None:
        if not self._index_ready:
            await self._collection.create_index("content_hash", unique=True)
            self._index_ready = True

    async def is_indexed(self, content_hash: str) -> bool:
        await self._ensure_index()
        doc = await self._collection.find_one({"content_hash": content_hash, "indexed": True}, {"_id": 1})
        return doc is not None

    async def record_indexed(self, content_hash: str, source: str) -> None:
        await self._ensure_index()
        await self._collection.update_one(
            {"content_hash": content_hash},
            {"$set": {"indexed": True, "source": source, "indexed_at": datetime.now(timezone.utc)}},
            upsert=True,
        )

    async def forget(self, content_hash: str) -> None:
        await self._collection.delete_one({"content_hash": content_hash})

    async def clear(self) -> None:
        result = await self._collection.delete_many({})
        logger.warning("Mongo ledger cleared (%d entries).", result.deleted_count)

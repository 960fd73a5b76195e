# tests/conftest.py
"""
Shared fixtures for RagChat tests.

Every external dependency (Gemini, LanceDB, MongoDB) is replaced by a
small in-process fake so the suite runs offline.
"""

import asyncio
import os
from unittest.mock import MagicMock

# Settings are loaded (and cached) the first time a module asks for a
# logger, so the key has to exist before anything from ragchat is imported.
os.environ.setdefault("GOOGLE_API_KEY", "test-key")
os.environ.setdefault("ENV", "dev")

import pytest

from ragchat.config.settings import get_settings
from ragchat.src.core.augmentor import RetrievalAugmentor
from ragchat.src.core.channels import StreamChannelRegistry
from ragchat.src.core.chunking import TextChunker
from ragchat.src.core.ingestor import DocumentIndexer
from ragchat.src.core.memory import SessionMemoryStore
from ragchat.src.core.models import RetrievedContent
from ragchat.src.core.query_transformer import QueryTransformer
from ragchat.src.core.rag_engine import ChatOrchestrator
from ragchat.src.database.ledger import JsonHashLedger


# ── Fakes ──────────────────────────────────────────────────────────────


class FakeEngine:
    """
    Scripted completion engine.

    ``reply`` is a string or a callable ``(messages) -> str``.  ``tokens``
    are streamed in order; with ``fail_after=n`` the stream raises after
    emitting ``n`` tokens.
    """

    def __init__(self, reply="Fake reply", tokens=("Hel", "lo", "!"), fail_after=None, error=None, delay=0.0, token_delay=0.0):
        self.reply = reply
        self.tokens = tuple(tokens)
        self.fail_after = fail_after
        self.error = error
        self.delay = delay
        self.token_delay = token_delay
        self.complete_calls = []
        self.stream_calls = []

    @property
    def calls(self):
        return len(self.complete_calls) + len(self.stream_calls)

    async def complete(self, messages, system_prompt=None):
        self.complete_calls.append((list(messages), system_prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply(messages) if callable(self.reply) else self.reply

    async def stream(self, messages, system_prompt=None):
        self.stream_calls.append((list(messages), system_prompt))
        for index, token in enumerate(self.tokens):
            if self.fail_after is not None and index == self.fail_after:
                raise RuntimeError("engine failure")
            await asyncio.sleep(self.token_delay)
            yield token
        if self.fail_after is not None and self.fail_after >= len(self.tokens):
            raise RuntimeError("engine failure")


class FakeRetriever:
    """Returns the same canned results for every query."""

    def __init__(self, results=(), error=None):
        self.results = list(results)
        self.error = error
        self.queries = []

    def retrieve(self, query_text, max_results, min_score):
        self.queries.append(query_text)
        if self.error is not None:
            raise self.error
        return [c for c in self.results if c.score >= min_score][:max_results]


class WordTokenizer:
    """One token per whitespace-separated word."""

    def count_tokens(self, text):
        return len(text.split())


class FakeStore:
    """Records ingested chunks; optionally fails for texts containing ``fail_marker``."""

    def __init__(self, fail_marker=None, delay=0.0):
        self.fail_marker = fail_marker
        self.delay = delay
        self.add_calls = []
        self.rows = []

    def add_documents(self, texts, metadatas):
        if self.delay:
            import time

            time.sleep(self.delay)
        if self.fail_marker and any(self.fail_marker in t for t in texts):
            raise RuntimeError("embedding service unavailable")
        self.add_calls.append((list(texts), list(metadatas)))
        self.rows.extend(zip(texts, metadatas))
        return len(texts)

    def count_content_hash(self, content_hash):
        return sum(1 for _, meta in self.rows if meta.get("content_hash") == content_hash)

    def delete_content(self, content_hash):
        self.rows = [(t, m) for t, m in self.rows if m.get("content_hash") != content_hash]

    def drop_table(self):
        self.rows = []


class FakeCollection:
    """In-memory stand-in for a motor collection, keyed by ``content_hash``."""

    def __init__(self):
        self.docs = {}
        self.indexes = []

    async def create_index(self, key, unique=False):
        self.indexes.append((key, unique))

    async def find_one(self, query, projection=None):
        doc = self.docs.get(query["content_hash"])
        if doc is None or any(doc.get(k) != v for k, v in query.items()):
            return None
        return doc

    async def update_one(self, query, update, upsert=False):
        key = query["content_hash"]
        if key not in self.docs and not upsert:
            return
        self.docs.setdefault(key, {"content_hash": key}).update(update["$set"])

    async def delete_one(self, query):
        self.docs.pop(query["content_hash"], None)

    async def delete_many(self, query):
        result = MagicMock(deleted_count=len(self.docs))
        self.docs.clear()
        return result


class FakeEmbedder:
    """Deterministic bag-of-letters embedding (26 dims)."""

    dimension = 26

    def _embed(self, text):
        vec = [0.0] * self.dimension
        for ch in text.lower():
            if "a" <= ch <= "z":
                vec[ord(ch) - ord("a")] += 1.0
        if not any(vec):
            vec[0] = 1.0
        return vec

    def embed_documents(self, texts):
        return [self._embed(t) for t in texts]

    def embed_query(self, text):
        return self._embed(text)


def content(text, score=0.9, source="doc.txt"):
    return RetrievedContent(text=text, score=score, source=source)


# ── Fixtures ───────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    yield
    get_settings.cache_clear()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def transform_engine():
    """Engine used by the query transformer: echoes a single variant."""
    return FakeEngine(reply="rewritten query")


@pytest.fixture
def retriever():
    return FakeRetriever()


@pytest.fixture
def make_orchestrator(transform_engine, retriever):
    """Factory building a ``ChatOrchestrator`` around fakes."""

    def _make(engine=None, retriever_=None, max_tokens=1000, system_prompt=None, streaming_engine=None):
        transformer = QueryTransformer(transform_engine, expansion_count=3)
        augmentor = RetrievalAugmentor(transformer, retriever_ or retriever, max_results=5, min_score=0.5)
        return ChatOrchestrator(
            memory_store=SessionMemoryStore(max_tokens),
            augmentor=augmentor,
            engine=engine or FakeEngine(),
            tokenizer=WordTokenizer(),
            channels=StreamChannelRegistry(),
            streaming_engine=streaming_engine,
            system_prompt=system_prompt,
        )

    return _make


@pytest.fixture
def documents_dir(tmp_path):
    path = tmp_path / "documents"
    path.mkdir()
    return path


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def ledger(tmp_path):
    return JsonHashLedger(tmp_path / "processed" / "ledger.json")


@pytest.fixture
def indexer(store, ledger, documents_dir):
    return DocumentIndexer(store, ledger, TextChunker(200), documents_dir)

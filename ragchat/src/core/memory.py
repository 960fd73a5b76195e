"""
RagChat - Session Memory Store
===============================
Token-bounded conversation memory, one instance per session, held in an
explicit registry with a pluggable eviction policy.

Architecture
------------
``ConversationMemory``
    Ordered messages with a hard token budget.  Adding a message evicts
    the oldest *whole* messages until the budget holds again or only the
    newest message remains.

``GeminiTokenizer``
    Counts tokens with Gemini's counting API, falling back to a
    characters/4 estimate when the API call fails.

``LRUEvictionPolicy`` / ``TTLEvictionPolicy``
    Decide which idle sessions the registry drops.

``SessionMemoryStore``
    Maps ``session_id`` → memory.  Every session has its own
    ``asyncio.Lock``; ``session()`` holds it for a full chat turn so
    concurrent requests for one session never interleave, while distinct
    sessions never wait on each other.  A session whose lock is held is
    never evicted.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ragchat.src.core.models import Message
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  TOKENIZERS
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class Tokenizer(Protocol):
    """Anything that can estimate the token cost of a text."""

    def count_tokens(self, text: str) -> int: ...


class GeminiTokenizer:
    """
    Token counting through Gemini's ``count_tokens`` endpoint.

    Falls back to a heuristic estimate (1 token ≈ 4 chars) if the API
    call fails, so memory bookkeeping never blocks a chat turn.
    """

    __slots__ = ("_client", "_model")

    def __init__(self, api_key: str, model: str) -> None:
        from google import genai

        self._client = genai.Client(api_key=api_key)
        self._model = model

    def count_tokens(self, text: str) -> int:
        try:
            response = self._client.models.count_tokens(model=self._model, contents=text)
            return int(response.total_tokens or 0)
        except Exception:
            logger.warning("[MEMORY] Token counting API failed — using heuristic estimate.")
            return estimate_tokens(text)


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0


# ══════════════════════════════════════════════════════════════════════
#  CONVERSATION MEMORY
# ══════════════════════════════════════════════════════════════════════


class ConversationMemory:
    """Ordered message window whose total token count never exceeds ``max_tokens``."""

    __slots__ = ("max_tokens", "_messages", "_total")

    def __init__(self, max_tokens: int) -> None:
        if max_tokens < 1:
            raise ValueError(f"max_tokens must be ≥ 1, got {max_tokens}")
        self.max_tokens = max_tokens
        self._messages: list[Message] = []
        self._total = 0

    def add(self, message: Message) -> list[Message]:
        """Append *message* and return the messages evicted to make room."""
        self._messages.append(message)
        self._total += message.token_count

        evicted: list[Message] = []
        while self._total > self.max_tokens and len(self._messages) > 1:
            oldest = self._messages.pop(0)
            self._total -= oldest.token_count
            evicted.append(oldest)

        if evicted:
            logger.debug("[MEMORY] Evicted %d message(s); window now %d/%d tokens.", len(evicted), self._total, self.max_tokens)
        return evicted

    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def token_count(self) -> int:
        return self._total

    def __len__(self) -> int:
        return len(self._messages)


# ══════════════════════════════════════════════════════════════════════
#  EVICTION POLICIES
# ══════════════════════════════════════════════════════════════════════


@dataclass
class SessionEntry:
    memory: ConversationMemory
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_access: float = field(default_factory=time.monotonic)


class EvictionPolicy(Protocol):
    def select_victims(self, entries: "OrderedDict[str, SessionEntry]", now: float) -> Iterable[str]: ...


class LRUEvictionPolicy:
    """Keep at most ``max_sessions``; the least recently used go first."""

    def __init__(self, max_sessions: int) -> None:
        if max_sessions < 1:
            raise ValueError(f"max_sessions must be ≥ 1, got {max_sessions}")
        self.max_sessions = max_sessions

    def select_victims(self, entries: "OrderedDict[str, SessionEntry]", now: float) -> list[str]:
        overflow = len(entries) - self.max_sessions
        if overflow <= 0:
            return []
        # OrderedDict is kept in access order: oldest first.
        return list(entries.keys())[:overflow]


class TTLEvictionPolicy:
    """Drop sessions idle for longer than ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")
        self.ttl_seconds = ttl_seconds

    def select_victims(self, entries: "OrderedDict[str, SessionEntry]", now: float) -> list[str]:
        return [sid for sid, entry in entries.items() if now - entry.last_access > self.ttl_seconds]


class CompositeEvictionPolicy:
    def __init__(self, *policies: EvictionPolicy) -> None:
        self._policies = policies

    def select_victims(self, entries: "OrderedDict[str, SessionEntry]", now: float) -> list[str]:
        victims: list[str] = []
        for policy in self._policies:
            for sid in policy.select_victims(entries, now):
                if sid not in victims:
                    victims.append(sid)
        return victims


def build_eviction_policy(max_sessions: int | None, ttl_seconds: float | None) -> EvictionPolicy | None:
    policies: list[EvictionPolicy] = []
    if ttl_seconds:
        policies.append(TTLEvictionPolicy(ttl_seconds))
    if max_sessions:
        policies.append(LRUEvictionPolicy(max_sessions))
    if not policies:
        return None
    return policies[0] if len(policies) == 1 else CompositeEvictionPolicy(*policies)


# ══════════════════════════════════════════════════════════════════════
#  SESSION MEMORY STORE
# ══════════════════════════════════════════════════════════════════════


class SessionMemoryStore:
    """
    Registry of per-session ``ConversationMemory`` instances.

    Parameters
    ----------
    max_tokens
        Token budget of every conversation window.
    eviction_policy
        Optional policy applied whenever a session is created.
        ``None`` keeps sessions for the lifetime of the process.
    clock
        Monotonic time source (injectable for tests).
    """

    def __init__(self, max_tokens: int, eviction_policy: EvictionPolicy | None = None, clock=time.monotonic) -> None:
        self._max_tokens = max_tokens
        self._policy = eviction_policy
        self._clock = clock
        self._entries: OrderedDict[str, SessionEntry] = OrderedDict()

    # ── Registry ───────────────────────────────────────────────────────

    def _entry(self, session_id: str) -> SessionEntry:
        now = self._clock()
        entry = self._entries.get(session_id)
        if entry is None:
            entry = SessionEntry(memory=ConversationMemory(self._max_tokens), last_access=now)
            self._entries[session_id] = entry
            logger.info("[MEMORY] New session: %s", session_id)
            self._evict(now, keep=session_id)
        else:
            entry.last_access = now
            self._entries.move_to_end(session_id)
        return entry

    def _evict(self, now: float, keep: str) -> None:
        if self._policy is None:
            return
        for sid in self._policy.select_victims(self._entries, now):
            entry = self._entries.get(sid)
            if sid == keep or entry is None or entry.lock.locked():
                continue
            del self._entries[sid]
            logger.info("[MEMORY] Evicted idle session: %s", sid)

    def get_or_create(self, session_id: str) -> ConversationMemory:
        return self._entry(session_id).memory

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ── Serialized access ──────────────────────────────────────────────

    @asynccontextmanager
    async def session(self, session_id: str) -> AsyncIterator[ConversationMemory]:
        """Hold the session lock for a whole turn and yield its memory."""
        entry = self._entry(session_id)
        async with entry.lock:
            entry.last_access = self._clock()
            yield entry.memory

    async def append(self, session_id: str, message: Message) -> list[Message]:
        async with self.session(session_id) as memory:
            return memory.add(message)

    async def history(self, session_id: str) -> list[Message]:
        """Messages for *session_id*; empty for unknown sessions (which are not created)."""
        entry = self._entries.get(session_id)
        if entry is None:
            return []
        async with entry.lock:
            return entry.memory.messages()

# tests/test_memory.py
"""Tests for the token-bounded conversation memory and the session registry."""

import asyncio

import pytest

from ragchat.src.core.memory import (
    CompositeEvictionPolicy,
    ConversationMemory,
    LRUEvictionPolicy,
    SessionMemoryStore,
    TTLEvictionPolicy,
    build_eviction_policy,
    estimate_tokens,
)
from ragchat.src.core.models import Message


def msg(text, tokens, role="user"):
    return Message(role, text, tokens)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestConversationMemory:
    """Window bound and whole-message eviction."""

    def test_total_never_exceeds_budget(self):
        memory = ConversationMemory(max_tokens=10)
        for i in range(20):
            memory.add(msg(f"m{i}", 3))
            assert memory.token_count <= 10

    def test_evicts_oldest_whole_messages_first(self):
        memory = ConversationMemory(max_tokens=10)
        memory.add(msg("a", 4))
        memory.add(msg("b", 4))
        evicted = memory.add(msg("c", 4))

        assert [m.text for m in evicted] == ["a"]
        assert [m.text for m in memory.messages()] == ["b", "c"]
        assert memory.token_count == 8

    def test_keeps_newest_message_even_when_oversized(self):
        memory = ConversationMemory(max_tokens=5)
        memory.add(msg("small", 2))
        evicted = memory.add(msg("huge", 50))

        assert [m.text for m in evicted] == ["small"]
        assert [m.text for m in memory.messages()] == ["huge"]
        assert len(memory) == 1

    def test_messages_returns_copy(self):
        memory = ConversationMemory(max_tokens=10)
        memory.add(msg("a", 1))
        snapshot = memory.messages()
        snapshot.clear()
        assert len(memory) == 1

    def test_rejects_non_positive_budget(self):
        with pytest.raises(ValueError):
            ConversationMemory(max_tokens=0)


class TestEstimateTokens:
    def test_empty_is_zero(self):
        assert estimate_tokens("") == 0

    def test_short_text_counts_at_least_one(self):
        assert estimate_tokens("hi") == 1

    def test_four_chars_per_token(self):
        assert estimate_tokens("x" * 40) == 10


class TestEvictionPolicies:
    """LRU / TTL selection and registry eviction."""

    def test_lru_evicts_least_recently_used(self):
        store = SessionMemoryStore(10, LRUEvictionPolicy(max_sessions=2))
        store.get_or_create("a")
        store.get_or_create("b")
        store.get_or_create("a")  # touch: "b" is now the oldest
        store.get_or_create("c")

        assert "a" in store
        assert "b" not in store
        assert "c" in store
        assert len(store) == 2

    def test_ttl_evicts_idle_sessions(self):
        clock = FakeClock()
        store = SessionMemoryStore(10, TTLEvictionPolicy(ttl_seconds=60), clock=clock)
        store.get_or_create("old")
        clock.now = 50
        store.get_or_create("recent")
        clock.now = 100
        store.get_or_create("new")

        assert "old" not in store
        assert "recent" in store
        assert "new" in store

    def test_composite_policy_merges_victims(self):
        policy = build_eviction_policy(max_sessions=5, ttl_seconds=10)
        assert isinstance(policy, CompositeEvictionPolicy)

    def test_no_policy_when_unbounded(self):
        assert build_eviction_policy(None, None) is None
        assert isinstance(build_eviction_policy(3, None), LRUEvictionPolicy)

    @pytest.mark.asyncio
    async def test_session_in_use_is_never_evicted(self):
        store = SessionMemoryStore(10, LRUEvictionPolicy(max_sessions=1))
        async with store.session("busy"):
            store.get_or_create("other")
            assert "busy" in store
            assert "other" in store


class TestSessionMemoryStore:
    """Serialized per-session access."""

    @pytest.mark.asyncio
    async def test_history_of_unknown_session_is_empty_and_not_created(self):
        store = SessionMemoryStore(10)
        assert await store.history("ghost") == []
        assert "ghost" not in store

    @pytest.mark.asyncio
    async def test_append_then_history(self):
        store = SessionMemoryStore(100)
        await store.append("s1", msg("hello", 1))
        await store.append("s1", msg("hi there", 2, role="assistant"))

        history = await store.history("s1")
        assert [(m.role, m.text) for m in history] == [("user", "hello"), ("assistant", "hi there")]

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self):
        store = SessionMemoryStore(100)
        await store.append("s1", msg("one", 1))
        await store.append("s2", msg("two", 1))

        assert [m.text for m in await store.history("s1")] == ["one"]
        assert [m.text for m in await store.history("s2")] == ["two"]

    @pytest.mark.asyncio
    async def test_session_lock_serializes_turns(self):
        store = SessionMemoryStore(100)

        async def turn(label):
            async with store.session("s1") as memory:
                memory.add(msg(f"{label}-user", 1))
                await asyncio.sleep(0.01)
                memory.add(msg(f"{label}-assistant", 1, role="assistant"))

        await asyncio.gather(turn("a"), turn("b"), turn("c"))

        texts = [m.text for m in await store.history("s1")]
        assert len(texts) == 6
        for i in range(0, 6, 2):
            assert texts[i].endswith("-user")
            assert texts[i + 1] == texts[i].replace("-user", "-assistant")

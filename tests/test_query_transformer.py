# tests/test_query_transformer.py
"""Tests for the compress-then-expand query transformer."""

import pytest

from conftest import FakeEngine
from ragchat.src.core.exceptions import RetrievalError
from ragchat.src.core.models import Message, Query, QueryMetadata
from ragchat.src.core.query_transformer import QueryTransformer


def query_with_history(text, history=()):
    return Query(text, QueryMetadata(user_message=text, session_id="s1", history=tuple(history)))


class TestCompress:
    @pytest.mark.asyncio
    async def test_skipped_without_history(self):
        engine = FakeEngine(reply="should not be used")
        transformer = QueryTransformer(engine)

        result = await transformer.compress(query_with_history("What is RAG?"))

        assert [q.text for q in result] == ["What is RAG?"]
        assert engine.complete_calls == []

    @pytest.mark.asyncio
    async def test_folds_history_into_prompt(self):
        engine = FakeEngine(reply="What does LanceDB store?")
        transformer = QueryTransformer(engine)
        history = [Message("user", "Tell me about LanceDB", 4), Message("assistant", "It is a vector database.", 5)]

        result = await transformer.compress(query_with_history("What does it store?", history))

        assert [q.text for q in result] == ["What does LanceDB store?"]
        prompt = engine.complete_calls[0][0][0].text
        assert "User: Tell me about LanceDB" in prompt
        assert "AI: It is a vector database." in prompt
        assert "What does it store?" in prompt

    @pytest.mark.asyncio
    async def test_blank_reply_falls_back_to_input(self):
        transformer = QueryTransformer(FakeEngine(reply="   "))
        history = [Message("user", "earlier", 1)]

        result = await transformer.compress(query_with_history("follow-up", history))

        assert [q.text for q in result] == ["follow-up"]


class TestExpand:
    @pytest.mark.asyncio
    async def test_one_query_per_non_blank_line(self):
        transformer = QueryTransformer(FakeEngine(reply="first variant\n\n  second variant  \nthird variant\n"), expansion_count=3)

        result = await transformer.expand(Query("original"))

        assert [q.text for q in result] == ["first variant", "second variant", "third variant"]

    @pytest.mark.asyncio
    async def test_requests_configured_count(self):
        engine = FakeEngine(reply="a\nb")
        transformer = QueryTransformer(engine, expansion_count=5)

        await transformer.expand(Query("original"))

        assert "5" in engine.complete_calls[0][0][0].text

    @pytest.mark.asyncio
    async def test_empty_reply_falls_back_to_input(self):
        transformer = QueryTransformer(FakeEngine(reply=""))
        result = await transformer.expand(Query("original"))
        assert [q.text for q in result] == ["original"]


class TestTransform:
    @pytest.mark.asyncio
    async def test_output_non_empty_and_keeps_metadata(self):
        transformer = QueryTransformer(FakeEngine(reply="v1\nv2\nv3"))
        query = query_with_history("Hello")

        result = await transformer.transform(query)

        assert [q.text for q in result] == ["v1", "v2", "v3"]
        assert all(q.metadata is query.metadata for q in result)

    @pytest.mark.asyncio
    async def test_two_engine_calls_with_history(self):
        engine = FakeEngine(reply="variant")
        transformer = QueryTransformer(engine)

        await transformer.transform(query_with_history("next", [Message("user", "prev", 1)]))

        assert len(engine.complete_calls) == 2

    @pytest.mark.asyncio
    async def test_engine_failure_raises_retrieval_error(self):
        transformer = QueryTransformer(FakeEngine(error=RuntimeError("quota exceeded")))

        with pytest.raises(RetrievalError, match="quota exceeded"):
            await transformer.transform(query_with_history("Hello"))

"""
RagChat - Completion Engine
============================
The orchestrator and the query transformer talk to the language model
only through the ``CompletionEngine`` protocol:

    complete(messages) -> str                  (one full reply)
    stream(messages)   -> AsyncIterator[str]   (tokens in production order)

``LangChainCompletionEngine`` is the production adapter around
``ChatGoogleGenerativeAI``.  It converts RagChat ``Message`` objects into
LangChain messages, applies the immutable ``ModelParams`` once at
construction, and passes stop sequences on every call.  Retries are the
LangChain client's own business (``max_retries``); nothing here retries.

Usage:
    engine = LangChainCompletionEngine.from_params(settings.CHAT_MODEL, api_key)
    reply  = await engine.complete([Message("user", "Hello", 1)])
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol, runtime_checkable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ragchat.config.settings import ModelParams
from ragchat.src.core.models import Message
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

_RESPONSE_MIME_TYPES = {"text": "text/plain", "json": "application/json"}


@runtime_checkable
class CompletionEngine(Protocol):
    """Anything that can answer an ordered conversation."""

    async def complete(self, messages: Sequence[Message], system_prompt: str | None = None) -> str: ...

    def stream(self, messages: Sequence[Message], system_prompt: str | None = None) -> AsyncIterator[str]: ...


def to_langchain_messages(messages: Sequence[Message], system_prompt: str | None = None) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    if system_prompt:
        converted.append(SystemMessage(content=system_prompt))
    for message in messages:
        if message.role == "assistant":
            converted.append(AIMessage(content=message.text))
        else:
            converted.append(HumanMessage(content=message.text))
    return converted


def _content_text(content: Any) -> str:
    """Flatten LangChain content (a string or a list of parts) into text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content or "")


class LangChainCompletionEngine:
    """
    ``CompletionEngine`` backed by any LangChain chat model.

    Parameters
    ----------
    llm
        An initialised ``BaseChatModel`` (``ChatGoogleGenerativeAI`` in
        production, a fake chat model in tests).
    stop
        Stop sequences applied to every call.
    """

    __slots__ = ("_llm", "_stop")

    def __init__(self, llm: BaseChatModel, stop: Sequence[str] = ()) -> None:
        self._llm = llm
        self._stop = list(stop) or None

    @classmethod
    def from_params(cls, params: ModelParams, api_key: str) -> "LangChainCompletionEngine":
        """Initialise the Gemini chat model via LangChain."""
        from langchain_google_genai import ChatGoogleGenerativeAI

        extra: dict[str, Any] = {}
        if params.presence_penalty:
            extra["presence_penalty"] = params.presence_penalty
        if params.frequency_penalty:
            extra["frequency_penalty"] = params.frequency_penalty

        llm = ChatGoogleGenerativeAI(
            model=params.model_name,
            temperature=params.temperature,
            top_p=params.top_p,
            max_output_tokens=params.max_tokens,
            max_retries=params.max_retries,
            response_mime_type=_RESPONSE_MIME_TYPES[params.response_format],
            google_api_key=api_key,
            **extra,
        )
        logger.info("LLM initialised: %s (temperature=%.1f, max_tokens=%d)", params.model_name, params.temperature, params.max_tokens)
        return cls(llm, stop=params.stop)

    async def complete(self, messages: Sequence[Message], system_prompt: str | None = None) -> str:
        response = await self._llm.ainvoke(to_langchain_messages(messages, system_prompt), stop=self._stop)
        return _content_text(response.content)

    async def stream(self, messages: Sequence[Message], system_prompt: str | None = None) -> AsyncIterator[str]:
        async for chunk in self._llm.astream(to_langchain_messages(messages, system_prompt), stop=self._stop):
            token = _content_text(chunk.content)
            if token:
                yield token

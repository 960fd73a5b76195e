"""
RagChat - Chat Orchestrator
============================
Runs one conversational turn end to end, either as a single reply or as
a live token stream.

Flow (both modes)
-----------------
    1. Validate     → blank text is rejected before anything else runs.
    2. Lock         → the session lock is held from the history read to
                      the final append, so turns of one session never
                      interleave.
    3. History      → snapshot of the session's bounded memory.
    4. Augment      → ``RetrievalAugmentor`` (transform, retrieve, fuse).
    5. Prompt       → context block + user question, appended to memory
                      as the user message.
    6. Complete     → (optional system prompt +) bounded history sent to
                      the completion engine.
    7. Save         → assistant reply appended to memory.

Streaming state machine
-----------------------
    PENDING_AUGMENT ──► STREAMING ──► COMPLETED   (one ``end`` event)
           │                  │
           └──────────────────┴──► FAILED        (one ``error`` event)

``start_stream`` validates synchronously, opens the session's channel,
schedules the turn as a background task and returns at once.  The task
guarantees exactly one terminal event, including when it is cancelled
at shutdown.  A consumer that goes away closes its channel; the turn
still runs to completion and its reply is still stored.

Failure semantics
-----------------
Retrieval failures surface as ``RetrievalError``; any other failure is
wrapped in ``ProcessingError``.  Memory mutations made before a failure
are kept: if the engine fails, the augmented user prompt stays in the
session history.
"""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import Executor
from dataclasses import dataclass

from ragchat.config.prompt_templates import AUGMENTED_PROMPT_TEMPLATE
from ragchat.src.core.augmentor import RetrievalAugmentor
from ragchat.src.core.channels import StreamChannel, StreamChannelRegistry
from ragchat.src.core.engines import CompletionEngine
from ragchat.src.core.exceptions import ProcessingError, RagChatError, ValidationError
from ragchat.src.core.memory import ConversationMemory, SessionMemoryStore, Tokenizer
from ragchat.src.core.models import AugmentationResult, AugmentedContext, Message, Query, QueryMetadata, StreamEvent, StreamState
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

STREAM_CANCELLED_MESSAGE = "Stream cancelled before completion"


@dataclass(frozen=True)
class StreamHandle:
    """Acknowledgment returned by ``start_stream``."""

    session_id: str
    channel: StreamChannel
    status: str = "streaming_started"


def build_prompt(result: AugmentationResult, question: str) -> str:
    context = result.context if isinstance(result, AugmentedContext) else result.marker
    return AUGMENTED_PROMPT_TEMPLATE.format(context=context, question=question)


class ChatOrchestrator:
    """
    Session-scoped retrieval-augmented chat.

    Parameters
    ----------
    memory_store
        Registry of per-session token-bounded memories.
    augmentor
        The ``RetrievalAugmentor``.
    engine
        Completion engine for full replies.
    streaming_engine
        Completion engine for streamed replies (defaults to ``engine``).
    tokenizer
        Token counter for new messages; calls run on ``executor``.
    channels
        Registry of per-session stream channels.
    executor
        Worker pool for blocking calls.
    system_prompt
        Optional system message prepended to every completion call.
    """

    __slots__ = ("_memory", "_augmentor", "_engine", "_streaming_engine", "_tokenizer", "_channels", "_executor", "_system_prompt", "_tasks")

    def __init__(
        self,
        memory_store: SessionMemoryStore,
        augmentor: RetrievalAugmentor,
        engine: CompletionEngine,
        tokenizer: Tokenizer,
        channels: StreamChannelRegistry | None = None,
        streaming_engine: CompletionEngine | None = None,
        executor: Executor | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self._memory = memory_store
        self._augmentor = augmentor
        self._engine = engine
        self._streaming_engine = streaming_engine or engine
        self._tokenizer = tokenizer
        self._channels = channels or StreamChannelRegistry()
        self._executor = executor
        self._system_prompt = system_prompt
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def channels(self) -> StreamChannelRegistry:
        return self._channels

    @property
    def active_streams(self) -> int:
        return len(self._tasks)

    # ══════════════════════════════════════════════════════════════════
    #  NON-STREAMING
    # ══════════════════════════════════════════════════════════════════

    async def complete(self, session_id: str, user_text: str) -> str:
        """
        Answer one user message and return the full reply.

        Raises
        ------
        ValidationError
            ``user_text`` is empty or blank.  Nothing else has run.
        RetrievalError
            Query transformation or retrieval failed.
        ProcessingError
            Any later failure.  The augmented prompt already appended to
            memory is not rolled back.
        """
        self._validate(user_text)
        t_start = time.perf_counter()

        try:
            async with self._memory.session(session_id) as memory:
                await self._prepare_turn(session_id, user_text, memory)

                t_llm = time.perf_counter()
                reply = await self._engine.complete(memory.messages(), self._system_prompt)
                llm_ms = (time.perf_counter() - t_llm) * 1000

                await self._remember(memory, "assistant", reply)
        except RagChatError:
            raise
        except Exception as exc:
            logger.exception("[RAG] Chat turn failed for session '%s'.", session_id)
            raise ProcessingError(f"Failed to process request: {exc}") from exc

        total_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[RAG] Session '%s' turn: %.1fms total (llm=%.1fms, %d chars)", session_id, total_ms, llm_ms, len(reply))
        return reply

    # ══════════════════════════════════════════════════════════════════
    #  STREAMING
    # ══════════════════════════════════════════════════════════════════

    def start_stream(self, session_id: str, user_text: str) -> StreamHandle:
        """
        Validate, open the session's channel and schedule the turn.

        Raises
        ------
        ValidationError
            ``user_text`` is empty or blank.
        ChannelBusyError
            A stream is already live for ``session_id``.
        """
        self._validate(user_text)
        channel = self._channels.open(session_id)

        task = asyncio.get_running_loop().create_task(self._run_stream(session_id, user_text, channel), name=f"ragchat-stream-{session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info("[STREAM] Streaming started for session '%s'.", session_id)
        return StreamHandle(session_id=session_id, channel=channel)

    async def _run_stream(self, session_id: str, user_text: str, channel: StreamChannel) -> None:
        state = StreamState.PENDING_AUGMENT
        terminal: StreamEvent | None = None
        tokens: list[str] = []
        t_start = time.perf_counter()

        try:
            async with self._memory.session(session_id) as memory:
                await self._prepare_turn(session_id, user_text, memory)

                state = StreamState.STREAMING
                async for token in self._streaming_engine.stream(memory.messages(), self._system_prompt):
                    tokens.append(token)
                    channel.publish(StreamEvent.of_token(token))

                await self._remember(memory, "assistant", "".join(tokens))
                state = StreamState.COMPLETED
                terminal = StreamEvent.end()
        except asyncio.CancelledError:
            state = StreamState.FAILED
            terminal = StreamEvent.failure(ProcessingError.status_code, STREAM_CANCELLED_MESSAGE)
            logger.warning("[STREAM] Stream for session '%s' cancelled after %d token(s).", session_id, len(tokens))
            raise
        except RagChatError as exc:
            state = StreamState.FAILED
            terminal = StreamEvent.failure(exc.status_code, exc.message)
            logger.error("[STREAM] Stream for session '%s' failed: %s", session_id, exc.message)
        except Exception as exc:
            state = StreamState.FAILED
            error = ProcessingError(f"Failed to process request: {exc}")
            terminal = StreamEvent.failure(error.status_code, error.message)
            logger.exception("[STREAM] Stream for session '%s' failed after %d token(s).", session_id, len(tokens))
        finally:
            if terminal is None:
                terminal = StreamEvent.failure(ProcessingError.status_code, STREAM_CANCELLED_MESSAGE)
            channel.publish(terminal)
            elapsed_ms = (time.perf_counter() - t_start) * 1000
            logger.info("[STREAM] Session '%s' → %s (%d token(s), %.1fms)", session_id, state.value, len(tokens), elapsed_ms)

    async def aclose(self, timeout: float | None = 5.0) -> None:
        """Wait for running streams, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info("[STREAM] Waiting for %d running stream(s) …", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("[STREAM] Cancelled %d stream(s) at shutdown.", len(still_running))

    # ══════════════════════════════════════════════════════════════════
    #  SHARED STEPS
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def _validate(user_text: str | None) -> None:
        if user_text is None or not user_text.strip():
            raise ValidationError("Message cannot be empty")

    async def _prepare_turn(self, session_id: str, user_text: str, memory: ConversationMemory) -> None:
        """History read, augmentation and user-prompt append.  Caller holds the session lock."""
        history = tuple(memory.messages())
        metadata = QueryMetadata(user_message=user_text, session_id=session_id, history=history)

        result = await self._augmentor.augment(Query(user_text, metadata), metadata)
        await self._remember(memory, "user", build_prompt(result, user_text))

    async def _remember(self, memory: ConversationMemory, role: str, text: str) -> None:
        loop = asyncio.get_running_loop()
        token_count = await loop.run_in_executor(self._executor, self._tokenizer.count_tokens, text)
        memory.add(Message(role, text, token_count))  # type: ignore[arg-type]

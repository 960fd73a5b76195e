"""
RagChat - Domain Types
=======================
Plain, immutable value types passed between the orchestrator, the
augmentor, the memory store and the stream channels.  None of them
know about HTTP, LangChain or LanceDB.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Union

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Message:
    """One conversation entry with its precomputed token cost."""

    role: Role
    text: str
    token_count: int


@dataclass(frozen=True)
class QueryMetadata:
    """Context captured at augmentation time."""

    user_message: str
    session_id: str
    history: tuple[Message, ...] = ()


@dataclass(frozen=True)
class Query:
    text: str
    metadata: QueryMetadata | None = None


@dataclass(frozen=True)
class RetrievedContent:
    """A single retrieved chunk; ``score`` is a relevance in [0, 1]."""

    text: str
    score: float
    source: str = "unknown"
    content_hash: str | None = None


# ── Augmentation result: tagged variant ───────────────────────────────


@dataclass(frozen=True)
class AugmentedContext:
    """Retrieval succeeded and produced at least one qualifying chunk."""

    context: str
    contents: tuple[RetrievedContent, ...]
    queries: tuple[Query, ...] = ()


@dataclass(frozen=True)
class NoContext:
    """Retrieval succeeded with zero qualifying chunks."""

    marker: str
    queries: tuple[Query, ...] = ()


AugmentationResult = Union[AugmentedContext, NoContext]


# ── Streaming ─────────────────────────────────────────────────────────


class StreamState(str, Enum):
    PENDING_AUGMENT = "pending_augment"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ErrorPayload:
    status: int
    error: str

    def to_dict(self) -> dict[str, int | str]:
        return {"status": self.status, "error": self.error}


@dataclass(frozen=True)
class StreamEvent:
    """A token, or one of the two terminal markers (``end`` / ``error``)."""

    kind: Literal["token", "end", "error"]
    token: str | None = None
    error: ErrorPayload | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind != "token"

    @classmethod
    def of_token(cls, token: str) -> "StreamEvent":
        return cls(kind="token", token=token)

    @classmethod
    def end(cls) -> "StreamEvent":
        return cls(kind="end")

    @classmethod
    def failure(cls, status: int, message: str) -> "StreamEvent":
        return cls(kind="error", error=ErrorPayload(status=status, error=message))

    def to_dict(self) -> dict[str, object]:
        """Wire shape: ``{"token": ...}``, ``{"end": true}`` or ``{"error": {...}}``."""
        if self.kind == "token":
            return {"token": self.token}
        if self.kind == "end":
            return {"end": True}
        return {"error": self.error.to_dict() if self.error else {}}


# ── Indexing ──────────────────────────────────────────────────────────


class FileStatus(str, Enum):
    INDEXED = "indexed"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass
class IndexSummary:
    total_files: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    total_chunks: int = 0
    elapsed_seconds: float = 0.0
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "total_files": self.total_files,
            "files_processed": self.files_processed,
            "files_skipped": self.files_skipped,
            "files_failed": self.files_failed,
            "total_chunks": self.total_chunks,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }

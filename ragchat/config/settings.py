"""
RagChat - Centralized Configuration
====================================
One frozen ``Settings`` object, read from the process environment and
``.env`` and validated once at startup.

Security
--------
- ``GOOGLE_API_KEY`` is a required ``SecretStr``.  Without it,
  ``get_settings()`` raises ``ConfigurationError`` naming the field.
  The raw value never shows up in ``repr`` or in logs.
- ``MONGO_URI`` is also ``SecretStr`` and only required when the dedup
  ledger lives in MongoDB (``LEDGER_BACKEND="mongo"``).

Model parameters
----------------
The streaming and non-streaming chat models are configured independently
through nested, immutable ``ModelParams`` blocks::

    CHAT_MODEL__TEMPERATURE=0.4
    STREAMING_CHAT_MODEL__MAX_TOKENS=1024
    CHAT_MODEL__STOP='["###"]'

Concurrency
-----------
``MAX_WORKERS`` controls the ``ThreadPoolExecutor`` pool that carries
hashing, file I/O, LanceDB and embedding calls off the event loop.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ragchat.src.core.exceptions import ConfigurationError


class ModelParams(BaseModel):
    """
    Immutable parameters for one chat model.

    Every recognised option is enumerated here with its default; unknown
    keys are rejected so a typo in ``.env`` fails at startup rather than
    being silently ignored.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    model_name: str = "gemini-2.0-flash"
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    top_p: float = Field(default=1.0, gt=0.0, le=1.0)
    presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    frequency_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    max_tokens: int = Field(default=4000, gt=0)
    stop: tuple[str, ...] = ()
    max_retries: int = Field(default=3, ge=0)
    response_format: Literal["text", "json"] = "text"


class Settings(BaseSettings):
    """
    Every RagChat option.  Names match the environment variables; fields
    without a default must be set before the service can start.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DOCUMENTS_DIR: Path = BASE_DIR / "data" / "documents"
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"
    LEDGER_PATH: Path = BASE_DIR / "data" / "processed" / "content_ledger.json"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"

    # ── API Keys (REQUIRED — no default) ───────────────────────────────
    GOOGLE_API_KEY: SecretStr

    # ── Chat Models ────────────────────────────────────────────────────
    CHAT_MODEL: ModelParams = ModelParams()
    STREAMING_CHAT_MODEL: ModelParams = ModelParams()
    SYSTEM_PROMPT: str | None = None

    # ── Retrieval ──────────────────────────────────────────────────────
    EMBEDDING_MODEL: str = "gemini-embedding-001"
    MAX_RETRIEVER_RESULTS: int = 5
    MIN_RETRIEVER_SCORE: float = 0.7
    QUERY_EXPANSION_COUNT: int = 3

    # ── Conversation Memory ────────────────────────────────────────────
    MEMORY_MAX_TOKENS: int = 4000
    SESSION_MAX_COUNT: int | None = 1000
    SESSION_TTL_SECONDS: float | None = None

    # ── Vector Store ───────────────────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "ragchat_docs"

    # ── Dedup Ledger ───────────────────────────────────────────────────
    LEDGER_BACKEND: Literal["json", "lancedb", "mongo"] = "json"
    MONGO_URI: SecretStr | None = None
    MONGO_DB_NAME: str = "ragchat"
    MONGO_LEDGER_COLLECTION: str = "content_ledger"

    # ── Ingestion Parameters ───────────────────────────────────────────
    CHUNK_SIZE: int = 1000
    CHUNKING_STRATEGY: Literal["recursive", "semantic"] = "recursive"
    INDEX_ON_STARTUP: bool = True

    # ── Concurrency ────────────────────────────────────────────────────
    MAX_WORKERS: int = 4

    # ── HTTP Server ────────────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("CHUNK_SIZE")
    @classmethod
    def _chunk_size_positive(cls, v: int) -> int:
        if v < 50:
            raise ValueError(f"CHUNK_SIZE must be at least 50, got {v}")
        return v

    @field_validator("MAX_WORKERS")
    @classmethod
    def _workers_range(cls, v: int) -> int:
        if not 1 <= v <= 16:
            raise ValueError(f"MAX_WORKERS must be 1–16, got {v}")
        return v

    @field_validator("MIN_RETRIEVER_SCORE")
    @classmethod
    def _score_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"MIN_RETRIEVER_SCORE must be within 0–1, got {v}")
        return v

    @field_validator("MAX_RETRIEVER_RESULTS", "MEMORY_MAX_TOKENS", "QUERY_EXPANSION_COUNT")
    @classmethod
    def _strictly_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be ≥ 1, got {v}")
        return v

    @field_validator("GOOGLE_API_KEY")
    @classmethod
    def _api_key_not_blank(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("GOOGLE_API_KEY must not be empty")
        return v

    @model_validator(mode="after")
    def _mongo_uri_for_mongo_ledger(self) -> "Settings":
        if self.LEDGER_BACKEND == "mongo" and self.MONGO_URI is None:
            raise ValueError("MONGO_URI is required when LEDGER_BACKEND is 'mongo'")
        return self

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parent.parent / ".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the process-wide ``Settings`` instance, loading it on first use.

    Raises
    ------
    ConfigurationError
        If a required value is missing or a validator rejects a value.
    """
    try:
        return Settings()  # type: ignore[call-arg]
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

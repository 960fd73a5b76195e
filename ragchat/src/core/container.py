"""
RagChat - Service Container
============================
Builds every long-lived service from a ``Settings`` instance, once, at
startup:

    ThreadPoolExecutor ─┬─► VectorStore (LanceDB + Gemini embeddings)
                        ├─► HashLedger (json | lancedb | mongo)
                        ├─► DocumentIndexer
                        └─► ChatOrchestrator ◄── SessionMemoryStore
                                              ◄── RetrievalAugmentor ◄── QueryTransformer
                                              ◄── StreamChannelRegistry

Tests build ``Services`` directly from fakes instead of calling
``build_services``.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from ragchat.config.settings import Settings
from ragchat.src.core.augmentor import RetrievalAugmentor
from ragchat.src.core.channels import StreamChannelRegistry
from ragchat.src.core.chunking import TextChunker
from ragchat.src.core.exceptions import ConfigurationError
from ragchat.src.core.engines import LangChainCompletionEngine
from ragchat.src.core.ingestor import DocumentIndexer
from ragchat.src.core.memory import GeminiTokenizer, SessionMemoryStore, build_eviction_policy
from ragchat.src.core.query_transformer import QueryTransformer
from ragchat.src.core.rag_engine import ChatOrchestrator
from ragchat.src.database.ledger import HashLedger, JsonHashLedger, MongoHashLedger, VectorStoreLedger
from ragchat.src.database.vector_store import Embedder, VectorStore
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Services:
    orchestrator: ChatOrchestrator
    indexer: DocumentIndexer
    executor: ThreadPoolExecutor | None = None

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        logger.info("Services shut down.")


def build_embedder(settings: Settings) -> Embedder:
    from langchain_google_genai import GoogleGenerativeAIEmbeddings

    embedder = GoogleGenerativeAIEmbeddings(model=settings.EMBEDDING_MODEL, google_api_key=settings.GOOGLE_API_KEY)
    logger.info("Embedding model initialised: %s", settings.EMBEDDING_MODEL)
    return embedder


def build_ledger(settings: Settings, store: VectorStore, executor: ThreadPoolExecutor) -> HashLedger:
    if settings.LEDGER_BACKEND == "mongo":
        if settings.MONGO_URI is None:
            raise ConfigurationError("MONGO_URI is required when LEDGER_BACKEND is 'mongo'")
        return MongoHashLedger.from_uri(settings.MONGO_URI.get_secret_value(), settings.MONGO_DB_NAME, settings.MONGO_LEDGER_COLLECTION)
    if settings.LEDGER_BACKEND == "lancedb":
        return VectorStoreLedger(store, executor)
    return JsonHashLedger(settings.LEDGER_PATH, executor)


def build_store(settings: Settings, embedder: Embedder | None = None) -> VectorStore:
    return VectorStore(embedder or build_embedder(settings), db_path=settings.LANCEDB_PATH, table_name=settings.LANCEDB_TABLE_NAME)


def build_services(settings: Settings) -> Services:
    """Wire the production services described by *settings*."""
    api_key = settings.GOOGLE_API_KEY.get_secret_value()
    executor = ThreadPoolExecutor(max_workers=settings.MAX_WORKERS, thread_name_prefix="ragchat")

    embedder = build_embedder(settings)
    store = build_store(settings, embedder)
    ledger = build_ledger(settings, store, executor)
    chunker = TextChunker(settings.CHUNK_SIZE, settings.CHUNKING_STRATEGY, embedder)
    indexer = DocumentIndexer(store, ledger, chunker, settings.DOCUMENTS_DIR, executor)

    engine = LangChainCompletionEngine.from_params(settings.CHAT_MODEL, api_key)
    streaming_engine = LangChainCompletionEngine.from_params(settings.STREAMING_CHAT_MODEL, api_key)

    transformer = QueryTransformer(engine, settings.QUERY_EXPANSION_COUNT)
    augmentor = RetrievalAugmentor(transformer, store, settings.MAX_RETRIEVER_RESULTS, settings.MIN_RETRIEVER_SCORE, executor)
    memory_store = SessionMemoryStore(settings.MEMORY_MAX_TOKENS, build_eviction_policy(settings.SESSION_MAX_COUNT, settings.SESSION_TTL_SECONDS))

    orchestrator = ChatOrchestrator(
        memory_store=memory_store,
        augmentor=augmentor,
        engine=engine,
        tokenizer=GeminiTokenizer(api_key, settings.CHAT_MODEL.model_name),
        channels=StreamChannelRegistry(),
        streaming_engine=streaming_engine,
        executor=executor,
        system_prompt=settings.SYSTEM_PROMPT,
    )

    logger.info("Services ready (ledger=%s, chunking=%s, workers=%d).", settings.LEDGER_BACKEND, settings.CHUNKING_STRATEGY, settings.MAX_WORKERS)
    return Services(orchestrator=orchestrator, indexer=indexer, executor=executor)

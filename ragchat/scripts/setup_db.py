"""
RagChat - Database Setup & Indexing Script
===========================================
CLI entry point that:
    1. Loads and validates ``Settings`` (fail-fast on a missing API key).
    2. Opens the LanceDB ``VectorStore`` (optionally dropping the table).
    3. Runs the ``DocumentIndexer`` over the documents directory.
    4. Prints an execution summary with a startup / processing split.

Flags:
    --drop       Drop the LanceDB table before indexing (ledger kept).
    --purge      Drop the table AND clear the dedup ledger (full re-index).
    --drop-only  Drop the table and exit.
    --dir PATH   Index PATH instead of ``DOCUMENTS_DIR``.

With the default JSON ledger, ``--drop`` alone leaves every known
fingerprint in place, so nothing is re-embedded; use ``--purge`` to
rebuild from scratch.

Usage:
    ragchat-setup-db
    ragchat-setup-db --purge
    python -m ragchat.scripts.setup_db --drop-only
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ragchat-setup-db", description="RagChat — initialise the vector database and index the documents directory.")
    parser.add_argument("--drop", action="store_true", default=False, help="Drop the LanceDB table before indexing (ledger preserved).")
    parser.add_argument("--purge", action="store_true", default=False, help="Drop the LanceDB table AND clear the dedup ledger.")
    parser.add_argument("--drop-only", action="store_true", default=False, help="Drop the LanceDB table and exit (no indexing).")
    parser.add_argument("--dir", type=Path, default=None, help="Directory to index (defaults to DOCUMENTS_DIR).")
    return parser.parse_args(argv)


async def _setup(args: argparse.Namespace) -> int:
    t_start = time.perf_counter()

    from ragchat.config.settings import get_settings
    from ragchat.src.core.exceptions import ConfigurationError

    t_settings = time.perf_counter()
    try:
        settings = get_settings()
    except ConfigurationError as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc.message}")
        print()
        return 1
    settings_ms = (time.perf_counter() - t_settings) * 1000

    from ragchat.src.core.chunking import TextChunker
    from ragchat.src.core.container import build_embedder, build_ledger, build_store
    from ragchat.src.core.ingestor import DocumentIndexer
    from ragchat.src.utils.logger import get_logger

    logger = get_logger("ragchat.setup_db")
    _print_header(settings)

    t_store = time.perf_counter()
    embedder = build_embedder(settings)
    store = build_store(settings, embedder)
    store_ms = (time.perf_counter() - t_store) * 1000

    with ThreadPoolExecutor(max_workers=settings.MAX_WORKERS, thread_name_prefix="ragchat-setup") as executor:
        ledger = build_ledger(settings, store, executor)

        if args.drop or args.purge or args.drop_only:
            logger.warning("Dropping table '%s' as requested.", settings.LANCEDB_TABLE_NAME)
            store.drop_table()
            if args.purge:
                await ledger.clear()
                logger.warning("Dedup ledger cleared (%s backend).", settings.LEDGER_BACKEND)
            if args.drop_only:
                logger.info("--drop-only: table dropped. Exiting.")
                return 0

        logger.info("VectorStore ready — table '%s' (%d existing rows).", settings.LANCEDB_TABLE_NAME, store.count())
        startup_ms = settings_ms + store_ms

        chunker = TextChunker(settings.CHUNK_SIZE, settings.CHUNKING_STRATEGY, embedder)
        indexer = DocumentIndexer(store, ledger, chunker, settings.DOCUMENTS_DIR, executor)
        summary = await indexer.index_directory(args.dir)

    _print_footer(summary, time.perf_counter() - t_start, startup_ms)
    return 1 if summary.files_failed else 0


def _print_header(settings: object) -> None:
    api_key_val = settings.GOOGLE_API_KEY.get_secret_value()  # type: ignore[attr-defined]
    masked = f"****{api_key_val[-4:]}" if len(api_key_val) > 4 else "****"

    print()
    print("=" * 60)
    print("  RAGCHAT — Vector Database Setup & Indexing")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")                     # type: ignore[attr-defined]
    print(f"  Embedding    : {settings.EMBEDDING_MODEL}")         # type: ignore[attr-defined]
    print(f"  LanceDB path : {settings.LANCEDB_PATH}")            # type: ignore[attr-defined]
    print(f"  Ledger       : {settings.LEDGER_BACKEND}")          # type: ignore[attr-defined]
    print(f"  Documents    : {settings.DOCUMENTS_DIR}")           # type: ignore[attr-defined]
    print(f"  Chunking     : {settings.CHUNKING_STRATEGY} ({settings.CHUNK_SIZE} chars)")  # type: ignore[attr-defined]
    print(f"  Workers      : {settings.MAX_WORKERS}")             # type: ignore[attr-defined]
    print(f"  API Key      : {masked}")
    print("=" * 60)
    print()


def _print_footer(summary: object, elapsed: float, startup_ms: float) -> None:
    print()
    print("=" * 60)
    print("  EXECUTION SUMMARY")
    print("-" * 60)
    print(f"  Files scanned          : {summary.total_files}")      # type: ignore[attr-defined]
    print(f"  Files indexed          : {summary.files_processed}")  # type: ignore[attr-defined]
    print(f"  Files skipped (ledger) : {summary.files_skipped}")    # type: ignore[attr-defined]
    print(f"  Files failed           : {summary.files_failed}")     # type: ignore[attr-defined]
    print(f"  Chunks stored          : {summary.total_chunks}")     # type: ignore[attr-defined]
    for name in summary.failures:                                   # type: ignore[attr-defined]
        print(f"    ✗ {name}")
    print("-" * 60)
    print(f"  Startup time           : {startup_ms:>8.1f}ms")
    print(f"  Processing time        : {elapsed - startup_ms / 1000:>8.2f}s")
    print(f"  Total elapsed          : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


def main(argv: list[str] | None = None) -> None:
    sys.exit(asyncio.run(_setup(_parse_args(argv))))


if __name__ == "__main__":
    main()

#!/usr/bin/env python
"""Manage the local knowledge base from the command line.

Usage:
    python scripts/kb.py index report.txt notes.txt   # Index text files (pages split on \\f)
    python scripts/kb.py list                         # List indexed documents
    python scripts/kb.py delete <doc_id>              # Delete a document and its chunks
    python scripts/kb.py search "query" -k 5          # Top-K search
    python scripts/kb.py search "query" --context     # Print a prompt-ready context block
"""
import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import List, Tuple

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from knowbase import config
from knowbase.db import DocumentStore
from knowbase.errors import KnowbaseError
from knowbase.llm_client import OpenRouterClient
from knowbase.logging_config import configure_logging
from knowbase.rag.ingest import IndexingPipeline, descriptor_for_bytes
from knowbase.rag.retriever import RetrievalEngine, format_context

logger = structlog.get_logger()


def read_pages(data: bytes) -> List[Tuple[int, str]]:
    """Split extracted text into pages on form feeds, as written by pdftotext."""
    text = data.decode("utf-8", errors="replace")
    pages = text.split("\f")
    # pdftotext terminates the last page with a form feed
    if len(pages) > 1 and not pages[-1].strip():
        pages = pages[:-1]
    return [(number, " ".join(page.split())) for number, page in enumerate(pages, 1)]


class ProgressReporter:
    """Per-file progress lines and a closing summary for `index`."""

    def __init__(self, total: int, verbose: bool = False):
        self.total = total
        self.verbose = verbose
        self.started = time.monotonic()
        self.stats = {
            "files_indexed": 0,
            "files_failed": 0,
            "chunks_created": 0,
            "oversized_chunks": 0,
        }

    def indexed(self, position: int, path: Path, result) -> None:
        chunk_stats = result.chunk_stats
        self.stats["files_indexed"] += 1
        self.stats["chunks_created"] += result.chunk_count
        self.stats["oversized_chunks"] += chunk_stats.get("oversized_chunks", 0)

        line = f"  [{position}/{self.total}] {path.name}: {result.chunk_count} chunks"
        if self.verbose:
            line += (
                f" (avg {chunk_stats.get('avg_chunk_size', 0)} chars,"
                f" max {chunk_stats.get('max_chunk_size', 0)})"
            )
        print(line)

    def failed(self, position: int, path: Path, error: Exception) -> None:
        self.stats["files_failed"] += 1
        print(f"  [{position}/{self.total}] {path.name}: FAILED ({error})")

    def finish(self) -> None:
        elapsed = time.monotonic() - self.started
        print(
            f"\nIndexed {self.stats['files_indexed']}/{self.total} file(s), "
            f"{self.stats['chunks_created']} chunks in {elapsed:.1f}s"
        )
        if self.stats["oversized_chunks"]:
            print(
                f"  {self.stats['oversized_chunks']} chunk(s) exceed the size limit"
                " (single long pages)"
            )
        if self.stats["files_failed"]:
            print(f"  {self.stats['files_failed']} file(s) failed, see logs for details")


async def cmd_index(store: DocumentStore, args) -> int:
    pipeline = IndexingPipeline(store, OpenRouterClient())
    progress = ProgressReporter(len(args.files), verbose=args.verbose)

    for position, path in enumerate(args.files, 1):
        try:
            data = path.read_bytes()
            pages = read_pages(data)
            descriptor = descriptor_for_bytes(path.name, data, page_count=len(pages))
            result = await pipeline.index(descriptor, pages, api_key=args.api_key)
        except (KnowbaseError, OSError) as e:
            # Keep going with the remaining files
            logger.error("file_index_failed", path=str(path), error=str(e))
            progress.failed(position, path, e)
            continue

        progress.indexed(position, path, result)

    progress.finish()
    return 1 if progress.stats["files_failed"] else 0


async def cmd_list(store: DocumentStore, args) -> int:
    documents = await store.list_documents()
    documents.sort(key=lambda d: d.created_at, reverse=True)

    if not documents:
        print("No documents indexed.")
        return 0

    for doc in documents:
        print(
            f"{doc.id[:12]}  {doc.name:<40} {doc.page_count:>4} pages "
            f"{doc.chunk_count:>4} chunks  {doc.created_at:%Y-%m-%d %H:%M}"
        )
    return 0


async def cmd_delete(store: DocumentStore, args) -> int:
    if not await store.delete_document(args.doc_id):
        print(f"Document not found: {args.doc_id}")
        return 1
    print(f"Deleted {args.doc_id}")
    return 0


async def cmd_search(store: DocumentStore, args) -> int:
    engine = RetrievalEngine(store, OpenRouterClient())
    hits = await engine.search(args.query, k=args.k, doc_ids=args.doc, api_key=args.api_key)

    if args.context:
        print(format_context(hits))
        return 0

    if not hits:
        print("No matches.")
        return 0

    for rank, hit in enumerate(hits, 1):
        preview = hit.text[:200].replace("\n", " ")
        print(f"{rank:>2}. {hit.score:.3f}  [{hit.source}]")
        print(f"    {preview}")
    return 0


COMMANDS = {
    "index": cmd_index,
    "list": cmd_list,
    "delete": cmd_delete,
    "search": cmd_search,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage the local knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=config.DB_PATH,
        help=f"Database path (default: {config.DB_PATH})",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Embedding provider API key (default: $OPENROUTER_API_KEY)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", required=True)

    index = sub.add_parser("index", help="Index extracted text files")
    index.add_argument("files", nargs="+", type=Path)

    sub.add_parser("list", help="List indexed documents")

    delete = sub.add_parser("delete", help="Delete a document and its chunks")
    delete.add_argument("doc_id")

    search = sub.add_parser("search", help="Search indexed chunks")
    search.add_argument("query")
    search.add_argument("-k", type=int, default=None, help="Number of hits (1-20)")
    search.add_argument("--doc", action="append", default=None, help="Restrict to a document id")
    search.add_argument("--context", action="store_true", help="Print a formatted context block")

    return parser


async def main() -> int:
    """Main entry point for the knowledge base CLI."""
    args = build_parser().parse_args()
    configure_logging("DEBUG" if args.verbose else "WARNING")

    try:
        async with DocumentStore(args.db) as store:
            return await COMMANDS[args.command](store, args)

    except KeyboardInterrupt:
        print("\n\nCancelled by user.\n")
        return 1

    except KnowbaseError as e:
        print(f"\nError: {e}\n")
        logger.error("kb_command_failed", command=args.command, **e.to_dict())
        return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

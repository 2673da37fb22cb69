"""CLI for the Lodestar knowledge engine."""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from loguru import logger

from .log import configure_logging
from .models import DocumentCategory, IngestProgress


def _require_api_key(args: argparse.Namespace) -> None:
    if args.provider == "openai" and not os.environ.get("OPENAI_API_KEY"):
        print("Error: Set OPENAI_API_KEY environment variable")
        print("  export OPENAI_API_KEY=sk-...")
        sys.exit(1)


def _open(args: argparse.Namespace):
    from .engine import create_lodestar

    return create_lodestar(
        db_path=args.db,
        embedding_provider=args.provider,
        embedding_model=args.model,
    )


def _print_progress(progress: IngestProgress) -> None:
    if progress.total:
        print(f"  {progress.stage.value}: {progress.processed}/{progress.total}")
    else:
        print(f"- {progress.message}")


async def _ingest(args: argparse.Namespace) -> None:
    path = Path(args.path)
    text = path.read_text(encoding="utf-8")
    async with _open(args) as kb:
        result = await kb.ingest(
            args.id,
            args.title or path.stem,
            text,
            category=DocumentCategory(args.category),
            on_progress=_print_progress,
        )
    print(f"\nDocument: {result.document_id} ({result.chunk_count} chunks)")
    print(f"Summary: {result.summary}")
    if result.entity_tags:
        print(f"Tags: {', '.join(result.entity_tags)}")
    for question in result.suggested_questions:
        print(f"  ? {question}")
    if result.degraded:
        print(f"Warning: {len(result.degraded_chunks)} chunk(s) stored without embeddings")


async def _query(args: argparse.Namespace) -> None:
    async with _open(args) as kb:
        sources = []
        async for event in kb.query_stream(args.text, args.k):
            if event.type == "sources":
                sources = event.sources
            elif event.type == "delta":
                print(event.text, end="", flush=True)
    print("\n")
    for i, source in enumerate(sources, 1):
        print(f"[{i}] {source.document_title} ({source.score:.3f})")


async def _search(args: argparse.Namespace) -> None:
    async with _open(args) as kb:
        results = await kb.search(args.text, args.k)
    for i, r in enumerate(results, 1):
        print(f"{i}. [{r.score:.3f}] {r.document_title}: {r.content[:100]}...")


async def _stats(args: argparse.Namespace) -> None:
    async with _open(args) as kb:
        info = await kb.get_stats()
    print(json.dumps(info, indent=2))


def ingest(args: argparse.Namespace) -> None:
    """Ingest a plain-text file."""
    _require_api_key(args)
    asyncio.run(_ingest(args))


def query(args: argparse.Namespace) -> None:
    """Ask a question and stream the cited answer."""
    _require_api_key(args)
    asyncio.run(_query(args))


def search(args: argparse.Namespace) -> None:
    """Run hybrid search without generating an answer."""
    _require_api_key(args)
    asyncio.run(_search(args))


def stats(args: argparse.Namespace) -> None:
    """Show engine statistics."""
    _require_api_key(args)
    asyncio.run(_stats(args))


def serve(args: argparse.Namespace) -> None:
    """Start the REST API server."""
    import uvicorn

    from .api import create_app

    _require_api_key(args)
    app = create_app(
        db_path=args.db,
        embedding_provider=args.provider,
        embedding_model=args.model,
    )

    logger.info(f"Starting Lodestar API server on http://{args.host}:{args.port}")
    logger.info(f"Database: {args.db}; docs at http://{args.host}:{args.port}/docs")

    uvicorn.run(app, host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lodestar",
        description="Lodestar - cited answers over an accounting knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lodestar ingest manual.txt --title "Travel Policy" --category policy
  lodestar query "What is the hotel limit for managers?"
  lodestar serve --port 8000

Environment variables:
  OPENAI_API_KEY    Required for OpenAI embeddings and answers
  JINA_API_KEY      Required for Jina AI embeddings
  LODESTAR_*        Override any configuration field (e.g. LODESTAR_MIN_SCORE)
""",
    )

    parser.add_argument("--version", action="version", version="%(prog)s 1.0.0")
    parser.add_argument("--db", type=str, default="lodestar.db", help="Database path (default: lodestar.db)")
    parser.add_argument(
        "--provider",
        type=str,
        default="openai",
        choices=["openai", "huggingface", "jina"],
        help="Embedding provider (default: openai)",
    )
    parser.add_argument(
        "--model", type=str, default=None, help="Embedding model name (default: the provider's own)"
    )
    parser.add_argument("--log-level", type=str, default="INFO", help="Log level (default: INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest a plain-text document")
    ingest_parser.add_argument("path", type=str, help="Path to a UTF-8 text file")
    ingest_parser.add_argument("--title", type=str, help="Document title (default: file name)")
    ingest_parser.add_argument("--id", type=str, help="Document id (default: content hash)")
    ingest_parser.add_argument(
        "--category",
        type=str,
        default=DocumentCategory.ACCOUNTING_MANUAL.value,
        choices=[c.value for c in DocumentCategory],
    )
    ingest_parser.set_defaults(func=ingest)

    for name, func, help_text in (
        ("query", query, "Ask a question"),
        ("search", search, "Hybrid search without an answer"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("text", type=str, help="Query text")
        sub.add_argument("-k", type=int, default=4, help="Number of sources (default: 4)")
        sub.set_defaults(func=func)

    serve_parser = subparsers.add_parser("serve", help="Start REST API server")
    serve_parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="Host to bind (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind (default: 8000)"
    )
    serve_parser.set_defaults(func=serve)

    stats_parser = subparsers.add_parser("stats", help="Show engine statistics")
    stats_parser.set_defaults(func=stats)

    return parser


def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(args.log_level)
    args.func(args)


if __name__ == "__main__":
    main()

"""
Command-line entry point.

    notechain-rag index notes/ journal.md
    notechain-rag search "quarterly planning"
    notechain-rag suggest --type related notes/today.md
    notechain-rag stats

Markdown and text files are indexed as notes. Configuration comes from
NOTECHAIN_* / OLLAMA_* / RAG_* environment variables (see config.py).
Only vectors are persisted between runs, so search results from a fresh
process show titles and scores without excerpts.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from notechain_rag.config import AppConfig, IndexingOptions, IndexingProgress
from notechain_rag.models import (
    CurrentContext,
    DecryptedContent,
    EntityType,
    IndexableEntity,
    SuggestionRequest,
    SuggestionType,
)
from notechain_rag.rag.engine import RAGEngine, build_rag_engine

LOG = logging.getLogger("notechain_rag.cli")

NOTE_SUFFIXES = (".md", ".markdown", ".txt")


def iter_note_files(paths: List[str]) -> Iterator[Path]:
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            for child in sorted(path.rglob("*")):
                if child.is_file() and child.suffix.lower() in NOTE_SUFFIXES:
                    yield child
        elif path.is_file():
            yield path
        else:
            LOG.warning("Skipping %s: not a file or directory", path)


def note_from_file(path: Path, owner_id: str) -> IndexableEntity:
    """Read a text file as a note. The title is the first Markdown heading, else the file stem."""
    text = path.read_text(encoding="utf-8", errors="replace")
    title = path.stem
    body = text
    first_line, _, rest = text.partition("\n")
    if first_line.startswith("#"):
        title = first_line.lstrip("#").strip() or title
        body = rest.lstrip("\n")
    return IndexableEntity(
        id=str(path.resolve()),
        owner_id=owner_id,
        type=EntityType.NOTE,
        updated_at=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
        decrypted_content=DecryptedContent(title=title, content=body),
    )


def _print_progress(progress: IndexingProgress) -> None:
    label = f" {progress.current_item}" if progress.current_item else ""
    print(f"[{progress.progress:5.1f}%] {progress.processed}/{progress.total}{label}", file=sys.stderr)


async def cmd_index(engine: RAGEngine, config: AppConfig, args: argparse.Namespace) -> int:
    entities = [note_from_file(p, config.owner_id) for p in iter_note_files(args.paths)]
    if not entities:
        print("No note files found.")
        return 1
    options = IndexingOptions(
        batch_size=args.batch_size,
        on_progress=_print_progress if args.progress else None,
        force_reindex=args.force,
    )
    result = await engine.index_entities(entities, options)
    print(f"Indexed {result.processed}/{result.total} notes, {engine.vector_store.count()} vectors in store")
    for error in result.errors:
        print(f"  error: {error}")
    return 0 if not result.errors else 2


async def cmd_search(engine: RAGEngine, config: AppConfig, args: argparse.Namespace) -> int:
    context = await engine.retriever.retrieve_context(
        args.query,
        top_k=args.top_k,
        threshold=args.threshold,
        entity_types=tuple(args.entity_type) if args.entity_type else None,
    )
    if not context.has_context:
        print("No relevant context found.")
        return 0
    for item in context.items:
        print(f"{item.relevance:.3f}  [{item.type.value}] {item.title}  ({item.source.entity_id})")
        if item.excerpt:
            print(f"       {item.excerpt[:160].replace(chr(10), ' ')}")
    return 0


async def cmd_suggest(engine: RAGEngine, config: AppConfig, args: argparse.Namespace) -> int:
    note = note_from_file(Path(args.file), config.owner_id)
    request = SuggestionRequest(
        suggestion_type=SuggestionType(args.type),
        current_context=CurrentContext(
            content=note.decrypted_content.content or "",
            type=EntityType.NOTE,
            title=note.decrypted_content.title,
            cursor_position=args.cursor,
        ),
        max_suggestions=args.max,
    )
    if args.quick:
        response = await engine.generate_quick_suggestions(request)
    else:
        response = await engine.generate_suggestions(request)
    print(json.dumps([s.to_dict() for s in response.suggestions], indent=2))
    return 0


async def cmd_stats(engine: RAGEngine, config: AppConfig, args: argparse.Namespace) -> int:
    print(json.dumps(engine.get_metrics().to_dict(), indent=2))
    return 0


COMMANDS = {
    "index": cmd_index,
    "search": cmd_search,
    "suggest": cmd_suggest,
    "stats": cmd_stats,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notechain-rag",
        description="Local retrieval and suggestions over your notes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--data-dir", default=None, help="Directory for the vector database (default: NOTECHAIN_DATA_DIR)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_index = sub.add_parser("index", help="Index Markdown/text files as notes")
    p_index.add_argument("paths", nargs="+", help="Files or directories")
    p_index.add_argument("--batch-size", type=int, default=10)
    p_index.add_argument("--force", action="store_true", help="Reindex unchanged notes too")
    p_index.add_argument("--progress", action="store_true", help="Print progress to stderr")

    p_search = sub.add_parser("search", help="Search indexed content")
    p_search.add_argument("query")
    p_search.add_argument("--top-k", type=int, default=None)
    p_search.add_argument("--threshold", type=float, default=None)
    p_search.add_argument(
        "--entity-type",
        action="append",
        choices=[t.value for t in EntityType],
        help="Restrict to entity type (repeatable)",
    )

    p_suggest = sub.add_parser("suggest", help="Generate suggestions for a note file")
    p_suggest.add_argument("file")
    p_suggest.add_argument("--type", choices=[t.value for t in SuggestionType], default=SuggestionType.RELATED.value)
    p_suggest.add_argument("--cursor", type=int, default=None, help="Cursor offset within the note body")
    p_suggest.add_argument("--max", type=int, default=None, help="Maximum suggestions")
    p_suggest.add_argument("--quick", action="store_true", help="Retrieval only, no model call")

    sub.add_parser("stats", help="Show index metrics")
    return parser


async def run(args: argparse.Namespace, config: AppConfig) -> int:
    engine = build_rag_engine(config)
    await engine.initialize()
    try:
        return await COMMANDS[args.command](engine, config, args)
    finally:
        await engine.dispose()


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    config = AppConfig.from_env()
    if args.data_dir:
        config.data_dir = Path(args.data_dir)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    sys.exit(asyncio.run(run(args, config)))


if __name__ == "__main__":
    main()

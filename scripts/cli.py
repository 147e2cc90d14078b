"""Minimal CLI entry point for manual runs of the Echo Ingestor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from echo_ingestor.config.settings import EchoIngestorSettings
from echo_ingestor.core.api_client import EchoApiClient
from echo_ingestor.core.mbox_parser import MboxStreamParser, read_chunks
from echo_ingestor.core.models import (
    ContentType,
    GroupBy,
    LibraryFilter,
    SortKey,
    SourceFile,
    TrackedFile,
)
from echo_ingestor.core.validator import format_file_size, validate_file
from echo_ingestor.pipeline.library import ContentLibraryAggregator
from echo_ingestor.pipeline.orchestrator import UploadOrchestrator


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_change(tracked: TrackedFile) -> None:
    """Print per-file progress updates to stdout."""
    if tracked.indeterminate:
        progress = "..."
    else:
        progress = f"{tracked.progress:5.1f}%"
    phase = f" ({tracked.phase.value})" if tracked.phase else ""
    print(
        f"[{tracked.state.value}{phase}] {tracked.name} {progress}",
        end="\r",
        flush=True,
    )


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Echo Ingestor - Upload files, extract sent mail, browse generated content"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # validate command
    validate_parser = subparsers.add_parser("validate", help="Check files against upload rules")
    validate_parser.add_argument("paths", nargs="+", type=Path)

    # upload command
    upload_parser = subparsers.add_parser("upload", help="Upload files to a knowledge base")
    upload_parser.add_argument("paths", nargs="+", type=Path)
    upload_parser.add_argument("--kb", help="Knowledge base ID (default: from settings)")
    upload_parser.add_argument(
        "--self",
        action="append",
        dest="self_addresses",
        metavar="ADDR",
        help="Your own mail address, for MBOX archives (repeatable)",
    )

    # parse-mbox command
    mbox_parser = subparsers.add_parser("parse-mbox", help="Extract sent mail from an MBOX locally")
    mbox_parser.add_argument("path", type=Path)
    mbox_parser.add_argument(
        "--self",
        action="append",
        dest="self_addresses",
        metavar="ADDR",
        help="Your own mail address (repeatable)",
    )
    mbox_parser.add_argument("--limit", type=_positive_int, default=None)

    # library command
    library_parser = subparsers.add_parser("library", help="List generated content")
    library_parser.add_argument(
        "--type", dest="content_type", choices=[t.value for t in ContentType]
    )
    library_parser.add_argument("--platform")
    library_parser.add_argument("--search", default="")
    library_parser.add_argument(
        "--sort", choices=[s.value for s in SortKey], default=SortKey.RECENT.value
    )
    library_parser.add_argument(
        "--group-by",
        dest="group_by",
        choices=[g.value for g in GroupBy],
        default=GroupBy.NONE.value,
    )
    library_parser.add_argument("--pages", type=_positive_int, default=1)

    return parser


def cmd_validate(args: argparse.Namespace) -> int:
    rejected = 0
    for path in args.paths:
        source = SourceFile.from_path(path)
        result = validate_file(source)
        if result.valid:
            kind = "mbox" if result.is_mbox else source.mime_type
            print(f"  OK        {source.name} ({kind}, {format_file_size(source.size)})")
        else:
            rejected += 1
            print(f"  REJECTED  {source.name}: {result.reason}")
    return 1 if rejected else 0


async def cmd_upload(args: argparse.Namespace, settings: EchoIngestorSettings) -> int:
    destination = args.kb or settings.knowledge_base_id
    if not destination:
        print("Error: no knowledge base given (--kb or ECHO_KNOWLEDGE_BASE_ID)", file=sys.stderr)
        return 1

    async with EchoApiClient.from_settings(settings) as client:
        orchestrator = UploadOrchestrator(
            client,
            destination,
            settings,
            self_addresses=args.self_addresses,
            on_change=on_change,
        )
        orchestrator.add(SourceFile.from_path(path) for path in args.paths)
        print(f"Uploading {format_file_size(orchestrator.total_size)}")
        summary = await orchestrator.run()

    print("\n")
    for tracked in orchestrator.files:
        line = f"  {tracked.state.value:10s} {tracked.name}"
        if tracked.error:
            line += f": {tracked.error}"
        elif tracked.parse_stats:
            line += f" ({tracked.parse_stats.messages_emitted} sent messages)"
        print(line)
    print(
        f"\nComplete: {summary.completed} completed, "
        f"{summary.failed} failed, {summary.cancelled} cancelled"
    )
    return 1 if summary.failed or summary.cancelled else 0


async def cmd_parse_mbox(args: argparse.Namespace, settings: EchoIngestorSettings) -> int:
    source = SourceFile.from_path(args.path)
    parser = MboxStreamParser(
        read_chunks(source, settings.mbox_chunk_size_bytes),
        args.self_addresses or settings.self_addresses,
        total_bytes=source.size,
        min_content_length=settings.mbox_min_content_length,
        max_messages=args.limit or settings.mbox_max_messages,
    )

    async for message in parser:
        date = message.date.strftime("%Y-%m-%d") if message.date else "----------"
        print(f"  {date}  {message.subject[:60]:60s} {len(message.text):6d} chars")

    stats = parser.stats
    print(f"\n{stats.messages_seen} seen, {stats.messages_emitted} emitted")
    for reason, count in sorted(stats.skipped_reasons.items()):
        print(f"  skipped {reason}: {count}")
    return 0


async def cmd_library(args: argparse.Namespace, settings: EchoIngestorSettings) -> int:
    async with EchoApiClient.from_settings(settings) as client:
        library = ContentLibraryAggregator(client, feedback=client)
        library.set_sort(SortKey(args.sort))
        library.set_group_by(GroupBy(args.group_by))
        library_filter = LibraryFilter(
            content_type=ContentType(args.content_type) if args.content_type else None,
            platform=args.platform,
            search=args.search,
        )
        # A content type change already fetched the first page.
        await library.set_filter(library_filter)
        pages = 1 if library_filter.content_type else 0

        while pages < args.pages and library.has_more and library.error is None:
            if not await library.load_more():
                break
            pages += 1

    if library.error:
        print(f"Error: {library.error}", file=sys.stderr)
        return 1

    for group in library.groups:
        print(f"\n{group.title} ({len(group.items)})")
        for item in group.items:
            stamp = item.created_at.strftime("%Y-%m-%d")
            platform = item.platform or "-"
            print(f"  {stamp}  {item.content_type.value:9s} {platform:12s} {item.title}")

    stats = library.stats
    print(
        f"\n{stats.total} loaded of ~{library.total_hint}: "
        f"{stats.videos} videos, {stats.written} written, {stats.carousels} carousels"
    )
    return 0


async def _dispatch(args: argparse.Namespace, settings: EchoIngestorSettings) -> int:
    if args.command == "upload":
        return await cmd_upload(args, settings)
    if args.command == "parse-mbox":
        return await cmd_parse_mbox(args, settings)
    return await cmd_library(args, settings)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = EchoIngestorSettings()
    setup_logging(settings.log_level)

    try:
        if args.command == "validate":
            code = cmd_validate(args)
        else:
            code = asyncio.run(_dispatch(args, settings))
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()

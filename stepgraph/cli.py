"""
Command-line interface for stepgraph.

Read-only inspection of a FileCheckpointStore:

Usage:
    stepgraph threads ./threads
    stepgraph history ./threads my-thread
    stepgraph show ./threads my-thread --step 3
    stepgraph interrupt ./threads my-thread

The store path defaults to STEPGRAPH_STORAGE_PATH / ~/.stepgraph/threads
when given as "-".
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from stepgraph.config import get_log_format, get_log_level, get_storage_path
from stepgraph.observability.logging import configure_logging
from stepgraph.storage.checkpoint_store import FileCheckpointStore


def _store(path: str) -> FileCheckpointStore:
    base = get_storage_path() if path == "-" else Path(path)
    return FileCheckpointStore(base)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _error(message: str) -> int:
    print(message, file=sys.stderr)
    return 1


def cmd_threads(args: argparse.Namespace) -> int:
    store = _store(args.path)
    _print_json(store.threads())
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    store = _store(args.path)
    summaries = asyncio.run(store.list_checkpoints(args.thread))
    if not summaries:
        return _error(f"No checkpoints for thread '{args.thread}'")
    _print_json([s.model_dump(mode="json") for s in summaries])
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    store = _store(args.path)
    if args.step is None:
        checkpoint = asyncio.run(store.load_latest(args.thread))
    else:
        checkpoint = asyncio.run(store.load(args.thread, args.step))
    if checkpoint is None:
        where = "latest" if args.step is None else f"step {args.step}"
        return _error(f"No checkpoint ({where}) for thread '{args.thread}'")
    _print_json(checkpoint.model_dump(mode="json"))
    return 0


def cmd_interrupt(args: argparse.Namespace) -> int:
    store = _store(args.path)
    interrupt = asyncio.run(store.load_interrupt(args.thread))
    if interrupt is None:
        return _error(f"Thread '{args.thread}' has no pending interrupt")
    _print_json(interrupt.to_display())
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register the inspection commands."""
    threads_parser = subparsers.add_parser("threads", help="List threads in a store")
    threads_parser.add_argument("path", help="Checkpoint store directory ('-' for default)")
    threads_parser.set_defaults(func=cmd_threads)

    history_parser = subparsers.add_parser("history", help="List a thread's checkpoints")
    history_parser.add_argument("path", help="Checkpoint store directory ('-' for default)")
    history_parser.add_argument("thread", help="Thread ID")
    history_parser.set_defaults(func=cmd_history)

    show_parser = subparsers.add_parser("show", help="Print a checkpoint")
    show_parser.add_argument("path", help="Checkpoint store directory ('-' for default)")
    show_parser.add_argument("thread", help="Thread ID")
    show_parser.add_argument("--step", type=int, default=None, help="Step (default: latest)")
    show_parser.set_defaults(func=cmd_show)

    interrupt_parser = subparsers.add_parser("interrupt", help="Print a pending interrupt")
    interrupt_parser.add_argument("path", help="Checkpoint store directory ('-' for default)")
    interrupt_parser.add_argument("thread", help="Thread ID")
    interrupt_parser.set_defaults(func=cmd_interrupt)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="stepgraph",
        description="stepgraph - Inspect checkpointed graph threads",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: config)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level or get_log_level(), format=get_log_format())

    try:
        return args.func(args)
    except ValueError as e:
        # Invalid thread IDs
        return _error(str(e))


if __name__ == "__main__":
    sys.exit(main())

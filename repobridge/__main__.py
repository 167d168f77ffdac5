"""Entry point for python -m repobridge.

Headless tools for inspecting the bridge without a UI.

Usage:
    # Replay a transcript of backend messages and print the final state
    python -m repobridge replay session.jsonl --json

    # Check that a payload matches what a channel expects
    python -m repobridge check gg://repo/config payload.json

    # Run a worker and log every state change
    python -m repobridge run --path /repo -- gg-worker --stdio

    # Show the effective configuration
    python -m repobridge config
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Iterable

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_MISMATCH = 2


def _setup_logging(args: argparse.Namespace) -> None:
    """Configure logging based on command-line arguments."""
    from repobridge.logging_config import setup_logging

    if args.debug:
        setup_logging(
            level="DEBUG",
            log_to_console=True,
            log_to_file=not args.no_log_file,
        )
    else:
        setup_logging(
            level=args.log_level,
            log_to_console=False,
            log_to_file=not args.no_log_file,
            debug_modules=args.debug_module,
        )


def _print_json(data: Any) -> None:
    """Print data as JSON to stdout."""
    print(json.dumps(data, indent=2, default=str))


def _load_settings(args: argparse.Namespace) -> Any:
    from repobridge.config import load_config

    return load_config(Path(args.config) if args.config else None)


# =============================================================================
# Transcript replay
# =============================================================================


def replay_lines(session: Any, transport: Any, lines: Iterable[str]) -> int:
    """Drive a session from transcript lines, playing the backend.

    Each line is one JSON object:

        {"event": <channel>, "payload": <any>}   backend notification
        {"id": <int>, "result": <any>}           answer to a request
        {"id": <int>, "error": <str>}            failed answer
        {"load": <path | null>}                  frontend asks for a load
        {"close": <reason>}                      worker goes away

    Returns:
        Number of lines applied.
    """
    from repobridge.exceptions import PayloadDecodeError

    applied = 0
    for number, raw in enumerate(lines, start=1):
        text = raw.strip()
        if not text:
            continue
        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            session.report_protocol_error(
                PayloadDecodeError(f"Transcript line {number} is not valid JSON", payload=text, cause=e)
            )
            continue

        if not isinstance(message, dict):
            session.report_protocol_error(
                PayloadDecodeError(f"Transcript line {number} is not an object", payload=message)
            )
            continue

        if "event" in message:
            transport.push_event(message["event"], message.get("payload"))
        elif "id" in message:
            if "error" in message:
                transport.fail(message["id"], str(message["error"]))
            else:
                transport.respond(message["id"], message.get("result"))
        elif "load" in message:
            session.load_repository(message["load"])
        elif "close" in message:
            transport.close(str(message["close"]))
        else:
            session.report_protocol_error(
                PayloadDecodeError(f"Transcript line {number} has no known key", payload=message)
            )
            continue
        applied += 1
    return applied


def _print_snapshot(snapshot: Any) -> None:
    from repobridge.state import describe_config

    print(f"Config:    {describe_config(snapshot.repo_config)}")
    status = snapshot.repo_status
    print(f"Status:    {status.operation_description if status else '-'}")
    selection = snapshot.selection
    print(f"Selection: {selection.id.commit.prefix if selection else '-'}")
    mutation = snapshot.mutation
    if mutation is not None:
        outcome = mutation.error or (type(mutation.result).__name__ if mutation.result else "")
        print(f"Mutation:  {mutation.command} {mutation.status} {outcome}".rstrip())
    if snapshot.pending_commands:
        print(f"Pending:   {', '.join(snapshot.pending_commands)}")
    for error in snapshot.protocol_errors:
        print(f"Protocol error: {error}")


def cmd_replay(args: argparse.Namespace) -> int:
    """Handle replay command."""
    from repobridge.exceptions import ConfigError
    from repobridge.state import RepoSession
    from repobridge.testing import LoopbackTransport

    try:
        settings = _load_settings(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    try:
        with open(args.transcript, encoding="utf-8") as f:
            lines = f.readlines()
    except OSError as e:
        print(f"Error: cannot read transcript: {e}", file=sys.stderr)
        return EXIT_ERROR

    transport = LoopbackTransport()
    with RepoSession(transport, settings) as session:
        replay_lines(session, transport, lines)
        snapshot = session.to_snapshot()

    if args.json:
        _print_json(snapshot.to_dict())
    else:
        _print_snapshot(snapshot)
    return EXIT_MISMATCH if snapshot.protocol_errors else EXIT_OK


# =============================================================================
# Payload check
# =============================================================================


def cmd_check(args: argparse.Namespace) -> int:
    """Handle check command."""
    from repobridge.exceptions import ConfigError, PayloadDecodeError
    from repobridge.messages import (
        MUTATION_RESULT,
        REPO_CONFIG,
        RepoStatus,
        RevHeader,
        decode_payload,
        payload_type_name,
    )

    try:
        settings = _load_settings(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    names = settings.channels
    payload_types = {
        names.repo_config: REPO_CONFIG,
        names.repo_status: RepoStatus,
        names.revision_select: RevHeader,
        "config": REPO_CONFIG,
        "status": RepoStatus,
        "selection": RevHeader,
        "mutation-result": MUTATION_RESULT,
    }
    payload_type = payload_types.get(args.channel)
    if payload_type is None:
        print(f"Error: unknown channel '{args.channel}'", file=sys.stderr)
        return EXIT_ERROR

    try:
        with open(args.file, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        print(f"Error: cannot read payload: {e}", file=sys.stderr)
        return EXIT_ERROR
    except json.JSONDecodeError as e:
        print(f"Mismatch: not valid JSON: {e}", file=sys.stderr)
        return EXIT_MISMATCH

    try:
        value = decode_payload(payload_type, data)
    except PayloadDecodeError as e:
        print(f"Mismatch: {e}", file=sys.stderr)
        return EXIT_MISMATCH

    print(f"OK: {payload_type_name(payload_type)} ({type(value).__name__})")
    return EXIT_OK


# =============================================================================
# Worker run
# =============================================================================


async def cmd_run(args: argparse.Namespace) -> int:
    """Handle run command."""
    from repobridge.exceptions import ConfigError, WorkerSpawnError
    from repobridge.state import RepoSession, StateEvent
    from repobridge.state.events import describe_event
    from repobridge.transport import WorkerProcess

    command = list(args.worker_command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("Error: no worker command given", file=sys.stderr)
        return EXIT_ERROR

    try:
        settings = _load_settings(args)
        worker = WorkerProcess(command, cwd=args.cwd)
        transport = await worker.start()
    except (ConfigError, WorkerSpawnError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    session = RepoSession(transport, settings)
    transport.on_protocol_error = session.report_protocol_error

    def printer(event: StateEvent) -> Any:
        return lambda **kwargs: print(describe_event(event, kwargs), flush=True)

    for event in StateEvent:
        session.subscribe(event, printer(event))

    session.start()
    try:
        if args.path is not None:
            session.load_repository(args.path)
        code = await worker.wait()
    except asyncio.CancelledError:
        await worker.stop()
        raise
    finally:
        session.shutdown()

    if args.json:
        _print_json(session.to_snapshot().to_dict())
    return EXIT_OK if code == 0 else EXIT_ERROR


# =============================================================================
# Config display
# =============================================================================


def cmd_config(args: argparse.Namespace) -> int:
    """Handle config command."""
    from repobridge.config import config_to_dict, get_config_path
    from repobridge.exceptions import ConfigError

    if args.path:
        print(args.config or get_config_path())
        return EXIT_OK

    try:
        settings = _load_settings(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    _print_json(config_to_dict(settings))
    return EXIT_OK


def _run_async(coro: Any) -> int:
    """Run an async coroutine and return exit code."""
    return asyncio.run(coro)


# =============================================================================
# Argument Parser Setup
# =============================================================================


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add common arguments to a parser."""
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )


def _create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="repobridge",
        description="repobridge - reactive state bridge for a version-control backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m repobridge replay session.jsonl
  python -m repobridge check gg://repo/config payload.json
  python -m repobridge run --path /repo -- gg-worker --stdio
  python -m repobridge config --path
""",
    )

    # Global arguments
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging to console",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Set log level (default: INFO)",
    )
    parser.add_argument(
        "--debug-module",
        action="append",
        metavar="MODULE",
        help="Log MODULE (e.g. channel, query, transport) at DEBUG; repeatable",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Disable logging to file",
    )
    parser.add_argument(
        "--config",
        help="Config file to use instead of ~/.config/repobridge/config.json",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # replay
    replay_parser = subparsers.add_parser(
        "replay",
        help="Replay a JSON-lines transcript of backend messages",
    )
    replay_parser.add_argument("transcript", help="Transcript file")
    _add_common_args(replay_parser)

    # check
    check_parser = subparsers.add_parser(
        "check",
        help="Check a JSON payload against a channel's type",
    )
    check_parser.add_argument(
        "channel",
        help="Channel name, or one of: config, status, selection, mutation-result",
    )
    check_parser.add_argument("file", help="File holding one JSON payload")

    # run
    run_parser = subparsers.add_parser(
        "run",
        help="Spawn a worker and log state changes until it exits",
    )
    run_parser.add_argument(
        "--path",
        help="Repository to load once the worker is up",
    )
    run_parser.add_argument(
        "--cwd",
        help="Working directory for the worker",
    )
    run_parser.add_argument(
        "worker_command",
        nargs=argparse.REMAINDER,
        help="Worker command line, after --",
    )
    _add_common_args(run_parser)

    # config
    config_parser = subparsers.add_parser(
        "config",
        help="Show the effective configuration",
    )
    config_parser.add_argument(
        "--path",
        action="store_true",
        help="Print the config file path only",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the repobridge command line."""
    parser = _create_parser()
    args = parser.parse_args(argv)

    _setup_logging(args)

    if args.command == "replay":
        return cmd_replay(args)

    if args.command == "check":
        return cmd_check(args)

    if args.command == "run":
        return _run_async(cmd_run(args))

    if args.command == "config":
        return cmd_config(args)

    parser.print_help()
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())

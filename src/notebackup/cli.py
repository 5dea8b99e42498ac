"""Command line interface: ``notebackup push|pull|sync|init-config``."""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from notebackup import __version__
from notebackup.config_loader import ensure_config, load_hierarchical_config
from notebackup.config_schema import UnifiedConfig, apply_cli_overrides, build_config
from notebackup.exceptions import CollectionUnavailableError, ConfigError
from notebackup.file_handler import validate_directory_path
from notebackup.handles import LocalDirectoryHandle
from notebackup.logger import setup_logging
from notebackup.store import JsonDocumentCollection
from notebackup.sync import (
    BackupEngine,
    format_pull_report,
    format_push_report,
    report_to_json,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PULL_ERRORS = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notebackup",
        description="Back up a note collection to a directory of markdown files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Mirror the collection into a folder
  notebackup push --dir ~/Notes --store ~/.local/share/notebackup/notes.json

  # Bring edits made on disk back into the collection
  notebackup pull --dir ~/Notes --store notes.json

  # Pull then push, reporting as JSON
  notebackup --json sync --dir ~/Notes --store notes.json

  # Create a starter .notebackup/config.yml
  notebackup init-config
        """,
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log record format (default: text)",
    )
    parser.add_argument(
        "--json", action="store_true", help="Print the result as JSON"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"notebackup version {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_target_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--dir", help="Backup directory (overrides config)")
        sub.add_argument("--store", help="JSON document store (overrides config)")
        sub.add_argument("--scope", help="Manifest scope key (overrides config)")

    push = subparsers.add_parser("push", help="Write documents to the backup")
    add_target_args(push)

    pull = subparsers.add_parser("pull", help="Apply backup changes to documents")
    add_target_args(pull)
    pull.add_argument(
        "--read-only",
        action="store_true",
        help="Report what would be created or updated without mutating",
    )
    pull.add_argument(
        "--since-ms",
        type=float,
        help="Skip files unchanged since this epoch-millisecond time",
    )

    sync = subparsers.add_parser("sync", help="Pull, then push")
    add_target_args(sync)
    sync.add_argument("--read-only", action="store_true")

    subparsers.add_parser("init-config", help="Create a starter config file")
    return parser


def load_config(args: argparse.Namespace) -> UnifiedConfig:
    """Merge config files with the command line flags.

    Raises:
        ConfigError: If a config file cannot be parsed or fails validation.
    """
    try:
        unified = build_config(load_hierarchical_config())
        return apply_cli_overrides(
            unified,
            {
                "directory": getattr(args, "dir", None),
                "store": getattr(args, "store", None),
                "scope": getattr(args, "scope", None),
                "read_only": getattr(args, "read_only", False),
            },
        )
    except (yaml.YAMLError, ValidationError, ValueError, FileNotFoundError) as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def _configure_logging(args: argparse.Namespace, unified: UnifiedConfig) -> None:
    setup_logging(
        mode="cli",
        debug=args.debug,
        log_file=args.log_file or unified.logging.file,
        debug_format=args.log_format,
    )
    if not args.debug and "LOG_LEVEL" not in os.environ:
        logging.getLogger().setLevel(
            getattr(logging, unified.logging.level.upper(), logging.INFO)
        )


def _build_engine(
    unified: UnifiedConfig,
) -> tuple[BackupEngine, JsonDocumentCollection]:
    backup = unified.backup
    if not backup.directory:
        raise ConfigError("No backup directory given (use --dir or backup.directory)")
    if not backup.store:
        raise ConfigError("No document store given (use --store or backup.store)")
    try:
        directory = validate_directory_path(backup.directory, create=True)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    collection = JsonDocumentCollection.load(Path(backup.store).expanduser())
    engine = BackupEngine(
        LocalDirectoryHandle(directory),
        collection,
        scope_id=backup.scope,
        can_write=not backup.read_only,
        bidirectional=backup.bidirectional,
        recent_import_window_ms=backup.recent_import_window_ms,
        path_override_ttl_ms=backup.path_override_ttl_ms,
        max_path_overrides=backup.max_path_overrides,
    )
    engine.restore_sync_state(collection.sync_state.get(str(directory), {}))
    return engine, collection


def run_command(args: argparse.Namespace, unified: UnifiedConfig) -> int:
    """Execute a sync command and print its report.

    Returns:
        Process exit status.
    """
    engine, collection = _build_engine(unified)
    push_result = pull_result = None

    if args.command == "push":
        push_result = engine.push()
    elif args.command == "pull":
        pull_result = engine.pull(last_pull_at_ms=args.since_ms)
    else:
        pull_result, push_result = engine.sync()

    # Timestamps are saved with the store; a read-only run leaves it untouched.
    if engine.can_write:
        collection.sync_state[str(engine.handle.path)] = engine.sync_state()
        collection.save()

    if args.json:
        print(json.dumps(report_to_json(push=push_result, pull=pull_result), indent=2))
    else:
        if pull_result is not None:
            print(format_pull_report(pull_result))
        if push_result is not None:
            print(format_push_report(push_result))

    if pull_result is not None and pull_result.errors:
        return EXIT_PULL_ERRORS
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Entry point; returns the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    load_dotenv()

    if args.command == "init-config":
        setup_logging(mode="cli", debug=args.debug, log_file=args.log_file)
        path = ensure_config()
        print(f"Config file: {path}")
        return EXIT_OK

    try:
        unified = load_config(args)
        _configure_logging(args, unified)
        return run_command(args, unified)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except CollectionUnavailableError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_PULL_ERRORS


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()

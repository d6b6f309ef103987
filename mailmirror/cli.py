"""CLI entry point for mailmirror."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .commands import (
    apply_cli_overrides,
    delete_cmd,
    evict_cmd,
    list_folders_cmd,
    list_messages_cmd,
    move_cmd,
    read_message_cmd,
    run_daemon,
    send_cmd,
    set_flag_cmd,
    status_cmd,
    sync_cmd,
)
from .config import load_config
from .errors import StoreError
from .models import Flag

logger = logging.getLogger("mailmirror")

# command name -> (flag, value)
FLAG_COMMANDS = {
    "flag": (Flag.FLAGGED, True),
    "unflag": (Flag.FLAGGED, False),
    "read-mark": (Flag.READ, True),
    "unread": (Flag.READ, False),
}


def add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add common arguments to a parser."""
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=Path("config.toml"),
        help="Path to configuration file",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        help="Override store database path",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Override per-command network timeout in seconds",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )


def add_message_args(parser: argparse.ArgumentParser) -> None:
    """Add account/folder/uid positional arguments to a parser."""
    parser.add_argument("account", help="Account id")
    parser.add_argument("folder", help="Folder name")
    parser.add_argument("uid", type=int, help="Message UID")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        description="Offline-capable mailbox mirror",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_common_args(parser)
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    daemon_parser = subparsers.add_parser("daemon", help="Keep all accounts in sync until interrupted")
    add_common_args(daemon_parser)

    status_parser = subparsers.add_parser("status", help="Show cached folders, failed changes and outbox")
    add_common_args(status_parser)

    folders_parser = subparsers.add_parser("folders", help="List cached folders with counts")
    add_common_args(folders_parser)
    folders_parser.add_argument("account", help="Account id")

    list_parser = subparsers.add_parser("list", help="List cached messages in a folder")
    add_common_args(list_parser)
    list_parser.add_argument("account", help="Account id")
    list_parser.add_argument("folder", help="Folder name")
    list_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum messages to list (default: 50)",
    )

    read_parser = subparsers.add_parser("read", help="Read and display a message")
    add_common_args(read_parser)
    add_message_args(read_parser)

    for name, (flag, value) in FLAG_COMMANDS.items():
        flag_parser = subparsers.add_parser(
            name, help=f"{'Set' if value else 'Clear'} the {flag.value} flag on a message"
        )
        add_common_args(flag_parser)
        add_message_args(flag_parser)

    delete_parser = subparsers.add_parser("delete", help="Delete a message")
    add_common_args(delete_parser)
    add_message_args(delete_parser)

    move_parser = subparsers.add_parser("move", help="Move a message to another folder")
    add_common_args(move_parser)
    add_message_args(move_parser)
    move_parser.add_argument("dest", help="Destination folder")

    send_parser = subparsers.add_parser("send", help="Compose and send a message")
    add_common_args(send_parser)
    send_parser.add_argument("account", help="Account id")
    send_parser.add_argument("--to", action="append", required=True, help="Recipient (repeatable)")
    send_parser.add_argument("--cc", action="append", default=[], help="Cc recipient (repeatable)")
    send_parser.add_argument("--subject", default="", help="Subject line")
    send_parser.add_argument("--body", default="", help="Message text (default: read from stdin)")

    sync_parser = subparsers.add_parser("sync", help="Run one sync pass now")
    add_common_args(sync_parser)
    sync_parser.add_argument("account", help="Account id")
    sync_parser.add_argument("folder", nargs="?", help="Sync only this folder")

    evict_parser = subparsers.add_parser("evict", help="Apply the body cache retention policy")
    add_common_args(evict_parser)

    return parser


def main() -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Show help if no command specified
    if not args.command:
        parser.print_help()
        sys.exit(0)

    if not args.config.exists():
        logger.error(f"Configuration file not found: {args.config}")
        sys.exit(1)

    try:
        config = load_config(args.config)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    config = apply_cli_overrides(config, args)

    account_id = getattr(args, "account", None)
    if account_id is not None:
        try:
            config.get_account(account_id)
        except KeyError:
            logger.error(f"Unknown account: {account_id}")
            sys.exit(1)

    try:
        if args.command == "daemon":
            asyncio.run(run_daemon(config))
        elif args.command == "status":
            asyncio.run(status_cmd(config))
        elif args.command == "folders":
            asyncio.run(list_folders_cmd(config, args.account))
        elif args.command == "list":
            asyncio.run(list_messages_cmd(config, args.account, args.folder, args.limit))
        elif args.command == "read":
            asyncio.run(read_message_cmd(config, args.account, args.folder, args.uid))
        elif args.command in FLAG_COMMANDS:
            flag, value = FLAG_COMMANDS[args.command]
            asyncio.run(set_flag_cmd(config, args.account, args.folder, args.uid, flag, value))
        elif args.command == "delete":
            asyncio.run(delete_cmd(config, args.account, args.folder, args.uid))
        elif args.command == "move":
            asyncio.run(move_cmd(config, args.account, args.folder, args.uid, args.dest))
        elif args.command == "send":
            body = args.body or sys.stdin.read()
            asyncio.run(send_cmd(config, args.account, args.to, args.subject, body, args.cc))
        elif args.command == "sync":
            asyncio.run(sync_cmd(config, args.account, args.folder))
        elif args.command == "evict":
            evict_cmd(config)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except StoreError as e:
        logger.critical(f"Local store failure, cache integrity cannot be assumed: {e}")
        sys.exit(2)


if __name__ == "__main__":
    main()

"""Shared helpers for CLI commands."""

from __future__ import annotations

import argparse
import contextlib
import logging
from collections.abc import AsyncIterator
from datetime import timedelta

from ..config import Config
from ..coordinator import AccountCoordinator
from ..facade import Mailbox
from ..store import MailStore

logger = logging.getLogger("mailmirror")


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Apply command-line overrides to config."""
    if getattr(args, "db_path", None):
        config.store.path = args.db_path
    if getattr(args, "timeout", None):
        config.sync.command_timeout_seconds = args.timeout
    return config


@contextlib.asynccontextmanager
async def open_mailbox(config: Config) -> AsyncIterator[Mailbox]:
    """Open the store and a coordinator for a one-shot command.

    On exit, background replays started by the command are awaited before
    the sessions are closed.
    """
    with MailStore(config.store.path) as store:
        coordinator = AccountCoordinator(config, store)
        try:
            yield Mailbox(coordinator)
            await coordinator.drain()
        finally:
            await coordinator.stop()


def evict_cmd(config: Config) -> None:
    """Apply the body cache retention policy to every folder."""
    max_age = config.store.body_cache_max_age_days
    total = 0
    with MailStore(config.store.path) as store:
        for account in config.accounts:
            for folder in store.list_folders(account.id):
                total += store.evict_bodies(
                    account.id,
                    folder.name,
                    max_bytes=config.store.body_cache_max_bytes,
                    max_age=timedelta(days=max_age) if max_age is not None else None,
                )
    print(f"Evicted {total} cached bodies")

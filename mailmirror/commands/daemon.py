"""Daemon command - keep every account in sync until interrupted."""

from __future__ import annotations

import logging

from ..config import Config
from ..coordinator import AccountCoordinator
from ..store import MailStore

logger = logging.getLogger("mailmirror")


async def run_daemon(config: Config) -> None:
    """Run the sync loops and the outbox sender until cancelled."""
    if not config.accounts:
        logger.error("No accounts configured")
        return

    with MailStore(config.store.path) as store:
        coordinator = AccountCoordinator(config, store)
        try:
            logger.info(f"Starting sync daemon (store: {config.store.path})")
            await coordinator.start()
            await coordinator.wait()
        finally:
            await coordinator.stop()

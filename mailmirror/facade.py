"""Mailbox facade: the one interface a presentation layer talks to.

Reads always come from the local store. Mutations are applied locally at
once and replayed in the background, so no call here waits on the network
except the explicit ``refresh`` and ``fetch_body``.
"""

from __future__ import annotations

import email.utils
import logging
from dataclasses import dataclass

from . import mime
from .coordinator import AccountCoordinator
from .errors import StoreError
from .models import (
    AccountStatus,
    Body,
    Flag,
    FolderDescriptor,
    MessageRecord,
    OutgoingMessage,
    Pending,
    PendingAction,
    SyncResult,
)
from .store import MailStore

logger = logging.getLogger("mailmirror.facade")


@dataclass
class AccountView:
    id: str
    name: str
    email: str
    protocol: str
    status: AccountStatus
    last_error: str | None = None


class Mailbox:
    def __init__(self, coordinator: AccountCoordinator):
        self.coordinator = coordinator

    @property
    def store(self) -> MailStore:
        return self.coordinator.store

    def _message(self, account_id: str, folder: str, uid: int) -> MessageRecord:
        message = self.store.get_message(account_id, folder, uid)
        if message is None:
            raise KeyError(f"No cached message {account_id}/{folder}/{uid}")
        return message

    # Reads

    def list_accounts(self) -> list[AccountView]:
        return [
            AccountView(
                id=account.id,
                name=account.name,
                email=account.email,
                protocol=account.protocol,
                status=self.coordinator.status(account.id),
                last_error=self.coordinator.last_errors.get(account.id),
            )
            for account in self.coordinator.config.accounts
        ]

    def account_status(self, account_id: str) -> AccountStatus:
        return self.coordinator.status(account_id)

    def list_folders(self, account_id: str) -> list[FolderDescriptor]:
        self.coordinator.config.get_account(account_id)
        return self.store.list_folders(account_id)

    def folder_counts(self, account_id: str) -> dict[str, tuple[int, int]]:
        return self.store.folder_counts(account_id)

    def list_messages(self, account_id: str, folder: str) -> list[MessageRecord]:
        """Get the cached snapshot of a folder, newest first."""
        return self.store.list_messages(account_id, folder)

    def failed_messages(self, account_id: str) -> list[MessageRecord]:
        """Messages carrying a change that could not be synced."""
        return self.store.failed_messages(account_id)

    def outbox(self, account_id: str | None = None) -> list[OutgoingMessage]:
        return self.store.list_outgoing(account_id)

    def get_body(self, account_id: str, folder: str, uid: int) -> Body | Pending:
        """Get a cached body, or start fetching it and return Pending.

        Must be called from a running event loop when the body is not cached.
        """
        message = self._message(account_id, folder, uid)
        body = self.store.get_body(account_id, folder, message.epoch, uid)
        if body is not None:
            return body
        self.coordinator.spawn(
            self._fetch_quietly(account_id, folder, uid),
            name=f"body:{account_id}:{folder}:{uid}",
            account_id=account_id,
        )
        logger.debug(f"[{account_id}] {folder}/{uid}: body not cached, fetching")
        return Pending(account_id=account_id, folder=folder, uid=uid)

    async def _fetch_quietly(self, account_id: str, folder: str, uid: int) -> None:
        try:
            await self.fetch_body(account_id, folder, uid)
        except StoreError:
            raise
        except Exception as e:
            logger.warning(f"[{account_id}] {folder}/{uid}: body fetch failed: {e}")

    async def fetch_body(self, account_id: str, folder: str, uid: int) -> Body:
        """Get a body, waiting for the server when it is not cached."""
        return await self.coordinator.engine(account_id).fetch_body(folder, uid)

    async def read_message(self, account_id: str, folder: str, uid: int) -> mime.ParsedMessage:
        """Fetch (if needed) and parse a message for display."""
        body = await self.fetch_body(account_id, folder, uid)
        return mime.parse(body.raw)

    # Mutations

    async def set_flag(
        self, account_id: str, folder: str, uid: int, flag: Flag | str, value: bool
    ) -> PendingAction:
        message = self._message(account_id, folder, uid)
        name = flag.value if isinstance(flag, Flag) else flag
        return await self.coordinator.submit_mutation(
            PendingAction.set_flag(account_id, folder, message.epoch, uid, name, value)
        )

    async def delete(self, account_id: str, folder: str, uid: int) -> PendingAction:
        message = self._message(account_id, folder, uid)
        return await self.coordinator.submit_mutation(
            PendingAction.delete(account_id, folder, message.epoch, uid)
        )

    async def move(self, account_id: str, folder: str, uid: int, target: str) -> PendingAction:
        if target == folder:
            raise ValueError(f"Message is already in {folder}")
        message = self._message(account_id, folder, uid)
        return await self.coordinator.submit_mutation(
            PendingAction.move(account_id, folder, message.epoch, uid, target)
        )

    async def refresh(self, account_id: str, folder: str | None = None) -> list[SyncResult]:
        return await self.coordinator.refresh(account_id, folder)

    # Compose

    async def compose_and_send(self, account_id: str, draft: mime.Draft) -> OutgoingMessage:
        """Queue a draft for sending through the account's SMTP server."""
        account = self.coordinator.config.get_account(account_id)
        if account.smtp is None:
            raise ValueError(f"Account '{account_id}' has no SMTP server configured")
        address = account.email or account.smtp.username
        sender = email.utils.formataddr((account.name, address)) if account.email else address
        message = draft.to_message(sender)
        return await self.coordinator.submit_outgoing(OutgoingMessage(
            account_id=account_id,
            sender=address,
            recipients=draft.recipients,
            raw=message.as_bytes(),
        ))

    async def reply_draft(
        self, account_id: str, folder: str, uid: int, *, reply_all: bool = False
    ) -> mime.Draft:
        account = self.coordinator.config.get_account(account_id)
        parsed = await self.read_message(account_id, folder, uid)
        return mime.reply_to(parsed, reply_all=reply_all, self_addr=account.email)

    async def forward_draft(
        self, account_id: str, folder: str, uid: int, to: list[str] | None = None
    ) -> mime.Draft:
        parsed = await self.read_message(account_id, folder, uid)
        return mime.forward(parsed, to=to)

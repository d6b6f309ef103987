"""Mailbox commands - read the cache and submit changes."""

from __future__ import annotations

import logging

from ..config import Config
from ..errors import MailError
from ..mime import Draft
from ..models import Flag
from .utils import open_mailbox

logger = logging.getLogger("mailmirror")


async def status_cmd(config: Config) -> None:
    """Show accounts, folder counts, failed changes and the outbox."""
    async with open_mailbox(config) as mailbox:
        for account in mailbox.list_accounts():
            print(f"{account.id} ({account.protocol}) {account.email}")
            counts = mailbox.folder_counts(account.id)
            for folder, (total, unread) in sorted(counts.items()):
                print(f"  {folder:<38} {total:>7} {unread:>7} unread")
            failed = mailbox.failed_messages(account.id)
            if failed:
                print(f"  {len(failed)} messages have changes that failed to sync")
        queued = [m for m in mailbox.outbox() if not m.failed]
        failed_sends = [m for m in mailbox.outbox() if m.failed]
        print(f"\nOutbox: {len(queued)} queued, {len(failed_sends)} failed")


async def list_folders_cmd(config: Config, account_id: str) -> None:
    async with open_mailbox(config) as mailbox:
        counts = mailbox.folder_counts(account_id)
        print(f"{'Folder':<40} {'Count':>8} {'Unread':>8}")
        print("-" * 58)
        for folder in mailbox.list_folders(account_id):
            total, unread = counts.get(folder.name, (0, 0))
            print(f"{folder.name:<40} {total:>8} {unread:>8}")


async def list_messages_cmd(config: Config, account_id: str, folder: str, limit: int = 50) -> None:
    """List cached messages in a folder."""
    async with open_mailbox(config) as mailbox:
        messages = mailbox.list_messages(account_id, folder)
        print(f"{'UID':<8} {'':<3} {'From':<30} {'Subject':<50}")
        print("-" * 93)
        for message in messages[:limit]:
            marks = ("N" if not message.is_read else " ") + ("F" if message.is_flagged else " ")
            marks += "!" if message.sync_failed else " "
            from_addr = message.envelope.from_addr[:28]
            subject = message.envelope.subject[:48]
            print(f"{message.uid:<8} {marks:<3} {from_addr:<30} {subject:<50}")
        print(f"\nTotal: {len(messages)} messages (showing up to {limit})")


async def read_message_cmd(config: Config, account_id: str, folder: str, uid: int) -> None:
    """Read and display a message, fetching its body if it is not cached."""
    async with open_mailbox(config) as mailbox:
        try:
            message = await mailbox.read_message(account_id, folder, uid)
        except KeyError:
            logger.error(f"Message UID {uid} not found in {account_id}/{folder}")
            return
        except MailError as e:
            logger.error(f"Cannot fetch message body: {e}")
            return

        print(f"From: {message.from_addr}")
        print(f"To: {', '.join(message.to_addrs)}")
        if message.cc_addrs:
            print(f"Cc: {', '.join(message.cc_addrs)}")
        print(f"Subject: {message.subject}")
        if message.date:
            print(f"Date: {message.date:%a, %d %b %Y %H:%M}")
        print(f"Message-ID: {message.message_id}")
        print("-" * 60)
        print(message.body_text or "(no body)")
        for attachment in message.attachments:
            print(f"[attachment] {attachment.filename} ({attachment.content_type}, {attachment.size} bytes)")


async def set_flag_cmd(
    config: Config, account_id: str, folder: str, uid: int, flag: Flag, value: bool
) -> None:
    async with open_mailbox(config) as mailbox:
        try:
            await mailbox.set_flag(account_id, folder, uid, flag, value)
        except KeyError:
            logger.error(f"Message UID {uid} not found in {account_id}/{folder}")
            return
        logger.info(f"{'Set' if value else 'Cleared'} {flag.value} on {folder}/{uid}")


async def delete_cmd(config: Config, account_id: str, folder: str, uid: int) -> None:
    async with open_mailbox(config) as mailbox:
        try:
            await mailbox.delete(account_id, folder, uid)
        except KeyError:
            logger.error(f"Message UID {uid} not found in {account_id}/{folder}")
            return
        logger.info(f"Deleted {folder}/{uid}")


async def move_cmd(config: Config, account_id: str, folder: str, uid: int, dest: str) -> None:
    async with open_mailbox(config) as mailbox:
        try:
            await mailbox.move(account_id, folder, uid, dest)
        except KeyError:
            logger.error(f"Message UID {uid} not found in {account_id}/{folder}")
            return
        except ValueError as e:
            logger.error(str(e))
            return
        logger.info(f"Moved {folder}/{uid} to {dest}")


async def send_cmd(
    config: Config,
    account_id: str,
    to: list[str],
    subject: str,
    body: str,
    cc: list[str] | None = None,
) -> None:
    """Queue a message and try to send it right away."""
    draft = Draft(to=to, subject=subject, body=body, cc=cc or [])
    async with open_mailbox(config) as mailbox:
        try:
            queued = await mailbox.compose_and_send(account_id, draft)
        except ValueError as e:
            logger.error(str(e))
            return
        await mailbox.coordinator.drain()
        pending = [m for m in mailbox.outbox(account_id) if m.id == queued.id]
    if not pending:
        print(f"Sent message to {', '.join(draft.recipients)}")
    elif pending[0].failed:
        print(f"Sending failed: {pending[0].last_error}")
    else:
        print(f"Message queued for retry: {pending[0].last_error}")


async def sync_cmd(config: Config, account_id: str, folder: str | None = None) -> None:
    """Run one sync pass and print what changed."""
    async with open_mailbox(config) as mailbox:
        try:
            results = await mailbox.refresh(account_id, folder)
        except MailError as e:
            logger.error(f"Sync failed: {e}")
            return
        for result in results:
            status = result.error or (
                f"+{result.added} ~{result.updated} -{result.removed}"
                + (" (full resync)" if result.full_resync else "")
            )
            print(f"{result.folder:<40} {status}")

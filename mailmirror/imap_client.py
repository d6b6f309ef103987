"""IMAP session on top of IMAPClient."""

import logging
from datetime import datetime

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from .config import AccountConfig
from .errors import ActionRejected, ConnectError, MailError, ProtocolError, TransportError
from .mime import decode_mime_header
from .models import (
    Envelope,
    Flag,
    FolderCursor,
    FolderDelta,
    FolderDescriptor,
    FullResyncRequired,
    RemoteMessage,
)
from .session import BaseSession

logger = logging.getLogger("mailmirror.imap")

FETCH_CHUNK = 500

SYSTEM_FLAGS = {
    b"\\seen": Flag.READ.value,
    b"\\flagged": Flag.FLAGGED.value,
    b"\\deleted": Flag.DELETED.value,
    b"\\answered": Flag.ANSWERED.value,
    b"\\draft": Flag.DRAFT.value,
}
IMAP_FLAGS = {
    Flag.READ.value: b"\\Seen",
    Flag.FLAGGED.value: b"\\Flagged",
    Flag.DELETED.value: b"\\Deleted",
    Flag.ANSWERED.value: b"\\Answered",
    Flag.DRAFT.value: b"\\Draft",
}
DELETED = IMAP_FLAGS[Flag.DELETED.value]


def _text(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def from_imap_flags(raw) -> frozenset[str]:
    """Map server flags to local names; keywords pass through verbatim."""
    flags = set()
    for flag in raw or ():
        if isinstance(flag, str):
            flag = flag.encode()
        if flag.lower() == b"\\recent":
            continue
        flags.add(SYSTEM_FLAGS.get(flag.lower(), _text(flag)))
    return frozenset(flags)


def to_imap_flag(flag: str) -> bytes:
    return IMAP_FLAGS.get(flag, flag.encode())


def format_address(address) -> str:
    mailbox = _text(address.mailbox)
    host = _text(address.host)
    addr = f"{mailbox}@{host}" if host else mailbox
    name = decode_mime_header(_text(address.name))
    return f"{name} <{addr}>" if name else addr


def to_envelope(data: dict) -> Envelope:
    """Build an Envelope from a FETCH response item."""
    env = data.get(b"ENVELOPE")
    date = env.date if env is not None else None
    if not isinstance(date, datetime):
        date = data.get(b"INTERNALDATE")
    if env is None:
        return Envelope(date=date, size=int(data.get(b"RFC822.SIZE", 0)))
    return Envelope(
        subject=decode_mime_header(_text(env.subject)),
        from_addr=format_address(env.from_[0]) if env.from_ else "",
        to_addrs=tuple(format_address(a) for a in env.to or ()),
        cc_addrs=tuple(format_address(a) for a in env.cc or ()),
        date=date,
        size=int(data.get(b"RFC822.SIZE", 0)),
        message_id=_text(env.message_id),
    )


def _chunks(uids: list[int], size: int = FETCH_CHUNK):
    for i in range(0, len(uids), size):
        yield uids[i:i + size]


class ImapSession(BaseSession):
    """Serialized IMAP connection for one account."""

    protocol = "imap"

    def __init__(self, account: AccountConfig, *, timeout: float = 60):
        if account.imap is None:
            raise ValueError(f"Account '{account.id}' has no IMAP server")
        super().__init__(account, timeout=timeout)
        self.config = account.imap
        self._client: IMAPClient | None = None
        self._capabilities: frozenset[bytes] = frozenset()

    def _connection(self) -> IMAPClient:
        if self._client is None:
            raise TransportError(f"{self.label}: not connected to IMAP server")
        return self._client

    def _open(self) -> None:
        client = IMAPClient(
            self.config.host,
            port=self.config.port,
            ssl=self.config.use_ssl,
            timeout=self.timeout,
        )
        try:
            client.login(self.config.username, self.config.password)
        except LoginError as e:
            client.shutdown()
            raise ConnectError(f"{self.label}: login failed: {e}") from e
        self._client = client
        self._capabilities = frozenset(c.upper() for c in client.capabilities())

    def _logout(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.logout()

    def _abort(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.shutdown()

    def _translate(self, operation: str, error: Exception) -> MailError:
        if isinstance(error, LoginError):
            return ConnectError(f"{self.label}: {operation}: {error}")
        if isinstance(error, (IMAPClientAbortError, OSError)):
            return TransportError(f"{self.label}: {operation}: {error}")
        if isinstance(error, IMAPClientError):
            return ProtocolError(f"{self.label}: {operation}: {error}")
        return ProtocolError(f"{self.label}: {operation}: unexpected {type(error).__name__}: {error}")

    def has_capability(self, name: str) -> bool:
        return name.upper().encode() in self._capabilities

    # Blocking command bodies

    def _list_folders(self, client: IMAPClient) -> list[FolderDescriptor]:
        return [
            FolderDescriptor(
                name=_text(name),
                delimiter=_text(delimiter) or "/",
                flags=tuple(_text(f) for f in flags),
            )
            for flags, delimiter, name in client.list_folders()
        ]

    def _select(
        self, client: IMAPClient, folder: str, epoch: int | None = None, readonly: bool = False
    ) -> dict:
        info = client.select_folder(folder, readonly=readonly)
        if epoch is not None and int(info[b"UIDVALIDITY"]) != epoch:
            raise ActionRejected(f"{folder}: validity epoch changed from {epoch}")
        return info

    def _require_uid(self, client: IMAPClient, folder: str, uid: int) -> None:
        if not client.search(["UID", str(uid)]):
            raise ActionRejected(f"{folder}/{uid} no longer exists on the server")

    def _fetch_changes(
        self,
        client: IMAPClient,
        folder: str,
        cursor: FolderCursor,
        known: dict[int, frozenset[str]],
    ) -> FolderDelta | FullResyncRequired:
        info = self._select(client, folder, readonly=True)
        epoch = int(info[b"UIDVALIDITY"])
        if cursor.epoch is not None and cursor.epoch != epoch:
            logger.info(f"{self.label}: {folder} UIDVALIDITY {cursor.epoch} -> {epoch}")
            return FullResyncRequired(epoch)

        delta = FolderDelta(epoch=epoch)
        present = set(client.search(["ALL"])) if info.get(b"EXISTS", 0) else set()

        new_uids = sorted(uid for uid in present if uid > cursor.highest_uid)
        for chunk in _chunks(new_uids):
            data = client.fetch(chunk, ["ENVELOPE", "FLAGS", "RFC822.SIZE", "INTERNALDATE"])
            for uid, item in data.items():
                delta.new[uid] = RemoteMessage(
                    uid=uid,
                    envelope=to_envelope(item),
                    flags=from_imap_flags(item.get(b"FLAGS")),
                )

        delta.removed = {uid for uid in known if uid not in present}
        still_there = sorted(uid for uid in known if uid in present and uid not in delta.new)
        for chunk in _chunks(still_there):
            for uid, item in client.fetch(chunk, ["FLAGS"]).items():
                flags = from_imap_flags(item.get(b"FLAGS"))
                if flags != known.get(uid):
                    delta.flag_updates[uid] = flags
        logger.debug(
            f"{self.label}: {folder} +{len(delta.new)} ~{len(delta.flag_updates)} "
            f"-{len(delta.removed)}"
        )
        return delta

    def _fetch_body(self, client: IMAPClient, folder: str, uid: int, epoch: int | None) -> bytes:
        self._select(client, folder, epoch, readonly=True)
        # BODY.PEEK[] leaves \Seen alone
        messages = client.fetch([uid], ["BODY.PEEK[]"])
        if uid not in messages:
            raise ActionRejected(f"{folder}/{uid} no longer exists on the server")
        return messages[uid][b"BODY[]"]

    def _apply_flag(
        self, client: IMAPClient, folder: str, uid: int, flag: str, value: bool, epoch: int | None
    ) -> None:
        self._select(client, folder, epoch)
        self._require_uid(client, folder, uid)
        if value:
            client.add_flags([uid], [to_imap_flag(flag)])
        else:
            client.remove_flags([uid], [to_imap_flag(flag)])

    def _expunge_uid(self, client: IMAPClient, uid: int) -> None:
        """Mark one message \\Deleted and expunge only that message.

        Plain EXPUNGE removes every \\Deleted message in the folder, so without
        UIDPLUS the flag is lifted from the others for the duration and put back.
        """
        client.add_flags([uid], [DELETED])
        if self.has_capability("UIDPLUS"):
            client.expunge([uid])
            return
        others = [u for u in client.search(["DELETED"]) if u != uid]
        if others:
            client.remove_flags(others, [DELETED])
        try:
            client.expunge()
        finally:
            if others:
                client.add_flags(others, [DELETED])

    def _expunge(self, client: IMAPClient, folder: str, uid: int, epoch: int | None) -> None:
        self._select(client, folder, epoch)
        self._require_uid(client, folder, uid)
        self._expunge_uid(client, uid)

    def _move(
        self, client: IMAPClient, folder: str, uid: int, target: str, epoch: int | None
    ) -> None:
        self._select(client, folder, epoch)
        self._require_uid(client, folder, uid)
        if self.has_capability("MOVE"):
            client.move([uid], target)
            return
        client.copy([uid], target)
        self._expunge_uid(client, uid)

    # Async commands

    async def list_folders(self) -> list[FolderDescriptor]:
        return await self._call("list_folders", self._list_folders)

    async def fetch_changes(
        self,
        folder: str,
        cursor: FolderCursor,
        known: dict[int, frozenset[str]] | None = None,
    ) -> FolderDelta | FullResyncRequired:
        """Report what changed in a folder since ``cursor``.

        ``known`` maps locally cached uids to their cached flags; uids missing
        on the server come back in ``removed``, changed flags in
        ``flag_updates``.
        """
        return await self._call(
            f"fetch_changes {folder}", self._fetch_changes, folder, cursor, dict(known or {})
        )

    async def fetch_body(self, folder: str, uid: int, epoch: int | None = None) -> bytes:
        return await self._call(f"fetch_body {folder}/{uid}", self._fetch_body, folder, uid, epoch)

    async def apply_flag(
        self, folder: str, uid: int, flag: str, value: bool, epoch: int | None = None
    ) -> None:
        await self._call(
            f"apply_flag {folder}/{uid}", self._apply_flag, folder, uid, flag, value, epoch
        )

    async def expunge(self, folder: str, uid: int, epoch: int | None = None) -> None:
        await self._call(
            f"expunge {folder}/{uid}", self._expunge, folder, uid, epoch, idempotent=False
        )

    async def move(self, folder: str, uid: int, target: str, epoch: int | None = None) -> None:
        await self._call(
            f"move {folder}/{uid}", self._move, folder, uid, target, epoch, idempotent=False
        )

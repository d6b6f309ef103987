"""Data model shared by the sessions, the store and the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Flag(str, Enum):
    """Well-known message flags. Flag sets may also carry server keywords verbatim."""
    READ = "read"
    FLAGGED = "flagged"
    DELETED = "deleted"
    ANSWERED = "answered"
    DRAFT = "draft"


class ActionKind(str, Enum):
    """Kinds of user mutations that are replayed against the server."""
    SET_FLAG = "set_flag"
    DELETE = "delete"
    MOVE = "move"


class AccountStatus(str, Enum):
    """Per-account indicator shown next to the cached state."""
    SYNCED = "synced"
    SYNCING = "syncing"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class SyncState(str, Enum):
    """Per-folder synchronization state."""
    IDLE = "idle"
    SYNCING = "syncing"
    APPLYING = "applying"
    FULL_RESYNC = "full_resync"
    FAILED = "failed"


@dataclass(frozen=True)
class Envelope:
    subject: str = ""
    from_addr: str = ""
    to_addrs: tuple[str, ...] = ()
    cc_addrs: tuple[str, ...] = ()
    date: datetime | None = None
    size: int = 0
    message_id: str = ""


@dataclass(frozen=True)
class RemoteMessage:
    """A message as reported by the server: metadata plus current flags."""
    uid: int
    envelope: Envelope
    flags: frozenset[str] = frozenset()


@dataclass
class MessageRecord:
    """A cached message, keyed by (account, folder, epoch, uid)."""
    account_id: str
    folder: str
    epoch: int
    uid: int
    envelope: Envelope
    flags: frozenset[str] = frozenset()
    has_body: bool = False
    sync_failed: bool = False
    pending_move: str | None = None

    @property
    def is_read(self) -> bool:
        return Flag.READ.value in self.flags

    @property
    def is_flagged(self) -> bool:
        return Flag.FLAGGED.value in self.flags

    @property
    def is_deleted(self) -> bool:
        return Flag.DELETED.value in self.flags


@dataclass(frozen=True)
class FolderDescriptor:
    name: str
    delimiter: str = "/"
    flags: tuple[str, ...] = ()

    @property
    def selectable(self) -> bool:
        return "\\Noselect" not in self.flags


@dataclass
class FolderCursor:
    """Last committed sync position of a folder.

    ``epoch`` is None until the folder has been synced once.
    """
    epoch: int | None = None
    highest_uid: int = 0
    last_sync: datetime | None = None


@dataclass
class FolderDelta:
    """Difference between the cursor position and the current remote folder."""
    epoch: int
    new: dict[int, RemoteMessage] = field(default_factory=dict)
    flag_updates: dict[int, frozenset[str]] = field(default_factory=dict)
    removed: set[int] = field(default_factory=set)

    @property
    def highest_uid(self) -> int:
        return max(self.new, default=0)


@dataclass(frozen=True)
class FullResyncRequired:
    """Signal that the folder's validity epoch changed and local ids are stale."""
    epoch: int


@dataclass
class PendingAction:
    """A user mutation applied locally but not yet confirmed by the server."""
    account_id: str
    folder: str
    epoch: int
    uid: int
    kind: ActionKind
    flag: str | None = None
    value: bool | None = None
    target: str | None = None
    seq: int | None = None
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None

    @classmethod
    def set_flag(
        cls, account_id: str, folder: str, epoch: int, uid: int, flag: str, value: bool
    ) -> PendingAction:
        return cls(account_id, folder, epoch, uid, ActionKind.SET_FLAG, flag=flag, value=value)

    @classmethod
    def delete(cls, account_id: str, folder: str, epoch: int, uid: int) -> PendingAction:
        return cls(account_id, folder, epoch, uid, ActionKind.DELETE)

    @classmethod
    def move(
        cls, account_id: str, folder: str, epoch: int, uid: int, target: str
    ) -> PendingAction:
        return cls(account_id, folder, epoch, uid, ActionKind.MOVE, target=target)

    def describe(self) -> str:
        if self.kind == ActionKind.SET_FLAG:
            return f"set {self.flag}={self.value} on {self.folder}/{self.uid}"
        if self.kind == ActionKind.MOVE:
            return f"move {self.folder}/{self.uid} to {self.target}"
        return f"delete {self.folder}/{self.uid}"


@dataclass
class OutgoingMessage:
    """A composed message waiting in the outbox."""
    account_id: str
    sender: str
    recipients: list[str]
    raw: bytes
    id: int | None = None
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    failed: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True)
class Body:
    raw: bytes
    fetched_at: datetime | None = None


@dataclass(frozen=True)
class Pending:
    """Returned instead of a Body while the body is being fetched."""
    account_id: str
    folder: str
    uid: int


@dataclass
class SyncResult:
    """Outcome of one folder sync cycle."""
    account_id: str
    folder: str
    epoch: int | None = None
    added: int = 0
    updated: int = 0
    removed: int = 0
    replayed: int = 0
    full_resync: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

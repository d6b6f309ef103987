"""SQLite-backed local mailbox store.

Every table is keyed by ``account_id`` first, then ``folder``, then
``(epoch, uid)``, so dropping an account, a folder or a stale epoch is a
single prefix delete on the primary key.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from datetime import datetime, timedelta
from pathlib import Path

from .errors import StoreError
from .models import (
    ActionKind,
    Body,
    Envelope,
    Flag,
    FolderCursor,
    FolderDelta,
    FolderDescriptor,
    MessageRecord,
    OutgoingMessage,
    PendingAction,
)

logger = logging.getLogger("mailmirror.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS folders (
    account_id TEXT NOT NULL,
    folder TEXT NOT NULL,
    delimiter TEXT,
    folder_flags TEXT,
    epoch INTEGER,
    highest_uid INTEGER NOT NULL DEFAULT 0,
    last_sync TEXT,
    PRIMARY KEY (account_id, folder)
);

CREATE TABLE IF NOT EXISTS messages (
    account_id TEXT NOT NULL,
    folder TEXT NOT NULL,
    epoch INTEGER NOT NULL,
    uid INTEGER NOT NULL,
    subject TEXT,
    from_addr TEXT,
    to_addrs TEXT,
    cc_addrs TEXT,
    date TEXT,
    size INTEGER DEFAULT 0,
    message_id TEXT,
    flags TEXT NOT NULL DEFAULT '[]',
    sync_failed INTEGER NOT NULL DEFAULT 0,
    pending_move TEXT,
    PRIMARY KEY (account_id, folder, epoch, uid)
);

CREATE TABLE IF NOT EXISTS bodies (
    account_id TEXT NOT NULL,
    folder TEXT NOT NULL,
    epoch INTEGER NOT NULL,
    uid INTEGER NOT NULL,
    raw BLOB NOT NULL,
    size INTEGER NOT NULL,
    fetched_at TEXT NOT NULL,
    PRIMARY KEY (account_id, folder, epoch, uid)
);

CREATE TABLE IF NOT EXISTS pending_actions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL,
    folder TEXT NOT NULL,
    epoch INTEGER NOT NULL,
    uid INTEGER NOT NULL,
    kind TEXT NOT NULL,
    flag TEXT,
    value INTEGER,
    target TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pop3_ids (
    account_id TEXT NOT NULL,
    uidl TEXT NOT NULL,
    local_id INTEGER NOT NULL,
    PRIMARY KEY (account_id, uidl)
);

CREATE TABLE IF NOT EXISTS outgoing (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    recipients TEXT NOT NULL,
    raw BLOB NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TEXT,
    last_error TEXT,
    failed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pending_folder ON pending_actions(account_id, folder, seq);
CREATE INDEX IF NOT EXISTS idx_bodies_fetched ON bodies(account_id, folder, fetched_at);
CREATE INDEX IF NOT EXISTS idx_outgoing_account ON outgoing(account_id);
"""

NAMESPACED_TABLES = ("folders", "messages", "bodies", "pending_actions", "pop3_ids", "outgoing")


def _dump_flags(flags: Iterable[str]) -> str:
    return json.dumps(sorted(flags))


def _load_flags(raw: str | None) -> frozenset[str]:
    return frozenset(json.loads(raw)) if raw else frozenset()


def _dump_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _load_time(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def _with_flag(flags: frozenset[str], flag: str, value: bool) -> frozenset[str]:
    return flags | {flag} if value else flags - {flag}


class MailStore:
    """Local mailbox cache with connection management.

    Calls are synchronous and never touch the network. Writes are serialized
    by an internal lock and each public mutator is a single sqlite
    transaction. Any sqlite failure surfaces as StoreError.

    Can be used as a context manager:

        with MailStore(path) as store:
            messages = store.list_messages("work", "INBOX")
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def __enter__(self) -> MailStore:
        self.connect()
        self.init_schema()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def connect(self) -> None:
        """Open database connection."""
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store {self.path}: {e}") from e
        self._conn.row_factory = sqlite3.Row

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            StoreError: If the store is not connected
        """
        if self._conn is None:
            raise StoreError("Store not connected")
        return self._conn

    def init_schema(self) -> None:
        with self._guard("init_schema"):
            self.conn.executescript(SCHEMA)
            self.conn.commit()

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except sqlite3.Error as e:
                logger.error(f"Store operation '{operation}' failed: {e}")
                raise StoreError(f"{operation}: {e}") from e

    @contextlib.contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a block as one transaction; commit on success, roll back on error."""
        with self._guard(operation):
            conn = self.conn
            with conn:
                yield conn

    # Folders

    def upsert_folders(self, account_id: str, folders: list[FolderDescriptor]) -> list[str]:
        """Record the server's folder list, dropping folders that disappeared.

        Returns:
            Names of folders that were removed locally
        """
        names = {f.name for f in folders}
        with self._transaction("upsert_folders") as conn:
            existing = {
                row["folder"]
                for row in conn.execute(
                    "SELECT folder FROM folders WHERE account_id = ?", (account_id,)
                )
            }
            for folder in folders:
                conn.execute(
                    """
                    INSERT INTO folders (account_id, folder, delimiter, folder_flags)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(account_id, folder) DO UPDATE SET
                        delimiter = excluded.delimiter,
                        folder_flags = excluded.folder_flags
                    """,
                    (account_id, folder.name, folder.delimiter, json.dumps(list(folder.flags))),
                )
            gone = sorted(existing - names)
            for name in gone:
                for table in ("folders", "messages", "bodies", "pending_actions"):
                    conn.execute(
                        f"DELETE FROM {table} WHERE account_id = ? AND folder = ?",
                        (account_id, name),
                    )
        if gone:
            logger.info(f"[{account_id}] Dropped folders no longer on server: {', '.join(gone)}")
        return gone

    def ensure_folder(self, account_id: str, folder: str) -> None:
        with self._transaction("ensure_folder") as conn:
            conn.execute(
                "INSERT OR IGNORE INTO folders (account_id, folder) VALUES (?, ?)",
                (account_id, folder),
            )

    def list_folders(self, account_id: str) -> list[FolderDescriptor]:
        with self._guard("list_folders"):
            rows = self.conn.execute(
                "SELECT * FROM folders WHERE account_id = ? ORDER BY folder", (account_id,)
            ).fetchall()
        return [
            FolderDescriptor(
                name=row["folder"],
                delimiter=row["delimiter"] or "/",
                flags=tuple(json.loads(row["folder_flags"])) if row["folder_flags"] else (),
            )
            for row in rows
        ]

    def get_cursor(self, account_id: str, folder: str) -> FolderCursor:
        with self._guard("get_cursor"):
            row = self.conn.execute(
                "SELECT epoch, highest_uid, last_sync FROM folders WHERE account_id = ? AND folder = ?",
                (account_id, folder),
            ).fetchone()
        if row is None:
            return FolderCursor()
        return FolderCursor(
            epoch=row["epoch"],
            highest_uid=row["highest_uid"],
            last_sync=_load_time(row["last_sync"]),
        )

    def folder_counts(self, account_id: str) -> dict[str, tuple[int, int]]:
        """Get (total, unread) counts per folder for the current epochs."""
        with self._guard("folder_counts"):
            rows = self.conn.execute(
                """
                SELECT m.folder, m.flags FROM messages m
                JOIN folders f ON f.account_id = m.account_id
                    AND f.folder = m.folder AND f.epoch = m.epoch
                WHERE m.account_id = ? AND m.pending_move IS NULL
                """,
                (account_id,),
            ).fetchall()
        counts: dict[str, tuple[int, int]] = {}
        for row in rows:
            total, unread = counts.get(row["folder"], (0, 0))
            read = Flag.READ.value in _load_flags(row["flags"])
            counts[row["folder"]] = (total + 1, unread + (0 if read else 1))
        return counts

    # Messages

    def _row_to_message(self, row: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            account_id=row["account_id"],
            folder=row["folder"],
            epoch=row["epoch"],
            uid=row["uid"],
            envelope=Envelope(
                subject=row["subject"] or "",
                from_addr=row["from_addr"] or "",
                to_addrs=tuple(json.loads(row["to_addrs"] or "[]")),
                cc_addrs=tuple(json.loads(row["cc_addrs"] or "[]")),
                date=_load_time(row["date"]),
                size=row["size"] or 0,
                message_id=row["message_id"] or "",
            ),
            flags=_load_flags(row["flags"]),
            has_body=bool(row["has_body"]),
            sync_failed=bool(row["sync_failed"]),
            pending_move=row["pending_move"],
        )

    def list_messages(
        self, account_id: str, folder: str, *, include_hidden: bool = False
    ) -> list[MessageRecord]:
        """Get the cached messages of a folder, newest first.

        Args:
            include_hidden: Also return messages with a pending move out of the folder
        """
        query = """
            SELECT m.*, b.uid IS NOT NULL AS has_body FROM messages m
            JOIN folders f ON f.account_id = m.account_id
                AND f.folder = m.folder AND f.epoch = m.epoch
            LEFT JOIN bodies b ON b.account_id = m.account_id AND b.folder = m.folder
                AND b.epoch = m.epoch AND b.uid = m.uid
            WHERE m.account_id = ? AND m.folder = ?
        """
        if not include_hidden:
            query += " AND m.pending_move IS NULL"
        query += " ORDER BY m.date DESC, m.uid DESC"
        with self._guard("list_messages"):
            rows = self.conn.execute(query, (account_id, folder)).fetchall()
        return [self._row_to_message(row) for row in rows]

    def get_message(self, account_id: str, folder: str, uid: int) -> MessageRecord | None:
        """Get a cached message of the folder's current epoch."""
        with self._guard("get_message"):
            row = self.conn.execute(
                """
                SELECT m.*, b.uid IS NOT NULL AS has_body FROM messages m
                JOIN folders f ON f.account_id = m.account_id
                    AND f.folder = m.folder AND f.epoch = m.epoch
                LEFT JOIN bodies b ON b.account_id = m.account_id AND b.folder = m.folder
                    AND b.epoch = m.epoch AND b.uid = m.uid
                WHERE m.account_id = ? AND m.folder = ? AND m.uid = ?
                """,
                (account_id, folder, uid),
            ).fetchone()
        return self._row_to_message(row) if row else None

    def known_flags(self, account_id: str, folder: str) -> dict[int, frozenset[str]]:
        """Get uid -> flags for every cached message of the folder's current epoch."""
        with self._guard("known_flags"):
            rows = self.conn.execute(
                """
                SELECT m.uid, m.flags FROM messages m
                JOIN folders f ON f.account_id = m.account_id
                    AND f.folder = m.folder AND f.epoch = m.epoch
                WHERE m.account_id = ? AND m.folder = ?
                """,
                (account_id, folder),
            ).fetchall()
        return {row["uid"]: _load_flags(row["flags"]) for row in rows}

    def _pending_overlay(
        self, conn: sqlite3.Connection, account_id: str, folder: str, epoch: int
    ) -> dict[int, list[tuple[str, bool]]]:
        """Flag changes of still-queued actions, in submission order, per uid."""
        overlay: dict[int, list[tuple[str, bool]]] = {}
        rows = conn.execute(
            """
            SELECT uid, kind, flag, value FROM pending_actions
            WHERE account_id = ? AND folder = ? AND epoch = ? AND kind != ?
            ORDER BY seq
            """,
            (account_id, folder, epoch, ActionKind.MOVE.value),
        )
        for row in rows:
            if row["kind"] == ActionKind.DELETE.value:
                change = (Flag.DELETED.value, True)
            else:
                change = (row["flag"], bool(row["value"]))
            overlay.setdefault(row["uid"], []).append(change)
        return overlay

    @staticmethod
    def _overlaid(flags: frozenset[str], changes: list[tuple[str, bool]] | None) -> frozenset[str]:
        for flag, value in changes or ():
            flags = _with_flag(flags, flag, value)
        return flags

    def apply_delta(
        self,
        account_id: str,
        folder: str,
        delta: FolderDelta,
        *,
        last_sync: datetime | None = None,
        confirmed: Iterable[PendingAction] = (),
    ) -> tuple[int, int, int]:
        """Apply a folder delta and advance the cursor in one transaction.

        Removals are applied before flag updates, which are applied before
        insertions. Flags of actions still in the queue are laid over the
        incoming values so an unconfirmed local change stays visible.
        ``confirmed`` actions, acknowledged by the server earlier in the same
        cycle, are overlaid too and then leave the queue in this transaction:
        the delta may have been observed from a snapshot older than the ack.
        Applying the same delta twice leaves the same state as applying it once.

        Returns:
            Tuple of (added, updated, removed) counts
        """
        last_sync = last_sync or datetime.now()
        with self._transaction("apply_delta") as conn:
            row = conn.execute(
                "SELECT epoch FROM folders WHERE account_id = ? AND folder = ?",
                (account_id, folder),
            ).fetchone()
            if row is not None and row["epoch"] is not None and row["epoch"] != delta.epoch:
                raise ValueError(
                    f"Delta epoch {delta.epoch} does not match stored epoch {row['epoch']} "
                    f"for {account_id}/{folder}; reset the folder first"
                )
            overlay = self._pending_overlay(conn, account_id, folder, delta.epoch)
            key = (account_id, folder, delta.epoch)

            removed = 0
            for uid in sorted(delta.removed):
                cursor = conn.execute(
                    "DELETE FROM messages WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?",
                    (*key, uid),
                )
                conn.execute(
                    "DELETE FROM bodies WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?",
                    (*key, uid),
                )
                removed += cursor.rowcount

            updated = 0
            for uid, flags in sorted(delta.flag_updates.items()):
                cursor = conn.execute(
                    """
                    UPDATE messages SET flags = ?
                    WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?
                    """,
                    (_dump_flags(self._overlaid(flags, overlay.get(uid))), *key, uid),
                )
                updated += cursor.rowcount

            added = 0
            for uid, message in sorted(delta.new.items()):
                env = message.envelope
                flags = self._overlaid(message.flags, overlay.get(uid))
                cursor = conn.execute(
                    """
                    INSERT INTO messages
                    (account_id, folder, epoch, uid, subject, from_addr, to_addrs,
                     cc_addrs, date, size, message_id, flags)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, folder, epoch, uid) DO UPDATE SET
                        subject = excluded.subject,
                        from_addr = excluded.from_addr,
                        to_addrs = excluded.to_addrs,
                        cc_addrs = excluded.cc_addrs,
                        date = excluded.date,
                        size = excluded.size,
                        message_id = excluded.message_id,
                        flags = excluded.flags
                    """,
                    (
                        *key,
                        uid,
                        env.subject,
                        env.from_addr,
                        json.dumps(list(env.to_addrs)),
                        json.dumps(list(env.cc_addrs)),
                        _dump_time(env.date),
                        env.size,
                        env.message_id,
                        _dump_flags(flags),
                    ),
                )
                added += cursor.rowcount

            conn.execute(
                """
                INSERT INTO folders (account_id, folder, epoch, highest_uid, last_sync)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id, folder) DO UPDATE SET
                    epoch = excluded.epoch,
                    highest_uid = MAX(folders.highest_uid, excluded.highest_uid),
                    last_sync = excluded.last_sync
                """,
                (account_id, folder, delta.epoch, delta.highest_uid, _dump_time(last_sync)),
            )
            for action in confirmed:
                self._complete(conn, action)
        return added, updated, removed

    def reset_folder(self, account_id: str, folder: str, epoch: int) -> int:
        """Discard everything cached for a folder and restart it under a new epoch.

        Pending actions keyed to the old epoch are dropped: their uids no
        longer name the same messages.

        Returns:
            Number of pending actions dropped
        """
        with self._transaction("reset_folder") as conn:
            args = (account_id, folder)
            conn.execute("DELETE FROM messages WHERE account_id = ? AND folder = ?", args)
            conn.execute("DELETE FROM bodies WHERE account_id = ? AND folder = ?", args)
            dropped = conn.execute(
                "DELETE FROM pending_actions WHERE account_id = ? AND folder = ? AND epoch != ?",
                (*args, epoch),
            ).rowcount
            conn.execute(
                """
                INSERT INTO folders (account_id, folder, epoch, highest_uid)
                VALUES (?, ?, ?, 0)
                ON CONFLICT(account_id, folder) DO UPDATE SET
                    epoch = excluded.epoch, highest_uid = 0, last_sync = NULL
                """,
                (*args, epoch),
            )
        if dropped:
            logger.warning(
                f"[{account_id}] {folder}: dropped {dropped} pending actions from a stale epoch"
            )
        return dropped

    def set_local_flag(
        self, account_id: str, folder: str, uid: int, flag: str, value: bool
    ) -> MessageRecord:
        """Change a flag that is tracked locally only (no server round-trip)."""
        with self._transaction("set_local_flag") as conn:
            message = self._require_message(conn, account_id, folder, uid)
            conn.execute(
                """
                UPDATE messages SET flags = ?
                WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?
                """,
                (_dump_flags(_with_flag(message.flags, flag, value)), account_id, folder, message.epoch, uid),
            )
        return self.get_message(account_id, folder, uid)  # type: ignore[return-value]

    def _require_message(
        self, conn: sqlite3.Connection, account_id: str, folder: str, uid: int
    ) -> MessageRecord:
        row = conn.execute(
            """
            SELECT m.*, 0 AS has_body FROM messages m
            JOIN folders f ON f.account_id = m.account_id
                AND f.folder = m.folder AND f.epoch = m.epoch
            WHERE m.account_id = ? AND m.folder = ? AND m.uid = ?
            """,
            (account_id, folder, uid),
        ).fetchone()
        if row is None:
            raise KeyError(f"No cached message {account_id}/{folder}/{uid}")
        return self._row_to_message(row)

    # Bodies

    def store_body(
        self, account_id: str, folder: str, epoch: int, uid: int, raw: bytes,
        *, fetched_at: datetime | None = None,
    ) -> None:
        with self._transaction("store_body") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO bodies (account_id, folder, epoch, uid, raw, size, fetched_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (account_id, folder, epoch, uid, raw, len(raw), _dump_time(fetched_at or datetime.now())),
            )

    def get_body(self, account_id: str, folder: str, epoch: int, uid: int) -> Body | None:
        with self._guard("get_body"):
            row = self.conn.execute(
                """
                SELECT raw, fetched_at FROM bodies
                WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?
                """,
                (account_id, folder, epoch, uid),
            ).fetchone()
        if row is None:
            return None
        return Body(raw=bytes(row["raw"]), fetched_at=_load_time(row["fetched_at"]))

    def evict_bodies(
        self,
        account_id: str,
        folder: str,
        *,
        max_bytes: int | None = None,
        max_age: timedelta | None = None,
        now: datetime | None = None,
    ) -> int:
        """Evict cached bodies, oldest-fetched first.

        Only body bytes are removed; metadata, flags and pending actions stay.

        Args:
            max_bytes: Keep at most this many body bytes for the folder
            max_age: Evict bodies fetched longer ago than this

        Returns:
            Number of bodies evicted
        """
        now = now or datetime.now()
        evicted = 0
        with self._transaction("evict_bodies") as conn:
            if max_age is not None:
                evicted += conn.execute(
                    "DELETE FROM bodies WHERE account_id = ? AND folder = ? AND fetched_at < ?",
                    (account_id, folder, _dump_time(now - max_age)),
                ).rowcount
            if max_bytes is not None:
                rows = conn.execute(
                    """
                    SELECT epoch, uid, size FROM bodies
                    WHERE account_id = ? AND folder = ?
                    ORDER BY fetched_at DESC, uid DESC
                    """,
                    (account_id, folder),
                ).fetchall()
                kept = 0
                for row in rows:
                    kept += row["size"]
                    if kept <= max_bytes:
                        continue
                    conn.execute(
                        """
                        DELETE FROM bodies
                        WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?
                        """,
                        (account_id, folder, row["epoch"], row["uid"]),
                    )
                    evicted += 1
        if evicted:
            logger.debug(f"[{account_id}] {folder}: evicted {evicted} cached bodies")
        return evicted

    # Pending actions

    def _row_to_action(self, row: sqlite3.Row) -> PendingAction:
        return PendingAction(
            account_id=row["account_id"],
            folder=row["folder"],
            epoch=row["epoch"],
            uid=row["uid"],
            kind=ActionKind(row["kind"]),
            flag=row["flag"],
            value=None if row["value"] is None else bool(row["value"]),
            target=row["target"],
            seq=row["seq"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=_load_time(row["created_at"]),
        )

    def submit_action(self, action: PendingAction) -> PendingAction:
        """Apply a mutation to the cache and queue it for replay, atomically.

        Raises:
            KeyError: If the message is not cached under the action's epoch
        """
        with self._transaction("submit_action") as conn:
            message = self._require_message(conn, action.account_id, action.folder, action.uid)
            if message.epoch != action.epoch:
                raise KeyError(
                    f"Message {action.folder}/{action.uid} is not in epoch {action.epoch}"
                )
            key = (action.account_id, action.folder, action.epoch, action.uid)
            if action.kind == ActionKind.SET_FLAG:
                if action.flag is None or action.value is None:
                    raise ValueError("set_flag action needs a flag and a value")
                flags = _with_flag(message.flags, action.flag, action.value)
                conn.execute(
                    """
                    UPDATE messages SET flags = ?, sync_failed = 0
                    WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?
                    """,
                    (_dump_flags(flags), *key),
                )
            elif action.kind == ActionKind.DELETE:
                flags = message.flags | {Flag.DELETED.value}
                conn.execute(
                    """
                    UPDATE messages SET flags = ?, sync_failed = 0
                    WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?
                    """,
                    (_dump_flags(flags), *key),
                )
            else:
                if not action.target:
                    raise ValueError("move action needs a target folder")
                conn.execute(
                    """
                    UPDATE messages SET pending_move = ?, sync_failed = 0
                    WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?
                    """,
                    (action.target, *key),
                )
            created_at = datetime.now()
            cursor = conn.execute(
                """
                INSERT INTO pending_actions
                (account_id, folder, epoch, uid, kind, flag, value, target, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    *key,
                    action.kind.value,
                    action.flag,
                    None if action.value is None else int(action.value),
                    action.target,
                    _dump_time(created_at),
                ),
            )
        action.seq = cursor.lastrowid
        action.created_at = created_at
        return action

    def pending_actions(
        self, account_id: str, folder: str | None = None
    ) -> list[PendingAction]:
        """Get queued actions in ascending submission order."""
        query = "SELECT * FROM pending_actions WHERE account_id = ?"
        params: tuple = (account_id,)
        if folder is not None:
            query += " AND folder = ?"
            params += (folder,)
        with self._guard("pending_actions"):
            rows = self.conn.execute(query + " ORDER BY seq", params).fetchall()
        return [self._row_to_action(row) for row in rows]

    def _forget_message(self, conn: sqlite3.Connection, action: PendingAction) -> None:
        key = (action.account_id, action.folder, action.epoch, action.uid)
        conn.execute(
            "DELETE FROM messages WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?", key
        )
        conn.execute(
            "DELETE FROM bodies WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?", key
        )

    def _complete(self, conn: sqlite3.Connection, action: PendingAction) -> None:
        conn.execute("DELETE FROM pending_actions WHERE seq = ?", (action.seq,))
        if action.kind in (ActionKind.DELETE, ActionKind.MOVE):
            self._forget_message(conn, action)

    def complete_actions(self, actions: Iterable[PendingAction]) -> None:
        """Remove actions the server confirmed. Confirmed deletes/moves drop the local copy."""
        with self._transaction("complete_actions") as conn:
            for action in actions:
                self._complete(conn, action)

    def discard_action(self, action: PendingAction) -> None:
        """Drop an action the server rejected as moot (the message no longer exists)."""
        with self._transaction("discard_action") as conn:
            conn.execute("DELETE FROM pending_actions WHERE seq = ?", (action.seq,))
            if action.kind in (ActionKind.DELETE, ActionKind.MOVE):
                self._forget_message(conn, action)

    def record_attempt(self, action: PendingAction, error: str) -> int:
        """Count a failed replay attempt.

        Returns:
            The updated attempt count
        """
        with self._transaction("record_attempt") as conn:
            conn.execute(
                "UPDATE pending_actions SET attempts = attempts + 1, last_error = ? WHERE seq = ?",
                (error, action.seq),
            )
            row = conn.execute(
                "SELECT attempts FROM pending_actions WHERE seq = ?", (action.seq,)
            ).fetchone()
        action.attempts = row["attempts"] if row else action.attempts + 1
        action.last_error = error
        return action.attempts

    def abandon_action(self, action: PendingAction, error: str) -> None:
        """Give up on an action and mark its message as failed to sync."""
        with self._transaction("abandon_action") as conn:
            conn.execute("DELETE FROM pending_actions WHERE seq = ?", (action.seq,))
            conn.execute(
                """
                UPDATE messages SET sync_failed = 1, pending_move = NULL
                WHERE account_id = ? AND folder = ? AND epoch = ? AND uid = ?
                """,
                (action.account_id, action.folder, action.epoch, action.uid),
            )
        logger.error(
            f"[{action.account_id}] Abandoned pending action ({action.describe()}) "
            f"after {action.attempts} attempts: {error}"
        )

    def failed_messages(self, account_id: str) -> list[MessageRecord]:
        with self._guard("failed_messages"):
            rows = self.conn.execute(
                """
                SELECT m.*, 0 AS has_body FROM messages m
                WHERE m.account_id = ? AND m.sync_failed = 1
                ORDER BY m.folder, m.uid
                """,
                (account_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    # POP3 identifiers

    def pop3_local_ids(self, account_id: str, uidls: Iterable[str]) -> dict[str, int]:
        """Map POP3 UIDL strings to stable local integer ids, allocating new ones.

        ``uidls`` is the complete server listing. UIDLs no longer listed are
        forgotten; their ids are never handed out again.
        """
        listed = list(uidls)
        result: dict[str, int] = {}
        with self._transaction("pop3_local_ids") as conn:
            known = {
                row["uidl"]: row["local_id"]
                for row in conn.execute(
                    "SELECT uidl, local_id FROM pop3_ids WHERE account_id = ?", (account_id,)
                )
            }
            (highest,) = conn.execute(
                "SELECT MAX(highest_uid) FROM folders WHERE account_id = ?", (account_id,)
            ).fetchone()
            next_id = max(max(known.values(), default=0), highest or 0) + 1
            gone = set(known) - set(listed)
            conn.executemany(
                "DELETE FROM pop3_ids WHERE account_id = ? AND uidl = ?",
                [(account_id, uidl) for uidl in gone],
            )
            for uidl in listed:
                if uidl not in known:
                    conn.execute(
                        "INSERT INTO pop3_ids (account_id, uidl, local_id) VALUES (?, ?, ?)",
                        (account_id, uidl, next_id),
                    )
                    known[uidl] = next_id
                    next_id += 1
                result[uidl] = known[uidl]
        return result

    def pop3_uidl(self, account_id: str, local_id: int) -> str | None:
        with self._guard("pop3_uidl"):
            row = self.conn.execute(
                "SELECT uidl FROM pop3_ids WHERE account_id = ? AND local_id = ?",
                (account_id, local_id),
            ).fetchone()
        return row["uidl"] if row else None

    # Outgoing messages

    def _row_to_outgoing(self, row: sqlite3.Row) -> OutgoingMessage:
        return OutgoingMessage(
            id=row["id"],
            account_id=row["account_id"],
            sender=row["sender"],
            recipients=json.loads(row["recipients"]),
            raw=bytes(row["raw"]),
            attempts=row["attempts"],
            next_attempt_at=_load_time(row["next_attempt_at"]),
            last_error=row["last_error"],
            failed=bool(row["failed"]),
            created_at=_load_time(row["created_at"]),
        )

    def enqueue_outgoing(self, message: OutgoingMessage) -> OutgoingMessage:
        created_at = datetime.now()
        with self._transaction("enqueue_outgoing") as conn:
            cursor = conn.execute(
                """
                INSERT INTO outgoing (account_id, sender, recipients, raw, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    message.account_id,
                    message.sender,
                    json.dumps(message.recipients),
                    message.raw,
                    _dump_time(created_at),
                ),
            )
        message.id = cursor.lastrowid
        message.created_at = created_at
        return message

    def due_outgoing(self, now: datetime | None = None) -> list[OutgoingMessage]:
        """Get unsent, not-failed messages whose retry time has come."""
        now = now or datetime.now()
        with self._guard("due_outgoing"):
            rows = self.conn.execute(
                """
                SELECT * FROM outgoing
                WHERE failed = 0 AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                ORDER BY id
                """,
                (_dump_time(now),),
            ).fetchall()
        return [self._row_to_outgoing(row) for row in rows]

    def list_outgoing(self, account_id: str | None = None) -> list[OutgoingMessage]:
        query = "SELECT * FROM outgoing"
        params: tuple = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        with self._guard("list_outgoing"):
            rows = self.conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_outgoing(row) for row in rows]

    def next_outgoing_due(self) -> datetime | None:
        with self._guard("next_outgoing_due"):
            row = self.conn.execute(
                "SELECT MIN(next_attempt_at) AS due FROM outgoing WHERE failed = 0"
            ).fetchone()
        return _load_time(row["due"]) if row else None

    def complete_outgoing(self, message_id: int) -> None:
        with self._transaction("complete_outgoing") as conn:
            conn.execute("DELETE FROM outgoing WHERE id = ?", (message_id,))

    def reschedule_outgoing(self, message_id: int, error: str, next_attempt_at: datetime) -> None:
        with self._transaction("reschedule_outgoing") as conn:
            conn.execute(
                """
                UPDATE outgoing SET attempts = attempts + 1, last_error = ?, next_attempt_at = ?
                WHERE id = ?
                """,
                (error, _dump_time(next_attempt_at), message_id),
            )

    def fail_outgoing(self, message_id: int, error: str) -> None:
        with self._transaction("fail_outgoing") as conn:
            conn.execute(
                "UPDATE outgoing SET attempts = attempts + 1, last_error = ?, failed = 1 WHERE id = ?",
                (error, message_id),
            )

    # Accounts

    def delete_account(self, account_id: str) -> None:
        """Delete the whole namespace of an account."""
        with self._transaction("delete_account") as conn:
            for table in NAMESPACED_TABLES:
                conn.execute(f"DELETE FROM {table} WHERE account_id = ?", (account_id,))
        logger.info(f"[{account_id}] Deleted local store namespace")

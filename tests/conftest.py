"""Shared test fixtures."""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from mailmirror.config import AccountConfig, Config, ServerConfig, StoreConfig, SyncConfig
from mailmirror.errors import ActionRejected
from mailmirror.models import (
    Envelope,
    Flag,
    FolderCursor,
    FolderDelta,
    FolderDescriptor,
    FullResyncRequired,
    RemoteMessage,
)
from mailmirror.store import MailStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_store(temp_dir):
    """Create a connected test store."""
    store = MailStore(temp_dir / "test.db")
    store.connect()
    store.init_schema()
    yield store
    store.close()


@pytest.fixture
def imap_account():
    return AccountConfig(
        id="work",
        name="Work",
        email="me@example.com",
        imap=ServerConfig(host="imap.example.com", port=993, username="me@example.com", password="pw"),
        smtp=ServerConfig(host="smtp.example.com", port=465, username="me@example.com", password="pw"),
    )


@pytest.fixture
def pop3_account():
    return AccountConfig(
        id="home",
        email="me@home.example",
        pop3=ServerConfig(host="pop.home.example", port=995, username="me", password="pw"),
    )


@pytest.fixture
def sample_config(temp_dir, imap_account, pop3_account):
    """Create a sample configuration for testing."""
    return Config(
        accounts=[imap_account, pop3_account],
        store=StoreConfig(path=str(temp_dir / "test.db")),
        sync=SyncConfig(),
    )


@pytest.fixture
def sample_config_toml(temp_dir, monkeypatch):
    """Create a sample TOML config file."""
    # Password comes from the environment
    monkeypatch.setenv("MAILMIRROR_WORK_IMAP_PASSWORD", "secret")

    config_path = temp_dir / "config.toml"
    config_path.write_text('''
[[accounts]]
id = "work"
name = "Work"
email = "me@example.com"
sync_interval_seconds = 120
folders = ["INBOX", "Archive"]

[accounts.imap]
host = "imap.test.com"
username = "me@test.com"

[accounts.smtp]
host = "smtp.test.com"
port = 587
username = "me@test.com"
password = "smtp-secret"

[[accounts]]
id = "home"

[accounts.pop3]
host = "pop.test.com"
username = "me"
password = "pop-secret"

[store]
path = "mirror.db"
body_cache_max_bytes = 1000

[sync]
command_timeout_seconds = 15
max_action_attempts = 3
''')
    return config_path


def envelope(subject="Hello", from_addr="alice@example.com", date=None, size=100):
    return Envelope(
        subject=subject,
        from_addr=from_addr,
        to_addrs=("me@example.com",),
        date=date or datetime(2024, 5, 1, 12, 0),
        size=size,
        message_id=f"<{subject.replace(' ', '.')}@example.com>",
    )


def remote(uid, flags=(), subject=None):
    return RemoteMessage(uid=uid, envelope=envelope(subject or f"Message {uid}"), flags=frozenset(flags))


def delta(epoch, new=(), flag_updates=None, removed=()):
    """Build a FolderDelta from remote messages."""
    return FolderDelta(
        epoch=epoch,
        new={m.uid: m for m in new},
        flag_updates=dict(flag_updates or {}),
        removed=set(removed),
    )


class FakeServerFolder:
    def __init__(self, epoch, messages=None):
        self.epoch = epoch
        # uid -> set of flags
        self.messages: dict[int, set[str]] = {uid: set(flags) for uid, flags in (messages or {}).items()}


class FakeSession:
    """In-memory IMAP-like server implementing the session contract.

    ``calls`` records every command in order; ``fail_next`` maps a command
    name to an exception raised once on its next call.
    """

    multiplexed = False

    def __init__(self, folders=None):
        self.folders: dict[str, FakeServerFolder] = folders or {}
        self.calls: list[tuple] = []
        self.fail_next: dict[str, Exception] = {}
        self.fail_always: dict[str, Exception] = {}
        self.closed = False
        # Optional hook awaited inside fetch_changes
        self.fetch_gate = None
        # Flags reported for uids, overriding the server state (stale snapshots)
        self.stale_flags: dict[int, set[str]] = {}

    def _maybe_fail(self, name):
        if name in self.fail_always:
            raise self.fail_always[name]
        if name in self.fail_next:
            raise self.fail_next.pop(name)

    async def connect(self):
        self.calls.append(("connect",))
        self._maybe_fail("connect")

    async def list_folders(self):
        self.calls.append(("list_folders",))
        self._maybe_fail("list_folders")
        return [FolderDescriptor(name=name) for name in self.folders]

    async def fetch_changes(self, folder, cursor: FolderCursor, known=None):
        self.calls.append(("fetch_changes", folder))
        self._maybe_fail("fetch_changes")
        if self.fetch_gate is not None:
            await self.fetch_gate()
        server = self.folders[folder]
        if cursor.epoch is not None and cursor.epoch != server.epoch:
            return FullResyncRequired(server.epoch)
        known = known or {}
        result = FolderDelta(epoch=server.epoch)
        for uid, flags in sorted(server.messages.items()):
            reported = frozenset(self.stale_flags.get(uid, flags))
            if uid > cursor.highest_uid:
                result.new[uid] = remote(uid, reported)
            elif uid in known and known[uid] != reported:
                result.flag_updates[uid] = reported
        result.removed = {uid for uid in known if uid not in server.messages}
        return result

    async def fetch_body(self, folder, uid, epoch=None):
        self.calls.append(("fetch_body", folder, uid))
        self._maybe_fail("fetch_body")
        if uid not in self.folders[folder].messages:
            raise ActionRejected("gone")
        return f"Subject: Message {uid}\r\n\r\nBody of {uid}\r\n".encode()

    def _check(self, folder, uid, epoch):
        server = self.folders[folder]
        if epoch is not None and epoch != server.epoch:
            raise ActionRejected("epoch changed")
        if uid not in server.messages:
            raise ActionRejected("gone")
        return server

    async def apply_flag(self, folder, uid, flag, value, epoch=None):
        self.calls.append(("apply_flag", folder, uid, flag, value))
        self._maybe_fail("apply_flag")
        server = self._check(folder, uid, epoch)
        if value:
            server.messages[uid].add(flag)
        else:
            server.messages[uid].discard(flag)

    async def expunge(self, folder, uid, epoch=None):
        self.calls.append(("expunge", folder, uid))
        server = self._check(folder, uid, epoch)
        del server.messages[uid]
        self._maybe_fail("expunge")

    async def move(self, folder, uid, target, epoch=None):
        self.calls.append(("move", folder, uid, target))
        self._maybe_fail("move")
        server = self._check(folder, uid, epoch)
        flags = server.messages.pop(uid)
        dest = self.folders[target]
        dest.messages[max(dest.messages, default=0) + 1] = flags

    async def close(self, grace=0):
        self.calls.append(("close", grace))
        self.closed = True

    def commands(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def fake_server():
    return FakeSession({
        "INBOX": FakeServerFolder(epoch=7, messages={1: set(), 2: {Flag.READ.value}}),
        "Archive": FakeServerFolder(epoch=3),
    })

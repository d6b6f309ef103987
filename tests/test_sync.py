"""Tests for the synchronization engine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeServerFolder, envelope

from mailmirror.config import StoreConfig, SyncConfig
from mailmirror.errors import (
    ActionRejected,
    ConnectError,
    InvalidStateError,
    ProtocolError,
    TransportError,
)
from mailmirror.models import Flag, FullResyncRequired, PendingAction, SyncState
from mailmirror.pop3_client import POP3_EPOCH, POP3_FOLDER, Pop3Session
from mailmirror.sync import Pop3SyncEngine, SyncEngine, create_engine

READ = Flag.READ.value


@pytest.fixture
def engine(imap_account, test_store, fake_server):
    return SyncEngine(imap_account, test_store, fake_server, SyncConfig(), StoreConfig())


def uids(store, folder="INBOX", account_id="work"):
    return sorted(m.uid for m in store.list_messages(account_id, folder))


class TestFolderCycle:
    @pytest.mark.asyncio
    async def test_initial_sync(self, engine, test_store):
        result = await engine.sync_folder("INBOX")

        assert result.ok
        assert result.epoch == 7
        assert result.added == 2
        assert uids(test_store) == [1, 2]
        assert test_store.get_message("work", "INBOX", 2).is_read
        assert engine.state("INBOX") == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_incremental_changes(self, engine, test_store, fake_server):
        await engine.sync_folder("INBOX")
        inbox = fake_server.folders["INBOX"]
        inbox.messages[3] = set()
        del inbox.messages[1]
        inbox.messages[2] = set()

        result = await engine.sync_folder("INBOX")

        assert (result.added, result.updated, result.removed) == (1, 1, 1)
        assert uids(test_store) == [2, 3]
        assert not test_store.get_message("work", "INBOX", 2).is_read

    @pytest.mark.asyncio
    async def test_epoch_change_replaces_folder(self, engine, test_store, fake_server):
        fake_server.folders["INBOX"] = FakeServerFolder(epoch=1, messages={101: set(), 102: set()})
        await engine.sync_folder("INBOX")
        assert uids(test_store) == [101, 102]
        test_store.submit_action(PendingAction.set_flag("work", "INBOX", 1, 101, READ, True))

        # Server switches epoch while we are offline
        fake_server.folders["INBOX"] = FakeServerFolder(epoch=2, messages={1: set(), 2: set(), 3: set()})
        result = await engine.sync_folder("INBOX")

        assert result.full_resync
        assert result.epoch == 2
        assert uids(test_store) == [1, 2, 3]
        assert {m.epoch for m in test_store.list_messages("work", "INBOX")} == {2}
        assert test_store.pending_actions("work") == []
        # The old-epoch action was refused, not applied to the new uid space
        assert all(flags == set() for flags in fake_server.folders["INBOX"].messages.values())
        assert test_store.get_cursor("work", "INBOX").epoch == 2

    @pytest.mark.asyncio
    async def test_epoch_changing_twice_is_protocol_error(self, engine, test_store):
        await engine.sync_folder("INBOX")
        engine.session.fetch_changes = AsyncMock(side_effect=[FullResyncRequired(8), FullResyncRequired(9)])

        with pytest.raises(ProtocolError, match="changed again"):
            await engine.sync_folder("INBOX")
        assert engine.state("INBOX") == SyncState.FAILED

    @pytest.mark.asyncio
    async def test_retired_engine_writes_nothing(self, engine, test_store, fake_server):
        entered, release = asyncio.Event(), asyncio.Event()

        async def gate():
            entered.set()
            await release.wait()

        fake_server.fetch_gate = gate
        cycle = asyncio.create_task(engine.sync_folder("INBOX"))
        await asyncio.wait_for(entered.wait(), 1)

        engine.retire()
        release.set()

        with pytest.raises(InvalidStateError, match="removed"):
            await cycle
        assert test_store.list_folders("work") == []
        assert uids(test_store) == []

    @pytest.mark.asyncio
    async def test_failure_leaves_folder_failed_until_recovered(self, engine, fake_server):
        fake_server.fail_next["fetch_changes"] = TransportError("connection reset")

        with pytest.raises(TransportError):
            await engine.sync_folder("INBOX")
        assert engine.state("INBOX") == SyncState.FAILED

        with pytest.raises(InvalidStateError):
            await engine.sync_folder("INBOX")

        assert engine.recover() == ["INBOX"]
        result = await engine.sync_folder("INBOX")
        assert result.ok

    def test_illegal_transition(self, engine):
        with pytest.raises(InvalidStateError, match="illegal sync transition"):
            engine._transition("INBOX", SyncState.APPLYING)

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_failed(self, engine):
        engine.session.fetch_changes = AsyncMock(side_effect=RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            await engine.sync_folder("INBOX")
        assert engine.state("INBOX") == SyncState.FAILED


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_refresh_runs_one_cycle(self, engine, fake_server):
        release = asyncio.Event()
        fake_server.fetch_gate = release.wait

        first = asyncio.create_task(engine.sync_folder("INBOX"))
        await asyncio.sleep(0)
        second = asyncio.create_task(engine.sync_folder("INBOX"))
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second)

        assert len(fake_server.commands("fetch_changes")) == 1
        assert results[0] is results[1]

    @pytest.mark.asyncio
    async def test_joined_callers_share_the_error(self, engine, fake_server):
        release = asyncio.Event()

        async def failing_gate():
            await release.wait()
            raise TransportError("timed out")

        fake_server.fetch_gate = failing_gate
        first = asyncio.create_task(engine.sync_folder("INBOX"))
        await asyncio.sleep(0)
        second = asyncio.create_task(engine.sync_folder("INBOX"))
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second, return_exceptions=True)

        assert all(isinstance(r, TransportError) for r in results)
        assert len(fake_server.commands("fetch_changes")) == 1

    @pytest.mark.asyncio
    async def test_folders_are_serialized_without_multiplexing(self, engine, fake_server):
        active = []
        overlap = []

        async def gate():
            active.append(1)
            if len(active) > 1:
                overlap.append(True)
            await asyncio.sleep(0)
            active.pop()

        fake_server.fetch_gate = gate
        await asyncio.gather(engine.sync_folder("INBOX"), engine.sync_folder("Archive"))

        assert overlap == []
        assert len(fake_server.commands("fetch_changes")) == 2


class TestReplay:
    @pytest.mark.asyncio
    async def test_flag_changes_replay_in_order(self, engine, test_store, fake_server):
        await engine.sync_folder("INBOX")
        test_store.submit_action(PendingAction.set_flag("work", "INBOX", 7, 1, READ, True))
        test_store.submit_action(PendingAction.set_flag("work", "INBOX", 7, 1, READ, False))

        result = await engine.sync_folder("INBOX")

        assert result.replayed == 2
        assert fake_server.commands("apply_flag") == [
            ("apply_flag", "INBOX", 1, READ, True),
            ("apply_flag", "INBOX", 1, READ, False),
        ]
        assert fake_server.folders["INBOX"].messages[1] == set()
        assert not test_store.get_message("work", "INBOX", 1).is_read
        assert test_store.pending_actions("work") == []

    @pytest.mark.asyncio
    async def test_offline_flag_survives_stale_snapshot(self, engine, test_store, fake_server):
        fake_server.folders["INBOX"].messages[55] = set()
        await engine.sync_folder("INBOX")

        # Marked read while offline
        test_store.submit_action(PendingAction.set_flag("work", "INBOX", 7, 55, READ, True))
        assert test_store.get_message("work", "INBOX", 55).is_read

        # Replay succeeds but the listing still shows the old flags
        fake_server.stale_flags[55] = set()
        await engine.sync_folder("INBOX")

        assert test_store.get_message("work", "INBOX", 55).is_read
        assert test_store.pending_actions("work") == []

        # The next listing is current and agrees
        fake_server.stale_flags.clear()
        await engine.sync_folder("INBOX")
        assert test_store.get_message("work", "INBOX", 55).is_read
        assert fake_server.folders["INBOX"].messages[55] == {READ}

    @pytest.mark.asyncio
    async def test_delete_timeout_converges(self, engine, test_store, fake_server):
        await engine.sync_folder("INBOX")
        test_store.submit_action(PendingAction.delete("work", "INBOX", 7, 1))
        # Server performs the expunge but the reply is lost
        fake_server.fail_next["expunge"] = TransportError("expunge timed out")

        with pytest.raises(TransportError):
            await engine.sync_folder("INBOX")
        [action] = test_store.pending_actions("work")
        assert action.attempts == 1
        assert test_store.get_message("work", "INBOX", 1).is_deleted

        engine.recover()
        await engine.sync_folder("INBOX")

        assert test_store.pending_actions("work") == []
        assert test_store.get_message("work", "INBOX", 1) is None
        assert 1 not in fake_server.folders["INBOX"].messages

    @pytest.mark.asyncio
    async def test_rejected_action_is_dropped(self, engine, test_store, fake_server):
        await engine.sync_folder("INBOX")
        test_store.submit_action(PendingAction.set_flag("work", "INBOX", 7, 2, "flagged", True))
        del fake_server.folders["INBOX"].messages[2]

        result = await engine.sync_folder("INBOX")

        assert result.ok
        assert result.replayed == 0
        assert test_store.pending_actions("work") == []
        assert test_store.get_message("work", "INBOX", 2) is None

    @pytest.mark.asyncio
    async def test_move_replays_and_hides(self, engine, test_store, fake_server):
        await engine.sync_folder("INBOX")
        test_store.submit_action(PendingAction.move("work", "INBOX", 7, 1, "Archive"))

        await engine.sync_folder("INBOX")
        await engine.sync_folder("Archive")

        assert uids(test_store) == [2]
        assert uids(test_store, "Archive") == [1]
        assert fake_server.commands("move") == [("move", "INBOX", 1, "Archive")]

    @pytest.mark.asyncio
    async def test_confirmed_actions_kept_when_later_action_fails(self, engine, test_store, fake_server):
        await engine.sync_folder("INBOX")
        test_store.submit_action(PendingAction.set_flag("work", "INBOX", 7, 1, READ, True))
        test_store.submit_action(PendingAction.set_flag("work", "INBOX", 7, 2, "flagged", True))
        calls = []
        original = fake_server.apply_flag

        async def flaky(folder, uid, flag, value, epoch=None):
            calls.append(uid)
            if uid == 2:
                raise TransportError("lost")
            await original(folder, uid, flag, value, epoch=epoch)

        fake_server.apply_flag = flaky

        with pytest.raises(TransportError):
            await engine.sync_folder("INBOX")

        [remaining] = test_store.pending_actions("work")
        assert remaining.uid == 2
        assert calls == [1, 2]
        assert test_store.get_message("work", "INBOX", 1).is_read

    @pytest.mark.asyncio
    async def test_abandon_after_max_attempts(self, engine, test_store, fake_server):
        await engine.sync_folder("INBOX")
        test_store.submit_action(PendingAction.set_flag("work", "INBOX", 7, 1, "flagged", True))
        fake_server.fail_always["apply_flag"] = TransportError("server busy")

        for _ in range(5):
            with pytest.raises(TransportError):
                await engine.sync_folder("INBOX")
            engine.recover()

        assert test_store.pending_actions("work") == []
        assert [m.uid for m in test_store.failed_messages("work")] == [1]
        assert engine.take_abandoned() == 1
        assert engine.take_abandoned() == 0

        del fake_server.fail_always["apply_flag"]
        result = await engine.sync_folder("INBOX")
        assert result.ok
        assert len(fake_server.commands("apply_flag")) == 5


class TestSyncAccount:
    @pytest.mark.asyncio
    async def test_syncs_every_folder(self, engine, test_store):
        results = await engine.sync_account()

        assert [r.folder for r in results] == ["INBOX", "Archive"]
        assert [f.name for f in test_store.list_folders("work")] == ["Archive", "INBOX"]

    @pytest.mark.asyncio
    async def test_respects_configured_folders(self, engine, test_store):
        engine.account.folders = ["Archive"]
        results = await engine.sync_account()
        assert [r.folder for r in results] == ["Archive"]

    @pytest.mark.asyncio
    async def test_drops_folders_gone_from_server(self, engine, test_store, fake_server):
        await engine.sync_account()
        del fake_server.folders["Archive"]

        await engine.sync_account()

        assert [f.name for f in test_store.list_folders("work")] == ["INBOX"]

    @pytest.mark.asyncio
    async def test_protocol_error_in_one_folder_is_recorded(self, engine, fake_server):
        fake_server.fail_next["fetch_changes"] = ProtocolError("bad response")

        results = await engine.sync_account()

        assert results[0].error == "bad response"
        assert results[1].ok

    @pytest.mark.asyncio
    async def test_connect_error_ends_pass(self, engine, fake_server):
        fake_server.fail_next["list_folders"] = ConnectError("auth failed")
        with pytest.raises(ConnectError):
            await engine.sync_account()


class TestBodies:
    @pytest.mark.asyncio
    async def test_fetch_once_then_cached(self, engine, test_store, fake_server):
        await engine.sync_folder("INBOX")

        body = await engine.fetch_body("INBOX", 1)
        again = await engine.fetch_body("INBOX", 1)

        assert b"Body of 1" in body.raw
        assert again.raw == body.raw
        assert len(fake_server.commands("fetch_body")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_fetches_coalesce(self, engine, fake_server):
        await engine.sync_folder("INBOX")
        release = asyncio.Event()
        original = fake_server.fetch_body

        async def slow(folder, uid, epoch=None):
            await release.wait()
            return await original(folder, uid, epoch=epoch)

        fake_server.fetch_body = slow
        first = asyncio.create_task(engine.fetch_body("INBOX", 2))
        await asyncio.sleep(0)
        second = asyncio.create_task(engine.fetch_body("INBOX", 2))
        await asyncio.sleep(0)
        release.set()
        bodies = await asyncio.gather(first, second)

        assert bodies[0] is bodies[1]
        assert len(fake_server.commands("fetch_body")) == 1

    @pytest.mark.asyncio
    async def test_unknown_message(self, engine):
        with pytest.raises(KeyError):
            await engine.fetch_body("INBOX", 99)

    @pytest.mark.asyncio
    async def test_eviction_after_fetch(self, imap_account, test_store, fake_server):
        engine = SyncEngine(
            imap_account, test_store, fake_server, SyncConfig(),
            StoreConfig(body_cache_max_bytes=40, body_cache_max_age_days=None),
        )
        await engine.sync_folder("INBOX")
        await engine.fetch_body("INBOX", 1)
        await engine.fetch_body("INBOX", 2)

        assert test_store.get_body("work", "INBOX", 7, 2) is not None
        assert test_store.get_body("work", "INBOX", 7, 1) is None


class FakePop3:
    """In-memory POP3 mailbox: uidl -> raw message."""

    multiplexed = False

    def __init__(self, messages):
        self.messages = dict(messages)
        self.calls = []

    async def list_messages(self):
        self.calls.append(("list_messages",))
        return {uidl: len(raw) for uidl, raw in self.messages.items()}

    async def fetch_headers(self, uidl):
        self.calls.append(("fetch_headers", uidl))
        return envelope(subject=f"Subject {uidl}")

    async def fetch_body(self, uidl):
        self.calls.append(("fetch_body", uidl))
        return self.messages[uidl]

    async def delete(self, uidl):
        self.calls.append(("delete", uidl))
        if uidl not in self.messages:
            raise ActionRejected("no such message")
        del self.messages[uidl]

    async def close(self, grace=0):
        pass


class TestPop3Engine:
    @pytest.fixture
    def pop3(self):
        return FakePop3({"abc": b"Subject: a\r\n\r\nA", "def": b"Subject: d\r\n\r\nDD"})

    @pytest.fixture
    def pop3_engine(self, pop3_account, test_store, pop3):
        return Pop3SyncEngine(pop3_account, test_store, pop3, SyncConfig(), StoreConfig())

    @pytest.mark.asyncio
    async def test_sync_maps_uidls(self, pop3_engine, test_store, pop3):
        [result] = await pop3_engine.sync_account()

        assert result.folder == POP3_FOLDER
        assert result.epoch == POP3_EPOCH
        messages = {m.uid: m for m in test_store.list_messages("home", POP3_FOLDER)}
        assert sorted(messages) == [1, 2]
        assert messages[1].envelope.subject == "Subject abc"
        assert messages[2].envelope.size == len(pop3.messages["def"])

    @pytest.mark.asyncio
    async def test_headers_fetched_once(self, pop3_engine, pop3):
        await pop3_engine.sync_account()
        await pop3_engine.sync_account()

        headers = [c for c in pop3.calls if c[0] == "fetch_headers"]
        assert headers == [("fetch_headers", "abc"), ("fetch_headers", "def")]

    @pytest.mark.asyncio
    async def test_removed_on_server(self, pop3_engine, test_store, pop3):
        await pop3_engine.sync_account()
        del pop3.messages["abc"]

        [result] = await pop3_engine.sync_account()

        assert result.removed == 1
        assert uids(test_store, POP3_FOLDER, "home") == [2]

    @pytest.mark.asyncio
    async def test_delete_replays_by_uidl(self, pop3_engine, test_store, pop3):
        await pop3_engine.sync_account()
        test_store.submit_action(PendingAction.delete("home", POP3_FOLDER, POP3_EPOCH, 2))

        await pop3_engine.sync_account()

        assert ("delete", "def") in pop3.calls
        assert uids(test_store, POP3_FOLDER, "home") == [1]
        assert test_store.pending_actions("home") == []

    @pytest.mark.asyncio
    async def test_body_fetched_by_uidl(self, pop3_engine, pop3):
        await pop3_engine.sync_account()
        body = await pop3_engine.fetch_body(POP3_FOLDER, 1)
        assert body.raw == pop3.messages["abc"]

    @pytest.mark.asyncio
    async def test_non_delete_action_not_replayable(self, pop3_engine, test_store):
        with pytest.raises(ValueError):
            await pop3_engine._send_action(
                PendingAction.set_flag("home", POP3_FOLDER, POP3_EPOCH, 1, READ, True)
            )


class TestCreateEngine:
    def test_imap(self, imap_account, test_store):
        engine = create_engine(imap_account, test_store, SyncConfig(command_timeout_seconds=7))
        assert type(engine) is SyncEngine
        assert engine.session.timeout == 7

    def test_pop3(self, pop3_account, test_store):
        engine = create_engine(pop3_account, test_store)
        assert isinstance(engine, Pop3SyncEngine)
        assert isinstance(engine.session, Pop3Session)

    def test_multiplexed_session_skips_cycle_lock(self, imap_account, test_store):
        session = MagicMock(multiplexed=True)
        engine = SyncEngine(imap_account, test_store, session)
        assert engine._cycle_lock is None

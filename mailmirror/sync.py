"""Synchronization engine: reconciles the local store with a protocol session."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from datetime import datetime, timedelta

from .config import AccountConfig, StoreConfig, SyncConfig
from .errors import (
    ActionRejected,
    ConnectError,
    InvalidStateError,
    MailError,
    ProtocolError,
    StoreError,
    TransportError,
)
from .imap_client import ImapSession
from .models import (
    ActionKind,
    Body,
    FolderDelta,
    FullResyncRequired,
    MessageRecord,
    PendingAction,
    RemoteMessage,
    SyncResult,
    SyncState,
)
from .pop3_client import POP3_EPOCH, POP3_FOLDER, Pop3Session
from .session import MailSession
from .store import MailStore

logger = logging.getLogger("mailmirror.sync")

FOLDER_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.SYNCING}),
    SyncState.SYNCING: frozenset({SyncState.APPLYING, SyncState.FULL_RESYNC, SyncState.FAILED}),
    SyncState.FULL_RESYNC: frozenset({SyncState.APPLYING, SyncState.FAILED}),
    SyncState.APPLYING: frozenset({SyncState.IDLE, SyncState.FAILED}),
    SyncState.FAILED: frozenset({SyncState.IDLE}),
}


class SyncEngine:
    """Keeps one account's folders in the store in step with the server.

    Each folder runs the cycle ``IDLE -> SYNCING -> (APPLYING | FULL_RESYNC)
    -> IDLE``. A failed cycle leaves the folder ``FAILED`` until ``recover()``
    is called, which the coordinator does after its backoff delay.

    Concurrent requests for the same folder share one cycle. When the
    session is not multiplexed, cycles of different folders are queued.
    """

    def __init__(
        self,
        account: AccountConfig,
        store: MailStore,
        session: MailSession | Pop3Session,
        sync_config: SyncConfig | None = None,
        store_config: StoreConfig | None = None,
    ):
        self.account = account
        self.store = store
        self.session = session
        self.sync_config = sync_config or SyncConfig()
        self.store_config = store_config or StoreConfig()
        self._states: dict[str, SyncState] = {}
        self._inflight: dict[str, asyncio.Future[SyncResult]] = {}
        self._body_fetches: dict[tuple[str, int], asyncio.Future[Body]] = {}
        self._cycle_lock = None if getattr(session, "multiplexed", False) else asyncio.Lock()
        self.abandoned = 0
        self.retired = False

    @property
    def account_id(self) -> str:
        return self.account.id

    # Folder state

    def state(self, folder: str) -> SyncState:
        return self._states.get(folder, SyncState.IDLE)

    def _transition(self, folder: str, new_state: SyncState) -> None:
        current = self.state(folder)
        if new_state not in FOLDER_TRANSITIONS[current]:
            raise InvalidStateError(
                f"[{self.account_id}] {folder}: illegal sync transition "
                f"{current.value} -> {new_state.value}"
            )
        logger.debug(f"[{self.account_id}] {folder}: {current.value} -> {new_state.value}")
        self._states[folder] = new_state

    def recover(self, folder: str | None = None) -> list[str]:
        """Return FAILED folders to IDLE so they can be synced again.

        Returns:
            Folders that were recovered
        """
        folders = [folder] if folder is not None else list(self._states)
        recovered = []
        for name in folders:
            if self.state(name) == SyncState.FAILED:
                self._transition(name, SyncState.IDLE)
                recovered.append(name)
        return recovered

    def retire(self) -> None:
        """Refuse further local writes; the account is being removed."""
        self.retired = True

    def _check_active(self) -> None:
        if self.retired:
            raise InvalidStateError(f"[{self.account_id}] Account has been removed")

    def take_abandoned(self) -> int:
        """Get and reset the count of actions abandoned since the last call."""
        count, self.abandoned = self.abandoned, 0
        return count

    # Sync cycles

    async def sync_folder(self, folder: str) -> SyncResult:
        """Run one sync cycle for a folder, or join the one already running.

        Raises:
            InvalidStateError: If the folder is FAILED and not yet recovered
            MailError: Whatever ended the cycle; joined callers see it too
        """
        inflight = self._inflight.get(folder)
        if inflight is not None:
            logger.debug(f"[{self.account_id}] {folder}: joining sync already in flight")
            return await asyncio.shield(inflight)
        if self.state(folder) == SyncState.FAILED:
            raise InvalidStateError(f"[{self.account_id}] {folder}: sync failed, awaiting recovery")

        future: asyncio.Future[SyncResult] = asyncio.get_running_loop().create_future()
        # Joined callers may all be gone; don't warn about an unretrieved exception
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight[folder] = future
        try:
            result = await self._run_cycle(folder)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            del self._inflight[folder]

    async def _run_cycle(self, folder: str) -> SyncResult:
        async with self._cycle_lock or contextlib.nullcontext():
            self._transition(folder, SyncState.SYNCING)
            result = SyncResult(account_id=self.account_id, folder=folder)
            try:
                await self._synchronize(folder, result)
            except BaseException as e:
                self._transition(folder, SyncState.FAILED)
                if isinstance(e, StoreError):
                    logger.critical(f"[{self.account_id}] {folder}: store failure during sync: {e}")
                elif isinstance(e, MailError):
                    logger.warning(f"[{self.account_id}] {folder}: sync failed: {e}")
                raise
            self._transition(folder, SyncState.IDLE)
        logger.info(
            f"[{self.account_id}] {folder}: +{result.added} ~{result.updated} -{result.removed}"
            + (f", replayed {result.replayed}" if result.replayed else "")
            + (" (full resync)" if result.full_resync else "")
        )
        return result

    async def _synchronize(self, folder: str, result: SyncResult) -> None:
        confirmed = await self._replay(folder)
        result.replayed = len(confirmed)
        try:
            cursor = self.store.get_cursor(self.account_id, folder)
            known = self.store.known_flags(self.account_id, folder) if cursor.epoch is not None else {}
            change = await self.session.fetch_changes(folder, cursor, known)
            if isinstance(change, FullResyncRequired):
                self._transition(folder, SyncState.FULL_RESYNC)
                result.full_resync = True
                self.store.reset_folder(self.account_id, folder, change.epoch)
                cursor = self.store.get_cursor(self.account_id, folder)
                change = await self.session.fetch_changes(folder, cursor, {})
                if isinstance(change, FullResyncRequired):
                    raise ProtocolError(f"{folder}: validity epoch changed again during resync")
        except BaseException:
            # The acks still count; only the snapshot protection is lost
            self.store.complete_actions(confirmed)
            raise
        self._apply(folder, change, result, confirmed)

    def _apply(
        self,
        folder: str,
        delta: FolderDelta,
        result: SyncResult,
        confirmed: list[PendingAction],
    ) -> None:
        self._check_active()
        self._transition(folder, SyncState.APPLYING)
        added, updated, removed = self.store.apply_delta(
            self.account_id, folder, delta, last_sync=datetime.now(), confirmed=confirmed
        )
        result.epoch = delta.epoch
        result.added, result.updated, result.removed = added, updated, removed

    async def _replay(self, folder: str) -> list[PendingAction]:
        """Send queued actions for a folder in submission order.

        Returns:
            Actions the server acknowledged, still to be removed from the queue
        """
        confirmed: list[PendingAction] = []
        for action in self.store.pending_actions(self.account_id, folder):
            try:
                await self._send_action(action)
            except ActionRejected as e:
                logger.info(f"[{self.account_id}] Dropping moot action ({action.describe()}): {e}")
                self.store.discard_action(action)
                continue
            except (TransportError, ProtocolError) as e:
                self.store.complete_actions(confirmed)
                attempts = self.store.record_attempt(action, str(e))
                if attempts >= self.sync_config.max_action_attempts:
                    self.store.abandon_action(action, str(e))
                    self.abandoned += 1
                else:
                    logger.warning(
                        f"[{self.account_id}] Replay of {action.describe()} failed "
                        f"(attempt {attempts}/{self.sync_config.max_action_attempts}): {e}"
                    )
                raise
            except BaseException:
                self.store.complete_actions(confirmed)
                raise
            confirmed.append(action)
        return confirmed

    async def _send_action(self, action: PendingAction) -> None:
        if action.kind == ActionKind.SET_FLAG:
            await self.session.apply_flag(
                action.folder, action.uid, action.flag, action.value, epoch=action.epoch
            )
        elif action.kind == ActionKind.DELETE:
            await self.session.expunge(action.folder, action.uid, epoch=action.epoch)
        else:
            await self.session.move(action.folder, action.uid, action.target, epoch=action.epoch)

    async def sync_account(self) -> list[SyncResult]:
        """Refresh the folder list, then sync every folder in turn.

        A protocol error in one folder is recorded in its result and the
        remaining folders still sync; connection and transport errors end
        the pass.
        """
        folders = await self.session.list_folders()
        wanted = [
            f for f in folders
            if f.selectable and (self.account.folders is None or f.name in self.account.folders)
        ]
        for gone in self.store.upsert_folders(self.account_id, wanted):
            self._states.pop(gone, None)

        results = []
        for descriptor in wanted:
            try:
                results.append(await self.sync_folder(descriptor.name))
            except (ConnectError, TransportError, StoreError):
                raise
            except MailError as e:
                results.append(SyncResult(self.account_id, descriptor.name, error=str(e)))
            self.evict(descriptor.name)
        return results

    # Bodies

    async def fetch_body(self, folder: str, uid: int) -> Body:
        """Get a message body, from the cache when present, else from the server.

        Raises:
            KeyError: If the message is not cached
        """
        message = self.store.get_message(self.account_id, folder, uid)
        if message is None:
            raise KeyError(f"No cached message {self.account_id}/{folder}/{uid}")
        body = self.store.get_body(self.account_id, folder, message.epoch, uid)
        if body is not None:
            return body

        key = (folder, uid)
        inflight = self._body_fetches.get(key)
        if inflight is not None:
            return await asyncio.shield(inflight)
        future: asyncio.Future[Body] = asyncio.get_running_loop().create_future()
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._body_fetches[key] = future
        try:
            raw = await self._download_body(message)
            fetched = Body(raw=raw, fetched_at=datetime.now())
            self._check_active()
            self.store.store_body(
                self.account_id, folder, message.epoch, uid, raw, fetched_at=fetched.fetched_at
            )
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(fetched)
        finally:
            del self._body_fetches[key]
        self.evict(folder)
        return fetched

    async def _download_body(self, message: MessageRecord) -> bytes:
        return await self.session.fetch_body(message.folder, message.uid, epoch=message.epoch)

    def evict(self, folder: str) -> int:
        """Apply the body retention policy to one folder."""
        max_age = self.store_config.body_cache_max_age_days
        return self.store.evict_bodies(
            self.account_id,
            folder,
            max_bytes=self.store_config.body_cache_max_bytes,
            max_age=timedelta(days=max_age) if max_age is not None else None,
        )


class Pop3SyncEngine(SyncEngine):
    """Sync for retrieve-and-delete accounts.

    The mailbox is a single folder with a constant epoch. UIDLs are mapped to
    local integer ids; flags are tracked locally and only deletions replay.
    """

    session: Pop3Session

    async def sync_account(self) -> list[SyncResult]:
        self.store.ensure_folder(self.account_id, POP3_FOLDER)
        result = await self.sync_folder(POP3_FOLDER)
        self.evict(POP3_FOLDER)
        return [result]

    async def _synchronize(self, folder: str, result: SyncResult) -> None:
        confirmed = await self._replay(folder)
        result.replayed = len(confirmed)
        try:
            listing = await self.session.list_messages()
            self._check_active()
            ids = self.store.pop3_local_ids(self.account_id, listing)
            known = self.store.known_flags(self.account_id, folder)
            delta = FolderDelta(epoch=POP3_EPOCH)
            present = set(ids.values())
            delta.removed = {uid for uid in known if uid not in present}
            for uidl, local_id in ids.items():
                if local_id in known:
                    continue
                envelope = await self.session.fetch_headers(uidl)
                delta.new[local_id] = RemoteMessage(
                    uid=local_id, envelope=dataclasses.replace(envelope, size=listing[uidl])
                )
        except BaseException:
            self.store.complete_actions(confirmed)
            raise
        self._apply(folder, delta, result, confirmed)

    async def _send_action(self, action: PendingAction) -> None:
        if action.kind != ActionKind.DELETE:
            raise ValueError(f"POP3 accounts cannot replay {action.kind.value} actions")
        await self.session.delete(self._uidl(action.uid))

    async def _download_body(self, message: MessageRecord) -> bytes:
        return await self.session.fetch_body(self._uidl(message.uid))

    def _uidl(self, local_id: int) -> str:
        uidl = self.store.pop3_uidl(self.account_id, local_id)
        if uidl is None:
            raise ActionRejected(f"[{self.account_id}] No UIDL recorded for message {local_id}")
        return uidl


def create_engine(
    account: AccountConfig,
    store: MailStore,
    sync_config: SyncConfig | None = None,
    store_config: StoreConfig | None = None,
) -> SyncEngine:
    """Build the engine and session matching the account's retrieval protocol."""
    timeout = (sync_config or SyncConfig()).command_timeout_seconds
    if account.protocol == "imap":
        return SyncEngine(account, store, ImapSession(account, timeout=timeout), sync_config, store_config)
    return Pop3SyncEngine(account, store, Pop3Session(account, timeout=timeout), sync_config, store_config)

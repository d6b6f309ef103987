"""Account coordinator: owns the sync loop of every account and the outbox."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime, timedelta
from typing import Any

from . import smtp_client
from .config import AccountConfig, Config, ServerConfig
from .errors import ConnectError, MailError, StoreError, TransportError
from .models import AccountStatus, ActionKind, OutgoingMessage, PendingAction, SyncResult
from .store import MailStore
from .sync import SyncEngine, create_engine

logger = logging.getLogger("mailmirror.coordinator")

EngineFactory = Callable[[AccountConfig], SyncEngine]
SendTransport = Callable[[ServerConfig, OutgoingMessage], Awaitable[None]]


class AccountCoordinator:
    """Schedules periodic sync per account, manual refreshes and queued sends.

    Every account gets one long-lived task. On failure the task retries with
    exponential backoff (``initial_retry_delay`` doubling up to
    ``max_retry_delay``); the delay resets after any successful sync.
    """

    BACKOFF_MULTIPLIER = 2

    def __init__(
        self,
        config: Config,
        store: MailStore,
        *,
        engine_factory: EngineFactory | None = None,
        send: SendTransport | None = None,
    ):
        self.config = config
        self.store = store
        self._engine_factory = engine_factory or (
            lambda account: create_engine(account, store, config.sync, config.store)
        )
        self._send = send or smtp_client.send
        self.engines: dict[str, SyncEngine] = {}
        self.statuses: dict[str, AccountStatus] = {}
        self.last_errors: dict[str, str | None] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._background: set[asyncio.Task] = set()
        self._account_background: dict[str, set[asyncio.Task]] = {}
        self._fatal: asyncio.Future | None = None
        self.fatal_error: StoreError | None = None
        self._outbox_task: asyncio.Task | None = None
        self._outbox_wakeup = asyncio.Event()
        self._outbox_lock = asyncio.Lock()
        self._running = False

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = self.config.sync.initial_retry_delay * (self.BACKOFF_MULTIPLIER ** attempt)
        return min(delay, self.config.sync.max_retry_delay)

    def engine(self, account_id: str) -> SyncEngine:
        """Get (creating on first use) the engine of an account.

        Raises:
            KeyError: If the account is not configured
        """
        if account_id not in self.engines:
            self.engines[account_id] = self._engine_factory(self.config.get_account(account_id))
        return self.engines[account_id]

    def status(self, account_id: str) -> AccountStatus:
        self.config.get_account(account_id)
        return self.statuses.get(account_id, AccountStatus.OFFLINE)

    def _set_status(self, account_id: str, status: AccountStatus, error: str | None = None) -> None:
        if account_id not in self.engines:
            # Removed while a cycle was finishing
            return
        previous = self.statuses.get(account_id)
        self.statuses[account_id] = status
        self.last_errors[account_id] = error
        if previous != status:
            logger.debug(f"[{account_id}] status {status.value}")

    # Lifecycle

    async def start(self) -> None:
        """Start one sync loop per configured account plus the outbox sender."""
        self._running = True
        self._fatal = asyncio.get_running_loop().create_future()
        self._fatal.add_done_callback(lambda f: f.cancelled() or f.exception())
        for account in self.config.accounts:
            self._start_account(account)
        self._outbox_task = asyncio.create_task(self._outbox_loop(), name="outbox")
        logger.info(f"Started sync for {len(self.config.accounts)} accounts")

    def _start_account(self, account: AccountConfig) -> None:
        self._wakeups[account.id] = asyncio.Event()
        self._tasks[account.id] = asyncio.create_task(
            self._account_loop(account), name=f"sync:{account.id}"
        )

    async def wait(self) -> None:
        """Wait for the account loops.

        Re-raises a fatal error from any of them, or a store failure hit by a
        background task.
        """
        tasks = list(self._tasks.values())
        if self._outbox_task is not None:
            tasks.append(self._outbox_task)
        if self._fatal is not None:
            tasks.append(self._fatal)
        await asyncio.gather(*tasks)

    async def stop(self) -> None:
        """Cancel all tasks and close every session within the grace period."""
        self._running = False
        tasks = list(self._tasks.values()) + list(self._background)
        if self._outbox_task is not None:
            tasks.append(self._outbox_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._account_background.clear()
        self._outbox_task = None
        if self._fatal is not None and not self._fatal.done():
            self._fatal.cancel()
        grace = self.config.sync.shutdown_grace_seconds
        await asyncio.gather(
            *(engine.session.close(grace) for engine in self.engines.values()),
            return_exceptions=True,
        )
        logger.info("Coordinator stopped")

    async def remove_account(self, account_id: str) -> None:
        """Stop syncing an account and delete its local namespace."""
        account = self.config.get_account(account_id)
        engine = self.engines.pop(account_id, None)
        if engine is not None:
            engine.retire()
        tasks = list(self._account_background.pop(account_id, ()))
        loop_task = self._tasks.pop(account_id, None)
        if loop_task is not None:
            tasks.append(loop_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if engine is not None:
            await engine.session.close(self.config.sync.shutdown_grace_seconds)
        self.store.delete_account(account_id)
        self.config.accounts.remove(account)
        self.statuses.pop(account_id, None)
        self.last_errors.pop(account_id, None)
        self._wakeups.pop(account_id, None)
        logger.info(f"[{account_id}] Account removed")

    # Sync

    async def _account_loop(self, account: AccountConfig) -> None:
        attempt = 0
        while self._running:
            try:
                await self._run_sync(account.id)
            except StoreError:
                raise
            except MailError as e:
                delay = self._calculate_backoff(attempt)
                logger.error(f"[{account.id}] Sync error: {e}")
                logger.info(f"[{account.id}] Retrying in {delay:.0f}s (attempt {attempt + 1})...")
                attempt += 1
            else:
                # Reset attempt counter on successful sync
                attempt = 0
                delay = account.sync_interval_seconds
            await self._sleep(account.id, delay)
            self.engine(account.id).recover()

    async def _sleep(self, account_id: str, delay: float) -> None:
        """Sleep until the next sync is due or a refresh is requested."""
        wakeup = self._wakeups.get(account_id)
        if wakeup is None:
            await asyncio.sleep(delay)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(wakeup.wait(), delay)
        wakeup.clear()

    def request_refresh(self, account_id: str) -> None:
        """Wake an account's loop for an immediate sync without waiting for it."""
        self.config.get_account(account_id)
        wakeup = self._wakeups.get(account_id)
        if wakeup is not None:
            wakeup.set()

    async def _run_sync(self, account_id: str, folder: str | None = None) -> list[SyncResult]:
        engine = self.engine(account_id)
        self._set_status(account_id, AccountStatus.SYNCING)
        try:
            if folder is None:
                results = await engine.sync_account()
            else:
                results = [await engine.sync_folder(folder)]
        except (ConnectError, TransportError) as e:
            self._set_status(account_id, AccountStatus.OFFLINE, str(e))
            raise
        except StoreError as e:
            logger.critical(f"[{account_id}] Local store failure: {e}")
            self._set_status(account_id, AccountStatus.DEGRADED, str(e))
            raise
        except MailError as e:
            self._set_status(account_id, AccountStatus.DEGRADED, str(e))
            raise
        failed = [r for r in results if not r.ok]
        abandoned = engine.take_abandoned()
        if failed:
            self._set_status(account_id, AccountStatus.DEGRADED, failed[0].error)
            raise MailError(f"{len(failed)} folders failed to sync, first: {failed[0].error}")
        if abandoned:
            self._set_status(
                account_id, AccountStatus.DEGRADED, f"{abandoned} changes failed to sync"
            )
        else:
            self._set_status(account_id, AccountStatus.SYNCED)
        return results

    async def refresh(self, account_id: str, folder: str | None = None) -> list[SyncResult]:
        """Sync now. Joins a cycle already running for the same folder."""
        self.engine(account_id).recover(folder)
        return await self._run_sync(account_id, folder)

    # Mutations

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str, account_id: str | None = None
    ) -> asyncio.Task:
        """Run a background task; ``remove_account`` cancels the ones tied to an account."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        if account_id is not None:
            self._account_background.setdefault(account_id, set()).add(task)
        task.add_done_callback(functools.partial(self._background_done, account_id))
        return task

    def _background_done(self, account_id: str | None, task: asyncio.Task) -> None:
        self._background.discard(task)
        if account_id is not None:
            self._account_background.get(account_id, set()).discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, StoreError):
            logger.critical(f"Local store failure in {task.get_name()}: {error}")
            self.fatal_error = error
            if self._fatal is not None and not self._fatal.done():
                self._fatal.set_exception(error)

    async def drain(self) -> None:
        """Wait for background replays and sends started by this coordinator.

        Raises:
            StoreError: If one of them hit a local store failure
        """
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self.fatal_error is not None:
            raise self.fatal_error

    async def submit_mutation(self, action: PendingAction) -> PendingAction:
        """Apply a mutation to the store now and replay it in the background.

        On POP3 accounts flag changes are local only and moves are refused.

        Raises:
            KeyError: If the account or message is unknown
            ValueError: If the account's protocol cannot carry the action
        """
        account = self.config.get_account(action.account_id)
        if account.protocol == "pop3":
            if action.kind == ActionKind.MOVE:
                raise ValueError(f"Account '{account.id}' uses POP3 and has no folders to move to")
            if action.kind == ActionKind.SET_FLAG:
                self.store.set_local_flag(
                    action.account_id, action.folder, action.uid, action.flag, action.value
                )
                return action
        queued = self.store.submit_action(action)
        logger.debug(f"[{action.account_id}] Queued {queued.describe()} (seq {queued.seq})")
        self.spawn(
            self._replay_in_background(action.account_id, action.folder),
            name=f"replay:{action.account_id}:{action.folder}",
            account_id=action.account_id,
        )
        return queued

    async def _replay_in_background(self, account_id: str, folder: str) -> None:
        try:
            await self.refresh(account_id, folder)
        except StoreError:
            raise
        except MailError as e:
            logger.info(f"[{account_id}] {folder}: change stays queued until next sync ({e})")

    # Outbox

    async def submit_outgoing(self, message: OutgoingMessage) -> OutgoingMessage:
        """Persist a message to the outbox and wake the sender."""
        queued = self.store.enqueue_outgoing(message)
        logger.info(f"[{message.account_id}] Queued outgoing message {queued.id}")
        if self._running:
            self._outbox_wakeup.set()
        else:
            self.spawn(self.flush_outbox(), name="outbox-flush")
        return queued

    async def _outbox_loop(self) -> None:
        while self._running:
            await self.flush_outbox()
            next_due = self.store.next_outgoing_due()
            timeout = None
            if next_due is not None:
                timeout = max(0.0, (next_due - datetime.now()).total_seconds())
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._outbox_wakeup.wait(), timeout)
            self._outbox_wakeup.clear()

    async def flush_outbox(self) -> int:
        """Send every due outbox message once.

        Returns:
            Number of messages sent
        """
        sync = self.config.sync
        sent = 0
        async with self._outbox_lock:
            for message in self.store.due_outgoing():
                try:
                    account = self.config.get_account(message.account_id)
                except KeyError:
                    self.store.fail_outgoing(message.id, "account no longer configured")
                    continue
                if account.smtp is None:
                    self.store.fail_outgoing(message.id, "account has no SMTP server")
                    logger.error(f"[{account.id}] Cannot send message {message.id}: no [smtp] section")
                    continue
                try:
                    await self._send(account.smtp, message)
                except (ConnectError, TransportError) as e:
                    permanent = isinstance(e, TransportError) and e.permanent
                    if permanent or message.attempts + 1 >= sync.outbox_max_attempts:
                        self.store.fail_outgoing(message.id, str(e))
                        logger.error(f"[{account.id}] Giving up on message {message.id}: {e}")
                        continue
                    delay = min(
                        sync.outbox_retry_delay * (self.BACKOFF_MULTIPLIER ** message.attempts),
                        sync.max_retry_delay,
                    )
                    self.store.reschedule_outgoing(
                        message.id, str(e), datetime.now() + timedelta(seconds=delay)
                    )
                    logger.warning(f"[{account.id}] Send of message {message.id} failed, retrying in {delay:.0f}s")
                    continue
                self.store.complete_outgoing(message.id)
                sent += 1
        return sent

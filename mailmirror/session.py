"""Protocol session base: connection state machine and serialized command execution.

The protocol libraries are blocking, so every command runs in the default
executor, one at a time per session, under a per-command timeout.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

from .config import AccountConfig
from .errors import ConnectError, InvalidStateError, MailError, ProtocolError, TransportError
from .models import FolderCursor, FolderDelta, FolderDescriptor, FullResyncRequired

logger = logging.getLogger("mailmirror.session")

T = TypeVar("T")


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    BROKEN = "broken"
    CLOSED = "closed"


# Allowed transitions; anything else is a programming error.
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTING, SessionState.CLOSED}),
    SessionState.CONNECTING: frozenset(
        {SessionState.READY, SessionState.DISCONNECTED, SessionState.CLOSED}
    ),
    SessionState.READY: frozenset(
        {SessionState.BROKEN, SessionState.DISCONNECTED, SessionState.CLOSED}
    ),
    SessionState.BROKEN: frozenset({SessionState.CONNECTING, SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


@runtime_checkable
class MailSession(Protocol):
    """Contract of a folder-oriented protocol session (IMAP)."""

    multiplexed: bool

    async def connect(self) -> None: ...

    async def list_folders(self) -> list[FolderDescriptor]: ...

    async def fetch_changes(
        self,
        folder: str,
        cursor: FolderCursor,
        known: dict[int, frozenset[str]] | None = None,
    ) -> FolderDelta | FullResyncRequired: ...

    async def fetch_body(self, folder: str, uid: int, epoch: int | None = None) -> bytes: ...

    async def apply_flag(
        self, folder: str, uid: int, flag: str, value: bool, epoch: int | None = None
    ) -> None: ...

    async def expunge(self, folder: str, uid: int, epoch: int | None = None) -> None: ...

    async def move(self, folder: str, uid: int, target: str, epoch: int | None = None) -> None: ...

    async def close(self, grace: float = 0) -> None: ...


class BaseSession:
    """One authenticated, serialized connection to a mail server.

    Subclasses implement the blocking primitives ``_open``, ``_logout``,
    ``_abort`` and ``_translate`` plus ``_connection``; commands go through
    ``_call``. A command body receives the connection that was live when it
    started and uses only that one, so a timed-out body still running in the
    executor can never reach a connection opened after it.

    Idempotent commands reconnect once and retry after a transport failure.
    Non-idempotent ones (expunge, move, delete) never do: their outcome is
    ambiguous once sent, and the next sync reconciles it.
    """

    protocol = ""
    multiplexed = False

    def __init__(self, account: AccountConfig, *, timeout: float = 60):
        self.account = account
        self.timeout = timeout
        self.state = SessionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._critical: asyncio.Future | None = None

    @property
    def label(self) -> str:
        return f"{self.protocol}:{self.account.id}"

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidStateError(
                f"{self.label}: illegal transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"{self.label}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    # Blocking primitives, run in the executor

    def _open(self) -> None:
        raise NotImplementedError

    def _logout(self) -> None:
        raise NotImplementedError

    def _abort(self) -> None:
        """Drop the connection without a protocol goodbye."""
        raise NotImplementedError

    def _translate(self, operation: str, error: Exception) -> MailError:
        raise NotImplementedError

    def _connection(self) -> Any:
        """Get the live protocol object handed to command bodies.

        Raises:
            TransportError: If there is none
        """
        raise NotImplementedError

    # Connection management

    async def connect(self) -> None:
        """Connect and authenticate.

        Raises:
            ConnectError: On DNS, TLS or authentication failure
        """
        async with self._lock:
            await self._connect_locked()

    async def _connect_locked(self) -> None:
        self._transition(SessionState.CONNECTING)
        loop = asyncio.get_running_loop()
        server = self.account.retrieval
        try:
            await asyncio.wait_for(loop.run_in_executor(None, self._open), self.timeout)
        except TimeoutError as e:
            self._transition(SessionState.DISCONNECTED)
            self._safe_abort()
            raise ConnectError(f"{self.label}: connection to {server.host} timed out") from e
        except MailError:
            self._transition(SessionState.DISCONNECTED)
            self._safe_abort()
            raise
        except Exception as e:
            self._transition(SessionState.DISCONNECTED)
            self._safe_abort()
            raise ConnectError(f"{self.label}: cannot connect to {server.host}: {e}") from e
        self._transition(SessionState.READY)
        logger.info(f"{self.label}: connected to {server.host}:{server.port}")

    async def _reconnect_locked(self) -> None:
        if not await self._settle_critical(self.timeout):
            logger.warning(
                f"{self.label}: timed-out command still running, dropping its connection"
            )
        if self.state == SessionState.READY:
            self._mark_broken()
        if self.state == SessionState.BROKEN:
            self._safe_abort()
        await self._connect_locked()

    def _mark_broken(self) -> None:
        if self.state == SessionState.READY:
            self._transition(SessionState.BROKEN)

    def _safe_abort(self) -> None:
        with contextlib.suppress(Exception):
            self._abort()

    async def _settle_critical(self, timeout: float) -> bool:
        """Wait for an in-flight non-idempotent command to finish.

        Returns:
            False if it is still running after ``timeout`` seconds
        """
        critical = self._critical
        if critical is None or critical.done():
            return True
        done, _ = await asyncio.wait({critical}, timeout=timeout)
        return bool(done)

    async def close(self, grace: float = 0) -> None:
        """Tear the session down.

        An in-flight non-idempotent command gets up to ``grace`` seconds to
        finish; after that the connection is dropped and the next sync
        reconciles whatever the server did.
        """
        if self.state == SessionState.CLOSED:
            return
        forced = not await self._settle_critical(grace)
        if forced:
            logger.warning(f"{self.label}: command still running after {grace}s, forcing close")
        was_ready = self.state == SessionState.READY
        self._transition(SessionState.CLOSED)
        if forced or not was_ready:
            self._safe_abort()
            return
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(loop.run_in_executor(None, self._logout), self.timeout)
        except Exception as e:
            logger.debug(f"{self.label}: logout failed ({e}), dropping connection")
            self._safe_abort()

    # Command execution

    async def _call(
        self,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        idempotent: bool = True,
    ) -> T:
        async with self._lock:
            if self.state == SessionState.CLOSED:
                raise InvalidStateError(f"{self.label}: session is closed ({operation})")
            if self.state in (SessionState.DISCONNECTED, SessionState.BROKEN):
                # Nothing has been sent yet, so (re)connecting is always safe here
                await self._reconnect_locked()
            try:
                return await self._execute(operation, fn, args, critical=not idempotent)
            except TransportError as e:
                if not idempotent:
                    raise
                logger.info(f"{self.label}: {operation} failed ({e}), reconnecting once")
            await self._reconnect_locked()
            return await self._execute(operation, fn, args, critical=False)

    async def _execute(
        self, operation: str, fn: Callable[..., T], args: tuple, *, critical: bool
    ) -> T:
        loop = asyncio.get_running_loop()
        try:
            connection = self._connection()
        except TransportError:
            self._mark_broken()
            raise
        future = loop.run_in_executor(None, fn, connection, *args)
        # A timed-out body may still fail later with nobody awaiting it
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        if critical:
            self._critical = future
        try:
            # Shielded so a cancelled caller leaves the command running for close()
            return await asyncio.wait_for(asyncio.shield(future), self.timeout)
        except TimeoutError as e:
            self._mark_broken()
            raise TransportError(
                f"{self.label}: {operation} timed out after {self.timeout}s"
            ) from e
        except MailError as e:
            if isinstance(e, TransportError):
                self._mark_broken()
            raise
        except Exception as e:
            error = self._translate(operation, e)
            if isinstance(error, TransportError):
                self._mark_broken()
            if isinstance(error, ProtocolError):
                logger.error(f"{self.label}: protocol error during {operation}: {e}")
            raise error from e

    def _require_ready(self) -> None:
        # Called from executor threads; commands are serialized by _lock
        if self.state != SessionState.READY:
            raise InvalidStateError(f"{self.label}: not connected ({self.state.value})")

"""POP3 session on top of poplib.

POP3 has a single mailbox, no server-side flags and message numbers that
are only valid within one connection; messages are identified by UIDL.
"""

import logging
import poplib

from .config import AccountConfig
from .errors import ActionRejected, ConnectError, MailError, ProtocolError, TransportError
from .mime import parse
from .models import Envelope
from .session import BaseSession, SessionState

logger = logging.getLogger("mailmirror.pop3")

POP3_FOLDER = "INBOX"
# POP3 has no validity epoch; UIDLs are unique per mailbox for its lifetime
POP3_EPOCH = 1


class Pop3Session(BaseSession):
    """Serialized POP3 connection for one account."""

    protocol = "pop3"

    def __init__(self, account: AccountConfig, *, timeout: float = 60):
        if account.pop3 is None:
            raise ValueError(f"Account '{account.id}' has no POP3 server")
        super().__init__(account, timeout=timeout)
        self.config = account.pop3
        self._server: poplib.POP3 | None = None
        self._numbers: dict[str, int] = {}

    def _connection(self) -> poplib.POP3:
        if self._server is None:
            raise TransportError(f"{self.label}: not connected to POP3 server")
        return self._server

    def _open(self) -> None:
        server: poplib.POP3 | poplib.POP3_SSL
        if self.config.use_ssl:
            server = poplib.POP3_SSL(self.config.host, self.config.port, timeout=self.timeout)
        else:
            server = poplib.POP3(self.config.host, self.config.port, timeout=self.timeout)
        try:
            server.user(self.config.username)
            server.pass_(self.config.password)
        except poplib.error_proto as e:
            server.close()
            raise ConnectError(f"{self.label}: login failed: {e}") from e
        self._server = server
        self._numbers = {}

    def _logout(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.quit()

    def _abort(self) -> None:
        # close() drops the socket without QUIT, so pending DELEs are discarded
        server, self._server = self._server, None
        if server is not None:
            server.close()

    def _translate(self, operation: str, error: Exception) -> MailError:
        if isinstance(error, OSError):
            return TransportError(f"{self.label}: {operation}: {error}")
        if isinstance(error, poplib.error_proto):
            text = str(error).lower()
            if "no such message" in text or "already deleted" in text:
                return ActionRejected(f"{self.label}: {operation}: {error}")
            return ProtocolError(f"{self.label}: {operation}: {error}")
        return ProtocolError(f"{self.label}: {operation}: unexpected {type(error).__name__}: {error}")

    # Blocking command bodies

    def _uidl_numbers(self, server: poplib.POP3) -> dict[str, int]:
        """Map UIDL -> message number for this connection."""
        _, listings, _ = server.uidl()
        numbers: dict[str, int] = {}
        for line in listings:
            parts = line.decode("utf-8", errors="replace").split()
            if len(parts) >= 2:
                numbers[parts[1]] = int(parts[0])
        # Message numbers are only meaningful on the connection that listed them
        if server is self._server:
            self._numbers = numbers
        return numbers

    def _list_messages(self, server: poplib.POP3) -> dict[str, int]:
        numbers = self._uidl_numbers(server)
        sizes: dict[int, int] = {}
        _, lines, _ = server.list()
        for line in lines:
            parts = line.split()
            if len(parts) >= 2:
                sizes[int(parts[0])] = int(parts[1])
        return {uidl: sizes.get(number, 0) for uidl, number in numbers.items()}

    def _number(self, server: poplib.POP3, uidl: str) -> int:
        numbers = self._numbers if server is self._server else {}
        if uidl not in numbers:
            numbers = self._uidl_numbers(server)
        if uidl not in numbers:
            raise ActionRejected(f"{self.label}: message {uidl} no longer exists on the server")
        return numbers[uidl]

    def _fetch_headers(self, server: poplib.POP3, uidl: str) -> Envelope:
        number = self._number(server, uidl)
        _, lines, _ = server.top(number, 0)
        parsed = parse(b"\r\n".join(lines) + b"\r\n")
        return Envelope(
            subject=parsed.subject,
            from_addr=parsed.from_addr,
            to_addrs=tuple(parsed.to_addrs),
            cc_addrs=tuple(parsed.cc_addrs),
            date=parsed.date,
            message_id=parsed.message_id,
        )

    def _fetch_body(self, server: poplib.POP3, uidl: str) -> bytes:
        _, lines, _ = server.retr(self._number(server, uidl))
        return b"\r\n".join(lines) + b"\r\n"

    def _delete(self, server: poplib.POP3, uidl: str) -> None:
        server.dele(self._number(server, uidl))
        # Deletion only takes effect at QUIT
        if server is self._server:
            self._server = None
            self._numbers = {}
        server.quit()

    # Async commands

    async def list_messages(self) -> dict[str, int]:
        """List the mailbox as UIDL -> size in octets."""
        return await self._call("list_messages", self._list_messages)

    async def fetch_headers(self, uidl: str) -> Envelope:
        return await self._call(f"fetch_headers {uidl}", self._fetch_headers, uidl)

    async def fetch_body(self, uidl: str) -> bytes:
        return await self._call(f"fetch_body {uidl}", self._fetch_body, uidl)

    async def delete(self, uidl: str) -> None:
        """Delete a message. The connection is closed to commit the deletion."""
        try:
            await self._call(f"delete {uidl}", self._delete, uidl, idempotent=False)
        finally:
            if self.state == SessionState.READY and self._server is None:
                self._transition(SessionState.DISCONNECTED)
        logger.info(f"{self.label}: deleted {uidl}")

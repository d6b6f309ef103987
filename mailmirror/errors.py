"""Error taxonomy for mailbox synchronization."""


class MailError(Exception):
    """Base class for all mailmirror errors."""


class ConnectError(MailError):
    """DNS, TLS or authentication failure while opening a session.

    Fatal for the current sync attempt; the coordinator backs off and retries.
    """


class TransportError(MailError):
    """I/O failure or timeout in the middle of a session.

    A timeout says nothing about whether the command took effect on the
    server; the next sync reconciles the real outcome.
    """

    def __init__(self, message: str, *, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


class ProtocolError(MailError):
    """Malformed or unexpected server response."""


class ActionRejected(MailError):
    """The server refused a specific mutation, usually because the message is gone."""


class StoreError(MailError):
    """Local persistence failure. Cache integrity can no longer be assumed."""


class InvalidStateError(MailError):
    """A session command was issued in a state that does not allow it."""

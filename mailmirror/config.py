"""Configuration management for mailmirror."""

import copy
import dataclasses
import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"imap": 993, "pop3": 995, "smtp": 465}


@dataclass
class ServerConfig:
    """Endpoint and credentials for one protocol of an account."""
    host: str
    port: int
    username: str = ""
    password: str = field(default="", repr=False)
    use_ssl: bool = True


@dataclass
class AccountConfig:
    """A mail account.

    Credentials can be provided (or overridden) via environment variables:
    - MAILMIRROR_<ACCOUNT>_<PROTO>_USERNAME
    - MAILMIRROR_<ACCOUNT>_<PROTO>_PASSWORD

    where <ACCOUNT> is the account id upper-cased with non-alphanumerics
    replaced by underscores and <PROTO> is IMAP, POP3 or SMTP.
    """
    id: str
    name: str = ""
    email: str = ""
    imap: ServerConfig | None = None
    pop3: ServerConfig | None = None
    smtp: ServerConfig | None = None
    sync_interval_seconds: int = 300
    folders: list[str] | None = None  # None means every selectable folder

    def __post_init__(self):
        if self.imap is None and self.pop3 is None:
            raise ValueError(f"Account '{self.id}' needs an [imap] or [pop3] section")
        if not self.name:
            self.name = self.id
        for proto in ("imap", "pop3", "smtp"):
            server = getattr(self, proto)
            if server is None:
                continue
            if not server.host:
                raise ValueError(f"Account '{self.id}': {proto} host is required")
            env_username = os.environ.get(self.env_var(proto, "USERNAME"))
            env_password = os.environ.get(self.env_var(proto, "PASSWORD"))
            if env_username:
                server.username = env_username
            if env_password:
                server.password = env_password

    def env_var(self, proto: str, what: str) -> str:
        account = re.sub(r"[^A-Za-z0-9]", "_", self.id).upper()
        return f"MAILMIRROR_{account}_{proto.upper()}_{what}"

    @property
    def protocol(self) -> str:
        """The retrieval protocol in use: IMAP when available, else POP3."""
        return "imap" if self.imap is not None else "pop3"

    @property
    def retrieval(self) -> ServerConfig:
        server = self.imap if self.imap is not None else self.pop3
        assert server is not None
        return server

    @property
    def display_name(self) -> str:
        return f"{self.name} <{self.email}>" if self.email else self.name

    def with_credentials(self, proto: str, username: str, password: str) -> "AccountConfig":
        """Return a copy with refreshed credentials for one protocol."""
        server = getattr(self, proto)
        if server is None:
            raise ValueError(f"Account '{self.id}' has no {proto} server")
        refreshed = dataclasses.replace(server, username=username, password=password)
        # copy.copy skips __post_init__, so the environment cannot clobber the new values
        clone = copy.copy(self)
        setattr(clone, proto, refreshed)
        return clone


@dataclass
class StoreConfig:
    path: str = "mailmirror.db"
    body_cache_max_bytes: int = 64 * 1024 * 1024  # per folder
    body_cache_max_age_days: int | None = 30


@dataclass
class SyncConfig:
    command_timeout_seconds: float = 60
    max_action_attempts: int = 5
    initial_retry_delay: float = 5  # seconds
    max_retry_delay: float = 300  # 5 minutes max
    shutdown_grace_seconds: float = 10
    outbox_retry_delay: float = 30
    outbox_max_attempts: int = 10


@dataclass
class Config:
    accounts: list[AccountConfig] = field(default_factory=list)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    def __post_init__(self):
        seen: set[str] = set()
        for account in self.accounts:
            if account.id in seen:
                raise ValueError(f"Duplicate account id: {account.id}")
            seen.add(account.id)

    def get_account(self, account_id: str) -> AccountConfig:
        for account in self.accounts:
            if account.id == account_id:
                return account
        raise KeyError(account_id)


def _load_server(data: dict | None, proto: str) -> ServerConfig | None:
    if data is None:
        return None
    return ServerConfig(
        host=data.get("host", ""),
        port=data.get("port", DEFAULT_PORTS[proto]),
        username=data.get("username", ""),
        password=data.get("password", ""),
        use_ssl=data.get("use_ssl", True),
    )


def load_config(path: str | Path) -> Config:
    """Load configuration from a TOML file."""
    path = Path(path)
    with path.open("rb") as f:
        data = tomllib.load(f)

    accounts = []
    for account_data in data.get("accounts", []):
        if "id" not in account_data:
            raise ValueError("Every [[accounts]] entry needs an id")
        accounts.append(AccountConfig(
            id=account_data["id"],
            name=account_data.get("name", ""),
            email=account_data.get("email", ""),
            imap=_load_server(account_data.get("imap"), "imap"),
            pop3=_load_server(account_data.get("pop3"), "pop3"),
            smtp=_load_server(account_data.get("smtp"), "smtp"),
            sync_interval_seconds=account_data.get("sync_interval_seconds", 300),
            folders=account_data.get("folders"),
        ))

    store_data = data.get("store", {})
    store_config = StoreConfig(
        path=store_data.get("path", "mailmirror.db"),
        body_cache_max_bytes=store_data.get("body_cache_max_bytes", 64 * 1024 * 1024),
        body_cache_max_age_days=store_data.get("body_cache_max_age_days", 30),
    )

    sync_data = data.get("sync", {})
    sync_config = SyncConfig(
        command_timeout_seconds=sync_data.get("command_timeout_seconds", 60),
        max_action_attempts=sync_data.get("max_action_attempts", 5),
        initial_retry_delay=sync_data.get("initial_retry_delay", 5),
        max_retry_delay=sync_data.get("max_retry_delay", 300),
        shutdown_grace_seconds=sync_data.get("shutdown_grace_seconds", 10),
        outbox_retry_delay=sync_data.get("outbox_retry_delay", 30),
        outbox_max_attempts=sync_data.get("outbox_max_attempts", 10),
    )

    logger.debug(f"Loaded {len(accounts)} accounts from {path}")
    return Config(accounts=accounts, store=store_config, sync=sync_config)

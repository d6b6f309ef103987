"""Command implementations for mailmirror CLI."""

from .daemon import run_daemon
from .mailbox_ops import (
    delete_cmd,
    list_folders_cmd,
    list_messages_cmd,
    move_cmd,
    read_message_cmd,
    send_cmd,
    set_flag_cmd,
    status_cmd,
    sync_cmd,
)
from .utils import apply_cli_overrides, evict_cmd, open_mailbox

__all__ = [
    # daemon
    "run_daemon",
    # mailbox_ops
    "delete_cmd",
    "list_folders_cmd",
    "list_messages_cmd",
    "move_cmd",
    "read_message_cmd",
    "send_cmd",
    "set_flag_cmd",
    "status_cmd",
    "sync_cmd",
    # utils
    "apply_cli_overrides",
    "evict_cmd",
    "open_mailbox",
]

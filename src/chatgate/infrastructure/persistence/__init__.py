"""File-backed stores, locks and atomic JSON helpers."""

from chatgate.infrastructure.persistence.allowlist_store import AllowlistState, AllowlistStore
from chatgate.infrastructure.persistence.locks import FileLock, LockManager
from chatgate.infrastructure.persistence.policy_state_store import PolicyStateStore
from chatgate.infrastructure.persistence.task_store import FileTaskStore

__all__ = [
    "AllowlistState",
    "AllowlistStore",
    "FileLock",
    "FileTaskStore",
    "LockManager",
    "PolicyStateStore",
]

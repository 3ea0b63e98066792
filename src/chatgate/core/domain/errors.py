"""Domain-specific exception types for chatgate.

Exceptions are reserved for faults. Expected outcomes such as a policy deny,
a gate block or a missing chat id travel as values (see ``result.py``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class ChatGateError(Exception):
    """Base exception for chatgate errors."""

    message: str
    code: str = "chatgate_error"
    details: Dict[str, Any] | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.details is None:
            self.details = {}


class ConfigError(ChatGateError):
    """Error raised for invalid configuration documents."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="config_error", details=details)


class PriorityError(ChatGateError):
    """Error raised when a priority level list or level name is invalid."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(
            message=message, code="invalid_priority", details=details, status_code=400
        )


class NotifyError(ChatGateError):
    """Error raised when a notify request cannot be processed."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "notify_error",
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, code=code, details=details, status_code=400)


class LockTimeoutError(ChatGateError):
    """Error raised when a durable lock cannot be acquired in time."""

    def __init__(self, message: str, *, lock_path: str | None = None) -> None:
        details = {"lock_path": lock_path} if lock_path else None
        self.lock_path = lock_path
        super().__init__(message=message, code="lock_timeout", details=details)


class ExecTimeoutError(ChatGateError):
    """Error raised when a limited operation exceeds its timeout."""

    def __init__(self, message: str, *, module: str, timeout_s: float) -> None:
        self.module = module
        self.timeout_s = timeout_s
        super().__init__(
            message=message,
            code="exec_timeout",
            details={"module": module, "timeout_s": timeout_s},
        )


class ExecFailedError(ChatGateError):
    """Error raised when a limited subprocess exits with a non-zero status."""

    def __init__(self, message: str, *, returncode: int, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            message=message,
            code="exec_failed",
            details={"returncode": returncode, "stderr": stderr[-800:]},
        )


class CommandOutputError(ChatGateError):
    """Error raised when a limited subprocess succeeds but prints unusable output."""

    def __init__(self, message: str, *, command: str) -> None:
        super().__init__(message=message, code="bad_command_output", details={"command": command})


class TaskStoreError(ChatGateError):
    """Error raised for task store I/O failures."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        details = {"task_id": task_id} if task_id else None
        super().__init__(message=message, code="task_store_error", details=details)


class LLMError(ChatGateError):
    """Error raised when the language model provider fails."""

    def __init__(self, message: str, *, model: str | None = None) -> None:
        details = {"model": model} if model else None
        super().__init__(message=message, code="llm_failed", details=details)


class ResolverError(ChatGateError):
    """Error raised when the remote intent resolver is unreachable or fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        details = {"status": status} if status is not None else None
        super().__init__(message=message, code="resolver_failed", details=details)


class SenderError(ChatGateError):
    """Error raised when an outbound channel send fails."""

    def __init__(
        self,
        message: str,
        *,
        channel: str,
        details: Dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("channel", channel)
        self.channel = channel
        super().__init__(message=message, code="send_failed", details=details)


def error_code(exc: BaseException) -> str:
    """Return a stable error code for ledger records."""
    if isinstance(exc, ChatGateError):
        return exc.code
    return type(exc).__name__

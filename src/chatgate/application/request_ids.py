"""
Adapter Request Ids

Derives a deterministic request id per inbound message so platform
redelivery maps onto the same idempotent task. Only an explicit retry
keyword bumps the attempt number and with it the dispatch id.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable

import structlog

from chatgate.core.domain.routing import AdapterRequestIds

logger = structlog.get_logger(__name__)

MAX_REQUEST_ID_LENGTH = 200
CLEANUP_INTERVAL_SEC = 60.0
CLEANUP_THRESHOLD = 5000

_UNSAFE = re.compile(r"[^A-Za-z0-9._:-]")


def sanitize_request_id(raw: str) -> str:
    return _UNSAFE.sub("_", raw)[:MAX_REQUEST_ID_LENGTH]


def dispatch_request_id(request_id_base: str, attempt: int) -> str:
    return sanitize_request_id(f"{request_id_base}:{attempt}")


@dataclass
class _SeenRequest:
    first_seen: float
    last_seen: float
    attempt: int


class RequestIdTracker:
    """In-memory attempt bookkeeping per request id base.

    Entries idle for longer than ``max(2 * window, 600)`` seconds are pruned
    every ``CLEANUP_INTERVAL_SEC`` or once ``CLEANUP_THRESHOLD`` entries
    accumulate.
    """

    def __init__(
        self,
        dedupe_window_sec: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dedupe_window_sec = dedupe_window_sec
        self._clock = clock
        self._seen: dict[str, _SeenRequest] = {}
        self._last_cleanup = clock()

    def __len__(self) -> int:
        return len(self._seen)

    def resolve(
        self,
        channel: str,
        chat_id: str,
        message_id: str | None,
        reply_to_id: str | None = None,
        *,
        explicit_retry: bool = False,
    ) -> AdapterRequestIds | None:
        """Request ids for one message, or None when it has no message key."""
        key = (message_id or "").strip() or (reply_to_id or "").strip()
        if not key:
            return None
        base = sanitize_request_id(f"{channel}:{chat_id}:{key}")
        now = self._clock()
        seen = self._seen.get(base)

        if seen is None:
            self._seen[base] = _SeenRequest(first_seen=now, last_seen=now, attempt=1)
            self._cleanup(now)
            return AdapterRequestIds(base, dispatch_request_id(base, 1), attempt=1)

        if explicit_retry:
            seen.attempt += 1
            seen.first_seen = now
            seen.last_seen = now
            self._cleanup(now)
            logger.info("request_ids.retry", request_id_base=base, attempt=seen.attempt)
            return AdapterRequestIds(base, dispatch_request_id(base, seen.attempt), attempt=seen.attempt)

        seen.last_seen = now
        expired = self.dedupe_window_sec > 0 and now - seen.first_seen > self.dedupe_window_sec
        self._cleanup(now)
        return AdapterRequestIds(
            base,
            dispatch_request_id(base, seen.attempt),
            attempt=seen.attempt,
            expired=expired,
            reused=True,
        )

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SEC and len(self._seen) < CLEANUP_THRESHOLD:
            return
        self._last_cleanup = now
        max_age = max(self.dedupe_window_sec * 2, 600.0)
        stale = [base for base, seen in self._seen.items() if now - seen.last_seen > max_age]
        for base in stale:
            del self._seen[base]
        if stale:
            logger.debug("request_ids.pruned", count=len(stale), remaining=len(self._seen))

"""
Two-Level Execution Limiter

Bounds concurrent subprocess and network work with one process-wide
semaphore plus one semaphore per module (``telegram``, ``feishu``,
``notify``, ``charts``...). A task acquires the global slot first, then its
module slot, and releases them in reverse order on every exit path.

Queue wait times are aggregated per module into coarse latency buckets and
logged once per interval, only when contention was observed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

import structlog

from chatgate.core.domain.config_schema import ExecSettings
from chatgate.core.domain.errors import ExecFailedError, ExecTimeoutError
from chatgate.infrastructure.runtime.semaphore import Semaphore

T = TypeVar("T")

WAIT_BUCKETS_MS: tuple[tuple[str, float], ...] = (
    ("lt_100ms", 100.0),
    ("lt_500ms", 500.0),
    ("lt_2000ms", 2000.0),
)
SLOW_BUCKET = "gte_2000ms"
CONTENTION_WAIT_MS = 5.0


def _bucket_for(wait_ms: float) -> str:
    for name, upper in WAIT_BUCKETS_MS:
        if wait_ms < upper:
            return name
    return SLOW_BUCKET


@dataclass
class WaitMetrics:
    """Aggregated queue statistics for one module since the last flush."""

    count: int = 0
    total_wait_ms: float = 0.0
    max_wait_ms: float = 0.0
    max_queue: int = 0
    last_queue: int = 0
    saw_contention: bool = False
    buckets: dict[str, int] = field(
        default_factory=lambda: {name: 0 for name, _ in WAIT_BUCKETS_MS} | {SLOW_BUCKET: 0}
    )

    def record(self, wait_ms: float, queue_depth: int) -> None:
        self.count += 1
        self.total_wait_ms += wait_ms
        self.max_wait_ms = max(self.max_wait_ms, wait_ms)
        self.max_queue = max(self.max_queue, queue_depth)
        self.last_queue = queue_depth
        self.buckets[_bucket_for(wait_ms)] += 1
        if queue_depth > 0 or wait_ms >= CONTENTION_WAIT_MS:
            self.saw_contention = True

    def snapshot(self) -> dict[str, Any]:
        avg = self.total_wait_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "avg_wait_ms": round(avg, 1),
            "max_wait_ms": round(self.max_wait_ms, 1),
            "max_queue": self.max_queue,
            "last_queue": self.last_queue,
            "buckets": dict(self.buckets),
        }


@dataclass(frozen=True)
class ExecOutput:
    returncode: int
    stdout: str
    stderr: str


class ExecLimiter:
    """Global plus per-module concurrency limiter with wait metrics.

    Example:
        >>> limiter = ExecLimiter(ExecSettings(max_global=4))
        >>> out = await limiter.exec_file("charts", ["render", "--kind", "daily"])
    """

    def __init__(
        self,
        settings: ExecSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or ExecSettings()
        self._clock = clock
        self._global = Semaphore(self.settings.max_global, name="global")
        self._modules: dict[str, Semaphore] = {}
        self._metrics: dict[str, WaitMetrics] = {}
        self._last_flush = clock()
        self.logger = structlog.get_logger().bind(component="exec_limiter")

    def module(self, name: str) -> Semaphore:
        sem = self._modules.get(name)
        if sem is None:
            limit = self.settings.modules.get(name, self.settings.default_module_limit)
            sem = Semaphore(limit, name=name)
            self._modules[name] = sem
        return sem

    def timeout_for(self, module: str) -> float:
        return self.settings.timeouts_sec.get(module, self.settings.default_timeout_sec)

    async def run(
        self,
        module: str,
        factory: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Run ``factory()`` under both semaphores.

        Raises:
            ExecTimeoutError: The operation exceeded ``timeout`` seconds. Both
                slots are released before the error propagates.
        """
        module_sem = self.module(module)
        timeout_s = self.timeout_for(module) if timeout is None else timeout
        queue_depth = self._global.state().pending + module_sem.state().pending
        started = self._clock()

        release_global = await self._global.acquire()
        try:
            release_module = await module_sem.acquire()
            try:
                self._record(module, (self._clock() - started) * 1000.0, queue_depth)
                try:
                    return await asyncio.wait_for(factory(), timeout=timeout_s)
                except asyncio.TimeoutError as exc:
                    self.logger.warning("exec_limiter.timeout", module=module, timeout_s=timeout_s)
                    raise ExecTimeoutError(
                        f"{module} operation timed out after {timeout_s}s",
                        module=module,
                        timeout_s=timeout_s,
                    ) from exc
            finally:
                release_module()
        finally:
            release_global()
            self.maybe_flush_metrics()

    async def exec_file(
        self,
        module: str,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> ExecOutput:
        """Run a subprocess under the limiter; it is killed on timeout."""
        if not argv:
            raise ValueError("argv must not be empty")

        async def _spawn() -> ExecOutput:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
            )
            try:
                stdout, stderr = await proc.communicate()
            except asyncio.CancelledError:
                proc.kill()
                await proc.wait()
                raise
            return ExecOutput(
                returncode=proc.returncode if proc.returncode is not None else -1,
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=stderr.decode("utf-8", errors="replace"),
            )

        output = await self.run(module, _spawn, timeout=timeout)
        if check and output.returncode != 0:
            raise ExecFailedError(
                f"{argv[0]} exited with status {output.returncode}",
                returncode=output.returncode,
                stderr=output.stderr,
            )
        return output

    def _record(self, module: str, wait_ms: float, queue_depth: int) -> None:
        metrics = self._metrics.setdefault(module, WaitMetrics())
        metrics.record(wait_ms, queue_depth)
        if queue_depth >= self.settings.warn_queue or wait_ms >= self.settings.warn_wait_ms:
            self.logger.warning(
                "exec_limiter.backpressure",
                module=module,
                queue=queue_depth,
                wait_ms=round(wait_ms, 1),
            )

    def maybe_flush_metrics(self, *, force: bool = False) -> list[dict[str, Any]]:
        """Log contended modules once per interval and reset all counters."""
        now = self._clock()
        if not force and now - self._last_flush < self.settings.log_interval_sec:
            return []
        self._last_flush = now
        flushed: list[dict[str, Any]] = []
        for module, metrics in self._metrics.items():
            if not metrics.saw_contention:
                continue
            snapshot = {"module": module, **metrics.snapshot()}
            flushed.append(snapshot)
            self.logger.info("exec_limiter.contention", **snapshot)
        self._metrics = {}
        return flushed

    def state(self) -> dict[str, dict[str, int]]:
        states = {"global": self._global.state().to_dict()}
        for name, sem in self._modules.items():
            states[name] = sem.state().to_dict()
        return states

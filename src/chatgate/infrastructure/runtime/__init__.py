"""Runtime infrastructure adapters."""

from chatgate.infrastructure.runtime.exec_limiter import ExecLimiter, ExecOutput
from chatgate.infrastructure.runtime.rate_limiter import SlidingWindowRateLimiter
from chatgate.infrastructure.runtime.renderer import SubprocessRenderer
from chatgate.infrastructure.runtime.semaphore import Semaphore

__all__ = [
    "ExecLimiter",
    "ExecOutput",
    "Semaphore",
    "SlidingWindowRateLimiter",
    "SubprocessRenderer",
]

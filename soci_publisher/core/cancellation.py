"""Cooperative cancellation for the blocking pipeline stages.

A ``CancellationToken`` is threaded through every blocking call (validate,
pull, build, push). Long loops check it between units of work; the
orchestrator checks it between stages. A token may also carry an absolute
deadline, which is how an invoker's timeout reaches the pipeline.
"""

from __future__ import annotations

import threading
import time

from soci_publisher.errors import PipelineCancelledError


class CancellationToken:
    """Thread-safe cancellation token with an optional monotonic deadline.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel("operator abort")
        >>> token.is_cancelled()
        True
    """

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason = ""
        self._deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> CancellationToken:
        """Create a token that expires *seconds* from now."""
        return cls(deadline=time.monotonic() + max(seconds, 0.0))

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal that cancellation has been requested."""
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def remaining(self) -> float | None:
        """Seconds until the deadline, or ``None`` without one."""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise PipelineCancelledError(f"Pipeline cancelled: {self._reason}")

"""
Agent adapter contract.

An adapter owns one agent process' text stream. The coordination engine only
needs to know whether the agent is idle, push text into it, and read what it
printed since a marker. All operations are async and must not block the loop.
"""
import time
from typing import Any, Callable, Optional, Protocol, runtime_checkable


class AdapterGoneError(Exception):
    """Raised when the adapter's underlying handle (pane, process, window) no longer exists."""

    def __init__(self, participant_id: str, reason: str = "adapter handle lost") -> None:
        self.participant_id = participant_id
        self.reason = reason
        super().__init__(f"{participant_id}: {reason}")


@runtime_checkable
class AgentAdapter(Protocol):
    participant_id: str
    name: str
    color: Optional[str]
    kind: str

    async def is_idle(self) -> bool:
        """Raw, unsmoothed idle signal."""
        ...

    async def can_accept_input(self) -> bool:
        ...

    async def inject(self, text: str) -> bool:
        """Paste `text` and submit it. False on a transient failure."""
        ...

    async def current_marker(self) -> Any:
        ...

    async def read_output_since(self, marker: Any) -> str:
        ...


class IdleTracker:
    """Turns a flickering idle signal into "stably idle".

    Idle counts only once the signal has been continuously true for
    `threshold` seconds, measured from the sample where it last turned true.
    """

    def __init__(self, threshold: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.threshold = threshold
        self._clock = clock
        self.idle_since: Optional[float] = None

    def update(self, raw_idle: bool) -> bool:
        now = self._clock()
        if not raw_idle:
            self.idle_since = None
            return False
        if self.idle_since is None:
            self.idle_since = now
        return now - self.idle_since >= self.threshold

    def reset(self) -> None:
        self.idle_since = None

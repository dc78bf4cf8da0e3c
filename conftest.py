"""
Shared fakes for AgentGroupChat unit tests.

Nothing here talks to tmux or a real agent: FakeAdapter scripts an agent's
terminal and ManualClock lets tests step over the idle stability threshold
without sleeping.
"""
import asyncio
import uuid

import pytest

from groupchat.adapters.base import AdapterGoneError
from groupchat.controller import ControllerSettings


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter:
    """Scripted agent terminal.

    Every successful inject appends the next scripted reply to the screen
    buffer (preceded by the pasted prompt when `echo` is set).
    """
    kind = "fake"

    def __init__(self, name: str, replies=(), participant_id: str | None = None, color: str | None = None, echo: bool = False):
        self.participant_id = participant_id or str(uuid.uuid4())
        self.name = name
        self.color = color
        self.replies = list(replies)
        self.echo = echo
        self.idle = True
        self.accepting = True
        self.inject_ok = True
        self.gone = False
        self.buffer: list[str] = []
        self.injected: list[str] = []
        self.accept_checks = 0

    def _check_gone(self) -> None:
        if self.gone:
            raise AdapterGoneError(self.participant_id, "pane closed")

    async def is_idle(self) -> bool:
        self._check_gone()
        return self.idle

    async def can_accept_input(self) -> bool:
        self.accept_checks += 1
        self._check_gone()
        return self.accepting

    async def inject(self, text: str) -> bool:
        self._check_gone()
        if not self.inject_ok:
            return False
        self.injected.append(text)
        if self.echo:
            self.buffer.extend(text.split("\n"))
        if self.replies:
            self.buffer.extend(self.replies.pop(0).split("\n"))
        return True

    async def current_marker(self) -> int:
        self._check_gone()
        return len(self.buffer)

    async def read_output_since(self, marker: int) -> str:
        self._check_gone()
        return "\n".join(self.buffer[marker:])


async def settle(rounds: int = 20) -> None:
    """Let spawned delivery tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def stable_input_tick(controller, clock: ManualClock) -> None:
    """One input tick that observes a stably idle adapter."""
    await controller._input_tick()
    clock.advance(controller.settings.stability_threshold)
    await controller._input_tick()
    await settle()


async def stable_capture_tick(controller, clock: ManualClock) -> None:
    await controller._capture_tick()
    clock.advance(controller.settings.stability_threshold)
    await controller._capture_tick()
    await settle()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return ControllerSettings(
        poll_interval=0.01,
        stability_threshold=1.0,
        retry_base_interval=1.0,
        retry_max_interval=8.0,
        max_auto_responses=10,
        capture_timeout=600.0,
        echo_max_span=200,
    )

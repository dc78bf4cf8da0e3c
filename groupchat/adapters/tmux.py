"""
tmux-backed agent adapter.

Each participant is a CLI agent running in its own tmux pane. Input is pasted
through a tmux buffer; output is read back from the pane's scrollback.
"""
import asyncio
import hashlib
import logging
import re
import uuid
from typing import Optional

from groupchat.adapters.base import AdapterGoneError
from groupchat.output_filter import INTERRUPT_PATTERN, WORKING_PATTERN, is_status_line, strip_terminal_codes

logger = logging.getLogger(__name__)

# How many trailing pane lines are inspected for busy markers
TAIL_LINES = 15

_MISSING_PANE = re.compile(r"can't find (?:pane|window|session)|no server running", re.IGNORECASE)


class TmuxAdapter:
    kind = "tmux"

    def __init__(
        self,
        participant_id: str,
        name: str,
        target: str,
        color: Optional[str] = None,
        tmux_bin: str = "tmux",
    ) -> None:
        self.participant_id = participant_id
        self.name = name
        self.target = target       # "session:window.pane"
        self.color = color
        self.tmux_bin = tmux_bin
        self._last_tail_digest: Optional[str] = None

    @classmethod
    def from_spec(cls, spec: dict) -> "TmuxAdapter":
        if not spec.get("target"):
            raise ValueError("tmux participant needs a target pane")
        return cls(
            participant_id=spec.get("id") or str(uuid.uuid4()),
            name=spec["name"],
            target=spec["target"],
            color=spec.get("color"),
        )

    async def _tmux(self, *args: str, stdin: Optional[str] = None) -> str:
        proc = await asyncio.create_subprocess_exec(
            self.tmux_bin, *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, err = await proc.communicate(stdin.encode("utf-8") if stdin is not None else None)
        if proc.returncode != 0:
            message = err.decode("utf-8", errors="replace").strip()
            if _MISSING_PANE.search(message):
                raise AdapterGoneError(self.participant_id, message)
            raise RuntimeError(f"tmux {args[0]} failed ({proc.returncode}): {message}")
        return out.decode("utf-8", errors="replace")

    async def capture_pane(self, start: str = "-", joined: bool = True) -> str:
        args = ["capture-pane", "-p", "-t", self.target, "-S", start]
        if joined:
            args.insert(2, "-J")
        return await self._tmux(*args)

    async def is_idle(self) -> bool:
        """Idle when the pane tail shows no busy marker and did not change since the last sample."""
        try:
            output = await self.capture_pane(start=f"-{TAIL_LINES}")
        except RuntimeError as e:
            logger.debug(f"[{self.name}] capture failed: {e}")
            return False
        tail = strip_terminal_codes(output).rstrip("\n").split("\n")[-TAIL_LINES:]
        busy = any(
            WORKING_PATTERN.search(line) or INTERRUPT_PATTERN.search(line) or is_status_line(line)
            for line in tail
            if line.strip()
        )
        digest = hashlib.sha1("\n".join(tail).encode("utf-8")).hexdigest()
        unchanged = digest == self._last_tail_digest
        self._last_tail_digest = digest
        return not busy and unchanged

    async def can_accept_input(self) -> bool:
        return await self.is_idle()

    async def inject(self, text: str) -> bool:
        buffer_name = f"groupchat-{self.participant_id[:8]}"
        try:
            await self._tmux("load-buffer", "-b", buffer_name, "-", stdin=text)
            await self._tmux("paste-buffer", "-d", "-p", "-b", buffer_name, "-t", self.target)
            await self._tmux("send-keys", "-t", self.target, "Enter")
        except RuntimeError as e:
            logger.warning(f"[{self.name}] inject failed: {e}")
            return False
        self._last_tail_digest = None
        return True

    async def current_marker(self) -> int:
        out = await self._tmux("display-message", "-p", "-t", self.target, "#{history_size} #{cursor_y}")
        history_size, cursor_y = (int(v) for v in out.split())
        return history_size + cursor_y

    async def read_output_since(self, marker: int) -> str:
        # unjoined, so physical line numbers line up with the marker
        output = await self.capture_pane(start="-", joined=False)
        lines = output.split("\n")
        return "\n".join(lines[marker:])

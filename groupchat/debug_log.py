"""
Per-chat structured debug log.

Every controller decision is written as a single key=value line to
``<transcript_dir>/<chat_id>.debug.log`` and to the ``groupchat.debug`` logger.
Captured terminal output can be attached as a delimited block.
"""
import logging
from pathlib import Path
from typing import Optional

from groupchat.models import utc_now

logger = logging.getLogger("groupchat.debug")


def _single_line(text: str) -> str:
    return text.replace("\n", "\\n").replace("\r", "")


class GroupChatDebugLog:
    def __init__(self, directory: Optional[Path] = None, enabled: bool = True) -> None:
        self.directory = Path(directory) if directory is not None else None
        self.enabled = enabled
        self._loggers: dict[str, logging.Logger] = {}

    def _chat_logger(self, chat_id: str) -> logging.Logger:
        chat_logger = self._loggers.get(chat_id)
        if chat_logger is None:
            chat_logger = logging.getLogger(f"groupchat.debug.chat.{chat_id}")
            chat_logger.setLevel(logging.DEBUG)
            chat_logger.propagate = False
            if self.directory is not None:
                self.directory.mkdir(parents=True, exist_ok=True)
                handler = logging.FileHandler(self.directory / f"{chat_id}.debug.log", encoding="utf-8", delay=True)
                handler.setFormatter(logging.Formatter("%(message)s"))
                chat_logger.addHandler(handler)
            self._loggers[chat_id] = chat_logger
        return chat_logger

    def log(
        self,
        chat_id: str,
        participant_id: Optional[str],
        category: str,
        decision: str,
        detail: Optional[str] = None,
        output: Optional[str] = None,
        **metadata,
    ) -> None:
        if not self.enabled:
            return
        ts = utc_now().isoformat(timespec="milliseconds")
        participant = participant_id or "-"
        line = f"[GroupChatDebug] ts={ts} chat={chat_id} participant={participant} category={category} decision={decision}"
        if detail:
            line += f" detail={_single_line(detail)}"
        if metadata:
            line += " " + " ".join(f"{k}={_single_line(str(v))}" for k, v in sorted(metadata.items()))

        logger.debug(line)
        chat_logger = self._chat_logger(chat_id)
        chat_logger.debug(line)
        if output:
            scope = f"ts={ts} chat={chat_id} participant={participant} category={category}"
            body = output if output.endswith("\n") else output + "\n"
            chat_logger.debug(f"[GroupChatDebugOutput] {scope}\n{body}[GroupChatDebugOutputEnd] {scope}")

    def close(self, chat_id: Optional[str] = None) -> None:
        """Release file handlers for one chat, or for all chats."""
        ids = [chat_id] if chat_id is not None else list(self._loggers)
        for cid in ids:
            chat_logger = self._loggers.pop(cid, None)
            if chat_logger is None:
                continue
            for handler in list(chat_logger.handlers):
                handler.close()
                chat_logger.removeHandler(handler)

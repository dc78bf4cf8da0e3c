"""
Conversation log for one group chat.

An append-only, sequence-numbered list of messages plus a synchronous broadcast
to subscribers. ``sequence`` always equals the number of appends, so
``messages_after(n)`` is a slice of the list.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, Optional

from groupchat.models import Message, MessageEvent, utc_now

logger = logging.getLogger(__name__)

MessageHandler = Callable[[MessageEvent], None]


class Session:
    def __init__(
        self,
        title: str,
        participant_ids: Iterable[str] = (),
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        messages: Iterable[Message] = (),
    ) -> None:
        self.id = id or str(uuid.uuid4())
        self.title = title
        self.created_at = created_at or utc_now()
        self.participant_ids: list[str] = []
        for pid in participant_ids:
            self.add_participant(pid)
        self.messages: list[Message] = list(messages)
        self.sequence = len(self.messages)
        self.last_activity_at = self.messages[-1].timestamp if self.messages else self.created_at
        self._subscribers: list[MessageHandler] = []

    # ─────────────────────────────────────────────
    # Participants
    # ─────────────────────────────────────────────

    def add_participant(self, participant_id: str) -> None:
        if participant_id not in self.participant_ids:
            self.participant_ids.append(participant_id)

    def remove_participant(self, participant_id: str) -> None:
        self.participant_ids = [p for p in self.participant_ids if p != participant_id]

    def participant_display_names(
        self,
        known_names: dict[str, str],
        source_tags: Optional[dict[str, str]] = None,
    ) -> dict[str, str]:
        """Map participant id -> label, disambiguating duplicate names.

        Example: two "Codex" participants become "Codex@tmux-1a2b3c" and
        "Codex@tmux-9f8e7d".
        """
        source_tags = source_tags or {}
        base_names: dict[str, str] = {}
        for pid in self.participant_ids:
            if pid in known_names:
                base_names[pid] = known_names[pid]
                continue
            historical = self._last_agent_name(pid)
            if historical:
                base_names[pid] = historical

        counts: dict[str, int] = {}
        for name in base_names.values():
            counts[name] = counts.get(name, 0) + 1

        labels: dict[str, str] = {}
        for pid in self.participant_ids:
            base = base_names.get(pid, "AI")
            if counts.get(base, 0) <= 1:
                labels[pid] = base
                continue
            tag = source_tags.get(pid) or "cli"
            labels[pid] = f"{base}@{tag}-{_short_id(pid)}"
        return labels

    def _last_agent_name(self, participant_id: str) -> Optional[str]:
        for msg in reversed(self.messages):
            if msg.source.kind == "agent" and msg.source.participant_id == participant_id:
                return msg.source.name
        return None

    # ─────────────────────────────────────────────
    # Log
    # ─────────────────────────────────────────────

    def subscribe(self, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler called synchronously after every append. Returns an unsubscribe function."""
        self._subscribers.append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return unsubscribe

    def append(self, message: Message) -> int:
        self.messages.append(message)
        self.sequence += 1
        self.last_activity_at = utc_now()
        event = MessageEvent(message=message, sequence=self.sequence)
        for handler in list(self._subscribers):
            try:
                handler(event)
            except Exception:
                logger.exception(f"Subscriber failed on seq={event.sequence} chat={self.id}")
        logger.debug(f"Message appended: seq={self.sequence} source={message.source.display_name} chat={self.id}")
        return self.sequence

    def messages_after(self, sequence: int) -> list[Message]:
        """All messages with a sequence number greater than `sequence`."""
        if sequence >= self.sequence:
            return []
        return list(self.messages[max(sequence, 0):])


def _short_id(participant_id: str) -> str:
    return participant_id.replace("-", "")[:6].lower()

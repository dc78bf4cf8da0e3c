"""
Data models (dataclasses) for AgentGroupChat.
These are plain Python objects shared by the log, the controllers, the store and the HTTP layer.
"""
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


@dataclass(frozen=True)
class MessageSource:
    kind: str                            # user | agent | system
    name: Optional[str] = None           # agent display name
    participant_id: Optional[str] = None
    color: Optional[str] = None          # UI color hint, e.g. "#4F8EF7"

    @classmethod
    def user(cls) -> "MessageSource":
        return cls(kind="user")

    @classmethod
    def agent(cls, name: str, participant_id: str, color: Optional[str] = None) -> "MessageSource":
        return cls(kind="agent", name=name, participant_id=participant_id, color=color)

    @classmethod
    def system(cls) -> "MessageSource":
        return cls(kind="system")

    @property
    def display_name(self) -> str:
        if self.kind == "user":
            return "You"
        if self.kind == "agent":
            return self.name or "AI"
        return "System"

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"kind": self.kind}
        if self.kind == "agent":
            data.update({"name": self.name, "participant_id": self.participant_id, "color": self.color})
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "MessageSource":
        return cls(
            kind=data.get("kind", "system"),
            name=data.get("name"),
            participant_id=data.get("participant_id"),
            color=data.get("color"),
        )


@dataclass
class ThinkingCard:
    kind: str            # thought | action | result
    text: str
    ts: datetime


@dataclass
class Message:
    source: MessageSource
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utc_now)
    is_streaming: bool = False
    persist: bool = True
    thinking_trace: Optional[list[ThinkingCard]] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.to_dict(),
            "content": self.content,
            "is_streaming": self.is_streaming,
            "persist": self.persist,
        }
        if self.thinking_trace is not None:
            data["thinking_trace"] = [
                {"kind": c.kind, "text": c.text, "ts": c.ts.isoformat()} for c in self.thinking_trace
            ]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        trace = data.get("thinking_trace")
        return cls(
            id=data["id"],
            timestamp=_parse_dt(data["timestamp"]),
            source=MessageSource.from_dict(data["source"]),
            content=data["content"],
            is_streaming=data.get("is_streaming", False),
            persist=data.get("persist", True),
            thinking_trace=[
                ThinkingCard(kind=c["kind"], text=c["text"], ts=_parse_dt(c["ts"])) for c in trace
            ] if trace is not None else None,
        )


@dataclass(frozen=True)
class MessageEvent:
    """Published by the log after every append."""
    message: Message
    sequence: int


@dataclass
class ActiveTurn:
    token: str                  # unique per injection
    turn_id: str                # "<participant>:<injected_at_sequence>:<n>"
    run_id: str
    injected_at_sequence: int
    payload: str
    output_marker: Any          # opaque adapter position
    started_at: float           # controller clock
    previous_seen_sequence: int
    delivery_attempts: int = 0  # attempts spent delivering this payload
    abandoned: bool = False


@dataclass
class PendingDelivery:
    payload: str
    covers_sequence: int        # log sequence the payload was built from
    attempts: int = 0
    last_failure: Optional[str] = None


class ParticipantPhase(str, enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    DELIVERING = "delivering"
    INJECTING = "injecting"
    AWAITING_OUTPUT = "awaiting_output"
    CAPTURING = "capturing"
    STOPPED = "stopped"


@dataclass
class ParticipantStatus:
    participant_id: str
    name: str
    phase: ParticipantPhase
    is_processing: bool
    last_seen_sequence: int
    consecutive_pass_count: int
    auto_response_count: int
    pending_attempts: int
    next_retry_delay: Optional[float]
    last_failure: Optional[str]
    active_turn_id: Optional[str]
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "name": self.name,
            "phase": self.phase.value,
            "is_processing": self.is_processing,
            "last_seen_sequence": self.last_seen_sequence,
            "consecutive_pass_count": self.consecutive_pass_count,
            "auto_response_count": self.auto_response_count,
            "pending_attempts": self.pending_attempts,
            "next_retry_delay": self.next_retry_delay,
            "last_failure": self.last_failure,
            "active_turn_id": self.active_turn_id,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ChatSummary:
    """A persisted chat as listed in the closed-chat bin."""
    id: str
    title: str
    participants: list[str]       # agent names seen in the transcript
    participant_ids: list[str]
    created_at: datetime
    updated_at: datetime
    message_count: int

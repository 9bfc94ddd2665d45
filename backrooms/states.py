from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


SYSTEM_ENTITY = "SYSTEM"
MAX_MESSAGES = 100


def now_ms() -> int:
    return int(time.time() * 1000)


class Turn(Enum):
    A = "A"
    B = "B"

    def other(self) -> "Turn":
        return Turn.B if self is Turn.A else Turn.A


class RunState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class Message:
    id: str
    timestamp: int
    entity: str
    content: str
    image: Optional[str] = None

    @classmethod
    def create(cls, entity: str, content: str, image: Optional[str] = None) -> "Message":
        ts = now_ms()
        return cls(id=f"msg-{ts}-{uuid.uuid4().hex[:10]}", timestamp=ts, entity=entity, content=content, image=image)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "entity": self.entity,
            "content": self.content,
        }
        if self.image:
            out["image"] = self.image
        return out

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Message":
        ts = obj.get("timestamp")
        try:
            ts = int(ts)
        except (TypeError, ValueError):
            ts = 0
        return cls(
            id=str(obj.get("id") or f"msg-{ts}-{uuid.uuid4().hex[:10]}"),
            timestamp=ts,
            entity=str(obj.get("entity") or "UNKNOWN"),
            content=str(obj.get("content") or ""),
            image=obj.get("image") or None,
        )


@dataclass
class ConversationState:
    """Live conversation, mirrored to disk after every mutation.

    Owned by the ConversationManager; admin handlers mutate it only through
    the manager. Every mutation happens on the event loop thread.
    """

    messages: List[Message] = field(default_factory=list)
    is_running: bool = False
    current_turn: Turn = Turn.A
    total_exchanges: int = 0
    started_at: int = field(default_factory=now_ms)

    def append_turn(self, message: Message, max_messages: int = MAX_MESSAGES) -> None:
        """Append a persona message: flips the turn and counts the exchange."""
        self.messages.append(message)
        self.total_exchanges += 1
        self.current_turn = self.current_turn.other()
        self._truncate(max_messages)

    def append_system(self, message: Message, max_messages: int = MAX_MESSAGES) -> None:
        self.messages.append(message)
        self._truncate(max_messages)

    def _truncate(self, max_messages: int) -> None:
        if len(self.messages) > max_messages:
            self.messages = self.messages[-max_messages:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "isRunning": self.is_running,
            "currentTurn": self.current_turn.value,
            "totalExchanges": self.total_exchanges,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ConversationState":
        if not isinstance(obj, dict):
            raise ValueError("conversation state must be a JSON object")
        raw_messages = obj.get("messages") or []
        if not isinstance(raw_messages, list):
            raise ValueError("messages must be a list")
        try:
            turn = Turn(obj.get("currentTurn", "A"))
        except ValueError:
            turn = Turn.A
        started = obj.get("startedAt")
        return cls(
            messages=[Message.from_dict(m) for m in raw_messages if isinstance(m, dict)],
            is_running=bool(obj.get("isRunning", False)),
            current_turn=turn,
            total_exchanges=int(obj.get("totalExchanges") or 0),
            started_at=int(started) if isinstance(started, (int, float)) else now_ms(),
        )


@dataclass
class ImageArtifact:
    id: str
    timestamp: str
    agent: str
    image_url: str
    local_path: str
    prompt: str
    thought: str
    conversation_context: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "agent": self.agent,
            "imageUrl": self.image_url,
            "localPath": self.local_path,
            "prompt": self.prompt,
            "thought": self.thought,
            "conversationContext": self.conversation_context,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ImageArtifact":
        return cls(
            id=str(obj.get("id") or ""),
            timestamp=str(obj.get("timestamp") or ""),
            agent=str(obj.get("agent") or ""),
            image_url=str(obj.get("imageUrl") or ""),
            local_path=str(obj.get("localPath") or ""),
            prompt=str(obj.get("prompt") or ""),
            thought=str(obj.get("thought") or ""),
            conversation_context=str(obj.get("conversationContext") or ""),
        )

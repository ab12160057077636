from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


@dataclass
class Channel:
    """A Teams channel, mirrored as one Matrix room."""
    id: str
    display_name: str
    description: Optional[str] = None
    is_general: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Channel":
        return cls(
            id=data.get("id", ""),
            display_name=data.get("displayName", "") or "",
            description=data.get("description"),
            is_general=bool(data.get("isGeneral", False)),
        )


@dataclass
class Team:
    id: str
    display_name: str
    channels: List[Channel] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Team":
        return cls(
            id=data.get("id", ""),
            display_name=data.get("displayName", "") or "",
            channels=[Channel.from_dict(c) for c in data.get("channels") or [] if c.get("id")],
        )


@dataclass
class Chat:
    """A one-to-one or group chat. Listed but not mirrored."""
    id: str
    title: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chat":
        return cls(id=data.get("id", ""), title=data.get("title"))


@dataclass
class Conversations:
    teams: List[Team] = field(default_factory=list)
    chats: List[Chat] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversations":
        return cls(
            teams=[Team.from_dict(t) for t in data.get("teams") or []],
            chats=[Chat.from_dict(c) for c in data.get("chats") or []],
        )


# Message types carrying user text; the rest are control, call or membership events
TEXT_MESSAGE_TYPES = ("Text", "RichText", "RichText/Html")


@dataclass
class ChatMessage:
    id: str
    content: str
    message_type: str = "RichText/Html"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(data.get("id", "")),
            content=str(data.get("content") or ""),
            message_type=data.get("messagetype") or data.get("messageType") or "RichText/Html",
        )

    @property
    def is_text(self) -> bool:
        return self.message_type in TEXT_MESSAGE_TYPES


# Channel outcomes reported by a sync run
CREATED = "created"
JOINED = "joined"
SKIPPED = "skipped"


@dataclass
class ChannelResult:
    team: str
    channel: str
    alias: str
    status: str
    room_id: Optional[str] = None
    messages_sent: int = 0
    messages_skipped: int = 0
    messages_failed: int = 0
    error: Optional[str] = None


@dataclass
class SyncReport:
    """Outcome of one pass over the Teams conversations."""
    channels: List[ChannelResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for c in self.channels if c.status == status)

    @property
    def rooms_created(self) -> int:
        return self._count(CREATED)

    @property
    def rooms_joined(self) -> int:
        return self._count(JOINED)

    @property
    def channels_skipped(self) -> int:
        return self._count(SKIPPED)

    @property
    def messages_sent(self) -> int:
        return sum(c.messages_sent for c in self.channels)

    @property
    def messages_skipped(self) -> int:
        return sum(c.messages_skipped for c in self.channels)

    @property
    def messages_failed(self) -> int:
        return sum(c.messages_failed for c in self.channels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rooms_created": self.rooms_created,
            "rooms_joined": self.rooms_joined,
            "channels_skipped": self.channels_skipped,
            "messages_sent": self.messages_sent,
            "messages_skipped": self.messages_skipped,
            "messages_failed": self.messages_failed,
        }


class Transaction(BaseModel):
    """Body of a homeserver push. Events are kept as raw dicts."""
    events: List[Dict[str, Any]] = Field(default_factory=list)
    ephemeral: List[Dict[str, Any]] = Field(default_factory=list)

    def event_types(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event in self.events:
            event_type = event.get("type", "?")
            if not isinstance(event_type, str):
                event_type = repr(event_type)
            counts[event_type] = counts.get(event_type, 0) + 1
        return counts

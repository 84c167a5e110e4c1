# vibely/models/chat.py

from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, List
from datetime import datetime, timezone
from enum import Enum
import uuid


class MessageStatus(str, Enum):
    sent = "sent"
    delivered = "delivered"
    seen = "seen"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def advances_to(self, other: "MessageStatus") -> bool:
        return other.rank > self.rank


_STATUS_RANK = {
    MessageStatus.sent: 0,
    MessageStatus.delivered: 1,
    MessageStatus.seen: 2,
}


class MessageKind(str, Enum):
    text = "text"
    image = "image"
    audio = "audio"


def new_message_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    id: str = Field(default_factory=new_message_id)
    text: Optional[str] = None
    sender_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    kind: MessageKind = MessageKind.text
    status: MessageStatus = MessageStatus.sent

    def sort_key(self):
        return (self.timestamp, self.id)

    def with_status(self, status: MessageStatus) -> "Message":
        return self.model_copy(update={"status": status})

    def to_firestore(self) -> dict:
        return {
            "text": self.text,
            "senderId": self.sender_id,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "status": self.status.value,
        }

    @classmethod
    def from_firestore(cls, doc_id: str, data: dict) -> "Message":
        return cls(
            id=doc_id,
            text=data.get("text"),
            sender_id=data["senderId"],
            timestamp=data["timestamp"],
            kind=data.get("kind", MessageKind.text.value),
            status=data.get("status", MessageStatus.sent.value),
        )

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "sender_id": self.sender_id,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "status": self.status.value,
        }


class LastMessage(BaseModel):
    text: Optional[str] = None
    sender_id: str
    timestamp: datetime

    @classmethod
    def from_message(cls, message: Message) -> "LastMessage":
        return cls(text=message.text, sender_id=message.sender_id, timestamp=message.timestamp)

    def to_firestore(self) -> dict:
        return {"text": self.text, "senderId": self.sender_id, "timestamp": self.timestamp}

    @classmethod
    def from_firestore(cls, data: dict) -> "LastMessage":
        return cls(text=data.get("text"), sender_id=data["senderId"], timestamp=data["timestamp"])


class Conversation(BaseModel):
    """Two-party chat. ``id`` stays None until the first message is persisted."""

    id: Optional[str] = None
    participants: List[str]
    avatars: Dict[str, Optional[str]] = Field(default_factory=dict)
    last_message: Optional[LastMessage] = None

    @field_validator("participants")
    @classmethod
    def two_distinct_participants(cls, value: List[str]) -> List[str]:
        if len(value) != 2 or len(set(value)) != 2 or not all(value):
            raise ValueError("a conversation has exactly two distinct participants")
        return value

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    def peer_of(self, user_id: str) -> Optional[str]:
        for pid in self.participants:
            if pid != user_id:
                return pid
        return None

    def to_firestore(self) -> dict:
        data = {
            "participants": list(self.participants),
            "avatars": dict(self.avatars),
        }
        if self.last_message is not None:
            data["lastMessage"] = self.last_message.to_firestore()
        return data

    @classmethod
    def from_firestore(cls, doc_id: str, data: dict) -> "Conversation":
        last_message = data.get("lastMessage")
        return cls(
            id=doc_id,
            participants=data.get("participants", []),
            avatars=data.get("avatars") or {},
            last_message=LastMessage.from_firestore(last_message) if last_message else None,
        )


# ==================== API models ====================

class ConversationLookupRequest(BaseModel):
    peer_id: str


class ConversationLookupResponse(BaseModel):
    conversation_id: Optional[str] = None
    exists: bool
    peer_name: Optional[str] = None


class ConversationListItem(BaseModel):
    conversation_id: str
    other_user_id: str
    other_user_name: str
    other_user_avatar: Optional[str] = None
    last_message: Optional[str] = None
    last_message_time: Optional[str] = None
    is_last_message_mine: bool


class MoodRequest(BaseModel):
    message: str


class MoodResponse(BaseModel):
    mood: str
    level: float

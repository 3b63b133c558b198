"""
Data models (dataclasses) for ChatRelay.
These are plain Python objects used across the DB, bus, and API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any


@dataclass
class Conversation:
    id: str
    title: Optional[str]
    last_seq: int            # highest sequence number handed out so far
    archived: bool
    created_at: datetime
    created_by: Optional[str]
    members: list[str] = field(default_factory=list)   # in join order


@dataclass
class Message:
    id: str
    conversation_id: str
    seq: int                 # strictly increasing per conversation
    sender: str
    payload: Any             # any JSON value
    created_at: datetime

    def envelope(self) -> dict[str, Any]:
        """Wire representation pushed to recipients."""
        return {
            "message_id": self.id,
            "conversation_id": self.conversation_id,
            "sequence": self.seq,
            "sender": self.sender,
            "payload": self.payload,
            "timestamp": self.created_at.isoformat(),
        }


@dataclass
class DeliveryRecord:
    message_id: str
    recipient: str
    conversation_id: str
    seq: int
    status: str              # pending | delivered | acknowledged | expired
    attempts: int
    created_at: datetime
    updated_at: datetime
    last_attempt_at: Optional[datetime]


@dataclass
class Event:
    """
    Observable record of a state change or terminal failure.
    Rows are written by mutating operations and streamed by the /events pump.
    """
    id: int
    event_type: str      # msg.new | conversation.* | member.* | delivery.expired | user.online | user.offline
    conversation_id: Optional[str]
    payload: str         # JSON string
    created_at: datetime

from __future__ import annotations

import enum
import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Optional


# =========================
# Messages
# =========================

class Sender(enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"

    @property
    def label(self) -> str:
        if self is Sender.USER:
            return "You"
        if self is Sender.ASSISTANT:
            return "Assistant"
        raise ValueError(self)


@dataclass(frozen=True)
class Message:
    id: int
    content: str
    sender: Sender
    timestamp: datetime = field(default_factory=datetime.now)


# =========================
# Session context
# =========================

@dataclass
class User:
    id: str
    email: str
    name: str
    avatar_url: Optional[str] = None


@dataclass
class SessionContext:
    """Signed-in user for the lifetime of one chat session.

    Identity is for display only; nothing here makes authorization decisions.
    """

    user: User
    started_at: datetime = field(default_factory=datetime.now)
    active: bool = True

    @classmethod
    def open(cls, email: str, name: Optional[str] = None) -> "SessionContext":
        """Mock sign-in: the display name defaults to the email's local part."""
        email = email.strip()
        user = User(
            id=f"user-{uuid.uuid4().hex[:8]}",
            email=email,
            name=name or email.split("@")[0],
        )
        return cls(user=user)

    def close(self):
        self.active = False


# =========================
# Conversation state
# =========================

@dataclass
class ConversationState:
    """Append-only message log plus the one-at-a-time request flag.

    Only the ConversationController writes to this object.
    """

    messages: List[Message] = field(default_factory=list)
    pending: bool = False
    active_document_context: Optional[str] = None
    active_document_name: Optional[str] = None
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1), repr=False)

    def append(self, sender: Sender, content: str) -> Message:
        message = Message(id=next(self._ids), content=content, sender=sender)
        self.messages.append(message)
        return message

    def ordered(self) -> List[Message]:
        """Display order; ids break ties between equal timestamps."""
        return sorted(self.messages, key=lambda m: (m.timestamp, m.id))

    @property
    def turn_num(self) -> int:
        return len(self.messages)

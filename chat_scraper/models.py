"""
Chat Message Models

Structured representation of a single chat line scraped from a stream page.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4


@dataclass
class MessageFragment:
    """Piece of a chat message, either text or an emote"""

    fragment_type: str
    content: str


@dataclass
class ChatUser:
    """Author of a chat message"""

    username: str
    display_name: str
    color: Optional[str] = None
    badges: List[str] = field(default_factory=list)


@dataclass
class MessageContent:
    """Message text together with emotes and ordered fragments"""

    text: str
    emotes: List[str] = field(default_factory=list)
    fragments: List[MessageFragment] = field(default_factory=list)


@dataclass
class StreamContext:
    """Stream state at the time the message was seen"""

    viewer_count: Optional[int] = None
    game_category: Optional[str] = None
    stream_title: Optional[str] = None


@dataclass
class ChatMessage:
    """Complete chat message record"""

    streamer: str
    user: ChatUser
    message: MessageContent
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: StreamContext = field(default_factory=StreamContext)
    id: str = field(default_factory=lambda: str(uuid4()))

    def content_hash(self) -> str:
        """Hash of the fields that identify a message, used to spot duplicates"""
        hasher = hashlib.sha256()
        hasher.update(self.streamer.encode())
        hasher.update(self.user.username.encode())
        hasher.update(self.message.text.encode())
        hasher.update(str(int(self.timestamp.timestamp())).encode())
        return hasher.hexdigest()

    def is_valid(self) -> bool:
        return bool(self.user.username and self.message.text and self.streamer)

    def message_length(self) -> int:
        return len(self.message.text)

    def is_likely_spam(self) -> bool:
        """Cheap heuristics: character repetition, shouting, symbol floods"""
        text = self.message.text
        length = len(text)

        if length > 10 and len(set(text)) < length // 4:
            return True

        caps = sum(1 for c in text if c.isupper())
        if length > 5 and caps > length * 3 // 4:
            return True

        special = sum(1 for c in text if not c.isalnum() and not c.isspace())
        if special > length // 2:
            return True

        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "streamer": self.streamer,
            "timestamp": self.timestamp.isoformat(),
            "user": {
                "username": self.user.username,
                "display_name": self.user.display_name,
                "color": self.user.color,
                "badges": list(self.user.badges),
            },
            "message": {
                "text": self.message.text,
                "emotes": list(self.message.emotes),
                "fragments": [
                    {"type": f.fragment_type, "content": f.content}
                    for f in self.message.fragments
                ],
            },
            "context": {
                "viewer_count": self.context.viewer_count,
                "game_category": self.context.game_category,
                "stream_title": self.context.stream_title,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        user = data.get("user", {})
        message = data.get("message", {})
        context = data.get("context", {})
        return cls(
            id=data["id"],
            streamer=data["streamer"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            user=ChatUser(
                username=user.get("username", ""),
                display_name=user.get("display_name", ""),
                color=user.get("color"),
                badges=list(user.get("badges", [])),
            ),
            message=MessageContent(
                text=message.get("text", ""),
                emotes=list(message.get("emotes", [])),
                fragments=[
                    MessageFragment(fragment_type=f["type"], content=f["content"])
                    for f in message.get("fragments", [])
                ],
            ),
            context=StreamContext(
                viewer_count=context.get("viewer_count"),
                game_category=context.get("game_category"),
                stream_title=context.get("stream_title"),
            ),
        )

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ROLE_USER = "user"
ROLE_MODEL = "model"
ROLES = (ROLE_USER, ROLE_MODEL)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Message:
    role: str
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "parts": [{"text": self.text}]}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Message"]:
        """Parse a stored message; returns None for entries that are not messages."""
        if not isinstance(data, dict):
            return None
        role = data.get("role")
        if role not in ROLES:
            return None
        parts = data.get("parts")
        if not isinstance(parts, list):
            parts = []
        texts: List[str] = []
        for part in parts:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                texts.append(part["text"])
        return cls(role=role, text="".join(texts))


@dataclass
class Conversation:
    user_id: str
    display_name: str = ""
    messages: List[Message] = field(default_factory=list)
    last_trim_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.display_name,
            "messages": [m.to_dict() for m in self.messages],
            "lastCleanup": self.last_trim_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], user_id: str) -> "Conversation":
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raw_messages = []
        messages: List[Message] = []
        for item in raw_messages:
            msg = Message.from_dict(item)
            if msg is not None:
                messages.append(msg)
        last_trim_at = data.get("lastCleanup")
        return cls(
            user_id=str(user_id),
            display_name=str(data.get("username") or ""),
            messages=messages,
            last_trim_at=str(last_trim_at) if last_trim_at else utc_now_iso(),
        )


@dataclass
class Prompt:
    id: str
    name: str
    content: str
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "content": self.content,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Prompt"]:
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            content=str(data.get("content") or ""),
            created_at=str(data.get("createdAt") or ""),
            updated_at=str(data.get("updatedAt") or ""),
        )

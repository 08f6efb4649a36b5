"""Typed views over stored records.

Records live in the store as plain JSON objects with camelCase keys (the same
shape that ends up inside a backup). The dataclasses here convert to and from
that shape; patches carry only mutable fields so identity fields (``id``,
``userId``) can never be overwritten by an update.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import InitVar, dataclass, field, fields
from typing import Any, Dict, List, Optional

# -----------------------------
# Collections
# -----------------------------
USERS = "users"
CONVERSATIONS = "conversations"
CHARACTERS = "characters"
CHARACTER_CONVERSATIONS = "characterConversations"
MEMORY = "memory"

COLLECTIONS = (
    USERS,
    CONVERSATIONS,
    CHARACTERS,
    CHARACTER_CONVERSATIONS,
    MEMORY,
    "checkIns",
    "family",
    "reminders",
    "customCalendars",
    "events",
    "lifeTemplates",
    "emotions",
)

# timestamp field used by list_by_user when the caller gives no order
DEFAULT_ORDER: Dict[str, str] = {
    CONVERSATIONS: "updatedAt",
    CHARACTERS: "updatedAt",
    CHARACTER_CONVERSATIONS: "updatedAt",
    "emotions": "timestamp",
}

IDENTITY_FIELDS = frozenset({"id", "userId"})

MEMORY_TYPES = ("conversation", "personal", "goal", "reflection", "relationship", "experience")
ROLES = ("user", "assistant")


def now_ms() -> int:
    """Milliseconds since the epoch (the timestamp unit used in records)."""
    return int(time.time() * 1000)


def new_id(prefix: str = "") -> str:
    stem = f"{now_ms()}_{uuid.uuid4().hex[:9]}"
    return f"{prefix}_{stem}" if prefix else stem


# -----------------------------
# Entities
# -----------------------------
@dataclass
class User:
    id: str = field(default_factory=lambda: new_id("user"))
    createdAt: int = field(default_factory=now_ms)
    name: Optional[str] = None
    email: Optional[str] = None
    timezone: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    profilePicture: Optional[str] = None
    lastActiveAt: Optional[int] = None
    settings: Optional[Dict[str, Any]] = None
    aiPersonality: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in _asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(**_known(cls, data))


@dataclass
class Message:
    role: str
    content: str
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {self.role!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(role=data["role"], content=data["content"], timestamp=int(data.get("timestamp", 0)))


@dataclass
class Conversation:
    userId: str
    title: str = "New Conversation"
    messages: List[Message] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("conv"))
    createdAt: int = field(default_factory=now_ms)
    updatedAt: int = field(default_factory=now_ms)
    supersededBy: Optional[str] = None  # set by rollover, points at the continuation

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "userId": self.userId,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.createdAt,
            "updatedAt": self.updatedAt,
        }
        if self.supersededBy:
            d["supersededBy"] = self.supersededBy
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            userId=data["userId"],
            title=data.get("title", ""),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            createdAt=int(data.get("createdAt", 0)),
            updatedAt=int(data.get("updatedAt", 0)),
            supersededBy=data.get("supersededBy"),
        )


@dataclass
class Memory:
    """A scored, tagged memory.

    ``metadata`` may hold ``context``, ``location``, ``emotion`` and
    ``relatedPeople``; absent keys are simply omitted.
    """
    userId: str
    content: str
    summary: str
    type: str = "conversation"
    importance: int = 5
    tags: List[str] = field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: new_id("mem"))
    createdAt: int = field(default_factory=now_ms)
    updatedAt: int = field(default_factory=now_ms)
    strict: InitVar[bool] = True  # False for records read back from the store

    def __post_init__(self, strict: bool) -> None:
        if strict:
            self.type = validate_memory_type(self.type)
            self.importance = validate_importance(self.importance)
        else:
            self.importance = _stored_importance(self.importance)
        self.tags = unique_tags(self.tags or [])

    def to_dict(self) -> Dict[str, Any]:
        d = _asdict(self)
        if d["metadata"] is None:
            del d["metadata"]
        else:
            d["metadata"] = {k: v for k, v in d["metadata"].items() if v is not None}
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Memory":
        """Typed view of a stored record. Types outside MEMORY_TYPES are kept as stored."""
        known = _known(cls, data)
        known.setdefault("content", "")
        known.setdefault("summary", "")
        return cls(**known, strict=False)


@dataclass
class Character:
    userId: str
    name: str
    description: str = ""
    personality: Dict[str, Any] = field(default_factory=dict)
    conversationCount: int = 0
    isActive: bool = True
    id: str = field(default_factory=lambda: new_id("char"))
    createdAt: int = field(default_factory=now_ms)
    updatedAt: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return _asdict(self)


# -----------------------------
# Patches
# -----------------------------
@dataclass
class _Patch:
    def to_fields(self) -> Dict[str, Any]:
        """Only the fields that were set."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass
class UserPatch(_Patch):
    name: Optional[str] = None
    email: Optional[str] = None
    timezone: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    profilePicture: Optional[str] = None
    lastActiveAt: Optional[int] = None
    settings: Optional[Dict[str, Any]] = None
    aiPersonality: Optional[Dict[str, Any]] = None


@dataclass
class ConversationPatch(_Patch):
    title: Optional[str] = None


@dataclass
class MemoryPatch(_Patch):
    type: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    importance: Optional[int] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_fields(self) -> Dict[str, Any]:
        out = super().to_fields()
        if "type" in out:
            out["type"] = validate_memory_type(out["type"])
        if "importance" in out:
            out["importance"] = validate_importance(out["importance"])
        if "tags" in out:
            out["tags"] = unique_tags(out["tags"])
        return out


# -----------------------------
# Helpers
# -----------------------------
def validate_importance(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"importance must be an integer, got {value!r}")
    if not 1 <= value <= 10:
        raise ValueError(f"importance must be within 1..10, got {value}")
    return value


def validate_memory_type(value: Any) -> str:
    if value not in MEMORY_TYPES:
        raise ValueError(f"memory type must be one of {MEMORY_TYPES}, got {value!r}")
    return value


def _stored_importance(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 5
    return min(10, max(1, value))


def unique_tags(tags: List[str]) -> List[str]:
    seen: List[str] = []
    for t in tags:
        if t not in seen:
            seen.append(t)
    return seen


def _asdict(obj: Any) -> Dict[str, Any]:
    # shallow: nested dicts/lists are already JSON-shaped
    return {f.name: getattr(obj, f.name) for f in fields(obj)}


def _known(cls: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}

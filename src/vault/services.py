"""Owner-scoped services on top of :class:`RecordStore`.

Every lookup takes the requesting ``user_id``; a record owned by someone else
is treated exactly like a missing one.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .errors import NotFoundError
from .records import (
    CHARACTER_CONVERSATIONS,
    CHARACTERS,
    CONVERSATIONS,
    MEMORY,
    USERS,
    Character,
    Conversation,
    ConversationPatch,
    Memory,
    MemoryPatch,
    Message,
    User,
    UserPatch,
    now_ms,
)
from .store import RecordStore

logger = logging.getLogger(__name__)

TITLE_CHARS = 50


def _owned(store: RecordStore, collection: str, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
    rec = store.get_by_id(collection, record_id)
    if rec is None or rec.get("userId") != user_id:
        return None
    return rec


def _require(store: RecordStore, collection: str, user_id: str, record_id: str) -> Dict[str, Any]:
    rec = _owned(store, collection, user_id, record_id)
    if rec is None:
        raise NotFoundError(collection, record_id)
    return rec


# -----------------------------
# Users
# -----------------------------
class UserService:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def create(self, user: User) -> User:
        return User.from_dict(self.store.create(USERS, user.to_dict()))

    def get(self, user_id: str) -> Optional[User]:
        rec = self.store.get_by_id(USERS, user_id)
        return User.from_dict(rec) if rec else None

    def get_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        for rec in self.store.all_records(USERS):
            if (rec.get("email") or "").lower() == needle:
                return User.from_dict(rec)
        return None

    def update(self, user_id: str, patch: UserPatch) -> User:
        return User.from_dict(self.store.update(USERS, user_id, patch.to_fields()))

    def touch(self, user_id: str) -> User:
        return self.update(user_id, UserPatch(lastActiveAt=now_ms()))

    def delete_account(self, user_id: str) -> None:
        """Wipe the local vault. The store holds a single account's data."""
        if self.store.get_by_id(USERS, user_id) is None:
            raise NotFoundError(USERS, user_id)
        self.store.clear_all()
        logger.info("Deleted account %s and cleared local data", user_id)


# -----------------------------
# Conversations
# -----------------------------
class ConversationService:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def create(self, user_id: str, title: str = "New Conversation") -> Conversation:
        conv = Conversation(userId=user_id, title=title)
        self.store.create(CONVERSATIONS, conv.to_dict())
        return conv

    def get(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        rec = _owned(self.store, CONVERSATIONS, user_id, conversation_id)
        return Conversation.from_dict(rec) if rec else None

    def require(self, user_id: str, conversation_id: str) -> Conversation:
        return Conversation.from_dict(_require(self.store, CONVERSATIONS, user_id, conversation_id))

    def list(self, user_id: str) -> List[Conversation]:
        return [Conversation.from_dict(r) for r in self.store.list_by_user(CONVERSATIONS, user_id)]

    def recent(self, user_id: str, limit: int = 10) -> List[Conversation]:
        return [Conversation.from_dict(r) for r in self.store.list_by_user(CONVERSATIONS, user_id, limit=limit)]

    def add_message(self, user_id: str, conversation_id: str, role: str, content: str) -> Conversation:
        """Append one message; the first user message also names the conversation."""
        msg = Message(role=role, content=content)
        # read and write under one store lock so a concurrent rename is not lost
        with self.store.transaction():
            conv = self.require(user_id, conversation_id)
            conv.messages.append(msg)
            conv.updatedAt = max(msg.timestamp, conv.updatedAt)
            fields: Dict[str, Any] = {
                "messages": [m.to_dict() for m in conv.messages],
                "updatedAt": conv.updatedAt,
            }
            if len(conv.messages) == 1 and role == "user":
                conv.title = content[:TITLE_CHARS] + ("..." if len(content) > TITLE_CHARS else "")
                fields["title"] = conv.title
            self.store.update(CONVERSATIONS, conversation_id, fields)
        return conv

    def rename(self, user_id: str, conversation_id: str, patch: ConversationPatch) -> Conversation:
        fields = patch.to_fields()
        fields["updatedAt"] = now_ms()
        with self.store.transaction():
            _require(self.store, CONVERSATIONS, user_id, conversation_id)
            updated = self.store.update(CONVERSATIONS, conversation_id, fields)
        return Conversation.from_dict(updated)

    def mark_superseded(self, user_id: str, conversation_id: str, successor_id: str) -> None:
        _require(self.store, CONVERSATIONS, user_id, conversation_id)
        self.store.update(CONVERSATIONS, conversation_id, {"supersededBy": successor_id})

    def delete(self, user_id: str, conversation_id: str) -> bool:
        if _owned(self.store, CONVERSATIONS, user_id, conversation_id) is None:
            return False
        return self.store.delete(CONVERSATIONS, conversation_id)

    def search(self, user_id: str, query: str) -> List[Conversation]:
        q = query.lower()
        return [
            c for c in self.list(user_id)
            if q in c.title.lower() or any(q in m.content.lower() for m in c.messages)
        ]

    def stats(self, user_id: str) -> Dict[str, Any]:
        convs = self.list(user_id)
        total_messages = sum(c.message_count for c in convs)
        avg = total_messages / len(convs) if convs else 0
        return {
            "totalConversations": len(convs),
            "totalMessages": total_messages,
            "averageMessagesPerConversation": round(avg, 1),
        }


# -----------------------------
# Memories
# -----------------------------
class MemoryService:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def create(self, memory: Memory) -> Memory:
        self.store.create(MEMORY, memory.to_dict())
        return memory

    def get(self, user_id: str, memory_id: str) -> Optional[Memory]:
        rec = _owned(self.store, MEMORY, user_id, memory_id)
        return Memory.from_dict(rec) if rec else None

    def list(self, user_id: str, limit: Optional[int] = None) -> List[Memory]:
        return [Memory.from_dict(r) for r in self.store.list_by_user(MEMORY, user_id, limit=limit)]

    def by_type(self, user_id: str, memory_type: str, limit: Optional[int] = None) -> List[Memory]:
        out = [m for m in self.list(user_id) if m.type == memory_type]
        return out[:limit] if limit is not None else out

    def update(self, user_id: str, memory_id: str, patch: MemoryPatch) -> Memory:
        _require(self.store, MEMORY, user_id, memory_id)
        fields = patch.to_fields()
        fields["updatedAt"] = now_ms()
        return Memory.from_dict(self.store.update(MEMORY, memory_id, fields))

    def delete(self, user_id: str, memory_id: str) -> bool:
        if _owned(self.store, MEMORY, user_id, memory_id) is None:
            return False
        return self.store.delete(MEMORY, memory_id)

    def search(
        self,
        user_id: str,
        query: str = "",
        tags: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        """Substring search over content, summary and tags; best first."""
        q = query.lower()
        wanted = set(tags or ())
        hits = [
            m for m in self.list(user_id)
            if (not q or q in m.content.lower() or q in m.summary.lower() or any(q in t.lower() for t in m.tags))
            and (not wanted or wanted.intersection(m.tags))
        ]
        hits.sort(key=lambda m: (m.importance, m.createdAt), reverse=True)
        return hits[:limit] if limit is not None else hits

    def stats(self, user_id: str) -> Dict[str, Any]:
        memories = self.list(user_id)
        by_type: Dict[str, int] = {}
        all_tags = set()
        for m in memories:
            by_type[m.type] = by_type.get(m.type, 0) + 1
            all_tags.update(m.tags)
        return {
            "total": len(memories),
            "byType": by_type,
            "averageImportance": sum(m.importance for m in memories) / len(memories) if memories else 0,
            "totalTags": len(all_tags),
        }


# -----------------------------
# Characters
# -----------------------------
class CharacterService:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def create(self, character: Character) -> Character:
        self.store.create(CHARACTERS, character.to_dict())
        return character

    def list(self, user_id: str) -> List[Dict[str, Any]]:
        return self.store.list_by_user(CHARACTERS, user_id, "createdAt")

    def delete(self, user_id: str, character_id: str) -> int:
        """Delete a character and its conversations in one commit.

        Returns the number of character conversations removed.
        """
        if _owned(self.store, CHARACTERS, user_id, character_id) is None:
            return 0
        with self.store.transaction():
            children = [
                r["id"] for r in self.store.list_by_user(CHARACTER_CONVERSATIONS, user_id)
                if r.get("characterId") == character_id
            ]
            for cid in children:
                self.store.delete(CHARACTER_CONVERSATIONS, cid)
            self.store.delete(CHARACTERS, character_id)
        return len(children)

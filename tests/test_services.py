from __future__ import annotations

import threading

import pytest

from vault.errors import NotFoundError
from vault.records import (
    Character,
    ConversationPatch,
    Memory,
    MemoryPatch,
    User,
    UserPatch,
)
from vault.services import (
    CharacterService,
    ConversationService,
    MemoryService,
    UserService,
)
from vault.store import RecordStore


def _memory(user_id: str, content: str, importance: int = 5, tags=None, created: int = 0, type: str = "conversation"):
    return Memory(userId=user_id, content=content, summary=content[:20], importance=importance,
                  tags=tags or [], createdAt=created, type=type)


# --------- users ----------
def test_user_create_lookup_and_touch(store: RecordStore):
    users = UserService(store)
    user = users.create(User(name="Ada", email="Ada@Example.com"))
    assert users.get(user.id).name == "Ada"
    assert users.get_by_email("ada@example.com").id == user.id
    assert users.get_by_email("nobody@example.com") is None

    assert users.touch(user.id).lastActiveAt is not None
    assert users.update(user.id, UserPatch(bio="hi")).bio == "hi"


def test_delete_account_clears_everything(store: RecordStore):
    users = UserService(store)
    user = users.create(User(name="Ada"))
    ConversationService(store).create(user.id)
    MemoryService(store).create(_memory(user.id, "x"))

    users.delete_account(user.id)

    assert store.count("users") == 0
    assert store.count("conversations") == 0
    assert store.count("memory") == 0
    with pytest.raises(NotFoundError):
        users.delete_account(user.id)


# --------- conversations ----------
def test_conversation_messages_and_title(store: RecordStore):
    convs = ConversationService(store)
    conv = convs.create("u1")
    convs.add_message("u1", conv.id, "assistant", "Welcome back")
    updated = convs.add_message("u1", conv.id, "user", "hello")
    # title only comes from a first message written by the user
    assert updated.title == "New Conversation"
    assert updated.message_count == 2

    with pytest.raises(ValueError):
        convs.add_message("u1", conv.id, "system", "nope")


def test_conversation_rename_search_and_stats(store: RecordStore):
    convs = ConversationService(store)
    a = convs.create("u1", "Trip planning")
    b = convs.create("u1")
    convs.add_message("u1", b.id, "user", "Thinking about my CAREER")
    convs.add_message("u1", b.id, "assistant", "Tell me more")
    convs.create("u2", "Career for someone else")

    assert convs.rename("u1", a.id, ConversationPatch(title="Holidays")).title == "Holidays"
    assert [c.id for c in convs.search("u1", "career")] == [b.id]
    assert [c.id for c in convs.search("u1", "holi")] == [a.id]

    assert convs.stats("u1") == {
        "totalConversations": 2,
        "totalMessages": 2,
        "averageMessagesPerConversation": 1.0,
    }
    assert convs.stats("nobody")["averageMessagesPerConversation"] == 0


def test_conversation_owner_isolation(store: RecordStore):
    convs = ConversationService(store)
    conv = convs.create("owner")
    assert convs.get("intruder", conv.id) is None
    with pytest.raises(NotFoundError):
        convs.add_message("intruder", conv.id, "user", "hi")
    assert convs.delete("intruder", conv.id) is False
    assert convs.delete("owner", conv.id) is True
    assert convs.delete("owner", conv.id) is False


def test_recent_orders_by_last_update(store: RecordStore):
    convs = ConversationService(store)
    first = convs.create("u1", "first")
    second = convs.create("u1", "second")
    store.update("conversations", first.id, {"updatedAt": second.updatedAt + 1000})
    assert [c.id for c in convs.recent("u1", limit=1)] == [first.id]


# --------- memories ----------
def test_memory_search_orders_by_importance_then_recency(store: RecordStore):
    mems = MemoryService(store)
    low = mems.create(_memory("u1", "walked the dog", importance=3, created=1))
    old_hi = mems.create(_memory("u1", "dog birthday", importance=9, created=1))
    new_hi = mems.create(_memory("u1", "dog vet visit", importance=9, created=2))
    mems.create(_memory("u1", "cat stuff", importance=10, created=3))
    mems.create(_memory("u2", "my dog", importance=10, created=4))

    hits = mems.search("u1", "DOG")
    assert [m.id for m in hits] == [new_hi.id, old_hi.id, low.id]
    assert [m.id for m in mems.search("u1", "dog", limit=1)] == [new_hi.id]


def test_memory_search_by_tags(store: RecordStore):
    mems = MemoryService(store)
    work = mems.create(_memory("u1", "promotion", tags=["work", "career"]))
    mems.create(_memory("u1", "beach", tags=["travel"]))
    assert [m.id for m in mems.search("u1", tags=["career"])] == [work.id]
    assert [m.id for m in mems.search("u1", "car")] == [work.id]


def test_memory_update_validates_importance(store: RecordStore):
    mems = MemoryService(store)
    mem = mems.create(_memory("u1", "x"))
    updated = mems.update("u1", mem.id, MemoryPatch(importance=10, tags=["a", "a", "b"]))
    assert updated.importance == 10
    assert updated.tags == ["a", "b"]
    assert updated.userId == "u1"

    with pytest.raises(ValueError):
        mems.update("u1", mem.id, MemoryPatch(importance=11))
    with pytest.raises(ValueError):
        Memory(userId="u1", content="c", summary="s", importance=0)
    with pytest.raises(NotFoundError):
        mems.update("u2", mem.id, MemoryPatch(importance=4))
    with pytest.raises(ValueError):
        mems.update("u1", mem.id, MemoryPatch(type="dream"))


def test_memory_by_type_and_stats(store: RecordStore):
    mems = MemoryService(store)
    mems.create(_memory("u1", "a", importance=4, tags=["x"], type="goal"))
    mems.create(_memory("u1", "b", importance=8, tags=["x", "y"]))
    assert [m.content for m in mems.by_type("u1", "goal")] == ["a"]
    assert mems.stats("u1") == {
        "total": 2,
        "byType": {"goal": 1, "conversation": 1},
        "averageImportance": 6,
        "totalTags": 2,
    }


def test_memory_delete_is_idempotent(store: RecordStore):
    mems = MemoryService(store)
    mem = mems.create(_memory("u1", "x"))
    assert mems.delete("u2", mem.id) is False
    assert mems.delete("u1", mem.id) is True
    assert mems.delete("u1", mem.id) is False


# --------- characters ----------
def test_character_delete_cascades(store: RecordStore):
    chars = CharacterService(store)
    keep = chars.create(Character(userId="u1", name="Keeper"))
    gone = chars.create(Character(userId="u1", name="Sage"))
    for i in range(3):
        store.create("characterConversations", {"id": f"cc{i}", "userId": "u1", "characterId": gone.id})
    store.create("characterConversations", {"id": "other", "userId": "u1", "characterId": keep.id})

    assert chars.delete("u2", gone.id) == 0
    assert chars.delete("u1", gone.id) == 3

    assert [c["id"] for c in chars.list("u1")] == [keep.id]
    assert [r["id"] for r in store.all_records("characterConversations")] == ["other"]


def test_add_message_keeps_concurrent_rename(store: RecordStore, monkeypatch: pytest.MonkeyPatch):
    convs = ConversationService(store)
    conv = convs.create("u1")
    convs.add_message("u1", conv.id, "user", "first words")
    renamers = []
    real_require = convs.require

    def require_then_rename(user_id, conversation_id):
        found = real_require(user_id, conversation_id)
        # rename from another thread while the append is between its read and write
        t = threading.Thread(
            target=ConversationService(store).rename,
            args=("u1", conv.id, ConversationPatch(title="Renamed")),
        )
        t.start()
        t.join(timeout=0.2)
        renamers.append(t)
        return found

    monkeypatch.setattr(convs, "require", require_then_rename)
    convs.add_message("u1", conv.id, "assistant", "reply")
    renamers[0].join()

    final = ConversationService(store).require("u1", conv.id)
    assert final.title == "Renamed"
    assert [m.content for m in final.messages] == ["first words", "reply"]

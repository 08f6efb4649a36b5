"""Bounded chat sessions: thresholds, rollover and per-turn memory capture."""
from __future__ import annotations

import logging
import math
import random
import threading
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from vault.records import Conversation, Memory
from vault.services import ConversationService, MemoryService, UserService
from vault.store import RecordStore

from .extractor import MemoryExtractor, rule_based_summary
from .llm import TextGenerationError, TextGenerator, personalized_prompt

logger = logging.getLogger(__name__)

SUMMARY_WINDOW = 20       # messages shown to the remote summariser
REPLY_WINDOW = 40         # history turns sent with each reply request
SUMMARY_PREFIX = "Previous conversation summary: "

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise conversation summaries. "
    "Focus on key points, topics discussed, and important context."
)


class SummarizationUnavailable(RuntimeError):
    """Remote summariser missing or failed; never leaves the governor."""


# -----------------------------
# Policy & state
# -----------------------------
class SessionState(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class SessionPolicy:
    """Message-count thresholds for one conversation."""
    max_messages: int = 100     # hard limit: the next send rolls over
    warning_ratio: float = 0.8  # soft limit = floor(max_messages * warning_ratio)

    @property
    def warning_threshold(self) -> int:
        return math.floor(self.max_messages * self.warning_ratio)

    def classify(self, message_count: int) -> SessionState:
        if message_count >= self.max_messages:
            return SessionState.CRITICAL
        if message_count >= self.warning_threshold:
            return SessionState.WARNING
        return SessionState.NORMAL


@dataclass
class ChatSession:
    """Explicit pointer to a user's current conversation."""
    user_id: str
    conversation_id: Optional[str] = None


@dataclass
class SessionStatus:
    state: SessionState
    message_count: int
    max_messages: int
    warning_threshold: int

    @property
    def warning(self) -> bool:
        return self.state is SessionState.WARNING


@dataclass
class SendResult:
    conversation_id: str
    status: SessionStatus
    rolled_over: bool = False
    resubmit: bool = False           # caller must send the message again
    reply: Optional[str] = None
    memory_ids: List[str] = field(default_factory=list)


# -----------------------------
# Governor
# -----------------------------
class SessionGovernor:
    """Appends messages, captures memories and rolls long conversations over.

    A conversation at ``max_messages`` is never appended to: the next send
    summarises it, opens a continuation seeded with the summary and asks the
    caller to resubmit. Sends on one conversation are serialised.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        policy: Optional[SessionPolicy] = None,
        generator: Optional[TextGenerator] = None,
        extractor: Optional[MemoryExtractor] = None,
        auto_reply: bool = True,
        seed: Optional[int] = None,
    ) -> None:
        self.store = store
        self.policy = policy or SessionPolicy()
        self.generator = generator
        self.extractor = extractor or MemoryExtractor(generator)
        self.auto_reply = auto_reply
        self.conversations = ConversationService(store)
        self.memories = MemoryService(store)
        self.users = UserService(store)
        self._rng = random.Random(seed)
        # entries vanish once no send holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # --------- status ----------
    def classify(self, message_count: int) -> SessionState:
        return self.policy.classify(message_count)

    def status(self, user_id: str, conversation_id: str) -> SessionStatus:
        conv = self.conversations.require(user_id, conversation_id)
        return self._status_of(conv)

    def _status_of(self, conv: Conversation) -> SessionStatus:
        return SessionStatus(
            state=self.classify(conv.message_count),
            message_count=conv.message_count,
            max_messages=self.policy.max_messages,
            warning_threshold=self.policy.warning_threshold,
        )

    # --------- core API ----------
    def start_conversation(self, session: ChatSession, title: str = "New Conversation") -> Conversation:
        conv = self.conversations.create(session.user_id, title)
        session.conversation_id = conv.id
        return conv

    def send_message(self, session: ChatSession, content: str) -> SendResult:
        text = (content or "").strip()
        if not text:
            raise ValueError("Message cannot be empty.")
        if session.conversation_id is None:
            self.start_conversation(session)

        conversation_id = session.conversation_id
        with self._lock_for(conversation_id):
            conv = self.conversations.require(session.user_id, conversation_id)

            if conv.supersededBy:
                # another send already rolled this conversation over
                session.conversation_id = conv.supersededBy
                return SendResult(
                    conversation_id=conv.supersededBy,
                    status=self.status(session.user_id, conv.supersededBy),
                    resubmit=True,
                )

            if self.classify(conv.message_count) is SessionState.CRITICAL:
                new_conv = self._rollover_locked(session, conv)
                return SendResult(
                    conversation_id=new_conv.id,
                    status=self._status_of(new_conv),
                    rolled_over=True,
                    resubmit=True,
                )

            conv = self.conversations.add_message(session.user_id, conversation_id, "user", text)
            memory_ids = [self._remember(session.user_id, text, "User said: ", "user-input").id]

            reply: Optional[str] = None
            if self.auto_reply:
                reply = self._reply(conv)
                conv = self.conversations.add_message(session.user_id, conversation_id, "assistant", reply)
                memory_ids.append(self._remember(session.user_id, reply, "AI responded: ", "ai-response").id)

            return SendResult(
                conversation_id=conversation_id,
                status=self._status_of(conv),
                reply=reply,
                memory_ids=memory_ids,
            )

    def rollover(self, session: ChatSession) -> Conversation:
        """Force a summarise-and-continue, regardless of the current state."""
        if session.conversation_id is None:
            raise ValueError("session has no conversation to roll over")
        with self._lock_for(session.conversation_id):
            conv = self.conversations.require(session.user_id, session.conversation_id)
            if conv.supersededBy:
                session.conversation_id = conv.supersededBy
                return self.conversations.require(session.user_id, conv.supersededBy)
            return self._rollover_locked(session, conv)

    # --------- internals ----------
    def _lock_for(self, conversation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = self._locks[conversation_id] = threading.Lock()
            return lock

    def _rollover_locked(self, session: ChatSession, conv: Conversation) -> Conversation:
        messages = [m.to_dict() for m in conv.messages]
        try:
            summary = self._summarise(messages)
        except SummarizationUnavailable as e:
            logger.warning("Summariser unavailable for %s, using rule-based summary: %s", conv.id, e)
            summary = rule_based_summary(messages)

        with self.store.transaction():
            new_conv = self.conversations.create(session.user_id, f"{conv.title} (Continued)")
            new_conv = self.conversations.add_message(
                session.user_id, new_conv.id, "assistant", f"{SUMMARY_PREFIX}{summary}"
            )
            self.conversations.mark_superseded(session.user_id, conv.id, new_conv.id)
            self.memories.create(
                Memory(
                    userId=session.user_id,
                    type="conversation",
                    content=f"Conversation summary: {summary}",
                    summary="Chat summary from previous conversation",
                    importance=7,
                    tags=["conversation-summary", "chat-history"],
                    metadata={"context": "chat-transition"},
                )
            )

        session.conversation_id = new_conv.id
        logger.info("Rolled over conversation %s (%d messages) into %s", conv.id, conv.message_count, new_conv.id)
        return new_conv

    def _summarise(self, messages: List[Dict[str, Any]]) -> str:
        if self.generator is None:
            raise SummarizationUnavailable("no text generator configured")
        transcript = "\n".join(
            f"{'You' if m['role'] == 'user' else 'MyAi'}: {m['content']}" for m in messages[-SUMMARY_WINDOW:]
        )
        prompt = (
            "Please create a brief summary of this conversation between a user and MyAi. "
            "Focus on key topics, important information, and the overall context that should "
            f"be remembered for future conversations:\n\n{transcript}"
        )
        try:
            return self.generator.complete([{"role": "user", "content": prompt}], system=SUMMARY_SYSTEM_PROMPT)
        except Exception as e:  # collaborator is a black box
            raise SummarizationUnavailable(str(e)) from e

    def _reply(self, conv: Conversation) -> str:
        if self.generator is not None:
            turns = [{"role": m.role, "content": m.content} for m in conv.messages[-REPLY_WINDOW:]]
            system = self._system_prompt(conv.userId)
            try:
                return self.generator.complete(turns, system=system)
            except TextGenerationError as e:
                logger.warning("Reply generation failed, using fallback reply: %s", e)
            except Exception as e:  # collaborator is a black box
                logger.warning("Reply generation crashed, using fallback reply: %s", e)
        return fallback_reply(conv.messages[-1].content, self._rng)

    def _system_prompt(self, user_id: str) -> Optional[str]:
        """Personalised prompt when the user has set aiPersonality, else the client default."""
        user = self.users.get(user_id)
        if user is None or not isinstance(user.aiPersonality, dict):
            return None
        return personalized_prompt(user.aiPersonality)

    def _remember(self, user_id: str, text: str, prefix: str, tag: str) -> Memory:
        memory = self.extractor.build_memory(user_id, text, content=f"{prefix}{text}", extra_tags=[tag])
        return self.memories.create(memory)


# -----------------------------
# Fallback replies
# -----------------------------
_KEYWORD_REPLIES = (
    (("sad", "upset", "down"),
     "I hear that you're going through a difficult time. It's completely normal to feel this way "
     "sometimes. Would you like to talk about what's been weighing on your mind?"),
    (("happy", "excited", "great"),
     "That's wonderful to hear! These happy experiences are so important to remember. "
     "What made this moment special for you?"),
    (("family", "friend"),
     "Relationships are such an important part of life. Tell me more about this person "
     "and what they mean to you."),
    (("goal", "want to", "plan"),
     "It's fantastic that you're thinking about your goals. What steps do you think would "
     "help you move toward this one?"),
    (("remember", "forget"),
     "That's exactly what I'm here for! I'll help you keep track of the important details "
     "and experiences from your life."),
    (("today", "yesterday"),
     "I'd love to hear about your day. What stood out to you about it?"),
)

_DEFAULT_REPLIES = (
    "Thank you for sharing that with me. Can you tell me more about how this makes you feel?",
    "That's really interesting. I'll make sure to remember this. Which part of it feels most important right now?",
    "I appreciate you trusting me with your thoughts. What would be most helpful for me to remember about this?",
    "This sounds significant to you. How does it connect to other things happening in your life?",
)


def fallback_reply(user_message: str, rng: Optional[random.Random] = None) -> str:
    lower = user_message.lower()
    for words, reply in _KEYWORD_REPLIES:
        if any(w in lower for w in words):
            return reply
    return (rng or random).choice(_DEFAULT_REPLIES)

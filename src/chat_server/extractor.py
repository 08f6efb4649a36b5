"""Turn chat messages into scored, tagged memories.

Two modes:
  * remote: ask the text generator for a JSON verdict,
  * rule-based: deterministic keyword rules, used whenever the remote path is
    unavailable or returns something unusable.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from vault.records import Memory, unique_tags

from .llm import TextGenerationError, TextGenerator

logger = logging.getLogger(__name__)

SUMMARY_CHARS = 100

# highest matching rule wins; checked in this order
IMPORTANCE_RULES: Tuple[Tuple[Tuple[str, ...], int], ...] = (
    (("important", "significant", "major"), 8),
    (("family", "relationship", "love"), 7),
    (("goal", "achievement", "milestone"), 6),
)
DEFAULT_IMPORTANCE = 5

# every matching rule contributes its tags
TAG_RULES: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    (("work", "job", "career"), ("work", "career")),
    (("family", "parent", "child"), ("family",)),
    (("friend", "social"), ("relationships", "social")),
    (("health", "exercise", "wellness"), ("health", "wellness")),
    (("travel", "trip", "vacation"), ("travel", "experience")),
)

POSITIVE_WORDS = ("happy", "joy", "excited")
CHALLENGING_WORDS = ("sad", "upset", "worried")

EXTRACTION_PROMPT = (
    "You analyse a personal chat message for a memory journal. Reply with ONLY a JSON "
    'object of the form {"importance": <integer 1-10>, "tags": [<short lowercase strings>], '
    '"summary": <one sentence>, "emotion": <"positive" | "challenging" | null>}.'
)


@dataclass
class MemoryInsights:
    importance: int = DEFAULT_IMPORTANCE
    tags: List[str] = field(default_factory=lambda: ["conversation"])
    summary: str = ""
    emotional_context: Optional[str] = None


def _has_any(text: str, words: Sequence[str]) -> bool:
    return any(w in text for w in words)


def summarize_text(text: str, limit: int = SUMMARY_CHARS) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def extract_rule_based(text: str) -> MemoryInsights:
    """Deterministic keyword scoring (case-insensitive substring matching)."""
    lower = text.lower()

    importance = DEFAULT_IMPORTANCE
    for words, score in IMPORTANCE_RULES:
        if _has_any(lower, words):
            importance = score
            break

    tags: List[str] = []
    for words, rule_tags in TAG_RULES:
        if _has_any(lower, words):
            tags.extend(rule_tags)

    emotion: Optional[str] = None
    if _has_any(lower, POSITIVE_WORDS):
        emotion = "positive"
        tags.append("positive")
    elif _has_any(lower, CHALLENGING_WORDS):
        emotion = "challenging"
        tags.append("emotional")

    return MemoryInsights(
        importance=importance,
        tags=tags or ["conversation"],
        summary=summarize_text(text),
        emotional_context=emotion,
    )


def rule_based_summary(messages: Sequence[Dict[str, Any]]) -> str:
    """Deterministic summary of a conversation, used when the summariser is down."""
    user_msgs = [m for m in messages if m.get("role") == "user"]
    topics = " ".join(m.get("content", "") for m in user_msgs[-10:]).lower()

    summary = f"Previous conversation ({len(messages)} messages): "
    if _has_any(topics, ("work", "job")):
        summary += "We discussed work and career topics. "
    if _has_any(topics, ("family", "relationship")):
        summary += "We talked about family and relationships. "
    if _has_any(topics, ("feeling", "emotion")):
        summary += "We explored feelings and emotions. "
    if _has_any(topics, ("goal", "plan")):
        summary += "We discussed goals and future plans. "

    recent = [m for m in messages[-6:] if m.get("role") == "user"][-2:]
    recent_context = " | ".join(m.get("content", "")[:SUMMARY_CHARS] for m in recent)
    if recent_context:
        summary += f"Recent topics: {recent_context}"
    return summary.strip()


# -----------------------------
# Extractor
# -----------------------------
class MemoryExtractor:
    """Score/tag messages, remotely when possible, by rules otherwise."""

    def __init__(self, generator: Optional[TextGenerator] = None) -> None:
        self.generator = generator

    def extract(self, text: str) -> MemoryInsights:
        if self.generator is None:
            return extract_rule_based(text)
        try:
            raw = self.generator.complete([{"role": "user", "content": text}], system=EXTRACTION_PROMPT)
            return _parse_insights(raw, text)
        except (TextGenerationError, ValueError) as e:
            logger.warning("Remote memory extraction failed, using rules: %s", e)
        except Exception as e:  # collaborator is a black box
            logger.warning("Remote memory extraction crashed, using rules: %s", e)
        return extract_rule_based(text)

    def build_memory(
        self,
        user_id: str,
        text: str,
        *,
        content: Optional[str] = None,
        extra_tags: Sequence[str] = (),
        context: str = "chat",
        memory_type: str = "conversation",
    ) -> Memory:
        """Extract insights from ``text`` and wrap them in a Memory record.

        ``content`` defaults to ``text``; callers prefix it (e.g. "User said: ").
        """
        insights = self.extract(text)
        metadata: Dict[str, Any] = {"context": context}
        if insights.emotional_context:
            metadata["emotion"] = insights.emotional_context
        return Memory(
            userId=user_id,
            type=memory_type,
            content=content if content is not None else text,
            summary=insights.summary,
            importance=insights.importance,
            tags=unique_tags(list(insights.tags) + list(extra_tags)),
            metadata=metadata,
        )


def _parse_insights(raw: str, text: str) -> MemoryInsights:
    match = re.search(r"\{.*\}", raw, re.DOTALL)
    if not match:
        raise ValueError("no JSON object in extraction output")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("extraction output is not an object")

    importance = data.get("importance")
    if isinstance(importance, bool) or not isinstance(importance, int) or not 1 <= importance <= 10:
        raise ValueError(f"importance out of range: {importance!r}")

    tags = data.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ValueError("tags must be a list of strings")
    tags = [t.strip().lower() for t in tags if t.strip()]

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = summarize_text(text)

    emotion = data.get("emotion")
    if emotion is not None and not isinstance(emotion, str):
        raise ValueError("emotion must be a string or null")

    return MemoryInsights(
        importance=importance,
        tags=unique_tags(tags) or ["conversation"],
        summary=summary.strip(),
        emotional_context=emotion or None,
    )

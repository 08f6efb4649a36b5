from __future__ import annotations

import json

import pytest

from chat_server.extractor import (
    MemoryExtractor,
    extract_rule_based,
    rule_based_summary,
    summarize_text,
)
from chat_server.llm import TextGenerationError


def test_promotion_sentence_is_deterministic():
    out = extract_rule_based("I got a big promotion, such an important day for my career!")
    assert out.importance == 8
    assert out.tags == ["work", "career"]
    assert out.emotional_context is None


@pytest.mark.parametrize(
    "text,importance",
    [
        ("nothing much happened", 5),
        ("a MAJOR milestone with my family", 8),
        ("I love my family", 7),
        ("new goal for the year", 6),
    ],
)
def test_importance_uses_highest_priority_rule(text: str, importance: int):
    assert extract_rule_based(text).importance == importance


def test_all_tag_rules_apply_in_order():
    out = extract_rule_based("Work trip with a friend, then exercise and a call with my parent")
    assert out.tags == ["work", "career", "family", "relationships", "social", "health", "wellness",
                        "travel", "experience"]


def test_default_tag_when_nothing_matches():
    assert extract_rule_based("the weather is mild").tags == ["conversation"]


def test_positive_emotion_wins_over_challenging():
    out = extract_rule_based("Excited but also a bit worried")
    assert out.emotional_context == "positive"
    assert out.tags == ["positive"]


def test_challenging_emotion_tags_emotional():
    out = extract_rule_based("I'm upset about the job")
    assert out.emotional_context == "challenging"
    assert out.tags == ["work", "career", "emotional"]


def test_summary_truncates_to_100_chars():
    long = "x" * 150
    assert summarize_text(long) == "x" * 100 + "..."
    assert extract_rule_based("short").summary == "short"
    assert extract_rule_based("y" * 100).summary == "y" * 100


class _Canned:
    def __init__(self, reply=None, fail=None):
        self.reply = reply
        self.fail = fail

    def complete(self, turns, *, system=None):
        if self.fail is not None:
            raise self.fail
        return self.reply


def test_remote_extraction_parses_json():
    reply = "Sure!\n" + json.dumps(
        {"importance": 9, "tags": ["Career", "career", "milestone"], "summary": "Got promoted.", "emotion": "positive"}
    )
    out = MemoryExtractor(_Canned(reply)).extract("I got promoted")
    assert out.importance == 9
    assert out.tags == ["career", "milestone"]
    assert out.summary == "Got promoted."
    assert out.emotional_context == "positive"


@pytest.mark.parametrize(
    "generator",
    [
        _Canned(fail=TextGenerationError("timeout")),
        _Canned(fail=RuntimeError("boom")),
        _Canned(reply="no json here"),
        _Canned(reply='{"importance": 42, "tags": []}'),
        _Canned(reply='{"importance": 5, "tags": "work"}'),
        _Canned(reply="{broken"),
    ],
)
def test_remote_failures_fall_back_to_rules(generator):
    text = "I got a big promotion, such an important day for my career!"
    assert MemoryExtractor(generator).extract(text) == extract_rule_based(text)


def test_build_memory_adds_context_and_dedups_tags():
    mem = MemoryExtractor().build_memory(
        "u1", "So happy about my new job", content="User said: So happy about my new job",
        extra_tags=["user-input", "work"],
    )
    assert mem.userId == "u1"
    assert mem.content.startswith("User said: ")
    assert mem.tags == ["work", "career", "positive", "user-input"]
    assert mem.metadata == {"context": "chat", "emotion": "positive"}
    assert mem.type == "conversation"


def test_build_memory_without_emotion_has_only_context():
    mem = MemoryExtractor().build_memory("u1", "plain words")
    assert mem.metadata == {"context": "chat"}
    assert mem.importance == 5


def test_rule_based_summary_topics_and_recent():
    messages = [
        {"role": "user", "content": "My job is stressful"},
        {"role": "assistant", "content": "Tell me more"},
        {"role": "user", "content": "I have a plan for next year"},
        {"role": "assistant", "content": "Nice"},
    ]
    summary = rule_based_summary(messages)
    assert summary.startswith("Previous conversation (4 messages): ")
    assert "We discussed work and career topics." in summary
    assert "We discussed goals and future plans." in summary
    assert "family" not in summary
    assert summary.endswith("Recent topics: My job is stressful | I have a plan for next year")


def test_rule_based_summary_empty():
    assert rule_based_summary([]) == "Previous conversation (0 messages):"

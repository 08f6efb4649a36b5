"""Client for a remote OpenAI-compatible chat-completions endpoint.

The remote model is a black box: a list of ``{role, content}`` turns goes in,
one string comes out. Every failure is raised as :class:`TextGenerationError`
so callers can fall back to their deterministic path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are MyAi, a thoughtful personal AI companion that helps users remember and "
    "reflect on their life experiences. You are empathetic, insightful, and focused on "
    "privacy. Keep responses conversational but meaningful."
)

_RESPONSE_GUIDANCE = {
    "brief": "Keep responses concise and to the point.",
    "moderate": "Provide balanced, thoughtful responses.",
    "detailed": "Give comprehensive, in-depth responses with examples and explanations.",
}
_MEMORY_GUIDANCE = {
    "detailed": "Focus on remembering specific details, facts, and precise information.",
    "highlights": "Prioritize key moments, achievements, and significant events.",
    "patterns": "Look for trends, connections, and recurring themes in experiences.",
    "emotions": "Pay special attention to emotional context and feelings.",
}


def personalized_prompt(personality: Dict[str, Any]) -> str:
    """System prompt built from a user's ``aiPersonality`` settings."""
    tone = personality.get("tone") or "empathetic"
    style = personality.get("style") or "conversational"
    traits = ", ".join(str(t) for t in personality.get("traits") or []) or "helpful and supportive"
    length = _RESPONSE_GUIDANCE.get(personality.get("responseLength"), _RESPONSE_GUIDANCE["moderate"])
    focus = personality.get("memoryFocus") if personality.get("memoryFocus") in _MEMORY_GUIDANCE else "patterns"

    depth = personality.get("emotionalDepth", 7)
    if not isinstance(depth, (int, float)) or isinstance(depth, bool):
        depth = 7
    if depth <= 3:
        emotional = "Maintain a logical, analytical approach with minimal emotional language."
    elif depth <= 7:
        emotional = "Balance logical analysis with emotional understanding and empathy."
    else:
        emotional = "Prioritize emotional connection, empathy, and feelings in your responses."

    return (
        f"You are MyAi, a {tone} personal AI companion with a {style} communication style. "
        f"Your personality traits include being {traits}.\n\n"
        "Communication Guidelines:\n"
        f"- Tone: Be {tone} in all interactions\n"
        f"- Style: Maintain a {style} approach\n"
        f"- {length}\n"
        f"- {emotional}\n\n"
        "Memory & Learning:\n"
        f"- {_MEMORY_GUIDANCE[focus]}\n"
        "- Help users connect new experiences to past memories\n"
        "- Identify meaningful patterns and insights\n\n"
        "Always maintain your defined personality while being genuinely helpful and insightful. "
        f"Ask thoughtful follow-up questions that align with your {style} style."
    )


# -----------------------------
# Types & defaults
# -----------------------------

class TextGenerationError(RuntimeError):
    """Remote generation failed (transport, timeout, HTTP status or payload)."""


class TextGenerator(Protocol):
    def complete(self, turns: Sequence[Dict[str, str]], *, system: Optional[str] = None) -> str:
        ...


@dataclass
class GenerationConfig:
    model: str = "llama-3.1-405b-instruct"
    max_tokens: int = 500
    temperature: float = 0.7
    timeout: float = 20.0


# -----------------------------
# HTTP client
# -----------------------------

class ChatCompletionsClient:
    """Thin wrapper around ``POST {base_url}/chat/completions``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        config: Optional[GenerationConfig] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """
        Parameters
        ----------
        base_url : str
            API root, e.g. ``https://api.venice.ai/api/v1``.
        api_key : str
            Bearer token.
        transport : httpx.BaseTransport | None
            Optional transport override (tests use ``httpx.MockTransport``).
        """
        self.base_url = base_url.rstrip("/")
        self.config = config or GenerationConfig()
        self._client = httpx.Client(
            timeout=httpx.Timeout(self.config.timeout, connect=min(5.0, self.config.timeout)),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            transport=transport,
        )

    def complete(self, turns: Sequence[Dict[str, str]], *, system: Optional[str] = None) -> str:
        messages: List[Dict[str, str]] = [{"role": "system", "content": system or DEFAULT_SYSTEM_PROMPT}]
        messages.extend({"role": t["role"], "content": t["content"]} for t in turns)
        body = {
            "model": self.config.model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": False,
        }
        try:
            resp = self._client.post(f"{self.base_url}/chat/completions", json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise TextGenerationError(f"chat completion returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise TextGenerationError(f"chat completion failed: {e}") from e

        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise TextGenerationError(f"malformed chat completion payload: {e}") from e
        if not isinstance(text, str) or not text.strip():
            raise TextGenerationError("empty chat completion")
        return text.strip()

    def close(self) -> None:
        self._client.close()


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> Optional[ChatCompletionsClient]:
    """Build a client from the ``llm`` config section, or None if not configured."""
    llm_cfg = (cfg or {}).get("llm", {}) if isinstance(cfg, dict) else {}
    base_url = llm_cfg.get("base_url")
    api_key = llm_cfg.get("api_key")
    if not base_url or not api_key:
        logger.info("No text generator configured; using rule-based fallbacks")
        return None
    gen = GenerationConfig(
        model=str(llm_cfg.get("model", GenerationConfig.model)),
        max_tokens=int(llm_cfg.get("max_tokens", GenerationConfig.max_tokens)),
        temperature=float(llm_cfg.get("temperature", GenerationConfig.temperature)),
        timeout=float(llm_cfg.get("timeout", GenerationConfig.timeout)),
    )
    return ChatCompletionsClient(str(base_url), str(api_key), gen)
